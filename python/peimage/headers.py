"""
Header capture and validation.

Captures the DOS header, the NT signature, the file header and the optional
header the way the NT loader does: headers are copied out of the file into
zeroed structures (a truncated file yields a partially zeroed header), the
optional header flavor is chosen by its magic rather than by
SizeOfOptionalHeader, and every structural anomaly is latched into the
loader-error register while capture continues.

Only conditions that make further parsing impossible raise
InvalidImageError.
"""

import logging
import struct
from dataclasses import dataclass, field

from .config import LoaderConfiguration
from .errors import InvalidImageError, LoaderError, LoaderErrorState
from .types import (
    DOS_MAGIC,
    DataDirectory,
    DosHeader,
    FileHeader,
    IMAGE_DIRECTORY_ENTRY_SECURITY,
    IMAGE_DLLCHARACTERISTICS_APPCONTAINER,
    IMAGE_FILE_MACHINE_AMD64,
    IMAGE_FILE_MACHINE_ARM64,
    IMAGE_FILE_MACHINE_ARMNT,
    IMAGE_FILE_MACHINE_I386,
    IMAGE_FILE_MACHINE_IA64,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    MAX_SIZE_OF_IMAGE,
    NT_HEADERS_FIXED_SIZE,
    OPTIONAL_HEADER32_SIZE,
    OPTIONAL_HEADER_CHECKSUM_OFFSET,
    OptionalHeader,
    OptionalHeader32,
    OptionalHeader64,
    PAGE_SIZE,
    PE_SIGNATURE_VALUE,
    DATA_DIRECTORY_SIZE,
    bytes_to_pages,
    is_power_of_two,
)

logger = logging.getLogger(__name__)

IMAGE_BASE_ALIGNMENT = 0x10000  # 64KB allocation granularity
UINT32_MAX = 0xFFFFFFFF


@dataclass
class NtHeaders:
    """Captured NT headers plus the file offsets a writer needs to patch."""

    signature: int = 0
    file_header: FileHeader = field(
        default_factory=lambda: FileHeader.from_partial_bytes(b"")
    )
    optional_header: OptionalHeader = field(default_factory=OptionalHeader)
    real_number_of_rva_and_sizes: int = 0
    checksum_file_offset: int = 0
    security_dir_file_offset: int = 0


# =============================================================================
# DOS Header
# =============================================================================


def verify_dos_header(
    dos_header: DosHeader, file_size: int, errors: LoaderErrorState
) -> None:
    """Reject a DOS header the NT loader would not even look past."""
    if dos_header.e_magic != DOS_MAGIC:
        raise InvalidImageError(f"Bad DOS magic: 0x{dos_header.e_magic:04X}")
    if dos_header.e_lfanew & 3:
        errors.set(LoaderError.E_LFANEW_UNALIGNED)
        raise InvalidImageError(f"e_lfanew 0x{dos_header.e_lfanew:X} is not aligned")
    if dos_header.e_lfanew > file_size:
        errors.set(LoaderError.E_LFANEW_OUT_OF_FILE)
        raise InvalidImageError(
            f"e_lfanew 0x{dos_header.e_lfanew:X} is beyond end of file (0x{file_size:X})"
        )


def capture_dos_header(data: bytes | bytearray, errors: LoaderErrorState) -> DosHeader:
    if len(data) < DosHeader.SIZE:
        raise InvalidImageError(
            f"File too small for DOS header: {len(data)} < {DosHeader.SIZE}"
        )
    dos_header = DosHeader.from_bytes(data)
    verify_dos_header(dos_header, len(data), errors)
    return dos_header


# =============================================================================
# NT Headers
# =============================================================================


def capture_nt_headers(
    data: bytes | bytearray,
    dos_header: DosHeader,
    config: LoaderConfiguration,
    errors: LoaderErrorState,
) -> NtHeaders:
    """Capture the NT signature, file header and optional header.

    Raises:
        InvalidImageError: If the NT signature is missing or out of the file
    """
    nt_headers = NtHeaders()
    offset = dos_header.e_lfanew
    file_size = len(data)

    # Windows 7+ wants the file to hold at least a full IMAGE_NT_HEADERS32
    if config.nt_headers_size_check:
        if offset + NT_HEADERS_FIXED_SIZE + OPTIONAL_HEADER32_SIZE > file_size:
            errors.set(LoaderError.NTHEADER_OUT_OF_FILE)
            return nt_headers

    if offset + 4 > file_size:
        errors.set(LoaderError.NTHEADER_OUT_OF_FILE)
        raise InvalidImageError("NT signature is beyond end of file")

    (nt_headers.signature,) = struct.unpack_from("<I", data, offset)
    if nt_headers.signature != PE_SIGNATURE_VALUE:
        errors.set(LoaderError.NO_NT_SIGNATURE)
        raise InvalidImageError(f"Bad NT signature: 0x{nt_headers.signature:08X}")
    offset += 4

    if offset + FileHeader.SIZE <= file_size:
        nt_headers.file_header = FileHeader.from_bytes(data, offset)
    else:
        errors.set(LoaderError.NTHEADER_OUT_OF_FILE)
    file_header = nt_headers.file_header

    if file_header.Machine == 0 and file_header.SizeOfOptionalHeader == 0:
        errors.set(LoaderError.FILE_HEADER_INVALID)
    if not file_header.is_executable:
        errors.set(LoaderError.IMAGE_NON_EXECUTABLE)
    offset += FileHeader.SIZE

    if file_header.NumberOfSections > config.max_section_count:
        errors.set(LoaderError.IMAGE_NON_EXECUTABLE)

    nt_header_size = NT_HEADERS_FIXED_SIZE + file_header.SizeOfOptionalHeader
    if dos_header.e_lfanew + nt_header_size > UINT32_MAX:
        errors.set(LoaderError.NTHEADER_OFFSET_OVERFLOW)

    # SizeOfOptionalHeader is ignored here: the loader looks at the magic
    magic = IMAGE_NT_OPTIONAL_HDR32_MAGIC
    if offset + 2 <= file_size:
        (magic,) = struct.unpack_from("<H", data, offset)
    if magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC:
        _capture_optional_header(data, offset, OptionalHeader64, nt_headers, errors)
    else:
        _capture_optional_header(data, offset, OptionalHeader32, nt_headers, errors)

    check_optional_header(nt_headers, config, errors)
    return nt_headers


def _capture_optional_header(
    data: bytes | bytearray,
    offset: int,
    header_class: type[OptionalHeader32] | type[OptionalHeader64],
    nt_headers: NtHeaders,
    errors: LoaderErrorState,
) -> None:
    expected_magic = (
        IMAGE_NT_OPTIONAL_HDR64_MAGIC
        if header_class is OptionalHeader64
        else IMAGE_NT_OPTIONAL_HDR32_MAGIC
    )
    raw = header_class.from_partial_bytes(data, offset)
    if raw.Magic != expected_magic:
        errors.set(LoaderError.NO_OPTHDR_MAGIC)
        # A PE32+ header with a wrong magic is not captured at all
        if header_class is OptionalHeader64:
            return

    directories_offset = offset + header_class.SIZE
    directories = [
        DataDirectory.from_partial_bytes(data, directories_offset + i * DATA_DIRECTORY_SIZE)
        for i in range(IMAGE_NUMBEROF_DIRECTORY_ENTRIES)
    ]
    nt_headers.optional_header = OptionalHeader.from_raw(raw, directories)

    # Directory entries that are actually backed by file data
    count = nt_headers.optional_header.NumberOfRvaAndSizes
    available = max(len(data) - directories_offset, 0) // DATA_DIRECTORY_SIZE
    nt_headers.real_number_of_rva_and_sizes = min(count, available)

    nt_headers.checksum_file_offset = offset + OPTIONAL_HEADER_CHECKSUM_OFFSET
    nt_headers.security_dir_file_offset = (
        directories_offset + DATA_DIRECTORY_SIZE * IMAGE_DIRECTORY_ENTRY_SECURITY
    )


# =============================================================================
# Structural checks
# =============================================================================


def is_legacy_machine(machine: int) -> bool:
    return machine in (IMAGE_FILE_MACHINE_I386, IMAGE_FILE_MACHINE_AMD64)


def is_valid_32bit_machine(machine: int, config: LoaderConfiguration) -> bool:
    # ARM images are loaded since Windows 10
    if config.load_arm_images and machine == IMAGE_FILE_MACHINE_ARMNT:
        return True
    return machine == IMAGE_FILE_MACHINE_I386


def is_valid_64bit_machine(machine: int, config: LoaderConfiguration) -> bool:
    if config.load_arm_images and machine == IMAGE_FILE_MACHINE_ARM64:
        return True
    return machine in (IMAGE_FILE_MACHINE_AMD64, IMAGE_FILE_MACHINE_IA64)


def is_bad_app_container(nt_headers: NtHeaders) -> bool:
    """App-container images on x86/x64 must be relocatable."""
    file_header = nt_headers.file_header
    return (
        is_legacy_machine(file_header.Machine)
        and bool(
            nt_headers.optional_header.DllCharacteristics
            & IMAGE_DLLCHARACTERISTICS_APPCONTAINER
        )
        and file_header.relocs_stripped
    )


def check_optional_header(
    nt_headers: NtHeaders, config: LoaderConfiguration, errors: LoaderErrorState
) -> None:
    """Run the loader's cascade of optional-header sanity checks.

    Every failed check latches its own error; the first one wins.
    """
    opt = nt_headers.optional_header
    file_header = nt_headers.file_header
    section_alignment = opt.SectionAlignment
    file_alignment = opt.FileAlignment

    if config.app_container_check and is_bad_app_container(nt_headers):
        errors.set(LoaderError.IMAGE_NON_EXECUTABLE)

    # Only single-subsection images may have no headers
    if section_alignment >= PAGE_SIZE and opt.SizeOfHeaders == 0:
        errors.set(LoaderError.SIZE_OF_HEADERS_ZERO)

    if file_alignment == 0:
        errors.set(LoaderError.FILE_ALIGNMENT_ZERO)
    if file_alignment and not is_power_of_two(file_alignment):
        errors.set(LoaderError.FILE_ALIGNMENT_NOT_POW2)
    if section_alignment == 0:
        errors.set(LoaderError.SECTION_ALIGNMENT_ZERO)
    if section_alignment and not is_power_of_two(section_alignment):
        errors.set(LoaderError.SECTION_ALIGNMENT_NOT_POW2)
    if section_alignment < file_alignment:
        errors.set(LoaderError.SECTION_ALIGNMENT_TOO_SMALL)

    # "Super-section" images: FileAlignment below 512 needs equal alignments
    if (file_alignment & 511) and section_alignment != file_alignment:
        errors.set(LoaderError.SECTION_ALIGNMENT_INVALID)

    if opt.SizeOfImage > MAX_SIZE_OF_IMAGE:
        errors.set(LoaderError.SIZE_OF_IMAGE_TOO_BIG)

    if opt.Magic == IMAGE_NT_OPTIONAL_HDR32_MAGIC and not is_valid_32bit_machine(
        file_header.Machine, config
    ):
        errors.set(LoaderError.INVALID_MACHINE32)
    if opt.Magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC and not is_valid_64bit_machine(
        file_header.Machine, config
    ):
        errors.set(LoaderError.INVALID_MACHINE64)

    if opt.SizeOfHeaders > opt.SizeOfImage:
        errors.set(LoaderError.SIZE_OF_HEADERS_INVALID)

    if config.is_64bit_windows and (file_header.SizeOfOptionalHeader & 7):
        errors.set(LoaderError.SIZE_OF_OPTHDR_NOT_ALIGNED)

    if bytes_to_pages(opt.SizeOfImage) == 0:
        errors.set(LoaderError.SIZE_OF_IMAGE_ZERO)

    if opt.ImageBase & (IMAGE_BASE_ALIGNMENT - 1):
        errors.set(LoaderError.IMAGE_BASE_NOT_ALIGNED)

    logger.debug(
        "Optional header: magic=0x%X base=0x%X SizeOfImage=0x%X align=0x%X/0x%X",
        opt.Magic,
        opt.ImageBase,
        opt.SizeOfImage,
        section_alignment,
        file_alignment,
    )
