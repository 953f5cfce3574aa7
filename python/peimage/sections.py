"""
Section table capture.

Reads the section headers that follow the optional header, resolves long
section names through the COFF string table and performs the layout checks
the NT loader runs before it maps anything: virtual addresses must be
contiguous, sizes must not overflow, and single-subsection images must have
identical virtual and raw layouts. Finally decides whether a file whose raw
data runs past end-of-file is still loadable.
"""

import logging
import struct

from .config import LoaderConfiguration
from .errors import LoaderError, LoaderErrorState
from .headers import NtHeaders, UINT32_MAX
from .types import (
    COFF_SYMBOL_SIZE,
    NT_HEADERS_FIXED_SIZE,
    PAGE_SIZE,
    SectionHeader,
    bytes_to_pages,
    round_up_to_alignment,
)

logger = logging.getLogger(__name__)

# Field offsets inside IMAGE_SECTION_HEADER
SECTION_SIZE_OF_RAW_DATA_OFFSET = 0x10
SECTION_POINTER_TO_RAW_DATA_OFFSET = 0x14

# Long names ("/123") are read from the string table; longer or
# non-printable strings are treated as garbage and the short name is used.
MAX_LONG_SECTION_NAME = 1024


def is_single_subsection(section_alignment: int) -> bool:
    """Images with SectionAlignment below the page size map as one region."""
    return section_alignment < PAGE_SIZE


def section_table_offset(e_lfanew: int, nt_headers: NtHeaders) -> int:
    return (
        e_lfanew
        + NT_HEADERS_FIXED_SIZE
        + nt_headers.file_header.SizeOfOptionalHeader
    )


def read_string_raw(
    data: bytes | bytearray,
    offset: int,
    max_length: int,
    must_be_printable: bool = False,
    must_not_be_too_long: bool = False,
) -> str:
    """Read a zero-terminated string from file data.

    Returns an empty string if the string is unterminated within max_length
    (when must_not_be_too_long is set) or holds non-printable characters
    (when must_be_printable is set).
    """
    if offset >= len(data):
        return ""
    chunk = bytes(data[offset : offset + max_length])
    end = chunk.find(b"\x00")
    if end < 0:
        if must_not_be_too_long:
            return ""
        end = len(chunk)
    raw = chunk[:end]
    if must_be_printable and any(b < 0x20 or b > 0x7E for b in raw):
        return ""
    return raw.decode("latin-1")


def resolve_section_name(
    data: bytes | bytearray, nt_headers: NtHeaders, raw_name: bytes
) -> str:
    """Resolve the display name of a section.

    "/1234" names index the COFF string table that follows the symbol
    table. Otherwise the 8 raw bytes are used with every zero byte dropped,
    even in the middle (".text\\0\\0X" becomes ".textX").
    """
    file_header = nt_headers.file_header
    if file_header.PointerToSymbolTable != 0 and raw_name[:1] == b"/":
        string_table = (
            file_header.PointerToSymbolTable
            + file_header.NumberOfSymbols * COFF_SYMBOL_SIZE
        )
        index = 0
        for char in raw_name[1:]:
            if not 0x30 <= char <= 0x39:
                break
            index = index * 10 + (char - 0x30)
        name = read_string_raw(
            data,
            string_table + index,
            MAX_LONG_SECTION_NAME,
            must_be_printable=True,
            must_not_be_too_long=True,
        )
        if name:
            return name
        logger.debug("Long section name %r could not be resolved", raw_name)
    return raw_name.replace(b"\x00", b"").decode("latin-1")


def _apply_borland_fix(data: bytearray, offset: int) -> None:
    # Borland linkers emit sections with SizeOfRawData == 0 but a stale,
    # nonzero PointerToRawData. Samples mapped by XP, 7 and 10 show that DWORD
    # zeroed in the mapped header page, so the loader patches the file data
    # itself, after the header has been copied.
    pointer, = struct.unpack_from(
        "<I", data, offset + SECTION_POINTER_TO_RAW_DATA_OFFSET
    )
    size_of_raw_data, = struct.unpack_from(
        "<I", data, offset + SECTION_SIZE_OF_RAW_DATA_OFFSET
    )
    if pointer != 0 and size_of_raw_data == 0:
        struct.pack_into("<I", data, offset + SECTION_POINTER_TO_RAW_DATA_OFFSET, 0)


def capture_section_headers(
    data: bytearray,
    e_lfanew: int,
    nt_headers: NtHeaders,
    config: LoaderConfiguration,
    errors: LoaderErrorState,
) -> list[SectionHeader]:
    """Capture and validate all section headers.

    ``data`` may be modified in place (Borland fix).
    """
    sections: list[SectionHeader] = []
    opt = nt_headers.optional_header
    file_size = len(data)
    offset = section_table_offset(e_lfanew, nt_headers)
    if offset > file_size:
        errors.set(LoaderError.SECTION_HEADERS_OUT_OF_IMAGE)
        return sections

    section_alignment = opt.SectionAlignment
    file_alignment_mask = (opt.FileAlignment - 1) & UINT32_MAX
    single_subsection = is_single_subsection(section_alignment)
    number_of_ptes = bytes_to_pages(opt.SizeOfImage)
    next_virtual_address = 0
    raw_data_beyond_eof = False

    if not single_subsection:
        section_ptes = (
            round_up_to_alignment(opt.SizeOfHeaders, section_alignment) // PAGE_SIZE
        )
        if opt.SizeOfHeaders + section_alignment - 1 > UINT32_MAX:
            errors.set(LoaderError.SECTION_HEADERS_OVERFLOW)
        if section_ptes > number_of_ptes:
            errors.set(LoaderError.SIZE_OF_HEADERS_INVALID)
        next_virtual_address += section_ptes * PAGE_SIZE
        number_of_ptes -= section_ptes
    else:
        number_of_ptes -= round_up_to_alignment(opt.SizeOfImage, PAGE_SIZE) // PAGE_SIZE

    count = nt_headers.file_header.NumberOfSections
    for index in range(count):
        if offset + SectionHeader.SIZE > file_size:
            break
        header = SectionHeader.from_bytes(data, offset)

        if config.fix_borland_sections:
            _apply_borland_fix(data, offset)

        raw_size = header.SizeOfRawData
        pointer_to_raw_data = header.PointerToRawData if raw_size != 0 else 0
        end_of_raw_data = pointer_to_raw_data + raw_size
        virtual_size = header.VirtualSize or raw_size

        if end_of_raw_data > UINT32_MAX:
            errors.set(LoaderError.RAW_DATA_OVERFLOW)

        if single_subsection:
            # Virtual layout must match raw layout
            if header.VirtualAddress != pointer_to_raw_data or raw_size < virtual_size:
                errors.set(LoaderError.SECTION_SIZE_MISMATCH)
        else:
            if next_virtual_address != header.VirtualAddress:
                errors.set(LoaderError.INVALID_SECTION_VA)
            if virtual_size == 0:
                errors.set(LoaderError.INVALID_SECTION_VSIZE)
            if virtual_size + PAGE_SIZE - 1 > UINT32_MAX:
                errors.set(LoaderError.INVALID_SECTION_VSIZE)

            section_ptes = (
                round_up_to_alignment(virtual_size, section_alignment) // PAGE_SIZE
            )
            if section_ptes > number_of_ptes:
                errors.set(LoaderError.INVALID_SECTION_VSIZE)
            number_of_ptes -= section_ptes

            aligned_raw_end = (
                (end_of_raw_data + file_alignment_mask) & ~file_alignment_mask
            ) & UINT32_MAX
            if aligned_raw_end < pointer_to_raw_data:
                errors.set(LoaderError.INVALID_SECTION_RAWSIZE)

            # The last section's raw data must not run past the end of file
            if index == count - 1 and raw_size != 0:
                if header.PointerToRawData + raw_size > file_size:
                    errors.set(LoaderError.FILE_IS_CUT)

            next_virtual_address += section_ptes * PAGE_SIZE

        # The NT loader skips this for single-subsection images; we still
        # want to know the file is cut.
        if pointer_to_raw_data != 0 and end_of_raw_data > file_size:
            raw_data_beyond_eof = True

        header.full_name = resolve_section_name(data, nt_headers, header.Name)
        sections.append(header)
        offset += SectionHeader.SIZE

    # Windows 10 no longer performs this check
    if config.size_of_image_must_match:
        threshold = 1 if single_subsection else section_alignment // PAGE_SIZE
        if number_of_ptes >= threshold:
            errors.set(LoaderError.INVALID_SIZE_OF_IMAGE)

    if raw_data_beyond_eof:
        _classify_cut_file(sections, single_subsection, file_size, errors)

    return sections


def _classify_cut_file(
    sections: list[SectionHeader],
    single_subsection: bool,
    file_size: int,
    errors: LoaderErrorState,
) -> None:
    """A cut file is still loadable if only the last section counts and it is in range."""
    loadable = single_subsection
    if not single_subsection and sections:
        last = sections[-1]
        pointer = last.PointerToRawData if last.SizeOfRawData != 0 else 0
        if last.SizeOfRawData == 0 or pointer + last.SizeOfRawData <= file_size:
            loadable = True

    if loadable:
        errors.set(LoaderError.FILE_IS_CUT_LOADABLE)
    else:
        errors.set(LoaderError.FILE_IS_CUT)
