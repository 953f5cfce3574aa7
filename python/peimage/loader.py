"""
PE image loader.

The ImageLoader class ties header capture, section capture and page mapping
together and exposes the mapped image through RVA-based accessors.

Load flow:
1. Capture the DOS header, NT headers and section table (hard failures end
   the load with Status.INVALID_FILE, soft anomalies are latched)
2. If the latched error still allows it, map the image into pages
3. If mapping was skipped or failed, keep the raw file and translate every
   RVA to a file offset instead

Every accessor works in both modes and clips at the image boundaries rather
than raising.
"""

import logging
import os
import struct
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from .config import LoaderConfiguration
from .errors import InvalidImageError, LoaderError, LoaderErrorState, Status
from .headers import (
    NtHeaders,
    UINT32_MAX,
    capture_dos_header,
    capture_nt_headers,
    verify_dos_header,
)
from .mapper import get_image_protection, map_image
from .pages import PageTable
from .sections import (
    SECTION_POINTER_TO_RAW_DATA_OFFSET,
    capture_section_headers,
    section_table_offset,
)
from .types import (
    DATA_DIRECTORY_SIZE,
    DosHeader,
    FileHeader,
    IMAGE_DIRECTORY_ENTRY_EXPORT,
    IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG,
    IMAGE_DIRECTORY_ENTRY_RESOURCE,
    NT_HEADERS_FIXED_SIZE,
    OptionalHeader,
    OptionalHeader32,
    OptionalHeader64,
    PAGE_SIZE,
    SECTION_HEADER_SIZE,
    SECTOR_SIZE,
    SectionHeader,
    round_down_to_alignment,
    round_up_to_alignment,
    round_up_to_page,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STRING_LENGTH = 65535

# Offset of NumberOfRvaAndSizes inside the fixed optional header
_NUMBER_OF_RVA_AND_SIZES_OFFSET32 = OptionalHeader32.SIZE - 4
_NUMBER_OF_RVA_AND_SIZES_OFFSET64 = OptionalHeader64.SIZE - 4


class HeaderField(Enum):
    """Header fields whose location a PE writer needs to know."""

    OPTIONAL_HEADER_SIZE = "optional_header_size"
    NUMBER_OF_RVA_AND_SIZES = "number_of_rva_and_sizes"
    DATA_DIRECTORY = "data_directory"
    EXPORT_DIRECTORY = "export_directory"
    RESOURCE_DIRECTORY = "resource_directory"
    LOAD_CONFIG_DIRECTORY = "load_config_directory"


_DIRECTORY_FIELDS = {
    HeaderField.EXPORT_DIRECTORY: IMAGE_DIRECTORY_ENTRY_EXPORT,
    HeaderField.RESOURCE_DIRECTORY: IMAGE_DIRECTORY_ENTRY_RESOURCE,
    HeaderField.LOAD_CONFIG_DIRECTORY: IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG,
}


class ImageLoader:
    """Maps a PE file the way the Windows NT loader does.

    Usage:
        loader = ImageLoader(LoaderConfiguration.for_windows(WindowsVersion.WIN10))
        status = loader.load_file(Path("foo.exe"))

        if loader.is_image_mapped_ok():
            entry = loader.read_image(loader.optional_header.AddressOfEntryPoint, 16)

    load*() return a Status and never raise for malformed input; anomalies
    that do not stop the load are available from loader_error().
    """

    def __init__(self, config: LoaderConfiguration | None = None):
        self.config = config or LoaderConfiguration()
        self._reset()

    def _reset(self) -> None:
        self.errors = LoaderErrorState()
        self.dos_header: DosHeader | None = None
        self.nt_headers = NtHeaders()
        self.sections: list[SectionHeader] = []
        self.pages: PageTable | None = None
        self.raw_data = bytearray()
        self.single_subsection = False

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self, data: bytes | bytearray, headers_only: bool = False) -> Status:
        """Load an image from a buffer.

        The buffer is copied; the loader never modifies the caller's data.
        """
        self._reset()
        try:
            return self._load(bytearray(data), headers_only)
        except MemoryError:
            self.pages = None
            self.raw_data = bytearray()
            logger.warning("Out of memory while loading image")
            return Status.NOT_ENOUGH_SPACE

    def _load(self, data: bytearray, headers_only: bool) -> Status:
        try:
            self.dos_header = capture_dos_header(data, self.errors)
            self.nt_headers = capture_nt_headers(
                data, self.dos_header, self.config, self.errors
            )
            self.sections = capture_section_headers(
                data, self.dos_header.e_lfanew, self.nt_headers, self.config, self.errors
            )
        except InvalidImageError as e:
            logger.debug("Image rejected: %s", e)
            return Status.INVALID_FILE

        if headers_only:
            self.raw_data = data
            return Status.NONE

        if self.errors.is_mappable:
            result = map_image(
                data,
                self.dos_header,
                self.nt_headers,
                self.sections,
                self.config,
                self.errors,
            )
            if result.pages is not None and len(result.pages):
                self.pages = result.pages
                self.single_subsection = result.single_subsection

        if self.pages is None:
            logger.warning(
                "Image not mapped (%s), using raw file data",
                self.loader_error().description,
            )
            self.raw_data = data
        else:
            logger.info(
                "Mapped image: %d pages, %s, loader error: %s",
                len(self.pages),
                "single subsection" if self.single_subsection else "section granular",
                self.loader_error().name,
            )
        return Status.NONE

    def load_stream(
        self, stream: BinaryIO, offset: int = 0, headers_only: bool = False
    ) -> Status:
        """Load an image that starts at ``offset`` in a seekable binary stream."""
        self._reset()
        try:
            file_size = stream.seek(0, os.SEEK_END)
            if offset > file_size:
                return Status.INVALID_FILE
            size = file_size - offset

            # Windows refuses anything that does not fit 32 bits
            if size >> 32:
                self.errors.set(LoaderError.FILE_TOO_BIG)
                return Status.INVALID_FILE

            # Check the DOS header before reading a possibly huge file
            stream.seek(offset)
            head = stream.read(DosHeader.SIZE)
            if len(head) < DosHeader.SIZE:
                return Status.INVALID_FILE
            try:
                verify_dos_header(DosHeader.from_bytes(head), size, self.errors)
            except InvalidImageError as e:
                logger.debug("Image rejected: %s", e)
                return Status.INVALID_FILE

            stream.seek(offset)
            data = stream.read(size)
        except MemoryError:
            return Status.NOT_ENOUGH_SPACE
        except OSError as e:
            logger.debug("Cannot read image stream: %s", e)
            return Status.OPENING_FILE

        if len(data) < size:
            return Status.NOT_ENOUGH_SPACE
        return self.load(data, headers_only)

    def load_file(self, path: Path | str, headers_only: bool = False) -> Status:
        """Load an image from a file."""
        try:
            with open(path, "rb") as f:
                return self.load_stream(f, 0, headers_only)
        except OSError as e:
            logger.debug("Cannot open %s: %s", path, e)
            self._reset()
            return Status.OPENING_FILE

    # =========================================================================
    # Captured headers
    # =========================================================================

    @property
    def file_header(self) -> FileHeader:
        return self.nt_headers.file_header

    @property
    def optional_header(self) -> OptionalHeader:
        return self.nt_headers.optional_header

    @property
    def number_of_sections(self) -> int:
        return len(self.sections)

    @property
    def image_base(self) -> int:
        return self.optional_header.ImageBase

    @property
    def size_of_image(self) -> int:
        return self.optional_header.SizeOfImage

    @property
    def checksum_file_offset(self) -> int:
        return self.nt_headers.checksum_file_offset

    @property
    def security_dir_file_offset(self) -> int:
        return self.nt_headers.security_dir_file_offset

    @property
    def real_number_of_rva_and_sizes(self) -> int:
        return self.nt_headers.real_number_of_rva_and_sizes

    def get_section_header(self, index: int) -> SectionHeader | None:
        if 0 <= index < len(self.sections):
            return self.sections[index]
        return None

    def get_size_of_image_aligned(self) -> int:
        return round_up_to_page(self.optional_header.SizeOfImage)

    def get_image_bitability(self) -> int:
        return 64 if self.optional_header.is_64bit else 32

    def pointer_size(self) -> int:
        return self.get_image_bitability() // 8

    def get_field_offset(self, field: HeaderField) -> int:
        """Offset of a header field, relative to the start of the NT headers.

        OPTIONAL_HEADER_SIZE is the exception: it returns the size of the
        full optional header for the image bitability.
        """
        is_64bit = self.get_image_bitability() == 64
        if field is HeaderField.OPTIONAL_HEADER_SIZE:
            return OptionalHeader64.FULL_SIZE if is_64bit else OptionalHeader32.FULL_SIZE
        if field is HeaderField.NUMBER_OF_RVA_AND_SIZES:
            field_offset = (
                _NUMBER_OF_RVA_AND_SIZES_OFFSET64
                if is_64bit
                else _NUMBER_OF_RVA_AND_SIZES_OFFSET32
            )
            return NT_HEADERS_FIXED_SIZE + field_offset

        directories = NT_HEADERS_FIXED_SIZE + (
            OptionalHeader64.SIZE if is_64bit else OptionalHeader32.SIZE
        )
        if field is HeaderField.DATA_DIRECTORY:
            return directories
        return directories + _DIRECTORY_FIELDS[field] * DATA_DIRECTORY_SIZE

    @staticmethod
    def get_image_protection(characteristics: int) -> int:
        return get_image_protection(characteristics)

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def loader_error(self) -> LoaderError:
        return self.errors.current

    def is_image_loadable(self) -> bool:
        """Whether the Windows loader would accept the image."""
        return self.errors.is_loadable

    def is_image_mapped_ok(self) -> bool:
        """Whether the image is loadable and was mapped into pages."""
        return self.is_image_loadable() and self.pages is not None

    def is_valid_image_block(self, rva: int, size: int) -> bool:
        """Whether [rva, rva + size) lies inside SizeOfImage."""
        size_of_image = self.optional_header.SizeOfImage
        if rva >= size_of_image or size >= size_of_image:
            return False
        if rva + size > UINT32_MAX:
            return False
        return rva + size <= size_of_image

    # =========================================================================
    # Address translation
    # =========================================================================

    def get_real_pointer_to_raw_data(self, index: int) -> int | None:
        """PointerToRawData as the loader uses it (sector aligned for normal images)."""
        section = self.get_section_header(index)
        if section is None:
            return None
        if self.optional_header.SectionAlignment < PAGE_SIZE:
            return section.PointerToRawData
        return round_down_to_alignment(section.PointerToRawData, SECTOR_SIZE)

    def _real_pointer(self, section: SectionHeader) -> int:
        if self.optional_header.SectionAlignment >= PAGE_SIZE:
            return round_down_to_alignment(section.PointerToRawData, SECTOR_SIZE)
        return section.PointerToRawData

    def _section_start(self, section: SectionHeader) -> int:
        return round_up_to_alignment(
            section.VirtualAddress, self.optional_header.SectionAlignment
        )

    def get_file_offset_from_rva(self, rva: int) -> int | None:
        """Translate an RVA into a file offset, or None if no file data backs it."""
        if not self.sections:
            return rva

        for section in self.sections:
            if section.PointerToRawData == 0 or section.SizeOfRawData == 0:
                continue
            virtual_size = section.VirtualSize or section.SizeOfRawData
            start = self._section_start(section)
            if start <= rva < start + virtual_size:
                return self._real_pointer(section) + (rva - start)

        # Not in a section, might be in the headers
        if rva < self.optional_header.SizeOfHeaders:
            return rva
        return None

    def get_rva_from_file_offset(self, offset: int) -> int | None:
        """Translate a file offset into an RVA, or None if it is not mapped."""
        if not self.sections:
            return offset

        for section in self.sections:
            if section.PointerToRawData == 0 or section.SizeOfRawData == 0:
                continue
            real_pointer = self._real_pointer(section)
            if real_pointer <= offset < real_pointer + section.SizeOfRawData:
                return self._section_start(section) + (offset - real_pointer)

        if offset < self.optional_header.SizeOfHeaders:
            return offset
        return None

    def is_section_header_pointer_to_raw_data(self, file_offset: int) -> bool:
        """Whether file_offset is inside the PointerToRawData field of a
        section header with no raw data (patched by the Borland fix)."""
        if self.dos_header is None:
            return False
        header_offset = section_table_offset(self.dos_header.e_lfanew, self.nt_headers)
        for section in self.sections:
            if section.SizeOfRawData == 0:
                field_offset = header_offset + SECTION_POINTER_TO_RAW_DATA_OFFSET
                if field_offset <= file_offset < field_offset + 4:
                    return True
            header_offset += SECTION_HEADER_SIZE
        return False

    # =========================================================================
    # Image access
    # =========================================================================

    def read_image(self, rva: int, length: int) -> bytes:
        """Read up to length bytes of the mapped image at rva."""
        if self.pages is not None:
            return self.pages.read(rva, length, self.get_size_of_image_aligned())

        offset = self.get_file_offset_from_rva(rva)
        if offset is None or not 0 <= offset < len(self.raw_data) or length <= 0:
            return b""
        return bytes(self.raw_data[offset : offset + length])

    def write_image(self, rva: int, data: bytes | bytearray) -> int:
        """Write data into the mapped image at rva; returns bytes written."""
        if self.pages is not None:
            return self.pages.write(rva, data, self.get_size_of_image_aligned())

        offset = self.get_file_offset_from_rva(rva)
        if offset is None or not 0 <= offset < len(self.raw_data):
            return 0
        length = min(len(data), len(self.raw_data) - offset)
        self.raw_data[offset : offset + length] = data[:length]
        return length

    def string_length(self, rva: int, max_length: int = DEFAULT_MAX_STRING_LENGTH) -> int:
        """Length of the zero-terminated string at rva, bounded by max_length."""
        if self.pages is not None:
            return self.pages.string_length(
                rva, max_length, self.get_size_of_image_aligned()
            )

        offset = self.get_file_offset_from_rva(rva)
        if offset is None or not 0 <= offset < len(self.raw_data):
            return 0
        chunk = self.raw_data[offset : offset + max_length]
        end = chunk.find(b"\x00")
        return len(chunk) if end < 0 else end

    def read_string(self, rva: int, max_length: int = DEFAULT_MAX_STRING_LENGTH) -> str:
        """Read a zero-terminated single-byte string; one character per byte."""
        length = self.string_length(rva, max_length)
        return self.read_image(rva, length).decode("latin-1")

    def read_string_rc(self, rva: int) -> str:
        """Read a resource string: a 16-bit character count, then UTF-16LE text."""
        prefix = self.read_image(rva, 2)
        if len(prefix) < 2:
            return ""
        (count,) = struct.unpack("<H", prefix)
        text = self.read_image(rva + 2, count * 2)
        text = text[: len(text) & ~1]
        return text.decode("utf-16-le", errors="replace")

    def read_pointer(self, rva: int) -> int | None:
        """Read an image-bitness pointer, or None if it cannot be read whole."""
        size = self.pointer_size()
        data = self.read_image(rva, size)
        if len(data) != size:
            return None
        return int.from_bytes(data, "little")

    def dump_image(self, path: Path | str) -> int:
        """Write the mapped image to a file; returns the number of bytes written."""
        pages = self.pages if self.pages is not None else PageTable()
        return pages.dump(Path(path))

    # =========================================================================
    # Header setters
    # =========================================================================

    def set_pointer_to_symbol_table(self, pointer: int) -> None:
        self.file_header.PointerToSymbolTable = pointer

    def set_characteristics(self, characteristics: int) -> None:
        self.file_header.Characteristics = characteristics

    def set_address_of_entry_point(self, address: int) -> None:
        self.optional_header.AddressOfEntryPoint = address

    def set_size_of_code(self, size_of_code: int, base_of_code: int | None = None) -> None:
        self.optional_header.SizeOfCode = size_of_code
        if base_of_code is not None:
            self.optional_header.BaseOfCode = base_of_code

    def set_size_of_image(self, size_of_image: int) -> None:
        self.optional_header.SizeOfImage = size_of_image
