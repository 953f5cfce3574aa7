"""
Page-based virtual image mapper.

Builds the page table the NT loader would produce for an image:

- Section-granular images (SectionAlignment >= PAGE_SIZE) get one page per
  4KB of SizeOfImage. The header region is mapped first, then every section
  in header order.
- Single-subsection images (SectionAlignment < PAGE_SIZE) are mapped as one
  flat region, i.e. the file as-is.

Within a region, pages backed by file data come first, then demand-zero
pages up to the page-aligned virtual size. Anything after that, up to the
SectionAlignment boundary, stays inaccessible.
"""

import logging
from dataclasses import dataclass

from .config import LoaderConfiguration
from .errors import LoaderError, LoaderErrorState
from .headers import NtHeaders, UINT32_MAX
from .pages import PageTable
from .sections import is_single_subsection
from .types import (
    DosHeader,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_SHARED,
    IMAGE_SCN_MEM_WRITE,
    NT_HEADERS_FIXED_SIZE,
    PAGE_SIZE,
    SECTOR_SIZE,
    SECTION_HEADER_SIZE,
    SectionHeader,
    round_down_to_alignment,
    round_up_to_alignment,
    round_up_to_page,
)

logger = logging.getLogger(__name__)

# Page protections (PAGE_*)
PAGE_NOACCESS = 0x01
PAGE_READONLY = 0x02
PAGE_READWRITE = 0x04
PAGE_WRITECOPY = 0x08
PAGE_EXECUTE = 0x10
PAGE_EXECUTE_READ = 0x20
PAGE_EXECUTE_READWRITE = 0x40
PAGE_EXECUTE_WRITECOPY = 0x80

# Indexed by EXECUTE(1) | READ(2) | WRITE(4) | SHARED(8)
IMAGE_PROTECTION_TABLE = (
    PAGE_NOACCESS,
    PAGE_EXECUTE,
    PAGE_READONLY,
    PAGE_EXECUTE_READ,
    PAGE_WRITECOPY,
    PAGE_EXECUTE_WRITECOPY,
    PAGE_WRITECOPY,
    PAGE_EXECUTE_WRITECOPY,
    PAGE_NOACCESS,
    PAGE_EXECUTE,
    PAGE_READONLY,
    PAGE_EXECUTE_READ,
    PAGE_READWRITE,
    PAGE_EXECUTE_READWRITE,
    PAGE_READWRITE,
    PAGE_EXECUTE_READWRITE,
)


def get_image_protection(characteristics: int) -> int:
    """Page protection the loader derives from section characteristics."""
    index = 0
    if characteristics & IMAGE_SCN_MEM_EXECUTE:
        index |= 1
    if characteristics & IMAGE_SCN_MEM_READ:
        index |= 2
    if characteristics & IMAGE_SCN_MEM_WRITE:
        index |= 4
    if characteristics & IMAGE_SCN_MEM_SHARED:
        index |= 8
    return IMAGE_PROTECTION_TABLE[index]


def section_tables_spill_past_header_page(
    e_lfanew: int, nt_headers: NtHeaders
) -> bool:
    """Windows XP header-size heuristic.

    XP maps the whole SectionAlignment-sized header region when the NT
    headers plus section table (with one spare entry) do not fit in the
    first page after e_lfanew. Observed on samples with four sections and
    e_lfanew >= 0x724; Windows 7+ uses SizeOfHeaders as-is.
    """
    file_header = nt_headers.file_header
    offset_to_section_table = NT_HEADERS_FIXED_SIZE + file_header.SizeOfOptionalHeader
    # Unsigned arithmetic: an e_lfanew past the first page wraps to a huge size
    nt_header_size = (PAGE_SIZE - e_lfanew) & UINT32_MAX
    tables_end = (
        e_lfanew
        + offset_to_section_table
        + (file_header.NumberOfSections + 1) * SECTION_HEADER_SIZE
    )
    return tables_end > nt_header_size


@dataclass
class MappingResult:
    """Pages produced by the mapper, or None if mapping failed."""

    pages: PageTable | None
    single_subsection: bool = False


class _RegionMapper:
    """Maps header and section regions of one image into a page table."""

    def __init__(
        self,
        data: bytes | bytearray,
        pages: PageTable,
        section_alignment: int,
        file_alignment: int,
    ):
        self.data = data
        self.pages = pages
        self.section_alignment = section_alignment
        self.file_alignment = file_alignment

    def map_region(
        self,
        virtual_address: int,
        virtual_size: int,
        pointer_to_raw_data: int,
        size_of_raw_data: int,
        characteristics: int,
        is_header: bool = False,
    ) -> int | None:
        """Map one region; returns the virtual address following it, or None.

        None means the region does not fit the page table or its end
        wraps around 32 bits.
        """
        virtual_size = round_up_to_page(virtual_size or size_of_raw_data)
        size_of_raw_data = min(size_of_raw_data, virtual_size)

        initialized_size = round_up_to_page(size_of_raw_data)
        valid_size = virtual_size
        section_size = round_up_to_alignment(virtual_size, self.section_alignment)

        # The loader keeps a sector offset in the PTEs, so the raw pointer
        # is rounded down to a sector
        raw_pointer = round_down_to_alignment(pointer_to_raw_data, SECTOR_SIZE)
        raw_end = raw_pointer + size_of_raw_data
        # Headers are copied exactly; sections up to the aligned raw end
        if not is_header:
            raw_end = round_up_to_alignment(
                pointer_to_raw_data + size_of_raw_data, self.file_alignment
            )

        page_index = virtual_address // PAGE_SIZE
        if virtual_address % PAGE_SIZE or page_index + valid_size // PAGE_SIZE > len(
            self.pages
        ):
            logger.debug(
                "Region at 0x%X (0x%X bytes) does not fit %d pages",
                virtual_address,
                valid_size,
                len(self.pages),
            )
            return None

        if get_image_protection(characteristics) != PAGE_NOACCESS:
            offset = 0
            file_size = len(self.data)
            if pointer_to_raw_data or is_header:
                while offset < initialized_size:
                    if raw_pointer < file_size:
                        count = max(min(PAGE_SIZE, file_size - raw_pointer, raw_end - raw_pointer), 0)
                        self.pages.set_data(
                            page_index, self.data[raw_pointer : raw_pointer + count]
                        )
                    else:
                        self.pages.set_zero(page_index)
                    page_index += 1
                    raw_pointer += PAGE_SIZE
                    offset += PAGE_SIZE

            while offset < valid_size:
                self.pages.set_zero(page_index)
                page_index += 1
                offset += PAGE_SIZE

        next_address = (virtual_address + section_size) & UINT32_MAX
        if next_address == 0:
            return None
        return next_address


def map_image(
    data: bytes | bytearray,
    dos_header: DosHeader,
    nt_headers: NtHeaders,
    sections: list[SectionHeader],
    config: LoaderConfiguration,
    errors: LoaderErrorState,
) -> MappingResult:
    """Build the page table of an image.

    Returns a MappingResult whose ``pages`` is None when mapping failed and
    the caller should fall back to the raw file.
    """
    opt = nt_headers.optional_header
    section_alignment = opt.SectionAlignment

    if is_single_subsection(section_alignment):
        size_of_image = round_up_to_alignment(
            opt.SizeOfImage, config.single_subsection_alignment
        )
        if config.is_64bit_windows:
            size_of_image = round_up_to_page(size_of_image)
        size_of_image = max(size_of_image, PAGE_SIZE)

        pages = PageTable((size_of_image + PAGE_SIZE - 1) // PAGE_SIZE)
        mapper = _RegionMapper(data, pages, section_alignment, opt.FileAlignment)
        # The file is mapped as-is, readable, writable and executable
        next_address = mapper.map_region(
            0,
            size_of_image,
            0,
            size_of_image,
            IMAGE_SCN_MEM_WRITE | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_EXECUTE,
            is_header=True,
        )
        if next_address is None:
            return MappingResult(None, single_subsection=True)
        return MappingResult(pages, single_subsection=True)

    pages = PageTable(round_up_to_page(opt.SizeOfImage) // PAGE_SIZE)
    mapper = _RegionMapper(data, pages, section_alignment, opt.FileAlignment)

    size_of_headers = opt.SizeOfHeaders
    if config.header_size_check and section_tables_spill_past_header_page(
        dos_header.e_lfanew, nt_headers
    ):
        size_of_headers = round_up_to_alignment(size_of_headers, section_alignment)

    virtual_address = mapper.map_region(
        0, size_of_headers, 0, size_of_headers, IMAGE_SCN_MEM_READ, is_header=True
    )
    if virtual_address is None:
        return MappingResult(None)

    if sections:
        for section in sections:
            next_address = mapper.map_region(
                section.VirtualAddress,
                section.VirtualSize,
                section.PointerToRawData,
                section.SizeOfRawData,
                section.Characteristics,
            )
            if next_address is None:
                errors.set(LoaderError.INVALID_SECTION_VA)
                return MappingResult(None)
    elif (
        virtual_address > opt.SizeOfImage
        or opt.SizeOfImage - virtual_address > section_alignment
    ):
        # Without sections, SizeOfImage must end right after the headers
        errors.set(LoaderError.INVALID_SIZE_OF_IMAGE)

    return MappingResult(pages)
