"""
Section table mutations.

Structural edits on the captured headers and section table of a loaded
image: adding, splitting, removing and growing sections, editing data
directories, and recomputing the derived header fields so the result is a
valid PE again.

None of these touch the page table. They prepare the header model for a
writer that re-serializes the file.
"""

import logging

from .errors import Status
from .loader import HeaderField, ImageLoader
from .types import (
    IMAGE_FILE_32BIT_MACHINE,
    IMAGE_FILE_EXECUTABLE_IMAGE,
    IMAGE_FILE_MACHINE_AMD64,
    IMAGE_FILE_MACHINE_I386,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    NT_HEADERS_FIXED_SIZE,
    PAGE_SIZE,
    PE_SIGNATURE_VALUE,
    SECTION_HEADER_SIZE,
    SECTOR_SIZE,
    SectionHeader,
    round_up_to_alignment,
)

logger = logging.getLogger(__name__)

MAX_NUMBER_OF_SECTIONS = 0xFFFF

NEW_SECTION_CHARACTERISTICS = (
    IMAGE_SCN_MEM_WRITE
    | IMAGE_SCN_MEM_READ
    | IMAGE_SCN_CNT_INITIALIZED_DATA
    | IMAGE_SCN_CNT_CODE
)


def calc_new_section_addresses(loader: ImageLoader) -> tuple[int, int]:
    """RVA and file offset right after the furthest existing section.

    Returns:
        Tuple of (rva, raw_offset), aligned to SectionAlignment and
        FileAlignment respectively.
    """
    opt = loader.optional_header
    new_rva = opt.SizeOfHeaders
    new_raw_offset = opt.SizeOfHeaders
    for section in loader.sections:
        new_rva = max(new_rva, section.end_rva)
        new_raw_offset = max(new_raw_offset, section.end_file_offset)
    return (
        round_up_to_alignment(new_rva, opt.SectionAlignment),
        round_up_to_alignment(new_raw_offset, opt.FileAlignment),
    )


def add_section(loader: ImageLoader, name: str, size: int) -> SectionHeader | None:
    """Append a read/write section of the given size after the last one.

    Returns:
        The new section header, or None if the image has no alignments or
        already holds the maximum number of sections.
    """
    opt = loader.optional_header
    if opt.FileAlignment == 0 or opt.SectionAlignment == 0:
        return None
    if len(loader.sections) >= MAX_NUMBER_OF_SECTIONS:
        return None

    rva, raw_offset = calc_new_section_addresses(loader)
    section = SectionHeader.new(
        name,
        virtual_address=rva,
        virtual_size=round_up_to_alignment(size, opt.SectionAlignment),
        pointer_to_raw_data=raw_offset,
        size_of_raw_data=round_up_to_alignment(size, opt.FileAlignment),
        characteristics=NEW_SECTION_CHARACTERISTICS,
    )
    loader.sections.append(section)
    logger.debug("Added section %s at RVA 0x%x, file offset 0x%x", name, rva, raw_offset)
    return section


def split_section(
    loader: ImageLoader,
    index: int,
    prev_name: str,
    next_name: str,
    split_offset: int,
) -> Status:
    """Split a section in two at split_offset.

    The first part keeps the section's start and characteristics; the second
    starts split_offset bytes later in both raw and virtual space and is
    read/write/code.
    """
    opt = loader.optional_header
    if opt.FileAlignment == 0:
        return Status.NO_FILE_ALIGNMENT
    if opt.SectionAlignment == 0:
        return Status.NO_SECTION_ALIGNMENT
    if not 0 <= index < len(loader.sections):
        return Status.ENTRY_NOT_FOUND

    section = loader.sections[index]
    # Both parts must be section aligned and non-empty
    if split_offset & (opt.SectionAlignment - 1):
        return Status.NOT_ENOUGH_SPACE
    if split_offset == 0 or split_offset >= section.VirtualSize:
        return Status.NOT_ENOUGH_SPACE

    second = SectionHeader.new(
        next_name,
        virtual_address=section.VirtualAddress + split_offset,
        virtual_size=section.VirtualSize - split_offset,
        pointer_to_raw_data=section.PointerToRawData + split_offset,
        size_of_raw_data=max(section.SizeOfRawData - split_offset, 0),
        characteristics=NEW_SECTION_CHARACTERISTICS,
    )

    section.set_name(prev_name)
    section.VirtualSize = split_offset
    section.SizeOfRawData = min(split_offset, section.SizeOfRawData)

    loader.sections.insert(index + 1, second)
    return Status.NONE


def remove_section(loader: ImageLoader, index: int) -> Status:
    """Remove a section and move every later section down into its place."""
    if not 0 <= index < len(loader.sections):
        return Status.ENTRY_NOT_FOUND

    removed = loader.sections[index]
    later = loader.sections[index + 1 :]
    for section in later:
        if section.VirtualAddress < removed.VirtualSize or (
            section.PointerToRawData and section.PointerToRawData < removed.SizeOfRawData
        ):
            logger.warning(
                "Cannot remove section %s: section %s would move below zero",
                removed.name_str,
                section.name_str,
            )
            return Status.INVALID_FILE

    del loader.sections[index]
    for section in later:
        section.VirtualAddress -= removed.VirtualSize
        # Sections without raw data keep a zero pointer
        if section.PointerToRawData:
            section.PointerToRawData -= removed.SizeOfRawData
    return Status.NONE


def enlarge_last_section(loader: ImageLoader, increment: int) -> Status:
    """Grow the last section by increment bytes and extend SizeOfImage."""
    if not loader.sections:
        return Status.ENTRY_NOT_FOUND

    opt = loader.optional_header
    last = loader.sections[-1]
    new_size = round_up_to_alignment(last.SizeOfRawData + increment, opt.FileAlignment)
    last.SizeOfRawData = new_size
    last.VirtualSize = new_size
    opt.SizeOfImage = last.VirtualAddress + last.VirtualSize
    return Status.NONE


def set_data_directory(
    loader: ImageLoader,
    index: int,
    rva: int | None = None,
    size: int | None = None,
) -> Status:
    """Set a data directory entry; None leaves that half unchanged."""
    if not 0 <= index < IMAGE_NUMBEROF_DIRECTORY_ENTRIES:
        return Status.ENTRY_NOT_FOUND

    opt = loader.optional_header
    if index >= opt.NumberOfRvaAndSizes:
        opt.NumberOfRvaAndSizes = index + 1
    directory = opt.DataDirectory[index]
    if rva is not None:
        directory.VirtualAddress = rva
    if size is not None:
        directory.Size = size
    return Status.NONE


def make_valid(loader: ImageLoader) -> Status:
    """Recompute derived header fields from the section table.

    Fixes the signature, machine, optional header size and magic,
    alignments, SizeOfHeaders and SizeOfImage. If SizeOfHeaders changes,
    all raw data pointers are moved by the same amount.
    """
    if loader.dos_header is None:
        return Status.INVALID_FILE

    is_64bit = loader.get_image_bitability() == 64
    file_header = loader.file_header
    opt = loader.optional_header

    loader.nt_headers.signature = PE_SIGNATURE_VALUE

    file_header.Machine = IMAGE_FILE_MACHINE_AMD64 if is_64bit else IMAGE_FILE_MACHINE_I386
    file_header.NumberOfSections = len(loader.sections)
    file_header.SizeOfOptionalHeader = loader.get_field_offset(
        HeaderField.OPTIONAL_HEADER_SIZE
    )
    if file_header.Characteristics == 0:
        file_header.Characteristics = IMAGE_FILE_EXECUTABLE_IMAGE | IMAGE_FILE_32BIT_MACHINE

    opt.Magic = IMAGE_NT_OPTIONAL_HDR64_MAGIC if is_64bit else IMAGE_NT_OPTIONAL_HDR32_MAGIC
    opt.NumberOfRvaAndSizes = IMAGE_NUMBEROF_DIRECTORY_ENTRIES
    opt.SectionAlignment = round_up_to_alignment(opt.SectionAlignment, PAGE_SIZE) or PAGE_SIZE
    opt.FileAlignment = round_up_to_alignment(opt.FileAlignment, SECTOR_SIZE) or SECTOR_SIZE

    size_of_headers = (
        loader.dos_header.e_lfanew
        + NT_HEADERS_FIXED_SIZE
        + file_header.SizeOfOptionalHeader
        + file_header.NumberOfSections * SECTION_HEADER_SIZE
    )
    size_of_headers = round_up_to_alignment(size_of_headers, opt.FileAlignment)
    opt.SizeOfHeaders = size_of_headers

    size_of_image = round_up_to_alignment(size_of_headers, opt.SectionAlignment)
    offset_diff = 0
    if loader.sections:
        offset_diff = size_of_headers - loader.sections[0].PointerToRawData
    for section in loader.sections:
        size_of_image += round_up_to_alignment(section.VirtualSize, opt.SectionAlignment)
        # Headers grew or shrank: move the section data with them
        if offset_diff:
            section.PointerToRawData += offset_diff
    opt.SizeOfImage = round_up_to_alignment(size_of_image, opt.SectionAlignment)
    return Status.NONE
