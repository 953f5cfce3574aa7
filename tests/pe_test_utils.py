"""
Synthetic PE image builder for loader tests.

Real Windows binaries exercising each loader quirk are hard to come by, so
tests build minimal images byte by byte. The default layout is:

    0x000  DOS header (e_lfanew = 0x80)
    0x080  PE signature, file header, optional header, section table
    0x400  raw data of the first section (SizeOfHeaders = 0x400)

Sections are laid out in order: each one starts at the section-aligned end
of the previous one in memory and at the file-aligned end in the file.
Every address can be overridden to build broken images.
"""

import struct
from dataclasses import dataclass, field

from peimage.types import (
    IMAGE_DIRECTORY_ENTRY_BASERELOC,
    IMAGE_FILE_32BIT_MACHINE,
    IMAGE_FILE_EXECUTABLE_IMAGE,
    IMAGE_FILE_MACHINE_AMD64,
    IMAGE_FILE_MACHINE_I386,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    round_up_to_alignment,
)

TEXT_CHARACTERISTICS = IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ
DATA_CHARACTERISTICS = IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE
RELOC_CHARACTERISTICS = IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ

IMAGE_BASE_64 = 0x140000000
IMAGE_BASE_32 = 0x400000

# Field offsets inside the optional header
OPT_ADDRESS_OF_ENTRY_POINT = 16
OPT_IMAGE_BASE = {32: 28, 64: 24}
OPT_SECTION_ALIGNMENT = 32
OPT_FILE_ALIGNMENT = 36
OPT_SIZE_OF_IMAGE = 56
OPT_SIZE_OF_HEADERS = 60
OPT_SUBSYSTEM = 68
OPT_DLL_CHARACTERISTICS = 70
OPT_NUMBER_OF_RVA_AND_SIZES = {32: 92, 64: 108}
OPT_FIXED_SIZE = {32: 96, 64: 112}


@dataclass
class SectionSpec:
    """Layout of one section in a built image."""

    name: bytes
    virtual_address: int
    virtual_size: int
    pointer_to_raw_data: int
    size_of_raw_data: int
    characteristics: int
    data: bytes = b""


@dataclass
class PeImageBuilder:
    """Builds a synthetic PE32 or PE32+ file.

    Usage:
        builder = PeImageBuilder()
        text_rva = builder.add_section(".text", 0x50, data=b"\\xc3")
        data = builder.build()
    """

    bitness: int = 64
    section_alignment: int = 0x1000
    file_alignment: int = 0x200
    size_of_headers: int = 0x400
    e_lfanew: int = 0x80
    image_base: int | None = None
    machine: int | None = None
    characteristics: int | None = None
    dll_characteristics: int = 0
    magic: int | None = None
    number_of_rva_and_sizes: int = IMAGE_NUMBEROF_DIRECTORY_ENTRIES
    size_of_optional_header: int | None = None
    size_of_image: int | None = None
    number_of_sections: int | None = None
    string_table: bytes | None = None
    sections: list[SectionSpec] = field(default_factory=list)
    directories: dict[int, tuple[int, int]] = field(default_factory=dict)

    def __post_init__(self):
        self._next_rva = round_up_to_alignment(self.size_of_headers, self.section_alignment)
        self._next_raw = round_up_to_alignment(self.size_of_headers, self.file_alignment)

    @property
    def optional_header_offset(self) -> int:
        return self.e_lfanew + 24

    @property
    def section_table_offset(self) -> int:
        return self.optional_header_offset + self._size_of_optional_header()

    def _size_of_optional_header(self) -> int:
        if self.size_of_optional_header is not None:
            return self.size_of_optional_header
        return OPT_FIXED_SIZE[self.bitness] + 8 * IMAGE_NUMBEROF_DIRECTORY_ENTRIES

    def add_section(
        self,
        name: str | bytes,
        virtual_size: int,
        data: bytes = b"",
        characteristics: int = TEXT_CHARACTERISTICS,
        virtual_address: int | None = None,
        pointer_to_raw_data: int | None = None,
        size_of_raw_data: int | None = None,
    ) -> int:
        """Append a section; returns its virtual address."""
        if isinstance(name, str):
            name = name.encode("latin-1")
        if size_of_raw_data is None:
            size_of_raw_data = round_up_to_alignment(len(data), self.file_alignment)
        if virtual_address is None:
            virtual_address = self._next_rva
        if pointer_to_raw_data is None:
            pointer_to_raw_data = self._next_raw if size_of_raw_data else 0

        self.sections.append(
            SectionSpec(
                name=name.ljust(8, b"\x00")[:8],
                virtual_address=virtual_address,
                virtual_size=virtual_size,
                pointer_to_raw_data=pointer_to_raw_data,
                size_of_raw_data=size_of_raw_data,
                characteristics=characteristics,
                data=data,
            )
        )
        extent = virtual_size or size_of_raw_data
        self._next_rva = virtual_address + round_up_to_alignment(
            extent, self.section_alignment
        )
        if size_of_raw_data:
            self._next_raw = max(self._next_raw, pointer_to_raw_data + size_of_raw_data)
        return virtual_address

    def set_directory(self, index: int, rva: int, size: int) -> None:
        self.directories[index] = (rva, size)

    def add_relocations(self, blocks: bytes) -> int:
        """Add a .reloc section holding blocks and point the directory at it."""
        rva = self.add_section(
            ".reloc", len(blocks), data=blocks, characteristics=RELOC_CHARACTERISTICS
        )
        self.set_directory(IMAGE_DIRECTORY_ENTRY_BASERELOC, rva, len(blocks))
        return rva

    def build(self) -> bytearray:
        is_64bit = self.bitness == 64
        image_base = self.image_base
        if image_base is None:
            image_base = IMAGE_BASE_64 if is_64bit else IMAGE_BASE_32
        machine = self.machine
        if machine is None:
            machine = IMAGE_FILE_MACHINE_AMD64 if is_64bit else IMAGE_FILE_MACHINE_I386
        characteristics = self.characteristics
        if characteristics is None:
            characteristics = IMAGE_FILE_EXECUTABLE_IMAGE
            if not is_64bit:
                characteristics |= IMAGE_FILE_32BIT_MACHINE
        magic = self.magic
        if magic is None:
            magic = IMAGE_NT_OPTIONAL_HDR64_MAGIC if is_64bit else IMAGE_NT_OPTIONAL_HDR32_MAGIC
        size_of_image = self.size_of_image
        if size_of_image is None:
            size_of_image = self._next_rva

        file_size = max(self.size_of_headers, self._next_raw)
        data = bytearray(file_size)

        # DOS header
        data[0:2] = b"MZ"
        struct.pack_into("<I", data, 0x3C, self.e_lfanew)

        # NT signature and file header
        struct.pack_into("<I", data, self.e_lfanew, 0x00004550)
        number_of_sections = self.number_of_sections
        if number_of_sections is None:
            number_of_sections = len(self.sections)
        struct.pack_into(
            "<HHIIIHH",
            data,
            self.e_lfanew + 4,
            machine,
            number_of_sections,
            0,
            0,
            0,
            self._size_of_optional_header(),
            characteristics,
        )

        # Optional header
        opt = self.optional_header_offset
        struct.pack_into("<H", data, opt, magic)
        entry = self.sections[0].virtual_address if self.sections else 0
        struct.pack_into("<I", data, opt + OPT_ADDRESS_OF_ENTRY_POINT, entry)
        if is_64bit:
            struct.pack_into("<Q", data, opt + OPT_IMAGE_BASE[64], image_base)
        else:
            struct.pack_into("<I", data, opt + OPT_IMAGE_BASE[32], image_base)
        struct.pack_into("<I", data, opt + OPT_SECTION_ALIGNMENT, self.section_alignment)
        struct.pack_into("<I", data, opt + OPT_FILE_ALIGNMENT, self.file_alignment)
        struct.pack_into("<I", data, opt + OPT_SIZE_OF_IMAGE, size_of_image)
        struct.pack_into("<I", data, opt + OPT_SIZE_OF_HEADERS, self.size_of_headers)
        struct.pack_into("<H", data, opt + OPT_SUBSYSTEM, 3)
        struct.pack_into("<H", data, opt + OPT_DLL_CHARACTERISTICS, self.dll_characteristics)
        struct.pack_into(
            "<I",
            data,
            opt + OPT_NUMBER_OF_RVA_AND_SIZES[self.bitness],
            self.number_of_rva_and_sizes,
        )
        directories = opt + OPT_FIXED_SIZE[self.bitness]
        for index, (rva, size) in self.directories.items():
            struct.pack_into("<II", data, directories + index * 8, rva, size)

        # Section table and raw data
        offset = self.section_table_offset
        for section in self.sections:
            struct.pack_into(
                "<8sIIIIIIHHI",
                data,
                offset,
                section.name,
                section.virtual_size,
                section.virtual_address,
                section.size_of_raw_data,
                section.pointer_to_raw_data,
                0,
                0,
                0,
                0,
                section.characteristics,
            )
            offset += 40
            if section.data:
                start = section.pointer_to_raw_data
                data[start : start + len(section.data)] = section.data

        if self.string_table is not None:
            # No symbols: the string table directly follows PointerToSymbolTable
            struct.pack_into("<I", data, self.e_lfanew + 4 + 8, len(data))
            data += self.string_table

        return data


def build_relocation_block(page_rva: int, entries: list[tuple[int, int]]) -> bytes:
    """Build one base relocation block from (type, page offset) pairs."""
    raw = [(reloc_type << 12) | (offset & 0xFFF) for reloc_type, offset in entries]
    return build_raw_relocation_block(page_rva, raw)


def build_raw_relocation_block(page_rva: int, raw_entries: list[int]) -> bytes:
    """Build one base relocation block from raw 16-bit entries."""
    size = 8 + 2 * len(raw_entries)
    return struct.pack(f"<II{len(raw_entries)}H", page_rva, size, *raw_entries)


def text_data(size: int = 0x200, **values: int) -> bytearray:
    """Section content filled with a byte pattern.

    Keyword arguments named ``u32_<hex offset>`` or ``u64_<hex offset>``
    store little-endian values, e.g. ``text_data(u32_10=0x40001000)``.
    """
    data = bytearray((i * 7 + 1) & 0xFF for i in range(size))
    for key, value in values.items():
        kind, offset = key.split("_")
        fmt = {"u16": "<H", "u32": "<I", "u64": "<Q"}[kind]
        struct.pack_into(fmt, data, int(offset, 16), value)
    return data
