"""
PE type definitions used by the image loader.

Both the PE32 and PE32+ optional headers are described here, together with
a bitness-independent OptionalHeader that the loader works with after
capture. Structures are dataclasses so that the section mutator can edit
header fields in place.

All structures share one packing helper (_PackedStruct). ``from_bytes`` is
strict and raises ValueError on short input, ``from_partial_bytes`` mirrors
how the NT loader copies headers out of a truncated file: whatever bytes
exist are copied into a zeroed structure.

References:
- Microsoft PE/COFF Specification
- https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
"""

import struct
from dataclasses import dataclass, field, fields
from typing import ClassVar

# =============================================================================
# Constants
# =============================================================================

PAGE_SIZE = 0x1000
SECTOR_SIZE = 0x200  # Raw data pointers are rounded down to this
FILE_ALIGNMENT_DEFAULT = 0x200
SECTION_ALIGNMENT_DEFAULT = 0x1000

# Largest image the memory manager accepts (MM_SIZE_OF_LARGEST_IMAGE)
MAX_SIZE_OF_IMAGE = 0x77000000

DOS_MAGIC = 0x5A4D  # "MZ"
PE_SIGNATURE = b"PE\x00\x00"
PE_SIGNATURE_VALUE = 0x00004550

# Machine types
IMAGE_FILE_MACHINE_UNKNOWN = 0x0
IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_ARMNT = 0x1C4
IMAGE_FILE_MACHINE_IA64 = 0x200
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xAA64

# Optional header magic
IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10B
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B

# Section characteristics
IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_MEM_DISCARDABLE = 0x02000000
IMAGE_SCN_MEM_SHARED = 0x10000000
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

# File characteristics
IMAGE_FILE_RELOCS_STRIPPED = 0x0001
IMAGE_FILE_EXECUTABLE_IMAGE = 0x0002
IMAGE_FILE_LARGE_ADDRESS_AWARE = 0x0020
IMAGE_FILE_32BIT_MACHINE = 0x0100

# DLL characteristics
IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA = 0x0020
IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE = 0x0040
IMAGE_DLLCHARACTERISTICS_NX_COMPAT = 0x0100
IMAGE_DLLCHARACTERISTICS_APPCONTAINER = 0x1000

# Data directory indices
IMAGE_DIRECTORY_ENTRY_EXPORT = 0
IMAGE_DIRECTORY_ENTRY_IMPORT = 1
IMAGE_DIRECTORY_ENTRY_RESOURCE = 2
IMAGE_DIRECTORY_ENTRY_EXCEPTION = 3
IMAGE_DIRECTORY_ENTRY_SECURITY = 4
IMAGE_DIRECTORY_ENTRY_BASERELOC = 5
IMAGE_DIRECTORY_ENTRY_DEBUG = 6
IMAGE_DIRECTORY_ENTRY_TLS = 9
IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG = 10
IMAGE_DIRECTORY_ENTRY_IAT = 12
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = 14
IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16

# Base relocation types
IMAGE_REL_BASED_ABSOLUTE = 0
IMAGE_REL_BASED_HIGH = 1
IMAGE_REL_BASED_LOW = 2
IMAGE_REL_BASED_HIGHLOW = 3
IMAGE_REL_BASED_HIGHADJ = 4
IMAGE_REL_BASED_MIPS_JMPADDR = 5
IMAGE_REL_BASED_IA64_IMM64 = 9
IMAGE_REL_BASED_DIR64 = 10

# Structure sizes
DOS_HEADER_SIZE = 64
FILE_HEADER_SIZE = 20
OPTIONAL_HEADER32_SIZE = 224  # Including data directories
OPTIONAL_HEADER64_SIZE = 240  # Including data directories
DATA_DIRECTORY_SIZE = 8
SECTION_HEADER_SIZE = 40
NT_HEADERS_FIXED_SIZE = 4 + FILE_HEADER_SIZE  # Signature + file header
COFF_SYMBOL_SIZE = 18


# =============================================================================
# PE Structures
# =============================================================================


class _PackedStruct:
    """Shared (de)serialization for fixed-layout little-endian structures.

    Subclasses are dataclasses whose leading fields map 1:1 onto STRUCT_FMT.
    Fields declared with ``metadata={"packed": False}`` are derived data and
    are not serialized.
    """

    STRUCT_FMT: ClassVar[str]
    SIZE: ClassVar[int]

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0):
        """Parse the structure, raising ValueError if data is too short."""
        if len(data) < offset + cls.SIZE:
            raise ValueError(
                f"Data too short for {cls.__name__}: {len(data)} < {offset + cls.SIZE}"
            )
        return cls(*struct.unpack_from(cls.STRUCT_FMT, data, offset))

    @classmethod
    def from_partial_bytes(cls, data: bytes | bytearray, offset: int = 0):
        """Parse the structure from whatever bytes exist; the rest reads as zero."""
        chunk = bytes(data[offset : offset + cls.SIZE]).ljust(cls.SIZE, b"\x00")
        return cls.from_bytes(chunk)

    def _packed_values(self) -> tuple:
        return tuple(
            getattr(self, f.name)
            for f in fields(self)
            if f.metadata.get("packed", True)
        )

    def to_bytes(self) -> bytes:
        """Serialize the structure."""
        return struct.pack(self.STRUCT_FMT, *self._packed_values())

    def write_to(self, data: bytearray, offset: int = 0) -> None:
        """Write the structure into a mutable buffer at offset."""
        struct.pack_into(self.STRUCT_FMT, data, offset, *self._packed_values())


@dataclass
class DosHeader(_PackedStruct):
    """DOS MZ header (IMAGE_DOS_HEADER).

    The magic is not checked here; the header capture step decides what a
    bad magic means for the load.
    """

    e_magic: int
    e_cblp: int
    e_cp: int
    e_crlc: int
    e_cparhdr: int
    e_minalloc: int
    e_maxalloc: int
    e_ss: int
    e_sp: int
    e_csum: int
    e_ip: int
    e_cs: int
    e_lfarlc: int
    e_ovno: int
    e_res: bytes
    e_oemid: int
    e_oeminfo: int
    e_res2: bytes
    e_lfanew: int  # Offset to the NT headers

    STRUCT_FMT: ClassVar[str] = "<HHHHHHHHHHHHHH8sHH20sI"
    SIZE: ClassVar[int] = DOS_HEADER_SIZE


@dataclass
class FileHeader(_PackedStruct):
    """COFF file header (IMAGE_FILE_HEADER), right after the PE signature."""

    Machine: int
    NumberOfSections: int
    TimeDateStamp: int
    PointerToSymbolTable: int
    NumberOfSymbols: int
    SizeOfOptionalHeader: int
    Characteristics: int

    STRUCT_FMT: ClassVar[str] = "<HHIIIHH"
    SIZE: ClassVar[int] = FILE_HEADER_SIZE

    @property
    def is_executable(self) -> bool:
        return bool(self.Characteristics & IMAGE_FILE_EXECUTABLE_IMAGE)

    @property
    def relocs_stripped(self) -> bool:
        return bool(self.Characteristics & IMAGE_FILE_RELOCS_STRIPPED)


@dataclass
class DataDirectory(_PackedStruct):
    """Data directory entry (IMAGE_DATA_DIRECTORY)."""

    VirtualAddress: int = 0
    Size: int = 0

    STRUCT_FMT: ClassVar[str] = "<II"
    SIZE: ClassVar[int] = DATA_DIRECTORY_SIZE

    @property
    def is_present(self) -> bool:
        return self.VirtualAddress != 0 or self.Size != 0


@dataclass
class OptionalHeader32(_PackedStruct):
    """PE32 optional header (IMAGE_OPTIONAL_HEADER32), fixed part only.

    Data directories follow the 96-byte fixed part on disk.
    """

    Magic: int
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    BaseOfData: int
    ImageBase: int  # 4 bytes for PE32
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int
    SizeOfStackCommit: int
    SizeOfHeapReserve: int
    SizeOfHeapCommit: int
    LoaderFlags: int
    NumberOfRvaAndSizes: int

    # 2 + 1 + 1 + 4*9 + 2*6 + 4*4 + 2*2 + 4*6 = 96 bytes
    STRUCT_FMT: ClassVar[str] = "<HBBIIIIIIIIIHHHHHHIIIIHHIIIIII"
    SIZE: ClassVar[int] = 96
    FULL_SIZE: ClassVar[int] = OPTIONAL_HEADER32_SIZE


@dataclass
class OptionalHeader64(_PackedStruct):
    """PE32+ optional header (IMAGE_OPTIONAL_HEADER64), fixed part only."""

    Magic: int
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    ImageBase: int  # 8 bytes for PE32+
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int
    SizeOfStackCommit: int
    SizeOfHeapReserve: int
    SizeOfHeapCommit: int
    LoaderFlags: int
    NumberOfRvaAndSizes: int

    # 2 + 1 + 1 + 4*5 + 8 + 4*2 + 2*6 + 4*4 + 2*2 + 8*4 + 4*2 = 112 bytes
    STRUCT_FMT: ClassVar[str] = "<HBBIIIIIQIIHHHHHHIIIIHHQQQQII"
    SIZE: ClassVar[int] = 112
    FULL_SIZE: ClassVar[int] = OPTIONAL_HEADER64_SIZE


# Field offsets shared by both optional header layouts
OPTIONAL_HEADER_CHECKSUM_OFFSET = 64


@dataclass
class OptionalHeader:
    """Bitness-independent optional header.

    The loader normalizes both on-disk variants into this form. BaseOfData
    only exists in PE32 and is zero for PE32+ images. DataDirectory always
    holds IMAGE_NUMBEROF_DIRECTORY_ENTRIES entries; only the first
    NumberOfRvaAndSizes of them were present on disk.
    """

    Magic: int = 0
    MajorLinkerVersion: int = 0
    MinorLinkerVersion: int = 0
    SizeOfCode: int = 0
    SizeOfInitializedData: int = 0
    SizeOfUninitializedData: int = 0
    AddressOfEntryPoint: int = 0
    BaseOfCode: int = 0
    BaseOfData: int = 0
    ImageBase: int = 0
    SectionAlignment: int = 0
    FileAlignment: int = 0
    MajorOperatingSystemVersion: int = 0
    MinorOperatingSystemVersion: int = 0
    MajorImageVersion: int = 0
    MinorImageVersion: int = 0
    MajorSubsystemVersion: int = 0
    MinorSubsystemVersion: int = 0
    Win32VersionValue: int = 0
    SizeOfImage: int = 0
    SizeOfHeaders: int = 0
    CheckSum: int = 0
    Subsystem: int = 0
    DllCharacteristics: int = 0
    SizeOfStackReserve: int = 0
    SizeOfStackCommit: int = 0
    SizeOfHeapReserve: int = 0
    SizeOfHeapCommit: int = 0
    LoaderFlags: int = 0
    NumberOfRvaAndSizes: int = 0
    DataDirectory: list[DataDirectory] = field(
        default_factory=lambda: [
            DataDirectory() for _ in range(IMAGE_NUMBEROF_DIRECTORY_ENTRIES)
        ]
    )

    @classmethod
    def from_raw(
        cls,
        raw: OptionalHeader32 | OptionalHeader64,
        directories: list[DataDirectory],
    ) -> "OptionalHeader":
        """Normalize a captured PE32 or PE32+ header."""
        header = cls()
        for f in fields(raw):
            setattr(header, f.name, getattr(raw, f.name))
        header.NumberOfRvaAndSizes = min(
            raw.NumberOfRvaAndSizes, IMAGE_NUMBEROF_DIRECTORY_ENTRIES
        )
        for index, directory in enumerate(directories[: header.NumberOfRvaAndSizes]):
            header.DataDirectory[index] = directory
        return header

    @property
    def is_64bit(self) -> bool:
        return self.Magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC

    @property
    def has_aslr(self) -> bool:
        return bool(self.DllCharacteristics & IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE)

    def directory(self, index: int) -> DataDirectory:
        """Return a data directory, or an empty one if it is not present."""
        if index < self.NumberOfRvaAndSizes:
            return self.DataDirectory[index]
        return DataDirectory()


@dataclass
class SectionHeader(_PackedStruct):
    """PE section header (IMAGE_SECTION_HEADER).

    ``full_name`` carries the resolved name: either the long name from the
    COFF string table, or the 8-byte short name with zero bytes removed.
    """

    Name: bytes
    VirtualSize: int
    VirtualAddress: int
    SizeOfRawData: int
    PointerToRawData: int
    PointerToRelocations: int
    PointerToLinenumbers: int
    NumberOfRelocations: int
    NumberOfLinenumbers: int
    Characteristics: int
    full_name: str = field(default="", compare=False, metadata={"packed": False})

    STRUCT_FMT: ClassVar[str] = "<8sIIIIIIHHI"
    SIZE: ClassVar[int] = SECTION_HEADER_SIZE

    @classmethod
    def new(
        cls,
        name: str,
        virtual_address: int = 0,
        virtual_size: int = 0,
        pointer_to_raw_data: int = 0,
        size_of_raw_data: int = 0,
        characteristics: int = 0,
    ) -> "SectionHeader":
        """Create a section header; names longer than 8 bytes are truncated on disk."""
        return cls(
            Name=section_name_to_bytes(name[:8]),
            VirtualSize=virtual_size,
            VirtualAddress=virtual_address,
            SizeOfRawData=size_of_raw_data,
            PointerToRawData=pointer_to_raw_data,
            PointerToRelocations=0,
            PointerToLinenumbers=0,
            NumberOfRelocations=0,
            NumberOfLinenumbers=0,
            Characteristics=characteristics,
            full_name=name,
        )

    @property
    def name_str(self) -> str:
        """Resolved section name."""
        if self.full_name:
            return self.full_name
        return self.Name.replace(b"\x00", b"").decode("latin-1")

    def set_name(self, name: str) -> None:
        """Rename the section; names longer than 8 bytes are truncated on disk."""
        self.Name = section_name_to_bytes(name[:8])
        self.full_name = name

    @property
    def end_rva(self) -> int:
        return self.VirtualAddress + self.VirtualSize

    @property
    def end_file_offset(self) -> int:
        return self.PointerToRawData + self.SizeOfRawData


@dataclass
class BaseRelocationBlock(_PackedStruct):
    """Base relocation block header; TypeOffset entries follow it."""

    VirtualAddress: int  # Page RVA the entries are relative to
    SizeOfBlock: int  # Including this header

    STRUCT_FMT: ClassVar[str] = "<II"
    SIZE: ClassVar[int] = 8


@dataclass
class BaseRelocationEntry(_PackedStruct):
    """Single base relocation entry: type in the high 4 bits, page offset in the low 12."""

    raw: int

    STRUCT_FMT: ClassVar[str] = "<H"
    SIZE: ClassVar[int] = 2

    @property
    def reloc_type(self) -> int:
        return self.raw >> 12

    @property
    def offset(self) -> int:
        return self.raw & 0xFFF


# =============================================================================
# Helper Functions
# =============================================================================


def round_up_to_alignment(value: int, alignment: int) -> int:
    """Round value up to next alignment boundary."""
    if alignment == 0:
        return value
    return (value + alignment - 1) & ~(alignment - 1)


def round_down_to_alignment(value: int, alignment: int) -> int:
    """Round value down to previous alignment boundary."""
    if alignment == 0:
        return value
    return value & ~(alignment - 1)


def round_up_to_page(addr: int) -> int:
    return round_up_to_alignment(addr, PAGE_SIZE)


def bytes_to_pages(size: int) -> int:
    """Number of pages needed to hold size bytes."""
    return (size + PAGE_SIZE - 1) // PAGE_SIZE


def is_power_of_two(value: int) -> bool:
    return value != 0 and (value & (value - 1)) == 0


def section_name_to_bytes(name: str) -> bytes:
    """Convert section name string to 8-byte padded bytes.

    Section names are limited to 8 characters in PE/COFF.
    """
    encoded = name.encode("latin-1")
    if len(encoded) > 8:
        raise ValueError(f"Section name too long (max 8 chars): {name}")
    return encoded.ljust(8, b"\x00")
