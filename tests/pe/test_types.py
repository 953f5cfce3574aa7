"""Tests for PE type definitions and parsing."""

import pytest
import struct

from peimage.types import (
    BaseRelocationBlock,
    BaseRelocationEntry,
    DataDirectory,
    DosHeader,
    FileHeader,
    IMAGE_FILE_EXECUTABLE_IMAGE,
    IMAGE_FILE_RELOCS_STRIPPED,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_REL_BASED_DIR64,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    OptionalHeader,
    OptionalHeader32,
    OptionalHeader64,
    SectionHeader,
    bytes_to_pages,
    is_power_of_two,
    round_down_to_alignment,
    round_up_to_alignment,
    round_up_to_page,
    section_name_to_bytes,
)


class TestStructSizes:
    """The struct formats must match the on-disk layouts."""

    def test_fixed_sizes(self):
        """Test that every STRUCT_FMT packs to its declared size."""
        for cls in (
            DosHeader,
            FileHeader,
            DataDirectory,
            OptionalHeader32,
            OptionalHeader64,
            SectionHeader,
            BaseRelocationBlock,
        ):
            assert struct.calcsize(cls.STRUCT_FMT) == cls.SIZE, cls.__name__

    def test_optional_header_full_sizes(self):
        """Test the full optional header sizes include 16 data directories."""
        assert OptionalHeader32.FULL_SIZE == OptionalHeader32.SIZE + 16 * 8
        assert OptionalHeader64.FULL_SIZE == OptionalHeader64.SIZE + 16 * 8


class TestDosHeader:
    """Tests for DOS header parsing."""

    def test_parse_header(self):
        """Test parsing e_magic and e_lfanew."""
        data = bytearray(64)
        struct.pack_into("<H", data, 0, 0x5A4D)
        struct.pack_into("<I", data, 60, 0x80)

        header = DosHeader.from_bytes(data)
        assert header.e_magic == 0x5A4D
        assert header.e_lfanew == 0x80

    def test_bad_magic_is_not_rejected_here(self):
        """Test that the magic check is left to header capture."""
        data = bytearray(64)
        header = DosHeader.from_bytes(data)
        assert header.e_magic == 0

    def test_short_data_raises(self):
        """Test that from_bytes refuses truncated input."""
        with pytest.raises(ValueError, match="Data too short for DosHeader"):
            DosHeader.from_bytes(b"MZ")

    def test_write_to_buffer(self):
        """Test writing the header into a larger buffer."""
        data = bytearray(64)
        struct.pack_into("<I", data, 60, 0x100)
        header = DosHeader.from_bytes(data)

        out = bytearray(128)
        header.write_to(out, 64)
        assert struct.unpack_from("<I", out, 124)[0] == 0x100


class TestPartialCapture:
    """Tests for zero-padded capture of truncated structures."""

    def test_partial_bytes_zero_fill(self):
        """Test that missing bytes read as zero."""
        data = struct.pack("<HH", 0x14C, 3)
        header = FileHeader.from_partial_bytes(data)
        assert header.Machine == 0x14C
        assert header.NumberOfSections == 3
        assert header.Characteristics == 0

    def test_partial_bytes_past_end(self):
        """Test that an offset past the data yields an all-zero structure."""
        header = DataDirectory.from_partial_bytes(b"\x01" * 4, 16)
        assert header.VirtualAddress == 0
        assert header.Size == 0


class TestFileHeader:
    """Tests for file header flags."""

    def test_flags(self):
        """Test characteristic properties."""
        header = FileHeader(
            0x8664, 1, 0, 0, 0, 240,
            IMAGE_FILE_EXECUTABLE_IMAGE | IMAGE_FILE_RELOCS_STRIPPED,
        )
        assert header.is_executable
        assert header.relocs_stripped


class TestOptionalHeader:
    """Tests for optional header normalization."""

    def _raw64(self, **overrides) -> OptionalHeader64:
        data = bytearray(OptionalHeader64.SIZE)
        struct.pack_into("<H", data, 0, IMAGE_NT_OPTIONAL_HDR64_MAGIC)
        struct.pack_into("<Q", data, 24, 0x140000000)
        struct.pack_into("<I", data, 108, 16)
        raw = OptionalHeader64.from_bytes(data)
        for name, value in overrides.items():
            setattr(raw, name, value)
        return raw

    def test_from_raw_64bit(self):
        """Test that a PE32+ header normalizes with BaseOfData zero."""
        header = OptionalHeader.from_raw(self._raw64(), [DataDirectory(0x1000, 0x20)] * 16)
        assert header.is_64bit
        assert header.ImageBase == 0x140000000
        assert header.BaseOfData == 0
        assert header.DataDirectory[0].VirtualAddress == 0x1000

    def test_from_raw_32bit(self):
        """Test that a PE32 header keeps BaseOfData."""
        data = bytearray(OptionalHeader32.SIZE)
        struct.pack_into("<H", data, 0, IMAGE_NT_OPTIONAL_HDR32_MAGIC)
        struct.pack_into("<I", data, 24, 0x3000)  # BaseOfData
        struct.pack_into("<I", data, 28, 0x400000)  # ImageBase
        header = OptionalHeader.from_raw(OptionalHeader32.from_bytes(data), [])
        assert not header.is_64bit
        assert header.BaseOfData == 0x3000
        assert header.ImageBase == 0x400000

    def test_number_of_rva_and_sizes_capped(self):
        """Test that NumberOfRvaAndSizes is capped at 16."""
        header = OptionalHeader.from_raw(
            self._raw64(NumberOfRvaAndSizes=0x1000), [DataDirectory()] * 16
        )
        assert header.NumberOfRvaAndSizes == 16
        assert len(header.DataDirectory) == 16

    def test_directory_beyond_count_is_empty(self):
        """Test that directories past NumberOfRvaAndSizes are not exposed."""
        header = OptionalHeader.from_raw(
            self._raw64(NumberOfRvaAndSizes=2), [DataDirectory(0x1000, 8)] * 16
        )
        assert header.directory(1).VirtualAddress == 0x1000
        assert not header.directory(5).is_present


class TestSectionHeader:
    """Tests for section header parsing and editing."""

    def test_parse_and_serialize(self):
        """Test that the resolved name is not serialized."""
        data = struct.pack(
            "<8sIIIIIIHHI", b".text\x00\x00\x00", 0x50, 0x1000, 0x200, 0x400, 0, 0, 0, 0,
            IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_EXECUTE,
        )
        section = SectionHeader.from_bytes(data)
        section.full_name = ".text_long_name"
        assert section.to_bytes() == data
        assert section.end_rva == 0x1050
        assert section.end_file_offset == 0x600

    def test_new_and_rename(self):
        """Test creating a section and renaming it with a long name."""
        section = SectionHeader.new(".data", 0x2000, 0x1000, 0x600, 0x200, IMAGE_SCN_MEM_WRITE)
        assert section.name_str == ".data"
        section.set_name(".long_section")
        assert section.Name == b".long_se"
        assert section.name_str == ".long_section"

    def test_name_str_drops_embedded_zeros(self):
        """Test that zero bytes inside the short name are dropped."""
        section = SectionHeader.new("x")
        section.Name = b".te\x00xt\x00\x00"
        section.full_name = ""
        assert section.name_str == ".text"


class TestBaseRelocation:
    """Tests for relocation structures."""

    def test_entry_fields(self):
        """Test type and offset extraction."""
        entry = BaseRelocationEntry((IMAGE_REL_BASED_DIR64 << 12) | 0x123)
        assert entry.reloc_type == IMAGE_REL_BASED_DIR64
        assert entry.offset == 0x123

    def test_block_header(self):
        """Test parsing a block header at an offset."""
        block = BaseRelocationBlock.from_bytes(b"\xff" * 4 + struct.pack("<II", 0x1000, 14), 4)
        assert block.VirtualAddress == 0x1000
        assert block.SizeOfBlock == 14


class TestHelpers:
    """Tests for alignment helpers."""

    def test_round_up(self):
        """Test rounding up, including zero alignment."""
        assert round_up_to_alignment(0x401, 0x200) == 0x600
        assert round_up_to_alignment(0x400, 0x200) == 0x400
        assert round_up_to_alignment(0x401, 0) == 0x401
        assert round_up_to_page(1) == 0x1000

    def test_round_down(self):
        """Test rounding down to a sector."""
        assert round_down_to_alignment(0x5FF, 0x200) == 0x400
        assert round_down_to_alignment(0x5FF, 0) == 0x5FF

    def test_bytes_to_pages(self):
        """Test page counting."""
        assert bytes_to_pages(0) == 0
        assert bytes_to_pages(1) == 1
        assert bytes_to_pages(0x2000) == 2
        assert bytes_to_pages(0x2001) == 3

    def test_is_power_of_two(self):
        """Test power-of-two detection."""
        assert is_power_of_two(0x1000)
        assert not is_power_of_two(0)
        assert not is_power_of_two(0x300)

    def test_section_name_to_bytes(self):
        """Test padding and the 8-byte limit."""
        assert section_name_to_bytes(".bss") == b".bss\x00\x00\x00\x00"
        with pytest.raises(ValueError, match="too long"):
            section_name_to_bytes(".verylongname")
