"""Tests for the page mapper."""

import pytest

from peimage import ImageLoader, LoaderConfiguration, PageMarker, PageTable, WindowsVersion
from peimage.mapper import (
    PAGE_EXECUTE_READ,
    PAGE_EXECUTE_WRITECOPY,
    PAGE_NOACCESS,
    PAGE_READONLY,
    PAGE_READWRITE,
    PAGE_WRITECOPY,
    get_image_protection,
)
from peimage.types import (
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_SHARED,
    IMAGE_SCN_MEM_WRITE,
    PAGE_SIZE,
)
from pe_test_utils import DATA_CHARACTERISTICS, PeImageBuilder, text_data


def _load(data, config=None) -> ImageLoader:
    loader = ImageLoader(config)
    loader.load(data)
    return loader


class TestImageProtection:
    """Tests for the characteristics to page protection table."""

    @pytest.mark.parametrize(
        "characteristics,protection",
        [
            (0, PAGE_NOACCESS),
            (IMAGE_SCN_MEM_READ, PAGE_READONLY),
            (IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_EXECUTE, PAGE_EXECUTE_READ),
            (IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE, PAGE_WRITECOPY),
            (IMAGE_SCN_MEM_WRITE | IMAGE_SCN_MEM_EXECUTE, PAGE_EXECUTE_WRITECOPY),
            (IMAGE_SCN_MEM_READ | IMAGE_SCN_MEM_WRITE | IMAGE_SCN_MEM_SHARED, PAGE_READWRITE),
            (IMAGE_SCN_CNT_INITIALIZED_DATA, PAGE_NOACCESS),
        ],
    )
    def test_protection(self, characteristics, protection):
        """Test protection lookups."""
        assert get_image_protection(characteristics) == protection
        assert ImageLoader.get_image_protection(characteristics) == protection


class TestSectionMapping:
    """Tests for section-granular mapping."""

    def test_minimal_image_pages(self, minimal_image):
        """Test the page layout of a one-section image."""
        loader = _load(minimal_image)
        pages = loader.pages

        assert len(pages) == 2
        assert bytes(pages[0]) == bytes(minimal_image[:0x400])
        assert bytes(pages[1]) == bytes(minimal_image[0x400:0x600])
        assert loader.read_image(0x1200, 0x10) == bytes(0x10)

    def test_virtual_size_beyond_raw_data(self, two_section_image):
        """Test that virtual pages past the raw data are demand-zero."""
        loader = _load(two_section_image)
        pages = loader.pages

        assert len(pages) == 4
        assert isinstance(pages[2], bytearray)
        assert pages[3] is PageMarker.ZERO
        assert pages.is_zero_page(3)
        assert loader.read_image(0x2000, 4) == b"DATA"

    def test_noaccess_section(self):
        """Test that a section without access rights is not mapped."""
        builder = PeImageBuilder()
        builder.add_section(
            ".junk", 0x100, data=b"J" * 0x200, characteristics=IMAGE_SCN_CNT_INITIALIZED_DATA
        )
        loader = _load(builder.build())

        assert loader.pages[1] is PageMarker.INACCESSIBLE
        assert not loader.pages.is_accessible(1)
        assert loader.read_image(0x1000, 4) == bytes(4)

    def test_alignment_gap_is_inaccessible(self):
        """Test that padding up to SectionAlignment stays inaccessible."""
        builder = PeImageBuilder(section_alignment=0x2000)
        builder.add_section(".text", 0x50, data=text_data(0x200))
        loader = _load(builder.build())
        pages = loader.pages

        assert len(pages) == 4
        assert isinstance(pages[0], bytearray)
        assert pages[1] is PageMarker.INACCESSIBLE
        assert isinstance(pages[2], bytearray)
        assert pages[3] is PageMarker.INACCESSIBLE

    def test_raw_pointer_rounded_down_to_sector(self):
        """Test that PointerToRawData is rounded down to 512 bytes."""
        builder = PeImageBuilder()
        builder.add_section(".text", 0x50, data=text_data(0x200))
        builder.add_section(
            ".data", 0x100, data=b"D" * 0x200, characteristics=DATA_CHARACTERISTICS,
            pointer_to_raw_data=0x610,
        )
        data = builder.build()
        loader = _load(data)

        assert loader.get_real_pointer_to_raw_data(1) == 0x600
        assert loader.read_image(0x2000, 0x10) == bytes(data[0x600:0x610])


class TestSingleSubsection:
    """Tests for images mapped as one flat region."""

    def _image(self) -> bytearray:
        builder = PeImageBuilder(section_alignment=0x200)
        builder.add_section(".text", 0x1000, data=text_data(0x1000))
        return builder.build()

    def test_mapped_as_file(self):
        """Test that the file is mapped as-is."""
        data = self._image()
        loader = _load(data)

        assert loader.single_subsection
        assert loader.size_of_image == 0x1400
        assert len(loader.pages) == 2
        assert loader.read_image(0, len(data)) == bytes(data)
        assert loader.get_real_pointer_to_raw_data(0) == 0x400

    def test_small_image_gets_one_page(self):
        """Test that a tiny single-subsection image still spans a page."""
        builder = PeImageBuilder(section_alignment=0x200)
        builder.add_section(".text", 0x200, data=text_data(0x200))
        loader = _load(builder.build(), LoaderConfiguration.for_windows(WindowsVersion.WIN10))
        assert len(loader.pages) == 1


class TestXpHeaderSize:
    """Tests for the Windows XP header region heuristic."""

    def _image(self) -> bytearray:
        builder = PeImageBuilder(e_lfanew=0x800, size_of_headers=0xA00)
        builder.add_section(".text", 0x50, data=text_data(0x200))
        return builder.build()

    def test_xp_maps_whole_header_region(self):
        """Test that XP maps a full SectionAlignment of headers when the table spills."""
        data = self._image()
        loader = _load(data, LoaderConfiguration.for_windows(WindowsVersion.XP))
        assert loader.read_image(0xA00, 0x200) == bytes(data[0xA00:0xC00])

    def test_default_maps_size_of_headers(self):
        """Test that other modes map exactly SizeOfHeaders."""
        loader = _load(self._image())
        assert loader.read_image(0xA00, 0x200) == bytes(0x200)


class TestPageTable:
    """Tests for byte access across pages."""

    def test_read_across_pages(self):
        """Test reading a range spanning a data and a zero page."""
        pages = PageTable(2)
        pages.set_data(0, b"\x01" * PAGE_SIZE)
        pages.set_zero(1)
        data = pages.read(PAGE_SIZE - 2, 4, pages.size)
        assert data == b"\x01\x01\x00\x00"

    def test_read_clipped_to_limit(self):
        """Test that reads stop at the limit."""
        pages = PageTable(2)
        assert len(pages.read(0x1FF0, 0x100, pages.size)) == 0x10
        assert pages.read(0x3000, 4, pages.size) == b""

    def test_write_materializes_marker_page(self):
        """Test that writing a zero page gives it a buffer."""
        pages = PageTable(1)
        assert pages.write(0x10, b"abc", pages.size) == 3
        assert isinstance(pages[0], bytearray)
        assert pages.read(0x10, 3, pages.size) == b"abc"

    def test_short_page_extends_on_write(self):
        """Test writing past the stored length of a short page."""
        pages = PageTable(1)
        pages.set_data(0, b"xy")
        pages.write(0x100, b"z", pages.size)
        assert pages.read(0, 3, pages.size) == b"xy\x00"
        assert pages.read(0x100, 1, pages.size) == b"z"

    def test_string_length(self):
        """Test string length scanning across page boundaries."""
        pages = PageTable(2)
        pages.set_data(0, b"\x00" * (PAGE_SIZE - 3) + b"abc")
        pages.set_data(1, b"de\x00")
        assert pages.string_length(PAGE_SIZE - 3, 100, pages.size) == 5
        assert pages.string_length(PAGE_SIZE - 3, 4, pages.size) == 4
