import pytest

from peimage import ImageLoader, LoaderConfiguration, WindowsVersion
from pe_test_utils import (
    DATA_CHARACTERISTICS,
    PeImageBuilder,
    build_relocation_block,
    text_data,
)
from peimage.types import IMAGE_REL_BASED_ABSOLUTE, IMAGE_REL_BASED_HIGHLOW


# =============================================================================
# Synthetic images
# =============================================================================
#
# Layout shared by most tests (64-bit, SectionAlignment 0x1000,
# FileAlignment 0x200, SizeOfHeaders 0x400):
#
#   .text  VA 0x1000  VirtualSize 0x50   raw 0x400..0x600
#   .data  VA 0x2000  VirtualSize 0x1800 raw 0x600..0x800


@pytest.fixture
def minimal_image() -> bytearray:
    """64-bit image with a single .text section (VirtualSize 0x50, 0x200 raw bytes)."""
    builder = PeImageBuilder()
    builder.add_section(".text", 0x50, data=text_data(0x200))
    return builder.build()


@pytest.fixture
def two_section_image() -> bytearray:
    """64-bit image with .text and a .data section larger than its raw data."""
    builder = PeImageBuilder()
    builder.add_section(".text", 0x50, data=text_data(0x200))
    builder.add_section(
        ".data", 0x1800, data=b"DATA" * 0x80, characteristics=DATA_CHARACTERISTICS
    )
    return builder.build()


@pytest.fixture
def relocatable_image() -> bytearray:
    """64-bit image whose .text holds 0x40001000 at +0x10, with one HIGHLOW fixup for it."""
    builder = PeImageBuilder()
    text_rva = builder.add_section(".text", 0x50, data=text_data(0x200, u32_10=0x40001000))
    builder.add_relocations(
        build_relocation_block(
            text_rva,
            [(IMAGE_REL_BASED_HIGHLOW, 0x10), (IMAGE_REL_BASED_ABSOLUTE, 0)],
        )
    )
    return builder.build()


@pytest.fixture
def loader() -> ImageLoader:
    """Loader with the default (benevolent) configuration."""
    return ImageLoader()


@pytest.fixture(params=[WindowsVersion.XP, WindowsVersion.WIN7, WindowsVersion.WIN10])
def windows_config(request) -> LoaderConfiguration:
    """Configuration for each reproduced Windows version."""
    return LoaderConfiguration.for_windows(request.param)
