"""
Loader configuration.

Different Windows versions accept different images. Instead of branching on
a version number throughout the loader, every version-dependent constant and
check switch lives in one immutable LoaderConfiguration that is chosen when
the loader is created.
"""

from dataclasses import dataclass, replace
from enum import Enum

from .types import PAGE_SIZE, SECTOR_SIZE

# Bit-mask loader modes accepted by LoaderConfiguration.from_flags()
LOADER_MODE_WINDOWS_XP = 0x51
LOADER_MODE_WINDOWS_7 = 0x61
LOADER_MODE_WINDOWS_10 = 0xA0
LOADER_MODE_64BIT_WINDOWS = 0x1000
WINDOWS_VERSION_MASK = 0x0FFF


class WindowsVersion(Enum):
    """Windows loader whose behavior is reproduced.

    DEFAULT is the benevolent mode: no particular OS, no optional checks.
    """

    DEFAULT = "default"
    XP = "xp"
    WIN7 = "7"
    WIN10 = "10"


@dataclass(frozen=True)
class LoaderConfiguration:
    """Version-specific loader constants and checks.

    Attributes:
        windows_version: Loader being reproduced.
        is_64bit_windows: Host is 64-bit Windows (enables the 8-byte
            SizeOfOptionalHeader alignment check and page-aligns
            single-subsection images).
        load_arm_images: Accept ARMNT/ARM64 machines as valid.
        max_section_count: Highest NumberOfSections accepted.
        single_subsection_alignment: Alignment applied to SizeOfImage for
            images mapped as one flat region.
        size_of_image_must_match: SizeOfImage must be covered by sections.
        nt_headers_size_check: File must hold full 32-bit NT headers.
        app_container_check: Reject app-container images on legacy machines.
        header_size_check: Round SizeOfHeaders up to SectionAlignment when
            the section table spills past the first page.
        fix_borland_sections: Zero PointerToRawData of sections without raw
            data, in the file buffer.
    """

    windows_version: WindowsVersion = WindowsVersion.DEFAULT
    is_64bit_windows: bool = False
    load_arm_images: bool = True
    max_section_count: int = 255
    single_subsection_alignment: int = PAGE_SIZE
    size_of_image_must_match: bool = False
    nt_headers_size_check: bool = False
    app_container_check: bool = False
    header_size_check: bool = False
    fix_borland_sections: bool = False

    @classmethod
    def for_windows(
        cls,
        version: WindowsVersion,
        is_64bit_windows: bool = False,
        load_arm_images: bool | None = None,
    ) -> "LoaderConfiguration":
        """Build the configuration for a given Windows version."""
        config = _PRESETS[version]
        config = replace(config, is_64bit_windows=is_64bit_windows)
        if load_arm_images is not None:
            config = replace(config, load_arm_images=load_arm_images)
        return config

    @classmethod
    def from_flags(cls, flags: int) -> "LoaderConfiguration":
        """Decode a bit-mask loader mode (e.g. LOADER_MODE_WINDOWS_7 | LOADER_MODE_64BIT_WINDOWS)."""
        version = _FLAG_VERSIONS.get(flags & WINDOWS_VERSION_MASK, WindowsVersion.DEFAULT)
        return cls.for_windows(
            version, is_64bit_windows=bool(flags & LOADER_MODE_64BIT_WINDOWS)
        )


_PRESETS = {
    WindowsVersion.DEFAULT: LoaderConfiguration(),
    WindowsVersion.XP: LoaderConfiguration(
        windows_version=WindowsVersion.XP,
        load_arm_images=False,
        max_section_count=96,
        single_subsection_alignment=SECTOR_SIZE,
        size_of_image_must_match=True,
        header_size_check=True,
        fix_borland_sections=True,
    ),
    WindowsVersion.WIN7: LoaderConfiguration(
        windows_version=WindowsVersion.WIN7,
        load_arm_images=False,
        max_section_count=192,
        single_subsection_alignment=1,
        size_of_image_must_match=True,
        nt_headers_size_check=True,
        fix_borland_sections=True,
    ),
    WindowsVersion.WIN10: LoaderConfiguration(
        windows_version=WindowsVersion.WIN10,
        load_arm_images=True,
        max_section_count=192,
        single_subsection_alignment=1,
        nt_headers_size_check=True,
        app_container_check=True,
        fix_borland_sections=True,
    ),
}

_FLAG_VERSIONS = {
    LOADER_MODE_WINDOWS_XP: WindowsVersion.XP,
    LOADER_MODE_WINDOWS_7: WindowsVersion.WIN7,
    LOADER_MODE_WINDOWS_10: WindowsVersion.WIN10,
}
