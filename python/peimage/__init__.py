"""
peimage: PE image loader reproducing the Windows NT loader.

This package parses Windows PE files and maps them into a page-granular
virtual image the same way the NT loader would, including its version
specific quirks (Windows XP, 7 and 10).

    from peimage import ImageLoader, LoaderConfiguration, WindowsVersion

    loader = ImageLoader(LoaderConfiguration.for_windows(WindowsVersion.WIN10))
    status = loader.load_file(path)
    if loader.is_image_mapped_ok():
        data = loader.read_image(rva, 16)

Relocation, section edits, snapshots and comparison are module level
functions operating on a loaded ImageLoader:

    from peimage import relocate_image, add_section, compare_with_snapshot
"""

from .errors import (
    InvalidImageError,
    LoaderError,
    LoaderErrorState,
    Status,
    latch_error,
)
from .config import (
    LoaderConfiguration,
    WindowsVersion,
)
from .pages import (
    PageMarker,
    PageTable,
)
from .loader import (
    HeaderField,
    ImageLoader,
)
from .relocations import (
    relocate_image,
    write_new_image_base,
)
from .mutator import (
    add_section,
    calc_new_section_addresses,
    enlarge_last_section,
    make_valid,
    remove_section,
    set_data_directory,
    split_section,
)
from .snapshot import (
    ImageSnapshot,
    SnapshotError,
    load_snapshot,
    save_snapshot,
)
from .compare import (
    CompareResult,
    ImageComparison,
    compare_with_mapped_image,
    compare_with_snapshot,
)

__all__ = [
    # Errors
    "InvalidImageError",
    "LoaderError",
    "LoaderErrorState",
    "Status",
    "latch_error",
    # Configuration
    "LoaderConfiguration",
    "WindowsVersion",
    # Loader
    "HeaderField",
    "ImageLoader",
    "PageMarker",
    "PageTable",
    # Relocations
    "relocate_image",
    "write_new_image_base",
    # Section mutations
    "add_section",
    "calc_new_section_addresses",
    "enlarge_last_section",
    "make_valid",
    "remove_section",
    "set_data_directory",
    "split_section",
    # Snapshots and comparison
    "ImageSnapshot",
    "SnapshotError",
    "load_snapshot",
    "save_snapshot",
    "CompareResult",
    "ImageComparison",
    "compare_with_mapped_image",
    "compare_with_snapshot",
]
