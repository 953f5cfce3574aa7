"""
Comparison of a loader mapping with a reference mapping.

The reference is normally an image mapped by a real Windows loader (a memory
dump of the mapped view, or a snapshot of it). Pages are compared one by
one: accessibility first, then content.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .loader import ImageLoader
from .snapshot import ImageSnapshot
from .types import PAGE_SIZE

logger = logging.getLogger(__name__)


class CompareResult(Enum):
    IMAGES_EQUAL = "equal"
    DIFFERENT_SIZE = "different_size"
    DIFFERENT_PAGE_VALUE = "different_page_value"
    DIFFERENT_PAGE_ACCESS = "different_page_access"
    WINDOWS_DIDNT_LOAD_WE_DID = "windows_didnt_load_we_did"
    WINDOWS_LOADED_WE_DIDNT = "windows_loaded_we_didnt"


@dataclass
class ImageComparison:
    """Result of comparing two mappings of the same file.

    ``difference_offset`` is the RVA of the first difference (the page start
    for access differences, 0 when not applicable).
    """

    result: CompareResult = CompareResult.IMAGES_EQUAL
    difference_offset: int = 0

    @property
    def equal(self) -> bool:
        return self.result is CompareResult.IMAGES_EQUAL

    def __str__(self) -> str:
        if self.equal:
            return "Images are equal"
        if self.result in (
            CompareResult.DIFFERENT_PAGE_VALUE,
            CompareResult.DIFFERENT_PAGE_ACCESS,
        ):
            return f"Images differ: {self.result.value} at RVA 0x{self.difference_offset:08X}"
        return f"Images differ: {self.result.value}"


def _mismatch_offset(loader: ImageLoader, expected: bytes, actual: bytes, rva: int) -> int | None:
    """First differing byte of a page, ignoring PointerToRawData fields the
    Borland fix may or may not have zeroed."""
    file_offset = loader.get_file_offset_from_rva(rva)
    for i, (a, b) in enumerate(zip(expected, actual)):
        if a == b:
            continue
        if file_offset is not None and loader.is_section_header_pointer_to_raw_data(
            file_offset + i
        ):
            continue
        return i
    return None


def compare_with_mapped_image(
    loader: ImageLoader,
    image: bytes | None,
    is_accessible: Callable[[int], bool] | None = None,
) -> ImageComparison:
    """Compare the loader's mapping with a reference image.

    Args:
        loader: Loader holding our mapping
        image: Reference image content, or None if the reference loader
            refused the file
        is_accessible: Reports whether the reference page at an RVA is
            accessible; every page is by default
    """
    mapped_ok = loader.is_image_mapped_ok()

    if image is not None and mapped_ok:
        if len(image) != loader.get_size_of_image_aligned():
            return ImageComparison(CompareResult.DIFFERENT_SIZE)

        for rva in range(0, len(image), PAGE_SIZE):
            reference_ok = is_accessible(rva) if is_accessible is not None else True
            our_ok = loader.pages.is_accessible(rva // PAGE_SIZE)

            if reference_ok and our_ok:
                expected = image[rva : rva + PAGE_SIZE]
                actual = loader.read_image(rva, PAGE_SIZE)
                if expected != actual:
                    offset = _mismatch_offset(loader, expected, actual, rva)
                    if offset is not None:
                        logger.debug("Page value mismatch at RVA 0x%x", rva + offset)
                        return ImageComparison(
                            CompareResult.DIFFERENT_PAGE_VALUE, rva + offset
                        )
            elif reference_ok != our_ok:
                logger.debug("Page access mismatch at RVA 0x%x", rva)
                return ImageComparison(CompareResult.DIFFERENT_PAGE_ACCESS, rva)

    if mapped_ok and image is None:
        return ImageComparison(CompareResult.WINDOWS_DIDNT_LOAD_WE_DID)
    if not mapped_ok and image is not None:
        return ImageComparison(CompareResult.WINDOWS_LOADED_WE_DIDNT)
    return ImageComparison(CompareResult.IMAGES_EQUAL)


def compare_with_snapshot(loader: ImageLoader, snapshot: ImageSnapshot) -> ImageComparison:
    """Compare the loader's mapping with a stored snapshot.

    A snapshot without pages stands for a reference loader that refused
    the file.
    """
    if not snapshot.is_mapped:
        return compare_with_mapped_image(loader, None)
    return compare_with_mapped_image(loader, snapshot.image(), snapshot.is_accessible)
