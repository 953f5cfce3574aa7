"""
Page table of a mapped image.

Every 4KB page of the image is one of:

- a ``bytearray`` holding the page content (it may be shorter than a page;
  the missing tail reads as zero),
- ``PageMarker.ZERO``: demand-zero memory, not backed by a buffer,
- ``PageMarker.INACCESSIBLE``: PAGE_NOACCESS, or not yet visited by the
  mapper. Reads as zero.

Writing into a marker page materializes a zeroed buffer for it.
"""

from enum import Enum
from pathlib import Path
from typing import Iterator, Union

from .types import PAGE_SIZE


class PageMarker(Enum):
    """Pages that are not backed by a buffer."""

    ZERO = "zero"
    INACCESSIBLE = "inaccessible"


Page = Union[bytearray, PageMarker]

ZERO_PAGE_BYTES = bytes(PAGE_SIZE)


def page_bytes(page: Page) -> bytes:
    """Full PAGE_SIZE content of a page."""
    if isinstance(page, bytearray):
        return bytes(page).ljust(PAGE_SIZE, b"\x00")
    return ZERO_PAGE_BYTES


class PageTable:
    """Fixed-size sequence of pages with byte-level access by RVA.

    All accessors clip to ``limit`` (and to the page count) and report how
    much was transferred instead of raising.
    """

    def __init__(self, count: int = 0):
        self._pages: list[Page] = [PageMarker.INACCESSIBLE] * count

    def __len__(self) -> int:
        return len(self._pages)

    def __getitem__(self, index: int) -> Page:
        return self._pages[index]

    def __iter__(self) -> Iterator[Page]:
        return iter(self._pages)

    @property
    def size(self) -> int:
        """Size of the mapped range in bytes."""
        return len(self._pages) * PAGE_SIZE

    def set_data(self, index: int, content: bytes | bytearray) -> None:
        """Back a page with (at most PAGE_SIZE bytes of) content."""
        self._pages[index] = bytearray(content[:PAGE_SIZE])

    def set_zero(self, index: int) -> None:
        self._pages[index] = PageMarker.ZERO

    def set_page(self, index: int, page: Page) -> None:
        self._pages[index] = page

    def is_zero_page(self, index: int) -> bool:
        return 0 <= index < len(self._pages) and self._pages[index] is PageMarker.ZERO

    def is_accessible(self, index: int) -> bool:
        return (
            0 <= index < len(self._pages)
            and self._pages[index] is not PageMarker.INACCESSIBLE
        )

    def _clip(self, rva: int, length: int, limit: int) -> int:
        end = min(rva + length, limit, self.size)
        return max(end - rva, 0)

    def _materialize(self, index: int) -> bytearray:
        page = self._pages[index]
        if not isinstance(page, bytearray):
            page = bytearray(PAGE_SIZE)
            self._pages[index] = page
        elif len(page) < PAGE_SIZE:
            page.extend(bytes(PAGE_SIZE - len(page)))
        return page

    def read(self, rva: int, length: int, limit: int) -> bytes:
        """Read up to length bytes starting at rva."""
        if rva < 0 or length <= 0:
            return b""
        length = self._clip(rva, length, limit)
        chunks = []
        while length > 0:
            index, offset = divmod(rva, PAGE_SIZE)
            count = min(PAGE_SIZE - offset, length)
            chunks.append(page_bytes(self._pages[index])[offset : offset + count])
            rva += count
            length -= count
        return b"".join(chunks)

    def write(self, rva: int, data: bytes | bytearray, limit: int) -> int:
        """Write data starting at rva; returns the number of bytes written."""
        if rva < 0:
            return 0
        length = self._clip(rva, len(data), limit)
        written = 0
        while written < length:
            index, offset = divmod(rva + written, PAGE_SIZE)
            count = min(PAGE_SIZE - offset, length - written)
            page = self._materialize(index)
            page[offset : offset + count] = data[written : written + count]
            written += count
        return written

    def string_length(self, rva: int, max_length: int, limit: int) -> int:
        """Length of the zero-terminated string at rva, at most max_length."""
        if rva < 0:
            return 0
        end = rva + self._clip(rva, max_length, limit)
        position = rva
        while position < end:
            index, offset = divmod(position, PAGE_SIZE)
            count = min(PAGE_SIZE - offset, end - position)
            page = self._pages[index]
            if not isinstance(page, bytearray):
                # Marker pages are all zero
                return position - rva
            terminator = page_bytes(page)[offset : offset + count].find(b"\x00")
            if terminator >= 0:
                return position + terminator - rva
            position += count
        return position - rva

    def dump(self, path: Path) -> int:
        """Write the full image to a file; returns the number of bytes written."""
        with open(path, "wb") as f:
            for page in self._pages:
                f.write(page_bytes(page))
        return self.size
