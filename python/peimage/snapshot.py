"""
Mapped image snapshots.

A snapshot records the page table of a mapped image (page kinds and
content) together with the image base, SizeOfImage and loader verdict. It
is used to keep reference mappings, for example images mapped by a real
Windows loader, next to regression samples.

Format: a msgpack map, compressed with zstandard.

    {
        "format": "peimage-snapshot",
        "version": 1,
        "image_base": int,
        "size_of_image": int,
        "loader_error": str,        # LoaderError member name
        "pages": [[kind, data], ...] # kind: "data" | "zero" | "inaccessible"
    }
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import msgpack
import zstandard as zstd

from .errors import LoaderError
from .loader import ImageLoader
from .pages import Page, PageMarker, PageTable, page_bytes
from .types import PAGE_SIZE

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "peimage-snapshot"
SNAPSHOT_VERSION = 1
ZSTD_LEVEL = 19

PAGE_KIND_DATA = "data"
PAGE_KIND_ZERO = "zero"
PAGE_KIND_INACCESSIBLE = "inaccessible"


class SnapshotError(ValueError):
    """Raised when a snapshot cannot be decoded."""

    pass


def _encode_page(page: Page) -> list:
    if isinstance(page, bytearray):
        return [PAGE_KIND_DATA, bytes(page)]
    if page is PageMarker.ZERO:
        return [PAGE_KIND_ZERO, None]
    return [PAGE_KIND_INACCESSIBLE, None]


def _decode_page(entry) -> Page:
    if not isinstance(entry, list) or len(entry) != 2:
        raise SnapshotError(f"Invalid page entry: {entry!r}")
    kind, data = entry
    if kind == PAGE_KIND_DATA:
        if not isinstance(data, bytes) or len(data) > PAGE_SIZE:
            raise SnapshotError("Invalid page content")
        return bytearray(data)
    if kind == PAGE_KIND_ZERO:
        return PageMarker.ZERO
    if kind == PAGE_KIND_INACCESSIBLE:
        return PageMarker.INACCESSIBLE
    raise SnapshotError(f"Unknown page kind: {kind!r}")


@dataclass
class ImageSnapshot:
    """Pages of a mapped image plus the facts needed to compare against it."""

    image_base: int = 0
    size_of_image: int = 0
    loader_error: LoaderError = LoaderError.NONE
    pages: list[Page] = field(default_factory=list)

    @classmethod
    def from_loader(cls, loader: ImageLoader) -> "ImageSnapshot":
        """Capture the current pages of a loader (empty if it did not map)."""
        pages = list(loader.pages) if loader.pages is not None else []
        return cls(
            image_base=loader.optional_header.ImageBase,
            size_of_image=loader.optional_header.SizeOfImage,
            loader_error=loader.loader_error(),
            pages=[
                bytearray(page) if isinstance(page, bytearray) else page
                for page in pages
            ],
        )

    @property
    def is_mapped(self) -> bool:
        return bool(self.pages)

    @property
    def size(self) -> int:
        return len(self.pages) * PAGE_SIZE

    def image(self) -> bytes:
        """Flat image content; marker pages read as zero."""
        return b"".join(page_bytes(page) for page in self.pages)

    def is_accessible(self, rva: int) -> bool:
        index = rva // PAGE_SIZE
        return 0 <= index < len(self.pages) and self.pages[index] is not PageMarker.INACCESSIBLE

    def page_table(self) -> PageTable:
        table = PageTable(len(self.pages))
        for index, page in enumerate(self.pages):
            table.set_page(index, bytearray(page) if isinstance(page, bytearray) else page)
        return table

    def to_bytes(self) -> bytes:
        payload = {
            "format": SNAPSHOT_FORMAT,
            "version": SNAPSHOT_VERSION,
            "image_base": self.image_base,
            "size_of_image": self.size_of_image,
            "loader_error": self.loader_error.name,
            "pages": [_encode_page(page) for page in self.pages],
        }
        packed = msgpack.packb(payload, use_bin_type=True)
        return zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(packed)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ImageSnapshot":
        """Decode a snapshot.

        Raises:
            SnapshotError: If the data is not a valid snapshot
        """
        try:
            packed = zstd.ZstdDecompressor().decompress(data)
        except zstd.ZstdError as e:
            raise SnapshotError(f"Decompression failed: {e}") from e

        try:
            payload = msgpack.unpackb(packed, raw=False, strict_map_key=True)
        except (msgpack.exceptions.UnpackException, ValueError) as e:
            raise SnapshotError(f"Invalid snapshot payload: {e}") from e

        if not isinstance(payload, dict) or payload.get("format") != SNAPSHOT_FORMAT:
            raise SnapshotError("Not an image snapshot")
        if payload.get("version") != SNAPSHOT_VERSION:
            raise SnapshotError(f"Unsupported snapshot version: {payload.get('version')}")

        try:
            loader_error = LoaderError[payload["loader_error"]]
            return cls(
                image_base=int(payload["image_base"]),
                size_of_image=int(payload["size_of_image"]),
                loader_error=loader_error,
                pages=[_decode_page(entry) for entry in payload["pages"]],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotError(f"Incomplete snapshot: {e}") from e


def save_snapshot(snapshot: ImageSnapshot, path: Path) -> int:
    """Write a snapshot to a file; returns the compressed size."""
    data = snapshot.to_bytes()
    Path(path).write_bytes(data)
    logger.debug("Wrote snapshot of %d pages to %s", len(snapshot.pages), path)
    return len(data)


def load_snapshot(path: Path) -> ImageSnapshot:
    return ImageSnapshot.from_bytes(Path(path).read_bytes())
