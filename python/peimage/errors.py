"""
Loader status codes and the latched loader-error register.

Two tiers of failure exist. Hard failures stop the current operation and
surface as a Status code (InvalidImageError is raised internally and turned
into Status.INVALID_FILE by the loader). Soft failures are LoaderError
values: the first one recorded wins, and parsing carries on so callers can
still analyse "suspicious but loadable" files.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum

logger = logging.getLogger(__name__)


class InvalidImageError(ValueError):
    """Raised by header capture when the file cannot be parsed any further."""

    pass


class Status(IntEnum):
    """Result of a load or mutation operation."""

    NONE = 0
    OPENING_FILE = 1
    INVALID_FILE = 2
    ENTRY_NOT_FOUND = 3
    NOT_ENOUGH_SPACE = 4
    NO_FILE_ALIGNMENT = 5
    NO_SECTION_ALIGNMENT = 6


ERROR_NONE = Status.NONE
ERROR_OPENING_FILE = Status.OPENING_FILE
ERROR_INVALID_FILE = Status.INVALID_FILE
ERROR_ENTRY_NOT_FOUND = Status.ENTRY_NOT_FOUND
ERROR_NOT_ENOUGH_SPACE = Status.NOT_ENOUGH_SPACE
ERROR_NO_FILE_ALIGNMENT = Status.NO_FILE_ALIGNMENT
ERROR_NO_SECTION_ALIGNMENT = Status.NO_SECTION_ALIGNMENT


class LoaderError(IntEnum):
    """Structural anomaly the NT loader would react to."""

    NONE = 0
    FILE_TOO_BIG = 1
    E_LFANEW_UNALIGNED = 2
    E_LFANEW_OUT_OF_FILE = 3
    NTHEADER_OFFSET_OVERFLOW = 4
    NTHEADER_OUT_OF_FILE = 5
    NO_NT_SIGNATURE = 6
    FILE_HEADER_INVALID = 7
    IMAGE_NON_EXECUTABLE = 8
    NO_OPTHDR_MAGIC = 9
    SIZE_OF_HEADERS_ZERO = 10
    FILE_ALIGNMENT_ZERO = 11
    FILE_ALIGNMENT_NOT_POW2 = 12
    SECTION_ALIGNMENT_ZERO = 13
    SECTION_ALIGNMENT_NOT_POW2 = 14
    SECTION_ALIGNMENT_TOO_SMALL = 15
    SECTION_ALIGNMENT_INVALID = 16
    SIZE_OF_IMAGE_TOO_BIG = 17
    INVALID_MACHINE32 = 18
    INVALID_MACHINE64 = 19
    SIZE_OF_HEADERS_INVALID = 20
    SIZE_OF_OPTHDR_NOT_ALIGNED = 21
    SIZE_OF_IMAGE_ZERO = 22
    IMAGE_BASE_NOT_ALIGNED = 23
    SIZE_OF_IMAGE_PTES_ZERO = 24
    RAW_DATA_OVERFLOW = 25
    SECTION_HEADERS_OUT_OF_IMAGE = 26
    SECTION_HEADERS_OVERFLOW = 27
    SECTION_SIZE_MISMATCH = 28
    INVALID_SECTION_VA = 29
    INVALID_SECTION_VSIZE = 30
    INVALID_SECTION_RAWSIZE = 31
    INVALID_SIZE_OF_IMAGE = 32
    FILE_IS_CUT = 33
    FILE_IS_CUT_LOADABLE = 34

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def is_loadable(self) -> bool:
        """True if the NT loader would still map an image with this error."""
        return self in (LoaderError.NONE, LoaderError.FILE_IS_CUT_LOADABLE)

    @property
    def is_mappable(self) -> bool:
        """True if the image is still mapped into pages despite this error.

        A single-subsection image whose section layout disagrees with its raw
        layout is mapped anyway; that mapping copies the file as-is and does
        not depend on the section table.
        """
        return self.is_loadable or self is LoaderError.SECTION_SIZE_MISMATCH


_DESCRIPTIONS = {
    LoaderError.NONE: "No error",
    LoaderError.FILE_TOO_BIG: "The file is larger than 4 GB",
    LoaderError.E_LFANEW_UNALIGNED: "The IMAGE_DOS_HEADER::e_lfanew is not aligned to 4",
    LoaderError.E_LFANEW_OUT_OF_FILE: "The IMAGE_DOS_HEADER::e_lfanew is out of the file",
    LoaderError.NTHEADER_OFFSET_OVERFLOW: "NT header offset + sizeof(IMAGE_NT_HEADERS) overflow",
    LoaderError.NTHEADER_OUT_OF_FILE: "NT headers are out of the file",
    LoaderError.NO_NT_SIGNATURE: "No IMAGE_NT_SIGNATURE in the NT headers",
    LoaderError.FILE_HEADER_INVALID: "Invalid IMAGE_FILE_HEADER::Machine or SizeOfOptionalHeader",
    LoaderError.IMAGE_NON_EXECUTABLE: "The file is not marked as executable",
    LoaderError.NO_OPTHDR_MAGIC: "Invalid IMAGE_OPTIONAL_HEADER::Magic",
    LoaderError.SIZE_OF_HEADERS_ZERO: "IMAGE_OPTIONAL_HEADER::SizeOfHeaders is zero",
    LoaderError.FILE_ALIGNMENT_ZERO: "IMAGE_OPTIONAL_HEADER::FileAlignment is zero",
    LoaderError.FILE_ALIGNMENT_NOT_POW2: "IMAGE_OPTIONAL_HEADER::FileAlignment is not a power of two",
    LoaderError.SECTION_ALIGNMENT_ZERO: "IMAGE_OPTIONAL_HEADER::SectionAlignment is zero",
    LoaderError.SECTION_ALIGNMENT_NOT_POW2: "IMAGE_OPTIONAL_HEADER::SectionAlignment is not a power of two",
    LoaderError.SECTION_ALIGNMENT_TOO_SMALL: "IMAGE_OPTIONAL_HEADER::SectionAlignment is smaller than FileAlignment",
    LoaderError.SECTION_ALIGNMENT_INVALID: "IMAGE_OPTIONAL_HEADER::SectionAlignment must equal FileAlignment if FileAlignment is not a multiple of 512",
    LoaderError.SIZE_OF_IMAGE_TOO_BIG: "IMAGE_OPTIONAL_HEADER::SizeOfImage is too big",
    LoaderError.INVALID_MACHINE32: "IMAGE_FILE_HEADER::Machine is invalid for IMAGE_OPTIONAL_HEADER::Magic of a 32-bit image",
    LoaderError.INVALID_MACHINE64: "IMAGE_FILE_HEADER::Machine is invalid for IMAGE_OPTIONAL_HEADER::Magic of a 64-bit image",
    LoaderError.SIZE_OF_HEADERS_INVALID: "IMAGE_OPTIONAL_HEADER::SizeOfHeaders is greater than SizeOfImage",
    LoaderError.SIZE_OF_OPTHDR_NOT_ALIGNED: "IMAGE_FILE_HEADER::SizeOfOptionalHeader is not aligned to 8 on 64-bit Windows",
    LoaderError.SIZE_OF_IMAGE_ZERO: "The number of pages in the image is zero",
    LoaderError.IMAGE_BASE_NOT_ALIGNED: "IMAGE_OPTIONAL_HEADER::ImageBase is not aligned to 64KB",
    LoaderError.SIZE_OF_IMAGE_PTES_ZERO: "The number of PTEs for the image is zero",
    LoaderError.RAW_DATA_OVERFLOW: "Overflow in section raw data size",
    LoaderError.SECTION_HEADERS_OUT_OF_IMAGE: "Section headers are out of the image",
    LoaderError.SECTION_HEADERS_OVERFLOW: "Size of headers overflows when aligned to SectionAlignment",
    LoaderError.SECTION_SIZE_MISMATCH: "Section virtual layout does not match its raw layout in a single-subsection image",
    LoaderError.INVALID_SECTION_VA: "Section VirtualAddress does not continue the previous section",
    LoaderError.INVALID_SECTION_VSIZE: "Section VirtualSize is invalid",
    LoaderError.INVALID_SECTION_RAWSIZE: "Section SizeOfRawData is invalid",
    LoaderError.INVALID_SIZE_OF_IMAGE: "IMAGE_OPTIONAL_HEADER::SizeOfImage does not match the section layout",
    LoaderError.FILE_IS_CUT: "The file is cut and cannot be loaded",
    LoaderError.FILE_IS_CUT_LOADABLE: "The file is cut, but it can still be loaded",
}


def latch_error(current: LoaderError | None, new: LoaderError) -> LoaderError:
    """Return the error that is in effect after recording ``new``.

    The first recorded error wins; a register holding NONE (or nothing)
    takes the new value.
    """
    if current is None or current == LoaderError.NONE:
        return new
    return current


@dataclass
class LoaderErrorState:
    """First-error-wins loader diagnostic register."""

    error: LoaderError | None = None

    def set(self, error: LoaderError) -> None:
        latched = latch_error(self.error, error)
        if latched is error and self.error is not error:
            logger.debug("Loader error latched: %s (%s)", error.name, error.description)
        self.error = latched

    @property
    def current(self) -> LoaderError:
        return self.error if self.error is not None else LoaderError.NONE

    @property
    def is_loadable(self) -> bool:
        return self.current.is_loadable

    @property
    def is_mappable(self) -> bool:
        return self.current.is_mappable

    def reset(self) -> None:
        self.error = None
