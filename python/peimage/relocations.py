"""
Base relocation engine.

Rebases a mapped image to a new load address by applying the blocks of the
base relocation directory. All reads and writes go through the loader's
accessors, so relocations work on the page table exactly like any other
image access.

Relocation algorithm:
1. Check preconditions (mapped image, relocations not stripped, a valid
   relocation directory whose blocks all lie inside the image)
2. Write the new ImageBase into the mapped optional header
3. Apply each block's fixups; an unknown fixup type fails the relocation
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterator

from .headers import is_bad_app_container
from .loader import ImageLoader
from .types import (
    BaseRelocationBlock,
    BaseRelocationEntry,
    IMAGE_DIRECTORY_ENTRY_BASERELOC,
    IMAGE_REL_BASED_ABSOLUTE,
    IMAGE_REL_BASED_DIR64,
    IMAGE_REL_BASED_HIGH,
    IMAGE_REL_BASED_HIGHADJ,
    IMAGE_REL_BASED_HIGHLOW,
    IMAGE_REL_BASED_IA64_IMM64,
    IMAGE_REL_BASED_LOW,
    IMAGE_REL_BASED_MIPS_JMPADDR,
    NT_HEADERS_FIXED_SIZE,
    OptionalHeader32,
    OptionalHeader64,
    PAGE_SIZE,
)

logger = logging.getLogger(__name__)

MAX_RELOCATION_DIRECTORY_SIZE = 10 * 1024 * 1024

UINT16_MASK = 0xFFFF
UINT32_MASK = 0xFFFFFFFF
UINT64_MASK = 0xFFFFFFFFFFFFFFFF

MIPS_JMPADDR_MASK = 0x3FFFFFF

IA64_BUNDLE_SIZE = 16


@dataclass(frozen=True)
class Ia64ImmediateField:
    """One slice of the 64-bit immediate of an IA64 movl bundle.

    Attributes:
        word: Index of the 32-bit bundle word holding the slice
        size: Slice width in bits
        inst_pos: Bit position inside the bundle word
        val_pos: Bit position inside the immediate
    """

    word: int
    size: int
    inst_pos: int
    val_pos: int

    @property
    def mask(self) -> int:
        return (1 << self.size) - 1

    def extract(self, words: list[int], value: int) -> int:
        return value | (((words[self.word] >> self.inst_pos) & self.mask) << self.val_pos)

    def insert(self, words: list[int], value: int) -> None:
        word = words[self.word] & ~(self.mask << self.inst_pos)
        word |= ((value >> self.val_pos) & self.mask) << self.inst_pos
        words[self.word] = word & UINT32_MASK


# Layout of the IMM64 operand of the X2 (movl) instruction format
IA64_IMM64_FIELDS = (
    Ia64ImmediateField(word=3, size=7, inst_pos=4, val_pos=0),  # imm7b
    Ia64ImmediateField(word=3, size=9, inst_pos=18, val_pos=7),  # imm9d
    Ia64ImmediateField(word=3, size=5, inst_pos=13, val_pos=16),  # imm5c
    Ia64ImmediateField(word=3, size=1, inst_pos=12, val_pos=21),  # ic
    Ia64ImmediateField(word=1, size=10, inst_pos=14, val_pos=22),  # imm41a
    Ia64ImmediateField(word=1, size=8, inst_pos=24, val_pos=32),  # imm41b
    Ia64ImmediateField(word=2, size=23, inst_pos=0, val_pos=40),  # imm41c
    Ia64ImmediateField(word=3, size=1, inst_pos=27, val_pos=63),  # sign
)


def extract_ia64_imm64(bundle: bytes) -> int:
    """Gather the 64-bit immediate scattered across a 16-byte bundle."""
    words = list(struct.unpack("<4I", bundle))
    value = 0
    for imm_field in IA64_IMM64_FIELDS:
        value = imm_field.extract(words, value)
    return value


def insert_ia64_imm64(bundle: bytes, value: int) -> bytes:
    """Scatter a 64-bit immediate back into a 16-byte bundle."""
    words = list(struct.unpack("<4I", bundle))
    for imm_field in IA64_IMM64_FIELDS:
        imm_field.insert(words, value)
    return struct.pack("<4I", *words)


# =============================================================================
# Block iteration
# =============================================================================


def iter_relocation_blocks(
    data: bytes,
) -> Iterator[tuple[BaseRelocationBlock, list[int]]]:
    """Yield (block, entries) for every relocation block in data.

    A block with SizeOfBlock <= 8 has no entries and is stepped over by its
    header size. A block running past the end of data is truncated.
    """
    position = 0
    end = len(data)
    while position + BaseRelocationBlock.SIZE <= end:
        block = BaseRelocationBlock.from_bytes(data, position)
        if block.SizeOfBlock <= BaseRelocationBlock.SIZE:
            yield block, []
            position += BaseRelocationBlock.SIZE
            continue

        block_size = min(block.SizeOfBlock, end - position)
        count = (block_size - BaseRelocationBlock.SIZE) // BaseRelocationEntry.SIZE
        entries = list(
            struct.unpack_from(f"<{count}H", data, position + BaseRelocationBlock.SIZE)
        )
        yield block, entries
        position += block_size


def _read_uint(loader: ImageLoader, rva: int, size: int) -> int | None:
    data = loader.read_image(rva, size)
    if len(data) != size:
        return None
    return int.from_bytes(data, "little")


def _write_uint(loader: ImageLoader, rva: int, size: int, value: int) -> None:
    mask = (1 << (size * 8)) - 1
    loader.write_image(rva, (value & mask).to_bytes(size, "little"))


def _relocate_ia64_imm64(loader: ImageLoader, rva: int, delta: int) -> None:
    rva &= ~(IA64_BUNDLE_SIZE - 1)
    bundle = loader.read_image(rva, IA64_BUNDLE_SIZE)
    if len(bundle) != IA64_BUNDLE_SIZE:
        return
    value = (extract_ia64_imm64(bundle) + delta) & UINT64_MASK
    loader.write_image(rva, insert_ia64_imm64(bundle, value))


def _apply_block(
    loader: ImageLoader, page_rva: int, entries: list[int], delta: int
) -> bool:
    """Apply the fixups of one block; False on an unknown fixup type."""
    index = 0
    while index < len(entries):
        entry = BaseRelocationEntry(entries[index])
        index += 1
        rva = page_rva + entry.offset
        reloc_type = entry.reloc_type

        if reloc_type == IMAGE_REL_BASED_ABSOLUTE:
            continue

        if reloc_type == IMAGE_REL_BASED_HIGHADJ:
            # The low half of the adjusted value is stored in the next entry
            if index >= len(entries):
                logger.debug("HIGHADJ at 0x%x has no addend, block ends", rva)
                return True
            addend = entries[index]
            index += 1
            value = _read_uint(loader, rva, 2)
            if value is not None:
                adjusted = ((value << 16) + addend + delta + 0x8000) >> 16
                _write_uint(loader, rva, 2, adjusted)
            continue

        if reloc_type == IMAGE_REL_BASED_DIR64:
            value = _read_uint(loader, rva, 8)
            if value is not None:
                _write_uint(loader, rva, 8, value + delta)
        elif reloc_type == IMAGE_REL_BASED_HIGHLOW:
            value = _read_uint(loader, rva, 4)
            if value is not None:
                _write_uint(loader, rva, 4, value + delta)
        elif reloc_type == IMAGE_REL_BASED_HIGH:
            value = _read_uint(loader, rva, 2)
            if value is not None:
                _write_uint(loader, rva, 2, ((value << 16) + delta) >> 16)
        elif reloc_type == IMAGE_REL_BASED_LOW:
            value = _read_uint(loader, rva, 2)
            if value is not None:
                _write_uint(loader, rva, 2, value + delta)
        elif reloc_type == IMAGE_REL_BASED_MIPS_JMPADDR:
            value = _read_uint(loader, rva, 4)
            if value is not None:
                target = ((value & MIPS_JMPADDR_MASK) << 2) + delta
                value = (value & ~MIPS_JMPADDR_MASK) | ((target >> 2) & MIPS_JMPADDR_MASK)
                _write_uint(loader, rva, 4, value)
        elif reloc_type == IMAGE_REL_BASED_IA64_IMM64:
            _relocate_ia64_imm64(loader, rva, delta)
        else:
            logger.warning("Unknown relocation type %d at 0x%x", reloc_type, rva)
            return False
    return True


def _skips_block(loader: ImageLoader, page_rva: int) -> bool:
    """Blocks targeting the header page or a demand-zero page are not applied."""
    page_index = page_rva // PAGE_SIZE
    return page_index == 0 or loader.pages.is_zero_page(page_index)


# =============================================================================
# Public interface
# =============================================================================


def write_new_image_base(loader: ImageLoader, new_base: int) -> None:
    """Store ImageBase in the mapped optional header and in the captured one."""
    offset = loader.dos_header.e_lfanew + NT_HEADERS_FIXED_SIZE
    header_class = OptionalHeader64 if loader.optional_header.is_64bit else OptionalHeader32
    data = loader.read_image(offset, header_class.SIZE)
    header = header_class.from_partial_bytes(data)
    header.ImageBase = new_base & (UINT64_MASK if header_class is OptionalHeader64 else UINT32_MASK)
    loader.write_image(offset, header.to_bytes()[: len(data)])
    loader.optional_header.ImageBase = header.ImageBase


def relocate_image(loader: ImageLoader, new_base: int) -> bool:
    """Rebase the mapped image to new_base.

    Returns True if the image is now based at new_base. A False return
    before the ImageBase is rewritten leaves the image untouched.
    """
    opt = loader.optional_header
    old_base = opt.ImageBase
    if new_base == old_base:
        return True

    if loader.pages is None:
        return False
    if loader.file_header.relocs_stripped:
        return False
    if loader.config.app_container_check and is_bad_app_container(loader.nt_headers):
        return False
    if not opt.is_64bit and new_base > UINT32_MASK:
        return False

    directory = opt.directory(IMAGE_DIRECTORY_ENTRY_BASERELOC)
    if directory.VirtualAddress == 0 or directory.Size == 0:
        return False
    if not loader.is_valid_image_block(directory.VirtualAddress, directory.Size):
        return False
    if not BaseRelocationBlock.SIZE <= directory.Size <= MAX_RELOCATION_DIRECTORY_SIZE:
        return False

    data = loader.read_image(directory.VirtualAddress, directory.Size)
    blocks = list(iter_relocation_blocks(data))
    for block, _ in blocks:
        if not loader.is_valid_image_block(block.VirtualAddress, block.SizeOfBlock):
            logger.debug(
                "Relocation block 0x%x (0x%x bytes) is outside the image",
                block.VirtualAddress,
                block.SizeOfBlock,
            )
            return False

    write_new_image_base(loader, new_base)

    delta = (new_base - old_base) & UINT64_MASK
    for block, entries in blocks:
        if not entries:
            continue
        if _skips_block(loader, block.VirtualAddress):
            logger.debug("Skipping relocation block for page 0x%x", block.VirtualAddress)
            continue
        if not _apply_block(loader, block.VirtualAddress, entries, delta):
            return False
    return True
