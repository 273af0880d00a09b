"""Superblock: global header of the file system.

Block 0 of a volume is reserved and left zeroed. Block 1 holds the superblock,
followed by the allocation table and the first block of the root directory::

    | 0: reserved | 1: superblock | 2 .. 2+F-1: table | 2+F: root | data ... |
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from typing_extensions import Annotated

from .base import ValidationError, ceil_div
from .bytestruct import ByteStruct

if TYPE_CHECKING:
    from .device import BlockDevice

__all__ = [
    'Superblock',
    'read_superblock',
    'write_superblock',
    'SUPERBLOCK_BLOCK',
    'FAT_START',
    'FAT_ENTRY_SIZE',
    'NO_FREE_BLOCK',
]


SUPERBLOCK_BLOCK = 1
FAT_START = 2
FAT_ENTRY_SIZE = 4  # bytes
NO_FREE_BLOCK = -1


@dataclass(frozen=True)
class Superblock(ByteStruct):
    """Superblock as stored at the start of block ``SUPERBLOCK_BLOCK``.

    - ``fat_entries``: Number of allocation table entries, one per block.
    - ``root_block``: First block of the root directory chain.
    - ``free_block``: Block believed to be free, ``NO_FREE_BLOCK`` if the volume
      is full.
    """

    fat_entries: Annotated[int, 4, 'signed']
    root_block: Annotated[int, 4, 'signed']
    free_block: Annotated[int, 4, 'signed']

    def validate(self) -> None:
        if self.fat_entries <= 0:
            raise ValidationError('Allocation table entry count must be greater than 0')
        if self.root_block < FAT_START:
            raise ValidationError(
                f'Root block must be greater than or equal to {FAT_START}'
            )
        if self.free_block < NO_FREE_BLOCK:
            raise ValidationError(f'Invalid free block cursor {self.free_block}')

    @classmethod
    def for_volume(cls, block_count: int, block_size: int) -> Superblock:
        """Compute the header of a freshly formatted volume of ``block_count``
        blocks of ``block_size`` bytes each.

        The root directory starts right after the allocation table and the free
        block cursor points at the block following it.
        """
        fat_blocks = ceil_div(block_count * FAT_ENTRY_SIZE, block_size)
        root_block = FAT_START + fat_blocks
        if root_block + 1 >= block_count:
            raise ValidationError(
                f'Volume of {block_count} blocks is too small to hold the metadata '
                f'({root_block} blocks), the root directory and a data block'
            )
        return cls(block_count, root_block, root_block + 1)

    def validate_for_device(self, device: BlockDevice) -> None:
        """Validate the header against the geometry of ``device``."""
        if self.fat_entries != device.block_count:
            raise ValidationError(
                f'Allocation table entry count {self.fat_entries} does not match '
                f'block count {device.block_count} of {device}'
            )
        expected_root = FAT_START + self.fat_blocks(device.block_size)
        if self.root_block != expected_root:
            raise ValidationError(
                f'Root block {self.root_block} does not follow the allocation table '
                f'(expected {expected_root})'
            )
        if self.free_block != NO_FREE_BLOCK and not (
            self.data_start <= self.free_block < self.fat_entries
        ):
            raise ValidationError(
                f'Free block cursor {self.free_block} lies outside the data region'
            )

    def fat_blocks(self, block_size: int) -> int:
        """Number of blocks taken up by the allocation table."""
        return ceil_div(self.fat_entries * FAT_ENTRY_SIZE, block_size)

    @property
    def data_start(self) -> int:
        """First block the allocator may hand out."""
        return self.root_block + 1

    def with_free_block(self, free_block: int) -> Superblock:
        """Return a copy of the header with the free block cursor replaced."""
        return replace(self, free_block=free_block)


def read_superblock(device: BlockDevice) -> Superblock:
    """Parse the superblock found on ``device`` and validate it."""
    block = device.read_block(SUPERBLOCK_BLOCK)
    superblock = Superblock.from_block(block)
    superblock.validate_for_device(device)
    return superblock


def write_superblock(device: BlockDevice, superblock: Superblock) -> None:
    """Write ``superblock`` to its reserved block on ``device``."""
    device.write_block(SUPERBLOCK_BLOCK, superblock.to_block(device.block_size))
