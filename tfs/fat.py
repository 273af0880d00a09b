"""Allocation table."""

from __future__ import annotations

import logging
import struct
from typing import TYPE_CHECKING, Iterable, Iterator

from .base import ValidationError, ceil_div
from .superblock import FAT_ENTRY_SIZE, FAT_START

if TYPE_CHECKING:
    from .device import BlockDevice
    from .superblock import Superblock

__all__ = ["Fat", "BLOCK_FREE", "BLOCK_EOC"]


log = logging.getLogger(__name__)


BLOCK_FREE = 0
BLOCK_EOC = -1  # end of chain


class Fat:
    """In-memory copy of the allocation table.

    Holds one signed link per block of the volume. The copy is written to its
    reserved run of blocks only by ``flush()``.
    """

    def __init__(self, entries: Iterable[int], data_start: int):
        self._table = list(entries)
        if not 0 < data_start <= len(self._table):
            raise ValueError(
                f"Data region start must be in range (1, {len(self._table)})"
            )
        self._data_start = data_start

    @classmethod
    def empty(cls, superblock: Superblock) -> Fat:
        """Allocation table of a freshly formatted volume.

        Only the first block of the root directory is allocated.
        """
        fat = cls([BLOCK_FREE] * superblock.fat_entries, superblock.data_start)
        fat.set_eoc(superblock.root_block)
        return fat

    @classmethod
    def from_bytes(cls, b: bytes, entries: int, data_start: int) -> Fat:
        """Parse ``entries`` big-endian links from ``b``, ignoring trailing padding."""
        size = entries * FAT_ENTRY_SIZE
        if len(b) < size:
            raise ValidationError(
                f"Allocation table of {entries} entries needs {size} bytes, "
                f"got {len(b)} bytes"
            )
        return cls(struct.unpack(f">{entries}i", b[:size]), data_start)

    @classmethod
    def from_device(cls, device: BlockDevice, superblock: Superblock) -> Fat:
        """Load the allocation table described by ``superblock`` from ``device``."""
        fat_blocks = superblock.fat_blocks(device.block_size)
        b = b"".join(device.read_block(FAT_START + i) for i in range(fat_blocks))
        fat = cls.from_bytes(b, superblock.fat_entries, superblock.data_start)
        fat.validate()
        return fat

    def validate(self) -> None:
        """Raise ``ValidationError`` if any link points outside the volume."""
        for key, value in enumerate(self._table):
            if not BLOCK_EOC <= value < len(self._table):
                raise ValidationError(f"Invalid link {value} for block {key}")

    def to_bytes(self, block_size: int) -> bytes:
        """Pack the table, zero-padded to a multiple of ``block_size`` bytes."""
        b = struct.pack(f">{len(self._table)}i", *self._table)
        fat_blocks = ceil_div(len(b), block_size)
        return b + b"\x00" * (fat_blocks * block_size - len(b))

    def flush(self, device: BlockDevice) -> None:
        """Write the table to its reserved run of blocks on ``device``."""
        block_size = device.block_size
        b = self.to_bytes(block_size)
        for i, offset in enumerate(range(0, len(b), block_size)):
            device.write_block(FAT_START + i, b[offset : offset + block_size])

    def _check_key(self, key: int) -> None:
        """Raise ``IndexError`` if ``key`` is not a valid block index."""
        key_max = len(self._table) - 1
        if not 0 <= key <= key_max:
            raise IndexError(f"Block index must not exceed table bounds (0, {key_max})")

    def _check_value(self, value: int) -> None:
        """Raise ``ValueError`` if ``value`` is not a valid link."""
        value_max = len(self._table) - 1
        if not BLOCK_EOC <= value <= value_max:
            raise ValueError(f"Link must be in range ({BLOCK_EOC}, {value_max})")

    def __len__(self) -> int:
        """Number of entries."""
        return len(self._table)

    def __getitem__(self, key: int) -> int:
        """Read the link of block ``key``."""
        self._check_key(key)
        return self._table[key]

    def __setitem__(self, key: int, value: int) -> None:
        """Set the link of block ``key``."""
        self._check_key(key)
        self._check_value(value)
        self._table[key] = value

    def __iter__(self) -> Iterator[int]:
        return iter(self._table)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Fat):
            return (
                self._table == other._table and self._data_start == other._data_start
            )
        return NotImplemented

    def set_eoc(self, key: int) -> None:
        """Mark block ``key`` as the end of a chain."""
        self[key] = BLOCK_EOC

    def set_empty(self, key: int) -> None:
        """Mark block ``key`` as unused."""
        self[key] = BLOCK_FREE

    def get_chain(self, start_block: int) -> Iterator[int]:
        """Yield the blocks of the chain starting with ``start_block``.

        Raises ``ValueError`` when the walk reaches an unallocated block or does
        not terminate.
        """
        block = start_block
        for _ in range(len(self._table)):
            value = self[block]
            if value == BLOCK_FREE:
                raise ValueError(f"Block {block} in chain is not allocated")
            yield block
            if value == BLOCK_EOC:
                return
            block = value
        raise ValueError(f"Chain starting at block {start_block} does not terminate")

    def chain_length(self, start_block: int) -> int:
        """Number of blocks in the chain starting with ``start_block``."""
        return sum(1 for _ in self.get_chain(start_block))

    def append_to_chain(self, start_block: int, new_block: int) -> None:
        """Link ``new_block`` to the end of the chain starting with ``start_block``
        and mark it as the new end of the chain.
        """
        self._check_key(new_block)
        if self[new_block] != BLOCK_FREE:
            raise ValueError(f"Block {new_block} is already allocated")
        *_, last = self.get_chain(start_block)
        self[last] = new_block
        self.set_eoc(new_block)
        log.debug(f"Appended block {new_block} to chain at block {start_block}")

    def free_chain(self, start_block: int) -> list[int]:
        """Mark every block of the chain starting with ``start_block`` as unused.

        Returns the freed block indices.
        """
        chain = list(self.get_chain(start_block))
        for block in chain:
            self.set_empty(block)
        log.debug(f"Freed chain {chain}")
        return chain

    def find_free_block(self) -> int | None:
        """Return the first unused block of the data region, ``None`` if the volume
        is full.
        """
        for key in range(self._data_start, len(self._table)):
            if self._table[key] == BLOCK_FREE:
                return key
        return None

    def free_blocks(self) -> int:
        """Return the total count of unused blocks of the data region."""
        return sum(
            1 for value in self._table[self._data_start :] if value == BLOCK_FREE
        )

    @property
    def data_start(self) -> int:
        """First block the allocator may hand out."""
        return self._data_start
