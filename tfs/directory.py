"""Directory entry and directory block chains.

A directory is a chain of blocks linked through the allocation table, exactly
like a file. Each block holds ``block_size // ENTRY_SIZE`` fixed-size entries;
an entry whose bytes are all zero is an unused slot.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from errno import ENOENT
from typing import TYPE_CHECKING, Iterator, NamedTuple

from typing_extensions import Annotated

from .base import InvalidPathError, ValidationError
from .bytestruct import ByteStruct

if TYPE_CHECKING:
    from .filesystem import FileSystem

__all__ = [
    'ENTRY_SIZE',
    'NAME_SIZE',
    'EntryType',
    'Entry',
    'Slot',
    'Directory',
    'pack_name',
    'create_entry',
    'updated_entry',
    'is_empty_slot',
]


log = logging.getLogger(__name__)


ENTRY_SIZE = 32
NAME_SIZE = 16
NAME_ENCODING = 'utf-8'
NAME_FORBIDDEN = '/\x00'
RESERVED_DEFAULT = b'\x00\x00'


class EntryType(Enum):
    """Value of the type flag of a directory entry.

    Note the polarity: ``0`` marks a subdirectory, ``1`` marks a regular file.
    """

    DIRECTORY = 0
    FILE = 1


@dataclass(frozen=True)
class Entry(ByteStruct):
    """Directory entry describing a file or subdirectory.

    - ``parent_block``: First block of the directory holding the entry.
    - ``type_flag``: Raw ``EntryType`` value.
    - ``name_length``: Length of the encoded name in bytes.
    - ``reserved``: Unused, kept as found.
    - ``name``: Encoded name, zero-padded to ``NAME_SIZE`` bytes.
    - ``first_block``: First block of the entry's chain.
    - ``size``: Size in bytes.
    """

    parent_block: Annotated[int, 4]
    type_flag: Annotated[int, 1]
    name_length: Annotated[int, 1]
    reserved: Annotated[bytes, 2]
    name: Annotated[bytes, 16]
    first_block: Annotated[int, 4]
    size: Annotated[int, 4]

    def validate(self) -> None:
        if self.type_flag not in {t.value for t in EntryType}:
            raise ValidationError(f'Invalid entry type flag {self.type_flag}')
        if not 1 <= self.name_length <= NAME_SIZE:
            raise ValidationError(
                f'Name length must be in range (1, {NAME_SIZE}), got {self.name_length}'
            )

    @property
    def entry_type(self) -> EntryType:
        return EntryType(self.type_flag)

    @property
    def is_directory(self) -> bool:
        return self.entry_type is EntryType.DIRECTORY

    @property
    def filename(self) -> str:
        """Decoded name of the entry."""
        return self.name[: self.name_length].decode(NAME_ENCODING, errors='replace')


class Slot(NamedTuple):
    """Location of an entry: block, index of the entry within the block and the
    entry itself.
    """

    block: int
    index: int
    entry: Entry


def pack_name(name: str) -> bytes:
    """Encode ``name`` and zero-pad it to ``NAME_SIZE`` bytes.

    Raises ``InvalidPathError`` if ``name`` cannot be stored in an entry.
    """
    if name in ('', '.', '..'):
        raise InvalidPathError(f'Invalid file name {name!r}')
    if any(c in NAME_FORBIDDEN for c in name):
        raise InvalidPathError(f'File name {name!r} contains forbidden characters')
    b = name.encode(NAME_ENCODING)
    if len(b) > NAME_SIZE:
        raise InvalidPathError(
            f'File name {name!r} exceeds {NAME_SIZE} bytes ({len(b)} bytes)'
        )
    return b.ljust(NAME_SIZE, b'\x00')


def create_entry(
    parent_block: int,
    name: str,
    entry_type: EntryType,
    first_block: int,
    size: int = 0,
) -> Entry:
    """Build a new ``Entry`` named ``name``."""
    packed = pack_name(name)
    return Entry(
        parent_block,
        entry_type.value,
        len(name.encode(NAME_ENCODING)),
        RESERVED_DEFAULT,
        packed,
        first_block,
        size,
    )


def updated_entry(
    entry: Entry, entry_type: EntryType, first_block: int, size: int
) -> Entry:
    """Return ``entry`` with type flag, first block and size replaced.

    Parent block, reserved bytes and name stay untouched.
    """
    return replace(
        entry, type_flag=entry_type.value, first_block=first_block, size=size
    )


def is_empty_slot(b: bytes) -> bool:
    """Whether the raw entry ``b`` marks an unused slot."""
    return not any(b)


class Directory:
    """Block chain of a single directory.

    Nothing is cached; every operation reads the blocks of the chain from the
    device again.
    """

    def __init__(self, fs: FileSystem, start_block: int):
        self._fs = fs
        self._device = fs.device
        self._fat = fs.fat
        self._start_block = start_block
        self._entries_per_block = fs.device.block_size // ENTRY_SIZE

    def iter_slots(self) -> Iterator[tuple[int, int, bytes]]:
        """Yield ``(block, index, raw entry)`` for every slot of the chain."""
        for block in self._fat.get_chain(self._start_block):
            data = self._device.read_block(block)
            for index in range(self._entries_per_block):
                offset = index * ENTRY_SIZE
                yield block, index, data[offset : offset + ENTRY_SIZE]

    def __iter__(self) -> Iterator[Entry]:
        """Yield every entry in use, in chain order."""
        for _, _, raw in self.iter_slots():
            if not is_empty_slot(raw):
                yield Entry.from_bytes(raw)

    def entries(self) -> list[Entry]:
        return list(self)

    def is_empty(self) -> bool:
        return next(iter(self), None) is None

    def find(self, name: str) -> Slot | None:
        """Return the slot of the entry named ``name``, ``None`` if there is none."""
        packed = pack_name(name)
        for block, index, raw in self.iter_slots():
            if is_empty_slot(raw):
                continue
            entry = Entry.from_bytes(raw)
            if entry.name == packed:
                return Slot(block, index, entry)
        return None

    def _find_existing(self, name: str) -> Slot:
        slot = self.find(name)
        if slot is None:
            raise OSError(ENOENT, os.strerror(ENOENT), name)  # FileNotFoundError
        return slot

    def lookup(self, name: str) -> Entry:
        """Return the entry named ``name``."""
        return self._find_existing(name).entry

    def _write_slot(self, block: int, index: int, b: bytes) -> None:
        data = bytearray(self._device.read_block(block))
        offset = index * ENTRY_SIZE
        data[offset : offset + ENTRY_SIZE] = b
        self._device.write_block(block, data)

    def add(self, entry: Entry) -> Slot:
        """Write ``entry`` into the first unused slot.

        If all slots are in use, the chain is extended by a newly allocated block.
        """
        for block, index, raw in self.iter_slots():
            if is_empty_slot(raw):
                break
        else:
            # noinspection PyProtectedMember
            block = self._fs._allocate_block(self._start_block)
            index = 0
            log.debug(f'Extended directory at block {self._start_block} by {block}')

        self._write_slot(block, index, bytes(entry))
        return Slot(block, index, entry)

    def remove(self, name: str) -> Entry:
        """Zero the slot of the entry named ``name`` and return the old entry."""
        block, index, entry = self._find_existing(name)
        self._write_slot(block, index, bytes(ENTRY_SIZE))
        return entry

    def update(
        self, name: str, entry_type: EntryType, first_block: int, size: int
    ) -> Entry:
        """Overwrite type flag, first block and size of the entry named ``name``."""
        block, index, entry = self._find_existing(name)
        new_entry = updated_entry(entry, entry_type, first_block, size)
        self._write_slot(block, index, bytes(new_entry))
        return new_entry

    @property
    def start_block(self) -> int:
        return self._start_block

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(start_block={self._start_block})'
