"""Open handles."""

from __future__ import annotations

import os
from dataclasses import dataclass
from errno import EBADF
from itertools import count
from typing import Iterator

from .directory import EntryType

__all__ = ['Handle', 'HandleTable']


@dataclass
class Handle:
    """Open file or directory.

    ``position`` is an absolute byte offset into the entry's chain.
    """

    name: str
    parent_block: int
    entry_type: EntryType
    start_block: int
    size: int
    position: int = 0

    @property
    def is_directory(self) -> bool:
        return self.entry_type is EntryType.DIRECTORY


class HandleTable:
    """Mapping of handle IDs to open handles.

    IDs are handed out in increasing order and never reused, so closing a handle
    leaves the IDs of all other handles valid.
    """

    def __init__(self, first_id: int = 0):
        self._handles: dict[int, Handle] = {}
        self._ids = count(first_id)

    def add(self, handle: Handle) -> int:
        handle_id = next(self._ids)
        self._handles[handle_id] = handle
        return handle_id

    def __getitem__(self, handle_id: int) -> Handle:
        handle = self._handles.get(handle_id)
        if handle is None:
            raise OSError(EBADF, os.strerror(EBADF), handle_id)
        return handle

    def pop(self, handle_id: int) -> Handle:
        handle = self[handle_id]
        del self._handles[handle_id]
        return handle

    def __contains__(self, handle_id: object) -> bool:
        return handle_id in self._handles

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._handles))

    def __len__(self) -> int:
        return len(self._handles)

    def in_use(self, parent_block: int, name: str) -> bool:
        """Whether the entry ``name`` of the directory at ``parent_block`` is open."""
        return any(
            h.parent_block == parent_block and h.name == name
            for h in self._handles.values()
        )
