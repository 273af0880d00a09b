"""File system context.

A ``FileSystem`` owns the in-memory copies of the superblock and the allocation
table of one block device together with the table of open handles. Several
instances for different devices may coexist.
"""

from __future__ import annotations

import logging
import os
import posixpath
from errno import EACCES, EEXIST, EINVAL, EISDIR, ENOENT, ENOSPC, ENOTDIR, ENOTEMPTY
from functools import wraps
from itertools import islice
from threading import Lock
from types import TracebackType
from typing import TYPE_CHECKING, Callable, TypeVar

from typing_extensions import Concatenate, ParamSpec

from .base import (
    FileSystemLimit,
    InvalidOffsetError,
    InvalidPathError,
    ValidationError,
    ceil_div,
)
from .directory import Directory, Entry, EntryType, create_entry
from .fat import BLOCK_EOC, BLOCK_FREE, Fat
from .handle import Handle, HandleTable
from .superblock import (
    NO_FREE_BLOCK,
    SUPERBLOCK_BLOCK,
    Superblock,
    read_superblock,
    write_superblock,
)

if TYPE_CHECKING:
    from .device import BlockDevice
    from .typing_ import ReadableBuffer, StrPath

__all__ = ["FileSystem"]


log = logging.getLogger(__name__)


RESERVED_BLOCK = 0
DUMP_ENTRIES_PER_LINE = 8


# Typing
P = ParamSpec("P")
R = TypeVar("R")  # return type


def _split_path(path: StrPath) -> list[str]:
    """Split the absolute path ``path`` into its components."""
    p = os.fspath(path)
    if not p.startswith("/"):
        raise InvalidPathError(f"Path {p!r} does not start with '/'")
    return [part for part in p.split("/") if part]


def _check_directory(node: Entry | Handle, *, hint: StrPath) -> None:
    """Ensure that ``node`` describes a directory.

    :param hint: Path shown as a hint in the exception.
    """
    if not node.is_directory:
        raise OSError(ENOTDIR, os.strerror(ENOTDIR), str(hint))


def _check_file(node: Entry | Handle, *, hint: StrPath) -> None:
    """Ensure that ``node`` describes a regular file.

    :param hint: Path shown as a hint in the exception.
    """
    if node.is_directory:
        raise OSError(EISDIR, os.strerror(EISDIR), str(hint))


def _format_metadata(
    title: str, superblock: Superblock, fat: Fat, block_size: int
) -> str:
    lines = [
        f"{title}:",
        f"Superblock: root block {superblock.root_block}, "
        f"free block {superblock.free_block}, "
        f"allocation table {superblock.fat_blocks(block_size)} blocks "
        f"({superblock.fat_entries} entries)",
        "Allocation table:",
    ]
    values = list(fat)
    for start in range(0, len(values), DUMP_ENTRIES_PER_LINE):
        row = values[start : start + DUMP_ENTRIES_PER_LINE]
        lines.append(
            "  ".join(f"{start + i:>5}: {value:>5}" for i, value in enumerate(row))
        )
    return "\n".join(lines)


def locked(
    method: Callable[Concatenate["FileSystem", P], R],
) -> Callable[Concatenate["FileSystem", P], R]:
    @wraps(method)
    def locked_wrapper(self: "FileSystem", *args: P.args, **kwargs: P.kwargs) -> R:
        with self._lock:
            self._check_mounted()
            return method(self, *args, **kwargs)

    return locked_wrapper


class FileSystem:
    """File system residing on a block device.

    Do not use ``__init__`` directly, use ``FileSystem.format()`` or
    ``FileSystem.mount()`` instead.

    Paths are absolute, using ``/`` as separator. Directory contents are never
    cached: every operation reads the directory blocks it needs from the device.
    The superblock and the allocation table are written back on ``sync()``,
    ``unmount()`` and whenever the free block cursor is consumed.
    """

    def __init__(self, device: BlockDevice, superblock: Superblock, fat: Fat):
        self._device = device
        self._superblock = superblock
        self._fat = fat
        self._handles = HandleTable()
        self._lock = Lock()
        self._mounted = True

    @classmethod
    def format(cls, device: BlockDevice) -> FileSystem:
        """Create a new file system spanning all blocks of ``device``.

        **Caution:** Any file system already residing on the device is rendered
        unusable.
        """
        device.check_closed()
        device.check_writable()
        superblock = Superblock.for_volume(device.block_count, device.block_size)
        fat = Fat.empty(superblock)

        zero_block = bytes(device.block_size)
        device.write_block(RESERVED_BLOCK, zero_block)
        device.write_block(superblock.root_block, zero_block)

        fs = cls(device, superblock, fat)
        fs._sync()
        log.info(f"{device} - Formatted file system: {superblock}")
        return fs

    @classmethod
    def mount(cls, device: BlockDevice) -> FileSystem:
        """Load the file system residing on ``device``.

        Raises ``ValidationError`` if no valid file system is found.
        """
        device.check_closed()
        superblock = read_superblock(device)
        fat = Fat.from_device(device, superblock)

        if fat[superblock.root_block] == BLOCK_FREE:
            raise ValidationError("First block of the root directory is not allocated")

        cursor = superblock.free_block
        if cursor != NO_FREE_BLOCK and fat[cursor] != BLOCK_FREE:
            free_block = fat.find_free_block()
            log.warning(
                f"{device} - Free block cursor {cursor} refers to an allocated "
                f"block, using block {free_block} instead"
            )
            superblock = superblock.with_free_block(
                NO_FREE_BLOCK if free_block is None else free_block
            )

        log.info(f"{device} - Mounted file system: {superblock}")
        return cls(device, superblock, fat)

    @property
    def device(self) -> BlockDevice:
        return self._device

    @property
    def superblock(self) -> Superblock:
        """In-memory copy of the superblock."""
        return self._superblock

    @property
    def fat(self) -> Fat:
        """In-memory copy of the allocation table."""
        return self._fat

    @property
    def root_block(self) -> int:
        return self._superblock.root_block

    @property
    def block_size(self) -> int:
        return self._device.block_size

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def lock(self) -> Lock:
        return self._lock

    def _check_mounted(self) -> None:
        self._device.check_closed()
        if not self._mounted:
            raise ValueError("File system is not mounted")

    # Superblock and allocation table

    def _sync(self) -> None:
        """Write the in-memory superblock and allocation table to the device."""
        write_superblock(self._device, self._superblock)
        self._fat.flush(self._device)

    def _advance_free_block(self) -> None:
        """Point the free block cursor at the first free block and persist it."""
        free_block = self._fat.find_free_block()
        if free_block is None:
            free_block = NO_FREE_BLOCK
            log.info(f"{self._device} - No free blocks left")
        self._superblock = self._superblock.with_free_block(free_block)
        self._sync()
        log.debug(f"Free block cursor advanced to {free_block}")

    def _consume(self, block: int) -> None:
        if block == self._superblock.free_block:
            self._advance_free_block()

    def _release(self, blocks: list[int]) -> None:
        """Move the free block cursor back if ``blocks`` were freed before it."""
        if not blocks:
            return
        lowest = min(blocks)
        cursor = self._superblock.free_block
        if cursor == NO_FREE_BLOCK or lowest < cursor:
            self._superblock = self._superblock.with_free_block(lowest)
            self._sync()
            log.debug(f"Free block cursor moved back to {lowest}")

    def _zero_block(self, block: int) -> None:
        self._device.write_block(block, bytes(self._device.block_size))

    def _allocate_block(self, chain_start: int | None = None) -> int:
        """Allocate a zeroed block.

        The block is appended to the chain starting at ``chain_start`` or, if
        ``chain_start`` is ``None``, becomes a chain of its own.
        """
        block = self._fat.find_free_block()
        if block is None:
            raise FileSystemLimit(ENOSPC, "No free block available")
        if chain_start is None:
            self._fat.set_eoc(block)
        else:
            self._fat.append_to_chain(chain_start, block)
        self._zero_block(block)
        self._consume(block)
        return block

    @locked
    def sync(self) -> None:
        """Write the in-memory metadata to the device and flush it."""
        self._sync()
        self._device.flush()
        log.info(f"{self._device} - Synced file system")

    @locked
    def free_blocks(self) -> int:
        return self._fat.free_blocks()

    @locked
    def dump_memory_metadata(self) -> str:
        """Text listing of the in-memory superblock and allocation table."""
        return _format_metadata(
            "In memory", self._superblock, self._fat, self._device.block_size
        )

    @locked
    def dump_disk_metadata(self) -> str:
        """Text listing of the superblock and allocation table found on the device."""
        superblock = Superblock.from_block(self._device.read_block(SUPERBLOCK_BLOCK))
        fat = Fat.from_device(self._device, superblock)
        return _format_metadata("On disk", superblock, fat, self._device.block_size)

    # Directory engine

    def _directory(self, start_block: int) -> Directory:
        return Directory(self, start_block)

    def _walk(self, parts: list[str], path: StrPath) -> int:
        """Return the first block of the directory reached by following ``parts``
        from the root directory.
        """
        block = self._superblock.root_block
        for part in parts:
            slot = self._directory(block).find(part)
            if slot is None:
                raise OSError(ENOENT, os.strerror(ENOENT), str(path))
            _check_directory(slot.entry, hint=path)
            block = slot.entry.first_block
        return block

    def _locate(self, path: StrPath) -> tuple[int, str]:
        """Return the first block of the parent directory of ``path`` and the
        name of the last path component.
        """
        parts = _split_path(path)
        if not parts:
            raise InvalidPathError("Root directory has no directory entry")
        return self._walk(parts[:-1], path), parts[-1]

    def _lookup(self, path: StrPath) -> tuple[int, str, Entry]:
        parent_block, name = self._locate(path)
        slot = self._directory(parent_block).find(name)
        if slot is None:
            raise OSError(ENOENT, os.strerror(ENOENT), str(path))
        return parent_block, name, slot.entry

    def _resolve_directory(self, path: StrPath) -> int:
        return self._walk(_split_path(path), path)

    def _create_entry(
        self,
        parent_block: int,
        name: str,
        entry_type: EntryType,
        first_block: int,
        size: int = 0,
    ) -> Entry:
        self._device.check_writable()
        entry = create_entry(parent_block, name, entry_type, first_block, size)
        if not self._fat.data_start <= first_block < len(self._fat):
            raise ValueError(f"First block {first_block} lies outside the data region")

        directory = self._directory(parent_block)
        if directory.find(name) is not None:
            raise OSError(EEXIST, os.strerror(EEXIST), name)

        claimed = self._fat[first_block] == BLOCK_FREE
        if claimed:
            self._fat.set_eoc(first_block)
            self._zero_block(first_block)
            self._consume(first_block)
        else:
            log.warning(
                f"First block {first_block} of entry {name!r} is already allocated, "
                f"reusing the existing allocation"
            )

        try:
            directory.add(entry)
        except BaseException:
            if claimed:
                self._fat.set_empty(first_block)
                self._release([first_block])
            raise

        log.debug(
            f"Created {entry_type.name.lower()} {name!r} in directory at block "
            f"{parent_block}, first block {first_block}"
        )
        return entry

    def _delete_entry(self, parent_block: int, name: str) -> Entry:
        self._device.check_writable()
        entry = self._directory(parent_block).remove(name)
        first_block = entry.first_block
        if (
            self._fat.data_start <= first_block < len(self._fat)
            and self._fat[first_block] != BLOCK_FREE
        ):
            self._release(self._fat.free_chain(first_block))
        log.debug(f"Deleted {name!r} from directory at block {parent_block}")
        return entry

    @locked
    def resolve_parent(self, path: StrPath) -> int:
        """Return the first block of the directory which holds (or would hold) the
        entry for the last component of ``path``.
        """
        return self._locate(path)[0]

    @locked
    def create_entry(
        self,
        parent_block: int,
        name: str,
        entry_type: EntryType,
        first_block: int,
        size: int = 0,
    ) -> Entry:
        """Create an entry in the directory starting at ``parent_block``.

        ``first_block`` is allocated as a chain of one block unless it is allocated
        already, in which case the existing allocation is reused.
        """
        return self._create_entry(parent_block, name, entry_type, first_block, size)

    @locked
    def delete_entry(self, parent_block: int, name: str) -> Entry:
        """Delete an entry from the directory starting at ``parent_block`` and free
        its chain.
        """
        return self._delete_entry(parent_block, name)

    @locked
    def update_entry(
        self,
        parent_block: int,
        name: str,
        entry_type: EntryType,
        first_block: int,
        size: int,
    ) -> Entry:
        return self._directory(parent_block).update(
            name, entry_type, first_block, size
        )

    @locked
    def lookup_entry(self, parent_block: int, name: str) -> Entry:
        return self._directory(parent_block).lookup(name)

    @locked
    def list_entries(self, start_block: int) -> list[Entry]:
        """Return all entries of the directory starting at ``start_block``."""
        return self._directory(start_block).entries()

    # Path operations

    def _create(self, path: StrPath, entry_type: EntryType) -> Entry:
        parent_block, name = self._locate(path)
        first_block = self._superblock.free_block
        if first_block == NO_FREE_BLOCK:
            raise FileSystemLimit(ENOSPC, "No free block available", str(path))
        return self._create_entry(parent_block, name, entry_type, first_block)

    def _is_directory(self, path: StrPath) -> bool:
        if not _split_path(path):
            return True
        try:
            return self._lookup(path)[2].is_directory
        except FileNotFoundError:
            return False

    def _check_not_open(self, parent_block: int, name: str, path: StrPath) -> None:
        if self._handles.in_use(parent_block, name):
            raise OSError(EACCES, "File or directory is open", str(path))

    @locked
    def mkdir(self, path: StrPath) -> None:
        self._create(path, EntryType.DIRECTORY)

    @locked
    def rmdir(self, path: StrPath) -> None:
        parent_block, name, entry = self._lookup(path)
        _check_directory(entry, hint=path)
        self._check_not_open(parent_block, name, path)
        if not self._directory(entry.first_block).is_empty():
            raise OSError(ENOTEMPTY, os.strerror(ENOTEMPTY), str(path))
        self._delete_entry(parent_block, name)

    @locked
    def create(self, path: StrPath) -> None:
        """Create an empty file."""
        self._create(path, EntryType.FILE)

    @locked
    def remove(self, path: StrPath) -> None:
        parent_block, name, entry = self._lookup(path)
        _check_file(entry, hint=path)
        self._check_not_open(parent_block, name, path)
        self._delete_entry(parent_block, name)

    @locked
    def listdir(self, path: StrPath = "/") -> list[str]:
        block = self._resolve_directory(path)
        return [entry.filename for entry in self._directory(block)]

    @locked
    def scandir(self, path: StrPath = "/") -> list[Entry]:
        block = self._resolve_directory(path)
        return self._directory(block).entries()

    @locked
    def stat(self, path: StrPath) -> Entry:
        return self._lookup(path)[2]

    @locked
    def exists(self, path: StrPath) -> bool:
        try:
            if not _split_path(path):
                return True
            self._lookup(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    @locked
    def rename(self, src: StrPath, dst: StrPath) -> None:
        """Move the entry ``src`` to ``dst``, possibly into another directory.

        If ``dst`` exists, ``FileExistsError`` is raised.
        """
        self._device.check_writable()
        src_parent, src_name, entry = self._lookup(src)
        self._check_not_open(src_parent, src_name, src)

        src_parts = _split_path(src)
        dst_parts = _split_path(dst)
        if src_parts == dst_parts:
            return
        if entry.is_directory and dst_parts[: len(src_parts)] == src_parts:
            raise OSError(EINVAL, "Cannot move a directory into itself", str(dst))

        dst_parent, dst_name = self._locate(dst)
        dst_directory = self._directory(dst_parent)
        if dst_directory.find(dst_name) is not None:
            raise OSError(EEXIST, os.strerror(EEXIST), str(dst))

        new_entry = create_entry(
            dst_parent, dst_name, entry.entry_type, entry.first_block, entry.size
        )
        dst_directory.add(new_entry)
        self._directory(src_parent).remove(src_name)
        log.debug(f"Renamed {src} to {dst}")

    @locked
    def copy(self, src: StrPath, dst: StrPath) -> None:
        """Copy the file ``src`` to ``dst``.

        If ``dst`` is an existing directory, the copy keeps the name of ``src``.
        If the data cannot be written, the partial copy is removed again.
        """
        _, src_name, entry = self._lookup(src)
        _check_file(entry, hint=src)

        dst_path = os.fspath(dst)
        if self._is_directory(dst_path):
            dst_path = posixpath.join(dst_path, src_name)

        new_entry = self._create(dst_path, EntryType.FILE)
        data = self._read_data(entry.first_block, 0, entry.size)
        try:
            self._write_data(new_entry.first_block, 0, data)
            self._directory(new_entry.parent_block).update(
                new_entry.filename, EntryType.FILE, new_entry.first_block, len(data)
            )
        except BaseException:
            self._delete_entry(new_entry.parent_block, new_entry.filename)
            raise
        log.debug(f"Copied {src} to {dst_path}")

    # Handles

    def _offset_to_block(self, start_block: int, offset: int) -> int:
        if offset < 0:
            raise InvalidOffsetError(f"Negative offset {offset}")
        block = start_block
        for _ in range(offset // self._device.block_size):
            block = self._fat[block]
            if block in (BLOCK_FREE, BLOCK_EOC):
                raise InvalidOffsetError(
                    f"Offset {offset} lies beyond the chain starting at block "
                    f"{start_block}"
                )
        return block

    def _read_data(self, start_block: int, offset: int, size: int) -> bytes:
        """Read up to ``size`` bytes at ``offset`` of the chain at ``start_block``."""
        if size <= 0:
            return b""
        block_size = self._device.block_size
        result = bytearray()
        in_block = offset % block_size
        chain = islice(self._fat.get_chain(start_block), offset // block_size, None)

        for block in chain:
            if len(result) >= size:
                break
            data = self._device.read_block(block)
            result += data[in_block : in_block + size - len(result)]
            in_block = 0
        return bytes(result)

    def _write_data(self, start_block: int, offset: int, b: bytes) -> None:
        """Write ``b`` at ``offset`` of the chain at ``start_block``, extending the
        chain as needed.
        """
        if not b:
            return
        block_size = self._device.block_size
        required = ceil_div(offset + len(b), block_size)
        for _ in range(required - self._fat.chain_length(start_block)):
            self._allocate_block(start_block)

        pos = 0
        in_block = offset % block_size
        chain = islice(self._fat.get_chain(start_block), offset // block_size, None)

        for block in chain:
            if pos >= len(b):
                break
            n = min(block_size - in_block, len(b) - pos)
            if n == block_size:
                self._device.write_block(block, b[pos : pos + n])
            else:
                data = bytearray(self._device.read_block(block))
                data[in_block : in_block + n] = b[pos : pos + n]
                self._device.write_block(block, data)
            pos += n
            in_block = 0

    def _close(self, handle_id: int) -> None:
        handle = self._handles[handle_id]
        if self._device.writable:
            self._directory(handle.parent_block).update(
                handle.name, handle.entry_type, handle.start_block, handle.size
            )
        self._handles.pop(handle_id)
        log.debug(f"Closed handle {handle_id} ({handle.name!r})")

    @locked
    def open(self, path: StrPath) -> int:
        """Open the file or directory ``path`` and return a handle ID.

        An entry can be open on one handle at a time.
        """
        parent_block, name, entry = self._lookup(path)
        self._check_not_open(parent_block, name, path)
        handle = Handle(
            name, parent_block, entry.entry_type, entry.first_block, entry.size
        )
        handle_id = self._handles.add(handle)
        log.debug(f"Opened {path} as handle {handle_id}")
        return handle_id

    @locked
    def close(self, handle_id: int) -> None:
        """Write size and first block of the handle back to its directory entry and
        discard the handle.
        """
        self._close(handle_id)

    @locked
    def seek(self, handle_id: int, offset: int) -> int:
        """Set the position of the handle. Seeking past the end is allowed."""
        handle = self._handles[handle_id]
        if offset < 0:
            raise InvalidOffsetError(f"Negative seek position {offset}")
        handle.position = offset
        return offset

    @locked
    def tell(self, handle_id: int) -> int:
        return self._handles[handle_id].position

    @locked
    def handle_info(self, handle_id: int) -> Handle:
        return self._handles[handle_id]

    @locked
    def offset_to_block(self, handle_id: int, offset: int) -> int:
        """Return the block holding byte ``offset`` of the handle's chain."""
        return self._offset_to_block(self._handles[handle_id].start_block, offset)

    @locked
    def read(self, handle_id: int, size: int = -1) -> bytes:
        """Read up to ``size`` bytes at the position of the handle.

        Reads span block boundaries and stop at the end of the file. If ``size``
        is negative, everything up to the end of the file is read. At the end of
        the file, ``b""`` is returned. A position past the end of the file must
        still lie within the chain, otherwise ``InvalidOffsetError`` is raised.
        """
        handle = self._handles[handle_id]
        _check_file(handle, hint=handle.name)
        if handle.position == handle.size:
            return b""
        self._offset_to_block(handle.start_block, handle.position)

        available = max(0, handle.size - handle.position)
        if size < 0 or size > available:
            size = available
        data = self._read_data(handle.start_block, handle.position, size)
        handle.position += len(data)
        return data

    @locked
    def write(self, handle_id: int, b: ReadableBuffer) -> int:
        """Write ``b`` at the position of the handle.

        The chain is extended as needed and the size of the handle grows to cover
        the written range. Returns the number of bytes written.
        """
        handle = self._handles[handle_id]
        _check_file(handle, hint=handle.name)
        self._device.check_writable()
        data = bytes(b)
        self._write_data(handle.start_block, handle.position, data)
        handle.position += len(data)
        handle.size = max(handle.size, handle.position)
        return len(data)

    @property
    def open_handles(self) -> list[int]:
        return list(self._handles)

    # Lifecycle

    @locked
    def unmount(self) -> None:
        """Close all handles, write the metadata to the device and flush it.

        On a read-only device, handles are discarded without writing anything.
        """
        for handle_id in self._handles:
            self._close(handle_id)
        if self._device.writable:
            self._sync()
            self._device.flush()
        self._mounted = False
        log.info(f"{self._device} - Unmounted file system")

    def exit(self) -> None:
        """Unmount the file system if needed and close the device.

        This method has no effect if the device is already closed.
        """
        if self._device.closed:
            return
        if self._mounted:
            self.unmount()
        self._device.close()

    def __enter__(self) -> FileSystem:
        """Context management protocol."""
        self._check_mounted()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType,
    ) -> None:
        """Context management protocol."""
        self.exit()

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self._device!r}, "
            f"root_block={self._superblock.root_block}, "
            f"free_block={self._superblock.free_block})"
        )
