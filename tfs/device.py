"""Block device access.

A block device is a flat backing file which is read and written in blocks of a
fixed size only.
"""

from __future__ import annotations

import logging
import os
from types import TracebackType
from typing import TYPE_CHECKING, Any

from .base import BlockIOError, is_power_of_two

if TYPE_CHECKING:
    from .typing_ import ReadableBuffer, StrPath

__all__ = ["BlockDevice", "BLOCK_SIZE_DEFAULT", "BLOCK_COUNT_DEFAULT"]


log = logging.getLogger(__name__)


BLOCK_SIZE_DEFAULT = 128  # bytes
BLOCK_COUNT_DEFAULT = 2048
MIN_BLOCK_SIZE = 32  # one directory entry


if hasattr(os, "pread") and hasattr(os, "pwrite"):
    _read = os.pread
    _write = os.pwrite
else:

    def _read(fd: int, size: int, pos: int) -> bytes:
        """Read `size` bytes from file descriptor `fd` starting at byte `pos`."""
        os.lseek(fd, pos, os.SEEK_SET)
        return os.read(fd, size)

    def _write(fd: int, b: ReadableBuffer, pos: int) -> int:
        """Write raw bytes `b` to file descriptor `fd` starting at byte `pos`."""
        os.lseek(fd, pos, os.SEEK_SET)
        return os.write(fd, b)


def _check_block_size(block_size: int) -> None:
    if block_size < MIN_BLOCK_SIZE:
        raise ValueError(f"Block size must be at least {MIN_BLOCK_SIZE} bytes")
    if not is_power_of_two(block_size):
        raise ValueError("Block size must be a power of 2")


class BlockDevice:
    """Backing file accessed in blocks of `block_size` bytes.

    Do not use `__init__` directly, use `BlockDevice.open()` or `BlockDevice.new()`
    instead.
    """

    def __init__(
        self, fd: int, path: StrPath, block_count: int, block_size: int, writable: bool
    ):
        self._fd = fd
        self._path = str(path)
        self._block_count = block_count
        self._block_size = block_size
        self._writable = writable
        self._closed = False

        log.info(f"Opened block device {self}")
        log.info(f"{self} - {block_count} blocks of {block_size} bytes")

    @classmethod
    def new(
        cls,
        path: StrPath,
        block_count: int = BLOCK_COUNT_DEFAULT,
        *,
        block_size: int = BLOCK_SIZE_DEFAULT,
    ) -> BlockDevice:
        """Create a new zero-filled backing file at `path`.

        Fails with `FileExistsError` if `path` already exists.
        """
        if block_count <= 0:
            raise ValueError("Block count must be greater than 0")
        _check_block_size(block_size)

        flags = os.O_CREAT | os.O_EXCL | os.O_RDWR | getattr(os, "O_BINARY", 0)
        fd = os.open(path, flags, 0o666)
        try:
            os.truncate(fd, block_count * block_size)
            return cls(fd, path, block_count, block_size, True)
        except BaseException:
            os.close(fd)
            raise

    @classmethod
    def open(
        cls,
        path: StrPath,
        *,
        block_size: int = BLOCK_SIZE_DEFAULT,
        readonly: bool = False,
    ) -> BlockDevice:
        """Open the existing backing file at `path`."""
        _check_block_size(block_size)
        read_write_flag = os.O_RDONLY if readonly else os.O_RDWR
        flags = read_write_flag | getattr(os, "O_BINARY", 0)
        fd = os.open(path, flags)

        try:
            size = os.fstat(fd).st_size
            if size == 0 or size % block_size != 0:
                raise ValueError(
                    f"Size of backing file ({size} bytes) is not a positive multiple "
                    f"of the block size ({block_size} bytes)"
                )
            return cls(fd, path, size // block_size, block_size, not readonly)
        except BaseException:
            os.close(fd)
            raise

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self._block_count:
            raise ValueError(
                f"Block index must be in range (0, {self._block_count - 1}), "
                f"got {index}"
            )

    def read_block(self, index: int) -> bytes:
        """Read the block with index `index`."""
        self.check_closed()
        self._check_index(index)

        try:
            b = _read(self._fd, self._block_size, index * self._block_size)
        except OSError as e:
            raise BlockIOError(e.errno, f"Failed to read block {index}: {e}") from e

        if len(b) != self._block_size:
            raise BlockIOError(
                f"Did not read the expected amount of bytes from block {index} "
                f"(expected {self._block_size} bytes, got {len(b)} bytes)"
            )
        return b

    def write_block(
        self, index: int, b: ReadableBuffer, *, fill_zeroes: bool = False
    ) -> None:
        """Write raw bytes `b` to the block with index `index`.

        :param index: Block to write to.
        :param b: Bytes to write, exactly one block long.
        :param fill_zeroes: Whether to fill up the block with zeroes if `b` doesn't
            cover the whole block.
        """
        self.check_closed()
        self.check_writable()
        self._check_index(index)

        if not isinstance(b, memoryview):
            b = memoryview(b).cast("B")
        size = b.nbytes

        if size != self._block_size:
            if not fill_zeroes or size > self._block_size:
                raise ValueError(
                    f"Can only write exactly {self._block_size} bytes (block size), "
                    f"got {size} bytes"
                )
            b = memoryview(bytes(b) + b"\x00" * (self._block_size - size))

        try:
            bytes_written = _write(self._fd, b, index * self._block_size)
        except OSError as e:
            raise BlockIOError(e.errno, f"Failed to write block {index}: {e}") from e

        if bytes_written != self._block_size:
            raise BlockIOError(
                f"Did not write the expected amount of bytes to block {index} "
                f"(expected {self._block_size} bytes, wrote {bytes_written} bytes)"
            )

    def flush(self) -> None:
        """Flush write buffers of the backing file."""
        self.check_closed()
        try:
            os.fsync(self._fd)
        except OSError as e:
            raise BlockIOError(e.errno, f"Failed to flush {self}: {e}") from e

    def close(self) -> None:
        """Close the backing file.

        This method has no effect if the device is already closed.
        """
        if self._closed:
            return
        os.close(self._fd)
        self._closed = True
        log.info(f"Closed block device {self}")

    def __enter__(self) -> BlockDevice:
        """Context management protocol."""
        self.check_closed()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType,
    ) -> None:
        """Context management protocol."""
        self.close()

    @property
    def block_size(self) -> int:
        """Size of a block in bytes."""
        return self._block_size

    @property
    def block_count(self) -> int:
        """Number of blocks of the device."""
        return self._block_count

    @property
    def size(self) -> int:
        """Size of the backing file in bytes."""
        return self._block_count * self._block_size

    @property
    def closed(self) -> bool:
        """Whether the backing file is closed."""
        return self._closed

    @property
    def writable(self) -> bool:
        """Whether the backing file supports writing."""
        self.check_closed()
        return self._writable

    def check_closed(self) -> None:
        """Raise `ValueError` if the backing file is closed."""
        if self._closed:
            raise ValueError("I/O operation on closed block device")

    def check_writable(self) -> None:
        """Raise `ValueError` if the backing file is read-only."""
        if not self._writable:
            raise ValueError("Block device is not writable")

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, BlockDevice):
            return self._path == other._path
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._path)

    def __str__(self) -> str:
        return self._path

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self._path}, block_count={self._block_count}, "
            f"block_size={self._block_size})"
        )
