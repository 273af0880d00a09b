"""Small FAT-style file system stored in a flat block file."""

from .base import (
    BlockIOError,
    FileSystemLimit,
    InvalidOffsetError,
    InvalidPathError,
    ValidationError,
)
from .device import BlockDevice
from .directory import Entry, EntryType
from .filesystem import FileSystem

__all__ = [
    "BlockDevice",
    "FileSystem",
    "Entry",
    "EntryType",
    "BlockIOError",
    "FileSystemLimit",
    "InvalidOffsetError",
    "InvalidPathError",
    "ValidationError",
]
