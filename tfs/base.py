"""Exception classes and helper functions used across ``tfs``."""

from __future__ import annotations

__all__ = [
    'ValidationError',
    'BlockIOError',
    'FileSystemLimit',
    'InvalidPathError',
    'InvalidOffsetError',
    'is_power_of_two',
    'ceil_div',
]


class ValidationError(ValueError):
    """Exception raised if an object representing a specific structure -- for example
    the superblock or a directory entry -- cannot be created because the data to be
    parsed as the structure does not conform to the layout of the structure.
    """


class BlockIOError(OSError):
    """Exception raised if reading or writing a block of the backing file failed.

    The failing call is aborted; no retry is attempted.
    """


class FileSystemLimit(OSError):
    """Exception raised if the allocator could not find a free block."""


class InvalidPathError(ValueError):
    """Exception raised if a path does not start with the root separator or
    contains a component which cannot be stored in a directory entry.
    """


class InvalidOffsetError(ValueError):
    """Exception raised for a negative seek offset or an offset lying beyond the
    block chain allocated for a file.
    """


def is_power_of_two(value: int) -> bool:
    """Check if ``value`` is a power of two.

    ``value`` must be an ``int`` greater than zero.

    Returns whether ``value`` can be expressed as 2 to the power of x, with x being
    an integer greater than or equal to zero.
    """
    if value <= 0:
        raise ValueError('Value must be greater than 0')
    return value & (value - 1) == 0


def ceil_div(dividend: int, divisor: int) -> int:
    """Integer division of ``dividend`` by ``divisor``, rounded up."""
    return -(-dividend // divisor)
