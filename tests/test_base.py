"""Tests for the ``base`` module."""

import pytest

from tfs.base import (
    BlockIOError,
    FileSystemLimit,
    InvalidOffsetError,
    InvalidPathError,
    ValidationError,
    ceil_div,
    is_power_of_two,
)


@pytest.mark.parametrize(
    "value", [1, 2, 4, 8, 16, 32, 64, 128, 512, 1024, 2048, 4096, 1048576]
)
def test_is_power_of_two_positive(value):
    """Test successful positive evaluation of ``is_power_of_two()``."""
    assert is_power_of_two(value)


@pytest.mark.parametrize("value", [3, 5, 6, 7, 9, 10, 12, 20, 24, 63, 384, 1000])
def test_is_power_of_two_negative(value):
    """Test successful negative evaluation of ``is_power_of_two()``."""
    assert not is_power_of_two(value)


@pytest.mark.parametrize("value", [0, -1, -4, -7, -256])
def test_is_power_of_two_fail(value):
    """Test ``is_power_of_two()`` against parameters ``value`` which are expected to
    fail.
    """
    with pytest.raises(ValueError):
        is_power_of_two(value)


@pytest.mark.parametrize(
    ["dividend", "divisor", "expected"],
    [(0, 128, 0), (1, 128, 1), (128, 128, 1), (129, 128, 2), (8192, 128, 64)],
)
def test_ceil_div(dividend, divisor, expected):
    assert ceil_div(dividend, divisor) == expected


@pytest.mark.parametrize(
    ["exception", "base"],
    [
        (ValidationError, ValueError),
        (InvalidPathError, ValueError),
        (InvalidOffsetError, ValueError),
        (BlockIOError, OSError),
        (FileSystemLimit, OSError),
    ],
)
def test_exception_hierarchy(exception, base):
    """Test that callers can catch the exceptions through their built-in bases."""
    assert issubclass(exception, base)
