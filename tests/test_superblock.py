"""Tests for the ``superblock`` module."""

from dataclasses import replace

import pytest

from tfs.base import ValidationError
from tfs.device import BlockDevice
from tfs.superblock import (
    NO_FREE_BLOCK,
    SUPERBLOCK_BLOCK,
    Superblock,
    read_superblock,
    write_superblock,
)


@pytest.mark.parametrize(
    ['block_count', 'block_size', 'fat_blocks', 'root_block', 'free_block'],
    [
        (2048, 128, 64, 66, 67),
        (64, 128, 2, 4, 5),
        (100, 64, 7, 9, 10),
        (1024, 512, 8, 10, 11),
    ],
)
def test_for_volume(block_count, block_size, fat_blocks, root_block, free_block):
    """Test the layout computed for a freshly formatted volume."""
    superblock = Superblock.for_volume(block_count, block_size)
    assert superblock.fat_entries == block_count
    assert superblock.fat_blocks(block_size) == fat_blocks
    assert superblock.root_block == root_block
    assert superblock.free_block == free_block
    assert superblock.data_start == free_block


@pytest.mark.parametrize(['block_count', 'block_size'], [(4, 128), (4, 32), (1, 128)])
def test_for_volume_fail_too_small(block_count, block_size):
    with pytest.raises(ValidationError, match='.*too small.*'):
        Superblock.for_volume(block_count, block_size)


def test_bytes_layout():
    """Test that the fields are stored big-endian at offsets 0, 4 and 8."""
    superblock = Superblock(2048, 66, -1)
    assert bytes(superblock) == (
        b'\x00\x00\x08\x00' b'\x00\x00\x00\x42' b'\xff\xff\xff\xff'
    )
    block = superblock.to_block(128)
    assert len(block) == 128
    assert block[12:] == bytes(116)
    assert Superblock.from_block(block) == superblock


@pytest.mark.parametrize(
    'replace_kwargs',
    [{'fat_entries': 0}, {'root_block': 1}, {'free_block': -2}],
)
def test_validate_fail(replace_kwargs):
    superblock = Superblock(2048, 66, 67)
    with pytest.raises(ValidationError):
        replace(superblock, **replace_kwargs)


def test_with_free_block():
    superblock = Superblock(2048, 66, 67)
    advanced = superblock.with_free_block(NO_FREE_BLOCK)
    assert advanced.free_block == NO_FREE_BLOCK
    assert superblock.free_block == 67
    assert advanced.root_block == superblock.root_block


def test_write_read(image_path):
    with BlockDevice.new(image_path, 64) as device:
        superblock = Superblock.for_volume(64, 128)
        write_superblock(device, superblock)
        assert device.read_block(SUPERBLOCK_BLOCK)[:12] == bytes(superblock)
        assert read_superblock(device) == superblock


@pytest.mark.parametrize(
    'superblock',
    [
        Superblock(128, 4, 5),  # entry count differs from block count
        Superblock(64, 5, 6),  # root block does not follow the table
        Superblock(64, 4, 3),  # cursor inside the metadata
        Superblock(64, 4, 64),  # cursor beyond the volume
    ],
)
def test_read_fail_mismatch(image_path, superblock):
    with BlockDevice.new(image_path, 64) as device:
        write_superblock(device, superblock)
        with pytest.raises(ValidationError):
            read_superblock(device)


def test_read_fail_unformatted(image_path):
    """Test that a zero-filled block is not accepted as a superblock."""
    with BlockDevice.new(image_path, 64) as device:
        with pytest.raises(ValidationError):
            read_superblock(device)
