"""Fixtures used across the test suite."""

import os
from pathlib import Path
from shutil import rmtree
from tempfile import mkdtemp, mkstemp

import pytest

from tfs.device import BlockDevice
from tfs.filesystem import FileSystem


@pytest.fixture
def tempdir():
    """Fixture providing a new temporary directory for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary directory.
    """
    path = Path(mkdtemp())
    yield path
    rmtree(path)  # clean up


@pytest.fixture
def tempfile():
    """Fixture providing a new temporary file for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary file.
    """
    fd, path_str = mkstemp()
    os.close(fd)  # we are going to use a Path object instead
    path = Path(path_str)
    yield path
    path.unlink(missing_ok=True)  # clean up


@pytest.fixture
def image_path(tempdir):
    """Fixture providing the path of a backing file which does not exist yet."""
    return tempdir / 'disk.img'


@pytest.fixture
def device(image_path):
    """Fixture providing a new backing file of the default geometry (2048 blocks of
    128 bytes).
    """
    dev = BlockDevice.new(image_path)
    yield dev
    dev.close()


@pytest.fixture
def fs(device):
    """Fixture providing a freshly formatted file system on ``device``."""
    file_system = FileSystem.format(device)
    yield file_system
    file_system.exit()


@pytest.fixture
def make_fs(tempdir):
    """Fixture providing a factory for formatted file systems of custom geometry.

    The factory accepts ``block_count`` and ``block_size`` and returns the
    ``FileSystem``. All file systems created are closed on teardown.
    """
    created = []

    def factory(block_count, block_size=128):
        path = tempdir / f'disk_{len(created)}.img'
        dev = BlockDevice.new(path, block_count, block_size=block_size)
        file_system = FileSystem.format(dev)
        created.append(file_system)
        return file_system

    yield factory
    for file_system in created:
        file_system.exit()
