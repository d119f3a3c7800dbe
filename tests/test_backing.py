# SPDX-License-Identifier: Apache-2.0
"""Tests for sparse backing files and tmpfs pools.

Sparse files are created for real under tmp_path; the mount syscalls
behind the tmpfs pool are mocked.
"""

import errno
from unittest.mock import patch

import pytest

from faultloop.config import Config
from faultloop.core.records import DeviceState, TmpfsPool
from faultloop.core.release import ImmediateRelease
from faultloop.core.session import BatchSession
from faultloop.exceptions import (
    BackingStoreError,
    InsufficientSpace,
    MountError,
    TeardownFailure,
)
from faultloop.fs.backing import SparseFileProvider
from faultloop.fs._syscalls import MS_NODEV, MS_NOSUID

from fake_services import fake_services


@pytest.fixture
def provider(tmp_path):
    return SparseFileProvider(Config(tmp_dir=tmp_path))


# ---------------------------------------------------------------
# Sparse files
# ---------------------------------------------------------------

def test_create_sparse_file(provider, tmp_path):
    path = tmp_path / "disk.img"
    store = provider.create(path, 64 * 1024 ** 2)
    assert store.path == path
    assert store.size_bytes == 64 * 1024 ** 2
    assert store.ephemeral is True
    st = path.stat()
    assert st.st_size == 64 * 1024 ** 2
    # nothing was written: far fewer blocks allocated than the logical size
    assert st.st_blocks * 512 < 1024 ** 2


def test_create_refuses_existing_file(provider, tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(b"keep me")
    with pytest.raises(BackingStoreError):
        provider.create(path, 4096)
    assert path.read_bytes() == b"keep me"


@patch("faultloop.fs.backing.os.ftruncate", side_effect=OSError(errno.ENOSPC, "No space left"))
def test_create_no_space(mock_truncate, provider, tmp_path):
    path = tmp_path / "disk.img"
    with pytest.raises(InsufficientSpace):
        provider.create(path, 4096)
    assert not path.exists()


@patch("faultloop.fs.backing.os.ftruncate", side_effect=OSError(errno.EFBIG, "File too large"))
def test_create_other_error(mock_truncate, provider, tmp_path):
    with pytest.raises(BackingStoreError):
        provider.create(tmp_path / "disk.img", 4096)


def test_destroy_ephemeral_twice(provider, tmp_path):
    store = provider.create(tmp_path / "disk.img", 4096)
    provider.destroy(store)
    assert not store.path.exists()
    provider.destroy(store)


def test_adopt_keeps_user_file(provider, tmp_path):
    path = tmp_path / "user.img"
    path.write_bytes(b"\0" * 8192)
    store = provider.adopt(path)
    assert store.size_bytes == 8192
    assert store.ephemeral is False
    provider.destroy(store)
    assert path.exists()


def test_adopt_missing_file(provider, tmp_path):
    with pytest.raises(BackingStoreError):
        provider.adopt(tmp_path / "missing.img")


def test_adopt_directory(provider, tmp_path):
    with pytest.raises(BackingStoreError, match="not a regular file"):
        provider.adopt(tmp_path)


# ---------------------------------------------------------------
# tmpfs pool
# ---------------------------------------------------------------

@patch("faultloop.fs.backing.mount")
def test_create_pool(mock_mount, provider, tmp_path):
    pool = provider.create_pool(3 * 1024 ** 2 + 512)
    assert pool.size_bytes == 3 * 1024 ** 2 + 512
    assert pool.mountpoint.parent == tmp_path
    assert pool.mountpoint.name.startswith("faultloop-pool-")
    assert pool.mountpoint.is_dir()
    mock_mount.assert_called_once_with(
        "tmpfs",
        str(pool.mountpoint),
        "tmpfs",
        MS_NOSUID | MS_NODEV,
        f"size={3 * 1024 ** 2 + 512},mode=0700",
    )


@patch("faultloop.fs.backing.mount", side_effect=OSError(errno.ENOMEM, "Cannot allocate memory"))
def test_create_pool_out_of_memory(mock_mount, provider, tmp_path):
    with pytest.raises(InsufficientSpace):
        provider.create_pool(1024)
    assert list(tmp_path.iterdir()) == []


@patch("faultloop.fs.backing.mount", side_effect=OSError(errno.EPERM, "Operation not permitted"))
def test_create_pool_mount_error(mock_mount, provider, tmp_path):
    with pytest.raises(MountError):
        provider.create_pool(1024)
    assert list(tmp_path.iterdir()) == []


@patch("faultloop.fs.backing.umount")
def test_destroy_pool(mock_umount, provider, tmp_path):
    mp = tmp_path / "faultloop-pool-x"
    mp.mkdir()
    provider.destroy_pool(TmpfsPool(mp, 1024))
    mock_umount.assert_called_once_with(str(mp))
    assert not mp.exists()


@patch("faultloop.fs.backing.umount", side_effect=OSError(errno.EINVAL, "Invalid argument"))
def test_destroy_pool_twice(mock_umount, provider, tmp_path):
    mp = tmp_path / "faultloop-pool-x"
    mp.mkdir()
    pool = TmpfsPool(mp, 1024)
    provider.destroy_pool(pool)
    provider.destroy_pool(pool)
    assert not mp.exists()


@patch("faultloop.fs.backing.umount", side_effect=OSError(errno.EBUSY, "Device busy"))
def test_destroy_busy_pool_keeps_directory(mock_umount, provider, tmp_path):
    mp = tmp_path / "faultloop-pool-x"
    mp.mkdir()
    with pytest.raises(TeardownFailure):
        provider.destroy_pool(TmpfsPool(mp, 1024))
    assert mp.is_dir()


@patch("faultloop.fs.backing.os.close")
@patch("faultloop.fs.backing.os.ftruncate", side_effect=OverflowError("Python int too large to convert to C long"))
def test_create_size_beyond_off_t(mock_truncate, mock_close, provider, tmp_path):
    path = tmp_path / "disk.img"
    with pytest.raises(BackingStoreError, match="too large"):
        provider.create(path, 2 ** 64)
    assert not path.exists()
    mock_close.assert_called_once()


def test_oversized_member_does_not_stop_batch(tmp_path):
    config = Config(tmp_dir=tmp_path)
    services = fake_services(stores=SparseFileProvider(config))
    session = BatchSession(services, config, release=ImmediateRelease())

    records = session.run([1024 ** 2, 2 ** 64, 1024 ** 2])

    assert [r.state for r in records] == [
        DeviceState.TORN_DOWN,
        DeviceState.FAILED,
        DeviceState.TORN_DOWN,
    ]
    assert isinstance(records[1].error, BackingStoreError)
    assert list(tmp_path.iterdir()) == []


def test_create_pool_in_missing_directory(tmp_path):
    provider = SparseFileProvider(Config(tmp_dir=tmp_path / "missing"))
    with patch("faultloop.fs.backing.mount") as mock_mount:
        with pytest.raises(MountError, match="pool directory"):
            provider.create_pool(1024)
    mock_mount.assert_not_called()
