# SPDX-License-Identifier: Apache-2.0
"""Sparse backing files and the shared tmpfs pool."""

import errno
import logging
import os
import tempfile
from pathlib import Path

from ..config import Config
from ..core.base import BackingStoreProvider
from ..core.records import BackingStore, TmpfsPool
from ..exceptions import (
    BackingStoreError,
    InsufficientSpace,
    MountError,
    TeardownFailure,
)
from ._syscalls import MS_NODEV, MS_NOSUID, is_not_mounted, mount, umount

logger = logging.getLogger(__name__)

_NO_SPACE = (errno.ENOSPC, errno.EDQUOT)


class SparseFileProvider(BackingStoreProvider):
    """Backing files extended with ftruncate(2), so no data is written."""

    def __init__(self, config: Config):
        self._config = config

    def create(self, path: Path, size_bytes: int) -> BackingStore:
        path = Path(path)
        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
        except OSError as e:
            raise BackingStoreError(f"Failed to create {path}: {e}") from e
        try:
            os.ftruncate(fd, size_bytes)
        except (OSError, OverflowError) as e:
            # OverflowError: size does not fit off_t
            path.unlink(missing_ok=True)
            if getattr(e, "errno", None) in _NO_SPACE:
                raise InsufficientSpace(
                    f"No space for {size_bytes} bytes at {path}: {e}"
                ) from e
            raise BackingStoreError(f"Failed to size {path}: {e}") from e
        finally:
            os.close(fd)
        logger.info("created sparse file %s (%d bytes)", path, size_bytes)
        return BackingStore(path=path, size_bytes=size_bytes, ephemeral=True)

    def adopt(self, path: Path) -> BackingStore:
        path = Path(path)
        try:
            st = path.stat()
        except OSError as e:
            raise BackingStoreError(f"Cannot use {path}: {e}") from e
        if not path.is_file():
            raise BackingStoreError(f"Cannot use {path}: not a regular file")
        return BackingStore(path=path, size_bytes=st.st_size, ephemeral=False)

    def destroy(self, store: BackingStore) -> None:
        if not store.ephemeral:
            logger.debug("keeping user file %s", store.path)
            return
        try:
            store.path.unlink(missing_ok=True)
        except OSError as e:
            raise TeardownFailure(f"Failed to delete {store.path}: {e}") from e
        logger.info("deleted %s", store.path)

    def create_pool(self, size_bytes: int) -> TmpfsPool:
        """Mount a tmpfs of exactly *size_bytes* under tmp_dir."""
        try:
            mountpoint = Path(
                tempfile.mkdtemp(
                    prefix=f"{self._config.name_prefix}-pool-",
                    dir=self._config.tmp_dir,
                )
            )
        except OSError as e:
            raise MountError(
                f"Cannot create a pool directory in {self._config.tmp_dir}: {e}"
            ) from e
        try:
            mount(
                "tmpfs",
                str(mountpoint),
                "tmpfs",
                MS_NOSUID | MS_NODEV,
                f"size={size_bytes},mode=0700",
            )
        except OSError as e:
            mountpoint.rmdir()
            if e.errno == errno.ENOMEM:
                raise InsufficientSpace(
                    f"Cannot reserve {size_bytes} bytes of tmpfs: {e}"
                ) from e
            raise MountError(f"Failed to mount tmpfs at {mountpoint}: {e}") from e
        return TmpfsPool(mountpoint=mountpoint, size_bytes=size_bytes)

    def destroy_pool(self, pool: TmpfsPool) -> None:
        try:
            umount(str(pool.mountpoint))
        except OSError as e:
            if not is_not_mounted(e):
                # Keep the directory: the pool may still hold data
                raise TeardownFailure(
                    f"Failed to unmount tmpfs at {pool.mountpoint}: {e}"
                ) from e
            logger.debug("tmpfs %s was not mounted", pool.mountpoint)
        try:
            pool.mountpoint.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TeardownFailure(
                f"Failed to remove {pool.mountpoint}: {e}"
            ) from e
