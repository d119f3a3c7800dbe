# SPDX-License-Identifier: Apache-2.0
"""Formatting with mkfs and mounting via mount(2)."""

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from ..config import Config
from ..core.base import FilesystemService
from ..core.records import MountedFilesystem
from ..exceptions import FormatError, MountError, TeardownFailure
from ._mount import find_mounts_with_prefix
from ._syscalls import is_not_mounted, mount, umount

logger = logging.getLogger(__name__)


class HostFilesystemService(FilesystemService):
    """Creates ``config.fs_type`` filesystems and mounts them on fresh dirs."""

    def __init__(self, config: Config):
        self._config = config

    def format(self, device: Path) -> None:
        cmd = [f"mkfs.{self._config.fs_type}", *self._config.mkfs_args, str(device)]
        logger.debug("running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise FormatError(f"Cannot run {cmd[0]}: {e}") from e
        if result.returncode != 0:
            raise FormatError(
                f"{cmd[0]} failed on {device}: "
                f"{result.stderr.strip() or f'exit status {result.returncode}'}"
            )
        logger.info("formatted %s as %s", device, self._config.fs_type)

    def mount(
        self, device: Path, mountpoint: Optional[Path] = None
    ) -> MountedFilesystem:
        owns = mountpoint is None
        if mountpoint is None:
            try:
                mountpoint = Path(
                    tempfile.mkdtemp(
                        prefix=f"{self._config.name_prefix}-mnt-",
                        dir=self._config.tmp_dir,
                    )
                )
            except OSError as e:
                raise MountError(
                    f"Cannot create a mountpoint in {self._config.tmp_dir}: {e}"
                ) from e
        try:
            mount(
                str(device),
                str(mountpoint),
                self._config.fs_type,
                0,
                self._config.mount_options,
            )
        except OSError as e:
            if owns:
                mountpoint.rmdir()
            raise MountError(f"Failed to mount {device} at {mountpoint}: {e}") from e
        logger.info("mounted %s at %s", device, mountpoint)
        return MountedFilesystem(
            mountpoint=mountpoint, device=Path(device), owns_mountpoint=owns
        )

    def unmount(self, mount: MountedFilesystem) -> None:
        try:
            umount(str(mount.mountpoint))
        except OSError as e:
            if not is_not_mounted(e):
                # Leave the directory for inspection; data may be unflushed
                raise TeardownFailure(
                    f"Failed to unmount {mount.mountpoint}: {e}"
                ) from e
            logger.debug("%s was not mounted", mount.mountpoint)
        else:
            logger.info("unmounted %s", mount.mountpoint)
        if mount.owns_mountpoint:
            try:
                mount.mountpoint.rmdir()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise TeardownFailure(
                    f"Failed to remove {mount.mountpoint}: {e}"
                ) from e

    def list_mounts(self, prefix: str) -> list[MountedFilesystem]:
        return [
            MountedFilesystem(mountpoint=m.mountpoint, device=Path(m.source))
            for m in find_mounts_with_prefix(prefix)
        ]
