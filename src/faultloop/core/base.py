# SPDX-License-Identifier: Apache-2.0
"""Abstract capability interfaces the orchestrator is written against.

Host implementations live in ``faultloop.fs``; tests substitute in-memory
doubles. Every primitive either returns its resource or raises a
``FaultLoopError`` subclass.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .mapping import MappingTable
from .records import (
    BackingStore,
    LoopBinding,
    MappedDevice,
    MountedFilesystem,
    TmpfsPool,
)


class BackingStoreProvider(ABC):
    """Creates and deletes the files behind loop devices."""

    @abstractmethod
    def create(self, path: Path, size_bytes: int) -> BackingStore:
        """
        Create a sparse file of exactly *size_bytes* logical bytes.

        Raises:
            InsufficientSpace: If the target filesystem is full.
            BackingStoreError: For any other failure.
        """
        pass

    @abstractmethod
    def adopt(self, path: Path) -> BackingStore:
        """Wrap a pre-existing user file. It is never deleted by ``destroy``."""
        pass

    @abstractmethod
    def destroy(self, store: BackingStore) -> None:
        """Delete *store* if it is ephemeral. Deleting twice is a no-op."""
        pass

    @abstractmethod
    def create_pool(self, size_bytes: int) -> TmpfsPool:
        """Mount a tmpfs whose capacity is reserved up front."""
        pass

    @abstractmethod
    def destroy_pool(self, pool: TmpfsPool) -> None:
        """Unmount and remove a pool. Idempotent."""
        pass


class LoopDeviceService(ABC):
    """Binds backing files to kernel loop devices."""

    @abstractmethod
    def attach(self, store: BackingStore, partscan: bool = False) -> LoopBinding:
        """
        Bind *store* to the first free loop device.

        With *partscan* the kernel scans the device for a partition table
        and creates /dev/loopNpM nodes.

        Raises:
            NoFreeLoopDevice: If no loop slot is available.
            AttachError: If binding fails.
        """
        pass

    @abstractmethod
    def detach(self, binding: LoopBinding) -> None:
        """Unbind the loop device. Detaching an unbound device succeeds."""
        pass

    def list_bindings(self) -> list[tuple[Path, Path]]:
        """Return ``(device, backing_file)`` for every bound loop device."""
        return []


class DeviceMapperService(ABC):
    """Loads mapping tables as named device-mapper devices."""

    @abstractmethod
    def create(
        self, name: str, table: MappingTable, loop: LoopBinding
    ) -> MappedDevice:
        """
        Load *table* over *loop* as device *name*.

        Raises:
            DeviceMapperError: If the table cannot be loaded.
        """
        pass

    def remove(self, device: MappedDevice) -> None:
        """Remove *device*. Removing an absent device succeeds."""
        self.remove_name(device.name)

    @abstractmethod
    def remove_name(self, name: str) -> None:
        pass

    def list_names(self) -> list[str]:
        return []


class FilesystemService(ABC):
    """Formats and mounts block devices."""

    @abstractmethod
    def format(self, device: Path) -> None:
        """
        Create the configured filesystem on *device*.

        Raises:
            FormatError: If mkfs fails.
        """
        pass

    @abstractmethod
    def mount(
        self, device: Path, mountpoint: Optional[Path] = None
    ) -> MountedFilesystem:
        """
        Mount *device*, on a fresh unique directory unless one is given.

        Raises:
            MountError: If the mount fails.
        """
        pass

    @abstractmethod
    def unmount(self, mount: MountedFilesystem) -> None:
        """
        Unmount; unmounting something not mounted succeeds.

        The mountpoint directory is removed only after a successful unmount.

        Raises:
            TeardownFailure: If the filesystem stays mounted.
        """
        pass

    def list_mounts(self, prefix: str) -> list[MountedFilesystem]:
        """Mounts whose mountpoint directory name starts with *prefix*."""
        return []


@dataclass
class Services:
    """The four host capabilities a BatchSession needs."""

    stores: BackingStoreProvider
    loops: LoopDeviceService
    mapper: DeviceMapperService
    filesystems: FilesystemService
