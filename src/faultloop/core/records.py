# SPDX-License-Identifier: Apache-2.0
"""Per-device bookkeeping: resources held by one instance and its state."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .mapping import MappingTable

DEVMAPPER_DIR = Path("/dev/mapper")


class DeviceState(enum.Enum):
    """Lifecycle of one DeviceRecord.

    PENDING -> STORE_CREATED -> LOOP_ATTACHED -> [MAPPING_APPLIED]
    -> [FORMATTED -> MOUNTED] -> LIVE -> TORN_DOWN, or FAILED from any
    step before LIVE. A LIVE record whose release left something behind
    ends TEARDOWN_FAILED instead of TORN_DOWN.
    """

    PENDING = "pending"
    STORE_CREATED = "store-created"
    LOOP_ATTACHED = "loop-attached"
    MAPPING_APPLIED = "mapping-applied"
    FORMATTED = "formatted"
    MOUNTED = "mounted"
    LIVE = "live"
    TORN_DOWN = "torn-down"
    TEARDOWN_FAILED = "teardown-failed"
    FAILED = "failed"


@dataclass
class BackingStore:
    """A byte-addressable file backing one loop device."""

    path: Path
    size_bytes: int
    ephemeral: bool = True
    """Created by us and deleted on teardown; False for user-supplied files."""

    pool: Optional[Path] = None
    """Mountpoint of the hosting tmpfs pool, None for the temp directory."""


@dataclass
class LoopBinding:
    """A loop device bound to a backing store."""

    device: Path
    store: BackingStore

    @property
    def name(self) -> str:
        return self.device.name


@dataclass
class MappedDevice:
    """A device-mapper device layered over a loop device."""

    name: str
    table: MappingTable
    loop: LoopBinding

    @property
    def path(self) -> Path:
        return DEVMAPPER_DIR / self.name


@dataclass
class MountedFilesystem:
    """A formatted device mounted at a mountpoint."""

    mountpoint: Path
    device: Path
    owns_mountpoint: bool = True
    """Whether the mountpoint directory was created for this mount."""


@dataclass
class TmpfsPool:
    """RAM-backed filesystem shared by every store of a batch.

    Capacity is fixed at mount time.
    """

    mountpoint: Path
    size_bytes: int


@dataclass
class DeviceRecord:
    """Everything one batch instance acquired, in acquisition order."""

    index: int
    size_bytes: int
    state: DeviceState = DeviceState.PENDING
    store: Optional[BackingStore] = None
    loop: Optional[LoopBinding] = None
    mapped: Optional[MappedDevice] = None
    mount: Optional[MountedFilesystem] = None
    error: Optional[Exception] = None
    """Setup failure that moved the record to FAILED."""

    teardown_errors: list[Exception] = field(default_factory=list)
    history: list[DeviceState] = field(default_factory=list)

    @property
    def device(self) -> Optional[Path]:
        """Top-most block device: the mapped device if any, else the loop."""
        if self.mapped is not None:
            return self.mapped.path
        if self.loop is not None:
            return self.loop.device
        return None

    @property
    def live(self) -> bool:
        return self.state is DeviceState.LIVE

    def advance(self, state: DeviceState) -> None:
        self.history.append(self.state)
        self.state = state

    def fail(self, exc: Exception) -> None:
        self.error = exc
        self.advance(DeviceState.FAILED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "state": self.state.value,
            "size": self.size_bytes,
            "device": str(self.device) if self.device is not None else None,
        }
        if self.store is not None:
            data["backing_file"] = str(self.store.path)
            if self.store.pool is not None:
                data["tmpfs_pool"] = str(self.store.pool)
        if self.loop is not None:
            data["loop"] = str(self.loop.device)
        if self.mapped is not None:
            data["faults"] = [
                [f.start, f.end - 1] for f in self.mapped.table.faults
            ]
        if self.mount is not None:
            data["mountpoint"] = str(self.mount.mountpoint)
        if self.error is not None:
            data["error"] = str(self.error)
        return data

    def __repr__(self) -> str:
        return (
            f"DeviceRecord(index={self.index}, state={self.state.value!r}, "
            f"device={self.device!r})"
        )
