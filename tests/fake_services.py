# SPDX-License-Identifier: Apache-2.0
"""In-memory doubles of the host services, shared by the session tests."""

from pathlib import Path

from faultloop.core.base import (
    BackingStoreProvider,
    DeviceMapperService,
    FilesystemService,
    LoopDeviceService,
    Services,
)
from faultloop.core.records import (
    BackingStore,
    LoopBinding,
    MappedDevice,
    MountedFilesystem,
    TmpfsPool,
)
from faultloop.core.release import ReleaseSignal
from faultloop.exceptions import (
    AttachError,
    BackingStoreError,
    DeviceMapperError,
    FormatError,
    MountError,
    TeardownFailure,
)


class FakeStores(BackingStoreProvider):
    def __init__(self, user_files=None):
        self.files: dict[Path, int] = {}
        self.user_files: dict[Path, int] = dict(user_files or {})
        self.pools: list[TmpfsPool] = []
        self.mounted_pools: set[Path] = set()
        self.create_calls = 0

    def create(self, path, size_bytes):
        self.create_calls += 1
        if path in self.files:
            raise BackingStoreError(f"{path} exists")
        self.files[path] = size_bytes
        return BackingStore(path=path, size_bytes=size_bytes)

    def adopt(self, path):
        if path not in self.user_files:
            raise BackingStoreError(f"{path} does not exist")
        return BackingStore(path=path, size_bytes=self.user_files[path], ephemeral=False)

    def destroy(self, store):
        if store.ephemeral:
            self.files.pop(store.path, None)

    def create_pool(self, size_bytes):
        pool = TmpfsPool(Path(f"/fake/pool{len(self.pools)}"), size_bytes)
        self.pools.append(pool)
        self.mounted_pools.add(pool.mountpoint)
        return pool

    def destroy_pool(self, pool):
        self.mounted_pools.discard(pool.mountpoint)


class FakeLoops(LoopDeviceService):
    def __init__(self, fail_attach=(), fail_detach=()):
        self.attached: dict[Path, BackingStore] = {}
        self.fail_attach = set(fail_attach)
        self.fail_detach = set(fail_detach)
        self.attach_calls = 0
        self.detach_calls: list[Path] = []
        self.partscan_calls: list[bool] = []
        self._next = 0

    def attach(self, store, partscan=False):
        call = self.attach_calls
        self.partscan_calls.append(partscan)
        self.attach_calls += 1
        if call in self.fail_attach:
            raise AttachError(f"attach #{call} forced to fail")
        device = Path(f"/dev/loop{self._next}")
        self._next += 1
        self.attached[device] = store
        return LoopBinding(device=device, store=store)

    def detach(self, binding):
        self.detach_calls.append(binding.device)
        if binding.device in self.fail_detach:
            raise TeardownFailure(f"{binding.device} is busy")
        self.attached.pop(binding.device, None)


class FakeMapper(DeviceMapperService):
    def __init__(self, fail_create=False):
        self.devices: dict[str, object] = {}
        self.fail_create = fail_create

    def create(self, name, table, loop):
        if self.fail_create:
            raise DeviceMapperError("dm-error target not available")
        if name in self.devices:
            raise DeviceMapperError(f"{name} exists")
        self.devices[name] = table
        return MappedDevice(name=name, table=table, loop=loop)

    def remove_name(self, name):
        self.devices.pop(name, None)


class FakeFilesystems(FilesystemService):
    def __init__(self, fail_format=False, fail_mount=False):
        self.formatted: list[Path] = []
        self.mounts: dict[Path, Path] = {}
        self.fail_format = fail_format
        self.fail_mount = fail_mount
        self._next = 0

    def format(self, device):
        if self.fail_format:
            raise FormatError(f"mkfs failed on {device}")
        self.formatted.append(device)

    def mount(self, device, mountpoint=None):
        if self.fail_mount:
            raise MountError(f"cannot mount {device}")
        mountpoint = mountpoint or Path(f"/fake/mnt{self._next}")
        self._next += 1
        self.mounts[mountpoint] = device
        return MountedFilesystem(mountpoint=mountpoint, device=device)

    def unmount(self, mount):
        self.mounts.pop(mount.mountpoint, None)


class CountingRelease(ReleaseSignal):
    """Already-satisfied signal that remembers how often it was waited on."""

    def __init__(self, on_wait=None):
        self.waits = 0
        self._on_wait = on_wait

    def wait(self):
        self.waits += 1
        if self._on_wait is not None:
            self._on_wait()


def fake_services(**kwargs) -> Services:
    return Services(
        stores=kwargs.get("stores") or FakeStores(),
        loops=kwargs.get("loops") or FakeLoops(),
        mapper=kwargs.get("mapper") or FakeMapper(),
        filesystems=kwargs.get("filesystems") or FakeFilesystems(),
    )
