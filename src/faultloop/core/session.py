# SPDX-License-Identifier: Apache-2.0
"""BatchSession - creation, hold and teardown of a batch of devices."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..config import Config
from ..exceptions import FaultLoopError
from .base import Services
from .mapping import MappingTable, blocks_for, compile_table, parse_fault_spec
from .records import DeviceRecord, DeviceState, LoopBinding, TmpfsPool
from .release import ImmediateRelease, ReleaseSignal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceOptions:
    """What to build on top of each loop device."""

    fault_spec: Optional[str] = None
    """Block-range spec; when set, a fault-mapped device is layered on top."""

    format: bool = False
    mount: bool = False
    """Mount the device (implies ``format``)."""

    tmpfs: bool = False
    """Host every backing file in one shared tmpfs pool."""

    partscan: bool = False
    """Scan each loop device for partitions (/dev/loopNpM)."""

    @property
    def needs_format(self) -> bool:
        return self.format or self.mount


class BatchSession:
    """
    Owns every device of one batch, from creation to teardown.

    Instances are created one at a time. A failing instance is rolled back
    and skipped; the rest of the batch goes on (unless ``fail_fast``). The
    batch then blocks on a single release signal and every live device is
    torn down best-effort.

    Example:
        session = BatchSession(host_services(config), config,
                               release=PromptRelease())
        session.run(draw_sizes(5, parse_size("64M")),
                    DeviceOptions(fault_spec="500,1000-1010"))

    Killing the process while the batch is held (SIGKILL, crash) leaks
    every device; ``faultloop cleanup`` removes leftovers by name prefix.

    Attributes:
        records: Every record created by this session, in creation order.
        pool: Shared tmpfs pool, if one is mounted.
        tag: Random id that makes this batch's names unique.
    """

    def __init__(
        self,
        services: Services,
        config: Optional[Config] = None,
        *,
        release: Optional[ReleaseSignal] = None,
    ):
        self._services = services
        self._config = config or Config()
        self._release_signal = release or ImmediateRelease()
        self.records: list[DeviceRecord] = []
        self.pool: Optional[TmpfsPool] = None
        self.tag = uuid.uuid4().hex[:8]

    @property
    def live(self) -> list[DeviceRecord]:
        return [r for r in self.records if r.live]

    def store_path(self, record: DeviceRecord) -> Path:
        """Backing file location for *record*: the pool if any, else tmp_dir."""
        base = self.pool.mountpoint if self.pool is not None else self._config.tmp_dir
        return base / f"{self._config.name_prefix}-{self.tag}-{record.index}.img"

    def mapped_name(self, loop: LoopBinding) -> str:
        """Device-mapper name, unique per batch (e.g. ``faultloop-1a2b3c4d-loop3``)."""
        return f"{self._config.name_prefix}-{self.tag}-{loop.name}"

    # --- creation ---

    def create(
        self,
        sizes: Iterable[int],
        options: Optional[DeviceOptions] = None,
        *,
        fail_fast: bool = False,
    ) -> list[DeviceRecord]:
        """
        Create one device per entry of *sizes*, sequentially.

        When ``options.tmpfs`` is set the shared pool is mounted first, sized
        to the exact sum of *sizes*.

        Args:
            sizes: Byte size of each instance, resolved up front.
            options: Layers to build on each loop device.
            fail_fast: Re-raise the first instance failure (after rolling
                that instance back) instead of moving on.

        Returns:
            The records created by this call, failed ones included.

        Raises:
            FaultLoopError: If the pool cannot be mounted, or on the first
                instance failure when ``fail_fast`` is set.
        """
        options = options or DeviceOptions()
        sizes = list(sizes)
        if options.tmpfs and self.pool is None:
            self.pool = self._services.stores.create_pool(sum(sizes))
            logger.info(
                "mounted tmpfs pool %s (%d bytes)",
                self.pool.mountpoint, self.pool.size_bytes,
            )

        created = []
        for size in sizes:
            record = self._new_record(size)
            created.append(record)
            self._provision_or_rollback(record, options, fail_fast=fail_fast)

        live = [r for r in created if r.live]
        if not live:
            logger.warning("zero devices were set up")
        else:
            logger.info("%d of %d devices set up", len(live), len(created))
        return created

    def attach(
        self, path: Path, options: Optional[DeviceOptions] = None
    ) -> DeviceRecord:
        """
        Build one device over an existing user file (fail-fast).

        The file is adopted, not created, so teardown never deletes it.
        """
        record = self._new_record(0)
        self._provision_or_rollback(
            record, options or DeviceOptions(), fail_fast=True, source=Path(path)
        )
        return record

    def _new_record(self, size: int) -> DeviceRecord:
        record = DeviceRecord(index=len(self.records), size_bytes=size)
        self.records.append(record)
        return record

    def _provision_or_rollback(
        self,
        record: DeviceRecord,
        options: DeviceOptions,
        *,
        fail_fast: bool,
        source: Optional[Path] = None,
    ) -> None:
        try:
            self._provision(record, options, source)
        except FaultLoopError as e:
            record.fail(e)
            logger.warning("device %d: setup failed: %s", record.index, e)
            self._release(record)
            if fail_fast:
                raise
        except BaseException:
            record.advance(DeviceState.FAILED)
            self._release(record)
            raise

    def _compile(
        self, record: DeviceRecord, options: DeviceOptions
    ) -> Optional[MappingTable]:
        if options.fault_spec is None:
            return None
        total = blocks_for(record.size_bytes)
        return compile_table(parse_fault_spec(options.fault_spec, total), total)

    def _provision(
        self,
        record: DeviceRecord,
        options: DeviceOptions,
        source: Optional[Path],
    ) -> None:
        svc = self._services

        if source is not None:
            record.store = svc.stores.adopt(source)
            record.size_bytes = record.store.size_bytes
            table = self._compile(record, options)
        else:
            # Compile first: a bad spec fails before anything is acquired.
            table = self._compile(record, options)
            record.store = svc.stores.create(self.store_path(record), record.size_bytes)
            if self.pool is not None:
                record.store.pool = self.pool.mountpoint
        record.advance(DeviceState.STORE_CREATED)

        record.loop = svc.loops.attach(record.store, partscan=options.partscan)
        record.advance(DeviceState.LOOP_ATTACHED)

        if table is not None:
            record.mapped = svc.mapper.create(
                self.mapped_name(record.loop), table, record.loop
            )
            record.advance(DeviceState.MAPPING_APPLIED)

        if options.needs_format:
            svc.filesystems.format(record.device)
            record.advance(DeviceState.FORMATTED)

        if options.mount:
            record.mount = svc.filesystems.mount(record.device)
            record.advance(DeviceState.MOUNTED)

        record.advance(DeviceState.LIVE)
        logger.info("device %d: %s is live", record.index, record.device)

    # --- hold ---

    def wait(self) -> None:
        """Block until the release signal fires."""
        self._release_signal.wait()

    # --- teardown ---

    def _attempt(
        self, record: DeviceRecord, action: str, fn: Callable[..., None], *args
    ) -> bool:
        try:
            fn(*args)
        except (FaultLoopError, OSError) as e:
            logger.warning("device %d: %s failed: %s", record.index, action, e)
            record.teardown_errors.append(e)
            return False
        return True

    def _release(self, record: DeviceRecord) -> bool:
        """Release whatever *record* holds, newest first. Never raises."""
        svc = self._services
        ok = True
        if record.mount is not None:
            if self._attempt(record, "unmount", svc.filesystems.unmount, record.mount):
                record.mount = None
            else:
                ok = False
        if record.mapped is not None:
            if self._attempt(record, "mapping removal", svc.mapper.remove, record.mapped):
                record.mapped = None
            else:
                ok = False
        if record.loop is not None:
            if self._attempt(record, "loop detach", svc.loops.detach, record.loop):
                record.loop = None
            else:
                ok = False
        if record.store is not None:
            if self._attempt(record, "backing store removal", svc.stores.destroy, record.store):
                record.store = None
            else:
                ok = False
        return ok

    def teardown(self) -> None:
        """
        Tear down every live device, then the shared pool.

        Every failure is logged and never raised. A record ends TORN_DOWN
        only if every step succeeded, TEARDOWN_FAILED otherwise. Calling it
        again is harmless: neither state is live.
        """
        for record in self.live:
            if self._release(record):
                logger.info("device %d: torn down", record.index)
                record.advance(DeviceState.TORN_DOWN)
            else:
                logger.warning(
                    "device %d: teardown incomplete, resources left behind",
                    record.index,
                )
                record.advance(DeviceState.TEARDOWN_FAILED)

        if self.pool is not None:
            try:
                self._services.stores.destroy_pool(self.pool)
            except (FaultLoopError, OSError) as e:
                logger.warning("tmpfs pool %s: removal failed: %s", self.pool.mountpoint, e)
            else:
                logger.info("removed tmpfs pool %s", self.pool.mountpoint)
                self.pool = None

    def run(
        self,
        sizes: Iterable[int],
        options: Optional[DeviceOptions] = None,
        *,
        fail_fast: bool = False,
        on_ready: Optional[Callable[[list[DeviceRecord]], None]] = None,
    ) -> list[DeviceRecord]:
        """
        Create the batch, hold it until released, then tear it down.

        Teardown runs even if creation raises or the wait is interrupted.
        A batch with no live device is not held.

        Args:
            on_ready: Called with the created records before blocking,
                e.g. to print them.
        """
        try:
            created = self.create(sizes, options, fail_fast=fail_fast)
            if on_ready is not None:
                on_ready(created)
            if self.live:
                self.wait()
        finally:
            self.teardown()
        return created

    def __enter__(self) -> "BatchSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.teardown()
        return False

    def __repr__(self) -> str:
        return (
            f"BatchSession(tag={self.tag!r}, records={len(self.records)}, "
            f"live={len(self.live)})"
        )
