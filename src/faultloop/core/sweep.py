# SPDX-License-Identifier: Apache-2.0
"""Recovery of resources leaked by a killed or crashed batch.

Everything faultloop creates carries ``config.name_prefix``, so leftovers
are found by name and released in the usual order: mounts, mapped
devices, loop devices, backing files, tmpfs pools.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..config import Config
from ..exceptions import FaultLoopError
from .base import Services
from .records import BackingStore, LoopBinding, TmpfsPool

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    unmounted: list[Path] = field(default_factory=list)
    removed_mappings: list[str] = field(default_factory=list)
    detached: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)
    pools: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "unmounted": [str(p) for p in self.unmounted],
            "removed_mappings": list(self.removed_mappings),
            "detached": [str(p) for p in self.detached],
            "deleted": [str(p) for p in self.deleted],
            "pools": [str(p) for p in self.pools],
            "errors": list(self.errors),
        }


def _try(report: SweepReport, what: str, fn: Callable[[], None]) -> bool:
    try:
        fn()
    except (FaultLoopError, OSError) as e:
        logger.warning("cleanup: %s failed: %s", what, e)
        report.errors.append(f"{what}: {e}")
        return False
    return True


def sweep(services: Services, config: Config) -> SweepReport:
    """Release every prefixed resource still present on the host."""
    prefix = config.name_prefix + "-"
    pool_prefix = config.name_prefix + "-pool-"
    report = SweepReport()

    pools = []
    for m in services.filesystems.list_mounts(prefix):
        if m.mountpoint.name.startswith(pool_prefix):
            pools.append(m.mountpoint)
            continue
        if _try(report, f"unmount {m.mountpoint}",
                lambda m=m: services.filesystems.unmount(m)):
            report.unmounted.append(m.mountpoint)

    for name in services.mapper.list_names():
        if not name.startswith(prefix):
            continue
        if _try(report, f"remove {name}",
                lambda name=name: services.mapper.remove_name(name)):
            report.removed_mappings.append(name)

    for device, backing in services.loops.list_bindings():
        if not backing.name.startswith(prefix):
            continue
        binding = LoopBinding(device=device, store=BackingStore(backing, 0))
        if _try(report, f"detach {device}",
                lambda b=binding: services.loops.detach(b)):
            report.detached.append(device)

    for path in sorted(config.tmp_dir.glob(f"{prefix}*.img")):
        store = BackingStore(path, 0, ephemeral=True)
        if _try(report, f"delete {path}",
                lambda s=store: services.stores.destroy(s)):
            report.deleted.append(path)

    for mountpoint in pools:
        pool = TmpfsPool(mountpoint=mountpoint, size_bytes=0)
        if _try(report, f"remove pool {mountpoint}",
                lambda p=pool: services.stores.destroy_pool(p)):
            report.pools.append(mountpoint)

    logger.info(
        "cleanup: %d mounts, %d mappings, %d loops, %d files, %d pools released",
        len(report.unmounted), len(report.removed_mappings), len(report.detached),
        len(report.deleted), len(report.pools),
    )
    return report
