# SPDX-License-Identifier: Apache-2.0
"""Device-mapper devices via the dmsetup tool."""

import logging
import subprocess

from ..config import Config
from ..core.base import DeviceMapperService
from ..core.mapping import MappingTable, format_dm_table
from ..core.records import LoopBinding, MappedDevice
from ..exceptions import DeviceMapperError, TeardownFailure

logger = logging.getLogger(__name__)


class DmsetupService(DeviceMapperService):
    """Loads compiled tables with ``dmsetup create NAME`` (table on stdin)."""

    def __init__(self, config: Config):
        self._config = config

    def _dmsetup(self, *args: str, table: str | None = None) -> subprocess.CompletedProcess:
        cmd = [self._config.dmsetup, *args]
        logger.debug("running %s", " ".join(cmd))
        return subprocess.run(
            cmd,
            input=table,
            capture_output=True,
            text=True,
            check=False,
        )

    def exists(self, name: str) -> bool:
        """Whether *name* is a device-mapper device. OSError if dmsetup cannot run."""
        return self._dmsetup("info", name).returncode == 0

    def create(
        self, name: str, table: MappingTable, loop: LoopBinding
    ) -> MappedDevice:
        lines = format_dm_table(table, str(loop.device))
        try:
            result = self._dmsetup("create", name, table=lines + "\n")
        except OSError as e:
            raise DeviceMapperError(f"Cannot run {self._config.dmsetup}: {e}") from e
        if result.returncode != 0:
            raise DeviceMapperError(
                f"Failed to create {name} over {loop.device}: "
                f"{result.stderr.strip() or f'exit status {result.returncode}'}"
            )
        logger.info(
            "created %s over %s with %d fault window(s)",
            name, loop.device, len(table.faults),
        )
        return MappedDevice(name=name, table=table, loop=loop)

    def remove_name(self, name: str) -> None:
        try:
            if not self.exists(name):
                logger.info("%s already removed", name)
                return
            result = self._dmsetup("remove", name)
        except OSError as e:
            raise TeardownFailure(f"Cannot run {self._config.dmsetup}: {e}") from e
        if result.returncode != 0:
            raise TeardownFailure(
                f"Failed to remove {name}: "
                f"{result.stderr.strip() or f'exit status {result.returncode}'}"
            )
        logger.info("removed %s", name)

    def list_names(self) -> list[str]:
        """Names of all device-mapper devices (``dmsetup ls``)."""
        try:
            result = self._dmsetup("ls")
        except OSError:
            return []
        if result.returncode != 0:
            return []
        names = []
        for line in result.stdout.splitlines():
            parts = line.split()
            # "No devices found" has no device numbers column
            if len(parts) >= 2 and parts[1].startswith("("):
                names.append(parts[0])
        return names
