# SPDX-License-Identifier: Apache-2.0
"""Wiring of the host implementations."""

from typing import Optional

from ..config import Config
from ..core.base import Services


def host_services(config: Optional[Config] = None) -> Services:
    """Services backed by the running kernel and its tools."""
    from .backing import SparseFileProvider
    from .devmapper import DmsetupService
    from .filesystem import HostFilesystemService
    from .loop import IoctlLoopDeviceService

    config = config or Config()
    return Services(
        stores=SparseFileProvider(config),
        loops=IoctlLoopDeviceService(),
        mapper=DmsetupService(config),
        filesystems=HostFilesystemService(config),
    )
