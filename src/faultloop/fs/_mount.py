# SPDX-License-Identifier: Apache-2.0
"""Mount information parsing from /proc/mounts."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List

PROC_MOUNTS = "/proc/mounts"

_OCTAL_RE = re.compile(r"\\([0-7]{3})")


def _unescape(field: str) -> str:
    r"""Decode the octal escapes /proc/mounts uses for blanks (``\040``)."""
    return _OCTAL_RE.sub(lambda m: chr(int(m.group(1), 8)), field)


@dataclass
class MountInfo:
    """Information about a mounted filesystem."""

    mountpoint: Path
    source: str
    fstype: str
    options: str


def parse_mounts(path: str = PROC_MOUNTS) -> List[MountInfo]:
    """
    Parse /proc/mounts and return list of MountInfo.

    Args:
        path: Path to mounts file (default /proc/mounts)

    Returns:
        List of MountInfo for all mounts
    """
    mounts = []
    with open(path) as f:
        for line in f:
            parts = line.strip().split()
            if len(parts) >= 4:
                mounts.append(
                    MountInfo(
                        source=_unescape(parts[0]),
                        mountpoint=Path(_unescape(parts[1])),
                        fstype=parts[2],
                        options=parts[3],
                    )
                )
    return mounts


def find_mounts_with_prefix(prefix: str, path: str = PROC_MOUNTS) -> List[MountInfo]:
    """
    Find all mounts whose mountpoint directory name starts with *prefix*.

    Args:
        prefix: Directory name prefix (e.g. 'faultloop-')

    Returns:
        List of MountInfo for matching mounts
    """
    return [m for m in parse_mounts(path) if m.mountpoint.name.startswith(prefix)]
