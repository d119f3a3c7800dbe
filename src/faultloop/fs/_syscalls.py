# SPDX-License-Identifier: Apache-2.0
"""
Low-level ctypes bindings for the Linux mount syscalls.

Provides Python wrappers for:
- mount(2), used for device filesystems and tmpfs pools
- umount2(2)
"""

import ctypes
import ctypes.util
import errno
import os
import platform
from typing import Optional

# Load libc
_libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)

# Syscall numbers by architecture
_SYSCALL_TABLE = {
    "x86_64": {"mount": 165, "umount2": 166},
    "aarch64": {"mount": 40, "umount2": 39},
}

_arch = platform.machine()
if _arch not in _SYSCALL_TABLE:
    raise RuntimeError(
        f"Unsupported architecture '{_arch}'. "
        f"Supported: {', '.join(_SYSCALL_TABLE)}"
    )
_nr = _SYSCALL_TABLE[_arch]

__NR_mount = _nr["mount"]
__NR_umount2 = _nr["umount2"]

# mount flags
MS_NOSUID = 2
MS_NODEV = 4


def _check_error(ret: int, msg: str) -> int:
    """Check syscall return value and raise OSError on failure."""
    if ret < 0:
        err = ctypes.get_errno()
        raise OSError(err, f"{msg}: {os.strerror(err)}")
    return ret


def mount(
    source: str,
    target: str,
    fstype: Optional[str],
    flags: int = 0,
    data: Optional[str] = None,
) -> None:
    """
    Classic mount syscall.

    Args:
        source: Block device path, or a label such as 'tmpfs'
        target: Mount target path
        fstype: Filesystem type (e.g. 'ext4', 'tmpfs')
        flags: Mount flags (e.g. MS_NODEV)
        data: Mount options string (e.g. 'size=1048576,mode=0700') or None
    """
    ret = _libc.syscall(
        __NR_mount,
        source.encode("utf-8") if source else b"",
        target.encode("utf-8"),
        fstype.encode("utf-8") if fstype else ctypes.c_void_p(None),
        ctypes.c_ulong(flags),
        data.encode("utf-8") if data else ctypes.c_void_p(None),
    )
    _check_error(ret, f"mount({source} -> {target})")


def umount(target: str, flags: int = 0) -> None:
    """
    Unmount a filesystem.

    Args:
        target: Mount target path to unmount
        flags: umount2 flags, 0 for a plain unmount
    """
    ret = _libc.syscall(
        __NR_umount2, target.encode("utf-8"), ctypes.c_int(flags)
    )
    _check_error(ret, f"umount({target})")


def is_not_mounted(exc: OSError) -> bool:
    """Whether a umount failure only means nothing was mounted there."""
    return exc.errno in (errno.EINVAL, errno.ENOENT)
