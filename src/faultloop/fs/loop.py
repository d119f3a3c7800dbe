# SPDX-License-Identifier: Apache-2.0
"""Loop devices driven directly through the loop ioctls.

- GET_FREE on /dev/loop-control picks the first free /dev/loopN
- SET_FD on /dev/loopN binds the backing file
- SET_STATUS64 with LO_FLAGS_PARTSCAN asks for partition nodes (loopNpM)
- CLR_FD unbinds; ENXIO means nothing was bound

Picking a free number and binding it are two steps, so two processes can
pick the same device; the loser gets EBUSY. That race is between tool
invocations and is not synchronised here.
"""

import errno
import fcntl
import logging
import os
import struct
from pathlib import Path

from ..core.base import LoopDeviceService
from ..core.records import BackingStore, LoopBinding
from ..exceptions import AttachError, NoFreeLoopDevice, TeardownFailure

logger = logging.getLogger(__name__)

# ioctl numbers, from include/uapi/linux/loop.h
LOOP_SET_FD = 0x4C00
LOOP_CLR_FD = 0x4C01
LOOP_SET_STATUS64 = 0x4C04
LOOP_CTL_GET_FREE = 0x4C82

LO_FLAGS_PARTSCAN = 8
LO_NAME_SIZE = 64

# struct loop_info64: device, inode, rdevice, offset, sizelimit; number,
# encrypt_type, encrypt_key_size, flags; file_name, crypt_name,
# encrypt_key; init[2]
_LOOP_INFO64 = struct.Struct("=5Q4I64s64s32s2Q")

LOOP_CONTROL = Path("/dev/loop-control")
DEV_DIR = Path("/dev")
SYS_BLOCK = Path("/sys/block")


def _get_free_loop(control: Path = LOOP_CONTROL) -> Path:
    """Ask the kernel for the first free loop device."""
    try:
        fd = os.open(str(control), os.O_RDWR)
    except OSError as e:
        raise NoFreeLoopDevice(f"Cannot open {control}: {e}") from e
    try:
        number = fcntl.ioctl(fd, LOOP_CTL_GET_FREE)
    except OSError as e:
        raise NoFreeLoopDevice(f"No free loop device: {e}") from e
    finally:
        os.close(fd)
    return DEV_DIR / f"loop{number}"


def _loop_info(path: Path, flags: int) -> bytes:
    """Pack a loop_info64 carrying *flags*; offset and size limit stay 0."""
    name = os.fsencode(path)[: LO_NAME_SIZE - 1]
    return _LOOP_INFO64.pack(
        0, 0, 0, 0, 0,
        0, 0, 0, flags,
        name, b"", b"",
        0, 0,
    )


class IoctlLoopDeviceService(LoopDeviceService):
    """Loop binder speaking to the kernel via ioctl."""

    def __init__(self, control: Path = LOOP_CONTROL, sys_block: Path = SYS_BLOCK):
        self._control = control
        self._sys_block = sys_block

    def attach(self, store: BackingStore, partscan: bool = False) -> LoopBinding:
        device = _get_free_loop(self._control)
        try:
            backing_fd = os.open(str(store.path), os.O_RDWR)
        except OSError as e:
            raise AttachError(f"Cannot open {store.path}: {e}") from e
        try:
            loop_fd = os.open(str(device), os.O_RDWR)
        except OSError as e:
            os.close(backing_fd)
            raise AttachError(f"Cannot open {device}: {e}") from e
        try:
            fcntl.ioctl(loop_fd, LOOP_SET_FD, backing_fd)
        except OSError as e:
            if e.errno == errno.EBUSY:
                raise AttachError(
                    f"{device} was claimed by another process before {store.path} "
                    f"could be bound"
                ) from e
            raise AttachError(f"Failed to bind {store.path} to {device}: {e}") from e
        else:
            if partscan:
                self._enable_partscan(loop_fd, device, store)
        finally:
            os.close(loop_fd)
            os.close(backing_fd)
        logger.info("attached %s to %s", store.path, device)
        return LoopBinding(device=device, store=store)

    def _enable_partscan(self, loop_fd: int, device: Path, store: BackingStore) -> None:
        """Turn on partition scanning; unbind again if the kernel refuses."""
        try:
            fcntl.ioctl(loop_fd, LOOP_SET_STATUS64, _loop_info(store.path, LO_FLAGS_PARTSCAN))
        except OSError as e:
            try:
                fcntl.ioctl(loop_fd, LOOP_CLR_FD, 0)
            except OSError as clr:
                logger.warning("%s: unbinding after failed partition scan: %s", device, clr)
            raise AttachError(f"Cannot scan {device} for partitions: {e}") from e
        logger.debug("partition scan enabled on %s", device)

    def detach(self, binding: LoopBinding) -> None:
        try:
            fd = os.open(str(binding.device), os.O_RDWR)
        except FileNotFoundError:
            logger.debug("%s is gone, nothing to detach", binding.device)
            return
        except OSError as e:
            raise TeardownFailure(f"Cannot open {binding.device}: {e}") from e
        try:
            fcntl.ioctl(fd, LOOP_CLR_FD, 0)
        except OSError as e:
            if e.errno == errno.ENXIO:
                logger.debug("%s was already detached", binding.device)
                return
            raise TeardownFailure(f"Failed to detach {binding.device}: {e}") from e
        finally:
            os.close(fd)
        logger.info("detached %s", binding.device)

    def list_bindings(self) -> list[tuple[Path, Path]]:
        """Bound loop devices and their backing files, from sysfs."""
        result = []
        for entry in sorted(self._sys_block.glob("loop*")):
            backing = entry / "loop" / "backing_file"
            try:
                target = backing.read_text().strip().removesuffix(" (deleted)")
            except OSError:
                continue
            if target:
                result.append((DEV_DIR / entry.name, Path(target)))
        return result
