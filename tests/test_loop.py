# SPDX-License-Identifier: Apache-2.0
"""Tests for the ioctl loop binder.

Unit tests mock os.open and fcntl.ioctl; no loop device is touched.
"""

import errno
from pathlib import Path
from unittest.mock import patch

import pytest

from faultloop.core.records import BackingStore, LoopBinding
from faultloop.exceptions import AttachError, NoFreeLoopDevice, TeardownFailure
from faultloop.fs.loop import (
    _LOOP_INFO64,
    LO_FLAGS_PARTSCAN,
    LOOP_CLR_FD,
    LOOP_CTL_GET_FREE,
    LOOP_SET_FD,
    LOOP_SET_STATUS64,
    IoctlLoopDeviceService,
)

STORE = BackingStore(Path("/tmp/faultloop-x-0.img"), 4096)


def _fds(path, flags):
    return {"/dev/loop-control": 10, str(STORE.path): 11, "/dev/loop5": 12}[path]


@patch("faultloop.fs.loop.os.open", side_effect=_fds)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl")
def test_attach(mock_ioctl, mock_close, mock_open):
    mock_ioctl.side_effect = lambda fd, cmd, arg=0: 5 if cmd == LOOP_CTL_GET_FREE else 0
    binding = IoctlLoopDeviceService().attach(STORE)
    assert binding == LoopBinding(device=Path("/dev/loop5"), store=STORE)
    assert mock_ioctl.call_args_list[0].args == (10, LOOP_CTL_GET_FREE)
    assert mock_ioctl.call_args_list[1].args == (12, LOOP_SET_FD, 11)
    assert mock_ioctl.call_count == 2
    assert sorted(c.args[0] for c in mock_close.call_args_list) == [10, 11, 12]


@patch("faultloop.fs.loop.os.open", side_effect=_fds)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl", side_effect=OSError(errno.ENODEV, "No such device"))
def test_attach_no_free_device(mock_ioctl, mock_close, mock_open):
    with pytest.raises(NoFreeLoopDevice):
        IoctlLoopDeviceService().attach(STORE)
    mock_close.assert_called_once_with(10)


@patch("faultloop.fs.loop.os.open", side_effect=FileNotFoundError(2, "No such file"))
def test_attach_no_loop_control(mock_open):
    with pytest.raises(NoFreeLoopDevice):
        IoctlLoopDeviceService().attach(STORE)


@patch("faultloop.fs.loop.os.open", side_effect=_fds)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl")
def test_attach_lost_race(mock_ioctl, mock_close, mock_open):
    def ioctl(fd, cmd, arg=0):
        if cmd == LOOP_CTL_GET_FREE:
            return 5
        raise OSError(errno.EBUSY, "Device or resource busy")

    mock_ioctl.side_effect = ioctl
    with pytest.raises(AttachError, match="claimed by another process"):
        IoctlLoopDeviceService().attach(STORE)
    assert sorted(c.args[0] for c in mock_close.call_args_list) == [10, 11, 12]


@patch("faultloop.fs.loop.os.open", side_effect=_fds)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl")
def test_attach_with_partscan(mock_ioctl, mock_close, mock_open):
    mock_ioctl.side_effect = lambda fd, cmd, arg=0: 5 if cmd == LOOP_CTL_GET_FREE else 0
    IoctlLoopDeviceService().attach(STORE, partscan=True)

    fd, cmd, info = mock_ioctl.call_args_list[2].args
    assert (fd, cmd) == (12, LOOP_SET_STATUS64)
    assert len(info) == 232
    fields = _LOOP_INFO64.unpack(info)
    assert fields[8] == LO_FLAGS_PARTSCAN
    assert fields[3] == 0  # offset
    assert fields[9].rstrip(b"\0") == b"/tmp/faultloop-x-0.img"


@patch("faultloop.fs.loop.os.open", side_effect=_fds)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl")
def test_partscan_refused_unbinds(mock_ioctl, mock_close, mock_open):
    def ioctl(fd, cmd, arg=0):
        if cmd == LOOP_CTL_GET_FREE:
            return 5
        if cmd == LOOP_SET_STATUS64:
            raise OSError(errno.EINVAL, "Invalid argument")
        return 0

    mock_ioctl.side_effect = ioctl
    with pytest.raises(AttachError, match="partitions"):
        IoctlLoopDeviceService().attach(STORE, partscan=True)
    assert mock_ioctl.call_args_list[-1].args == (12, LOOP_CLR_FD, 0)
    assert sorted(c.args[0] for c in mock_close.call_args_list) == [10, 11, 12]


@patch("faultloop.fs.loop.os.open", return_value=12)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl")
def test_detach(mock_ioctl, mock_close, mock_open):
    IoctlLoopDeviceService().detach(LoopBinding(Path("/dev/loop5"), STORE))
    mock_ioctl.assert_called_once_with(12, LOOP_CLR_FD, 0)
    mock_close.assert_called_once_with(12)


@patch("faultloop.fs.loop.os.open", return_value=12)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl", side_effect=OSError(errno.ENXIO, "No such device or address"))
def test_detach_twice_is_success(mock_ioctl, mock_close, mock_open):
    service = IoctlLoopDeviceService()
    binding = LoopBinding(Path("/dev/loop5"), STORE)
    service.detach(binding)
    service.detach(binding)
    assert mock_close.call_count == 2


@patch("faultloop.fs.loop.os.open", side_effect=FileNotFoundError(2, "No such file"))
def test_detach_missing_node_is_success(mock_open):
    IoctlLoopDeviceService().detach(LoopBinding(Path("/dev/loop99"), STORE))


@patch("faultloop.fs.loop.os.open", return_value=12)
@patch("faultloop.fs.loop.os.close")
@patch("faultloop.fs.loop.fcntl.ioctl", side_effect=OSError(errno.EBUSY, "Device or resource busy"))
def test_detach_busy(mock_ioctl, mock_close, mock_open):
    with pytest.raises(TeardownFailure):
        IoctlLoopDeviceService().detach(LoopBinding(Path("/dev/loop5"), STORE))
    mock_close.assert_called_once_with(12)


def test_list_bindings(tmp_path):
    for name, backing in [("loop0", "/tmp/a.img\n"), ("loop1", None),
                          ("loop2", "/tmp/faultloop-1-0.img (deleted)\n")]:
        d = tmp_path / name / "loop"
        if backing is None:
            (tmp_path / name).mkdir()
            continue
        d.mkdir(parents=True)
        (d / "backing_file").write_text(backing)
    (tmp_path / "sda").mkdir()

    service = IoctlLoopDeviceService(sys_block=tmp_path)
    assert service.list_bindings() == [
        (Path("/dev/loop0"), Path("/tmp/a.img")),
        (Path("/dev/loop2"), Path("/tmp/faultloop-1-0.img")),
    ]
