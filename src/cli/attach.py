# SPDX-License-Identifier: Apache-2.0
"""Implementation of 'faultloop attach' command."""

from pathlib import Path

from faultloop.core.session import BatchSession
from faultloop.fs.host import host_services

from . import _device_options, _load_config, _print_records, _release_signal


def cmd_attach(args) -> int:
    config = _load_config(args)

    with BatchSession(host_services(config), config, release=_release_signal(args)) as session:
        record = session.attach(Path(args.file), _device_options(args))
        _print_records("attach", session, [record], args)
        session.wait()

    return 0
