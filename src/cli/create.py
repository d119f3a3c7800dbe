# SPDX-License-Identifier: Apache-2.0
"""Implementation of 'faultloop create' command."""

from faultloop.core.session import BatchSession
from faultloop.core.sizes import draw_sizes, parse_size
from faultloop.fs.host import host_services

from . import _device_options, _load_config, _print_records, _release_signal


def cmd_create(args) -> int:
    config = _load_config(args)
    sizes = draw_sizes(1, parse_size(args.size))

    session = BatchSession(host_services(config), config, release=_release_signal(args))
    # Single device: the first failure aborts (after rollback) and exits 1
    session.run(
        sizes,
        _device_options(args),
        fail_fast=True,
        on_ready=lambda records: _print_records("create", session, records, args),
    )
    return 0
