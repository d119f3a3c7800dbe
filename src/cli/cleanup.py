# SPDX-License-Identifier: Apache-2.0
"""Implementation of 'faultloop cleanup' command."""

from faultloop.core.sweep import sweep
from faultloop.fs.host import host_services

from . import _load_config, _print_result


def cmd_cleanup(args) -> int:
    config = _load_config(args)
    report = sweep(host_services(config), config)

    data = {"command": "cleanup", **report.to_dict()}
    _print_result(data, args)
    return 0 if report.clean else 1
