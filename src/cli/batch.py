# SPDX-License-Identifier: Apache-2.0
"""Implementation of 'faultloop batch' command."""

import logging
import random

from faultloop.core.session import BatchSession
from faultloop.core.sizes import draw_sizes, parse_size
from faultloop.fs.host import host_services

from . import _device_options, _load_config, _print_records, _release_signal

logger = logging.getLogger(__name__)


def _resolve_sizes(args) -> list[int]:
    """Draw every member's size before anything is created."""
    size = parse_size(args.size) if args.size is not None else None
    min_size = parse_size(args.min_size) if args.min_size is not None else None
    max_size = parse_size(args.max_size) if args.max_size is not None else None
    rng = random.Random(args.seed) if args.seed is not None else None
    return draw_sizes(
        args.count, size, min_size=min_size, max_size=max_size, rng=rng
    )


def cmd_batch(args) -> int:
    config = _load_config(args)
    sizes = _resolve_sizes(args)
    logger.info("batch of %d devices, %d bytes in total", len(sizes), sum(sizes))

    session = BatchSession(host_services(config), config, release=_release_signal(args))
    # Failed members are logged and skipped; an empty batch still exits 0
    session.run(
        sizes,
        _device_options(args),
        on_ready=lambda records: _print_records("batch", session, records, args),
    )
    return 0
