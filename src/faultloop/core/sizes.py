# SPDX-License-Identifier: Apache-2.0
"""Device sizes: human-friendly parsing and batch size drawing."""

from __future__ import annotations

import random
import re

from ..exceptions import InvalidSizeSpec
from .mapping import SECTOR_SIZE

_UNITS = {
    "K": 1024,
    "M": 1024 ** 2,
    "G": 1024 ** 3,
    "T": 1024 ** 4,
}

# Largest byte count a file offset (off_t) can hold
MAX_SIZE = 2 ** 63 - 1

_SIZE_RE = re.compile(
    r"^\s*([0-9]+(?:\.[0-9]+)?)\s*(?:([KMGT])(?:i?B)?|B)?\s*$", re.IGNORECASE
)


def parse_size(s: str) -> int:
    """Parse a human-friendly size string to bytes.

    Accepts plain integers (bytes) or suffixed values: ``'512M'``, ``'1G'``,
    ``'100KiB'``.  The suffix is case-insensitive and binary (``K`` = 1024).

    Returns:
        Size in whole bytes.

    Raises:
        InvalidSizeSpec: If the string cannot be parsed, or the size does
            not fit a 64-bit file offset.
    """
    m = _SIZE_RE.match(s)
    if m is None:
        raise InvalidSizeSpec(f"invalid size: {s!r}")
    value = float(m.group(1))
    suffix = m.group(2)
    if suffix is not None:
        value *= _UNITS[suffix.upper()]
    if value > MAX_SIZE:
        raise InvalidSizeSpec(f"invalid size: {s!r} exceeds {MAX_SIZE} bytes")
    return int(value)


def _check_size(size: int, what: str) -> int:
    if size < SECTOR_SIZE:
        raise InvalidSizeSpec(
            f"{what} of {size} bytes is smaller than one {SECTOR_SIZE}-byte block"
        )
    if size > MAX_SIZE:
        raise InvalidSizeSpec(f"{what} of {size} bytes exceeds {MAX_SIZE} bytes")
    return size


def draw_sizes(
    count: int,
    size: int | None = None,
    *,
    min_size: int | None = None,
    max_size: int | None = None,
    rng: random.Random | None = None,
) -> list[int]:
    """Return *count* device sizes, all resolved up front.

    With *size* every member gets that size; otherwise each is drawn
    uniformly from ``[min_size, max_size]``.

    Raises:
        InvalidSizeSpec: On ``count < 1``, a size below one block, a
            missing bound or ``min_size > max_size``.
    """
    if count < 1:
        raise InvalidSizeSpec(f"instance count must be at least 1, got {count}")
    if size is not None:
        return [_check_size(size, "size")] * count
    if min_size is None or max_size is None:
        raise InvalidSizeSpec("either a size or both --min and --max are required")
    _check_size(min_size, "minimum size")
    _check_size(max_size, "maximum size")
    if min_size > max_size:
        raise InvalidSizeSpec(
            f"minimum size {min_size} is larger than maximum size {max_size}"
        )
    rng = rng or random.Random()
    return [rng.randint(min_size, max_size) for _ in range(count)]
