# SPDX-License-Identifier: Apache-2.0
"""Fault mapping compiler: block-range spec -> device-mapper table.

Pure code, no I/O. A spec such as ``"500,1000-1010"`` is parsed against the
device's block count and compiled into a gapless table of identity
``linear`` segments with ``error`` windows punched into it:

    spec = parse_fault_spec("500,1000-1010", blocks_for(size))
    table = compile_table(spec, blocks_for(size))
    print(format_dm_table(table, "/dev/loop3"))
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Union

from ..exceptions import InvalidBlockRange, InvalidSizeSpec

SECTOR_SIZE = 512

_TOKEN_RE = re.compile(r"^([0-9]+)(?:-([0-9]+))?$")


def blocks_for(size_bytes: int) -> int:
    """Number of whole 512-byte blocks in *size_bytes*."""
    return size_bytes // SECTOR_SIZE


@dataclass(frozen=True)
class BlockRange:
    """Inclusive range of blocks ``[start, end]``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise InvalidBlockRange(
                f"invalid block range {self.start}-{self.end}: end before start"
            )

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class FaultSpec:
    """Validated fault ranges, in input order, for a device of *total_blocks*."""

    ranges: tuple[BlockRange, ...]
    total_blocks: int

    def __len__(self) -> int:
        return len(self.ranges)

    def __iter__(self) -> Iterator[BlockRange]:
        return iter(self.ranges)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.ranges)


@dataclass(frozen=True)
class PassThrough:
    """Blocks mapped 1:1 onto the underlying device at *source_offset*."""

    start: int
    length: int
    source_offset: int

    def __post_init__(self) -> None:
        if self.length <= 0:
            raise ValueError(f"segment at {self.start} has length {self.length}")

    @property
    def end(self) -> int:
        """First block past the segment."""
        return self.start + self.length

    def dm_line(self, device: str) -> str:
        return f"{self.start} {self.length} linear {device} {self.source_offset}"


@dataclass(frozen=True)
class Fault:
    """Blocks where every I/O fails."""

    start: int
    length: int

    def __post_init__(self) -> None:
        if self.length <= 0:
            raise ValueError(f"segment at {self.start} has length {self.length}")

    @property
    def end(self) -> int:
        """First block past the segment."""
        return self.start + self.length

    def dm_line(self, device: str) -> str:
        return f"{self.start} {self.length} error"


Segment = Union[PassThrough, Fault]


@dataclass(frozen=True)
class MappingTable:
    """Ordered segments covering exactly ``[0, total_blocks)``."""

    segments: tuple[Segment, ...]
    total_blocks: int

    def __post_init__(self) -> None:
        cursor = 0
        for seg in self.segments:
            if seg.start != cursor:
                raise ValueError(
                    f"segment at {seg.start} does not continue from block {cursor}"
                )
            cursor = seg.end
        if cursor != self.total_blocks:
            raise ValueError(
                f"segments cover {cursor} blocks, device has {self.total_blocks}"
            )

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self) -> Iterator[Segment]:
        return iter(self.segments)

    @property
    def faults(self) -> list[Fault]:
        return [s for s in self.segments if isinstance(s, Fault)]


def _parse_token(token: str, total_blocks: int) -> BlockRange:
    m = _TOKEN_RE.match(token)
    if m is None:
        raise InvalidBlockRange(f"invalid block token: {token!r}")
    start = int(m.group(1))
    end = int(m.group(2)) if m.group(2) is not None else start
    if end < start:
        raise InvalidBlockRange(f"invalid block range {token!r}: end before start")
    if end >= total_blocks:
        raise InvalidBlockRange(
            f"block range {token!r} exceeds device size "
            f"(last block is {total_blocks - 1})"
        )
    return BlockRange(start, end)


def parse_fault_spec(text: Optional[str], total_blocks: int) -> FaultSpec:
    """Parse a ``token(,token)*`` block spec, ``token := N | N-M``.

    Overlapping and unsorted ranges are accepted here; ``compile_table``
    deals with them.

    Raises:
        InvalidBlockRange: On a malformed token, ``end < start`` or
            ``end >= total_blocks``.
    """
    if text is None or not text.strip():
        return FaultSpec((), total_blocks)
    ranges = tuple(
        _parse_token(token.strip(), total_blocks) for token in text.split(",")
    )
    return FaultSpec(ranges, total_blocks)


def merge_overlapping(ranges: Sequence[BlockRange]) -> list[BlockRange]:
    """Sort ranges by start and merge those sharing at least one block.

    Adjacent ranges (``a.end + 1 == b.start``) are kept apart.
    """
    merged: list[BlockRange] = []
    for r in sorted(ranges, key=lambda r: (r.start, r.end)):
        if merged and r.start <= merged[-1].end:
            last = merged[-1]
            if r.end > last.end:
                merged[-1] = BlockRange(last.start, r.end)
            continue
        merged.append(r)
    return merged


def compile_table(spec: Optional[FaultSpec], total_blocks: int) -> MappingTable:
    """Compile *spec* into a gapless table over ``[0, total_blocks)``.

    Gaps between faults become identity ``PassThrough`` segments (source
    offset equals table offset); each merged range becomes one ``Fault``.

    Raises:
        InvalidSizeSpec: If the device holds no whole block.
        InvalidBlockRange: If a range lies beyond *total_blocks*.
    """
    if total_blocks < 1:
        raise InvalidSizeSpec(
            f"device of {total_blocks} blocks is smaller than one {SECTOR_SIZE}-byte block"
        )
    ranges = spec.ranges if spec is not None else ()
    for r in ranges:
        if r.end >= total_blocks:
            raise InvalidBlockRange(
                f"block range {r} exceeds device size (last block is {total_blocks - 1})"
            )

    segments: list[Segment] = []
    cursor = 0
    for r in merge_overlapping(ranges):
        if cursor < r.start:
            segments.append(PassThrough(cursor, r.start - cursor, cursor))
        segments.append(Fault(r.start, r.length))
        cursor = r.end + 1
    if cursor < total_blocks:
        segments.append(PassThrough(cursor, total_blocks - cursor, cursor))
    return MappingTable(tuple(segments), total_blocks)


def format_dm_table(table: MappingTable, device: str) -> str:
    """Serialise *table* in dmsetup's line format, one segment per line."""
    return "\n".join(seg.dm_line(str(device)) for seg in table)
