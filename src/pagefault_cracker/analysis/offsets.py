"""Find page offsets whose contents change between adjacent memory snapshots."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from pagefault_cracker.utils.errors import MissingDataError
from pagefault_cracker.utils.types import FaultEvent


def require_snapshot_count(snapshots: Sequence[FaultEvent], needed: int) -> None:
    if len(snapshots) < needed:
        raise MissingDataError(
            f"need {needed} memory snapshots, trace has {len(snapshots)}"
        )


def updated_offsets(
    before: bytes,
    after: bytes,
    alignment: int,
    block_size: int,
) -> list[int]:
    """Return the start of every ``block_size`` block that differs.

    Blocks start at each multiple of ``alignment`` and must lie fully inside
    the buffers.
    """
    if len(before) != len(after):
        raise ValueError(f"buffer lengths differ: {len(before)} != {len(after)}")
    if alignment <= 0 or block_size <= 0:
        raise ValueError("alignment and block_size must be positive")

    diff = np.frombuffer(before, dtype=np.uint8) ^ np.frombuffer(after, dtype=np.uint8)
    starts = np.arange(0, len(diff) - block_size + 1, alignment)
    if starts.size == 0:
        return []
    blocks = diff[starts[:, None] + np.arange(block_size)]
    return [int(s) for s in starts[blocks.any(axis=1)]]


def candidate_offsets(
    snapshots: Sequence[FaultEvent],
    cycles: int,
    accesses_per_cycle: int,
    alignment: int,
    block_size: int,
) -> set[int]:
    """Union of updated offsets over every adjacent snapshot pair inside every cycle.

    ``snapshots`` holds ``accesses_per_cycle`` snapshot events per main-loop
    cycle, in order.
    """
    require_snapshot_count(snapshots, cycles * accesses_per_cycle)
    offsets: set[int] = set()
    for cycle in range(cycles):
        base = cycle * accesses_per_cycle
        for rel in range(accesses_per_cycle - 1):
            before = snapshots[base + rel].require_content()
            after = snapshots[base + rel + 1].require_content()
            offsets.update(updated_offsets(before, after, alignment, block_size))
    return offsets


def window_changed(before: bytes, after: bytes, offset: int, size: int) -> bool:
    return before[offset:offset + size] != after[offset:offset + size]
