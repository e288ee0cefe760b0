"""Locate the attacker-relevant stack buffer inside an access-tracking burst."""

from __future__ import annotations

import logging
from typing import Sequence

from pagefault_cracker.utils.types import FaultEvent, StackBufferPattern

logger = logging.getLogger(__name__)


def _quiet(event: FaultEvent) -> bool:
    return event.require_retired_instructions() == 0


def locate_stack_buffer(
    events: Sequence[FaultEvent],
    pattern: StackBufferPattern | None = None,
) -> FaultEvent | None:
    """Find the fault that touched the stack buffer.

    Looks for ``pattern.write_faults`` consecutive write faults followed by
    one non-write fault, all with a retired-instruction count of zero. The
    trailing non-write fault is the buffer. Only start positions among the
    last ``pattern.scan_window`` events are tried, earliest first, and each
    match attempt looks at most ``scan_window`` events ahead.

    Returns None when no start position matches. Raises MissingDataError if
    an examined event has no retired-instruction count.
    """
    pattern = pattern or StackBufferPattern()
    window = pattern.scan_window
    first = max(len(events) - window, 0)

    for start in range(first, len(events)):
        logger.debug("scanning for stack buffer pattern from %d", start)
        writes = 0
        for event in events[start:start + window]:
            if writes < pattern.write_faults:
                if event.is_write and _quiet(event):
                    writes += 1
                else:
                    writes = 0
            elif not event.is_write and _quiet(event):
                return event
            else:
                writes = 0
    return None
