"""Boundary to the hypervisor fault-tracking interface.

The interface itself lives in an external library. This module describes the
operations we consume, loads the concrete implementation at run time and wraps
every call so that a failure surfaces as HypervisorError. Nothing is retried:
a repeated ack or re-track with mismatched state would desynchronise the
capture from the real tracking state.
"""

from __future__ import annotations

import importlib
import logging
import threading
import time
from typing import Protocol

from pagefault_cracker.utils.constants import PAGE_SIZE
from pagefault_cracker.utils.errors import CaptureCancelled, HypervisorError
from pagefault_cracker.utils.types import FaultEvent, TrackMode

logger = logging.getLogger(__name__)


class FaultTracker(Protocol):
    """Operations of the hypervisor fault-tracking interface."""

    def track_page(self, gpa: int, mode: TrackMode) -> None: ...

    def untrack_page(self, gpa: int, mode: TrackMode) -> None: ...

    def track_all_pages(self, mode: TrackMode) -> None: ...

    def untrack_all_pages(self, mode: TrackMode) -> None: ...

    def poll_event(self) -> FaultEvent | None:
        """Return the next pending event, or None. Never blocks."""
        ...

    def ack_event(self) -> None: ...

    def read_guest_memory(self, gpa: int, length: int, flush: bool, cpu: int) -> bytes: ...

    def close(self) -> None: ...


class CheckedTracker:
    """Wraps a FaultTracker so every failing call raises HypervisorError."""

    def __init__(self, tracker: FaultTracker) -> None:
        self.tracker = tracker

    def _call(self, operation: str, fn, *args):
        try:
            return fn(*args)
        except OSError as exc:
            raise HypervisorError(f"{operation} failed: {exc}") from exc

    def track_page(self, gpa: int, mode: TrackMode) -> None:
        self._call(f"track_page(0x{gpa:x}, {mode.value})", self.tracker.track_page, gpa, mode)

    def untrack_page(self, gpa: int, mode: TrackMode) -> None:
        self._call(f"untrack_page(0x{gpa:x}, {mode.value})", self.tracker.untrack_page, gpa, mode)

    def track_all_pages(self, mode: TrackMode) -> None:
        self._call(f"track_all_pages({mode.value})", self.tracker.track_all_pages, mode)

    def untrack_all_pages(self, mode: TrackMode) -> None:
        self._call(f"untrack_all_pages({mode.value})", self.tracker.untrack_all_pages, mode)

    def poll_event(self) -> FaultEvent | None:
        return self._call("poll_event", self.tracker.poll_event)

    def ack_event(self) -> None:
        self._call("ack_event", self.tracker.ack_event)

    def read_page(self, gpa: int, flush: bool = True, cpu: int = -1) -> bytes:
        """Read one page of guest memory at ``gpa``."""
        data = self._call(
            f"read_guest_memory(0x{gpa:x})",
            self.tracker.read_guest_memory, gpa, PAGE_SIZE, flush, cpu,
        )
        if len(data) != PAGE_SIZE:
            raise HypervisorError(
                f"read_guest_memory(0x{gpa:x}) returned {len(data)} bytes, expected {PAGE_SIZE}"
            )
        return bytes(data)

    def close(self) -> None:
        self._call("close", self.tracker.close)


def load_tracker(target: str, **kwargs) -> FaultTracker:
    """Instantiate a tracker from a ``"package.module:factory"`` reference."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"tracker must look like 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    logger.debug("loading tracker %s", target)
    return factory(**kwargs)


def wait_for_event(
    tracker: CheckedTracker,
    cancel: threading.Event,
    poll_interval: float = 0.0,
) -> FaultEvent:
    """Busy-poll until the next event arrives.

    Raises CaptureCancelled once ``cancel`` is set. The flag is checked before
    every poll.
    """
    while True:
        if cancel.is_set():
            raise CaptureCancelled("capture cancelled")
        event = tracker.poll_event()
        if event is not None:
            return event
        if poll_interval:
            time.sleep(poll_interval)
