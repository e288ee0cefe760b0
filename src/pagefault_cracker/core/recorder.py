"""Streaming fault trace recorder.

A producer thread polls the tracker into a bounded queue. A consumer thread
writes every event to the trace log and re-arms tracking for the pages that
faulted before, once the victim has made progress past them. The driver runs
the requested number of iterations, each framed by Start/Stop markers.

The re-track backlog and the output writer share one lock. It is held for
appends, swaps and writes only, never across a tracker call.
"""

from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime
from typing import TextIO

from pagefault_cracker.core.trace import START_MARKER, STOP_MARKER, format_event, write_marker
from pagefault_cracker.core.tracker import CheckedTracker, wait_for_event
from pagefault_cracker.utils.errors import CaptureCancelled, PageFaultCrackerError
from pagefault_cracker.utils.types import FaultEvent, PfError, RecorderConfig, TrackMode

logger = logging.getLogger(__name__)

WRITE_FAULT_CODE = PfError.PRESENT | PfError.WRITE | PfError.USER


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


class TraceRecorder:
    """Record fault traces of repeated victim executions."""

    def __init__(
        self,
        tracker: CheckedTracker,
        trigger,
        sink: TextIO,
        config: RecorderConfig | None = None,
        queue_timeout: float = 0.05,
    ) -> None:
        self.tracker = tracker
        self.trigger = trigger
        self.sink = sink
        self.config = config or RecorderConfig()
        self.queue_timeout = queue_timeout

        self.lock = threading.Lock()
        self.backlog: list[FaultEvent] = []
        self.events_written = 0
        self._queue: queue.Queue[FaultEvent] = queue.Queue(maxsize=self.config.queue_size)
        self._producer_done = threading.Event()
        self._errors: list[BaseException] = []

    # -- Workers --

    def _produce(self, cancel: threading.Event) -> None:
        try:
            while True:
                event = wait_for_event(self.tracker, cancel)
                while True:
                    try:
                        self._queue.put(event, timeout=self.queue_timeout)
                        break
                    except queue.Full:
                        if cancel.is_set():
                            return
        except CaptureCancelled:
            logger.debug("event producer cancelled")
        except PageFaultCrackerError as exc:
            self._errors.append(exc)
            cancel.set()
        finally:
            self._producer_done.set()

    def _consume(self, cancel: threading.Event) -> None:
        try:
            while True:
                try:
                    event = self._queue.get(timeout=self.queue_timeout)
                except queue.Empty:
                    if self._producer_done.is_set():
                        return
                    continue
                self.process_event(event)
        except PageFaultCrackerError as exc:
            self._errors.append(exc)
            cancel.set()
        finally:
            logger.info("processed %d events", self.events_written)

    def process_event(self, event: FaultEvent) -> None:
        """Write one event, re-arm the backlog if the victim progressed, then ack."""
        with self.lock:
            self.sink.write(format_event(event) + "\n")
            self.events_written += 1

        if self.config.retrack:
            with self.lock:
                pending: list[FaultEvent] = []
                if self.backlog and self._progressed(event):
                    pending, self.backlog = self.backlog, []
            for old in pending:
                self.tracker.track_page(old.faulted_gpa, self._retrack_mode(old))
            with self.lock:
                self.backlog.append(event)

        self.tracker.ack_event()

    def _progressed(self, event: FaultEvent) -> bool:
        if self.config.rip_mode:
            return True
        return event.require_retired_instructions() > self.config.min_retired_progress

    def _retrack_mode(self, event: FaultEvent) -> TrackMode:
        if self.config.find_write and event.error_code == WRITE_FAULT_CODE:
            logger.debug("re-tracking 0x%x as write", event.faulted_gpa)
            return TrackMode.WRITE
        return self.config.tracking_mode

    # -- Driver --

    def _init_tracking(self) -> None:
        if not self.config.allow_list:
            if self.config.find_write:
                logger.info("doing additional write tracking")
                self.tracker.track_all_pages(TrackMode.WRITE)
            logger.info("tracking all pages")
            self.tracker.track_all_pages(self.config.tracking_mode)
            return
        logger.info("tracking the %d pages from the allow list", len(self.config.allow_list))
        for gpa in self.config.allow_list:
            self.tracker.track_page(gpa, self.config.tracking_mode)

    def _marker(self, marker: str) -> None:
        with self.lock:
            write_marker(self.sink, marker, _now())

    def run_iteration(self) -> None:
        self._marker(START_MARKER)
        with self.lock:
            self.backlog = []

        self._init_tracking()
        logger.info("triggering victim")
        self.trigger.execute()
        logger.info("victim done")

        self._marker(STOP_MARKER)
        self.tracker.untrack_all_pages(self.config.tracking_mode)
        if self.config.find_write:
            self.tracker.untrack_all_pages(TrackMode.WRITE)

    def record(self, cancel: threading.Event | None = None) -> int:
        """Run all iterations. Returns the number of events written."""
        cancel = cancel or threading.Event()
        producer = threading.Thread(target=self._produce, args=(cancel,), name="poller", daemon=True)
        consumer = threading.Thread(target=self._consume, args=(cancel,), name="writer", daemon=True)
        producer.start()
        consumer.start()

        try:
            for remaining in range(self.config.iterations - 1, -1, -1):
                if cancel.is_set():
                    break
                self.run_iteration()
                logger.info("%d iterations remaining", remaining)
        finally:
            cancel.set()
            producer.join()
            consumer.join()

        if self._errors:
            raise self._errors[0]
        return self.events_written
