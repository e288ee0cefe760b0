"""Fault trace model and line-oriented log codec.

A trace log holds one record per line. Fault events are JSON objects; the
literal marker lines ``Start <timestamp>`` and ``Stop <timestamp>`` frame the
runs of a multi-iteration recording. Anything else is skipped.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, TextIO

from pagefault_cracker.utils.errors import ParseError
from pagefault_cracker.utils.types import FaultEvent

logger = logging.getLogger(__name__)

RECORD_START = "{"
START_MARKER = "Start"
STOP_MARKER = "Stop"


@dataclass
class Run:
    """Events recorded between one Start marker and the following Stop marker."""

    start_timestamp: str
    stop_timestamp: str
    events: list[FaultEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)


@dataclass
class Trace:
    """Ordered fault events, optionally split into runs."""

    events: list[FaultEvent] = field(default_factory=list)
    runs: list[Run] = field(default_factory=list)
    extra_lines: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)

    def snapshots(self) -> list[FaultEvent]:
        """Events that carry a memory snapshot, in trace order."""
        return [e for e in self.events if e.has_access_data]

    def filter(self, predicate: Callable[[FaultEvent], bool]) -> list[FaultEvent]:
        return [e for e in self.events if predicate(e)]


def event_to_record(event: FaultEvent) -> dict:
    """Encode an event as the JSON object used on the wire."""
    return {
        "id": event.event_id,
        "faulted_gpa": event.faulted_gpa,
        "error_code": event.error_code,
        "have_rip_info": event.rip is not None,
        "rip": event.rip if event.rip is not None else 0,
        "timestamp": event.timestamp,
        "have_retired_instructions": event.retired_instructions is not None,
        "retired_instructions": (
            event.retired_instructions if event.retired_instructions is not None else 0
        ),
        "content": (
            base64.b64encode(event.content).decode("ascii")
            if event.content is not None
            else None
        ),
        "monitor_gpa": event.monitor_gpa if event.monitor_gpa is not None else 0,
    }


def event_from_record(record: dict) -> FaultEvent:
    """Decode a wire record. Raises KeyError/ValueError/TypeError on bad input."""
    content = record.get("content")
    if content:
        data = base64.b64decode(content, validate=True)
        monitor_gpa = int(record.get("monitor_gpa", 0))
    else:
        data = None
        monitor_gpa = None

    rip = int(record["rip"]) if record.get("have_rip_info") else None
    retired = (
        int(record["retired_instructions"])
        if record.get("have_retired_instructions")
        else None
    )
    return FaultEvent(
        event_id=int(record["id"]),
        faulted_gpa=int(record["faulted_gpa"]),
        error_code=int(record.get("error_code", 0)),
        rip=rip,
        retired_instructions=retired,
        content=data,
        monitor_gpa=monitor_gpa,
        timestamp=record.get("timestamp"),
    )


def format_event(event: FaultEvent) -> str:
    return json.dumps(event_to_record(event))


def parse_event_line(line: str, line_number: int | None = None) -> FaultEvent:
    try:
        record = json.loads(line)
        if not isinstance(record, dict):
            raise TypeError("record is not a JSON object")
        return event_from_record(record)
    except (ValueError, KeyError, TypeError, binascii.Error) as exc:
        raise ParseError(f"cannot decode fault record: {exc}", line_number) from exc


def parse_trace(stream: Iterable[str]) -> Trace:
    """Parse a trace log.

    A Start while a run is open drops the partial run and opens a new one.
    A Start without a matching Stop at end of input yields no run.
    """
    trace = Trace()
    open_run: Run | None = None
    warned = False

    for line_number, raw in enumerate(stream, start=1):
        line = raw.strip()
        if not line:
            continue

        if line.startswith(RECORD_START):
            event = parse_event_line(line, line_number)
            trace.events.append(event)
            if open_run is not None:
                open_run.events.append(event)
            continue

        keyword, _, rest = line.partition(" ")
        if keyword == START_MARKER:
            if open_run is not None:
                logger.warning(
                    "line %d: Start inside an open run, dropping %d events",
                    line_number, len(open_run),
                )
            open_run = Run(start_timestamp=rest.strip(), stop_timestamp="")
        elif keyword == STOP_MARKER:
            if open_run is None:
                logger.warning("line %d: Stop without Start, ignoring", line_number)
                continue
            open_run.stop_timestamp = rest.strip()
            trace.runs.append(open_run)
            open_run = None
        else:
            if not warned:
                logger.warning("line %d: skipping non-record lines in trace", line_number)
                warned = True
            trace.extra_lines.append(line)

    if open_run is not None:
        logger.warning("trace ended inside a run, dropping %d events", len(open_run))

    missing_rip = sum(1 for e in trace.events if not e.has_rip_info)
    missing_ret = sum(1 for e in trace.events if not e.has_retired_instructions)
    if missing_rip or missing_ret:
        logger.debug(
            "%d events without RIP info, %d without retired instruction counts",
            missing_rip, missing_ret,
        )
    return trace


def load_trace(path: str | Path) -> Trace:
    with open(path, "r", encoding="utf-8") as f:
        return parse_trace(f)


def write_trace(events: Iterable[FaultEvent], stream: TextIO) -> int:
    """Write events one record per line. Returns the number written."""
    count = 0
    for event in events:
        stream.write(format_event(event))
        stream.write("\n")
        count += 1
    return count


def save_trace(events: Iterable[FaultEvent], path: str | Path) -> int:
    with open(path, "w", encoding="utf-8") as f:
        return write_trace(events, f)


def write_marker(stream: TextIO, marker: str, timestamp: str) -> None:
    stream.write(f"{marker} {timestamp}\n")
