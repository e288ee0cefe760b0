"""Tests for the stack buffer locator."""

import pytest

from pagefault_cracker.core.stack_locator import locate_stack_buffer
from pagefault_cracker.utils.errors import MissingDataError
from pagefault_cracker.utils.types import FaultEvent, PfError, StackBufferPattern

WRITE_USER = PfError.WRITE | PfError.USER
USER = PfError.USER


def _ev(event_id, gpa, code, retired=0):
    return FaultEvent(event_id=event_id, faulted_gpa=gpa, error_code=code, rip=0, retired_instructions=retired)


def recorded_burst():
    """Access-tracking burst observed right after the first choose_t call."""
    events = [_ev(i, 0x6EFA1000, WRITE_USER) for i in range(8)]
    events.append(_ev(8, 0x5A1BA000, USER))
    events.append(_ev(9, 0x6EFA1000, USER))
    events.append(_ev(10, 0x6EFA1000, USER))
    return events


class TestLocateStackBuffer:
    def test_recorded_burst(self):
        events = recorded_burst()
        found = locate_stack_buffer(events)
        assert found is events[8]
        assert found.faulted_gpa == 0x5A1BA000

    def test_no_pattern(self):
        events = [_ev(i, 0x1000, USER) for i in range(12)]
        assert locate_stack_buffer(events) is None

    def test_empty(self):
        assert locate_stack_buffer([]) is None

    def test_short_burst(self):
        events = [_ev(0, 0x1000, WRITE_USER), _ev(1, 0x1000, WRITE_USER), _ev(2, 0x1000, WRITE_USER), _ev(3, 0x2000, USER)]
        assert locate_stack_buffer(events).faulted_gpa == 0x2000

    def test_nonzero_retired_breaks_pattern(self):
        events = [
            _ev(0, 0x1000, WRITE_USER),
            _ev(1, 0x1000, WRITE_USER, retired=4),
            _ev(2, 0x1000, WRITE_USER),
            _ev(3, 0x2000, USER),
        ]
        assert locate_stack_buffer(events) is None

    def test_result_is_non_write_after_writes(self):
        events = recorded_burst()
        found = locate_stack_buffer(events)
        idx = events.index(found)
        assert not found.is_write
        assert all(e.is_write for e in events[idx - 3:idx])

    def test_only_tail_is_scanned(self):
        head = [_ev(0, 0x1000, WRITE_USER)] * 3 + [_ev(3, 0x2000, USER)]
        tail = [_ev(i, 0x3000, USER) for i in range(4, 20)]
        assert locate_stack_buffer(head + tail) is None

    def test_custom_pattern(self):
        events = [_ev(0, 0x1000, WRITE_USER), _ev(1, 0x2000, USER)]
        found = locate_stack_buffer(events, StackBufferPattern(write_faults=1, scan_window=10))
        assert found.faulted_gpa == 0x2000

    def test_requires_retired_instructions(self):
        events = [FaultEvent(event_id=0, faulted_gpa=0x1000, error_code=WRITE_USER)]
        with pytest.raises(MissingDataError):
            locate_stack_buffer(events)
