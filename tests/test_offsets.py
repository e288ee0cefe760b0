"""Tests for the changed-offset scanner."""

import pytest

from pagefault_cracker.analysis.offsets import (
    candidate_offsets,
    updated_offsets,
    window_changed,
)
from pagefault_cracker.utils.constants import PAGE_SIZE
from pagefault_cracker.utils.errors import MissingDataError
from pagefault_cracker.utils.types import FaultEvent


def _page(**changes):
    page = bytearray(PAGE_SIZE)
    for offset, value in changes.items():
        page[int(offset.lstrip("o"), 16)] = value
    return bytes(page)


def _snap(event_id, content):
    return FaultEvent(event_id=event_id, faulted_gpa=0x1000, content=content, monitor_gpa=0x9000)


class TestUpdatedOffsets:
    def test_identical(self):
        assert updated_offsets(bytes(PAGE_SIZE), bytes(PAGE_SIZE), 16, 16) == []

    def test_single_byte(self):
        assert updated_offsets(bytes(PAGE_SIZE), _page(o200=1), 16, 16) == [0x200]

    def test_wide_blocks_overlap(self):
        got = updated_offsets(bytes(PAGE_SIZE), _page(o200=1), 16, 256)
        assert got == list(range(0x110, 0x201, 16))

    def test_last_block_is_scanned(self):
        assert updated_offsets(bytes(PAGE_SIZE), _page(offf=1), 16, 16) == [PAGE_SIZE - 16]

    def test_exactly_the_changed_blocks(self):
        before = bytes(PAGE_SIZE)
        after = _page(o0=1, o35=2, o800=3)
        got = updated_offsets(before, after, 16, 16)
        assert got == [0x0, 0x30, 0x800]
        for start in range(0, PAGE_SIZE - 15, 16):
            assert (start in got) == window_changed(before, after, start, 16)

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            updated_offsets(b"\x00" * 32, b"\x00" * 16, 16, 16)

    def test_block_larger_than_buffer(self):
        assert updated_offsets(b"\x00" * 8, b"\x01" * 8, 16, 16) == []

    def test_bad_alignment(self):
        with pytest.raises(ValueError):
            updated_offsets(b"\x00" * 16, b"\x00" * 16, 0, 16)


class TestCandidateOffsets:
    def test_union_over_cycles(self):
        snaps = [_snap(0, bytes(PAGE_SIZE)), _snap(1, _page(o40=1)), _snap(2, _page(o40=1)), _snap(3, _page(o40=1, o80=1))]
        assert candidate_offsets(snaps, 2, 2, 16, 16) == {0x40, 0x80}

    def test_pairs_across_cycles_ignored(self):
        snaps = [_snap(0, bytes(PAGE_SIZE)), _snap(1, bytes(PAGE_SIZE)), _snap(2, _page(o40=1)), _snap(3, _page(o40=1))]
        assert candidate_offsets(snaps, 2, 2, 16, 16) == set()

    def test_too_few_snapshots(self):
        with pytest.raises(MissingDataError):
            candidate_offsets([_snap(0, bytes(PAGE_SIZE))], 85, 10, 16, 256)
