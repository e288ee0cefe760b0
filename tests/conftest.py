"""Shared fixtures: a scripted fault tracker and synthetic attack captures."""

from __future__ import annotations

import collections
import time
from types import SimpleNamespace

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from pagefault_cracker.analysis.ecdh_swaps import scalar_to_bits, swaps_from_scalar
from pagefault_cracker.analysis.eddsa_digits import window3_digits
from pagefault_cracker.analysis.eddsa_forge import message_digest_reduced
from pagefault_cracker.utils.constants import PAGE_SIZE
from pagefault_cracker.utils.types import (
    EcdhAttackConfig,
    EcdhLayout,
    EdDSAAttackConfig,
    FaultEvent,
    SignatureTranscript,
)


class FakeTracker:
    """In-memory stand-in for the hypervisor interface.

    Events queued in ``pending`` are handed out by ``poll_event``. Every call
    is logged in ``calls``.
    """

    def __init__(self, memory: dict[int, bytes] | None = None) -> None:
        self.pending: collections.deque[FaultEvent] = collections.deque()
        self.memory = memory or {}
        self.calls: list[tuple] = []
        self.acks = 0
        self.closed = False

    def track_page(self, gpa, mode):
        self.calls.append(("track_page", gpa, mode))

    def untrack_page(self, gpa, mode):
        self.calls.append(("untrack_page", gpa, mode))

    def track_all_pages(self, mode):
        self.calls.append(("track_all_pages", mode))

    def untrack_all_pages(self, mode):
        self.calls.append(("untrack_all_pages", mode))

    def poll_event(self):
        try:
            return self.pending.popleft()
        except IndexError:
            return None

    def ack_event(self):
        self.acks += 1

    def read_guest_memory(self, gpa, length, flush, cpu):
        self.calls.append(("read_guest_memory", gpa, length, flush, cpu))
        return self.memory.get(gpa, bytes(length))

    def close(self):
        self.closed = True


class DrainingTrigger:
    """Returns ``payload`` once the tracker has no pending events left."""

    def __init__(self, tracker: FakeTracker, payload: bytes = b"", timeout: float = 5.0) -> None:
        self.tracker = tracker
        self.payload = payload
        self.timeout = timeout

    def execute(self) -> bytes:
        deadline = time.monotonic() + self.timeout
        while self.tracker.pending and time.monotonic() < deadline:
            time.sleep(0.005)
        # let the capture loop finish handling the last event
        time.sleep(0.05)
        return self.payload


@pytest.fixture
def fake_tracker():
    return FakeTracker()


@pytest.fixture
def draining_trigger():
    return DrainingTrigger


# -- Synthetic EdDSA capture --

EDDSA_SEED = bytes(range(32))
EDDSA_BUFFER_OFFSET = 0x200
EDDSA_STACK_GPA = 0x9000

_PAIR_FOR_MAGNITUDE = {1: 0, 2: 2, 3: 4, -4: 6}


def eddsa_snapshots(digits, offset, accesses_per_cycle=10):
    """One snapshot event per memory access, changing the byte at ``offset`` per digit."""
    events = []
    version = 0
    for digit in digits:
        changes = set()
        if digit:
            changes.add(_PAIR_FOR_MAGNITUDE[digit if digit == -4 else abs(digit)])
            if digit < 0 and digit != -4:
                changes.add(8)
        for rel in range(accesses_per_cycle):
            if rel - 1 in changes:
                version += 1
            page = bytearray(PAGE_SIZE)
            page[offset] = version % 256
            events.append(
                FaultEvent(
                    event_id=len(events),
                    faulted_gpa=0x1000 if rel % 2 == 0 else 0x2000,
                    error_code=0x14,
                    content=bytes(page),
                    monitor_gpa=EDDSA_STACK_GPA,
                )
            )
    return events


@pytest.fixture(scope="session")
def eddsa_capture():
    """Capture whose stack buffer changes at EDDSA_BUFFER_OFFSET, one change per digit."""
    for n in range(64):
        message = b"exchange hash %d" % n
        digits = window3_digits(message_digest_reduced(EDDSA_SEED, message))
        if digits[0] != 0:
            break

    private = Ed25519PrivateKey.from_private_bytes(EDDSA_SEED)
    public = private.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )
    transcript = SignatureTranscript(
        signature_type="ssh-ed25519",
        signature=private.sign(message),
        message=message,
        public_key=public,
    )
    config = EdDSAAttackConfig(
        choose_t_gpa=0x1000,
        fe64_gpa=0x2000,
        stack_buf_gpa=EDDSA_STACK_GPA,
        transcript=transcript,
    )
    return SimpleNamespace(
        config=config,
        events=eddsa_snapshots(digits, EDDSA_BUFFER_OFFSET),
        seed=EDDSA_SEED,
        digits=digits,
        offset=EDDSA_BUFFER_OFFSET,
    )


@pytest.fixture
def make_eddsa_snapshots():
    return eddsa_snapshots


# -- Synthetic ECDH capture --

ECDH_BASE_GPA = 0x4000
ECDH_FE64_GPA = 0x5000
ECDH_BUFFER_OFFSET = 0x40

# base snapshot k+1 is taken before ladder step k, second snapshot k after it
SIMPLE_LAYOUT = EcdhLayout(
    base_index_init=0,
    base_delta_a=1,
    base_delta_b=0,
    second_index_init=0,
    second_delta=1,
)


def ecdh_scalar() -> bytes:
    raw = bytearray(range(100, 132))
    raw[0] &= 0xF8
    raw[31] &= 0x7F
    raw[31] |= 0x40
    return bytes(raw)


def ecdh_events(
    scalar: bytes,
    offset: int = ECDH_BUFFER_OFFSET,
    layout: EcdhLayout = SIMPLE_LAYOUT,
) -> list[FaultEvent]:
    swaps = swaps_from_scalar(scalar_to_bits(scalar))
    observed = layout.iterations - layout.unknown_high_bits

    def event(gpa, marker):
        page = bytearray(PAGE_SIZE)
        page[offset] = marker
        return FaultEvent(event_id=0, faulted_gpa=gpa, content=bytes(page), monitor_gpa=0x8000)

    warmup = FaultEvent(event_id=0, faulted_gpa=ECDH_FE64_GPA)
    second = []
    for k in range(observed):
        bit = observed - 1 - k
        second.append(event(ECDH_FE64_GPA, swaps[bit]))
    base = [event(ECDH_BASE_GPA, 0) for _ in range(observed + 1)]

    events = [warmup] + second + base
    for i, e in enumerate(events):
        e.event_id = i
    return events


@pytest.fixture(scope="session")
def ecdh_capture():
    """Synthetic ladder capture of a known clamped scalar."""
    scalar = ecdh_scalar()
    public = X25519PrivateKey.from_private_bytes(scalar).public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )
    config = EcdhAttackConfig(
        base_gpa=ECDH_BASE_GPA,
        fe64_gpa=ECDH_FE64_GPA,
        stack_buf_gpa=0x8000,
        layout=SIMPLE_LAYOUT,
    )
    return SimpleNamespace(
        config=config,
        events=ecdh_events(scalar),
        scalar=scalar,
        public_key=public,
        offset=ECDH_BUFFER_OFFSET,
    )


@pytest.fixture
def make_ecdh_events():
    return ecdh_events
