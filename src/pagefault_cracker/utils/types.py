"""Dataclass definitions shared by the capture and recovery layers."""

from __future__ import annotations

import base64
import enum
from dataclasses import dataclass, field

from pagefault_cracker.utils.constants import (
    DESYNC_WARN_THRESHOLD,
    ECDH_BASE_DELTA_A,
    ECDH_BASE_DELTA_B,
    ECDH_BASE_INDEX_INIT,
    ECDH_BLOCK_BYTES,
    ECDH_LADDER_ITERATIONS,
    ECDH_SCALAR_BITS,
    ECDH_SECOND_DELTA,
    ECDH_SECOND_INDEX_INIT,
    ECDH_UNKNOWN_HIGH_BITS,
    EDDSA_ATTACK_REPEATS,
    EDDSA_IGNORE_REPEATS,
    EDDSA_MAIN_LOOP_CYCLES,
    EDDSA_MEM_ACCESSES_PER_CYCLE,
    EDDSA_SAVE_POINTS,
    EDDSA_STACK_BUF_ALIGNMENT,
    EDDSA_STACK_BUF_BYTES,
    EDDSA_WRITE_TRACK_START_IDX,
    PAGE_SHIFT,
    PAGE_SIZE,
    PROGRESS_INTERVAL_S,
    STACK_PATTERN_SCAN_WINDOW,
    STACK_PATTERN_WRITE_FAULTS,
)
from pagefault_cracker.utils.errors import MissingDataError, TriggerError


class PfError(enum.IntFlag):
    """x86 page fault error code bits."""

    PRESENT = 0x1
    WRITE = 0x2
    USER = 0x4
    RSVD = 0x8
    FETCH = 0x10


class TrackMode(enum.Enum):
    """Fault-tracking modes understood by the hypervisor interface."""

    ACCESS = "access"
    WRITE = "write"
    EXEC = "exec"


def describe_error_code(code: int) -> str:
    """Render the set error bits, e.g. ``"Write User"``."""
    names = [flag.name.capitalize() for flag in PfError if code & flag]
    return " ".join(names) if names else "None"


def page_of(gpa: int) -> int:
    return gpa >> PAGE_SHIFT


def on_same_page(a: int, b: int) -> bool:
    return page_of(a) == page_of(b)


@dataclass
class FaultEvent:
    """One page fault reported by the hypervisor.

    ``rip`` and ``retired_instructions`` are only present in some setups and
    are ``None`` otherwise. ``content`` holds one page of guest memory read at
    ``monitor_gpa``; both are set together or not at all.
    """

    event_id: int
    faulted_gpa: int
    error_code: int = 0
    rip: int | None = None
    retired_instructions: int | None = None
    content: bytes | None = None
    monitor_gpa: int | None = None
    timestamp: str | None = None

    def __post_init__(self) -> None:
        self._check_snapshot()

    def _check_snapshot(self) -> None:
        if (self.content is None) != (self.monitor_gpa is None):
            raise ValueError("content and monitor_gpa must be set together")
        if self.content is not None and len(self.content) != PAGE_SIZE:
            raise ValueError(
                f"content must be exactly {PAGE_SIZE} bytes, got {len(self.content)}"
            )

    @property
    def has_rip_info(self) -> bool:
        return self.rip is not None

    @property
    def has_retired_instructions(self) -> bool:
        return self.retired_instructions is not None

    @property
    def has_access_data(self) -> bool:
        return self.content is not None

    @property
    def is_write(self) -> bool:
        return bool(self.error_code & PfError.WRITE)

    def require_rip(self) -> int:
        if self.rip is None:
            raise MissingDataError(f"event {self.event_id} has no RIP info")
        return self.rip

    def require_retired_instructions(self) -> int:
        if self.retired_instructions is None:
            raise MissingDataError(
                f"event {self.event_id} has no retired instruction count"
            )
        return self.retired_instructions

    def require_content(self) -> bytes:
        if self.content is None:
            raise MissingDataError(f"event {self.event_id} has no memory snapshot")
        return self.content

    def attach_snapshot(self, monitor_gpa: int, content: bytes) -> None:
        """Attach a page of guest memory read at ``monitor_gpa``."""
        self.content = bytes(content)
        self.monitor_gpa = monitor_gpa
        self._check_snapshot()

    def __str__(self) -> str:
        rip = f"0x{self.rip:x}" if self.rip is not None else "n/a"
        ret = self.retired_instructions if self.retired_instructions is not None else "n/a"
        return (
            f"ID {self.event_id}, FaultedGPA 0x{self.faulted_gpa:x}, RIP {rip}, "
            f"Error Code {describe_error_code(self.error_code)}, RetInstr {ret}"
        )


@dataclass(frozen=True)
class SignatureTranscript:
    """The victim signature leaked through the trigger (EdDSA path)."""

    signature_type: str
    signature: bytes
    message: bytes
    public_key: bytes

    def to_dict(self) -> dict:
        return {
            "signature_type": self.signature_type,
            "signature": base64.b64encode(self.signature).decode("ascii"),
            "message": base64.b64encode(self.message).decode("ascii"),
            "public_key": base64.b64encode(self.public_key).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SignatureTranscript:
        return cls(
            signature_type=data["signature_type"],
            signature=base64.b64decode(data["signature"]),
            message=base64.b64decode(data["message"]),
            public_key=base64.b64decode(data["public_key"]),
        )


@dataclass(frozen=True)
class StackBufferPattern:
    """Fault pattern that marks the stack buffer: N write faults, then one non-write fault.

    All faults in the pattern must have a retired-instruction count of zero.
    ``scan_window`` bounds how far from the end of the burst the scan starts.
    """

    write_faults: int = STACK_PATTERN_WRITE_FAULTS
    scan_window: int = STACK_PATTERN_SCAN_WINDOW


@dataclass(frozen=True)
class CapturePlan:
    """Configuration of the EdDSA live capture automaton."""

    choose_t_gpa: int
    fe64_gpa: int
    save_points: frozenset[int] = EDDSA_SAVE_POINTS
    ignore_repeats: int = EDDSA_IGNORE_REPEATS
    attack_repeats: int = EDDSA_ATTACK_REPEATS
    write_track_start_index: int = EDDSA_WRITE_TRACK_START_IDX
    stack_pattern: StackBufferPattern = field(default_factory=StackBufferPattern)
    cpu: int = -1
    flush_caches: bool = True
    desync_warn_threshold: int = DESYNC_WARN_THRESHOLD
    progress_interval: float = PROGRESS_INTERVAL_S

    @property
    def tracked_pages(self) -> tuple[int, int]:
        return (self.choose_t_gpa, self.fe64_gpa)

    @property
    def ignore_sequence(self) -> tuple[int, ...]:
        return self.tracked_pages * self.ignore_repeats

    @property
    def attack_sequence(self) -> tuple[int, ...]:
        return self.tracked_pages * self.attack_repeats


@dataclass(frozen=True)
class EdDSAAttackConfig:
    """Persisted output of the EdDSA capture, consumed by the offline recovery."""

    choose_t_gpa: int
    fe64_gpa: int
    stack_buf_gpa: int
    transcript: SignatureTranscript
    mem_accesses_per_cycle: int = EDDSA_MEM_ACCESSES_PER_CYCLE
    main_loop_cycles: int = EDDSA_MAIN_LOOP_CYCLES
    stack_buf_alignment: int = EDDSA_STACK_BUF_ALIGNMENT
    stack_buf_bytes: int = EDDSA_STACK_BUF_BYTES

    def to_dict(self) -> dict:
        return {
            "choose_t_gpa": self.choose_t_gpa,
            "fe64_gpa": self.fe64_gpa,
            "stack_buf_gpa": self.stack_buf_gpa,
            "mem_accesses_per_cycle": self.mem_accesses_per_cycle,
            "main_loop_cycles": self.main_loop_cycles,
            "stack_buf_alignment": self.stack_buf_alignment,
            "stack_buf_bytes": self.stack_buf_bytes,
            "sig_msg": self.transcript.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EdDSAAttackConfig:
        return cls(
            choose_t_gpa=int(data["choose_t_gpa"]),
            fe64_gpa=int(data["fe64_gpa"]),
            stack_buf_gpa=int(data["stack_buf_gpa"]),
            transcript=SignatureTranscript.from_dict(data["sig_msg"]),
            mem_accesses_per_cycle=int(data["mem_accesses_per_cycle"]),
            main_loop_cycles=int(data["main_loop_cycles"]),
            stack_buf_alignment=int(data["stack_buf_alignment"]),
            stack_buf_bytes=int(data["stack_buf_bytes"]),
        )


@dataclass(frozen=True)
class EcdhLayout:
    """Where the before/after snapshots of each ladder iteration sit in the two streams.

    The deltas come from manual analysis of the attacked binary.
    """

    base_index_init: int = ECDH_BASE_INDEX_INIT
    base_delta_a: int = ECDH_BASE_DELTA_A
    base_delta_b: int = ECDH_BASE_DELTA_B
    second_index_init: int = ECDH_SECOND_INDEX_INIT
    second_delta: int = ECDH_SECOND_DELTA
    iterations: int = ECDH_LADDER_ITERATIONS
    unknown_high_bits: int = ECDH_UNKNOWN_HIGH_BITS
    block_bytes: int = ECDH_BLOCK_BYTES

    def __post_init__(self) -> None:
        if not 1 <= self.iterations < ECDH_SCALAR_BITS:
            raise ValueError(
                f"iterations must be in [1, {ECDH_SCALAR_BITS - 1}], got {self.iterations}"
            )
        if not 0 <= self.unknown_high_bits <= self.iterations:
            raise ValueError(
                f"unknown_high_bits must be in [0, iterations], got {self.unknown_high_bits}"
            )

    @property
    def unknown_positions(self) -> tuple[int, ...]:
        """Swap positions the capture never observes, highest first."""
        top = self.iterations - 1
        return tuple(range(top, top - self.unknown_high_bits, -1))

    def to_dict(self) -> dict:
        return {
            "base_index_init": self.base_index_init,
            "base_delta_a": self.base_delta_a,
            "base_delta_b": self.base_delta_b,
            "second_index_init": self.second_index_init,
            "second_delta": self.second_delta,
            "iterations": self.iterations,
            "unknown_high_bits": self.unknown_high_bits,
        }

    @classmethod
    def from_dict(cls, data: dict) -> EcdhLayout:
        return cls(**{k: int(v) for k, v in data.items()})


@dataclass(frozen=True)
class EcdhAttackConfig:
    """Persisted output of the ECDH capture."""

    base_gpa: int
    fe64_gpa: int
    stack_buf_gpa: int
    layout: EcdhLayout = field(default_factory=EcdhLayout)

    def to_dict(self) -> dict:
        return {
            "base_gpa": self.base_gpa,
            "fe_64_gpa": self.fe64_gpa,
            "stack_buf_gpa": self.stack_buf_gpa,
            "layout": self.layout.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EcdhAttackConfig:
        layout = data.get("layout")
        return cls(
            base_gpa=int(data["base_gpa"]),
            fe64_gpa=int(data["fe_64_gpa"]),
            stack_buf_gpa=int(data["stack_buf_gpa"]),
            layout=EcdhLayout.from_dict(layout) if layout else EcdhLayout(),
        )


@dataclass
class CaptureResult:
    """Everything a live capture produced."""

    events: list[FaultEvent] = field(default_factory=list)
    stack_buf_gpa: int | None = None
    payload: bytes = b""
    desync_count: int = 0
    trigger_error: TriggerError | None = None


@dataclass
class RecoveryCandidates:
    """Recovered digit/bit sequences per page offset, plus offsets that failed validation."""

    sequences: dict[int, list[int]] = field(default_factory=dict)
    discarded: set[int] = field(default_factory=set)

    def accept(self, offset: int, sequence: list[int]) -> None:
        self.sequences[offset] = sequence
        self.discarded.discard(offset)

    def discard(self, offset: int) -> None:
        self.sequences.pop(offset, None)
        self.discarded.add(offset)

    def __len__(self) -> int:
        return len(self.sequences)


@dataclass(frozen=True)
class RecorderConfig:
    """Settings of the streaming trace recorder."""

    iterations: int = 1
    tracking_mode: TrackMode = TrackMode.ACCESS
    allow_list: tuple[int, ...] = ()
    find_write: bool = False
    retrack: bool = True
    rip_mode: bool = True
    queue_size: int = 1024
    min_retired_progress: int = 2


@dataclass
class EdDSARecoveryResult:
    """Outcome of the offline EdDSA recovery."""

    candidates: RecoveryCandidates
    offsets_scanned: int = 0
    offset: int | None = None
    intermediate_secret: int | None = None
    forged_message: bytes = b""
    forged_signature: bytes | None = None

    @property
    def success(self) -> bool:
        return self.forged_signature is not None


@dataclass
class EcdhCandidate:
    """One scalar candidate: an offset plus a guess for the unobserved top swap bits.

    ``top_swap_guess`` packs the guessed bits, highest swap position first.
    """

    offset: int
    top_swap_guess: int
    scalar_bits: list[int]
    mismatches: int | None = None
    public_key_match: bool | None = None

    @property
    def valid(self) -> bool:
        checks = []
        if self.mismatches is not None:
            checks.append(self.mismatches == 0)
        if self.public_key_match is not None:
            checks.append(self.public_key_match)
        return bool(checks) and all(checks)


@dataclass
class EcdhRecoveryResult:
    """Outcome of the offline ECDH recovery."""

    candidates: RecoveryCandidates
    scalars: list[EcdhCandidate] = field(default_factory=list)
    reference_bits: list[int] | None = None

    @property
    def valid_scalars(self) -> list[EcdhCandidate]:
        return [c for c in self.scalars if c.valid]

    @property
    def success(self) -> bool:
        return bool(self.valid_scalars)
