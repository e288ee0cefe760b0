"""Tests for the X25519 ladder swap recovery."""

import dataclasses

import pytest

from pagefault_cracker.analysis.ecdh_swaps import (
    bits_to_scalar,
    clamp_scalar_bits,
    iteration_snapshots,
    mismatch_count,
    parse_openssl_secret,
    recover_swap_bits,
    scalar_from_swaps,
    scalar_to_bits,
    split_streams,
    swap_candidate_offsets,
    swaps_from_scalar,
)
from pagefault_cracker.analysis.recovery import EcdhRecovery, x25519_public_key
from pagefault_cracker.utils.errors import MissingDataError, ParseError
from pagefault_cracker.utils.types import EcdhAttackConfig, EcdhLayout

LONG_SECRET = (
    "F8:FF:2D:BF:0D:D0:DB:08:50:2F:87:99:6C:4B:00:FE:"
    "57:57:9F:EB:79:B2:B0:C2:77:E9:8B:13:56:FB:F7:4C"
)
LONG_SECRET_BITS = (
    "0001111111111111101101001111110110110000000010111101101100010000"
    "0000101011110100111000011001100100110110110100100000000001111111"
    "1110101011101010111110011101011110011110010011010000110101000011"
    "1110111010010111110100011100100001101010110111111110111100110010"
)
# swap bits of the ladder for LONG_SECRET, lowest iteration first
LONG_SECRET_SWAPS = (
    "0 0 1 0 0 0 0 0 0 0 0 0 0 0 0 0 1 1 0 1 1 1 0 1 0 0 0 0 0 1 1 0 1 1 0 1 0 0 0 0 0 0 0 1 1 1 0 0 "
    "0 1 1 0 1 1 0 1 0 0 1 1 0 0 0 0 0 0 0 1 1 1 1 1 0 0 0 1 1 1 0 1 0 0 1 0 0 0 1 0 1 0 1 0 1 0 1 1 "
    "0 1 0 1 1 0 1 1 0 1 1 1 0 1 1 0 0 0 0 0 0 0 0 0 1 0 0 0 0 0 0 0 0 0 1 1 1 1 1 1 0 0 1 1 1 1 1 1 "
    "0 0 0 0 1 0 1 0 0 1 1 1 1 0 0 0 1 0 1 0 0 0 1 0 1 1 0 1 0 1 1 1 0 0 0 1 0 1 1 1 1 1 0 0 0 1 0 0 "
    "0 0 1 1 0 0 1 1 1 0 1 1 1 0 0 0 0 1 1 1 0 0 1 0 0 1 0 1 1 0 0 0 1 0 1 1 1 1 1 1 0 1 1 0 0 0 0 0 "
    "0 0 1 1 0 0 0 1 0 1 0 1 0 1 1"
)


class TestParseOpensslSecret:
    def test_single_byte(self):
        assert parse_openssl_secret(["secretFromOpenSSL f0"]) == [0, 0, 0, 0, 1, 1, 1, 1]

    def test_two_bytes(self):
        assert parse_openssl_secret(["secretFromOpenSSL 81:82"]) == [
            1, 0, 0, 0, 0, 0, 0, 1, 0, 1, 0, 0, 0, 0, 0, 1,
        ]

    def test_long(self):
        bits = parse_openssl_secret([f"secretFromOpenSSL {LONG_SECRET}"])
        assert bits == [int(c) for c in LONG_SECRET_BITS]

    def test_last_line_wins(self):
        lines = ["secretFromOpenSSL 00", "noise", "secretFromOpenSSL ff"]
        assert parse_openssl_secret(lines) == [1] * 8

    def test_missing_marker(self):
        with pytest.raises(ParseError):
            parse_openssl_secret(["nothing here"])

    def test_wrong_token_count(self):
        with pytest.raises(ParseError):
            parse_openssl_secret(["secretFromOpenSSL aa bb"])

    def test_bad_hex(self):
        with pytest.raises(ParseError):
            parse_openssl_secret(["secretFromOpenSSL zz"])


class TestSwapAlgebra:
    def test_recorded_swaps_give_secret(self):
        swaps = [int(t) for t in LONG_SECRET_SWAPS.split()]
        assert len(swaps) == 255
        reference = clamp_scalar_bits([int(c) for c in LONG_SECRET_BITS])
        assert clamp_scalar_bits(scalar_from_swaps(swaps)) == reference

    def test_swaps_from_scalar_inverts(self):
        bits = clamp_scalar_bits(scalar_to_bits(bytes(range(32))))
        assert scalar_from_swaps(swaps_from_scalar(bits)) == bits

    def test_flipping_top_swap_flips_lower_bits(self):
        bits = clamp_scalar_bits(scalar_to_bits(bytes(range(32))))
        swaps = swaps_from_scalar(bits)
        swaps[254] ^= 1
        other = scalar_from_swaps(swaps)
        assert all(other[i] != bits[i] for i in range(255))

    def test_lengths_checked(self):
        with pytest.raises(ValueError):
            scalar_from_swaps([0] * 10)
        with pytest.raises(ValueError):
            swaps_from_scalar([0] * 10)
        with pytest.raises(ValueError):
            clamp_scalar_bits([0] * 10)

    def test_clamp(self):
        bits = clamp_scalar_bits([1] * 256)
        assert bits[:3] == [0, 0, 0]
        assert bits[254] == 1
        assert bits[255] == 0

    def test_bits_bytes_round_trip(self):
        data = bytes.fromhex(LONG_SECRET.replace(":", ""))
        assert bits_to_scalar(scalar_to_bits(data)) == data

    def test_mismatch_count(self):
        assert mismatch_count([0, 1, 1, 0], [1, 1, 0, 0]) == 2
        assert mismatch_count([0] * 10, [1] * 10, limit=5) == 5


class TestStreams:
    def test_split_discards_warmup(self, ecdh_capture):
        base, second = split_streams(ecdh_capture.events, ecdh_capture.config)
        assert len(second) == 254
        assert len(base) == 255
        assert all(e.has_access_data for e in second)

    def test_swap_bits_at_buffer_offset(self, ecdh_capture):
        layout = ecdh_capture.config.layout
        base, second = split_streams(ecdh_capture.events, ecdh_capture.config)
        assert swap_candidate_offsets(base, second, layout) == {ecdh_capture.offset}

        swaps = recover_swap_bits(ecdh_capture.offset, base, second, layout)
        truth = swaps_from_scalar(scalar_to_bits(ecdh_capture.scalar))
        assert swaps[:254] == truth[:254]
        assert swaps[254] == 0

    def test_iteration_order(self, ecdh_capture):
        layout = ecdh_capture.config.layout
        base, second = split_streams(ecdh_capture.events, ecdh_capture.config)
        bits = [bit for bit, _, _ in iteration_snapshots(base, second, layout)]
        assert bits == list(range(253, -1, -1))

    def test_short_stream(self, ecdh_capture):
        layout = ecdh_capture.config.layout
        base, second = split_streams(ecdh_capture.events, ecdh_capture.config)
        with pytest.raises(MissingDataError):
            swap_candidate_offsets(base, second[:100], layout)


class TestEcdhRecovery:
    def test_recovers_with_reference(self, ecdh_capture):
        reference = scalar_to_bits(ecdh_capture.scalar)
        result = EcdhRecovery(ecdh_capture.config, reference_bits=reference).run(ecdh_capture.events)
        assert result.success
        valid = result.valid_scalars
        assert len(valid) == 1
        assert valid[0].top_swap_guess == 1
        assert bits_to_scalar(valid[0].scalar_bits) == ecdh_capture.scalar
        assert ecdh_capture.offset in result.candidates.sequences

    def test_recovers_with_public_key(self, ecdh_capture):
        recovery = EcdhRecovery(ecdh_capture.config, public_key=ecdh_capture.public_key)
        result = recovery.run(ecdh_capture.events)
        assert result.success
        assert bits_to_scalar(result.valid_scalars[0].scalar_bits) == ecdh_capture.scalar

    def test_public_key_helper(self, ecdh_capture):
        assert x25519_public_key(ecdh_capture.scalar) == ecdh_capture.public_key

    def test_wrong_reference_discards(self, ecdh_capture):
        wrong = scalar_to_bits(bytes(32))
        result = EcdhRecovery(ecdh_capture.config, reference_bits=wrong).run(ecdh_capture.events)
        assert not result.success
        assert ecdh_capture.offset in result.candidates.discarded
        assert all(c.mismatches == 5 for c in result.scalars)

    def test_without_reference_keeps_candidates(self, ecdh_capture):
        recovery = EcdhRecovery(ecdh_capture.config)
        result = recovery.run(ecdh_capture.events)
        assert not recovery.has_reference
        assert not result.success
        assert len(result.scalars) == 2
        assert ecdh_capture.offset in result.candidates.sequences

    def test_specific_offset_absent(self, ecdh_capture):
        result = EcdhRecovery(ecdh_capture.config, specific_offset=0x800).run(ecdh_capture.events)
        assert result.scalars == []
        assert len(result.candidates) == 0

    def test_layout_is_used(self, ecdh_capture):
        shifted = dataclasses.replace(
            ecdh_capture.config,
            layout=dataclasses.replace(ecdh_capture.config.layout, second_index_init=1),
        )
        reference = scalar_to_bits(ecdh_capture.scalar)
        with pytest.raises(MissingDataError):
            EcdhRecovery(shifted, reference_bits=reference).run(ecdh_capture.events)


class TestShortLadder:
    LAYOUT = EcdhLayout(
        base_index_init=0,
        base_delta_a=1,
        base_delta_b=0,
        second_index_init=0,
        second_delta=1,
        iterations=16,
        unknown_high_bits=2,
    )
    SCALAR = (0xA5D8).to_bytes(32, "little")

    def test_unknown_positions(self):
        assert self.LAYOUT.unknown_positions == (15, 14)
        assert EcdhLayout().unknown_positions == (254,)

    def test_swap_vector_is_full_width(self, make_ecdh_events):
        config = EcdhAttackConfig(base_gpa=0x4000, fe64_gpa=0x5000, stack_buf_gpa=0x8000, layout=self.LAYOUT)
        base, second = split_streams(make_ecdh_events(self.SCALAR, layout=self.LAYOUT), config)
        swaps = recover_swap_bits(0x40, base, second, self.LAYOUT)
        truth = swaps_from_scalar(scalar_to_bits(self.SCALAR))
        assert len(swaps) == 255
        assert swaps[:14] == truth[:14]
        assert swaps[14:] == [0] * 241

    def test_brute_forces_every_unknown_bit(self, make_ecdh_events):
        config = EcdhAttackConfig(base_gpa=0x4000, fe64_gpa=0x5000, stack_buf_gpa=0x8000, layout=self.LAYOUT)
        events = make_ecdh_events(self.SCALAR, layout=self.LAYOUT)
        result = EcdhRecovery(config, reference_bits=scalar_to_bits(self.SCALAR)).run(events)

        assert len(result.scalars) == 4
        valid = result.valid_scalars
        assert len(valid) == 1
        assert valid[0].top_swap_guess == 0b11
        expected = bits_to_scalar(clamp_scalar_bits(scalar_to_bits(self.SCALAR)))
        assert bits_to_scalar(valid[0].scalar_bits) == expected

    def test_rejects_oversized_layout(self):
        with pytest.raises(ValueError):
            EcdhLayout(iterations=256)
        with pytest.raises(ValueError):
            EcdhLayout(iterations=4, unknown_high_bits=5)
