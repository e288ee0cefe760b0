"""EdDSA secret extraction and signature forgery on edwards25519.

Group arithmetic comes from ``ecdsa.eddsa`` and verification from
``cryptography``. Scalars are handled as Python ints modulo the group order L;
encodings are 32-byte little endian.

Given the reduced message digest r of one observed signature (R, s) the
signing equation s = r + hram * a (mod L) yields the intermediate secret
a = (s - r) * hram^-1. It is not the private key seed but signs anything.
"""

from __future__ import annotations

import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from ecdsa.eddsa import generator_ed25519

from pagefault_cracker.utils.constants import (
    ED25519_KEY_SIZE,
    ED25519_ORDER,
    ED25519_SIGNATURE_SIZE,
)
from pagefault_cracker.utils.errors import ValidationFailure

L = ED25519_ORDER


def scalar_from_bytes(data: bytes) -> int:
    return int.from_bytes(data, "little")


def scalar_to_bytes(scalar: int) -> bytes:
    return (scalar % L).to_bytes(ED25519_KEY_SIZE, "little")


def sha512_mod_l(*parts: bytes) -> int:
    h = hashlib.sha512()
    for part in parts:
        h.update(part)
    return int.from_bytes(h.digest(), "little") % L


def encode_base_mult(scalar: int) -> bytes:
    """Encoding of scalar * B."""
    return (generator_ed25519 * (scalar % L)).to_bytes()


def parse_signature(signature: bytes) -> tuple[bytes, bytes]:
    """Split a signature into (R, s). Rejects wrong sizes and non-canonical high bits."""
    if len(signature) != ED25519_SIGNATURE_SIZE or signature[63] & 224 != 0:
        raise ValueError("malformed signature")
    return signature[:32], signature[32:]


def message_digest_reduced(seed: bytes, message: bytes) -> int:
    """Nonce scalar r of a standard ed25519 signature made with private seed ``seed``."""
    if len(seed) != ED25519_KEY_SIZE:
        raise ValueError(f"seed must be {ED25519_KEY_SIZE} bytes")
    prefix = hashlib.sha512(seed).digest()[32:]
    return sha512_mod_l(prefix, message)


def compute_hram(encoded_r: bytes, public_key: bytes, message: bytes) -> int:
    return sha512_mod_l(encoded_r, public_key, message)


def recover_intermediate_secret(
    message: bytes,
    reduced: int,
    s: bytes,
    public_key: bytes,
) -> int:
    """Solve the signing equation for the secret scalar."""
    encoded_r = encode_base_mult(reduced)
    hram = compute_hram(encoded_r, public_key, message)
    if hram == 0:
        raise ValidationFailure("hram is zero, not invertible")
    hram_inv = pow(hram, L - 2, L)
    return ((scalar_from_bytes(s) - reduced) * hram_inv) % L


def sign_with_intermediate_secret(message: bytes, secret: int, public_key: bytes) -> bytes:
    """Standard signing equation with the recovered secret.

    The nonce is derived from the public key since the private seed prefix is
    unknown. Verifiers cannot tell the difference.
    """
    r = sha512_mod_l(public_key, message)
    encoded_r = encode_base_mult(r)
    hram = compute_hram(encoded_r, public_key, message)
    s = (hram * secret + r) % L
    return encoded_r + scalar_to_bytes(s)


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Ed25519 verification of ``signature`` over ``message``."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


def public_key_from_secret(secret: int) -> bytes:
    return encode_base_mult(secret)
