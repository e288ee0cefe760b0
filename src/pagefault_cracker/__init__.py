"""Page-fault side-channel key recovery for EdDSA and X25519."""

__version__ = "0.1.0"
