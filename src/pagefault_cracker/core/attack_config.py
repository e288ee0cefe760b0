"""JSON persistence of attack configurations between capture and recovery."""

from __future__ import annotations

import binascii
import json
from pathlib import Path

from pagefault_cracker.utils.errors import ParseError
from pagefault_cracker.utils.types import EcdhAttackConfig, EdDSAAttackConfig


def save_config(config: EdDSAAttackConfig | EcdhAttackConfig, path: str | Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
        f.write("\n")


def _load(cls, path: str | Path):
    with open(path, "r", encoding="utf-8") as f:
        try:
            return cls.from_dict(json.load(f))
        except (KeyError, TypeError, ValueError, AttributeError, binascii.Error) as exc:
            raise ParseError(f"{path}: malformed attack config ({exc!r})") from exc


def load_eddsa_config(path: str | Path) -> EdDSAAttackConfig:
    return _load(EdDSAAttackConfig, path)


def load_ecdh_config(path: str | Path) -> EcdhAttackConfig:
    return _load(EcdhAttackConfig, path)
