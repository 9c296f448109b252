"""Hash helpers for code units."""

from __future__ import annotations

import hashlib


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(str(text).encode("utf-8"))


def code_hash(source_text: str) -> str:
    """Return the identity hash of unit source.

    Bytes are hashed as-is (no newline normalization) so that any edit,
    including a line-ending change, invalidates earlier trust decisions.
    """

    return sha256_text(source_text)


def decision_key(code_hash_hex: str, resource_key: str) -> str:
    return f"{code_hash_hex}::{resource_key}"
