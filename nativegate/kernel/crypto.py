"""Encryption at rest for the trust store."""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from nativegate.kernel.hashing import sha256_bytes


HKDF_SALT = b"nativegate"
ROOT_KEY_BYTES = 32


@dataclass
class SealedBlob:
    nonce_b64: str
    ciphertext_b64: str
    key_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"nonce_b64": self.nonce_b64, "ciphertext_b64": self.ciphertext_b64, "key_id": self.key_id}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SealedBlob":
        return cls(
            nonce_b64=str(payload["nonce_b64"]),
            ciphertext_b64=str(payload["ciphertext_b64"]),
            key_id=str(payload["key_id"]) if payload.get("key_id") else None,
        )


def load_root_key(path: str | Path) -> bytes:
    """Read the root key, creating a fresh random one (mode 0600) if absent."""
    key_path = Path(path)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    if key_path.exists():
        data = key_path.read_bytes()
        if len(data) == ROOT_KEY_BYTES:
            return data
        raise ValueError(f"root key at {key_path} has unexpected length {len(data)}")
    key = os.urandom(ROOT_KEY_BYTES)
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(key)
    return key


def key_id_for(root_key: bytes) -> str:
    return sha256_bytes(root_key)[:16]


def derive_key(root_key: bytes, info: str, length: int = 32) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=HKDF_SALT,
        info=info.encode("utf-8"),
    )
    return hkdf.derive(root_key)


def seal(key: bytes, plaintext: bytes, aad: Optional[bytes] = None, key_id: Optional[str] = None) -> SealedBlob:
    nonce = os.urandom(12)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad)
    return SealedBlob(
        nonce_b64=base64.b64encode(nonce).decode("ascii"),
        ciphertext_b64=base64.b64encode(ciphertext).decode("ascii"),
        key_id=key_id,
    )


def unseal(key: bytes, blob: SealedBlob, aad: Optional[bytes] = None) -> bytes:
    """Decrypt a blob; raises ``cryptography.exceptions.InvalidTag`` on tampering."""
    nonce = base64.b64decode(blob.nonce_b64, validate=True)
    ciphertext = base64.b64decode(blob.ciphertext_b64, validate=True)
    return AESGCM(key).decrypt(nonce, ciphertext, aad)
