"""Code unit identity."""

from __future__ import annotations

from dataclasses import dataclass

from nativegate.kernel.hashing import code_hash


@dataclass(frozen=True)
class CodeUnit:
    unit_id: str
    source_text: str
    code_hash: str

    @classmethod
    def from_source(cls, unit_id: str, source_text: str) -> "CodeUnit":
        return cls(unit_id=str(unit_id), source_text=source_text, code_hash=code_hash(source_text))
