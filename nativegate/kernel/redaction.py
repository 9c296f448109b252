"""Secret scrubbing for event-log and audit lines.

Unit code writes free text through the ``log`` shim and decision details
carry whatever a unit asked for, so every line is scrubbed where it is
written.
"""

from __future__ import annotations

import re
from typing import Any


REDACTED = "[REDACTED]"

_SECRET_RE = re.compile(
    "|".join(
        (
            r"\bsk-[A-Za-z0-9]{20,}\b",
            r"\bgh[pousr]_[A-Za-z0-9]{30,}\b",
            r"\bAKIA[0-9A-Z]{16}\b",
            r"\b[Bb]earer\s+[A-Za-z0-9\-._~+/]+=*",
            r"-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----",
        )
    )
)

# resource_key and code_hash are routine audit fields and must stay readable.
_SENSITIVE_EXACT = frozenset(
    {"authorization", "root_key", "password", "api_key", "access_token", "refresh_token", "client_secret"}
)
_SENSITIVE_SUFFIXES = ("_password", "_secret", "_api_key", "_access_token", "_refresh_token")


def _is_sensitive(key: str) -> bool:
    folded = key.casefold()
    return folded in _SENSITIVE_EXACT or folded.endswith(_SENSITIVE_SUFFIXES)


def redact_text(value: Any) -> str:
    return _SECRET_RE.sub(REDACTED, str(value or ""))


def redact_obj(obj: Any) -> Any:
    if isinstance(obj, str):
        return redact_text(obj)
    if isinstance(obj, dict):
        return {str(k): REDACTED if _is_sensitive(str(k)) else redact_obj(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact_obj(v) for v in obj]
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    return redact_text(repr(obj))
