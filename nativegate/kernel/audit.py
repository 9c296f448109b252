"""Append-only audit trail for trust decisions."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from nativegate.kernel.redaction import redact_obj


def _utc_ts() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_normalize(v) for v in obj]
    return repr(obj)


class AuditTrail:
    """Privileged-action records, one JSON line each.

    Writing is best-effort: an unwritable audit file never changes the
    outcome of the action being audited.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "AuditTrail":
        audit_cfg = config.get("audit", {}) if isinstance(config, dict) else {}
        data_dir = Path(str(config.get("paths", {}).get("data_dir") or "."))
        return cls(audit_cfg.get("path") or data_dir / "audit" / "trust.jsonl")

    @property
    def path(self) -> Path:
        return self._path

    def append(
        self,
        *,
        action: str,
        actor: str,
        outcome: str,
        details: Any | None = None,
    ) -> None:
        payload = {
            "schema_version": 1,
            "ts_utc": _utc_ts(),
            "action": str(action),
            "actor": str(actor),
            "outcome": str(outcome),
            "details": redact_obj(_normalize(details)),
        }
        line = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                return

    def records(self) -> list[dict[str, Any]]:
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        return [json.loads(line) for line in lines if line.strip()]
