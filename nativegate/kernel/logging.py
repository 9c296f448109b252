"""Structured JSONL event log.

- One JSON object per line, stable key ordering.
- Archive-only rotation: full logs move to logs/archive/, never deleted.
- Secrets are redacted at write time.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from nativegate.kernel.redaction import redact_obj


LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _level_value(level: str) -> int:
    return LEVELS.get(str(level or "info").lower(), LEVELS["info"])


@dataclass(frozen=True)
class EventLogConfig:
    path: Path
    rotate_max_bytes: int
    min_level: str = "info"


class EventLog:
    def __init__(self, cfg: EventLogConfig) -> None:
        self._cfg = cfg
        self._lock = threading.Lock()
        self._min_level = _level_value(cfg.min_level)
        self._cfg.path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config: dict[str, Any], *, name: str | None = None) -> "EventLog":
        log_cfg = config.get("logging", {}) if isinstance(config, dict) else {}
        data_dir = Path(str(config.get("paths", {}).get("data_dir") or "."))
        logs_dir = Path(str(log_cfg.get("dir") or data_dir / "logs"))
        path = logs_dir / f"{name or log_cfg.get('name') or 'nativegate'}.jsonl"
        rotate_max_bytes = max(1024, int(log_cfg.get("rotate_max_bytes", 5_000_000) or 5_000_000))
        return cls(
            EventLogConfig(
                path=path,
                rotate_max_bytes=rotate_max_bytes,
                min_level=str(log_cfg.get("level") or "info"),
            )
        )

    @property
    def path(self) -> Path:
        return self._cfg.path

    def _rotate_if_needed(self) -> None:
        try:
            if self._cfg.path.stat().st_size < self._cfg.rotate_max_bytes:
                return
        except OSError:
            return
        archive_dir = self._cfg.path.parent / "archive"
        ts = _utc_now_iso().replace(":", "").replace("-", "").replace(".", "")
        archived = archive_dir / f"{self._cfg.path.stem}.{ts}{self._cfg.path.suffix}"
        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
            if not archived.exists():
                self._cfg.path.replace(archived)
        except OSError:
            return

    def event(
        self,
        event: str,
        *,
        unit_id: str | None = None,
        level: str = "info",
        **fields: Any,
    ) -> None:
        if _level_value(level) < self._min_level:
            return
        payload: dict[str, Any] = {
            "ts_utc": _utc_now_iso(),
            "level": str(level or "info"),
            "event": str(event or "event"),
            "unit_id": str(unit_id or ""),
        }
        for key, value in fields.items():
            if key not in payload:
                payload[str(key)] = value
        line = json.dumps(redact_obj(payload), sort_keys=True, default=repr)
        with self._lock:
            self._rotate_if_needed()
            try:
                with self._cfg.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                return

    def read_events(self) -> list[dict[str, Any]]:
        """Return the events currently in the live log file (tests, diagnostics)."""
        try:
            lines = self._cfg.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        return [json.loads(line) for line in lines if line.strip()]
