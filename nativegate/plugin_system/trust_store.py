"""Encrypted, durable store of trust decisions.

Decisions map ``<code_hash>::<resource_key>`` to a bool. The whole table is
sealed with AES-GCM under a key derived from the root key and written
atomically. Mutations return immediately; a single background thread
persists the latest snapshot.
"""

from __future__ import annotations

import binascii
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag

from nativegate.kernel.atomic_write import atomic_write_text
from nativegate.kernel.crypto import SealedBlob, derive_key, key_id_for, load_root_key, seal, unseal
from nativegate.kernel.errors import PersistenceFailure
from nativegate.kernel.logging import EventLog


SCHEMA_VERSION = 1
_AAD = b"nativegate.trust_store.v1"
_KEY_INFO = "trust_store"


def _corrupt_suffix() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class TrustStore:
    def __init__(
        self,
        path: str | Path,
        root_key_path: str | Path,
        *,
        event_log: EventLog | None = None,
        async_flush: bool = True,
    ) -> None:
        self._path = Path(path)
        self._root_key_path = Path(root_key_path)
        self._log = event_log
        self._async = bool(async_flush)
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._decisions: dict[str, bool] = {}
        self._loaded = False
        self._dirty = False
        self._closing = False
        self._worker: threading.Thread | None = None
        self._key: bytes | None = None
        self._key_id: str | None = None

    @classmethod
    def from_config(cls, config: dict[str, Any], *, event_log: EventLog | None = None) -> "TrustStore":
        trust_cfg = config.get("trust", {})
        return cls(
            trust_cfg["store_path"],
            trust_cfg["root_key_path"],
            event_log=event_log,
            async_flush=bool(trust_cfg.get("async_flush", True)),
        )

    @property
    def path(self) -> Path:
        return self._path

    def _event(self, event: str, *, level: str = "info", **fields: Any) -> None:
        if self._log is not None:
            self._log.event(event, level=level, store=str(self._path), **fields)

    def _cipher_key(self) -> bytes:
        if self._key is None:
            try:
                root_key = load_root_key(self._root_key_path)
            except (OSError, ValueError) as exc:
                raise PersistenceFailure(f"trust store root key unavailable: {exc}") from exc
            self._key = derive_key(root_key, _KEY_INFO)
            self._key_id = key_id_for(root_key)
        return self._key

    def init(self) -> None:
        """Load decisions from disk once; later calls are no-ops."""
        with self._lock:
            if self._loaded:
                return
            key = self._cipher_key()
            try:
                raw = self._path.read_bytes()
            except FileNotFoundError:
                self._loaded = True
                return
            except OSError as exc:
                raise PersistenceFailure(f"trust store unreadable: {exc}") from exc
            try:
                envelope = json.loads(raw.decode("utf-8"))
                if int(envelope.get("schema_version", 0)) != SCHEMA_VERSION:
                    raise ValueError(f"unsupported schema_version {envelope.get('schema_version')!r}")
                plaintext = unseal(key, SealedBlob.from_dict(envelope), _AAD)
                payload = json.loads(plaintext.decode("utf-8"))
                decisions = {str(k): bool(v) for k, v in payload["decisions"]}
            except (InvalidTag, ValueError, KeyError, TypeError, AttributeError, binascii.Error) as exc:
                self._quarantine(exc)
                decisions = {}
            self._decisions = decisions
            self._loaded = True
            self._event("trust_store.loaded", decisions=len(decisions))

    def _quarantine(self, exc: Exception) -> None:
        target = self._path.with_name(f"{self._path.name}.corrupt-{_corrupt_suffix()}")
        try:
            self._path.replace(target)
        except OSError as move_exc:
            self._event("trust_store.quarantine_failed", level="error", error=str(move_exc))
            return
        self._event(
            "trust_store.corrupt",
            level="warning",
            error=f"{type(exc).__name__}: {exc}",
            archived_to=str(target),
        )

    def get(self, key: str) -> bool | None:
        self.init()
        with self._lock:
            return self._decisions.get(key)

    def set(self, key: str, allowed: bool) -> None:
        """Record a decision.

        Write failures are logged, not raised. A store that cannot be loaded
        at all (unreadable root key or file) raises PersistenceFailure.
        """
        self.init()
        with self._lock:
            self._decisions.pop(key, None)
            self._decisions[key] = bool(allowed)
        self._schedule()

    def items(self) -> list[tuple[str, bool]]:
        self.init()
        with self._lock:
            return list(self._decisions.items())

    def revoke(self, code_hash: str) -> int:
        """Forget every decision recorded for ``code_hash``."""
        self.init()
        prefix = f"{code_hash}::"
        with self._lock:
            doomed = [key for key in self._decisions if key.startswith(prefix)]
            for key in doomed:
                del self._decisions[key]
        if doomed:
            self._schedule()
        return len(doomed)

    def clear(self) -> None:
        self.init()
        with self._lock:
            self._decisions.clear()
        self._schedule()

    def _schedule(self) -> None:
        if not self._async:
            try:
                self.flush()
            except PersistenceFailure as exc:
                self._event("trust_store.flush_failed", level="error", error=str(exc))
            return
        with self._cond:
            self._dirty = True
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._flush_loop, name="nativegate-trust-flush", daemon=True)
                self._worker.start()
            self._cond.notify_all()

    def _flush_loop(self) -> None:
        while True:
            with self._cond:
                while not self._dirty and not self._closing:
                    self._cond.wait()
                if not self._dirty and self._closing:
                    return
                self._dirty = False
            try:
                self.flush()
            except PersistenceFailure as exc:
                self._event("trust_store.flush_failed", level="error", error=str(exc))

    def flush(self) -> None:
        """Write the current table to disk now. Raises PersistenceFailure."""
        with self._write_lock:
            with self._lock:
                snapshot = [[key, value] for key, value in self._decisions.items()]
                key = self._cipher_key()
                key_id = self._key_id
            plaintext = json.dumps(
                {"schema_version": SCHEMA_VERSION, "decisions": snapshot},
                separators=(",", ":"),
            ).encode("utf-8")
            blob = seal(key, plaintext, _AAD, key_id)
            envelope = {"schema_version": SCHEMA_VERSION, **blob.to_dict()}
            try:
                atomic_write_text(self._path, json.dumps(envelope, sort_keys=True), mode=0o600)
            except OSError as exc:
                raise PersistenceFailure(f"trust store write failed: {exc}") from exc

    def close(self) -> None:
        with self._cond:
            self._closing = True
            worker = self._worker
            self._cond.notify_all()
        if worker is not None:
            worker.join(timeout=5.0)
        with self._lock:
            pending = self._dirty
            self._dirty = False
        if pending:
            self.flush()
