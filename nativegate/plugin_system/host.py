"""Registration and invocation boundary for code units.

``NativeHost`` owns the process-wide services (category table, classifier,
trust store, broker, event log, audit trail) and one execution context per
registered unit. Units are reached through channel handles
(``nativegate.<unit_id>``). ``dispatch`` is the dict-in/dict-out surface
a transport (IPC, RPC, CLI) sits on.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable

from nativegate.kernel.audit import AuditTrail
from nativegate.kernel.config import load_config
from nativegate.kernel.errors import ChannelNotFound, PersistenceFailure
from nativegate.kernel.logging import EventLog
from nativegate.plugin_system.broker import TrustBroker
from nativegate.plugin_system.categories import CategoryTable
from nativegate.plugin_system.classifier import CapabilityClassifier
from nativegate.plugin_system.consent import PromptUser, headless_consent
from nativegate.plugin_system.expose import HostApi
from nativegate.plugin_system.invoker import ExportInvoker
from nativegate.plugin_system.loader import InterceptingLoader
from nativegate.plugin_system.sandbox import SandboxExecutionContext
from nativegate.plugin_system.trust_store import TrustStore
from nativegate.plugin_system.unit import CodeUnit


@dataclass
class Registration:
    unit: CodeUnit
    channel: str
    invoker: ExportInvoker
    loader: InterceptingLoader


def structured_error(exc: BaseException) -> dict[str, Any]:
    attribution = getattr(exc, "attribution", None)
    return {
        "type": type(exc).__name__,
        "message": str(exc),
        "attribution": list(attribution) if attribution else None,
    }


class NativeHost:
    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        prompt_user: PromptUser | None = None,
        event_log: EventLog | None = None,
        audit: AuditTrail | None = None,
        store: TrustStore | None = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self.event_log = event_log or EventLog.from_config(self.config)
        self.audit = audit or AuditTrail.from_config(self.config)
        self.table = CategoryTable.from_config(self.config)
        self.classifier = CapabilityClassifier.from_config(self.config, self.table)
        self.store = store or TrustStore.from_config(self.config, event_log=self.event_log)
        self.broker = TrustBroker.from_config(
            self.config,
            self.store,
            prompt_user or headless_consent,
            event_log=self.event_log,
            audit=self.audit,
        )
        sandbox_cfg = self.config.get("sandbox", {})
        self._timeout_s = float(sandbox_cfg.get("timeout_s", 5.0))
        self._resolve_root = sandbox_cfg.get("resolve_root")
        self._env_allowlist = tuple(sandbox_cfg.get("env_allowlist") or ())
        self._channel_prefix = str(sandbox_cfg.get("channel_prefix") or "nativegate.")
        self._lock = threading.RLock()
        self._units: dict[str, Registration] = {}
        self._channels: dict[str, str] = {}

    def __enter__(self) -> "NativeHost":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def start(self) -> None:
        self.store.init()
        self.event_log.event("host.started", units=len(self._units))

    def close(self) -> None:
        with self._lock:
            unit_ids = list(self._units)
        for unit_id in unit_ids:
            self.unregister(unit_id)
        try:
            self.store.close()
        except PersistenceFailure as exc:
            self.event_log.event("host.close_flush_failed", level="error", error=str(exc))
        self.event_log.event("host.closed")

    def channel_for(self, unit_id: str) -> str:
        return f"{self._channel_prefix}{unit_id}"

    def _context(self, unit: CodeUnit, loader: InterceptingLoader) -> SandboxExecutionContext:
        return SandboxExecutionContext(
            unit,
            loader,
            timeout_s=self._timeout_s,
            event_log=self.event_log,
            env_allowlist=self._env_allowlist,
            host_api=HostApi(unit.unit_id, event_log=self.event_log),
            resources_path=self._resolve_root,
            paused=self.broker.is_prompting,
        )

    def register(self, unit_id: str, source_text: str) -> str:
        """Load ``source_text`` as ``unit_id`` and return its channel handle.

        Any earlier registration of the same id is torn down first. On
        failure the error propagates and no channel is produced.
        """
        unit_id = str(unit_id or "").strip()
        if not unit_id:
            raise ValueError("unit_id must be a non-empty string")
        if not isinstance(source_text, str):
            raise TypeError("source_text must be str")
        self.unregister(unit_id)
        unit = CodeUnit.from_source(unit_id, source_text)
        loader = InterceptingLoader(
            unit,
            self.classifier,
            self.broker,
            resolve_root=self._resolve_root,
            event_log=self.event_log,
        )
        try:
            exports = self._context(unit, loader).run()
        except Exception as exc:
            self.audit.append(
                action="unit.register",
                actor=unit_id,
                outcome="failed",
                details={"code_hash": unit.code_hash, "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise
        channel = self.channel_for(unit_id)
        registration = Registration(
            unit=unit,
            channel=channel,
            invoker=ExportInvoker(unit_id, exports, event_log=self.event_log),
            loader=loader,
        )
        with self._lock:
            self._units[unit_id] = registration
            self._channels[channel] = unit_id
        self.audit.append(
            action="unit.register",
            actor=unit_id,
            outcome="ok",
            details={"code_hash": unit.code_hash, "exports": sorted(exports), "channel": channel},
        )
        self.event_log.event("host.registered", unit_id=unit_id, channel=channel, code_hash=unit.code_hash)
        return channel

    def unregister(self, unit_id: str) -> bool:
        with self._lock:
            registration = self._units.pop(unit_id, None)
            if registration is None:
                return False
            self._channels.pop(registration.channel, None)
            still_used = any(r.unit.code_hash == registration.unit.code_hash for r in self._units.values())
        if not still_used:
            self.broker.forget(registration.unit.code_hash)
        self.event_log.event("host.unregistered", unit_id=unit_id, channel=registration.channel)
        return True

    def channels(self) -> list[str]:
        with self._lock:
            return sorted(self._channels)

    def registration(self, channel: str) -> Registration:
        with self._lock:
            unit_id = self._channels.get(channel)
            if unit_id is None:
                raise ChannelNotFound(channel)
            return self._units[unit_id]

    def exports(self, channel: str) -> list[str]:
        return self.registration(channel).invoker.names()

    def invoke(
        self,
        channel: str,
        export_name: str,
        args: Iterable[Any] = (),
        kwargs: dict[str, Any] | None = None,
    ) -> Any:
        return self.registration(channel).invoker.invoke(export_name, args, kwargs)

    async def ainvoke(
        self,
        channel: str,
        export_name: str,
        args: Iterable[Any] = (),
        kwargs: dict[str, Any] | None = None,
    ) -> Any:
        return await self.registration(channel).invoker.ainvoke(export_name, args, kwargs)

    def revoke(self, code_hash: str) -> int:
        """Forget stored and cached decisions for ``code_hash``."""
        removed = self.store.revoke(code_hash)
        self.broker.forget(code_hash)
        self.audit.append(action="trust.revoke", actor="host", outcome="ok", details={"code_hash": code_hash, "removed": removed})
        return removed

    def dispatch(self, message: dict[str, Any]) -> dict[str, Any]:
        """Handle one transport message; never raises for unit or lookup errors."""
        if not isinstance(message, dict):
            return {"ok": False, "error": structured_error(TypeError("message must be an object"))}
        method = message.get("method")
        try:
            if method == "register":
                channel = self.register(_field(message, "unit_id"), _field(message, "source"))
                return {"ok": True, "channel": channel, "exports": self.exports(channel)}
            if method == "invoke":
                result = self.invoke(
                    _field(message, "channel"),
                    _field(message, "export"),
                    message.get("args") or (),
                    message.get("kwargs") or None,
                )
                return {"ok": True, "result": result}
            if method == "unregister":
                return {"ok": True, "removed": self.unregister(_field(message, "unit_id"))}
            if method == "channels":
                return {"ok": True, "channels": self.channels()}
            raise ValueError(f"unknown method {method!r}")
        except Exception as exc:
            return {"ok": False, "error": structured_error(exc)}


def _field(message: dict[str, Any], name: str) -> Any:
    if name not in message:
        raise ValueError(f"message is missing {name!r}")
    return message[name]
