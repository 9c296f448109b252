"""Trust broker: the single place where capability access is decided.

Order of checks for ``authorize``:

1. ``trust.always_allow`` keys.
2. Identity cache: the same code hash already holds a live, approved
   reference to this exact target.
3. Durable store: a recorded decision for ``<code_hash>::<resource_key>``.
4. Prompt: one prompt per decision key, shared by concurrent callers.

Anything that goes wrong while asking denies (fail closed) and is not
remembered.
"""

from __future__ import annotations

import threading
import types
from collections import OrderedDict
from contextlib import contextmanager
from concurrent.futures import Future
from typing import Any, Hashable, Iterable, Iterator

from nativegate.kernel.audit import AuditTrail
from nativegate.kernel.errors import PersistenceFailure, PromptUnavailable
from nativegate.kernel.hashing import decision_key
from nativegate.kernel.logging import EventLog
from nativegate.plugin_system.categories import DangerCategory
from nativegate.plugin_system.consent import PromptUser
from nativegate.plugin_system.trust_store import TrustStore
from nativegate.plugin_system.unit import CodeUnit


def identity_of(target: Any) -> Hashable:
    """Stable identity for a host object.

    Bound methods are re-created on every attribute access, so they are
    identified by receiver and function rather than by the method object.
    Module-level builtins carry the module as ``__self__`` and are treated
    as plain functions.
    """
    receiver = getattr(target, "__self__", None)
    if receiver is not None and not isinstance(receiver, types.ModuleType):
        func = getattr(target, "__func__", None)
        if func is not None:
            return ("bound", id(receiver), id(func))
        if isinstance(target, types.BuiltinMethodType):
            return ("bound", id(receiver), target.__name__)
    return ("obj", id(target))


class TrustBroker:
    def __init__(
        self,
        store: TrustStore,
        prompt_user: PromptUser,
        *,
        event_log: EventLog | None = None,
        audit: AuditTrail | None = None,
        sticky_denials: bool = False,
        identity_cache_size: int = 4096,
        always_allow: Iterable[str] = (),
    ) -> None:
        self._store = store
        self._prompt_user = prompt_user
        self._log = event_log
        self._audit = audit
        self._sticky = bool(sticky_denials)
        self._cache_size = max(1, int(identity_cache_size))
        self._always = frozenset(str(k) for k in always_allow)
        self._lock = threading.Lock()
        # (code_hash, identity) -> target; the strong ref keeps ids from being reused.
        self._identity: OrderedDict[tuple[str, Hashable], Any] = OrderedDict()
        self._inflight: dict[str, Future] = {}
        # thread ident -> nesting depth while waiting on a user answer
        self._prompting: dict[int, int] = {}

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        store: TrustStore,
        prompt_user: PromptUser,
        *,
        event_log: EventLog | None = None,
        audit: AuditTrail | None = None,
    ) -> "TrustBroker":
        trust_cfg = config.get("trust", {})
        return cls(
            store,
            prompt_user,
            event_log=event_log,
            audit=audit,
            sticky_denials=bool(trust_cfg.get("sticky_denials", False)),
            identity_cache_size=int(trust_cfg.get("identity_cache_size", 4096)),
            always_allow=trust_cfg.get("always_allow") or (),
        )

    @property
    def store(self) -> TrustStore:
        return self._store

    def authorize(
        self,
        unit: CodeUnit,
        resource_key: str,
        category: DangerCategory,
        target: Any = None,
    ) -> bool:
        if resource_key in self._always:
            return True
        ident = (unit.code_hash, identity_of(target)) if target is not None else None
        if ident is not None and self._cache_hit(ident):
            return True

        dkey = decision_key(unit.code_hash, resource_key)
        recorded = self._recorded(dkey)
        if recorded is True:
            self._remember(ident, target)
            return True
        if recorded is False and self._sticky:
            self._record(unit, resource_key, category, outcome="denied_recorded")
            return False

        leader = False
        allowed = False
        future: Future | None = None
        try:
            with self._lock:
                future = self._inflight.get(dkey)
                if future is None:
                    future = Future()
                    leader = True
                    self._inflight[dkey] = future
            if leader:
                # a previous leader may have answered between our store read and the lock
                allowed = self._recorded(dkey) is True or self._ask(unit, resource_key, category, dkey)
            else:
                with self._waiting():
                    allowed = bool(future.result())
        finally:
            if leader:
                self._settle(dkey, future, allowed)
        if allowed:
            self._remember(ident, target)
        return allowed

    def _settle(self, dkey: str, future: Future, allowed: bool) -> None:
        """Publish the leader's answer; followers must never be left waiting."""
        pending: BaseException | None = None
        while True:
            try:
                with self._lock:
                    if self._inflight.get(dkey) is future:
                        del self._inflight[dkey]
                if not future.done():
                    future.set_result(allowed)
                break
            except BaseException as exc:
                # an asynchronous interrupt landed mid-publish; finish, then re-raise it
                pending = exc
        if pending is not None:
            raise pending

    def _ask(self, unit: CodeUnit, resource_key: str, category: DangerCategory, dkey: str) -> bool:
        if self._log is not None:
            self._log.event(
                "trust.prompt",
                unit_id=unit.unit_id,
                resource_key=resource_key,
                category=category.name,
                code_hash=unit.code_hash,
            )
        try:
            with self._waiting():
                answer = self._prompt_user(unit.unit_id, resource_key, category.description)
        except PromptUnavailable as exc:
            self._record(unit, resource_key, category, outcome="fail_closed", error=str(exc))
            return False
        except Exception as exc:
            self._record(
                unit,
                resource_key,
                category,
                outcome="fail_closed",
                error=f"{type(exc).__name__}: {exc}",
            )
            return False
        if not isinstance(answer, bool):
            self._record(unit, resource_key, category, outcome="dismissed")
            return False
        try:
            self._store.set(dkey, answer)
        except PersistenceFailure as exc:
            self._event_failure("trust.persist_failed", exc)
        self._record(unit, resource_key, category, outcome="allowed" if answer else "denied")
        return answer

    def _recorded(self, dkey: str) -> bool | None:
        try:
            return self._store.get(dkey)
        except PersistenceFailure as exc:
            self._event_failure("trust.store_unavailable", exc)
            return None

    def _event_failure(self, event: str, exc: Exception) -> None:
        if self._log is not None:
            self._log.event(event, level="error", error=str(exc))

    @contextmanager
    def _waiting(self) -> Iterator[None]:
        ident = threading.get_ident()
        with self._lock:
            self._prompting[ident] = self._prompting.get(ident, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                depth = self._prompting.pop(ident, 1) - 1
                if depth > 0:
                    self._prompting[ident] = depth

    def is_prompting(self, thread_id: int) -> bool:
        """True while ``thread_id`` is blocked on a consent answer."""
        with self._lock:
            return thread_id in self._prompting

    def _record(self, unit: CodeUnit, resource_key: str, category: DangerCategory, *, outcome: str, **extra: Any) -> None:
        details = {
            "resource_key": resource_key,
            "category": category.name,
            "code_hash": unit.code_hash,
            **extra,
        }
        if self._audit is not None:
            self._audit.append(action="trust.decision", actor=unit.unit_id, outcome=outcome, details=details)
        if self._log is not None:
            level = "info" if outcome == "allowed" else "warning"
            self._log.event("trust.decision", unit_id=unit.unit_id, level=level, outcome=outcome, **details)

    def _cache_hit(self, ident: tuple[str, Hashable]) -> bool:
        with self._lock:
            if ident not in self._identity:
                return False
            self._identity.move_to_end(ident)
            return True

    def _remember(self, ident: tuple[str, Hashable] | None, target: Any) -> None:
        if ident is None:
            return
        with self._lock:
            self._identity[ident] = target
            self._identity.move_to_end(ident)
            while len(self._identity) > self._cache_size:
                self._identity.popitem(last=False)

    def forget(self, code_hash: str) -> None:
        """Drop cached approvals for ``code_hash`` (revocation, unregister)."""
        with self._lock:
            for ident in [k for k in self._identity if k[0] == code_hash]:
                del self._identity[ident]
