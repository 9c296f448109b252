"""Invocation of a loaded unit's exports with error attribution."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Iterable

from nativegate.kernel.errors import ExportNotFound
from nativegate.kernel.logging import EventLog
from nativegate.plugin_system.sandbox import ExportsTable


def attribution_note(unit_id: str, export_name: str) -> str:
    return f"[nativegate] ({unit_id}).{export_name}"


class ExportInvoker:
    def __init__(self, unit_id: str, exports: ExportsTable, *, event_log: EventLog | None = None) -> None:
        self.unit_id = unit_id
        self._exports = exports
        self._log = event_log

    def names(self) -> list[str]:
        return sorted(self._exports)

    def _lookup(self, export_name: str) -> Any:
        try:
            return self._exports[export_name]
        except KeyError:
            raise ExportNotFound(self.unit_id, export_name) from None

    def _attribute(self, exc: BaseException, export_name: str) -> None:
        note = attribution_note(self.unit_id, export_name)
        if note not in getattr(exc, "__notes__", ()):
            exc.add_note(note)
        try:
            exc.attribution = (self.unit_id, export_name)
        except (AttributeError, TypeError):
            pass
        if self._log is not None:
            self._log.event(
                "invoke.failed",
                unit_id=self.unit_id,
                level="warning",
                export=export_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def invoke(self, export_name: str, args: Iterable[Any] = (), kwargs: dict[str, Any] | None = None) -> Any:
        """Call an export; coroutine results are run to completion."""
        func = self._lookup(export_name)
        try:
            result = func(*tuple(args), **(kwargs or {}))
            if inspect.isawaitable(result):
                result = asyncio.run(_await(result))
            return result
        except Exception as exc:
            self._attribute(exc, export_name)
            raise

    async def ainvoke(self, export_name: str, args: Iterable[Any] = (), kwargs: dict[str, Any] | None = None) -> Any:
        func = self._lookup(export_name)
        try:
            result = func(*tuple(args), **(kwargs or {}))
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            self._attribute(exc, export_name)
            raise


async def _await(awaitable: Any) -> Any:
    return await awaitable
