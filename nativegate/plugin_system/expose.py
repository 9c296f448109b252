"""Host helpers exposed to units as the ``host`` global."""

from __future__ import annotations

import webbrowser
from typing import Any, Callable
from urllib.parse import urlparse

from nativegate.kernel.logging import EventLog


_ALLOWED_SCHEMES = {"http", "https"}


def frozen_namespace(name: str, **members: Any) -> Any:
    """Instance of a fresh slot-less class holding ``members`` as class attributes.

    Callables are stored as static functions, so nothing read from the
    namespace carries a receiver; the instance itself has no state.
    """
    body: dict[str, Any] = {
        key: staticmethod(value) if callable(value) else value for key, value in members.items()
    }
    body["__slots__"] = ()
    body["__repr__"] = lambda self: f"<{name}>"
    return type(name, (), body)()


class HostApi:
    __slots__ = ("_unit_id", "_log", "_opener")

    def __init__(
        self,
        unit_id: str,
        *,
        event_log: EventLog | None = None,
        opener: Callable[[str], bool] | None = None,
    ) -> None:
        self._unit_id = unit_id
        self._log = event_log
        self._opener = opener or webbrowser.open

    def open_external(self, url: str) -> bool:
        """Open an http(s) URL in the user's browser; other schemes are refused."""
        parsed = urlparse(str(url))
        if parsed.scheme.lower() not in _ALLOWED_SCHEMES or not parsed.netloc:
            if self._log is not None:
                self._log.event("host.open_external.refused", unit_id=self._unit_id, level="warning", url=str(url))
            raise ValueError(f"only http(s) URLs may be opened, got {url!r}")
        if self._log is not None:
            self._log.event("host.open_external", unit_id=self._unit_id, url=str(url))
        return bool(self._opener(str(url)))

    def exposed(self) -> Any:
        """The ``host`` global: plain functions, no reachable HostApi state."""

        def open_external(url: str) -> bool:
            return self.open_external(url)

        return frozen_namespace("host", open_external=open_external)
