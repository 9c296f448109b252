from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from nativegate.kernel.config import _deep_merge, load_config


class RecordingConsent:
    """Consent collaborator that records every prompt.

    ``answer`` is returned as-is, or raised when it is an exception.
    """

    def __init__(self, answer: Any = True) -> None:
        self.answer = answer
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def __call__(self, unit_id: str, resource_key: str, category_description: str) -> Any:
        with self._lock:
            self.calls.append((unit_id, resource_key, category_description))
        if isinstance(self.answer, BaseException):
            raise self.answer
        return self.answer

    @property
    def keys(self) -> list[str]:
        return [key for _unit, key, _desc in self.calls]


def make_config(data_dir: str | Path, **sections: Any) -> dict[str, Any]:
    overrides: dict[str, Any] = {
        "paths": {"data_dir": str(data_dir)},
        "trust": {"async_flush": False},
        "sandbox": {"timeout_s": 5.0},
    }
    return load_config(overrides=_deep_merge(overrides, sections))
