"""Capability classification for resource keys."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from nativegate.plugin_system.categories import FILESYSTEM, INTERNALS, CategoryTable, DangerCategory


_PATH_RE = re.compile(r"^([a-zA-Z]:|[\\/])")


@dataclass(frozen=True)
class ResourceRequest:
    resource_key: str
    category: DangerCategory
    structural: bool = False


class CapabilityClassifier:
    """Map a resource key to a DangerCategory, or None when unrestricted.

    Unknown keys are allowed by default; only what the table (or a path
    shape) marks dangerous is gated. Private top-level modules
    (``_pickle``, ``_imp`` ...) are interpreter internals unless the table
    says otherwise.
    """

    def __init__(self, table: CategoryTable, *, runtime_prefixes: Iterable[str] = ("python:",)) -> None:
        self._table = table
        self._prefixes = tuple(str(p) for p in runtime_prefixes if p)

    @classmethod
    def from_config(cls, config: dict[str, Any], table: CategoryTable | None = None) -> "CapabilityClassifier":
        sandbox_cfg = config.get("sandbox", {}) if isinstance(config, dict) else {}
        return cls(
            table or CategoryTable.from_config(config),
            runtime_prefixes=sandbox_cfg.get("runtime_prefixes") or ("python:",),
        )

    @property
    def table(self) -> CategoryTable:
        return self._table

    def normalize(self, resource_key: str) -> str:
        key = str(resource_key or "").strip()
        for prefix in self._prefixes:
            if key.startswith(prefix):
                return key[len(prefix):]
        return key

    def request(self, resource_key: str) -> ResourceRequest | None:
        key = self.normalize(resource_key)
        if not key:
            return None
        category = self._table.lookup(key)
        if category is not None:
            return ResourceRequest(key, category)
        if key.startswith(".") or key.startswith("file://") or _PATH_RE.match(key):
            return ResourceRequest(key, self._table.category(FILESYSTEM), structural=True)
        parts = key.split(".")
        for cut in range(len(parts) - 1, 0, -1):
            category = self._table.lookup(".".join(parts[:cut]))
            if category is not None:
                return ResourceRequest(key, category)
        if key.startswith("_") and not key.startswith("__"):
            return ResourceRequest(key, self._table.category(INTERNALS))
        return None

    def classify(self, resource_key: str) -> DangerCategory | None:
        req = self.request(resource_key)
        return req.category if req is not None else None
