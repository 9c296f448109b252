"""Danger category table.

The table is data, not code: built-in entries ship as
``nativegate/data/danger_categories.json`` and config may add categories
(``categories.definitions``) or resource keys (``categories.extra``).
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from nativegate.kernel.errors import ConfigError
from nativegate.kernel.paths import resource_json


EXECUTION = "execution"
FILESYSTEM = "filesystem"
INTERNALS = "internals"
ENVIRONMENT = "environment"
NETWORK = "network"


@dataclass(frozen=True)
class DangerCategory:
    name: str
    label: str
    description: str
    authorize_on_load: bool = False


class CategoryTable:
    """Immutable mapping of resource key -> DangerCategory."""

    def __init__(self, categories: Mapping[str, DangerCategory], resources: Mapping[str, str]) -> None:
        for key, name in resources.items():
            if name not in categories:
                raise ConfigError(f"resource {key!r} names unknown category {name!r}")
        self._categories = MappingProxyType(dict(categories))
        self._resources = MappingProxyType(dict(resources))

    @classmethod
    def builtin(cls) -> "CategoryTable":
        return cls.from_payload(resource_json("danger_categories.json"))

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        *,
        definitions: dict[str, Any] | None = None,
        extra: dict[str, list[str]] | None = None,
    ) -> "CategoryTable":
        categories: dict[str, DangerCategory] = {}
        merged_defs = dict(payload.get("categories", {}))
        merged_defs.update(definitions or {})
        for name, raw in merged_defs.items():
            if not isinstance(raw, dict):
                raise ConfigError(f"category {name!r} must be an object")
            categories[str(name)] = DangerCategory(
                name=str(name),
                label=str(raw.get("label") or name),
                description=str(raw.get("description") or ""),
                authorize_on_load=bool(raw.get("authorize_on_load", False)),
            )
        resources: dict[str, str] = {}
        for source in (payload.get("resources", {}), extra or {}):
            for name, keys in source.items():
                for key in keys:
                    resources[str(key)] = str(name)
        return cls(categories, resources)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "CategoryTable":
        cat_cfg = config.get("categories", {}) if isinstance(config, dict) else {}
        return cls.from_payload(
            resource_json("danger_categories.json"),
            definitions=cat_cfg.get("definitions") or {},
            extra=cat_cfg.get("extra") or {},
        )

    def category(self, name: str) -> DangerCategory:
        try:
            return self._categories[name]
        except KeyError:
            raise ConfigError(f"unknown danger category {name!r}")

    def lookup(self, resource_key: str) -> DangerCategory | None:
        name = self._resources.get(resource_key)
        if name is None:
            return None
        return self._categories[name]

    @property
    def categories(self) -> Mapping[str, DangerCategory]:
        return self._categories

    @property
    def resources(self) -> Mapping[str, str]:
        return self._resources
