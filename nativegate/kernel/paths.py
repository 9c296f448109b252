"""Data-directory and packaged-resource helpers."""

from __future__ import annotations

import importlib.resources as resources
import json
import os
from pathlib import Path
from typing import Any

from platformdirs import PlatformDirs


_DATA_ENV = "NATIVEGATE_DATA_DIR"
_APP_NAME = "NativeGate"
_RESOURCE_PKG = "nativegate.data"


def default_data_dir() -> Path:
    """Fixed application-data location (overridable via NATIVEGATE_DATA_DIR)."""
    override = os.getenv(_DATA_ENV)
    if override:
        return Path(override).expanduser().absolute()
    return Path(PlatformDirs(_APP_NAME, appauthor=False).user_data_dir)


def resolve_under(base: str | Path, value: str | Path | None) -> Path | None:
    if value is None or str(value).strip() == "":
        return None
    candidate = Path(str(value)).expanduser()
    if candidate.is_absolute():
        return candidate
    return Path(base) / candidate


def resource_text(name: str) -> str:
    target = resources.files(_RESOURCE_PKG).joinpath(name)
    if not target.is_file():
        raise FileNotFoundError(f"Missing packaged resource: {name}")
    return target.read_text(encoding="utf-8")


def resource_json(name: str) -> dict[str, Any]:
    return json.loads(resource_text(name))
