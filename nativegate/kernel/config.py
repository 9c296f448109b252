"""Configuration loading, merging, and validation."""

from __future__ import annotations

import json
import os
from copy import deepcopy
from pathlib import Path
from typing import Any

from nativegate.kernel.errors import ConfigError
from nativegate.kernel.paths import default_data_dir, resolve_under, resource_json


CONFIG_ENV = "NATIVEGATE_CONFIG"
DATA_DIR_ENV = "NATIVEGATE_DATA_DIR"
TIMEOUT_ENV = "NATIVEGATE_SANDBOX_TIMEOUT_S"

# (section, key) pairs holding paths that are relative to paths.data_dir.
_DATA_RELATIVE = (
    ("trust", "store_path"),
    ("trust", "root_key_path"),
    ("audit", "path"),
    ("logging", "dir"),
    ("sandbox", "resolve_root"),
)


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        raise ConfigError(f"Missing config file: {path}")
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"{path}: top-level config must be an object")
    return payload


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


class SchemaLiteValidator:
    """Minimal schema validator supporting object/array/scalar types."""

    _TYPES: dict[str, type | tuple[type, ...]] = {
        "object": dict,
        "array": list,
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "null": type(None),
    }

    def validate(self, schema: dict[str, Any], data: Any, path: str = "$") -> None:
        if "enum" in schema and data not in schema["enum"]:
            raise ConfigError(f"{path}: value {data!r} not in enum {schema['enum']}")
        expected = schema.get("type")
        if expected:
            self._validate_type(expected, data, path)
        if isinstance(data, dict):
            self._validate_object(schema, data, path)
        elif isinstance(data, list):
            items = schema.get("items")
            if items is not None:
                for idx, item in enumerate(data):
                    self.validate(items, item, f"{path}[{idx}]")
        elif isinstance(data, (int, float)) and not isinstance(data, bool):
            minimum = schema.get("minimum")
            maximum = schema.get("maximum")
            if minimum is not None and data < minimum:
                raise ConfigError(f"{path}: value {data} below minimum {minimum}")
            if maximum is not None and data > maximum:
                raise ConfigError(f"{path}: value {data} above maximum {maximum}")

    def _validate_type(self, expected: str | list[str], data: Any, path: str) -> None:
        names = expected if isinstance(expected, list) else [expected]
        for name in names:
            if name not in self._TYPES:
                raise ConfigError(f"{path}: unsupported schema type {name}")
            if isinstance(data, bool) and name in ("integer", "number"):
                continue
            if isinstance(data, self._TYPES[name]):
                return
        raise ConfigError(f"{path}: expected {expected}, got {type(data).__name__}")

    def _validate_object(self, schema: dict[str, Any], data: dict[str, Any], path: str) -> None:
        for key in schema.get("required", []):
            if key not in data:
                raise ConfigError(f"{path}: missing required field {key}")
        properties = schema.get("properties", {})
        additional = schema.get("additionalProperties", True)
        for key, value in data.items():
            if key in properties:
                self.validate(properties[key], value, f"{path}.{key}")
            elif additional is False:
                raise ConfigError(f"{path}: unexpected field {key}")
            elif isinstance(additional, dict):
                self.validate(additional, value, f"{path}.{key}")


validator = SchemaLiteValidator()


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    data_dir = str(os.environ.get(DATA_DIR_ENV) or "").strip()
    if data_dir:
        config.setdefault("paths", {})["data_dir"] = data_dir
    raw_timeout = str(os.environ.get(TIMEOUT_ENV) or "").strip()
    if raw_timeout:
        try:
            timeout_s = float(raw_timeout)
        except ValueError:
            raise ConfigError(f"{TIMEOUT_ENV} must be a number, got {raw_timeout!r}")
        config.setdefault("sandbox", {})["timeout_s"] = timeout_s
    return config


def apply_path_defaults(config: dict[str, Any]) -> dict[str, Any]:
    paths_cfg = config.setdefault("paths", {})
    data_dir = paths_cfg.get("data_dir")
    if not data_dir:
        data_dir = str(default_data_dir())
    data_dir = str(Path(str(data_dir)).expanduser().absolute())
    paths_cfg["data_dir"] = data_dir
    for section, key in _DATA_RELATIVE:
        section_cfg = config.get(section)
        if not isinstance(section_cfg, dict):
            continue
        value = section_cfg.get(key)
        if key == "dir" and not value:
            value = "logs"
        resolved = resolve_under(data_dir, value)
        if resolved is not None:
            section_cfg[key] = str(resolved)
    return config


def validate_config(data: dict[str, Any]) -> None:
    validator.validate(resource_json("config_schema.json"), data)


def load_config(
    user_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the effective config.

    Order: packaged defaults, user file (explicit path or NATIVEGATE_CONFIG),
    explicit overrides, then environment overrides.
    """
    config = resource_json("default_config.json")
    if user_path is None:
        env_path = str(os.environ.get(CONFIG_ENV) or "").strip()
        user_path = env_path or None
    if user_path is not None:
        config = _deep_merge(config, _load_json(Path(user_path)))
    if overrides:
        config = _deep_merge(config, overrides)
    config = _apply_env_overrides(config)
    config = apply_path_defaults(config)
    validate_config(config)
    return config
