from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid yaml in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def merge_defaults(defaults: dict[str, Any], overrides: dict[str, Any], where: str = "config") -> dict[str, Any]:
    """Return a deep copy of ``defaults`` updated with ``overrides``.

    Nested mappings are merged key by key; any other value replaces the default.
    A section that is a mapping in the defaults must stay one.
    """
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(merged.get(key), dict):
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ConfigError(f"{where}.{key} must be a mapping")
            merged[key] = merge_defaults(merged[key], value, f"{where}.{key}")
        else:
            merged[key] = value
    return merged


def load_config(path: str | None, defaults: dict[str, Any]) -> dict[str, Any]:
    if not path:
        return copy.deepcopy(defaults)
    return merge_defaults(defaults, load_yaml(path))
