"""Hierarchical, dotted-key configuration store with defaults."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

_MISSING = object()
_TRUE_STRINGS = frozenset({"1", "t", "true"})


class ConfigurationError(Exception):
    """Raised when a configuration is invalid and cannot be used."""


def _normalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key).lower(): _normalize(item) for key, item in value.items()}
    return value


def _split(key: str) -> list[str]:
    return [part for part in key.lower().split(".") if part]


def _find(tree: dict, parts: list[str]) -> Any:
    node: Any = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _assign(tree: dict, parts: list[str], value: Any) -> None:
    if not parts:
        raise ValueError("configuration key must not be empty")
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = _normalize(value)


def _merge(base: dict, overlay: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Config:
    """Configuration values addressed by case-insensitive dotted keys.

    Explicitly set values take precedence over defaults.
    """

    def __init__(self, data: Mapping | None = None) -> None:
        self._data: dict = _normalize(data) if data else {}
        self._defaults: dict = {}

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value at ``key``, falling back to defaults, then ``default``."""
        parts = _split(key)
        value = _find(self._data, parts)
        fallback = _find(self._defaults, parts)
        if value is _MISSING and fallback is _MISSING:
            return default
        if isinstance(value, dict) and isinstance(fallback, dict):
            return _merge(fallback, value)
        chosen = fallback if value is _MISSING else value
        return copy.deepcopy(chosen) if isinstance(chosen, dict) else chosen

    def get_str(self, key: str) -> str:
        return _to_str(self.get(key))

    def get_int(self, key: str) -> int:
        value = self.get(key)
        if value is None:
            return 0
        if isinstance(value, (bool, int)):
            return int(value)
        if isinstance(value, float):
            return int(value)
        try:
            return int(str(value).strip(), 0)
        except ValueError:
            return 0

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        return str(value).strip().lower() in _TRUE_STRINGS

    def get_map(self, key: str) -> dict[str, str]:
        """Return the mapping at ``key`` with every value as a string."""
        value = self.get(key)
        if not isinstance(value, dict):
            return {}
        return {name: _to_str(item) for name, item in value.items()}

    def children(self, key: str) -> list[str]:
        """Return the names of the entries directly below ``key``."""
        value = self.get(key)
        if not isinstance(value, dict):
            return []
        return list(value)

    def set(self, key: str, value: Any) -> None:
        _assign(self._data, _split(key), value)

    def set_default(self, key: str, value: Any) -> None:
        _assign(self._defaults, _split(key), value)

    def is_set(self, key: str) -> bool:
        parts = _split(key)
        return (
            _find(self._data, parts) is not _MISSING
            or _find(self._defaults, parts) is not _MISSING
        )