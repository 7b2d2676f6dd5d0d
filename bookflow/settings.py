"""Parsing helpers for environment-driven settings."""
from __future__ import annotations

import math
from typing import Mapping, Optional, Tuple

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def env_bool(env: Mapping[str, str], key: str, *, default: bool) -> bool:
    value = env.get(key)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(env: Mapping[str, str], key: str, *, default: int) -> int:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {value!r}") from exc


def env_float(env: Mapping[str, str], key: str, *, default: float) -> float:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {value!r}") from exc
    if math.isnan(parsed):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return parsed


def env_list(env: Mapping[str, str], key: str) -> Tuple[str, ...]:
    """Comma separated values with blanks dropped."""

    raw = env.get(key) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def env_str(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


__all__ = ["env_bool", "env_float", "env_int", "env_list", "env_str"]
