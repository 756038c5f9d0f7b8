"""Typed readers for billing settings held in environment variables.

Invalid values never abort startup: they are logged and the default is used.
"""

from __future__ import annotations

import os
from datetime import tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.logging import get_logger

logger = get_logger(__name__)

_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
_FALSY = frozenset({"0", "false", "no", "n", "off"})


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = env_str(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %d.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("Ignoring %s=%d below minimum %d; using %d.", key, value, minimum, default)
        return default
    return value


def env_bool(key: str, default: bool) -> bool:
    raw = env_str(key)
    if raw is None:
        return default
    normalized = raw.lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    logger.warning("Ignoring non-boolean %s=%r; using %s.", key, raw, default)
    return default


def env_timezone(key: str, default: str) -> tzinfo:
    """Resolve an IANA timezone name, falling back to ``default`` when unknown."""
    name = env_str(key, default) or default
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s=%r; using %s.", key, name, default)
        return ZoneInfo(default)


__all__ = ["env_bool", "env_int", "env_str", "env_timezone"]
