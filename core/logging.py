"""Logging setup for the billing service.

Services pass structured context through ``extra={...}``; the console
formatter appends those fields so they survive without a log shipper.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

try:  # pragma: no cover - optional dependency
    from google.cloud import logging as gcp_logging
except ImportError:  # pragma: no cover - GCP logging optional
    gcp_logging = None

_CONFIGURED = False
_CLOUD_HANDLER_ATTACHED = False
_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Attributes every LogRecord carries; anything else came from ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        context = _extra_fields(record)
        if not context:
            return rendered
        pairs = " ".join(f"{key}={value!r}" for key, value in sorted(context.items()))
        return f"{rendered} | {pairs}"


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _RESERVED_ATTRS and not key.startswith("_")}


def _resolve_level(level: Optional[int]) -> int:
    if level is not None:
        return level
    name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _cloud_logging_enabled() -> bool:
    return (os.getenv("ENABLE_GOOGLE_CLOUD_LOGGING") or "").strip().lower() in {"1", "true", "yes", "on"}


def _attach_cloud_handler(level: int) -> None:
    global _CLOUD_HANDLER_ATTACHED
    if _CLOUD_HANDLER_ATTACHED or gcp_logging is None or not _cloud_logging_enabled():
        return
    try:
        gcp_logging.Client().setup_logging(log_level=level)
    except Exception as exc:  # pragma: no cover - credentials missing outside GCP
        logging.getLogger(__name__).warning("Google Cloud Logging unavailable: %s", exc)
        return
    _CLOUD_HANDLER_ATTACHED = True


def setup_logging(level: Optional[int] = None, *, fmt: Optional[str] = None) -> None:
    """Install the console handler once; LOG_LEVEL applies when no level is given."""
    global _CONFIGURED
    resolved = _resolve_level(level)
    if not _CONFIGURED:
        handler = logging.StreamHandler()
        handler.setFormatter(ContextFormatter(fmt or _DEFAULT_FORMAT))
        root = logging.getLogger()
        if not root.handlers:
            root.addHandler(handler)
        root.setLevel(resolved)
        _CONFIGURED = True
    _attach_cloud_handler(resolved)


def get_logger(name: str, *, level: Optional[int] = None) -> logging.Logger:
    setup_logging(level=level)
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


__all__ = ["ContextFormatter", "get_logger", "setup_logging"]
