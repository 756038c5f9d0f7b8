"""Helpers for loading the billing .env file and validating required secrets."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv  # type: ignore

from core.logging import get_logger

logger = get_logger(__name__)


def load_dotenv_if_available(path: Path | None = None) -> bool:
    """Load variables from ``BILLING_ENV_FILE`` (or ``.env``) without overriding the process env."""

    env_path = path or Path(os.getenv("BILLING_ENV_FILE") or ".env")
    if not env_path.exists():
        return False
    loaded = load_dotenv(dotenv_path=env_path, override=False)
    logger.debug("Loaded environment variables from %s", env_path)
    return bool(loaded)


def missing_env_vars(required: Sequence[str]) -> list[str]:
    return sorted(name for name in required if not (os.getenv(name) or "").strip())


def require_env_vars(required: Sequence[str], *, context: str | None = None) -> None:
    """Raise ``RuntimeError`` naming every required variable that is unset or blank."""

    missing = missing_env_vars(required)
    if not missing:
        return

    prefix = f"[{context}] " if context else ""
    raise RuntimeError(
        f"{prefix}Missing required environment variables: {', '.join(missing)}. "
        "Populate your .env or configure runtime secrets."
    )


__all__ = ["load_dotenv_if_available", "missing_env_vars", "require_env_vars"]
