"""API routers mounted under ``/api/v1``."""

from __future__ import annotations

from . import billing, health

__all__ = ["billing", "health"]
