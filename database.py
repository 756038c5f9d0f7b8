"""Engine and session factory for the billing tables."""

from typing import Any, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from core.env import env_bool, env_int, env_str
from core.env_utils import load_dotenv_if_available

load_dotenv_if_available()

TEST_DATABASE_URL: Optional[str] = env_str("TEST_DATABASE_URL")
DATABASE_URL: Optional[str] = env_str("DATABASE_URL") or TEST_DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")

ALLOW_NON_POSTGRES = env_bool("DATABASE_ALLOW_NON_POSTGRES", False)
IS_POSTGRES = DATABASE_URL.lower().startswith("postgresql")
if not IS_POSTGRES and not ALLOW_NON_POSTGRES:
    raise RuntimeError(f"DATABASE_URL must be a PostgreSQL DSN. Current value: {DATABASE_URL}")

# Server-side cap so a hung quota query cannot outlive the request budget.
STATEMENT_TIMEOUT_MS = env_int("DATABASE_STATEMENT_TIMEOUT_MS", 5000, minimum=0)


def build_engine(url: str) -> Engine:
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    elif url.lower().startswith("postgresql") and STATEMENT_TIMEOUT_MS > 0:
        connect_args["options"] = f"-c statement_timeout={STATEMENT_TIMEOUT_MS}"
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for the billing models."""
