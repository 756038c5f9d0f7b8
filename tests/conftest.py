import os
from typing import Generator

import pytest
from sqlalchemy.exc import CompileError

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("BILLING_TIMEZONE", "Asia/Tokyo")

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

import database as database_module
from database import Base
from services.billing_store import InMemoryBillingStore
from services.ttl_store import InMemoryTTLStore
from tests.billing_helpers import TEST_PLANS, FakePaymentProvider, FrozenClock
from web.deps import BillingServices, build_billing_services


def _resolve_test_database_url() -> str:
    return os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or "sqlite+pysqlite:///:memory:"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    import models  # noqa: F401

    database_url = _resolve_test_database_url()

    engine_kwargs = {}
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool
    test_engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)

    try:
        Base.metadata.create_all(bind=test_engine)
    except CompileError as exc:
        pytest.skip(f"Active test database cannot render schema: {exc}")

    SessionFactory = scoped_session(sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False))
    original_session_local = database_module.SessionLocal
    original_engine = database_module.engine
    database_module.SessionLocal = SessionFactory
    database_module.engine = test_engine
    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        database_module.engine = original_engine
        Base.metadata.drop_all(bind=test_engine)
        SessionFactory.remove()
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Generator[sessionmaker, None, None]:
    """Fresh tables per test; the SQL stores commit, so savepoint rollback is not enough."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        with engine.begin() as connection:
            for table in reversed(Base.metadata.sorted_tables):
                connection.execute(table.delete())


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def memory_store() -> InMemoryBillingStore:
    store = InMemoryBillingStore()
    for plan in TEST_PLANS:
        store.plans.insert_if_absent(plan)
    return store


@pytest.fixture()
def fake_provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture()
def billing_services(
    memory_store: InMemoryBillingStore,
    fake_provider: FakePaymentProvider,
    clock: FrozenClock,
) -> BillingServices:
    return build_billing_services(
        memory_store,
        provider=fake_provider,
        ttl_store=InMemoryTTLStore(),
        clock=clock,
    )
