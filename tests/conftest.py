"""
Shared fixtures.

The application reads its settings at import time, so the environment is
pointed at a throwaway SQLite file (inline effects, mock collaborators)
before anything from ``orderflow`` is imported.
"""
import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="orderflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["ENV_MODE"] = "development"
os.environ["EFFECTS_BACKEND"] = "inline"
os.environ["DEBUG"] = "false"

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orderflow.database import Base
from orderflow.models import Actor, ActorRole
from orderflow.services.claim_manager import ClaimManager
from orderflow.services.effects import RecordingEffectPublisher
from orderflow.services.order_store import OrderStore

ITEMS = [
    {"menu_item_id": "pizza-margherita", "name": "Pizza Margherita", "quantity": 2, "modifiers": []},
    {"menu_item_id": "tiramisu", "name": "Tiramisu", "quantity": 1, "modifiers": ["no cocoa"]},
]


def serialize_sqlite_writes(engine) -> None:
    """
    Take SQLite's write lock at BEGIN so concurrent transactions queue on
    the busy timeout instead of failing with "database is locked".
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# ─── Storage ───────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        connect_args={"timeout": 30},
    )
    serialize_sqlite_writes(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def publisher():
    return RecordingEffectPublisher()


@pytest.fixture
def manager(store, publisher):
    return ClaimManager(store, publisher)


@pytest_asyncio.fixture
async def order(store):
    """A fresh PENDING order at version 0."""
    return await store.create(
        owner_id="customer-1",
        items=ITEMS,
        customer_email="guest@example.com",
        customer_phone="555-123-4567",
        table_number="12",
        payment_intent_id="pi_test_123",
    )


# ─── Actors ────────────────────────────────────────────────────────────────────
@pytest.fixture
def chef_a():
    return Actor("chef-a", ActorRole.KITCHEN)


@pytest.fixture
def chef_b():
    return Actor("chef-b", ActorRole.KITCHEN)


@pytest.fixture
def waiter_c():
    return Actor("waiter-c", ActorRole.SERVICE)


@pytest.fixture
def waiter_d():
    return Actor("waiter-d", ActorRole.SERVICE)


@pytest.fixture
def owner():
    return Actor("customer-1", ActorRole.CUSTOMER)


@pytest.fixture
def admin():
    return Actor("admin-1", ActorRole.ADMIN)
