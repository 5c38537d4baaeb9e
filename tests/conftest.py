"""
Shared test fixtures.

Coordinator tests run against the in-memory fakes in ``tests/fakes.py``.
Store, notifier and API tests use a throwaway SQLite file (via aiosqlite) with
the production models, so they run without Docker / PostgreSQL / Redis.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dispatch.infrastructure import models  # noqa: F401  (registers tables)
from dispatch.infrastructure.database import Base
from dispatch.services.coordinator import TripLifecycleCoordinator
from tests.fakes import (
    FakePaymentGateway,
    InMemoryDriverStore,
    InMemoryTripStore,
    RecordingInvoiceStore,
    RecordingNotifier,
)

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


# ── In-memory collaborators ───────────────────────────────────────────


@pytest.fixture
def trip_store() -> InMemoryTripStore:
    return InMemoryTripStore()


@pytest.fixture
def driver_store(trip_store) -> InMemoryDriverStore:
    return InMemoryDriverStore(trip_store)


@pytest.fixture
def payments() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def invoices() -> RecordingInvoiceStore:
    return RecordingInvoiceStore()


@pytest.fixture
def coordinator(trip_store, driver_store, payments, notifier, invoices):
    return TripLifecycleCoordinator(
        trip_store,
        driver_store,
        payments,
        notifier,
        invoices,
        max_payment_attempts=3,
        max_payment_reminders=3,
        clock=lambda: NOW,
    )


# ── SQLite-backed persistence ─────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Create tables in a fresh database file, yield a session factory."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}", echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def insert(session_factory):
    """Persist ORM rows in their own committed transaction."""

    async def _insert(*rows):
        async with session_factory() as session:
            session.add_all(rows)
            await session.commit()
        return rows

    return _insert
