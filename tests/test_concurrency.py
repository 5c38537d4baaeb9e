"""
Concurrency safety tests.

Demonstrates:
1. The trip compare-and-swap refuses a writer whose expected status is stale.
2. A driver is released only when no active trip references them.
3. An invoice status change only lands on the status it was checked against.
4. Distributed lock prevents simultaneous acquire.
5. The auditor repairs drivers left ``on_trip`` by a failed reconciliation
   and parks approvals whose capture never finished.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from dispatch.domain.enums import (
    DriverStatus,
    InvoiceStatus,
    PaymentFailureReason,
    Role,
    TripStatus,
)
from dispatch.domain.errors import ConflictingTransition, NotFound
from dispatch.infrastructure.locks import DistributedLock, LockNotAcquired
from dispatch.infrastructure.models import InvoiceModel, ProfileModel, TripModel
from dispatch.infrastructure.repositories import InvoiceRepository
from dispatch.infrastructure.stores import SqlDriverStore, SqlTripStore
from dispatch.workers import auditor
from tests.conftest import NOW


def rider(profile_id="rider-1"):
    return ProfileModel(id=profile_id, role=Role.CLIENT, first_name="Pat", last_name="Kim")


def driver(profile_id="D1", status=DriverStatus.ON_TRIP):
    return ProfileModel(
        id=profile_id,
        role=Role.DRIVER,
        first_name="Chris",
        last_name="Walker",
        status=status,
    )


def trip(trip_id, status=TripStatus.PENDING, **kwargs):
    values = {"user_id": "rider-1", "price": Decimal("30.00")}
    values.update(kwargs)
    return TripModel(id=trip_id, status=status, **values)


class TestTripCompareAndSwap:
    @pytest.mark.asyncio
    async def test_second_writer_conflicts(self, session_factory, insert):
        await insert(rider(), trip("T1"))
        store = SqlTripStore(session_factory)

        first = await store.conditional_update(
            "T1", TripStatus.PENDING, {"status": TripStatus.APPROVED_PENDING_PAYMENT}
        )
        with pytest.raises(ConflictingTransition):
            await store.conditional_update(
                "T1", TripStatus.PENDING, {"status": TripStatus.CANCELLED}
            )

        assert first.status == TripStatus.APPROVED_PENDING_PAYMENT
        assert (await store.get_trip("T1")).status == TripStatus.APPROVED_PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_missing_trip_is_not_a_conflict(self, session_factory):
        store = SqlTripStore(session_factory)
        with pytest.raises(NotFound):
            await store.conditional_update(
                "nope", TripStatus.PENDING, {"status": TripStatus.CANCELLED}
            )

    @pytest.mark.asyncio
    async def test_completion_writes_completed_at(self, session_factory, insert):
        await insert(rider(), trip("T1", status=TripStatus.IN_PROGRESS))
        store = SqlTripStore(session_factory)

        updated = await store.conditional_update(
            "T1",
            TripStatus.IN_PROGRESS,
            {"status": TripStatus.COMPLETED, "completed_at": NOW},
        )

        assert updated.status == TripStatus.COMPLETED
        assert updated.completed_at is not None


class TestDriverRelease:
    @pytest.mark.asyncio
    async def test_released_when_idle(self, session_factory, insert):
        await insert(rider(), driver(), trip("T1", status=TripStatus.COMPLETED,
                                             driver_id="D1", completed_at=NOW))
        store = SqlDriverStore(session_factory)

        assert await store.conditional_set_available("D1") is True
        assert (await store.get_driver("D1")).status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_kept_on_trip_while_other_trip_active(self, session_factory, insert):
        await insert(
            rider(),
            driver(),
            trip("T3", status=TripStatus.COMPLETED, driver_id="D1", completed_at=NOW),
            trip("T4", status=TripStatus.IN_PROGRESS, driver_id="D1"),
        )
        store = SqlDriverStore(session_factory)

        assert await store.conditional_set_available("D1") is False
        assert (await store.get_driver("D1")).status == DriverStatus.ON_TRIP

    @pytest.mark.asyncio
    async def test_inactive_driver_is_left_alone(self, session_factory, insert):
        await insert(driver(status=DriverStatus.INACTIVE))
        store = SqlDriverStore(session_factory)

        assert await store.conditional_set_available("D1") is False
        assert (await store.get_driver("D1")).status == DriverStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_mark_on_trip_refuses_inactive(self, session_factory, insert):
        await insert(driver(status=DriverStatus.INACTIVE), driver("D2", DriverStatus.AVAILABLE))
        store = SqlDriverStore(session_factory)

        assert await store.mark_on_trip("D1") is False
        assert await store.mark_on_trip("D2") is True

    @pytest.mark.asyncio
    async def test_stale_drivers(self, session_factory, insert):
        await insert(
            rider(),
            driver("D1"),
            driver("D2"),
            trip("T1", status=TripStatus.UPCOMING, driver_id="D2"),
        )
        store = SqlDriverStore(session_factory)

        assert await store.find_stale_on_trip() == ["D1"]

    @pytest.mark.asyncio
    async def test_deactivate_refused_while_on_trip(self, session_factory, insert):
        await insert(rider(), driver(), trip("T1", status=TripStatus.UPCOMING, driver_id="D1"))
        store = SqlDriverStore(session_factory)

        assert await store.set_status("D1", DriverStatus.INACTIVE) is False


class TestInvoiceCompareAndSwap:
    @pytest.mark.asyncio
    async def test_second_writer_cannot_leave_terminal_state(
        self, session_factory, insert
    ):
        await insert(
            rider(),
            InvoiceModel(
                id="inv-1",
                invoice_number="DISP-20260301-0001",
                user_id="rider-1",
                amount=Decimal("30.00"),
                status=InvoiceStatus.SENT,
                issue_date=NOW,
            ),
        )

        async with session_factory() as session:
            repo = InvoiceRepository(session)
            paid = await repo.conditional_set_status(
                "inv-1", InvoiceStatus.SENT, InvoiceStatus.PAID, payment_date=NOW
            )
            cancelled = await repo.conditional_set_status(
                "inv-1", InvoiceStatus.SENT, InvoiceStatus.CANCELLED
            )
            await session.commit()

        assert paid is True
        assert cancelled is False
        async with session_factory() as session:
            invoice = await session.get(InvoiceModel, "inv-1")
        assert invoice.status == InvoiceStatus.PAID


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "driver_auditor", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "dispatch:lock:driver_auditor", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "driver_auditor", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "driver_auditor", ttl_seconds=10)
        await lock.acquire()
        assert await lock.release() is True

        mock_redis.eval.assert_called_once()

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "driver_auditor", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="Could not acquire lock"):
            async with lock:
                pass


class TestAuditor:
    @pytest.mark.asyncio
    async def test_releases_stale_drivers_and_marks_overdue(
        self, session_factory, insert
    ):
        await insert(
            rider(),
            driver("D1"),
            driver("D2"),
            trip("T1", status=TripStatus.IN_PROGRESS, driver_id="D2"),
        )
        await insert(
            InvoiceModel(
                id="inv-1",
                invoice_number="DISP-20260201-ABC123",
                user_id="rider-1",
                amount=Decimal("30.00"),
                status=InvoiceStatus.SENT,
                issue_date=NOW - timedelta(days=40),
                due_date=NOW - timedelta(days=10),
            )
        )

        report = await auditor.audit(
            SqlDriverStore(session_factory), session_factory, now=NOW
        )

        assert report.released_drivers == ["D1"]
        assert report.overdue_invoices == 1
        drivers = SqlDriverStore(session_factory)
        assert (await drivers.get_driver("D1")).status == DriverStatus.AVAILABLE
        assert (await drivers.get_driver("D2")).status == DriverStatus.ON_TRIP

    @pytest.mark.asyncio
    async def test_cycle_skipped_when_lock_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        with patch.object(auditor, "get_redis", AsyncMock(return_value=mock_redis)):
            report = await auditor.run_audit_cycle()

        assert report.skipped is True

    @pytest.mark.asyncio
    async def test_stale_reservation_is_parked_for_retry(self, session_factory, insert):
        await insert(
            rider(),
            trip("T1", status=TripStatus.APPROVED_PENDING_PAYMENT,
                 payment_attempts=1, updated_at=NOW - timedelta(hours=1)),
            trip("T2", status=TripStatus.APPROVED_PENDING_PAYMENT,
                 payment_attempts=1, updated_at=NOW - timedelta(seconds=5)),
        )

        report = await auditor.audit(
            SqlDriverStore(session_factory), session_factory, now=NOW
        )

        assert report.parked_trips == ["T1"]
        trips = SqlTripStore(session_factory)
        parked = await trips.get_trip("T1")
        assert parked.status == TripStatus.PAYMENT_FAILED
        assert parked.payment_failure_reason == PaymentFailureReason.GATEWAY_ERROR
        assert parked.payment_retry_eligible is True
        assert (await trips.get_trip("T2")).status == TripStatus.APPROVED_PENDING_PAYMENT
