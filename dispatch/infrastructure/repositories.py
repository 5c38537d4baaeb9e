"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Mutations that race with concurrent requests
are written as single conditional ``UPDATE`` statements and report whether a
row matched.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    FacilityModel,
    InvoiceModel,
    NotificationModel,
    ProfileModel,
    TripModel,
)
from dispatch.domain.enums import (
    DRIVER_ACTIVE_STATUSES,
    STAFF_ROLES,
    DriverStatus,
    InvoiceStatus,
    Role,
    TripStatus,
)


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, trip: TripModel) -> TripModel:
        self.session.add(trip)
        await self.session.flush()
        return trip

    async def get_by_id(self, trip_id: str) -> Optional[TripModel]:
        return await self.session.get(TripModel, trip_id)

    async def refresh_by_id(self, trip_id: str) -> Optional[TripModel]:
        """Re-read a row, discarding any state cached in the session."""
        return await self.session.get(TripModel, trip_id, populate_existing=True)

    async def list_trips(
        self,
        *,
        status: Optional[TripStatus] = None,
        kind: Optional[str] = None,
        driver_id: Optional[str] = None,
        facility_id: Optional[str] = None,
        limit: int = 200,
    ) -> list[TripModel]:
        query = select(TripModel).order_by(TripModel.pickup_time.desc()).limit(limit)
        if status is not None:
            query = query.where(TripModel.status == status)
        if kind == "individual":
            query = query.where(
                TripModel.user_id.is_not(None), TripModel.facility_id.is_(None)
            )
        elif kind == "facility":
            query = query.where(TripModel.facility_id.is_not(None))
        if driver_id is not None:
            query = query.where(TripModel.driver_id == driver_id)
        if facility_id is not None:
            query = query.where(TripModel.facility_id == facility_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def conditional_update(
        self, trip_id: str, expected_status: TripStatus, values: dict[str, Any]
    ) -> bool:
        """``UPDATE trips ... WHERE id = :id AND status = :expected``.

        Returns False when no row matched, i.e. the trip moved on (or
        vanished) since it was read.
        """
        result = await self.session.execute(
            update(TripModel)
            .where(TripModel.id == trip_id, TripModel.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_active_for_driver(self, driver_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(TripModel)
            .where(
                TripModel.driver_id == driver_id,
                TripModel.status.in_(DRIVER_ACTIVE_STATUSES),
            )
        )
        return result.scalar() or 0

    async def completed_for_facility(
        self, facility_id: str, start: date, end: date
    ) -> list[TripModel]:
        """Completed trips picked up in ``[start, end)`` (UTC days)."""
        start_at = datetime.combine(start, time.min, tzinfo=timezone.utc)
        end_at = datetime.combine(end, time.min, tzinfo=timezone.utc)
        result = await self.session.execute(
            select(TripModel)
            .where(
                TripModel.facility_id == facility_id,
                TripModel.status == TripStatus.COMPLETED,
                TripModel.pickup_time >= start_at,
                TripModel.pickup_time < end_at,
            )
            .order_by(TripModel.pickup_time)
        )
        return list(result.scalars().all())

    async def stale_reservations(self, cutoff: datetime) -> list[TripModel]:
        """Trips stuck in ``approved_pending_payment`` since before *cutoff*."""
        result = await self.session.execute(
            select(TripModel).where(
                TripModel.status == TripStatus.APPROVED_PENDING_PAYMENT,
                TripModel.updated_at < cutoff,
            )
        )
        return list(result.scalars().all())

    async def purge(self, trip_id: str) -> bool:
        """Hard-delete a trip together with the invoices that reference it."""
        await self.session.execute(
            delete(InvoiceModel).where(InvoiceModel.trip_id == trip_id)
        )
        result = await self.session.execute(
            delete(TripModel).where(TripModel.id == trip_id)
        )
        return result.rowcount == 1


def _driver_has_active_trip(driver_id: str):
    return (
        select(TripModel.id)
        .where(
            TripModel.driver_id == driver_id,
            TripModel.status.in_(DRIVER_ACTIVE_STATUSES),
        )
        .exists()
    )


class ProfileRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, profile_id: str) -> Optional[ProfileModel]:
        return await self.session.get(ProfileModel, profile_id)

    async def get_driver(self, driver_id: str) -> Optional[ProfileModel]:
        result = await self.session.execute(
            select(ProfileModel).where(
                ProfileModel.id == driver_id, ProfileModel.role == Role.DRIVER
            )
        )
        return result.scalar_one_or_none()

    async def list_drivers(
        self, status: Optional[DriverStatus] = None
    ) -> list[ProfileModel]:
        query = (
            select(ProfileModel)
            .where(ProfileModel.role == Role.DRIVER)
            .order_by(ProfileModel.last_name, ProfileModel.first_name)
        )
        if status is not None:
            query = query.where(ProfileModel.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def release_driver_if_idle(
        self, driver_id: str, expected_status: DriverStatus = DriverStatus.ON_TRIP
    ) -> bool:
        """Flip a driver to ``available`` only if it holds no active trip.

        The ``NOT EXISTS`` subquery and the status guard run in one statement, so
        a concurrent assignment that already committed keeps the driver
        ``on_trip``.
        """
        result = await self.session.execute(
            update(ProfileModel)
            .where(
                ProfileModel.id == driver_id,
                ProfileModel.role == Role.DRIVER,
                ProfileModel.status == expected_status,
                ~_driver_has_active_trip(driver_id),
            )
            .values(status=DriverStatus.AVAILABLE, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_on_trip(self, driver_id: str) -> bool:
        result = await self.session.execute(
            update(ProfileModel)
            .where(
                ProfileModel.id == driver_id,
                ProfileModel.role == Role.DRIVER,
                ProfileModel.status.in_([DriverStatus.AVAILABLE, DriverStatus.ON_TRIP]),
            )
            .values(status=DriverStatus.ON_TRIP, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def deactivate_if_idle(self, driver_id: str) -> bool:
        result = await self.session.execute(
            update(ProfileModel)
            .where(
                ProfileModel.id == driver_id,
                ProfileModel.role == Role.DRIVER,
                ~_driver_has_active_trip(driver_id),
            )
            .values(status=DriverStatus.INACTIVE, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reactivate(self, driver_id: str) -> bool:
        result = await self.session.execute(
            update(ProfileModel)
            .where(
                ProfileModel.id == driver_id,
                ProfileModel.role == Role.DRIVER,
                ProfileModel.status == DriverStatus.INACTIVE,
            )
            .values(status=DriverStatus.AVAILABLE, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def stale_on_trip_driver_ids(self) -> list[str]:
        """Drivers marked ``on_trip`` that no active trip references."""
        active_driver_ids = select(TripModel.driver_id).where(
            TripModel.driver_id.is_not(None),
            TripModel.status.in_(DRIVER_ACTIVE_STATUSES),
        )
        result = await self.session.execute(
            select(ProfileModel.id).where(
                ProfileModel.role == Role.DRIVER,
                ProfileModel.status == DriverStatus.ON_TRIP,
                ProfileModel.id.not_in(active_driver_ids),
            )
        )
        return list(result.scalars().all())

    async def staff(self) -> list[ProfileModel]:
        result = await self.session.execute(
            select(ProfileModel).where(ProfileModel.role.in_(STAFF_ROLES))
        )
        return list(result.scalars().all())

    async def facility_members(self, facility_id: str) -> list[ProfileModel]:
        result = await self.session.execute(
            select(ProfileModel).where(
                ProfileModel.role == Role.FACILITY,
                ProfileModel.facility_id == facility_id,
            )
        )
        return list(result.scalars().all())

    async def get_many(self, profile_ids: list[str]) -> list[ProfileModel]:
        if not profile_ids:
            return []
        result = await self.session.execute(
            select(ProfileModel).where(ProfileModel.id.in_(profile_ids))
        )
        return list(result.scalars().all())


class FacilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, facility_id: str) -> Optional[FacilityModel]:
        return await self.session.get(FacilityModel, facility_id)


class InvoiceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, invoice: InvoiceModel) -> InvoiceModel:
        self.session.add(invoice)
        await self.session.flush()
        await self.session.refresh(invoice)
        return invoice

    async def get_by_id(self, invoice_id: str) -> Optional[InvoiceModel]:
        return await self.session.get(InvoiceModel, invoice_id)

    async def get_by_trip(self, trip_id: str) -> Optional[InvoiceModel]:
        result = await self.session.execute(
            select(InvoiceModel).where(InvoiceModel.trip_id == trip_id)
        )
        return result.scalar_one_or_none()

    async def get_by_facility_month(
        self, facility_id: str, billing_month: date
    ) -> Optional[InvoiceModel]:
        result = await self.session.execute(
            select(InvoiceModel).where(
                InvoiceModel.facility_id == facility_id,
                InvoiceModel.billing_month == billing_month,
            )
        )
        return result.scalar_one_or_none()

    async def list_invoices(
        self,
        *,
        status: Optional[InvoiceStatus] = None,
        facility_only: bool = False,
    ) -> list[InvoiceModel]:
        query = select(InvoiceModel).order_by(InvoiceModel.created_at.desc())
        if status is not None:
            query = query.where(InvoiceModel.status == status)
        if facility_only:
            query = query.where(InvoiceModel.facility_id.is_not(None))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def conditional_set_status(
        self,
        invoice_id: str,
        expected_status: InvoiceStatus,
        new_status: InvoiceStatus,
        **values: Any,
    ) -> bool:
        """``UPDATE invoices ... WHERE id = :id AND status = :expected``."""
        result = await self.session.execute(
            update(InvoiceModel)
            .where(
                InvoiceModel.id == invoice_id,
                InvoiceModel.status == expected_status,
            )
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_overdue(self, now: datetime) -> int:
        result = await self.session.execute(
            update(InvoiceModel)
            .where(
                InvoiceModel.status.in_([InvoiceStatus.PENDING, InvoiceStatus.SENT]),
                InvoiceModel.due_date.is_not(None),
                InvoiceModel.due_date < now,
            )
            .values(status=InvoiceStatus.OVERDUE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class NotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def recipients_with_key(self, idempotency_key: str) -> set[str]:
        result = await self.session.execute(
            select(NotificationModel.user_id).where(
                NotificationModel.idempotency_key == idempotency_key
            )
        )
        return set(result.scalars().all())

    async def add_many(self, rows: list[NotificationModel]) -> None:
        self.session.add_all(rows)
        await self.session.flush()

    async def list_for_user(
        self, user_id: str, *, unread_only: bool = False, limit: int = 100
    ) -> list[NotificationModel]:
        query = (
            select(NotificationModel)
            .where(NotificationModel.user_id == user_id)
            .order_by(NotificationModel.created_at.desc())
            .limit(limit)
        )
        if unread_only:
            query = query.where(NotificationModel.read.is_(False))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        result = await self.session.execute(
            update(NotificationModel)
            .where(
                NotificationModel.id == notification_id,
                NotificationModel.user_id == user_id,
            )
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
