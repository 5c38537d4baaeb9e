"""
SQL-backed collaborators for the lifecycle coordinator.

Unlike the request-scoped repositories, every store call opens its own
session and commits before returning: the coordinator relies on a trip
transition being durable before it captures payment or runs side effects.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import InvoiceModel, ProfileModel, TripModel
from .repositories import InvoiceRepository, ProfileRepository, TripRepository
from dispatch.domain import billing
from dispatch.domain.entities import DriverProfile, Invoice, Trip
from dispatch.domain.enums import DriverStatus, TripStatus
from dispatch.domain.errors import ConflictingTransition, NotFound
from dispatch.domain.ports import DriverStore, InvoiceStore, TripStore

logger = logging.getLogger(__name__)

_TRIP_FIELDS = tuple(Trip.__dataclass_fields__)


def trip_to_entity(model: TripModel) -> Trip:
    values = {name: getattr(model, name) for name in _TRIP_FIELDS}
    if values["price"] is None:
        values["price"] = Decimal("0")
    return Trip(**values)


def trip_to_model(trip: Trip) -> TripModel:
    values = {
        name: getattr(trip, name)
        for name in _TRIP_FIELDS
        if getattr(trip, name) is not None
    }
    return TripModel(**values)


def driver_to_entity(model: ProfileModel) -> DriverProfile:
    return DriverProfile(
        id=model.id,
        first_name=model.first_name or "",
        last_name=model.last_name or "",
        status=model.status or DriverStatus.AVAILABLE,
    )


def invoice_to_entity(model: InvoiceModel) -> Invoice:
    return Invoice(
        id=model.id,
        invoice_number=model.invoice_number,
        amount=model.amount,
        status=model.status,
        user_id=model.user_id,
        facility_id=model.facility_id,
        trip_id=model.trip_id,
        billing_month=model.billing_month,
        issue_date=model.issue_date,
        due_date=model.due_date,
    )


class SqlTripStore(TripStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_trip(self, trip_id: str) -> Trip:
        async with self.session_factory() as session:
            model = await TripRepository(session).get_by_id(trip_id)
            if model is None:
                raise NotFound(f"Trip {trip_id} not found")
            return trip_to_entity(model)

    async def conditional_update(
        self, trip_id: str, expected_status: TripStatus, patch: dict[str, Any]
    ) -> Trip:
        async with self.session_factory() as session:
            repo = TripRepository(session)
            if not await repo.conditional_update(trip_id, expected_status, patch):
                await session.rollback()
                if await repo.get_by_id(trip_id) is None:
                    raise NotFound(f"Trip {trip_id} not found")
                raise ConflictingTransition(trip_id, expected_status.value)
            await session.commit()
            model = await repo.refresh_by_id(trip_id)
            return trip_to_entity(model)

    async def create_trip(self, trip: Trip) -> Trip:
        async with self.session_factory() as session:
            model = await TripRepository(session).create(trip_to_model(trip))
            await session.commit()
            await session.refresh(model)
            return trip_to_entity(model)


class SqlDriverStore(DriverStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_driver(self, driver_id: str) -> Optional[DriverProfile]:
        async with self.session_factory() as session:
            model = await ProfileRepository(session).get_driver(driver_id)
            return driver_to_entity(model) if model else None

    async def conditional_set_available(
        self, driver_id: str, expected_status: DriverStatus = DriverStatus.ON_TRIP
    ) -> bool:
        async with self.session_factory() as session:
            released = await ProfileRepository(session).release_driver_if_idle(
                driver_id, expected_status
            )
            await session.commit()
            return released

    async def mark_on_trip(self, driver_id: str) -> bool:
        async with self.session_factory() as session:
            marked = await ProfileRepository(session).mark_on_trip(driver_id)
            await session.commit()
            return marked

    async def find_stale_on_trip(self) -> list[str]:
        async with self.session_factory() as session:
            return await ProfileRepository(session).stale_on_trip_driver_ids()

    async def set_status(self, driver_id: str, status: DriverStatus) -> bool:
        """Administrative (de)activation; ``on_trip`` is owned by the coordinator."""
        async with self.session_factory() as session:
            repo = ProfileRepository(session)
            if await repo.get_driver(driver_id) is None:
                raise NotFound(f"Driver {driver_id} not found")
            if status == DriverStatus.INACTIVE:
                changed = await repo.deactivate_if_idle(driver_id)
            elif status == DriverStatus.AVAILABLE:
                changed = await repo.reactivate(driver_id)
            else:
                raise ValueError("on_trip is derived from trip assignments")
            await session.commit()
            return changed


class SqlInvoiceStore(InvoiceStore):
    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], due_days: int = 30
    ):
        self.session_factory = session_factory
        self.due_days = due_days

    async def create_for_completed_trip(self, trip: Trip) -> Optional[Invoice]:
        if trip.is_facility_booking or trip.user_id is None:
            return None  # billed on the facility's monthly invoice

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            repo = InvoiceRepository(session)
            existing = await repo.get_by_trip(trip.id)
            if existing is not None:
                return invoice_to_entity(existing)

            model = InvoiceModel(
                invoice_number=billing.generate_invoice_number(now),
                user_id=trip.user_id,
                trip_id=trip.id,
                amount=trip.payment_amount or trip.price,
                status=billing.initial_status_for_trip(trip),
                issue_date=now,
                due_date=billing.due_date_for(now, self.due_days),
                payment_date=trip.charged_at,
                description=billing.trip_description(trip),
            )
            try:
                await repo.create(model)
                await session.commit()
            except IntegrityError:
                # Concurrent completion path already invoiced this trip
                await session.rollback()
                existing = await repo.get_by_trip(trip.id)
                return invoice_to_entity(existing) if existing else None
            logger.info("Invoice %s created for trip %s", model.invoice_number, trip.id)
            return invoice_to_entity(model)
