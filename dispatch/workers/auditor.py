"""
Background Auditor
==================

Runs every ``AUDITOR_INTERVAL_SECONDS`` (default 300 s).

Driver availability is reconciled by the lifecycle coordinator at
transition time; this sweep only catches drift left behind by crashes
between a trip commit and its reconciliation step.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one API process sweeps per cycle.
* Releases use the same conditional ``UPDATE`` as the coordinator, so a
  driver assigned between the scan and the update stays ``on_trip``.

Per cycle
---------
1. Find drivers marked ``on_trip`` with no driver-active trip; release them.
2. Park trips stuck in ``approved_pending_payment`` for longer than
   ``STALE_RESERVATION_SECONDS`` as ``payment_failed`` / ``gateway_error``,
   which leaves them open to ``retry_approve``.
3. Mark pending / sent invoices past their due date as ``overdue``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.config import settings
from dispatch.domain.entities import PaymentResult
from dispatch.domain.errors import ConflictingTransition
from dispatch.domain.lifecycle import plan_payment_outcome
from dispatch.domain.ports import DriverStore
from dispatch.infrastructure.database import async_session_factory
from dispatch.infrastructure.locks import DistributedLock
from dispatch.infrastructure.redis_client import get_redis
from dispatch.infrastructure.repositories import InvoiceRepository, TripRepository
from dispatch.infrastructure.stores import SqlDriverStore, SqlTripStore, trip_to_entity

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


@dataclass
class AuditReport:
    checked_drivers: int = 0
    released_drivers: list[str] | None = None
    overdue_invoices: int = 0
    parked_trips: list[str] | None = None
    skipped: bool = False


# ── Public API ────────────────────────────────────────────────────────


async def start_auditor_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Auditor started (interval=%ds)", settings.auditor_interval_seconds
    )


async def stop_auditor_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Auditor stopped")


async def audit(
    drivers: DriverStore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> AuditReport:
    """One sweep without locking; used by the loop and by ``POST /drivers/audit``."""
    now = now or datetime.now(timezone.utc)
    report = AuditReport(released_drivers=[], parked_trips=[])

    stale = await drivers.find_stale_on_trip()
    report.checked_drivers = len(stale)
    for driver_id in stale:
        if await drivers.conditional_set_available(driver_id):
            report.released_drivers.append(driver_id)
            logger.warning("Auditor released driver %s stuck on_trip", driver_id)

    report.parked_trips = await _park_stale_reservations(session_factory, now)

    async with session_factory() as session:
        report.overdue_invoices = await InvoiceRepository(session).mark_overdue(now)
        await session.commit()

    if report.released_drivers or report.parked_trips or report.overdue_invoices:
        logger.info(
            "Audit: %d driver(s) released, %d trip(s) parked, %d invoice(s) overdue",
            len(report.released_drivers),
            len(report.parked_trips),
            report.overdue_invoices,
        )
    return report


async def run_audit_cycle() -> AuditReport:
    """Execute one locked sweep."""
    redis = await get_redis()
    lock = DistributedLock(redis, "driver_auditor", ttl_seconds=120)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return AuditReport(skipped=True)

    try:
        return await audit(SqlDriverStore(async_session_factory), async_session_factory)
    finally:
        await lock.release()


# ── Internals ─────────────────────────────────────────────────────────


async def _park_stale_reservations(
    session_factory: async_sessionmaker[AsyncSession], now: datetime
) -> list[str]:
    cutoff = now - timedelta(seconds=settings.stale_reservation_seconds)
    async with session_factory() as session:
        stale = [
            trip_to_entity(t)
            for t in await TripRepository(session).stale_reservations(cutoff)
        ]

    trips = SqlTripStore(session_factory)
    parked: list[str] = []
    for trip in stale:
        plan = plan_payment_outcome(
            trip,
            PaymentResult.gateway_error("Payment capture did not complete"),
            now=now,
        )
        try:
            await trips.conditional_update(trip.id, plan.from_status, plan.patch)
        except ConflictingTransition:
            # Capture finished or the trip was cancelled since the scan
            continue
        parked.append(trip.id)
        logger.warning("Auditor parked trip %s stuck awaiting payment", trip.id)
    return parked


async def _loop() -> None:
    """Periodic loop: run an audit cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_audit_cycle()
        except Exception:
            logger.exception("Unhandled error in audit cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.auditor_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle
