"""
Driver endpoints
================

GET   /api/v1/drivers                   -- list drivers (optional status filter)
PATCH /api/v1/drivers/{driver_id}/status -- activate / deactivate a driver
POST  /api/v1/drivers/audit              -- run the availability sweep now
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.api.auth import Actor, require_staff
from dispatch.api.dependencies import get_db, get_driver_store, get_session_factory
from dispatch.api.middleware import limiter
from dispatch.api.schemas import AuditResponse, DriverResponse, DriverStatusRequest
from dispatch.config import settings
from dispatch.domain.enums import DriverStatus
from dispatch.domain.errors import InvalidTransition, NotFound
from dispatch.infrastructure.repositories import ProfileRepository
from dispatch.infrastructure.stores import SqlDriverStore
from dispatch.workers import auditor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get("", response_model=list[DriverResponse], summary="List drivers")
@limiter.limit(settings.rate_limit)
async def list_drivers(
    request: Request,
    status: Optional[DriverStatus] = None,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    return await ProfileRepository(db).list_drivers(status)


@router.patch(
    "/{driver_id}/status",
    response_model=DriverResponse,
    summary="Activate or deactivate a driver",
    description="Deactivation is refused while the driver holds an active trip.",
)
@limiter.limit(settings.rate_limit)
async def set_driver_status(
    request: Request,
    driver_id: str,
    body: DriverStatusRequest,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    drivers: SqlDriverStore = Depends(get_driver_store),
):
    if body.status == DriverStatus.ON_TRIP:
        raise HTTPException(
            status_code=422, detail="on_trip is set by trip assignment only"
        )

    changed = await drivers.set_status(driver_id, body.status)
    if not changed and body.status == DriverStatus.INACTIVE:
        raise InvalidTransition(
            f"Driver {driver_id} has active trips and cannot be deactivated"
        )
    if changed:
        logger.info(
            "Driver %s set %s by %s", driver_id, body.status.value, actor.user_id
        )

    profile = await ProfileRepository(db).get_driver(driver_id)
    if profile is None:
        raise NotFound(f"Driver {driver_id} not found")
    await db.refresh(profile)
    return profile


@router.post(
    "/audit",
    response_model=AuditResponse,
    summary="Release stuck drivers, park stuck approvals, flag overdue invoices",
)
@limiter.limit(settings.rate_limit)
async def run_audit(
    request: Request,
    actor: Actor = Depends(require_staff),
    drivers: SqlDriverStore = Depends(get_driver_store),
    session_factory=Depends(get_session_factory),
):
    report = await auditor.audit(drivers, session_factory)
    return AuditResponse(
        checked_drivers=report.checked_drivers,
        released_drivers=report.released_drivers or [],
        overdue_invoices=report.overdue_invoices,
        parked_trips=report.parked_trips or [],
    )
