"""
Trip endpoints
==============

GET    /api/v1/trips                          -- list trips (filters: status, kind, driver)
GET    /api/v1/trips/{trip_id}                -- one trip
POST   /api/v1/trips                          -- create a booking (staff)
POST   /api/v1/trips/{trip_id}/actions        -- approve / reject / complete / ...
POST   /api/v1/trips/{trip_id}/assign-driver  -- assign a driver (staff)
POST   /api/v1/trips/{trip_id}/driver-response -- assigned driver accepts / declines
POST   /api/v1/trips/{trip_id}/payment-reminder -- remind the rider of a declined card
DELETE /api/v1/trips/{trip_id}                -- hard delete (admin)

Every state change goes through the lifecycle coordinator.  A request that
loses a compare-and-swap race is re-read and retried once before the
conflict is reported.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Literal, Optional, TypeVar

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.api.auth import (
    Actor,
    get_current_actor,
    require_admin,
    require_driver,
    require_staff,
)
from dispatch.api.dependencies import get_coordinator, get_db
from dispatch.api.middleware import limiter
from dispatch.api.schemas import (
    ActionResponse,
    AssignDriverRequest,
    DriverResponseRequest,
    PaymentOutcome,
    TripActionRequest,
    TripCreateRequest,
    TripResponse,
)
from dispatch.config import settings
from dispatch.domain.entities import ActionResult, Trip
from dispatch.domain.enums import Role, TripStatus
from dispatch.domain.errors import ConflictingTransition, Forbidden, NotFound
from dispatch.infrastructure.repositories import TripRepository
from dispatch.infrastructure.stores import trip_to_entity
from dispatch.services.coordinator import TripLifecycleCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["trips"])

T = TypeVar("T")


async def _retry_once(operation: Callable[[], Awaitable[T]]) -> T:
    try:
        return await operation()
    except ConflictingTransition as e:
        logger.info("%s; re-reading and retrying once", e)
        return await operation()


def _check_visible(actor: Actor, trip: Trip) -> None:
    if actor.is_staff:
        return
    if actor.role == Role.FACILITY and trip.facility_id == actor.facility_id:
        return
    if actor.role == Role.DRIVER and trip.driver_id == actor.user_id:
        return
    if actor.role == Role.CLIENT and trip.user_id == actor.user_id:
        return
    raise Forbidden("You do not have access to this trip")


def _action_response(result: ActionResult) -> ActionResponse:
    payment = result.payment_result
    if payment is None:
        return ActionResponse(
            trip=TripResponse.model_validate(result.trip), replayed=result.replayed
        )

    outcome = PaymentOutcome(
        captured=payment.captured,
        reason=payment.reason.value if payment.reason else None,
        message=payment.message,
        retry_eligible=payment.retry_eligible,
        attempts=payment.attempts,
    )
    warning = None
    if not payment.captured:
        warning = f"Trip approved but payment failed: {payment.message}"
    return ActionResponse(
        trip=TripResponse.model_validate(result.trip),
        replayed=result.replayed,
        payment=outcome,
        warning=warning,
    )


@router.get("", response_model=list[TripResponse], summary="List trips")
@limiter.limit(settings.rate_limit)
async def list_trips(
    request: Request,
    status: Optional[TripStatus] = None,
    kind: Optional[Literal["individual", "facility"]] = None,
    driver_id: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    facility_id = None
    if actor.role == Role.FACILITY:
        facility_id, kind = actor.facility_id, "facility"
    elif actor.role == Role.DRIVER:
        driver_id = actor.user_id
    elif not actor.is_staff:
        raise Forbidden("Trip listing is not available to riders")

    trips = await TripRepository(db).list_trips(
        status=status,
        kind=kind,
        driver_id=driver_id,
        facility_id=facility_id,
        limit=limit,
    )
    return [trip_to_entity(t) for t in trips]


@router.get("/{trip_id}", response_model=TripResponse, summary="Get one trip")
@limiter.limit(settings.rate_limit)
async def get_trip(
    request: Request,
    trip_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    model = await TripRepository(db).get_by_id(trip_id)
    if model is None:
        raise NotFound(f"Trip {trip_id} not found")
    trip = trip_to_entity(model)
    _check_visible(actor, trip)
    return trip


@router.post(
    "",
    status_code=201,
    response_model=TripResponse,
    summary="Create a trip request",
)
@limiter.limit(settings.rate_limit)
async def create_trip(
    request: Request,
    body: TripCreateRequest,
    actor: Actor = Depends(require_staff),
    coordinator: TripLifecycleCoordinator = Depends(get_coordinator),
):
    draft = Trip(**body.model_dump())
    return await coordinator.create_trip(draft)


@router.post(
    "/{trip_id}/actions",
    response_model=ActionResponse,
    summary="Apply a dispatcher action",
    description=(
        "approve captures payment for individual bookings with a stored card. "
        "A declined or failed capture still returns 200 with the trip in "
        "payment_failed and a warning."
    ),
)
@limiter.limit(settings.rate_limit)
async def apply_action(
    request: Request,
    trip_id: str,
    body: TripActionRequest,
    actor: Actor = Depends(require_staff),
    coordinator: TripLifecycleCoordinator = Depends(get_coordinator),
):
    result = await _retry_once(
        lambda: coordinator.apply_action(
            trip_id, body.action, actor.role, reason=body.reason
        )
    )
    return _action_response(result)


@router.post(
    "/{trip_id}/assign-driver",
    response_model=ActionResponse,
    summary="Assign a driver to an upcoming trip",
)
@limiter.limit(settings.rate_limit)
async def assign_driver(
    request: Request,
    trip_id: str,
    body: AssignDriverRequest,
    actor: Actor = Depends(require_staff),
    coordinator: TripLifecycleCoordinator = Depends(get_coordinator),
):
    result = await _retry_once(
        lambda: coordinator.assign_driver(trip_id, body.driver_id, actor.role)
    )
    return _action_response(result)


@router.post(
    "/{trip_id}/driver-response",
    response_model=ActionResponse,
    summary="Accept or decline an assignment",
)
@limiter.limit(settings.rate_limit)
async def driver_response(
    request: Request,
    trip_id: str,
    body: DriverResponseRequest,
    actor: Actor = Depends(require_driver),
    coordinator: TripLifecycleCoordinator = Depends(get_coordinator),
):
    result = await coordinator.respond_to_assignment(
        trip_id, actor.user_id, body.accept
    )
    return _action_response(result)


@router.post(
    "/{trip_id}/payment-reminder",
    response_model=TripResponse,
    summary="Send a payment reminder for a declined card",
)
@limiter.limit(settings.rate_limit)
async def payment_reminder(
    request: Request,
    trip_id: str,
    actor: Actor = Depends(require_staff),
    coordinator: TripLifecycleCoordinator = Depends(get_coordinator),
):
    return await coordinator.send_payment_reminder(trip_id, actor.role)


@router.delete("/{trip_id}", status_code=204, summary="Delete a trip and its invoices")
@limiter.limit(settings.rate_limit)
async def delete_trip(
    request: Request,
    trip_id: str,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    coordinator: TripLifecycleCoordinator = Depends(get_coordinator),
):
    repo = TripRepository(db)
    model = await repo.get_by_id(trip_id)
    if model is None:
        raise NotFound(f"Trip {trip_id} not found")
    trip = trip_to_entity(model)

    await repo.purge(trip_id)
    await db.commit()
    logger.warning("Trip %s purged by admin %s", trip_id, actor.user_id)

    if trip.holds_driver:
        await coordinator.reconcile_driver(trip.driver_id, trip_id)
    return Response(status_code=204)
