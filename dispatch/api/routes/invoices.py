"""
Invoice endpoints
=================

GET   /api/v1/invoices                     -- list with billing summary
GET   /api/v1/invoices/{invoice_id}        -- one invoice
POST  /api/v1/invoices                     -- manual invoice
PATCH /api/v1/invoices/{invoice_id}        -- status change (invoice state machine)
POST  /api/v1/invoices/facility-monthly    -- aggregate a facility's month
POST  /api/v1/invoices/{invoice_id}/review -- approve / reject a facility invoice

Per-trip invoices for individual bookings are also created automatically
when a trip completes (see ``SqlInvoiceStore``).
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.api.auth import Actor, get_current_actor, require_staff
from dispatch.api.dependencies import get_db
from dispatch.api.middleware import limiter
from dispatch.api.schemas import (
    FacilityMonthlyRequest,
    InvoiceCreateRequest,
    InvoiceListResponse,
    InvoiceResponse,
    InvoiceReviewRequest,
    InvoiceSummaryResponse,
    InvoiceUpdateRequest,
)
from dispatch.config import settings
from dispatch.domain import billing
from dispatch.domain.enums import InvoiceStatus, Role
from dispatch.domain.errors import Forbidden, InvalidInvoiceTransition, NotFound
from dispatch.infrastructure.models import InvoiceModel
from dispatch.infrastructure.repositories import (
    FacilityRepository,
    InvoiceRepository,
    TripRepository,
)
from dispatch.infrastructure.stores import invoice_to_entity, trip_to_entity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])

REVIEW_OUTCOMES = {
    "approve": InvoiceStatus.APPROVED,
    "reject": InvoiceStatus.SENT,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _load(repo: InvoiceRepository, invoice_id: str) -> InvoiceModel:
    invoice = await repo.get_by_id(invoice_id)
    if invoice is None:
        raise NotFound(f"Invoice {invoice_id} not found")
    return invoice


async def _change_status(
    db: AsyncSession,
    invoice: InvoiceModel,
    new_status: InvoiceStatus,
    **values,
) -> InvoiceModel:
    """Check the state machine on a domain copy, then compare-and-swap the row.

    A concurrent writer that moved the invoice first makes the update match
    nothing, which is reported like any other illegal transition.
    """
    entity = invoice_to_entity(invoice)
    expected = entity.status
    entity.transition_to(new_status)
    updated = await InvoiceRepository(db).conditional_set_status(
        invoice.id, expected, new_status, updated_at=_now(), **values
    )
    if not updated:
        raise InvalidInvoiceTransition(
            f"Invoice {invoice.invoice_number} changed since it was read"
        )
    await db.refresh(invoice)
    return invoice


@router.get("", response_model=InvoiceListResponse, summary="List invoices")
@limiter.limit(settings.rate_limit)
async def list_invoices(
    request: Request,
    status: Optional[InvoiceStatus] = None,
    facility_only: bool = False,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    invoices = await InvoiceRepository(db).list_invoices(
        status=status, facility_only=facility_only
    )
    summary = billing.summarize(invoices, _now())
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
        summary=InvoiceSummaryResponse(**asdict(summary)),
    )


@router.get("/{invoice_id}", response_model=InvoiceResponse, summary="Get an invoice")
@limiter.limit(settings.rate_limit)
async def get_invoice(
    request: Request,
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    invoice = await _load(InvoiceRepository(db), invoice_id)
    if actor.is_staff:
        return invoice
    if actor.role == Role.FACILITY and invoice.facility_id == actor.facility_id:
        return invoice
    if actor.role == Role.CLIENT and invoice.user_id == actor.user_id:
        return invoice
    raise Forbidden("You do not have access to this invoice")


@router.post(
    "", status_code=201, response_model=InvoiceResponse, summary="Create an invoice"
)
@limiter.limit(settings.rate_limit)
async def create_invoice(
    request: Request,
    body: InvoiceCreateRequest,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    repo = InvoiceRepository(db)
    trip = None
    if body.trip_id:
        model = await TripRepository(db).get_by_id(body.trip_id)
        if model is None:
            raise NotFound(f"Trip {body.trip_id} not found")
        trip = trip_to_entity(model)
        if await repo.get_by_trip(body.trip_id) is not None:
            raise HTTPException(
                status_code=409, detail="An invoice already exists for this trip"
            )

    user_id = body.user_id or (trip.user_id if trip else None)
    facility_id = body.facility_id or (trip.facility_id if trip else None)
    if bool(user_id) == bool(facility_id):
        raise HTTPException(
            status_code=422,
            detail="An invoice is billed to exactly one of a rider or a facility",
        )

    now = _now()
    invoice = InvoiceModel(
        invoice_number=billing.generate_invoice_number(now),
        user_id=user_id,
        facility_id=facility_id,
        trip_id=body.trip_id,
        amount=body.amount,
        status=body.status,
        issue_date=now,
        due_date=body.due_date or billing.due_date_for(now, settings.invoice_due_days),
        payment_date=now if body.status == InvoiceStatus.PAID else None,
        description=body.description or billing.trip_description(trip),
        notes=body.notes,
    )
    try:
        await repo.create(invoice)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Duplicate invoice")
    logger.info("Invoice %s created by %s", invoice.invoice_number, actor.user_id)
    return invoice


@router.patch(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Change invoice status",
    description="paid and cancelled invoices are final.",
)
@limiter.limit(settings.rate_limit)
async def update_invoice(
    request: Request,
    invoice_id: str,
    body: InvoiceUpdateRequest,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    invoice = await _load(InvoiceRepository(db), invoice_id)
    values = {}
    if body.status == InvoiceStatus.PAID:
        values["payment_date"] = _now()
        values["payment_method"] = body.payment_method or invoice.payment_method
    if body.notes is not None:
        values["notes"] = body.notes
    invoice = await _change_status(db, invoice, body.status, **values)
    logger.info("Invoice %s -> %s", invoice.invoice_number, body.status.value)
    return invoice


@router.post(
    "/facility-monthly",
    status_code=201,
    response_model=InvoiceResponse,
    summary="Create a facility's monthly invoice",
)
@limiter.limit(settings.rate_limit)
async def create_facility_monthly(
    request: Request,
    body: FacilityMonthlyRequest,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    if await FacilityRepository(db).get_by_id(body.facility_id) is None:
        raise NotFound(f"Facility {body.facility_id} not found")

    start, end = billing.month_bounds(body.month)
    repo = InvoiceRepository(db)
    if await repo.get_by_facility_month(body.facility_id, start) is not None:
        raise HTTPException(
            status_code=409,
            detail=f"Facility already invoiced for {start:%B %Y}",
        )

    trips = await TripRepository(db).completed_for_facility(
        body.facility_id, start, end
    )
    total = billing.aggregate_facility_month(
        [trip_to_entity(t) for t in trips], body.facility_id, start
    )

    now = _now()
    invoice = InvoiceModel(
        invoice_number=billing.facility_invoice_number(body.facility_id, start),
        facility_id=body.facility_id,
        billing_month=start,
        amount=total.amount,
        status=InvoiceStatus.PENDING,
        issue_date=now,
        due_date=billing.due_date_for(now, settings.invoice_due_days),
        description=(
            f"Monthly transportation services, {start:%B %Y} "
            f"({len(total.trip_ids)} trips)"
        ),
    )
    try:
        await repo.create(invoice)
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail=f"Facility already invoiced for {start:%B %Y}",
        )
    logger.info(
        "Facility invoice %s: %d trips, %s",
        invoice.invoice_number,
        len(total.trip_ids),
        total.amount,
    )
    return invoice


@router.post(
    "/{invoice_id}/review",
    response_model=InvoiceResponse,
    summary="Approve or reject a facility invoice",
)
@limiter.limit(settings.rate_limit)
async def review_invoice(
    request: Request,
    invoice_id: str,
    body: InvoiceReviewRequest,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    invoice = await _load(InvoiceRepository(db), invoice_id)
    if invoice.facility_id is None:
        raise InvalidInvoiceTransition("Only facility invoices are reviewed")
    if invoice.status != InvoiceStatus.PENDING:
        raise InvalidInvoiceTransition("Invoice is not pending approval")

    values = {"dispatcher_notes": body.notes}
    if body.action == "approve":
        values.update(approved_by=actor.user_id, approved_at=_now())
    invoice = await _change_status(
        db, invoice, REVIEW_OUTCOMES[body.action], **values
    )
    logger.info(
        "Facility invoice %s %sd by %s",
        invoice.invoice_number,
        body.action,
        actor.user_id,
    )
    return invoice
