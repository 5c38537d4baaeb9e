"""
Billing rules
=============

* **Individual invoices** -- one per completed individual trip, numbered
  ``DISP-YYYYMMDD-NNNN`` and due ``invoice_due_days`` after issue.
* **Facility invoices** -- one per facility per billing month, aggregating
  the facility's completed trips whose pickup falls in that month.
* **Summary** -- totals shown on the dispatcher billing overview.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from .entities import Trip
from .enums import InvoiceStatus, PaymentStatus, TripStatus

_CENT = Decimal("0.01")


def generate_invoice_number(issued_at: datetime, rng: Optional[random.Random] = None) -> str:
    suffix = (rng or random).randint(0, 9999)
    return f"DISP-{issued_at:%Y%m%d}-{suffix:04d}"


def facility_invoice_number(facility_id: str, billing_month: date) -> str:
    return f"FAC-{billing_month:%Y%m}-{facility_id.replace('-', '')[:8].upper()}"


def due_date_for(issued_at: datetime, due_days: int) -> datetime:
    return issued_at + timedelta(days=due_days)


def month_bounds(month: date) -> tuple[date, date]:
    """Return ``[first day, first day of next month)`` for *month*."""
    start = month.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def trip_description(trip: Optional[Trip]) -> str:
    if trip and trip.pickup_address and trip.destination_address:
        return (
            f"Transportation service: {trip.pickup_address} → "
            f"{trip.destination_address}"
        )
    return "Transportation service"


def initial_status_for_trip(trip: Trip) -> InvoiceStatus:
    """Trips already charged on approval are invoiced as paid."""
    if trip.payment_status == PaymentStatus.PAID:
        return InvoiceStatus.PAID
    return InvoiceStatus.PENDING


@dataclass(frozen=True)
class MonthlyTotal:
    trip_ids: tuple[str, ...]
    amount: Decimal


def aggregate_facility_month(
    trips: Iterable[Trip], facility_id: str, billing_month: date
) -> MonthlyTotal:
    """Sum completed trips of *facility_id* picked up during *billing_month*."""
    start, end = month_bounds(billing_month)
    selected = [
        t
        for t in trips
        if t.facility_id == facility_id
        and t.status == TripStatus.COMPLETED
        and t.pickup_time is not None
        and start <= t.pickup_time.date() < end
    ]
    amount = sum((t.price for t in selected), Decimal("0")).quantize(_CENT)
    return MonthlyTotal(tuple(t.id for t in selected), amount)


@dataclass(frozen=True)
class InvoiceSummary:
    total_invoices: int
    total_amount: Decimal
    pending_count: int
    paid_count: int
    overdue_count: int


def summarize(invoices: Iterable, today: datetime) -> InvoiceSummary:
    """Aggregate any objects exposing ``amount``, ``status`` and ``due_date``."""
    invoices = list(invoices)

    def is_overdue(inv) -> bool:
        if inv.status == InvoiceStatus.OVERDUE:
            return True
        return (
            inv.status == InvoiceStatus.PENDING
            and inv.due_date is not None
            and _naive(inv.due_date) < _naive(today)
        )

    return InvoiceSummary(
        total_invoices=len(invoices),
        total_amount=sum(
            (Decimal(inv.amount or 0) for inv in invoices), Decimal("0")
        ).quantize(_CENT),
        pending_count=sum(1 for inv in invoices if inv.status == InvoiceStatus.PENDING),
        paid_count=sum(1 for inv in invoices if inv.status == InvoiceStatus.PAID),
        overdue_count=sum(1 for inv in invoices if is_overdue(inv)),
    )


def _naive(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; compare everything as UTC-naive
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)
