"""
Unit tests for the billing rules.

Tests invoice numbering, month windows, facility aggregation, the overview
summary and the invoice status state machine.
"""

import random
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from dispatch.domain import billing
from dispatch.domain.entities import Invoice
from dispatch.domain.enums import InvoiceStatus, PaymentStatus, TripStatus
from dispatch.domain.errors import InvalidInvoiceTransition
from tests.fakes import make_trip

UTC = timezone.utc


class TestNumbering:
    def test_individual_number_format(self):
        number = billing.generate_invoice_number(
            datetime(2026, 3, 14, tzinfo=UTC), rng=random.Random(7)
        )
        assert re.fullmatch(r"DISP-20260314-\d{4}", number)

    def test_facility_number_is_stable_per_month(self):
        first = billing.facility_invoice_number("ab12-cd34-ef56", date(2026, 2, 1))
        second = billing.facility_invoice_number("ab12-cd34-ef56", date(2026, 2, 1))
        assert first == second == "FAC-202602-AB12CD34"

    def test_due_date(self):
        issued = datetime(2026, 3, 14, tzinfo=UTC)
        assert billing.due_date_for(issued, 30) == datetime(2026, 4, 13, tzinfo=UTC)


class TestMonthBounds:
    def test_mid_month(self):
        assert billing.month_bounds(date(2026, 3, 14)) == (
            date(2026, 3, 1),
            date(2026, 4, 1),
        )

    def test_december_rolls_over(self):
        assert billing.month_bounds(date(2025, 12, 31)) == (
            date(2025, 12, 1),
            date(2026, 1, 1),
        )


class TestFacilityAggregation:
    def _trip(self, trip_id, pickup, status=TripStatus.COMPLETED, facility_id="fac-1", price="50.00"):
        return make_trip(
            trip_id,
            user_id=None,
            facility_id=facility_id,
            status=status,
            price=Decimal(price),
            pickup_time=pickup,
        )

    def test_only_completed_trips_of_the_month(self):
        trips = [
            self._trip("a", datetime(2026, 2, 1, 8, tzinfo=UTC)),
            self._trip("b", datetime(2026, 2, 28, 23, tzinfo=UTC), price="25.25"),
            self._trip("c", datetime(2026, 3, 1, 0, tzinfo=UTC)),
            self._trip("d", datetime(2026, 2, 10, tzinfo=UTC), status=TripStatus.CANCELLED),
            self._trip("e", datetime(2026, 2, 10, tzinfo=UTC), facility_id="fac-2"),
            self._trip("f", None),
        ]

        total = billing.aggregate_facility_month(trips, "fac-1", date(2026, 2, 1))

        assert total.trip_ids == ("a", "b")
        assert total.amount == Decimal("75.25")

    def test_empty_month(self):
        total = billing.aggregate_facility_month([], "fac-1", date(2026, 2, 1))
        assert total.trip_ids == ()
        assert total.amount == Decimal("0.00")


class TestInitialStatus:
    def test_paid_trip_is_invoiced_paid(self):
        trip = make_trip(payment_status=PaymentStatus.PAID)
        assert billing.initial_status_for_trip(trip) == InvoiceStatus.PAID

    def test_unpaid_trip_is_invoiced_pending(self):
        assert billing.initial_status_for_trip(make_trip()) == InvoiceStatus.PENDING

    def test_description(self):
        assert billing.trip_description(make_trip()) == (
            "Transportation service: 12 Elm St → St. Mary's Hospital"
        )
        assert billing.trip_description(None) == "Transportation service"


class TestSummary:
    def test_counts_and_totals(self):
        today = datetime(2026, 3, 14, tzinfo=UTC)
        invoices = [
            Invoice(amount=Decimal("10.00"), status=InvoiceStatus.PAID),
            Invoice(
                amount=Decimal("20.50"),
                status=InvoiceStatus.PENDING,
                due_date=today - timedelta(days=1),
            ),
            Invoice(
                amount=Decimal("5.00"),
                status=InvoiceStatus.PENDING,
                due_date=(today + timedelta(days=5)).replace(tzinfo=None),
            ),
            Invoice(amount=Decimal("7.00"), status=InvoiceStatus.OVERDUE),
        ]

        summary = billing.summarize(invoices, today)

        assert summary.total_invoices == 4
        assert summary.total_amount == Decimal("42.50")
        assert summary.pending_count == 2
        assert summary.paid_count == 1
        assert summary.overdue_count == 2


class TestInvoiceStateMachine:
    @pytest.mark.parametrize("terminal", [InvoiceStatus.PAID, InvoiceStatus.CANCELLED])
    @pytest.mark.parametrize("target", list(InvoiceStatus))
    def test_terminal_states_are_final(self, terminal, target):
        invoice = Invoice(status=terminal)
        with pytest.raises(InvalidInvoiceTransition):
            invoice.transition_to(target)
        assert invoice.status == terminal

    def test_pending_to_paid(self):
        invoice = Invoice(status=InvoiceStatus.PENDING)
        invoice.transition_to(InvoiceStatus.PAID)
        assert invoice.status == InvoiceStatus.PAID

    def test_overdue_cannot_go_back_to_pending(self):
        invoice = Invoice(status=InvoiceStatus.OVERDUE)
        with pytest.raises(InvalidInvoiceTransition):
            invoice.transition_to(InvoiceStatus.PENDING)
