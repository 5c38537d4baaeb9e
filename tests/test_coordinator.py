"""
Lifecycle coordinator tests against in-memory collaborators.

Covers payment orchestration on approval, idempotent approval, driver
availability reconciliation and the rule that side-effect failures never
undo or fail a committed transition.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from dispatch.domain.entities import DriverProfile, PaymentResult
from dispatch.domain.enums import (
    DriverStatus,
    PaymentFailureReason,
    PaymentStatus,
    Role,
    TripAction,
    TripStatus,
)
from dispatch.domain.errors import (
    AssignmentMismatch,
    ConflictingTransition,
    DriverUnavailable,
    Forbidden,
    InvalidTransition,
    InvalidTripLinkage,
    NotFound,
    PaymentDeclined,
    PaymentGatewayError,
    RetryLimitExceeded,
)
from dispatch.services.coordinator import TripLifecycleCoordinator
from tests.conftest import NOW
from tests.fakes import (
    BrokenDriverStore,
    FailingNotifier,
    FakePaymentGateway,
    make_trip,
)

DISPATCHER = Role.DISPATCHER


def add(trip_store, *trips):
    for trip in trips:
        trip_store.trips[trip.id] = trip


def add_driver(driver_store, driver_id="D1", status=DriverStatus.ON_TRIP):
    driver = DriverProfile(id=driver_id, first_name="Chris", last_name="Walker", status=status)
    driver_store.drivers[driver_id] = driver
    return driver


class TestApproval:
    @pytest.mark.asyncio
    async def test_captured_payment_makes_trip_upcoming_and_paid(
        self, coordinator, trip_store, payments
    ):
        add(trip_store, make_trip("T1"))

        result = await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        assert result.trip.status == TripStatus.UPCOMING
        assert result.trip.payment_status == PaymentStatus.PAID
        assert result.trip.payment_intent_id == "pi_1"
        assert result.trip.payment_amount == Decimal("42.50")
        assert result.payment_result.captured
        assert payments.captures == ["T1"]
        assert trip_store.trips["T1"].status == TripStatus.UPCOMING

    @pytest.mark.asyncio
    async def test_reservation_is_written_before_capture(
        self, coordinator, trip_store
    ):
        add(trip_store, make_trip("T1"))

        await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        assert trip_store.writes == [
            ("T1", TripStatus.PENDING, TripStatus.APPROVED_PENDING_PAYMENT),
            ("T1", TripStatus.APPROVED_PENDING_PAYMENT, TripStatus.UPCOMING),
        ]

    @pytest.mark.asyncio
    async def test_gateway_timeout_parks_trip_retry_eligible(
        self, coordinator, trip_store, payments
    ):
        add(trip_store, make_trip("T2"))
        payments.results = [PaymentResult.gateway_error("Payment system is taking too long to respond", attempts=2)]

        result = await coordinator.apply_action("T2", TripAction.APPROVE, DISPATCHER)

        trip = trip_store.trips["T2"]
        assert trip.status == TripStatus.PAYMENT_FAILED
        assert trip.payment_failure_reason == PaymentFailureReason.GATEWAY_ERROR
        assert trip.payment_retry_eligible is True
        assert result.payment_result.retry_eligible

    @pytest.mark.asyncio
    async def test_gateway_exception_is_treated_as_gateway_error(
        self, coordinator, trip_store, payments
    ):
        add(trip_store, make_trip("T2"))
        payments.results = [PaymentGatewayError("Unable to connect to payment system")]

        result = await coordinator.apply_action("T2", TripAction.APPROVE, DISPATCHER)

        assert result.trip.status == TripStatus.PAYMENT_FAILED
        assert result.trip.payment_failure_reason == PaymentFailureReason.GATEWAY_ERROR
        with pytest.raises(PaymentGatewayError):
            result.raise_for_payment()

    @pytest.mark.asyncio
    async def test_decline_is_not_retry_eligible(self, coordinator, trip_store, payments):
        add(trip_store, make_trip("T1"))
        payments.results = [PaymentResult.declined("Your card was declined.")]

        result = await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        assert result.trip.status == TripStatus.PAYMENT_FAILED
        assert result.trip.payment_failure_reason == PaymentFailureReason.DECLINED
        assert result.trip.payment_retry_eligible is False
        assert result.trip.payment_error == "Your card was declined."
        with pytest.raises(PaymentDeclined):
            result.raise_for_payment()

    @pytest.mark.asyncio
    async def test_facility_trip_skips_capture(self, coordinator, trip_store, payments):
        add(
            trip_store,
            make_trip("F1", user_id=None, facility_id="fac-1", payment_method_id=None),
        )

        result = await coordinator.apply_action("F1", TripAction.APPROVE, DISPATCHER)

        assert result.trip.status == TripStatus.UPCOMING
        assert result.trip.payment_status == PaymentStatus.FACILITY_BILLING
        assert result.payment_result is None
        assert payments.captures == []

    @pytest.mark.asyncio
    async def test_individual_trip_without_card_is_approved_unpaid(
        self, coordinator, trip_store, payments
    ):
        add(trip_store, make_trip("T1", payment_method_id=None))

        result = await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        assert result.trip.status == TripStatus.UPCOMING
        assert result.trip.payment_status == PaymentStatus.PENDING
        assert payments.captures == []

    @pytest.mark.asyncio
    async def test_approve_twice_does_not_charge_twice(
        self, coordinator, trip_store, payments
    ):
        add(trip_store, make_trip("T1"))
        first = await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        second = await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        assert second.replayed
        assert second.trip == first.trip
        assert payments.captures == ["T1"]

    @pytest.mark.asyncio
    async def test_retry_approve_after_decline(self, coordinator, trip_store, payments):
        add(trip_store, make_trip("T1"))
        payments.results = [PaymentResult.declined("Card declined")]
        await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)

        result = await coordinator.apply_action("T1", TripAction.RETRY_APPROVE, DISPATCHER)

        assert result.trip.status == TripStatus.UPCOMING
        assert result.trip.payment_attempts == 2
        assert result.trip.payment_failure_reason is None
        assert payments.captures == ["T1", "T1"]

    @pytest.mark.asyncio
    async def test_retry_approve_is_capped(self, coordinator, trip_store, payments):
        add(trip_store, make_trip("T1", status=TripStatus.PAYMENT_FAILED, payment_attempts=3))

        with pytest.raises(RetryLimitExceeded):
            await coordinator.apply_action("T1", TripAction.RETRY_APPROVE, DISPATCHER)
        assert payments.captures == []

    @pytest.mark.asyncio
    async def test_cancel_during_capture_surfaces_conflict(self, trip_store, driver_store, notifier):
        payments = FakePaymentGateway(delay=0.01)
        coordinator = TripLifecycleCoordinator(
            trip_store, driver_store, payments, notifier, clock=lambda: NOW
        )
        add(trip_store, make_trip("T1"))

        approve = asyncio.create_task(
            coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)
        )
        while not payments.captures:
            await asyncio.sleep(0)
        await coordinator.apply_action("T1", TripAction.ADMIN_CANCEL, Role.ADMIN)

        with pytest.raises(ConflictingTransition):
            await approve
        assert trip_store.trips["T1"].status == TripStatus.CANCELLED


class TestConcurrentApproval:
    @pytest.mark.asyncio
    async def test_one_capture_one_conflict(self, coordinator, trip_store, payments):
        add(trip_store, make_trip("T1"))

        results = await asyncio.gather(
            coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER),
            coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictingTransition)]
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        assert payments.captures == ["T1"]
        assert trip_store.trips["T1"].status == TripStatus.UPCOMING


class TestInvalidActions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [TripStatus.PENDING, TripStatus.CANCELLED])
    async def test_complete_leaves_trip_unmodified(self, coordinator, trip_store, status):
        before = make_trip("T1", status=status)
        add(trip_store, before)

        with pytest.raises(InvalidTransition):
            await coordinator.apply_action("T1", TripAction.COMPLETE, DISPATCHER)
        assert trip_store.trips["T1"] == before
        assert trip_store.writes == []

    @pytest.mark.asyncio
    async def test_unknown_trip(self, coordinator):
        with pytest.raises(NotFound):
            await coordinator.apply_action("missing", TripAction.APPROVE, DISPATCHER)

    @pytest.mark.asyncio
    async def test_non_staff_role_is_forbidden(self, coordinator, trip_store):
        add(trip_store, make_trip("T1"))
        with pytest.raises(Forbidden):
            await coordinator.apply_action("T1", TripAction.APPROVE, Role.CLIENT)

    @pytest.mark.asyncio
    async def test_driver_actions_are_not_staff_actions(self, coordinator, trip_store):
        add(trip_store, make_trip("T1", status=TripStatus.AWAITING_DRIVER_ACCEPTANCE, driver_id="D1"))
        with pytest.raises(InvalidTransition):
            await coordinator.apply_action("T1", TripAction.DRIVER_ACCEPT, DISPATCHER)


class TestDriverReconciliation:
    @pytest.mark.asyncio
    async def test_complete_keeps_driver_busy_while_other_trip_active(
        self, coordinator, trip_store, driver_store
    ):
        add_driver(driver_store, "D1")
        add(
            trip_store,
            make_trip("T3", status=TripStatus.UPCOMING, driver_id="D1"),
            make_trip("T4", status=TripStatus.IN_PROGRESS, driver_id="D1"),
        )

        result = await coordinator.apply_action("T3", TripAction.COMPLETE, DISPATCHER)

        assert result.trip.status == TripStatus.COMPLETED
        assert result.trip.completed_at == NOW
        assert driver_store.drivers["D1"].status == DriverStatus.ON_TRIP

    @pytest.mark.asyncio
    async def test_completing_last_trip_frees_driver(
        self, coordinator, trip_store, driver_store
    ):
        add_driver(driver_store, "D1")
        add(
            trip_store,
            make_trip("T3", status=TripStatus.UPCOMING, driver_id="D1"),
            make_trip("T4", status=TripStatus.IN_PROGRESS, driver_id="D1"),
        )

        await coordinator.apply_action("T3", TripAction.COMPLETE, DISPATCHER)
        assert driver_store.drivers["D1"].status == DriverStatus.ON_TRIP
        await coordinator.apply_action("T4", TripAction.COMPLETE, DISPATCHER)

        assert driver_store.drivers["D1"].status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_admin_cancel_frees_driver(self, coordinator, trip_store, driver_store):
        add_driver(driver_store, "D1")
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING, driver_id="D1"))

        result = await coordinator.apply_action(
            "T1", TripAction.ADMIN_CANCEL, Role.ADMIN, reason="Rider hospitalised"
        )

        assert result.trip.status == TripStatus.CANCELLED
        assert result.trip.cancellation_reason == "Rider hospitalised"
        assert driver_store.drivers["D1"].status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_reconciliation_failure_does_not_fail_transition(
        self, trip_store, payments, notifier, caplog
    ):
        drivers = BrokenDriverStore(trip_store)
        add_driver(drivers, "D1")
        coordinator = TripLifecycleCoordinator(
            trip_store, drivers, payments, notifier, clock=lambda: NOW
        )
        add(trip_store, make_trip("T1", status=TripStatus.IN_PROGRESS, driver_id="D1"))

        result = await coordinator.apply_action("T1", TripAction.COMPLETE, DISPATCHER)

        assert result.trip.status == TripStatus.COMPLETED
        assert trip_store.trips["T1"].status == TripStatus.COMPLETED
        assert "not reconciled" in caplog.text


class TestDriverAssignment:
    @pytest.mark.asyncio
    async def test_assign_marks_driver_on_trip(self, coordinator, trip_store, driver_store):
        add_driver(driver_store, "D1", DriverStatus.AVAILABLE)
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING))

        result = await coordinator.assign_driver("T1", "D1", DISPATCHER)

        assert result.trip.driver_id == "D1"
        assert result.trip.status == TripStatus.UPCOMING
        assert driver_store.drivers["D1"].status == DriverStatus.ON_TRIP

    @pytest.mark.asyncio
    async def test_inactive_driver_is_refused(self, coordinator, trip_store, driver_store):
        add_driver(driver_store, "D1", DriverStatus.INACTIVE)
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING))

        with pytest.raises(DriverUnavailable):
            await coordinator.assign_driver("T1", "D1", DISPATCHER)
        assert trip_store.trips["T1"].driver_id is None

    @pytest.mark.asyncio
    async def test_unknown_driver(self, coordinator, trip_store):
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING))
        with pytest.raises(NotFound):
            await coordinator.assign_driver("T1", "nobody", DISPATCHER)

    @pytest.mark.asyncio
    async def test_pending_trip_cannot_be_assigned(self, coordinator, trip_store, driver_store):
        add_driver(driver_store, "D1", DriverStatus.AVAILABLE)
        add(trip_store, make_trip("T1"))
        with pytest.raises(InvalidTransition):
            await coordinator.assign_driver("T1", "D1", DISPATCHER)

    @pytest.mark.asyncio
    async def test_decline_releases_driver(self, trip_store, driver_store, payments, notifier):
        coordinator = TripLifecycleCoordinator(
            trip_store,
            driver_store,
            payments,
            notifier,
            require_driver_confirmation=True,
            clock=lambda: NOW,
        )
        add_driver(driver_store, "D1", DriverStatus.AVAILABLE)
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING))

        assigned = await coordinator.assign_driver("T1", "D1", DISPATCHER)
        assert assigned.trip.status == TripStatus.AWAITING_DRIVER_ACCEPTANCE
        result = await coordinator.respond_to_assignment("T1", "D1", accept=False)

        assert result.trip.status == TripStatus.UPCOMING
        assert result.trip.driver_id is None
        assert result.trip.rejected_by_driver_id == "D1"
        assert driver_store.drivers["D1"].status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_accept_starts_trip(self, coordinator, trip_store, driver_store):
        add_driver(driver_store, "D1")
        add(
            trip_store,
            make_trip("T1", status=TripStatus.AWAITING_DRIVER_ACCEPTANCE, driver_id="D1"),
        )

        result = await coordinator.respond_to_assignment("T1", "D1", accept=True)

        assert result.trip.status == TripStatus.IN_PROGRESS
        assert driver_store.drivers["D1"].status == DriverStatus.ON_TRIP

    @pytest.mark.asyncio
    async def test_other_driver_cannot_respond(self, coordinator, trip_store):
        add(
            trip_store,
            make_trip("T1", status=TripStatus.AWAITING_DRIVER_ACCEPTANCE, driver_id="D1"),
        )
        with pytest.raises(AssignmentMismatch):
            await coordinator.respond_to_assignment("T1", "D2", accept=True)


class TestCompletionSideEffects:
    @pytest.mark.asyncio
    async def test_individual_trip_is_invoiced(self, coordinator, trip_store, invoices):
        add(trip_store, make_trip("T1", status=TripStatus.IN_PROGRESS, driver_id=None))

        await coordinator.apply_action("T1", TripAction.COMPLETE, DISPATCHER)

        assert invoices.invoiced == ["T1"]

    @pytest.mark.asyncio
    async def test_completed_at_only_on_completed_trips(self, coordinator, trip_store):
        add(
            trip_store,
            make_trip("T1", status=TripStatus.UPCOMING),
            make_trip("T2"),
        )
        await coordinator.apply_action("T1", TripAction.COMPLETE, DISPATCHER)
        await coordinator.apply_action("T2", TripAction.REJECT, DISPATCHER)

        for trip in trip_store.trips.values():
            assert (trip.status == TripStatus.COMPLETED) == (trip.completed_at is not None)


class TestNotifications:
    @pytest.mark.asyncio
    async def test_one_event_per_committed_outcome(self, coordinator, trip_store, notifier):
        add(trip_store, make_trip("T1"))

        await coordinator.apply_action("T1", TripAction.APPROVE, DISPATCHER)
        await coordinator.drain()

        assert notifier.kinds() == ["T1:upcoming"]
        assert notifier.events[0].previous_status == TripStatus.PENDING

    @pytest.mark.asyncio
    async def test_notification_failure_is_not_surfaced(
        self, trip_store, driver_store, payments, caplog
    ):
        failing = FailingNotifier()
        coordinator = TripLifecycleCoordinator(
            trip_store, driver_store, payments, failing, clock=lambda: NOW
        )
        add(trip_store, make_trip("T1"))

        result = await coordinator.apply_action("T1", TripAction.REJECT, DISPATCHER)
        await coordinator.drain()

        assert result.trip.status == TripStatus.CANCELLED
        assert failing.calls == 1
        assert "Notification failed for trip T1" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_event_carries_released_driver(
        self, coordinator, trip_store, driver_store, notifier
    ):
        add_driver(driver_store, "D1")
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING, driver_id="D1"))

        await coordinator.apply_action("T1", TripAction.ADMIN_CANCEL, Role.ADMIN)
        await coordinator.drain()

        assert notifier.events[0].driver_id == "D1"
        assert notifier.events[0].reason == "Cancelled by dispatcher"


class TestTripCreation:
    @pytest.mark.asyncio
    async def test_dual_linked_trip_is_refused(self, coordinator, trip_store):
        with pytest.raises(InvalidTripLinkage):
            await coordinator.create_trip(make_trip(None, facility_id="fac-1"))
        assert trip_store.trips == {}

    @pytest.mark.asyncio
    async def test_created_trip_is_pending(self, coordinator, trip_store, notifier):
        trip = await coordinator.create_trip(
            make_trip(None, status=TripStatus.UPCOMING)
        )
        await coordinator.drain()

        assert trip.id in trip_store.trips
        assert trip.status == TripStatus.PENDING
        assert notifier.events[0].action == "created"


class TestPaymentReminders:
    @pytest.mark.asyncio
    async def test_reminder_increments_count(self, coordinator, trip_store, payments):
        add(
            trip_store,
            make_trip(
                "T1",
                status=TripStatus.PAYMENT_FAILED,
                payment_failure_reason=PaymentFailureReason.DECLINED,
            ),
        )

        trip = await coordinator.send_payment_reminder("T1", DISPATCHER)

        assert trip.payment_reminder_count == 1
        assert trip.payment_reminder_sent_at == NOW
        assert payments.reminders == ["T1"]

    @pytest.mark.asyncio
    async def test_reminder_cap(self, coordinator, trip_store, payments):
        add(
            trip_store,
            make_trip(
                "T1",
                status=TripStatus.PAYMENT_FAILED,
                payment_failure_reason=PaymentFailureReason.DECLINED,
                payment_reminder_count=3,
            ),
        )

        with pytest.raises(InvalidTransition, match="Already sent 3"):
            await coordinator.send_payment_reminder("T1", DISPATCHER)
        assert payments.reminders == []

    @pytest.mark.asyncio
    async def test_no_reminder_for_gateway_errors(self, coordinator, trip_store):
        add(
            trip_store,
            make_trip(
                "T1",
                status=TripStatus.PAYMENT_FAILED,
                payment_failure_reason=PaymentFailureReason.GATEWAY_ERROR,
            ),
        )
        with pytest.raises(InvalidTransition):
            await coordinator.send_payment_reminder("T1", DISPATCHER)

    @pytest.mark.asyncio
    async def test_no_reminder_for_upcoming_trip(self, coordinator, trip_store):
        add(trip_store, make_trip("T1", status=TripStatus.UPCOMING))
        with pytest.raises(InvalidTransition):
            await coordinator.send_payment_reminder("T1", DISPATCHER)
