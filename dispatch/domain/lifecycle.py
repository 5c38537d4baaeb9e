"""
Trip lifecycle planning
=======================

Pure functions that turn ``(trip, action)`` into a ``TransitionPlan``: the
status the trip is expected to be in, the status it moves to and the column
patch to write.  Nothing here touches storage; the coordinator applies a plan
as a single compare-and-swap keyed by ``(trip.id, plan.from_status)``.

Happy path::

    pending -> approved_pending_payment -> upcoming
            -> [awaiting_driver_acceptance] -> in_progress -> completed

Alternate paths: ``pending -> cancelled`` (reject),
``approved_pending_payment -> payment_failed -> approved_pending_payment``
(retry) and ``admin_cancel`` from any non-terminal status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .entities import PaymentResult, Trip
from .enums import (
    APPROVED_STATUSES,
    PAYMENT_OUTCOMES,
    TRIP_TRANSITIONS,
    PaymentStatus,
    TripAction,
    TripStatus,
)
from .errors import InvalidTransition, RetryLimitExceeded

DEFAULT_REJECTION_REASON = "Rejected by dispatcher"
DEFAULT_CANCELLATION_REASON = "Cancelled by dispatcher"


@dataclass(frozen=True)
class TransitionPlan:
    action: TripAction
    from_status: TripStatus
    to_status: TripStatus
    patch: dict[str, Any] = field(default_factory=dict)
    noop: bool = False


def next_status(current: TripStatus, action: TripAction) -> TripStatus:
    """Look up the transition table, raising ``InvalidTransition`` on a miss."""
    try:
        return TRIP_TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(
            f"Cannot {action.value} a trip in status {current.value}"
        ) from None


def plan_transition(
    trip: Trip,
    action: TripAction,
    *,
    now: datetime,
    reason: Optional[str] = None,
    driver_id: Optional[str] = None,
    max_payment_attempts: int = 3,
    require_driver_confirmation: bool = False,
) -> TransitionPlan:
    """Validate *action* against *trip* and describe the resulting write."""
    current = trip.status

    # Duplicate approvals return the current state instead of charging twice
    if action == TripAction.APPROVE and current in APPROVED_STATUSES:
        return TransitionPlan(action, current, current, noop=True)

    target = next_status(current, action)
    patch: dict[str, Any] = {"status": target, "updated_at": now}

    if action in (TripAction.APPROVE, TripAction.RETRY_APPROVE):
        if action == TripAction.RETRY_APPROVE and trip.payment_attempts >= max_payment_attempts:
            raise RetryLimitExceeded(
                f"Trip {trip.id} already used {trip.payment_attempts} of "
                f"{max_payment_attempts} payment attempts"
            )
        patch.update(
            approved_at=trip.approved_at or now,
            payment_attempts=trip.payment_attempts
            + (1 if trip.requires_capture else 0),
            payment_failure_reason=None,
            payment_retry_eligible=False,
            payment_error=None,
        )

    elif action == TripAction.REJECT:
        patch.update(
            cancellation_reason=reason or DEFAULT_REJECTION_REASON,
            cancelled_at=now,
        )

    elif action == TripAction.ADMIN_CANCEL:
        patch.update(
            cancellation_reason=reason or DEFAULT_CANCELLATION_REASON,
            cancelled_at=now,
        )

    elif action == TripAction.COMPLETE:
        patch["completed_at"] = now

    elif action == TripAction.START:
        if trip.driver_id is None:
            raise InvalidTransition(
                f"Trip {trip.id} cannot start without an assigned driver"
            )

    elif action == TripAction.ASSIGN_DRIVER:
        if driver_id is None:
            raise InvalidTransition("A driver is required for assignment")
        if trip.driver_id is not None:
            raise InvalidTransition(
                f"Trip {trip.id} is already assigned to driver {trip.driver_id}"
            )
        if require_driver_confirmation:
            target = TripStatus.AWAITING_DRIVER_ACCEPTANCE
            patch["status"] = target
        patch.update(
            driver_id=driver_id,
            driver_acceptance_status="pending" if require_driver_confirmation else "accepted",
        )

    elif action == TripAction.DRIVER_ACCEPT:
        patch["driver_acceptance_status"] = "accepted"

    elif action == TripAction.DRIVER_DECLINE:
        patch.update(
            driver_id=None,
            driver_acceptance_status="declined",
            rejected_by_driver_id=trip.driver_id,
        )

    return TransitionPlan(action, current, target, patch)


def plan_payment_outcome(
    trip: Trip, result: Optional[PaymentResult], *, now: datetime
) -> TransitionPlan:
    """Finalize a reserved (``approved_pending_payment``) trip after capture.

    *result* is ``None`` when the trip is not charged on approval: facility
    bookings are billed monthly and bookings without a card are paid manually.
    """
    if trip.status not in PAYMENT_OUTCOMES:
        raise InvalidTransition(
            f"Trip {trip.id} is not awaiting payment (status {trip.status.value})"
        )

    patch: dict[str, Any] = {"updated_at": now}
    if result is None:
        target = TripStatus.UPCOMING
        patch["payment_status"] = (
            PaymentStatus.FACILITY_BILLING
            if trip.is_facility_booking
            else PaymentStatus.PENDING
        )
    elif result.captured:
        target = TripStatus.UPCOMING
        patch.update(
            payment_status=PaymentStatus.PAID,
            payment_intent_id=result.payment_intent_id,
            payment_amount=result.amount if result.amount is not None else trip.price,
            charged_at=now,
        )
    else:
        target = TripStatus.PAYMENT_FAILED
        patch.update(
            payment_status=PaymentStatus.FAILED,
            payment_failure_reason=result.reason,
            payment_retry_eligible=result.retry_eligible,
            payment_error=result.message,
        )

    assert target in PAYMENT_OUTCOMES[trip.status]
    patch["status"] = target
    return TransitionPlan(TripAction.APPROVE, trip.status, target, patch)
