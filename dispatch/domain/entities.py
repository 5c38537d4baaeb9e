"""
Domain entities with business logic.

Patterns used
-------------
- **Aggregate root** ``Trip``: the unit every lifecycle transition is applied
  to.  ``Trip.validate_linkage`` enforces the individual / facility booking
  split at write time.
- ``Invoice.transition_to`` enforces the invoice state machine
  (terminal ``paid`` / ``cancelled`` are never left).
- Value objects ``PaymentResult`` and ``TransitionEvent`` carry the outcome
  of a capture and of a committed transition to the side-effect layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from .enums import (
    DRIVER_ACTIVE_STATUSES,
    INVOICE_TRANSITIONS,
    TERMINAL_STATUSES,
    DriverStatus,
    InvoiceStatus,
    PaymentFailureReason,
    PaymentStatus,
    Role,
    TripAction,
    TripStatus,
)
from .errors import (
    InvalidInvoiceTransition,
    InvalidTripLinkage,
    PaymentDeclined,
    PaymentGatewayError,
)


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Trip:
    id: Optional[str] = None
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    managed_client_id: Optional[str] = None
    status: TripStatus = TripStatus.PENDING
    price: Decimal = Decimal("0")
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_error: Optional[str] = None
    payment_failure_reason: Optional[PaymentFailureReason] = None
    payment_retry_eligible: bool = False
    payment_attempts: int = 0
    payment_reminder_count: int = 0
    payment_reminder_sent_at: Optional[datetime] = None
    charged_at: Optional[datetime] = None
    pickup_time: Optional[datetime] = None
    pickup_address: Optional[str] = None
    destination_address: Optional[str] = None
    passenger_email: Optional[str] = None
    driver_id: Optional[str] = None
    driver_acceptance_status: Optional[str] = None
    rejected_by_driver_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_facility_booking(self) -> bool:
        return self.facility_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def holds_driver(self) -> bool:
        """True while the assigned driver must be ``on_trip``."""
        return self.driver_id is not None and self.status in DRIVER_ACTIVE_STATUSES

    @property
    def requires_capture(self) -> bool:
        """Only individual bookings with a stored card are charged on approval."""
        return (
            self.user_id is not None
            and self.facility_id is None
            and self.payment_method_id is not None
        )

    def validate_linkage(self) -> None:
        """Raise unless the trip belongs to exactly one of a rider or a facility."""
        if self.user_id and self.facility_id:
            raise InvalidTripLinkage(
                "A trip cannot reference both a rider and a facility"
            )
        if not self.user_id and not self.facility_id:
            raise InvalidTripLinkage(
                "A trip must reference either a rider or a facility"
            )
        if self.managed_client_id and not self.facility_id:
            raise InvalidTripLinkage(
                "A managed client can only book through a facility"
            )
        if self.price < 0:
            raise InvalidTripLinkage("Trip price cannot be negative")

    def with_patch(self, patch: dict[str, Any]) -> "Trip":
        return replace(self, **patch)


@dataclass
class DriverProfile:
    id: str
    first_name: str = ""
    last_name: str = ""
    status: DriverStatus = DriverStatus.AVAILABLE

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Invoice:
    id: Optional[str] = None
    invoice_number: str = ""
    amount: Decimal = Decimal("0")
    status: InvoiceStatus = InvoiceStatus.PENDING
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    trip_id: Optional[str] = None
    billing_month: Optional[date] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None

    def transition_to(self, new_status: InvoiceStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = INVOICE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidInvoiceTransition(
                f"Cannot move invoice from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class PaymentResult:
    captured: bool
    reason: Optional[PaymentFailureReason] = None
    payment_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    message: Optional[str] = None
    attempts: int = 1

    @property
    def retry_eligible(self) -> bool:
        return self.reason == PaymentFailureReason.GATEWAY_ERROR

    @classmethod
    def success(
        cls, payment_intent_id: Optional[str], amount: Optional[Decimal], attempts: int = 1
    ) -> "PaymentResult":
        return cls(
            captured=True,
            payment_intent_id=payment_intent_id,
            amount=amount,
            attempts=attempts,
        )

    @classmethod
    def declined(cls, message: str, attempts: int = 1) -> "PaymentResult":
        return cls(
            captured=False,
            reason=PaymentFailureReason.DECLINED,
            message=message,
            attempts=attempts,
        )

    @classmethod
    def gateway_error(cls, message: str, attempts: int = 1) -> "PaymentResult":
        return cls(
            captured=False,
            reason=PaymentFailureReason.GATEWAY_ERROR,
            message=message,
            attempts=attempts,
        )


@dataclass(frozen=True)
class TransitionEvent:
    trip_id: str
    action: TripAction | str
    previous_status: Optional[TripStatus]
    new_status: TripStatus
    occurred_at: datetime
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    driver_id: Optional[str] = None
    reason: Optional[str] = None
    actor_role: Optional[Role] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"{self.trip_id}:{self.new_status.value}"

    @classmethod
    def for_trip(
        cls,
        trip: Trip,
        action: TripAction | str,
        previous_status: Optional[TripStatus],
        occurred_at: datetime,
        **kwargs: Any,
    ) -> "TransitionEvent":
        return cls(
            trip_id=trip.id,
            action=action,
            previous_status=previous_status,
            new_status=trip.status,
            occurred_at=occurred_at,
            user_id=trip.user_id,
            facility_id=trip.facility_id,
            driver_id=kwargs.pop("driver_id", trip.driver_id),
            **kwargs,
        )


@dataclass
class ActionResult:
    trip: Trip
    payment_result: Optional[PaymentResult] = None
    replayed: bool = False

    def raise_for_payment(self) -> None:
        """Raise the payment error, if any, for callers that prefer exceptions."""
        result = self.payment_result
        if result is None or result.captured:
            return
        if result.reason == PaymentFailureReason.DECLINED:
            raise PaymentDeclined(result.message or "Payment was declined")
        raise PaymentGatewayError(result.message or "Payment gateway error")
