"""Error taxonomy shared by the coordinator, the stores and the API layer."""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for every domain error."""


class NotFound(DispatchError):
    """The referenced trip, driver or invoice does not exist."""


class InvalidTransition(DispatchError):
    """Action is not legal from the trip's current status."""


class RetryLimitExceeded(InvalidTransition):
    """The trip has used up its payment attempts."""


class ConflictingTransition(DispatchError):
    """A compare-and-swap lost a race; re-read the trip before retrying."""

    def __init__(self, trip_id: str, expected_status: str):
        super().__init__(
            f"Trip {trip_id} is no longer in status {expected_status}"
        )
        self.trip_id = trip_id
        self.expected_status = expected_status


class PaymentDeclined(DispatchError):
    """The payer's card was declined; not retried automatically."""


class PaymentGatewayError(DispatchError):
    """The payment service timed out, was unreachable or failed internally."""


class PaymentServiceRejected(PaymentGatewayError):
    """The payment service refused our request (credentials or trip lookup).

    Retrying the same request cannot succeed, but the trip stays
    retry-eligible once the service side is fixed.
    """


class DriverReconciliationFailure(DispatchError):
    """Driver availability could not be reconciled after a transition."""


class NotificationFailure(DispatchError):
    """A notification could not be delivered."""


class InvalidTripLinkage(DispatchError):
    """A trip must belong to exactly one of a rider or a facility."""


class DriverUnavailable(DispatchError):
    """The driver is inactive and cannot take trips."""


class AssignmentMismatch(DispatchError):
    """The responding driver is not the one assigned to the trip."""


class InvalidInvoiceTransition(DispatchError):
    """Invoice status change violates the invoice state machine."""


class Unauthorized(DispatchError):
    """Missing, invalid or expired credentials."""


class Forbidden(DispatchError):
    """Authenticated, but the role may not perform this operation."""
