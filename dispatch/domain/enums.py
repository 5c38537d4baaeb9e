"""Domain enumerations and state-transition rules."""

import enum


class TripStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED_PENDING_PAYMENT = "approved_pending_payment"
    PAYMENT_FAILED = "payment_failed"
    UPCOMING = "upcoming"
    AWAITING_DRIVER_ACCEPTANCE = "awaiting_driver_acceptance"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TripAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    RETRY_APPROVE = "retry_approve"
    ADMIN_CANCEL = "admin_cancel"
    START = "start"
    ASSIGN_DRIVER = "assign_driver"
    DRIVER_ACCEPT = "driver_accept"
    DRIVER_DECLINE = "driver_decline"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    FACILITY_BILLING = "facility_billing"


class PaymentFailureReason(str, enum.Enum):
    DECLINED = "declined"
    GATEWAY_ERROR = "gateway_error"


class DriverStatus(str, enum.Enum):
    AVAILABLE = "available"
    ON_TRIP = "on_trip"
    INACTIVE = "inactive"


class Role(str, enum.Enum):
    DISPATCHER = "dispatcher"
    ADMIN = "admin"
    DRIVER = "driver"
    FACILITY = "facility"
    CLIENT = "client"


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


STAFF_ROLES = frozenset({Role.DISPATCHER, Role.ADMIN})

TERMINAL_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED})

# A driver referenced by a trip in one of these is ``on_trip``
DRIVER_ACTIVE_STATUSES = frozenset(
    {
        TripStatus.UPCOMING,
        TripStatus.AWAITING_DRIVER_ACCEPTANCE,
        TripStatus.IN_PROGRESS,
    }
)

# ``approve`` on any of these is a no-op (duplicate submission)
APPROVED_STATUSES = frozenset(
    {
        TripStatus.APPROVED_PENDING_PAYMENT,
        TripStatus.UPCOMING,
        TripStatus.AWAITING_DRIVER_ACCEPTANCE,
        TripStatus.IN_PROGRESS,
    }
)

COMPLETABLE_STATUSES = frozenset(
    {
        TripStatus.UPCOMING,
        TripStatus.IN_PROGRESS,
        TripStatus.AWAITING_DRIVER_ACCEPTANCE,
    }
)


# State machine: (current status, action) -> next status
TRIP_TRANSITIONS: dict[tuple[TripStatus, TripAction], TripStatus] = {
    (TripStatus.PENDING, TripAction.APPROVE): TripStatus.APPROVED_PENDING_PAYMENT,
    (TripStatus.PENDING, TripAction.REJECT): TripStatus.CANCELLED,
    (TripStatus.PAYMENT_FAILED, TripAction.RETRY_APPROVE): TripStatus.APPROVED_PENDING_PAYMENT,
    (TripStatus.UPCOMING, TripAction.ASSIGN_DRIVER): TripStatus.UPCOMING,
    (TripStatus.UPCOMING, TripAction.START): TripStatus.IN_PROGRESS,
    (TripStatus.AWAITING_DRIVER_ACCEPTANCE, TripAction.DRIVER_ACCEPT): TripStatus.IN_PROGRESS,
    (TripStatus.AWAITING_DRIVER_ACCEPTANCE, TripAction.DRIVER_DECLINE): TripStatus.UPCOMING,
    **{(s, TripAction.COMPLETE): TripStatus.COMPLETED for s in COMPLETABLE_STATUSES},
    **{
        (s, TripAction.ADMIN_CANCEL): TripStatus.CANCELLED
        for s in TripStatus
        if s not in TERMINAL_STATUSES
    },
}

# Outcomes of the capture step; never requested by a caller directly
PAYMENT_OUTCOMES: dict[TripStatus, frozenset[TripStatus]] = {
    TripStatus.APPROVED_PENDING_PAYMENT: frozenset(
        {TripStatus.UPCOMING, TripStatus.PAYMENT_FAILED}
    ),
}


INVOICE_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.PENDING: {
        InvoiceStatus.APPROVED,
        InvoiceStatus.SENT,
        InvoiceStatus.PAID,
        InvoiceStatus.CANCELLED,
        InvoiceStatus.OVERDUE,
    },
    InvoiceStatus.APPROVED: {
        InvoiceStatus.SENT,
        InvoiceStatus.PAID,
        InvoiceStatus.CANCELLED,
    },
    InvoiceStatus.SENT: {
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.CANCELLED,
    },
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}
