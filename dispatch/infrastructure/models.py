"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``profiles``       -- every user: dispatchers, admins, drivers, facility staff, riders
* ``facilities``     -- healthcare facilities booking on behalf of managed clients
* ``trips``          -- transportation requests (aggregate root)
* ``invoices``       -- per-trip or per-facility-per-month billing records
* ``notifications``  -- in-app notification feed, one row per recipient

Constraints
-----------
* ``ck_trips_single_owner``: a trip never references both a rider and a facility.
* ``ck_trips_completed_at``: ``completed_at`` is set iff status is ``completed``.
* ``uq_invoices_facility_month``: one aggregate invoice per facility per month.
* ``uq_notifications_recipient_key``: a recipient stores an event at most once.

Indexes
-------
* **B-Tree** on ``status``, ``driver_id``, ``facility_id``, ``user_id`` for the
  dispatcher filters and for the driver reconciliation ``NOT EXISTS`` subquery.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .database import Base
from dispatch.domain.enums import (
    DriverStatus,
    InvoiceStatus,
    PaymentFailureReason,
    PaymentStatus,
    Role,
    TripStatus,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls, name: str) -> Enum:
    # Persist the lowercase values the hosted store already uses
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda e: [member.value for member in e],
        validate_strings=True,
    )


class FacilityModel(Base):
    __tablename__ = "facilities"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255), nullable=True)
    phone_number = Column(String(40), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ProfileModel(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    role = Column(_enum(Role, "user_role"), nullable=False)
    first_name = Column(String(120), nullable=False, default="")
    last_name = Column(String(120), nullable=False, default="")
    email = Column(String(255), unique=True, nullable=True)
    phone_number = Column(String(40), nullable=True)

    # Drivers only
    status = Column(_enum(DriverStatus, "driver_status"), nullable=True)

    # Facility staff only
    facility_id = Column(String(36), ForeignKey("facilities.id"), nullable=True)

    expo_push_token = Column(String(255), nullable=True)
    push_notifications_enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_profiles_role", "role"),
        Index("idx_profiles_status", "status"),
        Index("idx_profiles_facility", "facility_id"),
    )


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(String(36), primary_key=True, default=_uuid)

    # Exactly one owner: a rider (individual booking) or a facility
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    facility_id = Column(String(36), ForeignKey("facilities.id"), nullable=True)
    managed_client_id = Column(String(36), nullable=True)

    status = Column(
        _enum(TripStatus, "trip_status"), default=TripStatus.PENDING, nullable=False
    )

    pickup_time = Column(DateTime(timezone=True), nullable=True)
    pickup_address = Column(Text, nullable=True)
    destination_address = Column(Text, nullable=True)
    passenger_email = Column(String(255), nullable=True)

    # Financial
    price = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status = Column(
        _enum(PaymentStatus, "payment_status"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_method_id = Column(String(255), nullable=True)
    payment_intent_id = Column(String(255), nullable=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    payment_error = Column(Text, nullable=True)
    payment_failure_reason = Column(
        _enum(PaymentFailureReason, "payment_failure_reason"), nullable=True
    )
    payment_retry_eligible = Column(Boolean, default=False, nullable=False)
    payment_attempts = Column(Integer, default=0, nullable=False)
    payment_reminder_count = Column(Integer, default=0, nullable=False)
    payment_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    charged_at = Column(DateTime(timezone=True), nullable=True)

    # Assignment
    driver_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    driver_acceptance_status = Column(String(20), nullable=True)
    rejected_by_driver_id = Column(String(36), nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "NOT (user_id IS NOT NULL AND facility_id IS NOT NULL)",
            name="ck_trips_single_owner",
        ),
        CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_trips_completed_at",
        ),
        CheckConstraint("price >= 0", name="ck_trips_price_non_negative"),
        Index("idx_trips_status", "status"),
        Index("idx_trips_driver_status", "driver_id", "status"),
        Index("idx_trips_facility", "facility_id"),
        Index("idx_trips_user", "user_id"),
    )


class InvoiceModel(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    invoice_number = Column(String(40), unique=True, nullable=False)

    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    facility_id = Column(String(36), ForeignKey("facilities.id"), nullable=True)
    trip_id = Column(String(36), ForeignKey("trips.id"), unique=True, nullable=True)
    billing_month = Column(Date, nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(
        _enum(InvoiceStatus, "invoice_status"),
        default=InvoiceStatus.PENDING,
        nullable=False,
    )
    issue_date = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(String(40), nullable=True)
    description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    dispatcher_notes = Column(Text, nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "facility_id", "billing_month", name="uq_invoices_facility_month"
        ),
        CheckConstraint("amount >= 0", name="ck_invoices_amount_non_negative"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_facility", "facility_id"),
    )


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    app_type = Column(String(20), nullable=False)
    notification_type = Column(String(20), nullable=False, default="trip")
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    idempotency_key = Column(String(160), nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "user_id", "idempotency_key", name="uq_notifications_recipient_key"
        ),
        Index("idx_notifications_user_read", "user_id", "read"),
    )
