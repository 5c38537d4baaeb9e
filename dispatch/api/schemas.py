"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from dispatch.domain.enums import (
    DriverStatus,
    InvoiceStatus,
    PaymentFailureReason,
    PaymentStatus,
    TripAction,
    TripStatus,
)


# ── Requests ──────────────────────────────────────────────────────────


class TripCreateRequest(BaseModel):
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    managed_client_id: Optional[str] = None
    pickup_time: Optional[datetime] = None
    pickup_address: Optional[str] = Field(None, max_length=500)
    destination_address: Optional[str] = Field(None, max_length=500)
    passenger_email: Optional[str] = Field(None, max_length=255)
    price: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    payment_method_id: Optional[str] = None


class TripActionRequest(BaseModel):
    action: TripAction
    reason: Optional[str] = Field(None, max_length=500)


class AssignDriverRequest(BaseModel):
    driver_id: str


class DriverResponseRequest(BaseModel):
    accept: bool


class DriverStatusRequest(BaseModel):
    status: DriverStatus


class InvoiceCreateRequest(BaseModel):
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    trip_id: Optional[str] = None
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    status: InvoiceStatus = InvoiceStatus.PENDING
    due_date: Optional[datetime] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class InvoiceUpdateRequest(BaseModel):
    status: InvoiceStatus
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class FacilityMonthlyRequest(BaseModel):
    facility_id: str
    month: date = Field(..., description="Any day of the billing month.")


class InvoiceReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    notes: Optional[str] = None


# ── Responses ─────────────────────────────────────────────────────────


class TripResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    managed_client_id: Optional[str] = None
    status: TripStatus
    price: Optional[Decimal] = None
    payment_status: Optional[PaymentStatus] = None
    payment_intent_id: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_error: Optional[str] = None
    payment_failure_reason: Optional[PaymentFailureReason] = None
    payment_retry_eligible: bool = False
    payment_attempts: int = 0
    payment_reminder_count: int = 0
    pickup_time: Optional[datetime] = None
    pickup_address: Optional[str] = None
    destination_address: Optional[str] = None
    driver_id: Optional[str] = None
    driver_acceptance_status: Optional[str] = None
    cancellation_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "use_enum_values": True}


class PaymentOutcome(BaseModel):
    captured: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    retry_eligible: bool = False
    attempts: int = 1


class ActionResponse(BaseModel):
    success: bool = True
    trip: TripResponse
    replayed: bool = False
    payment: Optional[PaymentOutcome] = None
    warning: Optional[str] = None


class DriverResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    status: Optional[DriverStatus] = None

    model_config = {"from_attributes": True, "use_enum_values": True}


class AuditResponse(BaseModel):
    checked_drivers: int
    released_drivers: list[str]
    overdue_invoices: int
    parked_trips: list[str] = []


class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    user_id: Optional[str] = None
    facility_id: Optional[str] = None
    trip_id: Optional[str] = None
    billing_month: Optional[date] = None
    amount: Decimal
    status: InvoiceStatus
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    payment_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    dispatcher_notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "use_enum_values": True}


class InvoiceSummaryResponse(BaseModel):
    total_invoices: int
    total_amount: Decimal
    pending_count: int
    paid_count: int
    overdue_count: int


class InvoiceListResponse(BaseModel):
    invoices: list[InvoiceResponse]
    summary: InvoiceSummaryResponse


class NotificationResponse(BaseModel):
    id: str
    app_type: str
    notification_type: str
    title: str
    body: str
    data: Optional[dict] = None
    read: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
