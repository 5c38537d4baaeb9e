"""Initial schema: profiles, facilities, trips, invoices, notifications.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

TRIP_STATUSES = (
    "pending",
    "approved_pending_payment",
    "payment_failed",
    "upcoming",
    "awaiting_driver_acceptance",
    "in_progress",
    "completed",
    "cancelled",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    # ── facilities ────────────────────────────────────────────────────
    op.create_table(
        "facilities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("phone_number", sa.String(40), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )

    # ── profiles ──────────────────────────────────────────────────────
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "role",
            sa.Enum(
                "dispatcher", "admin", "driver", "facility", "client",
                name="user_role",
            ),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(120), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(120), nullable=False, server_default=""),
        sa.Column("email", sa.String(255), unique=True, nullable=True),
        sa.Column("phone_number", sa.String(40), nullable=True),
        sa.Column(
            "status",
            sa.Enum("available", "on_trip", "inactive", name="driver_status"),
            nullable=True,
        ),
        sa.Column(
            "facility_id", sa.String(36), sa.ForeignKey("facilities.id"), nullable=True
        ),
        sa.Column("expo_push_token", sa.String(255), nullable=True),
        sa.Column(
            "push_notifications_enabled",
            sa.Boolean,
            nullable=False,
            server_default=sa.true(),
        ),
        *_timestamps(),
    )
    op.create_index("idx_profiles_role", "profiles", ["role"])
    op.create_index("idx_profiles_status", "profiles", ["status"])
    op.create_index("idx_profiles_facility", "profiles", ["facility_id"])

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column(
            "facility_id", sa.String(36), sa.ForeignKey("facilities.id"), nullable=True
        ),
        sa.Column("managed_client_id", sa.String(36), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*TRIP_STATUSES, name="trip_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("pickup_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_address", sa.Text, nullable=True),
        sa.Column("destination_address", sa.Text, nullable=True),
        sa.Column("passenger_email", sa.String(255), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column(
            "payment_status",
            sa.Enum("pending", "paid", "failed", "facility_billing", name="payment_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_method_id", sa.String(255), nullable=True),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("payment_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("payment_error", sa.Text, nullable=True),
        sa.Column(
            "payment_failure_reason",
            sa.Enum("declined", "gateway_error", name="payment_failure_reason"),
            nullable=True,
        ),
        sa.Column(
            "payment_retry_eligible", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("payment_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "payment_reminder_count", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column("payment_reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("charged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "driver_id", sa.String(36), sa.ForeignKey("profiles.id"), nullable=True
        ),
        sa.Column("driver_acceptance_status", sa.String(20), nullable=True),
        sa.Column("rejected_by_driver_id", sa.String(36), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "NOT (user_id IS NOT NULL AND facility_id IS NOT NULL)",
            name="ck_trips_single_owner",
        ),
        sa.CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_trips_completed_at",
        ),
        sa.CheckConstraint("price >= 0", name="ck_trips_price_non_negative"),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_driver_status", "trips", ["driver_id", "status"])
    op.create_index("idx_trips_facility", "trips", ["facility_id"])
    op.create_index("idx_trips_user", "trips", ["user_id"])

    # ── invoices ──────────────────────────────────────────────────────
    op.create_table(
        "invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("invoice_number", sa.String(40), unique=True, nullable=False),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column(
            "facility_id", sa.String(36), sa.ForeignKey("facilities.id"), nullable=True
        ),
        sa.Column(
            "trip_id", sa.String(36), sa.ForeignKey("trips.id"), unique=True, nullable=True
        ),
        sa.Column("billing_month", sa.Date, nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "approved", "sent", "paid", "cancelled", "overdue",
                name="invoice_status",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("issue_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", sa.String(40), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("dispatcher_notes", sa.Text, nullable=True),
        sa.Column("approved_by", sa.String(36), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "facility_id", "billing_month", name="uq_invoices_facility_month"
        ),
        sa.CheckConstraint("amount >= 0", name="ck_invoices_amount_non_negative"),
    )
    op.create_index("idx_invoices_status", "invoices", ["status"])
    op.create_index("idx_invoices_facility", "invoices", ["facility_id"])

    # ── notifications ─────────────────────────────────────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("app_type", sa.String(20), nullable=False),
        sa.Column("notification_type", sa.String(20), nullable=False, server_default="trip"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("data", sa.JSON, nullable=True),
        sa.Column("idempotency_key", sa.String(160), nullable=True),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.UniqueConstraint(
            "user_id", "idempotency_key", name="uq_notifications_recipient_key"
        ),
    )
    op.create_index(
        "idx_notifications_user_read", "notifications", ["user_id", "read"]
    )


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("invoices")
    op.drop_table("trips")
    op.drop_table("profiles")
    op.drop_table("facilities")
    for enum_name in (
        "invoice_status",
        "payment_failure_reason",
        "payment_status",
        "trip_status",
        "driver_status",
        "user_role",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
