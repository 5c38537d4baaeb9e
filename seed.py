"""
Seed script -- populates the database with sample data for local development.

Run after migrations:
    python seed.py

Creates:
  - 2 facilities with one staff member each
  - 1 admin, 2 dispatchers, 4 drivers, 4 riders
  - 10 sample trips covering every lifecycle status
  - 1 invoice for the completed individual trip
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select

from dispatch.config import settings
from dispatch.domain import billing
from dispatch.domain.enums import (
    DriverStatus,
    InvoiceStatus,
    PaymentFailureReason,
    PaymentStatus,
    Role,
    TripStatus,
)
from dispatch.infrastructure.database import async_session_factory, engine
from dispatch.infrastructure.models import (
    FacilityModel,
    InvoiceModel,
    ProfileModel,
    TripModel,
)

FACILITIES = [
    {"name": "Riverside Dialysis Center", "contact_email": "billing@riverside.example"},
    {"name": "Oak Hill Senior Living", "contact_email": "office@oakhill.example"},
]

STAFF = [
    {"role": Role.ADMIN, "first_name": "Alex", "last_name": "Morgan"},
    {"role": Role.DISPATCHER, "first_name": "Jordan", "last_name": "Lee"},
    {"role": Role.DISPATCHER, "first_name": "Sam", "last_name": "Rivera"},
]

DRIVERS = [
    {"first_name": "Chris", "last_name": "Walker", "status": DriverStatus.ON_TRIP},
    {"first_name": "Taylor", "last_name": "Brooks", "status": DriverStatus.ON_TRIP},
    {"first_name": "Jamie", "last_name": "Ortiz", "status": DriverStatus.AVAILABLE},
    {"first_name": "Robin", "last_name": "Chen", "status": DriverStatus.INACTIVE},
]

RIDERS = [
    {"first_name": "Pat", "last_name": "Kim"},
    {"first_name": "Casey", "last_name": "Nguyen"},
    {"first_name": "Drew", "last_name": "Patel"},
    {"first_name": "Morgan", "last_name": "Diaz"},
]

ADDRESSES = [
    ("12 Elm St", "Riverside Dialysis Center"),
    ("400 Main St Apt 3", "St. Mary's Hospital"),
    ("Oak Hill Senior Living", "Westside Cardiology"),
    ("88 Lake Rd", "City Physical Therapy"),
]


def _email(first: str, last: str) -> str:
    return f"{first}.{last}@example.com".lower()


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(select(func.count()).select_from(ProfileModel))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        now = datetime.now(timezone.utc)

        # ── Facilities and profiles ───────────────────────────────────
        facilities = [FacilityModel(**f) for f in FACILITIES]
        session.add_all(facilities)
        await session.flush()
        print(f"  Created {len(facilities)} facilities")

        staff = [
            ProfileModel(email=_email(s["first_name"], s["last_name"]), **s)
            for s in STAFF
        ]
        facility_staff = [
            ProfileModel(
                role=Role.FACILITY,
                first_name="Front",
                last_name=f"Desk {i + 1}",
                email=f"frontdesk{i + 1}@example.com",
                facility_id=f.id,
            )
            for i, f in enumerate(facilities)
        ]
        drivers = [
            ProfileModel(
                role=Role.DRIVER, email=_email(d["first_name"], d["last_name"]), **d
            )
            for d in DRIVERS
        ]
        riders = [
            ProfileModel(
                role=Role.CLIENT, email=_email(r["first_name"], r["last_name"]), **r
            )
            for r in RIDERS
        ]
        session.add_all(staff + facility_staff + drivers + riders)
        await session.flush()
        print(
            f"  Created {len(staff) + len(facility_staff)} staff, "
            f"{len(drivers)} drivers, {len(riders)} riders"
        )

        # ── Trips ─────────────────────────────────────────────────────
        def trip(i: int, status: TripStatus, **kwargs) -> TripModel:
            pickup, destination = ADDRESSES[i % len(ADDRESSES)]
            return TripModel(
                status=status,
                pickup_time=now + timedelta(days=1, hours=i),
                pickup_address=pickup,
                destination_address=destination,
                **kwargs,
            )

        trips = [
            trip(0, TripStatus.PENDING, user_id=riders[0].id, price=Decimal("42.50"),
                 payment_method_id="pm_card_visa"),
            trip(1, TripStatus.PENDING, facility_id=facilities[0].id,
                 managed_client_id="mc-001", price=Decimal("65.00")),
            trip(2, TripStatus.PAYMENT_FAILED, user_id=riders[1].id,
                 price=Decimal("38.00"), payment_method_id="pm_card_declined",
                 payment_status=PaymentStatus.FAILED,
                 payment_failure_reason=PaymentFailureReason.DECLINED,
                 payment_error="Your card was declined.", payment_attempts=1),
            trip(3, TripStatus.UPCOMING, user_id=riders[2].id, price=Decimal("55.25"),
                 payment_method_id="pm_card_visa", payment_status=PaymentStatus.PAID,
                 payment_intent_id="pi_seed_0001", payment_amount=Decimal("55.25"),
                 charged_at=now, approved_at=now, payment_attempts=1),
            trip(4, TripStatus.UPCOMING, facility_id=facilities[1].id,
                 price=Decimal("70.00"), payment_status=PaymentStatus.FACILITY_BILLING,
                 approved_at=now, driver_id=drivers[0].id,
                 driver_acceptance_status="accepted"),
            trip(5, TripStatus.IN_PROGRESS, facility_id=facilities[0].id,
                 price=Decimal("48.00"), payment_status=PaymentStatus.FACILITY_BILLING,
                 approved_at=now, driver_id=drivers[1].id,
                 driver_acceptance_status="accepted"),
            trip(6, TripStatus.COMPLETED, user_id=riders[3].id, price=Decimal("31.75"),
                 payment_method_id="pm_card_visa", payment_status=PaymentStatus.PAID,
                 payment_intent_id="pi_seed_0002", payment_amount=Decimal("31.75"),
                 charged_at=now - timedelta(days=3), approved_at=now - timedelta(days=3),
                 completed_at=now - timedelta(days=2), payment_attempts=1),
            trip(7, TripStatus.COMPLETED, facility_id=facilities[0].id,
                 price=Decimal("60.00"), payment_status=PaymentStatus.FACILITY_BILLING,
                 approved_at=now - timedelta(days=5), completed_at=now - timedelta(days=4)),
            trip(8, TripStatus.CANCELLED, user_id=riders[0].id, price=Decimal("29.00"),
                 cancellation_reason="Rider rescheduled", cancelled_at=now),
            trip(9, TripStatus.PENDING, user_id=riders[3].id, price=Decimal("25.00")),
        ]
        session.add_all(trips)
        await session.flush()
        print(f"  Created {len(trips)} trips")

        # ── Invoices ──────────────────────────────────────────────────
        completed = trips[6]
        session.add(
            InvoiceModel(
                invoice_number=billing.generate_invoice_number(now),
                user_id=completed.user_id,
                trip_id=completed.id,
                amount=completed.price,
                status=InvoiceStatus.PAID,
                issue_date=now,
                due_date=billing.due_date_for(now, settings.invoice_due_days),
                payment_date=completed.charged_at,
                description=f"Transportation service: {completed.pickup_address} → "
                f"{completed.destination_address}",
            )
        )
        await session.flush()
        print("  Created 1 invoice")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
