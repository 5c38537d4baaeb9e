"""
Trip Lifecycle Coordinator
==========================

Validates and applies state transitions on a single trip, orchestrates
payment capture on approval, reconciles driver availability and fans out
notifications.

Ordering per transition
-----------------------
1. Read the trip and plan the transition (``dispatch.domain.lifecycle``).
2. Compare-and-swap on ``(trip id, expected status)``.  The trip status is
   the source of truth and is durable before anything else happens.
3. Approval only: capture payment, then a second compare-and-swap
   ``approved_pending_payment -> upcoming | payment_failed``.
4. Side effects, none of which can undo step 2:
   driver reconciliation (awaited, failures logged), invoice creation on
   completion (awaited, failures logged) and notification fan-out
   (fire-and-forget background task).

Concurrency
-----------
No in-process locks.  Two requests racing on the same trip both read it,
but only one compare-and-swap matches; the loser gets
``ConflictingTransition`` and must re-read before retrying.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from dispatch.domain.entities import ActionResult, PaymentResult, TransitionEvent, Trip
from dispatch.domain.enums import (
    STAFF_ROLES,
    DriverStatus,
    PaymentFailureReason,
    Role,
    TripAction,
    TripStatus,
)
from dispatch.domain.errors import (
    AssignmentMismatch,
    ConflictingTransition,
    DriverReconciliationFailure,
    DriverUnavailable,
    Forbidden,
    InvalidTransition,
    NotFound,
    PaymentGatewayError,
)
from dispatch.domain.lifecycle import plan_payment_outcome, plan_transition
from dispatch.domain.ports import (
    DriverStore,
    InvoiceStore,
    NotificationGateway,
    PaymentGateway,
    TripStore,
)

logger = logging.getLogger(__name__)

# Actions reachable through ``apply_action``
STAFF_ACTIONS = frozenset(
    {
        TripAction.APPROVE,
        TripAction.REJECT,
        TripAction.COMPLETE,
        TripAction.RETRY_APPROVE,
        TripAction.ADMIN_CANCEL,
        TripAction.START,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TripLifecycleCoordinator:
    def __init__(
        self,
        trips: TripStore,
        drivers: DriverStore,
        payments: PaymentGateway,
        notifier: NotificationGateway,
        invoices: Optional[InvoiceStore] = None,
        *,
        max_payment_attempts: int = 3,
        max_payment_reminders: int = 3,
        require_driver_confirmation: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.trips = trips
        self.drivers = drivers
        self.payments = payments
        self.notifier = notifier
        self.invoices = invoices
        self.max_payment_attempts = max_payment_attempts
        self.max_payment_reminders = max_payment_reminders
        self.require_driver_confirmation = require_driver_confirmation
        self.clock = clock
        self._pending_notifications: set[asyncio.Task] = set()

    # ── Public API ────────────────────────────────────────────────────

    async def apply_action(
        self,
        trip_id: str,
        action: TripAction,
        actor_role: Role,
        *,
        reason: Optional[str] = None,
    ) -> ActionResult:
        """Apply a dispatcher action to one trip.

        ``actor_role`` must already be authorized by the access guard; it is
        only checked to be a staff role and recorded on the event.
        """
        action = TripAction(action)
        self._require_staff(actor_role)
        if action not in STAFF_ACTIONS:
            raise InvalidTransition(f"{action.value} is not a dispatcher action")

        trip = await self.trips.get_trip(trip_id)
        plan = plan_transition(
            trip,
            action,
            now=self.clock(),
            reason=reason,
            max_payment_attempts=self.max_payment_attempts,
        )
        if plan.noop:
            logger.info(
                "Trip %s already %s; duplicate %s ignored",
                trip_id,
                trip.status.value,
                action.value,
            )
            return ActionResult(trip=trip, replayed=True)

        updated = await self.trips.conditional_update(trip_id, plan.from_status, plan.patch)
        logger.info(
            "Trip %s: %s -> %s (%s by %s)",
            trip_id,
            plan.from_status.value,
            updated.status.value,
            action.value,
            Role(actor_role).value,
        )

        if updated.status == TripStatus.APPROVED_PENDING_PAYMENT:
            return await self._finalize_approval(updated, action, trip.status, actor_role)

        await self._after_transition(trip, updated, action, actor_role, reason=reason)
        return ActionResult(trip=updated)

    async def assign_driver(
        self, trip_id: str, driver_id: str, actor_role: Role
    ) -> ActionResult:
        self._require_staff(actor_role)
        driver = await self.drivers.get_driver(driver_id)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")
        if driver.status == DriverStatus.INACTIVE:
            raise DriverUnavailable(f"Driver {driver.full_name or driver_id} is inactive")

        trip = await self.trips.get_trip(trip_id)
        plan = plan_transition(
            trip,
            TripAction.ASSIGN_DRIVER,
            now=self.clock(),
            driver_id=driver_id,
            require_driver_confirmation=self.require_driver_confirmation,
        )
        updated = await self.trips.conditional_update(trip_id, plan.from_status, plan.patch)

        # Trip first, then driver: a concurrent release sees the active trip
        if not await self.drivers.mark_on_trip(driver_id):
            logger.warning(
                "Driver %s could not be marked on_trip for trip %s", driver_id, trip_id
            )
        logger.info("Trip %s assigned to driver %s", trip_id, driver_id)

        self._notify(
            TransitionEvent.for_trip(
                updated,
                TripAction.ASSIGN_DRIVER,
                trip.status,
                self.clock(),
                actor_role=actor_role,
                details={"driver_name": driver.full_name},
            )
        )
        return ActionResult(trip=updated)

    async def respond_to_assignment(
        self, trip_id: str, driver_id: str, accept: bool
    ) -> ActionResult:
        """The assigned driver accepts or declines a trip awaiting confirmation."""
        trip = await self.trips.get_trip(trip_id)
        if trip.driver_id != driver_id:
            raise AssignmentMismatch(
                "This trip is not assigned to you or has been reassigned"
            )
        action = TripAction.DRIVER_ACCEPT if accept else TripAction.DRIVER_DECLINE
        plan = plan_transition(trip, action, now=self.clock())
        updated = await self.trips.conditional_update(trip_id, plan.from_status, plan.patch)
        logger.info("Driver %s %s trip %s", driver_id, action.value, trip_id)

        await self._after_transition(trip, updated, action, Role.DRIVER)
        return ActionResult(trip=updated)

    async def create_trip(self, draft: Trip) -> Trip:
        """Persist a new booking, refusing rider+facility dual links."""
        draft.validate_linkage()
        now = self.clock()
        draft.status = TripStatus.PENDING
        draft.completed_at = None
        draft.created_at = draft.created_at or now
        draft.updated_at = now
        trip = await self.trips.create_trip(draft)
        logger.info(
            "Trip %s created (%s booking)",
            trip.id,
            "facility" if trip.is_facility_booking else "individual",
        )
        self._notify(TransitionEvent.for_trip(trip, "created", None, now))
        return trip

    async def send_payment_reminder(self, trip_id: str, actor_role: Role) -> Trip:
        self._require_staff(actor_role)
        trip = await self.trips.get_trip(trip_id)
        if trip.status != TripStatus.PAYMENT_FAILED:
            raise InvalidTransition(
                "Reminders can only be sent for trips with failed payments"
            )
        if trip.payment_failure_reason == PaymentFailureReason.GATEWAY_ERROR:
            raise InvalidTransition(
                "Payment failed on the gateway side; retry the approval instead"
            )
        if trip.payment_reminder_count >= self.max_payment_reminders:
            raise InvalidTransition(
                f"Already sent {trip.payment_reminder_count} payment reminders"
            )

        await self.payments.send_reminder(trip)
        now = self.clock()
        updated = await self.trips.conditional_update(
            trip_id,
            TripStatus.PAYMENT_FAILED,
            {
                "payment_reminder_count": trip.payment_reminder_count + 1,
                "payment_reminder_sent_at": now,
                "updated_at": now,
            },
        )
        logger.info(
            "Payment reminder %d sent for trip %s",
            updated.payment_reminder_count,
            trip_id,
        )
        return updated

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        while self._pending_notifications:
            await asyncio.gather(
                *list(self._pending_notifications), return_exceptions=True
            )

    # ── Approval ──────────────────────────────────────────────────────

    async def _finalize_approval(
        self,
        reserved: Trip,
        action: TripAction,
        previous_status: TripStatus,
        actor_role: Role,
    ) -> ActionResult:
        payment: Optional[PaymentResult] = None
        if reserved.requires_capture:
            payment = await self._capture(reserved.id)

        plan = plan_payment_outcome(reserved, payment, now=self.clock())
        try:
            final = await self.trips.conditional_update(
                reserved.id, plan.from_status, plan.patch
            )
        except ConflictingTransition:
            if payment is not None and payment.captured:
                logger.error(
                    "Payment %s captured for trip %s but the trip left %s "
                    "during capture; manual refund review required",
                    payment.payment_intent_id,
                    reserved.id,
                    plan.from_status.value,
                )
            raise

        if payment is None:
            logger.info(
                "Trip %s approved without capture (payment status %s)",
                final.id,
                final.payment_status.value,
            )
        elif payment.captured:
            logger.info("Trip %s approved and paid", final.id)
        else:
            logger.warning(
                "Trip %s parked in payment_failed (%s, retry eligible=%s)",
                final.id,
                payment.reason.value,
                payment.retry_eligible,
            )

        self._notify(
            TransitionEvent.for_trip(
                final, action, previous_status, self.clock(), actor_role=actor_role
            )
        )
        return ActionResult(trip=final, payment_result=payment)

    async def _capture(self, trip_id: str) -> PaymentResult:
        try:
            return await self.payments.capture(trip_id)
        except PaymentGatewayError as e:
            return PaymentResult.gateway_error(str(e))
        except Exception:
            # The reservation is committed; never leave it without an outcome
            logger.exception("Unexpected payment gateway failure for trip %s", trip_id)
            return PaymentResult.gateway_error("Payment system temporarily unavailable")

    # ── Side effects ──────────────────────────────────────────────────

    async def _after_transition(
        self,
        before: Trip,
        after: Trip,
        action: TripAction,
        actor_role: Role,
        *,
        reason: Optional[str] = None,
    ) -> None:
        if before.holds_driver and not after.holds_driver:
            await self.reconcile_driver(before.driver_id, after.id)

        if after.status == TripStatus.COMPLETED and self.invoices is not None:
            try:
                await self.invoices.create_for_completed_trip(after)
            except Exception:
                logger.exception("Could not invoice completed trip %s", after.id)

        self._notify(
            TransitionEvent.for_trip(
                after,
                action,
                before.status,
                self.clock(),
                driver_id=before.driver_id,
                reason=reason or after.cancellation_reason,
                actor_role=actor_role,
            )
        )

    async def reconcile_driver(self, driver_id: str, trip_id: str) -> None:
        """Release *driver_id* if *trip_id* was its last active trip; never raises."""
        try:
            released = await self.drivers.conditional_set_available(driver_id)
        except Exception as e:
            failure = DriverReconciliationFailure(
                f"Driver {driver_id} not reconciled after trip {trip_id}"
            )
            logger.error("%s: %s", failure, e, exc_info=True)
            return
        if released:
            logger.info("Driver %s is available again", driver_id)
        else:
            logger.info("Driver %s kept on_trip (other active trips)", driver_id)

    def _notify(self, event: TransitionEvent) -> None:
        task = asyncio.create_task(self._deliver(event))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(self, event: TransitionEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception:
            logger.exception(
                "Notification failed for trip %s (%s)",
                event.trip_id,
                event.idempotency_key,
            )

    @staticmethod
    def _require_staff(actor_role: Role) -> None:
        if Role(actor_role) not in STAFF_ROLES:
            raise Forbidden("Dispatcher or admin role required")
