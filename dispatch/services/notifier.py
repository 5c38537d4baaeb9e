"""
Notification fan-out
====================

Turns a committed ``TransitionEvent`` into:

1. in-app notification rows, one per recipient, deduplicated on
   ``(recipient, delivery_key(event))``, the event key qualified by its kind;
2. a OneSignal push to the dispatcher app (tag ``app_type=dispatcher``);
3. Expo pushes to every recipient with a registered token.

Recipients: all dispatchers/admins always; facility staff for facility
bookings; the rider for individual bookings; the driver when assigned or
when its trip is cancelled.  Delivery is best-effort: a failing channel is
logged and the others still run.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.domain.entities import TransitionEvent
from dispatch.domain.enums import Role, TripAction, TripStatus
from dispatch.domain.errors import NotificationFailure
from dispatch.domain.ports import NotificationGateway
from dispatch.infrastructure.models import NotificationModel, ProfileModel
from dispatch.infrastructure.push import PushClient
from dispatch.infrastructure.repositories import (
    NotificationRepository,
    ProfileRepository,
)

logger = logging.getLogger(__name__)

MESSAGES: dict[str, tuple[str, str]] = {
    "created": ("🚗 New Trip Request", "New {kind} trip requested"),
    "approved": ("✅ Trip Approved", "Trip has been approved"),
    "payment_failed": ("⚠️ Payment Failed", "Payment failed for an approved trip"),
    "cancelled": ("❌ Trip Cancelled", "A trip has been cancelled"),
    "completed": ("✓ Trip Completed", "A trip has been completed"),
    "driver_assigned": ("👤 Driver Assigned", "A driver has been assigned to a trip"),
    "driver_declined": ("↩️ Driver Declined", "A driver declined a trip assignment"),
    "in_progress": ("🚐 Trip In Progress", "A trip is now in progress"),
}
DEFAULT_MESSAGE = ("📋 Trip Notification", "Trip status changed")

# Kinds the booking party and the driver care about
RIDER_KINDS = frozenset(
    {"approved", "payment_failed", "cancelled", "completed", "driver_assigned"}
)
DRIVER_KINDS = frozenset({"driver_assigned", "cancelled"})
DRIVER_EVENT_KINDS = frozenset({"driver_assigned", "driver_declined"})

APP_TYPES = {
    Role.DISPATCHER: "dispatcher",
    Role.ADMIN: "dispatcher",
    Role.FACILITY: "facility",
    Role.CLIENT: "booking",
    Role.DRIVER: "driver",
}


def event_kind(event: TransitionEvent) -> str:
    if event.action == "created":
        return "created"
    if event.action == TripAction.ASSIGN_DRIVER:
        return "driver_assigned"
    if event.action == TripAction.DRIVER_DECLINE:
        return "driver_declined"
    if event.new_status == TripStatus.UPCOMING:
        return "approved"
    return event.new_status.value


def delivery_key(event: TransitionEvent, kind: str) -> str:
    """Row-level dedupe key for one recipient.

    Assignment and decline can land on a status the trip already held
    (``upcoming`` after approval), so the event kind is part of the key and
    driver events are further pinned to the driver and the commit time.
    """
    key = f"{event.idempotency_key}:{kind}"
    if kind in DRIVER_EVENT_KINDS:
        key = f"{key}:{event.driver_id or '-'}:{int(event.occurred_at.timestamp())}"
    return key


def compose(event: TransitionEvent) -> tuple[str, str]:
    kind = event_kind(event)
    title, body = MESSAGES.get(kind, DEFAULT_MESSAGE)
    body = body.format(kind="facility" if event.facility_id else "individual")
    if kind == "cancelled" and event.reason:
        body = f"{body}: {event.reason}"
    return title, body


class NotificationService(NotificationGateway):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        push: PushClient,
    ):
        self.session_factory = session_factory
        self.push = push

    async def notify(self, event: TransitionEvent) -> None:
        kind = event_kind(event)
        title, body = compose(event)
        data = {
            "type": "trip",
            "tripId": event.trip_id,
            "action": kind,
            "status": event.new_status.value,
            "idempotencyKey": event.idempotency_key,
            "timestamp": event.occurred_at.isoformat(),
        }

        try:
            recipients = await self._store(event, kind, title, body, data)
        except Exception as e:
            raise NotificationFailure(
                f"Could not record notifications for trip {event.trip_id}"
            ) from e

        await self._push(recipients, title, body, data)

    async def _store(
        self,
        event: TransitionEvent,
        kind: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> list[ProfileModel]:
        async with self.session_factory() as session:
            profiles = ProfileRepository(session)
            recipients: dict[str, ProfileModel] = {
                p.id: p for p in await profiles.staff()
            }
            if event.facility_id:
                for member in await profiles.facility_members(event.facility_id):
                    recipients[member.id] = member

            direct: list[str] = []
            if event.user_id and kind in RIDER_KINDS:
                direct.append(event.user_id)
            if event.driver_id and kind in DRIVER_KINDS:
                direct.append(event.driver_id)
            for profile in await profiles.get_many(direct):
                recipients[profile.id] = profile

            notifications = NotificationRepository(session)
            key = delivery_key(event, kind)
            already = await notifications.recipients_with_key(key)
            rows = [
                NotificationModel(
                    user_id=profile.id,
                    app_type=APP_TYPES.get(profile.role, "dispatcher"),
                    notification_type="trip",
                    title=title,
                    body=body,
                    data=data,
                    idempotency_key=key,
                )
                for profile in recipients.values()
                if profile.id not in already
            ]
            if rows:
                await notifications.add_many(rows)
                await session.commit()
            logger.info(
                "Trip %s %s: %d notification(s) recorded, %d duplicate(s) skipped",
                event.trip_id,
                kind,
                len(rows),
                len(recipients) - len(rows),
            )
            return [p for p in recipients.values() if p.id not in already]

    async def _push(
        self,
        recipients: list[ProfileModel],
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        try:
            await self.push.send_onesignal("dispatcher", title, body, data)
        except Exception:
            logger.exception("OneSignal push failed for trip %s", data["tripId"])

        tokens = [
            p.expo_push_token
            for p in recipients
            if p.expo_push_token and p.push_notifications_enabled
        ]
        if not tokens:
            return
        try:
            await self.push.send_expo(tokens, title, body, data)
        except Exception:
            logger.exception("Expo push failed for trip %s", data["tripId"])
