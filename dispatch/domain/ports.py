"""
Collaborator interfaces the lifecycle coordinator depends on.

Concrete implementations live in ``dispatch.infrastructure`` (SQL stores, HTTP
payment gateway) and ``dispatch.services.notifier``; tests substitute
in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from .entities import DriverProfile, Invoice, PaymentResult, TransitionEvent, Trip
from .enums import DriverStatus, TripStatus


class TripStore(ABC):
    @abstractmethod
    async def get_trip(self, trip_id: str) -> Trip:
        """Return the trip or raise ``NotFound``."""

    @abstractmethod
    async def conditional_update(
        self, trip_id: str, expected_status: TripStatus, patch: dict[str, Any]
    ) -> Trip:
        """Apply *patch* only if the trip is still in *expected_status*.

        Returns the updated trip or raises ``ConflictingTransition``.
        """

    @abstractmethod
    async def create_trip(self, trip: Trip) -> Trip: ...


class DriverStore(ABC):
    @abstractmethod
    async def get_driver(self, driver_id: str) -> Optional[DriverProfile]: ...

    @abstractmethod
    async def conditional_set_available(
        self, driver_id: str, expected_status: DriverStatus = DriverStatus.ON_TRIP
    ) -> bool:
        """Flip to ``available`` if still *expected_status* and idle; False is a no-op."""

    @abstractmethod
    async def mark_on_trip(self, driver_id: str) -> bool: ...

    @abstractmethod
    async def find_stale_on_trip(self) -> list[str]: ...


class PaymentGateway(ABC):
    @abstractmethod
    async def capture(self, trip_id: str) -> PaymentResult:
        """Charge the trip's stored payment method; never raises for declines."""

    @abstractmethod
    async def send_reminder(self, trip: Trip) -> None:
        """Ask the payer to update their payment method."""


class NotificationGateway(ABC):
    @abstractmethod
    async def notify(self, event: TransitionEvent) -> None:
        """Best-effort fan-out of *event*."""


class InvoiceStore(ABC):
    @abstractmethod
    async def create_for_completed_trip(self, trip: Trip) -> Optional[Invoice]:
        """Invoice an individual trip once; returns None if not applicable."""
