"""
HTTP client for the booking app's payment API.

Outcome mapping for ``POST /api/stripe/charge-payment``
-------------------------------------------------------
* 2xx and ``success: true``  -> captured
* 2xx and ``success: false`` -> declined (never retried)
* 400, 402                   -> declined (card or validation error)
* 401, 403, 404              -> ``gateway_error`` without a retry
* any other error, timeout or connection failure -> transient; retried
  ``payment_transient_retries`` times, then ``gateway_error``
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from dispatch.config import Settings
from dispatch.domain.entities import PaymentResult, Trip
from dispatch.domain.errors import (
    PaymentDeclined,
    PaymentGatewayError,
    PaymentServiceRejected,
)
from dispatch.domain.ports import PaymentGateway

logger = logging.getLogger(__name__)

CHARGE_PATH = "/api/stripe/charge-payment"
REMINDER_PATH = "/api/trips/payment-reminder"

DECLINE_STATUSES = frozenset({400, 402})
REJECTED_STATUSES = frozenset({401, 403, 404})


def _error_message(status_code: int, text: str) -> str:
    if status_code == 400:
        return f"Payment validation failed: {text}"
    if status_code in (401, 403):
        return "Payment API authentication failed"
    if status_code == 404:
        return "Trip not found in payment system"
    return text or f"Payment API returned {status_code}"


def _amount(payload: dict[str, Any]) -> Optional[Decimal]:
    raw = (payload.get("trip") or {}).get("amount", payload.get("amount"))
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None


class HttpPaymentGateway(PaymentGateway):
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 8.0,
        transient_retries: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.transient_retries = transient_retries
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpPaymentGateway":
        return cls(
            settings.payment_gateway_url,
            timeout_seconds=settings.payment_timeout_seconds,
            transient_retries=settings.payment_transient_retries,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def capture(self, trip_id: str) -> PaymentResult:
        attempts = 0
        last_error = "Payment system temporarily unavailable"
        while attempts <= self.transient_retries:
            attempts += 1
            try:
                payload = await self._charge(trip_id)
            except PaymentDeclined as e:
                logger.warning("Payment declined for trip %s: %s", trip_id, e)
                return PaymentResult.declined(str(e), attempts=attempts)
            except PaymentServiceRejected as e:
                logger.error("Payment service rejected trip %s: %s", trip_id, e)
                return PaymentResult.gateway_error(str(e), attempts=attempts)
            except PaymentGatewayError as e:
                last_error = str(e)
                logger.warning(
                    "Payment gateway error for trip %s (attempt %d): %s",
                    trip_id,
                    attempts,
                    e,
                )
                continue

            intent = payload.get("paymentIntent") or {}
            logger.info("Payment captured for trip %s", trip_id)
            return PaymentResult.success(
                intent.get("id"), _amount(payload), attempts=attempts
            )

        return PaymentResult.gateway_error(last_error, attempts=attempts)

    async def _charge(self, trip_id: str) -> dict[str, Any]:
        """One charge attempt; raises ``PaymentDeclined`` or ``PaymentGatewayError``."""
        try:
            async with self._client() as client:
                response = await client.post(CHARGE_PATH, json={"tripId": trip_id})
        except httpx.TimeoutException as e:
            raise PaymentGatewayError(
                "Payment system is taking too long to respond"
            ) from e
        except httpx.TransportError as e:
            raise PaymentGatewayError("Unable to connect to payment system") from e

        status_code = response.status_code
        if status_code in DECLINE_STATUSES:
            raise PaymentDeclined(_error_message(status_code, response.text))
        if status_code in REJECTED_STATUSES:
            raise PaymentServiceRejected(_error_message(status_code, response.text))
        if status_code >= 500:
            raise PaymentGatewayError("Payment system internal error")
        if status_code >= 400:
            raise PaymentGatewayError(_error_message(status_code, response.text))

        try:
            payload = response.json()
        except ValueError as e:
            raise PaymentGatewayError("Payment system returned an invalid response") from e

        if not payload.get("success"):
            raise PaymentDeclined(payload.get("error") or "Payment charge failed")
        return payload

    async def send_reminder(self, trip: Trip) -> None:
        body = {
            "tripId": trip.id,
            "userEmail": trip.passenger_email,
            "amount": str(trip.price),
        }
        try:
            async with self._client() as client:
                response = await client.post(REMINDER_PATH, json=body)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Failed to send payment reminder: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_error or not payload.get("success"):
            raise PaymentGatewayError(
                payload.get("error") or f"Reminder API returned {response.status_code}"
            )
