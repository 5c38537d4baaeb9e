"""Mobile push delivery through OneSignal and the Expo push service."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from dispatch.config import Settings

logger = logging.getLogger(__name__)


class PushClient:
    def __init__(
        self,
        *,
        onesignal_app_id: str = "",
        onesignal_rest_api_key: str = "",
        onesignal_api_url: str = "https://api.onesignal.com/notifications",
        expo_push_url: str = "https://exp.host/--/api/v2/push/send",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.onesignal_app_id = onesignal_app_id
        self.onesignal_rest_api_key = onesignal_rest_api_key
        self.onesignal_api_url = onesignal_api_url
        self.expo_push_url = expo_push_url
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "PushClient":
        return cls(
            onesignal_app_id=settings.onesignal_app_id,
            onesignal_rest_api_key=settings.onesignal_rest_api_key,
            onesignal_api_url=settings.onesignal_api_url,
            expo_push_url=settings.expo_push_url,
            timeout_seconds=settings.push_timeout_seconds,
        )

    @property
    def onesignal_enabled(self) -> bool:
        return bool(self.onesignal_app_id and self.onesignal_rest_api_key)

    async def send_onesignal(
        self, app_type: str, title: str, body: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Push to every device tagged with ``app_type`` (e.g. ``dispatcher``)."""
        if not self.onesignal_enabled:
            logger.debug("OneSignal not configured, skipping %s push", app_type)
            return {}
        message = {
            "app_id": self.onesignal_app_id,
            "filters": [
                {"field": "tag", "key": "app_type", "relation": "=", "value": app_type}
            ],
            "headings": {"en": title},
            "contents": {"en": body},
            "data": data,
            "priority": 10,
            "ios_sound": "default",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.onesignal_api_url,
                json=message,
                headers={"Authorization": f"Key {self.onesignal_rest_api_key}"},
            )
        response.raise_for_status()
        return response.json()

    async def send_expo(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Push to individual Expo tokens; one batched request."""
        if not tokens:
            return {}
        messages = [
            {
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": data,
                "priority": "high",
            }
            for token in tokens
        ]
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.expo_push_url,
                json=messages,
                headers={"Accept": "application/json"},
            )
        response.raise_for_status()
        return response.json()
