"""
sms_channel.py — SMS delivery channel via an HTTP gateway.

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Worker  →  HTTP POST  →  SMS Gateway API  →  Carrier  →  Handset

    Request (provider "http"):
        POST {SMS_GATEWAY_URL}
        Authorization: Bearer {SMS_API_KEY}
        {"to": "+15551234567", "from": "NOTIFY", "body": "..."}

    Any non-2xx response or transport error is a DeliveryError, which the
    job queue retries with backoff. Default: simulation mode.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import DeliveryError
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import Channel

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160      # characters per single-part message


def segment_count(body: str) -> int:
    """Number of 160-char parts the gateway will bill for."""
    return max(1, 1 + (len(body) - 1) // SMS_MAX_GSM7)


class SmsSender(ChannelSender):

    channel = Channel.SMS.value

    def __init__(
        self,
        *,
        provider: str = "simulation",
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "NOTIFY",
        timeout_seconds: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_seconds)
        self.provider = provider
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _send(
        self,
        recipient: str,
        message: str,
        subject: Optional[str],
    ) -> Dict[str, Any]:
        segments = segment_count(message)

        if self.provider == "simulation":
            logger.info(
                "[SMS] → %s: %d chars, %d segment(s) → '%s'",
                recipient, len(message), segments,
                message[:80] + ("..." if len(message) > 80 else ""),
            )
            return {"mode": "simulated", "phone": recipient, "segments": segments}

        if self.provider == "http":
            if not self.gateway_url:
                raise DeliveryError(self.channel, "SMS_GATEWAY_URL is not configured")
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            client = await self._get_client()
            try:
                response = await client.post(
                    self.gateway_url,
                    json={"to": recipient, "from": self.sender_id, "body": message},
                    headers=headers,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise DeliveryError(
                    self.channel,
                    f"SMS gateway returned {exc.response.status_code}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise DeliveryError(self.channel, f"SMS gateway request failed: {exc}") from exc

            logger.info("[SMS/HTTP] Sent to %s (%d segment(s))", recipient, segments)
            receipt: Dict[str, Any] = {"mode": "http", "phone": recipient, "segments": segments}
            if response.headers.get("content-type", "").startswith("application/json"):
                receipt["provider_response"] = response.json()
            return receipt

        raise DeliveryError(self.channel, f"Unknown SMS provider: {self.provider}")
