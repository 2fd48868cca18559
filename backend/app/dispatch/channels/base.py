"""
base.py — ChannelSender contract and the channel registry.

The registry maps a channel name to its sender. Resolving a name outside
the registered channels raises UnknownChannelError, which the worker pool
treats as a fatal outcome for the job.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from backend.app.core.errors import DeliveryError, UnknownChannelError
from backend.app.dispatch.models import Channel

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


class ChannelSender(ABC):
    """One delivery channel (email, SMS, in-app)."""

    channel: str = ""

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def deliver(
        self,
        recipient: str,
        message: str,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Deliver one message within the sender's timeout.

        Returns:
            Provider receipt (mode, provider ids, sizes).

        Raises:
            DeliveryError: the provider rejected the message, or the
                call timed out or failed.
        """
        try:
            return await asyncio.wait_for(
                self._send(recipient, message, subject), self.timeout_seconds,
            )
        except DeliveryError:
            raise
        except asyncio.TimeoutError as exc:
            raise DeliveryError(
                self.channel, f"{self.channel} delivery timed out after {self.timeout_seconds}s",
            ) from exc

    @abstractmethod
    async def _send(
        self,
        recipient: str,
        message: str,
        subject: Optional[str],
    ) -> Dict[str, Any]: ...

    async def close(self) -> None:
        return None


class ChannelRegistry:
    """Channel name → sender lookup."""

    def __init__(self, senders: Optional[Dict[str, ChannelSender]] = None) -> None:
        self._senders: Dict[str, ChannelSender] = dict(senders or {})

    def register(self, channel: str, sender: ChannelSender) -> None:
        self._senders[channel] = sender

    def resolve(self, channel: str) -> ChannelSender:
        sender = self._senders.get(channel)
        if sender is None:
            raise UnknownChannelError(channel)
        return sender

    @property
    def channels(self) -> List[str]:
        return sorted(self._senders)

    async def close(self) -> None:
        for sender in self._senders.values():
            await sender.close()


def build_channel_registry(
    config: "Settings",
    redis: Optional["aioredis.Redis"] = None,
) -> ChannelRegistry:
    """Senders for email, SMS and in-app, configured from settings."""
    from backend.app.dispatch.channels.email_channel import EmailSender
    from backend.app.dispatch.channels.in_app_channel import InAppSender
    from backend.app.dispatch.channels.sms_channel import SmsSender

    registry = ChannelRegistry({
        Channel.EMAIL.value: EmailSender(
            provider=config.EMAIL_PROVIDER,
            smtp_host=config.SMTP_HOST,
            smtp_port=config.SMTP_PORT,
            smtp_user=config.SMTP_USER,
            smtp_password=config.SMTP_PASSWORD,
            from_address=config.SMTP_FROM_ADDRESS,
            timeout_seconds=config.EMAIL_TIMEOUT_SECONDS,
        ),
        Channel.SMS.value: SmsSender(
            provider=config.SMS_PROVIDER,
            gateway_url=config.SMS_GATEWAY_URL,
            api_key=config.SMS_API_KEY,
            sender_id=config.SMS_SENDER_ID,
            timeout_seconds=config.SMS_TIMEOUT_SECONDS,
        ),
        Channel.IN_APP.value: InAppSender(
            provider=config.IN_APP_PROVIDER,
            redis=redis,
            inbox_max=config.IN_APP_INBOX_MAX,
            timeout_seconds=config.IN_APP_TIMEOUT_SECONDS,
        ),
    })
    logger.info("Channel senders ready: %s", ", ".join(registry.channels))
    return registry
