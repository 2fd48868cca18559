"""
in_app_channel.py — In-app inbox delivery channel.

Provider "redis" pushes a JSON entry onto the recipient's inbox list
(`inbox:{recipient}`, newest first) and trims it to the configured
length. The front end reads the list; read receipts are out of scope.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from redis.exceptions import RedisError

from backend.app.core.errors import DeliveryError
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import Channel, utcnow

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


def inbox_key(recipient: str) -> str:
    return f"inbox:{recipient}"


class InAppSender(ChannelSender):

    channel = Channel.IN_APP.value

    def __init__(
        self,
        *,
        provider: str = "simulation",
        redis: Optional["aioredis.Redis"] = None,
        inbox_max: int = 100,
        timeout_seconds: float = 5.0,
    ) -> None:
        super().__init__(timeout_seconds)
        self.provider = provider
        self._redis = redis
        self.inbox_max = inbox_max

    async def _send(
        self,
        recipient: str,
        message: str,
        subject: Optional[str],
    ) -> Dict[str, Any]:
        if self.provider == "simulation":
            logger.info("[IN-APP] → %s: %d chars", recipient, len(message))
            return {"mode": "simulated", "user": recipient}

        if self.provider == "redis":
            if self._redis is None:
                raise DeliveryError(self.channel, "No Redis client for in-app inbox")
            entry = json.dumps({"message": message, "created_at": utcnow().isoformat()})
            key = inbox_key(recipient)
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    pipe.lpush(key, entry)
                    pipe.ltrim(key, 0, self.inbox_max - 1)
                    length, _ = await pipe.execute()
            except RedisError as exc:
                raise DeliveryError(self.channel, f"Inbox write failed: {exc}") from exc
            return {"mode": "redis", "user": recipient, "inbox_length": min(length, self.inbox_max)}

        raise DeliveryError(self.channel, f"Unknown in-app provider: {self.provider}")
