"""
Delivery Transports

A Delivery sends one JSON message to one session. Failures raise; the
notifier logs and counts them.
"""

import json
import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)

SESSION_CHANNEL_PREFIX = "tracking:session:"


class Delivery(Protocol):
    async def send(self, session_id: str, message: Dict[str, Any]) -> None:
        ...


class RedisPubSubDelivery:
    """Publish each message on tracking:session:{session_id}"""

    def __init__(self, redis_client):
        self.redis = redis_client

    def channel(self, session_id: str) -> str:
        return f"{SESSION_CHANNEL_PREFIX}{session_id}"

    async def send(self, session_id: str, message: Dict[str, Any]) -> None:
        await self.redis.publish(self.channel(session_id), json.dumps(message, default=str))


class LoggingDelivery:
    """Log deliveries instead of sending them (--dry-run)"""

    async def send(self, session_id: str, message: Dict[str, Any]) -> None:
        logger.info(f"[{session_id}] {message.get('type')} {message.get('key', '')}")
