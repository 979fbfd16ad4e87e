"""Realtime change notifications over Redis pub/sub.

Events are "something changed, re-fetch" signals: at-most-once, never the
source of truth. Each event goes to the owning account's room channel and to
the admin channel. ``PUBLISH`` reports how many subscribers received the
message; when the room has none (the client has not finished joining) the
event is repeated on the broadcast channel, with the owner id in the payload
so other subscribers can filter it out.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

LICENSE_UPDATED = "license-updated"
EXTENSION_REQUEST_UPDATED = "extension-request-updated"
TOPUP_STATUS_UPDATED = "topup-status-updated"
CREDITS_UPDATED = "credits-updated"

EVENT_TYPES = (LICENSE_UPDATED, EXTENSION_REQUEST_UPDATED, TOPUP_STATUS_UPDATED, CREDITS_UPDATED)


def room_channel(room: str) -> str:
    return f"{settings.REALTIME_CHANNEL_PREFIX}:user:{room}"


def admin_channel() -> str:
    return f"{settings.REALTIME_CHANNEL_PREFIX}:admin"


def broadcast_channel() -> str:
    return f"{settings.REALTIME_CHANNEL_PREFIX}:broadcast"


class ChangeBroadcaster:
    """Single publish path for every realtime event type."""

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self._redis_url = redis_url

    async def _send(self, client: Any, channel: str, message: Dict[str, Any]) -> int:
        return int(await client.publish(channel, json.dumps(message, default=str)) or 0)

    async def publish(
        self,
        event: str,
        data: Dict[str, Any],
        *,
        room: str,
        fallback: bool = True,
    ) -> Dict[str, Any]:
        """Publish ``event`` for the account ``room``; never raises."""
        outcome = {"event": event, "room_receivers": 0, "fallback_sent": False, "delivered": False}
        if not settings.REALTIME_ENABLED:
            return outcome
        if event not in EVENT_TYPES:
            logger.warning("Dropping unknown realtime event type %s", event)
            return outcome

        message = {
            "event": event,
            "user_id": room,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            client = redis.from_url(self._redis_url or settings.REDIS_URL, decode_responses=True)
            try:
                receivers = await self._send(client, room_channel(room), message)
                outcome["room_receivers"] = receivers
                await self._send(client, admin_channel(), message)
                if fallback and receivers == 0:
                    await self._send(client, broadcast_channel(), {**message, "_broadcast": True})
                    outcome["fallback_sent"] = True
            finally:
                await client.aclose()
            outcome["delivered"] = True
        except Exception as exc:
            logger.warning("Realtime publish of %s for user %s failed: %s", event, room, exc)
        return outcome


broadcaster = ChangeBroadcaster()
