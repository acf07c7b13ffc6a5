from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Channel(Protocol):
    async def send_text(self, data: str) -> None: ...


class Broadcaster:
    """Fan-out of job events to every live channel registered for a user.

    Delivery is best-effort: a channel whose send fails or times out is
    dropped at that point, nothing is retried or buffered.
    """

    def __init__(self, send_timeout_seconds: float = 5.0) -> None:
        self.send_timeout_seconds = send_timeout_seconds
        self._channels: dict[str, set[Channel]] = {}

    def register(self, user_id: str, channel: Channel) -> None:
        self._channels.setdefault(user_id, set()).add(channel)
        logger.debug("Registered channel for user %s (%d open)", user_id, len(self._channels[user_id]))

    def unregister(self, user_id: str, channel: Channel) -> None:
        channels = self._channels.get(user_id)
        if channels is None:
            return
        channels.discard(channel)
        if not channels:
            del self._channels[user_id]

    def channel_count(self, user_id: str | None = None) -> int:
        if user_id is not None:
            return len(self._channels.get(user_id, ()))
        return sum(len(channels) for channels in self._channels.values())

    async def publish(self, user_id: str, event: dict[str, Any]) -> int:
        """Send ``event`` to the user's channels and return how many accepted it."""
        channels = list(self._channels.get(user_id, ()))
        if not channels:
            return 0

        message = json.dumps(event, default=str)
        results = await asyncio.gather(
            *(self._send(channel, message) for channel in channels),
            return_exceptions=True,
        )

        delivered = 0
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.info("Dropping stale channel for user %s: %r", user_id, result)
                self.unregister(user_id, channel)
            else:
                delivered += 1
        return delivered

    async def _send(self, channel: Channel, message: str) -> None:
        await asyncio.wait_for(channel.send_text(message), self.send_timeout_seconds)


def job_update_event(job: dict[str, Any], *, speed: str | None = None, eta: str | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "job_update", "job": job}
    if speed is not None:
        event["speed"] = speed
    if eta is not None:
        event["eta"] = eta
    return event


def job_deleted_event(job_id: str) -> dict[str, Any]:
    return {"type": "job_deleted", "jobId": job_id}
