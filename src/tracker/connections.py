"""In-memory registry of live push channels, keyed by user id.

A channel is anything with awaitable ``send_json(data)`` and ``close(code)``,
normally a Starlette ``WebSocket``. Channels are tracked by identity since
websockets are not hashable. Map mutations happen under a lock; sends never do.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional

from prometheus_client import Counter, Gauge

from .config import settings
from .errors import ChannelSendFailed


logger = logging.getLogger(__name__)

LIVE_CHANNELS = Gauge("live_push_channels", "Currently registered push channels")

# Websocket close code for an internal error, sent to channels that failed a push
CLOSE_SEND_FAILED = 1011
PUSH_COUNTER = Counter(
    "notification_pushes_total", "Push attempts to live channels", ["outcome"]
)


class ConnectionRegistry:
    """Map of user id to the set of that user's open channels."""

    def __init__(self, lock=None, send_timeout: Optional[float] = None):
        self._lock = lock or threading.Lock()
        self._channels: Dict[int, List[Any]] = {}
        self._owners: Dict[int, int] = {}
        self.send_timeout = (
            settings.push_timeout_seconds if send_timeout is None else send_timeout
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)

    def register(self, user_id: int, channel: Any) -> bool:
        """Bind ``channel`` to ``user_id``.

        Returns ``False`` if the channel already belongs to another user.
        """
        with self._lock:
            owner = self._owners.get(id(channel))
            if owner is not None:
                return owner == user_id
            self._owners[id(channel)] = user_id
            self._channels.setdefault(user_id, []).append(channel)
            LIVE_CHANNELS.inc()
        logger.info("registered channel for user=%s", user_id)
        return True

    def unregister(self, channel: Any) -> Optional[int]:
        """Remove ``channel``; returns its user id, or ``None`` if not registered."""
        with self._lock:
            user_id = self._owners.pop(id(channel), None)
            if user_id is None:
                return None
            remaining = [c for c in self._channels.get(user_id, []) if c is not channel]
            if remaining:
                self._channels[user_id] = remaining
            else:
                self._channels.pop(user_id, None)
            LIVE_CHANNELS.dec()
        logger.info("unregistered channel for user=%s", user_id)
        return user_id

    def owner_of(self, channel: Any) -> Optional[int]:
        with self._lock:
            return self._owners.get(id(channel))

    def channels_for(self, user_id: int) -> List[Any]:
        """Snapshot of the user's channels, safe to iterate without the lock."""
        with self._lock:
            return list(self._channels.get(user_id, []))

    async def send(self, user_id: int, payload: Dict[str, Any]) -> int:
        """Push ``payload`` to every channel of ``user_id``.

        Channels are written concurrently; returns how many pushes succeeded.
        """
        channels = self.channels_for(user_id)
        if not channels:
            logger.debug("no live channel for user=%s", user_id)
            return 0
        results = await asyncio.gather(
            *(self._push(user_id, channel, payload) for channel in channels)
        )
        return sum(results)

    async def authenticate(
        self,
        user_id: int,
        channel: Any,
        load_backlog: Callable[[], Awaitable[List[Dict[str, Any]]]],
    ) -> bool:
        """Register ``channel``, then deliver the unread backlog as one batch.

        The backlog is loaded after registering, so a notification stored in
        between reaches the channel at least once.
        """
        if not self.register(user_id, channel):
            return False
        backlog = await load_backlog()
        return await self._push(user_id, channel, {"type": "backlog", "payload": backlog})

    async def _push(self, user_id: int, channel: Any, payload: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(channel.send_json(payload), timeout=self.send_timeout)
        except Exception as exc:
            failure = ChannelSendFailed(user_id, repr(exc))
            logger.warning("%s, dropping channel", failure)
            PUSH_COUNTER.labels(outcome="failed").inc()
            self.unregister(channel)
            await self._close(channel)
            return False
        PUSH_COUNTER.labels(outcome="delivered").inc()
        return True

    async def _close(self, channel: Any) -> None:
        """Close a dropped channel so its client notices and reconnects."""
        try:
            await asyncio.wait_for(
                channel.close(code=CLOSE_SEND_FAILED), timeout=self.send_timeout
            )
        except Exception as exc:
            logger.debug("closing dropped channel failed: %r", exc)
