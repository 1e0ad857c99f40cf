"""Reference-counted presence tracking.

Tracks how many live, authenticated connections each user has, supporting
multiple browser tabs/devices per user.

State machine per user:
    offline -> online   on the first live connection
    online  -> offline  only when the last connection closes AND the linger
                        window elapses with the count still at zero

The linger window absorbs reconnect races: a tab that drops and reconnects
within it never shows the user as offline.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Set

from app.auth.service import UserDirectory

from .schemas import PresenceChangedEvent, UserStatus, now_ms

logger = logging.getLogger(__name__)

PresenceListener = Callable[[PresenceChangedEvent], None]


class PresenceTracker:
    """Single writer of ``User.status`` and ``User.lastSeenAt``."""

    def __init__(self, users: UserDirectory, linger_seconds: float = 5.0) -> None:
        self._users = users
        self._linger = linger_seconds
        # user_id -> live connection count
        self._counts: Dict[str, int] = {}
        self._online: Set[str] = set()
        # user_id -> pending offline transition
        self._pending: Dict[str, asyncio.Task] = {}
        self._listeners: List[PresenceListener] = []

    def subscribe(self, listener: PresenceListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def status(self, user_id: str) -> UserStatus:
        return UserStatus.ONLINE if user_id in self._online else UserStatus.OFFLINE

    def live_count(self, user_id: str) -> int:
        return self._counts.get(user_id, 0)

    def connection_opened(self, user_id: str) -> None:
        self._counts[user_id] = self._counts.get(user_id, 0) + 1
        pending = self._pending.pop(user_id, None)
        if pending is not None:
            pending.cancel()
            logger.debug(f"[Presence] {user_id} reconnected within linger window")
        if user_id not in self._online:
            self._online.add(user_id)
            self._users.set_presence(user_id, UserStatus.ONLINE, None)
            logger.info(f"[Presence] {user_id} is online")
            self._notify(PresenceChangedEvent(userId=user_id, status=UserStatus.ONLINE))

    def connection_closed(self, user_id: str) -> None:
        count = max(self._counts.get(user_id, 0) - 1, 0)
        if count:
            self._counts[user_id] = count
            return
        self._counts.pop(user_id, None)
        if self._linger <= 0:
            self._go_offline(user_id)
            return
        if user_id not in self._pending:
            self._pending[user_id] = asyncio.get_running_loop().create_task(
                self._linger_then_offline(user_id)
            )

    async def _linger_then_offline(self, user_id: str) -> None:
        await asyncio.sleep(self._linger)
        self._pending.pop(user_id, None)
        if self._counts.get(user_id, 0) == 0:
            self._go_offline(user_id)

    def _go_offline(self, user_id: str) -> None:
        if user_id not in self._online:
            return
        self._online.discard(user_id)
        last_seen = now_ms()
        self._users.set_presence(user_id, UserStatus.OFFLINE, last_seen)
        logger.info(f"[Presence] {user_id} is offline")
        self._notify(
            PresenceChangedEvent(userId=user_id, status=UserStatus.OFFLINE, lastSeenAt=last_seen)
        )

    def _notify(self, event: PresenceChangedEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"[Presence] Listener failed for {event.userId}")

    async def close(self) -> None:
        """Cancel pending offline transitions (shutdown)."""
        pending = list(self._pending.values())
        self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
