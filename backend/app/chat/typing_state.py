"""Short-lived typing indicators.

A typing entry is ``(conversation, user) -> expires_at``. Entries expire on
their own after the TTL; there is no "stopped typing" signal. Expiry is
checked lazily on every read, and ``sweep`` lets a background task find the
conversations whose typer set shrank so it can push the new, smaller set.
"""
import time
from typing import Callable, Dict, List


class TypingCoordinator:
    def __init__(self, ttl_seconds: float = 3.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        # conversation key -> {user_id -> expires_at}
        self._entries: Dict[str, Dict[str, float]] = {}

    def set_typing(self, conversation: str, user_id: str) -> List[str]:
        """Record or refresh a typing entry; returns the current typers."""
        self._entries.setdefault(conversation, {})[user_id] = self._clock() + self._ttl
        return self.typers(conversation)

    def typers(self, conversation: str) -> List[str]:
        self._evict(conversation, self._clock())
        return sorted(self._entries.get(conversation, {}))

    def _evict(self, conversation: str, now: float) -> bool:
        entries = self._entries.get(conversation)
        if not entries:
            return False
        expired = [user_id for user_id, expires_at in entries.items() if expires_at <= now]
        for user_id in expired:
            del entries[user_id]
        if not entries:
            del self._entries[conversation]
        return bool(expired)

    def sweep(self) -> Dict[str, List[str]]:
        """Evict expired entries everywhere.

        Returns:
            conversation key -> remaining typers, for each conversation that
            lost at least one typer.
        """
        now = self._clock()
        changed = [key for key in list(self._entries) if self._evict(key, now)]
        return {key: sorted(self._entries.get(key, {})) for key in changed}
