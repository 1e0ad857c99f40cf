"""Registry of live client connections.

Each connection moves through:

    connecting -> authenticated -> subscribed(N) -> closed

The registry is the only owner of Connection records. It is mutated by the
connect, authenticate, subscribe and disconnect paths only; message handlers
read from it to compute recipient sets.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from app.auth.service import SessionManager
from app.errors import InvalidInput, Unauthenticated

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


@dataclass
class Connection:
    """One client connection (one browser tab)."""
    connection_id: str
    user_id: Optional[str] = None
    session_token: Optional[str] = None
    state: ConnectionState = ConnectionState.CONNECTING
    subscriptions: Set[str] = field(default_factory=set)
    opened_at: float = field(default_factory=time.time)

    @property
    def is_authenticated(self) -> bool:
        return self.state in (ConnectionState.AUTHENTICATED, ConnectionState.SUBSCRIBED)


class ConnectionRegistry:
    """Maps connections to users and conversation interest sets."""

    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions
        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}
        # user_id -> connection_ids
        self._by_user: Dict[str, Set[str]] = {}
        # conversation key -> connection_ids
        self._by_conversation: Dict[str, Set[str]] = {}

    def open(self) -> Connection:
        connection = Connection(connection_id=f"conn-{uuid.uuid4().hex}")
        self._connections[connection.connection_id] = connection
        logger.debug(f"[Registry] Opened {connection.connection_id}")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def authenticate(self, connection_id: str, token: str) -> str:
        """Bind a connection to the user behind ``token``.

        Raises:
            Unauthenticated: unknown connection.
            InvalidToken: the token does not resolve to a live session.
            InvalidInput: the connection is already authenticated.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            raise Unauthenticated(f"Unknown connection: {connection_id}")
        if connection.is_authenticated:
            raise InvalidInput("Connection is already authenticated")
        user_id = self._sessions.resolve(token)
        connection.user_id = user_id
        connection.session_token = token
        connection.state = ConnectionState.AUTHENTICATED
        self._by_user.setdefault(user_id, set()).add(connection_id)
        logger.info(f"[Registry] {connection_id} authenticated as {user_id}")
        return user_id

    def resolve_user(self, connection_id: str) -> str:
        """Return the user behind a connection, or raise Unauthenticated."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_authenticated:
            raise Unauthenticated("Connection is not authenticated")
        return connection.user_id

    def subscribe(self, connection_id: str, conversation: str) -> bool:
        """Add a conversation to the interest set. Returns False if already there."""
        self.resolve_user(connection_id)
        connection = self._connections[connection_id]
        if conversation in connection.subscriptions:
            return False
        connection.subscriptions.add(conversation)
        connection.state = ConnectionState.SUBSCRIBED
        self._by_conversation.setdefault(conversation, set()).add(connection_id)
        return True

    def unsubscribe(self, connection_id: str, conversation: str) -> bool:
        """Remove a conversation from the interest set. Returns False if absent."""
        self.resolve_user(connection_id)
        connection = self._connections[connection_id]
        if conversation not in connection.subscriptions:
            return False
        connection.subscriptions.discard(conversation)
        if not connection.subscriptions:
            connection.state = ConnectionState.AUTHENTICATED
        self._discard(self._by_conversation, conversation, connection_id)
        return True

    def close(self, connection_id: str) -> Optional[Connection]:
        """Drop a connection and all of its interest. Idempotent."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        for conversation in connection.subscriptions:
            self._discard(self._by_conversation, conversation, connection_id)
        if connection.user_id:
            self._discard(self._by_user, connection.user_id, connection_id)
        connection.subscriptions = set()
        connection.state = ConnectionState.CLOSED
        logger.debug(f"[Registry] Closed {connection_id}")
        return connection

    @staticmethod
    def _discard(index: Dict[str, Set[str]], key: str, connection_id: str) -> None:
        ids = index.get(key)
        if ids is None:
            return
        ids.discard(connection_id)
        if not ids:
            del index[key]

    def connections_for_user(self, user_id: str) -> List[Connection]:
        return [self._connections[c] for c in sorted(self._by_user.get(user_id, ()))]

    def connections_for_session(self, token: str) -> List[Connection]:
        return [c for c in self._connections.values() if c.session_token == token]

    def subscribers(self, conversation: str) -> List[Connection]:
        return [self._connections[c] for c in sorted(self._by_conversation.get(conversation, ()))]

    def live_count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, ()))

    def __len__(self) -> int:
        return len(self._connections)
