"""DuckDB-based durable MessageLog.

This module persists users, rooms, memberships, messages and read receipts
in DuckDB. One connection is held for the lifetime of the instance; the
FastAPI lifespan opens it on startup and closes it on shutdown.

Database Schema:
    users:         id (PK), email, display_name, avatar_ref,
                   status, last_seen_at, active
    credentials:   email (PK, enforces one account per email), user_id,
                   password_hash
    rooms:         id (PK), name, description, created_at
    room_members:  (room_id, user_id) PK
    messages:      (conversation, seq) PK, id, sender_id, body, created_at
    message_reads: (conversation, seq, reader_id) PK

Thread Safety:
    The DuckDB connection is NOT thread-safe. All calls are made from the
    event loop thread that owns the application.

Errors:
    Any ``duckdb.Error`` is re-raised as ``Transient`` so callers can treat a
    storage hiccup as retryable without importing duckdb.
"""
import functools
import logging
from typing import Dict, List, Optional, Set, Tuple

import duckdb

from app.chat.schemas import DIRECT_PREFIX, Message, Room, User, UserStatus
from app.errors import Transient

from .base import MessageLog

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "conversation, seq, id, sender_id, body, created_at"


def _translate_errors(method):
    """Re-raise duckdb errors from a storage call as Transient."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except duckdb.Error as exc:
            logger.error(f"[Storage] {method.__name__} failed: {exc}")
            raise Transient(f"Storage unavailable: {exc}") from exc

    return wrapper


class DuckDBMessageLog(MessageLog):
    """Persistent implementation of :class:`MessageLog` backed by DuckDB.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    def __init__(self, db_path: str = "cosmic_chat.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                email VARCHAR NOT NULL,
                display_name VARCHAR NOT NULL,
                avatar_ref VARCHAR,
                status VARCHAR NOT NULL,
                last_seen_at BIGINT,
                active BOOLEAN NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                email VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                password_hash VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                description VARCHAR,
                created_at BIGINT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS room_members (
                room_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                PRIMARY KEY (room_id, user_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                conversation VARCHAR NOT NULL,
                seq BIGINT NOT NULL,
                id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                body VARCHAR NOT NULL,
                created_at BIGINT NOT NULL,
                PRIMARY KEY (conversation, seq)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS message_reads (
                conversation VARCHAR NOT NULL,
                seq BIGINT NOT NULL,
                reader_id VARCHAR NOT NULL,
                PRIMARY KEY (conversation, seq, reader_id)
            )
        """)

    # -- users ---------------------------------------------------------------

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=row[0],
            email=row[1],
            displayName=row[2],
            avatarRef=row[3],
            status=UserStatus(row[4]),
            lastSeenAt=row[5],
            active=row[6],
        )

    @_translate_errors
    def save_user(self, user: User) -> None:
        self._get_connection().execute(
            """
            INSERT OR REPLACE INTO users
                (id, email, display_name, avatar_ref, status, last_seen_at, active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                user.id,
                user.email,
                user.displayName,
                user.avatarRef,
                user.status.value,
                user.lastSeenAt,
                user.active,
            ],
        )

    @_translate_errors
    def get_user(self, user_id: str) -> Optional[User]:
        row = self._get_connection().execute(
            "SELECT id, email, display_name, avatar_ref, status, last_seen_at, active "
            "FROM users WHERE id = ?",
            [user_id],
        ).fetchone()
        return self._row_to_user(row) if row else None

    @_translate_errors
    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._get_connection().execute(
            "SELECT id, email, display_name, avatar_ref, status, last_seen_at, active "
            "FROM users WHERE email = ?",
            [email],
        ).fetchone()
        return self._row_to_user(row) if row else None

    @_translate_errors
    def list_users(self) -> List[User]:
        rows = self._get_connection().execute(
            "SELECT id, email, display_name, avatar_ref, status, last_seen_at, active "
            "FROM users ORDER BY display_name"
        ).fetchall()
        return [self._row_to_user(row) for row in rows]

    @_translate_errors
    def save_credential(self, email: str, user_id: str, password_hash: str) -> None:
        self._get_connection().execute(
            "INSERT OR REPLACE INTO credentials (email, user_id, password_hash) VALUES (?, ?, ?)",
            [email, user_id, password_hash],
        )

    @_translate_errors
    def get_credential(self, email: str) -> Optional[Tuple[str, str]]:
        row = self._get_connection().execute(
            "SELECT user_id, password_hash FROM credentials WHERE email = ?",
            [email],
        ).fetchone()
        return (row[0], row[1]) if row else None

    # -- rooms ---------------------------------------------------------------

    @_translate_errors
    def save_room(self, room: Room) -> None:
        self._get_connection().execute(
            "INSERT OR REPLACE INTO rooms (id, name, description, created_at) VALUES (?, ?, ?, ?)",
            [room.id, room.name, room.description, room.createdAt],
        )

    _ROOM_QUERY = """
        SELECT r.id, r.name, r.description, r.created_at,
               (SELECT count(*) FROM room_members m WHERE m.room_id = r.id)
        FROM rooms r
    """

    @staticmethod
    def _row_to_room(row) -> Room:
        return Room(
            id=row[0],
            name=row[1],
            description=row[2],
            createdAt=row[3],
            memberCount=row[4],
        )

    @_translate_errors
    def get_room(self, room_id: str) -> Optional[Room]:
        row = self._get_connection().execute(
            self._ROOM_QUERY + " WHERE r.id = ?", [room_id]
        ).fetchone()
        return self._row_to_room(row) if row else None

    @_translate_errors
    def list_rooms(self) -> List[Room]:
        rows = self._get_connection().execute(
            self._ROOM_QUERY + " ORDER BY r.created_at"
        ).fetchall()
        return [self._row_to_room(row) for row in rows]

    @_translate_errors
    def add_member(self, room_id: str, user_id: str) -> bool:
        conn = self._get_connection()
        exists = conn.execute(
            "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        ).fetchone()
        if exists:
            return False
        conn.execute(
            "INSERT INTO room_members (room_id, user_id) VALUES (?, ?)",
            [room_id, user_id],
        )
        return True

    @_translate_errors
    def remove_member(self, room_id: str, user_id: str) -> bool:
        conn = self._get_connection()
        exists = conn.execute(
            "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        ).fetchone()
        if not exists:
            return False
        conn.execute(
            "DELETE FROM room_members WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        )
        return True

    @_translate_errors
    def members(self, room_id: str) -> Set[str]:
        rows = self._get_connection().execute(
            "SELECT user_id FROM room_members WHERE room_id = ?", [room_id]
        ).fetchall()
        return {row[0] for row in rows}

    @_translate_errors
    def rooms_for(self, user_id: str) -> List[str]:
        rows = self._get_connection().execute(
            "SELECT room_id FROM room_members WHERE user_id = ? ORDER BY room_id", [user_id]
        ).fetchall()
        return [row[0] for row in rows]

    # -- messages ------------------------------------------------------------

    def _hydrate(self, conversation: str, rows) -> List[Message]:
        """Build Message objects and attach their readBy sets."""
        if not rows:
            return []
        first_seq, last_seq = rows[0][1], rows[-1][1]
        read_rows = self._get_connection().execute(
            """
            SELECT seq, reader_id FROM message_reads
            WHERE conversation = ? AND seq BETWEEN ? AND ?
            """,
            [conversation, min(first_seq, last_seq), max(first_seq, last_seq)],
        ).fetchall()
        readers: Dict[int, Set[str]] = {}
        for seq, reader_id in read_rows:
            readers.setdefault(seq, set()).add(reader_id)
        return [
            Message(
                conversation=row[0],
                seq=row[1],
                id=row[2],
                senderId=row[3],
                body=row[4],
                createdAt=row[5],
                readBy=readers.get(row[1], set()),
            )
            for row in rows
        ]

    @_translate_errors
    def append_message(self, message: Message) -> None:
        self._get_connection().execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            [
                message.conversation,
                message.seq,
                message.id,
                message.senderId,
                message.body,
                message.createdAt,
            ],
        )

    @_translate_errors
    def last_message(self, conversation: str) -> Optional[Message]:
        rows = self._get_connection().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation = ? "
            "ORDER BY seq DESC LIMIT 1",
            [conversation],
        ).fetchall()
        messages = self._hydrate(conversation, rows)
        return messages[0] if messages else None

    @_translate_errors
    def messages_after(self, conversation: str, after_seq: int, limit: int) -> List[Message]:
        rows = self._get_connection().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation = ? AND seq > ? "
            "ORDER BY seq LIMIT ?",
            [conversation, after_seq, limit],
        ).fetchall()
        return self._hydrate(conversation, rows)

    @_translate_errors
    def messages_before(
        self, conversation: str, before_seq: Optional[int], limit: int
    ) -> List[Message]:
        if before_seq is None:
            rows = self._get_connection().execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation = ? "
                "ORDER BY seq DESC LIMIT ?",
                [conversation, limit],
            ).fetchall()
        else:
            rows = self._get_connection().execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation = ? AND seq < ? "
                "ORDER BY seq DESC LIMIT ?",
                [conversation, before_seq, limit],
            ).fetchall()
        return self._hydrate(conversation, list(reversed(rows)))

    @_translate_errors
    def messages_upto(self, conversation: str, upto_seq: int) -> List[Message]:
        rows = self._get_connection().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation = ? AND seq <= ? "
            "ORDER BY seq",
            [conversation, upto_seq],
        ).fetchall()
        return self._hydrate(conversation, rows)

    @_translate_errors
    def add_readers(self, conversation: str, reader_id: str, seqs: List[int]) -> None:
        if not seqs:
            return
        self._get_connection().executemany(
            "INSERT OR IGNORE INTO message_reads (conversation, seq, reader_id) VALUES (?, ?, ?)",
            [[conversation, seq, reader_id] for seq in seqs],
        )

    @_translate_errors
    def unread_count(self, conversation: str, user_id: str) -> int:
        row = self._get_connection().execute(
            """
            SELECT count(*) FROM messages m
            WHERE m.conversation = ? AND m.sender_id <> ?
              AND NOT EXISTS (
                  SELECT 1 FROM message_reads r
                  WHERE r.conversation = m.conversation
                    AND r.seq = m.seq AND r.reader_id = ?
              )
            """,
            [conversation, user_id, user_id],
        ).fetchone()
        return int(row[0])

    @_translate_errors
    def direct_conversations(self) -> List[str]:
        rows = self._get_connection().execute(
            "SELECT DISTINCT conversation FROM messages WHERE conversation LIKE ?",
            [f"{DIRECT_PREFIX}:%"],
        ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
