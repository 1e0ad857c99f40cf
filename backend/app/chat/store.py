"""Ordered, append-only message log per conversation.

ConversationStore is the system of record for messages. It validates the
sender, assigns each message its position in the conversation and persists
it through the configured MessageLog backend.

Ordering:
    Every append and read mark for a conversation runs under that
    conversation's lock. ``seq`` increments by one per append in arrival
    order at the store, and ``createdAt`` is clamped so it never goes
    backwards within a conversation, so message IDs (``<ms>-<seq>``) sort in
    append order even when two appends land in the same millisecond or the
    wall clock steps back.

Commit hooks:
    ``append`` and ``mark_read`` accept an ``on_commit`` callback that runs
    while the lock is still held. MessageRouter uses it to enqueue fan-out,
    which is what makes every recipient observe the store's order.
"""
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from app.config import MessagingSettings
from app.errors import EmptyBody, InvalidInput, InvalidSender
from app.storage import MessageLog

from .locks import KeyedLocks
from .rooms import RoomDirectory
from .schemas import (
    ConversationRef,
    Message,
    ReadReceipt,
    format_message_id,
    now_ms,
    parse_message_seq,
)

logger = logging.getLogger(__name__)


class ConversationStore:
    """Single writer of message history."""

    def __init__(
        self,
        backend: MessageLog,
        rooms: RoomDirectory,
        settings: Optional[MessagingSettings] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._backend = backend
        self._rooms = rooms
        self._settings = settings or MessagingSettings()
        self._clock = clock
        self._locks = KeyedLocks()
        # conversation key -> (last seq, last createdAt)
        self._heads: Dict[str, Tuple[int, int]] = {}

    @asynccontextmanager
    async def locked(self, ref: ConversationRef) -> AsyncIterator[None]:
        """Hold the conversation's lock (used for catch-up replay)."""
        async with self._locks.hold(ref.key):
            yield

    def _head(self, key: str) -> Tuple[int, int]:
        if key not in self._heads:
            last = self._backend.last_message(key)
            self._heads[key] = (last.seq, last.createdAt) if last else (0, 0)
        return self._heads[key]

    def check_sender(self, ref: ConversationRef, sender_id: str) -> None:
        """Raise unless ``sender_id`` may post to ``ref``."""
        if ref.is_room:
            self._rooms.require(ref.roomId)
            if not self._rooms.is_member(ref.roomId, sender_id):
                raise InvalidSender(f"{sender_id} is not a member of room {ref.roomId}")
        elif sender_id not in ref.members:
            raise InvalidSender(f"{sender_id} is not part of {ref.key}")

    async def append(
        self,
        ref: ConversationRef,
        sender_id: str,
        body: str,
        on_commit: Optional[Callable[[Message], None]] = None,
    ) -> Message:
        """Validate and persist a message.

        Raises:
            EmptyBody: body is blank after trimming.
            InvalidInput: body exceeds ``messaging.max_body_length``.
            InvalidSender: sender may not post to this conversation.
            NotFound: the room does not exist.
            Transient: the storage backend failed; nothing was stored.
        """
        if not body or not body.strip():
            raise EmptyBody("Message body cannot be empty")
        if len(body) > self._settings.max_body_length:
            raise InvalidInput(
                f"Message body exceeds {self._settings.max_body_length} characters"
            )
        self.check_sender(ref, sender_id)

        async with self._locks.hold(ref.key):
            last_seq, last_ts = self._head(ref.key)
            seq = last_seq + 1
            created_at = max(self._clock(), last_ts)
            message = Message(
                id=format_message_id(created_at, seq),
                conversation=ref.key,
                senderId=sender_id,
                body=body,
                createdAt=created_at,
                seq=seq,
            )
            self._backend.append_message(message)
            self._heads[ref.key] = (seq, created_at)
            logger.debug(f"[Store] Appended {message.id} to {ref.key}")
            if on_commit is not None:
                on_commit(message)
        return message

    def _clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            return min(self._settings.default_page_size, self._settings.max_page_size)
        if limit < 1:
            raise InvalidInput("limit must be at least 1")
        return min(limit, self._settings.max_page_size)

    def history(
        self,
        ref: ConversationRef,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Messages strictly after ``cursor`` (a message id), oldest first.

        The cursor is a position in the log, not an offset, so paging stays
        stable while new messages are appended.
        """
        after_seq = parse_message_seq(cursor) if cursor else 0
        return self._backend.messages_after(ref.key, after_seq, self._clamp(limit))

    def latest(
        self,
        ref: ConversationRef,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """The newest messages strictly before ``before``, oldest first (lazy loading)."""
        before_seq = parse_message_seq(before) if before else None
        return self._backend.messages_before(ref.key, before_seq, self._clamp(limit))

    async def mark_read(
        self,
        ref: ConversationRef,
        reader_id: str,
        upto_message_id: str,
        on_commit: Optional[Callable[[List[ReadReceipt]], None]] = None,
    ) -> List[ReadReceipt]:
        """Mark every message up to ``upto_message_id`` not sent by the reader as read.

        Idempotent: messages already read by ``reader_id`` are skipped, so a
        repeat call changes nothing and returns no receipts. Changes are
        batched into one receipt per original sender.
        """
        upto_seq = parse_message_seq(upto_message_id)
        async with self._locks.hold(ref.key):
            pending = [
                m for m in self._backend.messages_upto(ref.key, upto_seq)
                if m.senderId != reader_id and reader_id not in m.readBy
            ]
            if not pending:
                return []
            self._backend.add_readers(ref.key, reader_id, [m.seq for m in pending])

            by_sender: "OrderedDict[str, List[str]]" = OrderedDict()
            for message in pending:
                by_sender.setdefault(message.senderId, []).append(message.id)
            receipts = [
                ReadReceipt(
                    conversation=ref.key,
                    readerId=reader_id,
                    senderId=sender_id,
                    messageIds=message_ids,
                )
                for sender_id, message_ids in by_sender.items()
            ]
            logger.debug(
                f"[Store] {reader_id} read {len(pending)} messages in {ref.key}"
            )
            if on_commit is not None:
                on_commit(receipts)
        return receipts

    def unread_count(self, ref: ConversationRef, user_id: str) -> int:
        return self._backend.unread_count(ref.key, user_id)

    def direct_partners(self, user_id: str) -> List[str]:
        """Users with whom ``user_id`` has a direct conversation."""
        partners = []
        for key in self._backend.direct_conversations():
            other = ConversationRef.parse(key).other_party(user_id)
            if other is not None:
                partners.append(other)
        return partners
