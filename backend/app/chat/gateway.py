"""Delivery fan-out to client connections.

The Gateway is the boundary between the messaging core and the network.
The core hands it typed ServerEvents and a set of connections; the Gateway
serializes each event once and appends it to every connection's outbound
queue. A writer task per connection drains its queue into the connection's
PushChannel, so:

    - enqueueing never blocks, and a slow or dead connection never delays
      the others or the conversation lock held by the caller
    - each connection receives events in the order they were enqueued
    - a failed send is retried a bounded number of times with exponential
      backoff, then dropped; the message is still in the durable log and the
      client recovers it through history catch-up
    - a full queue marks the connection as a slow consumer and closes it

The core never assumes same-process delivery: anything that implements
PushChannel (a WebSocket today) can carry events.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set

from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import BaseModel

from app.config import GatewaySettings

from .connections import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

# WebSocket close code for a consumer that cannot keep up (1008 = Policy Violation)
SLOW_CONSUMER_CLOSE_CODE = 1008

_CLOSE = object()


class ChannelClosed(Exception):
    """The remote end of a push channel is gone; further sends are pointless."""


class PushChannel(ABC):
    """Transport that carries server events to one client."""

    @abstractmethod
    async def send(self, payload: dict) -> None:
        """Deliver one JSON-serializable event. Raise ChannelClosed if gone."""

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        pass


class WebSocketChannel(PushChannel):
    """PushChannel over a FastAPI/Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    def _is_open(self) -> bool:
        return (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: dict) -> None:
        if not self._is_open():
            raise ChannelClosed("WebSocket is not connected")
        try:
            await self._websocket.send_json(payload)
        except WebSocketDisconnect as exc:
            raise ChannelClosed(str(exc)) from exc

    async def close(self, code: int = 1000) -> None:
        if self._is_open():
            await self._websocket.close(code=code)


@dataclass
class _Outbox:
    connection: Connection
    channel: PushChannel
    queue: asyncio.Queue
    writer: Optional[asyncio.Task] = None
    close_code: int = 1000
    closing: bool = False


ConnectionLostHandler = Callable[[str], Awaitable[None]]


class Gateway:
    """Per-connection outbound queues and writers."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: Optional[GatewaySettings] = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or GatewaySettings()
        # connection_id -> _Outbox
        self._outboxes: Dict[str, _Outbox] = {}
        self._on_connection_lost: Optional[ConnectionLostHandler] = None
        self._background: Set[asyncio.Task] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def set_connection_lost_handler(self, handler: ConnectionLostHandler) -> None:
        """Called (once) when the gateway gives up on a connection."""
        self._on_connection_lost = handler

    def open(self, channel: PushChannel) -> Connection:
        """Register a new connection and start its writer."""
        connection = self._registry.open()
        outbox = _Outbox(
            connection=connection,
            channel=channel,
            queue=asyncio.Queue(maxsize=self._settings.max_queue_size),
        )
        outbox.writer = asyncio.get_running_loop().create_task(self._run_writer(outbox))
        self._outboxes[connection.connection_id] = outbox
        return connection

    # -------------------------------------------------------------------------
    # Enqueueing
    # -------------------------------------------------------------------------

    def push(self, connection_id: str, event: BaseModel) -> bool:
        """Enqueue one event for one connection. Returns False if not enqueued."""
        return self._enqueue(connection_id, event.model_dump(mode="json"))

    def broadcast(self, connections: Iterable[Connection], event: BaseModel) -> int:
        """Enqueue one event for many connections; returns how many accepted it."""
        payload = event.model_dump(mode="json")
        seen = set()
        delivered = 0
        for connection in connections:
            if connection.connection_id in seen:
                continue
            seen.add(connection.connection_id)
            if self._enqueue(connection.connection_id, payload):
                delivered += 1
        return delivered

    async def replay(self, connection_id: str, events: Iterable[BaseModel]) -> int:
        """Enqueue a batch of events, waiting for queue space between them.

        Used for catch-up, where the batch can be larger than the queue.
        A connection that makes no room within ``replay_timeout_seconds`` is
        closed as a slow consumer. Returns how many events were enqueued.
        """
        enqueued = 0
        for event in events:
            outbox = self._writable(connection_id)
            if outbox is None:
                break
            put = asyncio.ensure_future(outbox.queue.put(event.model_dump(mode="json")))
            # A writer that stops (channel gone, connection closed) ends the wait early
            done, _ = await asyncio.wait(
                {put, outbox.writer},
                timeout=self._settings.replay_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if put not in done:
                put.cancel()
                if not outbox.closing and not outbox.writer.done():
                    self._slow_consumer(connection_id, outbox)
                break
            enqueued += 1
        return enqueued

    def _writable(self, connection_id: str) -> Optional[_Outbox]:
        outbox = self._outboxes.get(connection_id)
        if outbox is None or outbox.closing or outbox.writer is None or outbox.writer.done():
            return None
        return outbox

    def _enqueue(self, connection_id: str, payload: dict) -> bool:
        outbox = self._writable(connection_id)
        if outbox is None:
            return False
        try:
            outbox.queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            self._slow_consumer(connection_id, outbox)
            return False

    def _slow_consumer(self, connection_id: str, outbox: _Outbox) -> None:
        logger.warning(
            f"[Gateway] Outbound queue full for {connection_id}; closing slow consumer"
        )
        outbox.closing = True
        outbox.writer.cancel()
        outbox.close_code = SLOW_CONSUMER_CLOSE_CODE
        self._spawn(self._lost(connection_id))

    # -------------------------------------------------------------------------
    # Writer
    # -------------------------------------------------------------------------

    async def _run_writer(self, outbox: _Outbox) -> None:
        connection_id = outbox.connection.connection_id
        while True:
            payload = await outbox.queue.get()
            if payload is _CLOSE:
                await outbox.channel.close(outbox.close_code)
                return
            if not await self._send_with_retry(outbox, payload):
                logger.info(f"[Gateway] Channel closed for {connection_id}")
                self._spawn(self._lost(connection_id))
                return

    async def _send_with_retry(self, outbox: _Outbox, payload: dict) -> bool:
        """Send one payload. Returns False only if the channel is gone."""
        retries = self._settings.delivery_retries
        for attempt in range(retries + 1):
            try:
                await outbox.channel.send(payload)
                return True
            except ChannelClosed:
                return False
            except Exception as e:
                if attempt == retries:
                    logger.warning(
                        f"[Gateway] Dropping {payload.get('type')} event for "
                        f"{outbox.connection.connection_id} after {retries + 1} attempts: {e}"
                    )
                    return True
                await asyncio.sleep(self._settings.retry_backoff_seconds * (2 ** attempt))
        return True

    async def _lost(self, connection_id: str) -> None:
        if self._on_connection_lost is not None:
            await self._on_connection_lost(connection_id)
        else:
            await self.close(connection_id, drain=False)

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    async def close(self, connection_id: str, drain: bool = True, code: int = 1000) -> None:
        """Stop a connection's writer and drop it from the registry.

        With ``drain`` the events already queued (for example a final error)
        are flushed before the channel is closed; otherwise undelivered
        events are abandoned. Committed messages are never affected.
        """
        outbox = self._outboxes.pop(connection_id, None)
        self._registry.close(connection_id)
        if outbox is None or outbox.writer is None:
            return
        outbox.closing = True
        writer = outbox.writer
        if drain and not writer.done():
            outbox.close_code = code
            try:
                outbox.queue.put_nowait(_CLOSE)
            except asyncio.QueueFull:
                writer.cancel()
        else:
            writer.cancel()
        done, _ = await asyncio.wait({writer}, timeout=5)
        if not done:
            writer.cancel()
        elif not writer.cancelled() and writer.exception() is not None:
            logger.debug(f"[Gateway] Writer for {connection_id} ended with {writer.exception()!r}")
        if not drain or not done:
            await outbox.channel.close(outbox.close_code)

    async def close_all(self) -> None:
        for connection_id in list(self._outboxes):
            await self.close(connection_id, drain=False)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._outboxes
