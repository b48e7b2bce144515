"""Event broker: fans engine events out to Server-Sent-Event subscribers.

One coordinating task owns the client map. Every operation (register,
unregister, broadcast, targeted send and introspection) is a command on a
single FIFO inbox, so the map is only ever touched by that task and reads
never observe a half-applied change. Introspection is a request/response
command answered through a future.

Publishing is fire-and-forget: it never blocks and never raises. Each
client has a bounded queue; when it is full the event is dropped for that
client only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from aigent.config import BrokerSettings
from aigent.errors import BrokerClosedError

logger = logging.getLogger(__name__)


class EventStatus(str, Enum):
    THINKING = "thinking"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


class AgentEvent(BaseModel):
    """A state transition of one run, as seen by observers."""

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: EventStatus
    message: str
    payload: Any = None
    run_id: str | None = None


def encode_event(
    data: Any,
    *,
    event_id: str | None = None,
    event: str | None = None,
    retry: int | None = None,
) -> str:
    """Serialize one SSE record.

    id:/event: lines are optional; data is JSON-encoded, split on newlines
    and each line prefixed separately; retry: is optional; a blank line
    terminates the record.
    """
    lines: list[str] = []
    if event_id:
        lines.append(f"id: {event_id}")
    if event:
        lines.append(f"event: {event}")

    body = json.dumps(data, ensure_ascii=False, default=str)
    for line in body.split("\n"):
        if line:
            lines.append(f"data: {line}")

    if retry:
        lines.append(f"retry: {retry}")
    return "\n".join(lines) + "\n\n"


def _new_event_id() -> str:
    return str(time.time_ns())


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class Client:
    """A subscriber's outbound queue. Owned by the broker task."""

    def __init__(self, client_id: str, capacity: int) -> None:
        self.id = client_id
        # None is the end-of-stream marker.
        self.queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=capacity)
        self.closed = False

    def send(self, frame: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Discard pending frames and end the stream."""
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class Subscription:
    """Async iterator over one client's serialized events.

    Ends when the lifetime expires, when the broker closes the client, or
    when the consumer stops iterating (e.g. the HTTP peer disconnects);
    every path unsubscribes.
    """

    def __init__(self, broker: Broker, client: Client, lifetime: float) -> None:
        self._broker = broker
        self._client = client
        self.lifetime = lifetime

    @property
    def client_id(self) -> str:
        return self._client.id

    def __aiter__(self) -> AsyncIterator[str]:
        return self.frames()

    async def frames(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lifetime
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info(f"Subscription '{self.client_id}' reached its lifetime")
                    break
                try:
                    frame = await asyncio.wait_for(self._client.queue.get(), remaining)
                except asyncio.TimeoutError:
                    logger.info(f"Subscription '{self.client_id}' reached its lifetime")
                    break
                if frame is None:
                    break
                yield frame
        finally:
            self._broker._unregister(self._client)

    async def aclose(self) -> None:
        self._broker._unregister(self._client)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass
class _Register:
    client: Client


@dataclass
class _Unregister:
    client_id: str
    client: Client | None = None  # only remove this exact client


@dataclass
class _Broadcast:
    frame: str


@dataclass
class _SendTo:
    client_id: str
    frame: str
    reply: asyncio.Future = field(repr=False)


@dataclass
class _Snapshot:
    reply: asyncio.Future = field(repr=False)


@dataclass
class _Stop:
    pass


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------


class Broker:
    """Single-owner event fan-out.

    Usage::

        async with Broker(settings) as broker:
            subscription = broker.subscribe("dashboard")
            broker.publish(EventStatus.THINKING, "Run started")
            async for frame in subscription:
                ...
    """

    def __init__(self, settings: BrokerSettings | None = None) -> None:
        self.settings = settings or BrokerSettings()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._clients: dict[str, Client] = {}
        self._task: asyncio.Task | None = None
        self._closed = False
        self._backlog = 0  # broadcasts queued in the inbox

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the coordinating task. Must be called from a running loop."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info("Event broker started")

    async def shutdown(self) -> None:
        """Disconnect every subscriber and stop accepting new ones."""
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
            return
        self._inbox.put_nowait(_Stop())
        await self._task
        logger.info("Event broker stopped")

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> Broker:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # -- publishing --------------------------------------------------------

    def publish(
        self,
        status: EventStatus,
        message: str,
        payload: Any = None,
        *,
        event_id: str | None = None,
        run_id: str | None = None,
    ) -> None:
        """Broadcast an engine event. Never blocks, never raises."""
        event = AgentEvent(
            id=event_id or _new_event_id(),
            status=status,
            message=message,
            payload=payload,
            run_id=run_id,
        )
        try:
            data = event.model_dump(mode="json")
        except (TypeError, ValueError) as e:
            logger.error(f"Could not serialize event '{event.id}': {e}")
            return
        self.broadcast("agent", data, event_id=event.id)

    def broadcast(self, event_type: str, data: Any, *, event_id: str | None = None) -> None:
        if self._closed:
            logger.debug(f"Broker closed, dropping '{event_type}' event")
            return
        if self._backlog >= self.settings.inbox_size:
            logger.warning(f"Broker inbox full, dropping '{event_type}' event")
            return
        try:
            frame = encode_event(
                data,
                event_id=event_id or _new_event_id(),
                event=event_type,
                retry=self.settings.retry_ms,
            )
        except (TypeError, ValueError) as e:
            logger.error(f"Could not serialize '{event_type}' event: {e}")
            return
        self._backlog += 1
        self._inbox.put_nowait(_Broadcast(frame))

    async def send_to(self, client_id: str, event_type: str, data: Any) -> bool:
        """Deliver an event to one subscriber. Returns False if absent or full."""
        if self._closed or self._task is None:
            return False
        frame = encode_event(data, event_id=_new_event_id(), event=event_type)
        reply = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_SendTo(client_id, frame, reply))
        return await reply

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, client_id: str, lifetime: float | None = None) -> Subscription:
        if self._closed:
            raise BrokerClosedError("Broker is shut down; not accepting subscribers")

        client = Client(client_id, self.settings.client_queue_size)
        if self.settings.send_connected_event:
            client.send(
                encode_event(
                    {
                        "client_id": client_id,
                        "timestamp": int(time.time()),
                        "message": "Connected to the event stream",
                    },
                    event_id="connect",
                    event="connected",
                )
            )
        self._inbox.put_nowait(_Register(client))
        return Subscription(
            self,
            client,
            lifetime or self.settings.subscription_lifetime_seconds,
        )

    def unsubscribe(self, client_id: str) -> None:
        if not self._closed:
            self._inbox.put_nowait(_Unregister(client_id))

    def _unregister(self, client: Client) -> None:
        if not self._closed:
            self._inbox.put_nowait(_Unregister(client.id, client))

    # -- introspection -----------------------------------------------------

    async def client_ids(self) -> list[str]:
        if self._closed or self._task is None:
            return []
        reply = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Snapshot(reply))
        return await reply

    async def client_count(self) -> int:
        return len(await self.client_ids())

    # -- coordinating task -------------------------------------------------

    async def _run(self) -> None:
        while True:
            command = await self._inbox.get()
            match command:
                case _Register(client=client):
                    previous = self._clients.get(client.id)
                    if previous is not None:
                        logger.info(f"Client '{client.id}' re-subscribed; closing previous stream")
                        previous.close()
                    self._clients[client.id] = client
                    logger.info(f"Client '{client.id}' subscribed ({len(self._clients)} total)")

                case _Unregister(client_id=client_id, client=client):
                    current = self._clients.get(client_id)
                    if current is not None and (client is None or current is client):
                        del self._clients[client_id]
                        current.close()
                        logger.info(f"Client '{client_id}' unsubscribed ({len(self._clients)} total)")
                    elif client is not None:
                        client.close()

                case _Broadcast(frame=frame):
                    self._backlog -= 1
                    for client in self._clients.values():
                        if not client.send(frame):
                            logger.debug(f"Client '{client.id}' queue full, event dropped")

                case _SendTo(client_id=client_id, frame=frame, reply=reply):
                    client = self._clients.get(client_id)
                    if not reply.done():
                        reply.set_result(client.send(frame) if client else False)

                case _Snapshot(reply=reply):
                    if not reply.done():
                        reply.set_result(list(self._clients))

                case _Stop():
                    for client in self._clients.values():
                        client.close()
                    self._clients.clear()
                    self._drain_pending()
                    return

    def _drain_pending(self) -> None:
        """Answer any request still queued behind the stop command."""
        while not self._inbox.empty():
            command = self._inbox.get_nowait()
            match command:
                case _SendTo(reply=reply) if not reply.done():
                    reply.set_result(False)
                case _Snapshot(reply=reply) if not reply.done():
                    reply.set_result([])
                case _Register(client=client) | _Unregister(client=Client() as client):
                    client.close()
