from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol

from bulk_ingest.exceptions import ConnectionRejectedError
from bulk_ingest.loading.events import LifecycleEvent, LifecycleQueue
from bulk_ingest.models.utils import utcnow
from bulk_ingest.progress.messages import (
    ConnectedMessage,
    HeartbeatMessage,
    PongMessage,
    WireMessage,
    to_wire,
)

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
GOING_AWAY = 1001

Health = Literal["healthy", "degraded", "error"]


class Connection(Protocol):
    """Minimal surface of a client socket (e.g. a websocket)."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, text: str) -> None: ...

    async def ping(self) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass
class ChannelConfig:
    heartbeat_interval: float = 30.0


@dataclass(eq=False)
class Subscriber:
    connection: Connection
    session_id: str
    principal: str
    connected_at: datetime = field(default_factory=utcnow)
    # Serializes sends so one connection sees messages in emission order.
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass
class SessionStats:
    session_id: str
    clients: int


@dataclass
class ChannelStats:
    total_connections: int
    active_sessions: int
    sessions: list[SessionStats]
    started_at: datetime | None
    health: Health


class ProgressChannel:
    """Fan-out of import lifecycle messages to subscribers of each session.

    Usage::

        channel = ProgressChannel(events=loader.events)
        await channel.start()
        await channel.connect(websocket, session_id, user_id)
        ...
        await channel.stop()

    Delivery never raises: a connection whose send fails is dropped from
    the registry and the broadcast carries on with the others.
    """

    def __init__(
        self,
        config: ChannelConfig | None = None,
        events: LifecycleQueue | None = None,
    ) -> None:
        self._config = config or ChannelConfig()
        self._events = events
        self._sessions: dict[str, list[Subscriber]] = {}
        self._subscribers: dict[int, Subscriber] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._relay_task: asyncio.Task[None] | None = None
        self._started_at: datetime | None = None

    @property
    def config(self) -> ChannelConfig:
        return self._config

    @property
    def started(self) -> bool:
        return self._started_at is not None

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.started:
            return
        self._started_at = utcnow()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        if self._events is not None:
            self._events.attach()
            self._relay_task = asyncio.create_task(self.relay(self._events))
        logger.info(
            "Progress channel started (heartbeat every %.0fs)",
            self._config.heartbeat_interval,
        )

    async def stop(self) -> None:
        """Drain pending events, stop background tasks and close every connection."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        if self._relay_task is not None:
            self._events.close()
            await self._relay_task
            self._events.detach()
            self._relay_task = None

        subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            if subscriber.connection.is_open:
                await subscriber.connection.close(GOING_AWAY, "Server shutting down")
        self._sessions.clear()
        self._subscribers.clear()
        self._started_at = None
        logger.info("Progress channel stopped; closed %d connections", len(subscribers))

    # ── Connections ──────────────────────────────────────────────────

    async def connect(
        self,
        connection: Connection,
        session_id: str | None,
        principal: str | None,
    ) -> Subscriber:
        if not session_id or not principal:
            logger.info("Rejecting connection: missing session id or principal")
            await connection.close(POLICY_VIOLATION, "Missing sessionId or userId")
            raise ConnectionRejectedError("Missing sessionId or userId")

        subscriber = Subscriber(connection=connection, session_id=session_id, principal=principal)
        self._subscribers[id(connection)] = subscriber
        self._sessions.setdefault(session_id, []).append(subscriber)
        logger.info("Client %s subscribed to session %s", principal, session_id)
        await self._deliver(subscriber, ConnectedMessage(session_id=session_id).to_json())
        return subscriber

    def disconnect(self, connection: Connection) -> None:
        subscriber = self._subscribers.get(id(connection))
        if subscriber is not None:
            self._remove(subscriber)
            logger.info("Client %s left session %s", subscriber.principal, subscriber.session_id)

    async def handle_message(self, connection: Connection, raw: str | bytes) -> None:
        """Handle one client frame: ``ping`` or ``subscribe``."""
        subscriber = self._subscribers.get(id(connection))
        if subscriber is None:
            logger.warning("Message from unregistered connection ignored")
            return
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Invalid message from %s ignored", subscriber.principal)
            return
        if not isinstance(message, dict):
            logger.warning("Non-object message from %s ignored", subscriber.principal)
            return

        match message.get("type"):
            case "ping":
                await self._deliver(subscriber, PongMessage().to_json())
            case "subscribe":
                session_id = message.get("sessionId")
                if session_id and session_id != subscriber.session_id:
                    self._move(subscriber, session_id)
            case other:
                logger.info("Unknown message type %r from %s", other, subscriber.principal)

    def _move(self, subscriber: Subscriber, session_id: str) -> None:
        self._detach(subscriber)
        subscriber.session_id = session_id
        self._sessions.setdefault(session_id, []).append(subscriber)
        logger.info("Client %s moved to session %s", subscriber.principal, session_id)

    def _detach(self, subscriber: Subscriber) -> None:
        subscribers = self._sessions.get(subscriber.session_id)
        if subscribers is None:
            return
        if subscriber in subscribers:
            subscribers.remove(subscriber)
        if not subscribers:
            del self._sessions[subscriber.session_id]

    def _remove(self, subscriber: Subscriber) -> None:
        self._detach(subscriber)
        self._subscribers.pop(id(subscriber.connection), None)

    # ── Delivery ─────────────────────────────────────────────────────

    async def broadcast(self, session_id: str, message: WireMessage) -> int:
        """Send *message* to every subscriber of *session_id*; returns deliveries."""
        subscribers = list(self._sessions.get(session_id, ()))
        if not subscribers:
            logger.debug("No subscribers for session %s", session_id)
            return 0
        text = message.to_json()
        delivered = await asyncio.gather(*(self._deliver(s, text) for s in subscribers))
        sent = sum(delivered)
        logger.debug(
            "Broadcast %s to session %s: %d sent, %d dropped",
            message.type,
            session_id,
            sent,
            len(subscribers) - sent,
        )
        return sent

    async def publish(self, event: LifecycleEvent) -> int:
        return await self.broadcast(event.session_id, to_wire(event))

    async def relay(self, events: LifecycleQueue) -> None:
        """Broadcast every event from *events* until the queue is closed."""
        async for event in events:
            await self.publish(event)

    async def _deliver(self, subscriber: Subscriber, text: str) -> bool:
        if not subscriber.connection.is_open:
            self._remove(subscriber)
            return False
        try:
            async with subscriber.send_lock:
                await subscriber.connection.send(text)
        except Exception as exc:
            logger.warning(
                "Dropping %s from session %s: %s",
                subscriber.principal,
                subscriber.session_id,
                exc,
            )
            self._remove(subscriber)
            return False
        return True

    # ── Heartbeat ────────────────────────────────────────────────────

    async def heartbeat(self) -> int:
        """Ping every connection, pruning dead ones. Returns the number still alive."""
        alive = 0
        for subscriber in list(self._subscribers.values()):
            if not subscriber.connection.is_open:
                self._remove(subscriber)
                continue
            try:
                await subscriber.connection.ping()
            except Exception as exc:
                logger.warning("Ping to %s failed: %s", subscriber.principal, exc)
                self._remove(subscriber)
                continue
            alive += 1
        message = HeartbeatMessage(connections=alive).to_json()
        await asyncio.gather(*(self._deliver(s, message) for s in list(self._subscribers.values())))
        return len(self._subscribers)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            await self.heartbeat()

    # ── Monitoring ───────────────────────────────────────────────────

    @property
    def total_connections(self) -> int:
        return len(self._subscribers)

    def health(self) -> Health:
        if not self.started:
            return "error"
        if not self._subscribers:
            return "degraded"
        return "healthy"

    def stats(self) -> ChannelStats:
        return ChannelStats(
            total_connections=self.total_connections,
            active_sessions=len(self._sessions),
            sessions=[SessionStats(sid, len(subs)) for sid, subs in self._sessions.items()],
            started_at=self._started_at,
            health=self.health(),
        )
