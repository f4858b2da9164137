"""Connection registry — single source of truth for live subscribers.

Learn: The registry maps connection ids to Connection records and keeps
channel membership in both directions (connection → channels and
channel → members) so either lookup is O(1).

Concurrency: everything runs on one asyncio event loop and no mutation
here awaits, so each operation is atomic with respect to other tasks.
That is what keeps membership consistent under concurrent
join/leave/publish without a global lock. Fan-out never iterates a live
set: ``members_of`` hands out a frozen copy.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

from chatcast.broadcast.channel import Channel, ChannelPolicy
from chatcast.errors import (
    Backpressure,
    NotFound,
    ResourceExhausted,
    TransportClosed,
    Unauthorized,
)

logger = structlog.get_logger()


class ConnectionState(str, Enum):
    OPEN = "open"
    DRAINING = "draining"  # outbound queue overflowed, frames being dropped
    CLOSED = "closed"


@dataclass
class Connection:
    """One live subscriber session."""

    id: str
    principal: str
    outbound: asyncio.Queue
    opened_at: float
    last_activity: float
    channels: set[str] = field(default_factory=set)
    authorized: set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.OPEN
    draining_since: Optional[float] = None
    dropped: int = 0

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    @property
    def pending(self) -> int:
        return self.outbound.qsize()

    def enqueue(self, frame: str, now: float) -> None:
        """Non-blocking push onto the outbound queue.

        Raises TransportClosed if the connection is gone, Backpressure if
        the queue is full (the connection is flagged draining).
        """
        if self.is_closed:
            raise TransportClosed(self.id)
        try:
            self.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.state is ConnectionState.OPEN:
                self.state = ConnectionState.DRAINING
                self.draining_since = now
            raise Backpressure(self.id) from None

    def touch(self, now: float) -> None:
        self.last_activity = now

    def settle(self) -> None:
        """Return to OPEN once the writer has emptied the queue."""
        if self.state is ConnectionState.DRAINING and self.outbound.empty():
            self.state = ConnectionState.OPEN
            self.draining_since = None


DeregisterListener = Callable[[Connection], None]


class ConnectionRegistry:
    """Owns every Connection and Channel of one broadcast service."""

    def __init__(
        self,
        max_connections: int = 10_000,
        outbound_queue_size: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_connections = max_connections
        self.outbound_queue_size = outbound_queue_size
        self.clock = clock
        self._connections: dict[str, Connection] = {}
        self._channels: dict[str, Channel] = {}
        self._listeners: list[DeregisterListener] = []

    # ─── Connections ──────────────────────────────────────

    def register(self, principal: str) -> str:
        """Create an open connection for an authenticated principal."""
        if len(self._connections) >= self.max_connections:
            logger.warning(
                "broadcast.registry_full",
                principal=principal,
                max_connections=self.max_connections,
            )
            raise ResourceExhausted(
                f"connection limit reached ({self.max_connections})"
            )

        now = self.clock()
        connection = Connection(
            id=uuid.uuid4().hex,
            principal=str(principal),
            outbound=asyncio.Queue(maxsize=self.outbound_queue_size),
            opened_at=now,
            last_activity=now,
        )
        self._connections[connection.id] = connection
        logger.info(
            "broadcast.connection_opened",
            connection_id=connection.id,
            principal=connection.principal,
        )
        return connection.id

    def deregister(self, connection_id: str) -> bool:
        """Close a connection and drop all of its memberships.

        Idempotent: returns False (and does nothing) for unknown or
        already-closed connections.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False

        connection.state = ConnectionState.CLOSED
        for name in list(connection.channels):
            channel = self._channels.get(name)
            if channel is not None:
                channel.discard(connection_id)
        connection.channels.clear()
        connection.authorized.clear()

        for listener in list(self._listeners):
            try:
                listener(connection)
            except Exception:
                logger.exception(
                    "broadcast.deregister_listener_failed",
                    connection_id=connection_id,
                )

        logger.info(
            "broadcast.connection_closed",
            connection_id=connection_id,
            principal=connection.principal,
            dropped=connection.dropped,
        )
        return True

    def on_deregister(self, listener: DeregisterListener) -> None:
        """Register a callback fired once per closed connection."""
        self._listeners.append(listener)

    def lookup(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def get(self, connection_id: str) -> Connection:
        """Return an open connection or raise NotFound."""
        connection = self._connections.get(connection_id)
        if connection is None or connection.is_closed:
            raise NotFound(f"connection {connection_id} not found")
        return connection

    def connections(self) -> list[Connection]:
        """Snapshot of live connections."""
        return list(self._connections.values())

    def touch(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.touch(self.clock())

    # ─── Membership ───────────────────────────────────────

    def grant(self, connection_id: str, channel_name: str) -> None:
        """Record that the authorizer admitted this connection to a channel."""
        self.get(connection_id).authorized.add(channel_name)

    def join(
        self,
        connection_id: str,
        channel_name: str,
        policy: ChannelPolicy = ChannelPolicy.PUBLIC,
    ) -> Channel:
        """Add an authorized connection to a channel's member set."""
        connection = self.get(connection_id)
        if channel_name not in connection.authorized:
            raise Unauthorized(
                f"connection {connection_id} is not authorized for {channel_name}"
            )

        channel = self.ensure_channel(channel_name, policy)
        channel.add(connection_id)
        connection.channels.add(channel_name)
        logger.debug(
            "broadcast.channel_joined",
            connection_id=connection_id,
            channel=channel_name,
            members=len(channel.members),
        )
        return channel

    def leave(self, connection_id: str, channel_name: str) -> bool:
        """Remove membership. No-op (False) if not a member."""
        connection = self._connections.get(connection_id)
        if connection is None or channel_name not in connection.channels:
            return False

        connection.channels.discard(channel_name)
        channel = self._channels.get(channel_name)
        if channel is not None:
            channel.discard(connection_id)
        logger.debug(
            "broadcast.channel_left",
            connection_id=connection_id,
            channel=channel_name,
        )
        return True

    def members_of(self, channel_name: str) -> frozenset[str]:
        """Point-in-time copy of a channel's members."""
        channel = self._channels.get(channel_name)
        if channel is None:
            return frozenset()
        return frozenset(channel.members)

    # ─── Channels ─────────────────────────────────────────

    def channel(self, channel_name: str) -> Optional[Channel]:
        return self._channels.get(channel_name)

    def ensure_channel(
        self,
        channel_name: str,
        policy: ChannelPolicy = ChannelPolicy.PUBLIC,
    ) -> Channel:
        """Return the channel, creating it lazily."""
        channel = self._channels.get(channel_name)
        if channel is None:
            channel = Channel(channel_name, policy, clock=self.clock)
            self._channels[channel_name] = channel
            logger.debug("broadcast.channel_created", channel=channel_name)
        return channel

    def channels(self) -> list[Channel]:
        return list(self._channels.values())

    # ─── Housekeeping ─────────────────────────────────────

    def collect_empty_channels(self, retention_seconds: float = 0.0) -> list[str]:
        """Drop channels with no members that have been quiet long enough."""
        now = self.clock()
        collected = [
            name
            for name, channel in self._channels.items()
            if channel.is_empty() and channel.idle_for(now) >= retention_seconds
        ]
        for name in collected:
            del self._channels[name]
        if collected:
            logger.debug("broadcast.channels_collected", channels=collected)
        return collected

    def find_stale(
        self,
        idle_timeout: float,
        drain_grace: float,
    ) -> list[str]:
        """Connections idle too long, or stuck draining too long."""
        now = self.clock()
        stale = []
        for connection in self._connections.values():
            if now - connection.last_activity > idle_timeout:
                stale.append(connection.id)
            elif (
                connection.state is ConnectionState.DRAINING
                and connection.draining_since is not None
                and now - connection.draining_since > drain_grace
            ):
                stale.append(connection.id)
        return stale

    def stats(self) -> dict:
        states = {state.value: 0 for state in ConnectionState}
        for connection in self._connections.values():
            states[connection.state.value] += 1
        return {
            "connections": len(self._connections),
            "channels": len(self._channels),
            "states": states,
        }
