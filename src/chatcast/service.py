"""Broadcast service — owns one isolated instance of the fan-out core.

Learn: There is no module-level registry. Everything (connections,
channels, queues, background tasks) hangs off a BroadcastService object,
so the app holds one on ``app.state`` and tests build as many as they
like without sharing state.

The ``on_*`` methods are the surface the outside world calls:
- the persistence path → on_message_stored
- the transport/session layer → on_connection_opened / closed,
  on_subscribe_request / on_unsubscribe_request
"""

import asyncio
from typing import Any, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from chatcast.broadcast.authorizer import (
    AuthDecision,
    MembershipCheck,
    SubscriptionAuthorizer,
)
from chatcast.broadcast.dispatcher import DeliveryDispatcher, Transport
from chatcast.broadcast.events import MESSAGE_CREATED, BroadcastEvent
from chatcast.broadcast.gateway import PublisherGateway
from chatcast.broadcast.reaper import IdleReaper
from chatcast.broadcast.registry import ConnectionRegistry
from chatcast.config import Settings
from chatcast.config import settings as default_settings
from chatcast.errors import InvalidPayload
from chatcast.schemas.message import ChatMessage, MessageStored

logger = structlog.get_logger()


class BroadcastService:
    """Registry + authorizer + dispatcher + gateway + reaper, wired together."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        membership_check: Optional[MembershipCheck] = None,
    ):
        self.config = config or default_settings
        self.registry = ConnectionRegistry(
            max_connections=self.config.max_connections,
            outbound_queue_size=self.config.outbound_queue_size,
        )
        self.authorizer = SubscriptionAuthorizer(
            public_channels=self.config.public_channels,
            membership_check=membership_check,
        )
        self.dispatcher = DeliveryDispatcher(
            self.registry,
            workers=self.config.dispatch_workers,
            intake_capacity=self.config.intake_capacity,
            yield_every=self.config.yield_every,
        )
        self.gateway = PublisherGateway(self.registry, self.dispatcher, self.authorizer)
        self.reaper = IdleReaper(
            self.registry,
            poll_interval=self.config.reaper_interval_seconds,
            idle_timeout=self.config.idle_timeout_seconds,
            drain_grace=self.config.drain_grace_seconds,
            channel_retention=self.config.channel_retention_seconds,
        )
        self._reaper_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.dispatcher.running

    async def start(self) -> None:
        if self.running:
            return
        await self.dispatcher.start()
        self._reaper_task = asyncio.create_task(self.reaper.run_loop())
        logger.info(
            "broadcast.service_started",
            workers=self.config.dispatch_workers,
            max_connections=self.config.max_connections,
        )

    async def stop(self) -> None:
        self.reaper.stop()
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        # Writers first, so none of them is mid-write when its connection closes.
        await self.dispatcher.stop()
        for connection in self.registry.connections():
            self.registry.deregister(connection.id)
        logger.info("broadcast.service_stopped")

    # ─── Transport / session layer ────────────────────────

    def on_connection_opened(
        self,
        principal: str,
        transport: Optional[Transport] = None,
    ) -> str:
        """Register a connection; start its writer if a transport is given."""
        connection_id = self.registry.register(principal)
        if transport is not None:
            self.dispatcher.attach(connection_id, transport)
        return connection_id

    def on_connection_closed(self, connection_id: str) -> None:
        self.registry.deregister(connection_id)

    def on_activity(self, connection_id: str) -> None:
        """Client showed signs of life (any inbound frame)."""
        self.registry.touch(connection_id)

    async def on_subscribe_request(
        self, connection_id: str, channel_name: str
    ) -> AuthDecision:
        """Authorize and, if granted, join. Denied leaves membership unchanged.

        Raises NotFound for unknown connections and InvalidChannelName
        for names that match no convention.
        """
        connection = self.registry.get(connection_id)
        decision = await self.authorizer.authorize(connection.principal, channel_name)
        if decision is AuthDecision.DENIED:
            return decision

        # The authorizer may have awaited; the connection could be gone now.
        self.registry.grant(connection_id, channel_name)
        parsed = self.authorizer.parse(channel_name)
        self.registry.join(connection_id, channel_name, parsed.policy)
        return decision

    def on_unsubscribe_request(self, connection_id: str, channel_name: str) -> bool:
        return self.registry.leave(connection_id, channel_name)

    # ─── Persistence path ─────────────────────────────────

    def on_message_stored(
        self,
        message: Union[ChatMessage, Mapping[str, Any]],
        channel: Optional[str] = None,
    ) -> BroadcastEvent:
        """Announce a committed message on its channel (default: everyone)."""
        if not isinstance(message, ChatMessage):
            try:
                stored = MessageStored.model_validate(dict(message))
            except ValidationError as e:
                raise InvalidPayload(str(e)) from e
            message = stored.to_chat_message(self.config.message_time_format)
            if channel is None:
                channel = stored.channel
        # Only an absent channel means "default"; "" is rejected by the gateway.
        if channel is None:
            channel = self.config.default_channel
        return self.gateway.publish(channel, MESSAGE_CREATED, message)

    def publish(
        self,
        channel_name: str,
        event_type: str,
        payload: Mapping[str, Any],
    ) -> BroadcastEvent:
        return self.gateway.publish(channel_name, event_type, payload)

    def stats(self) -> dict:
        return {
            **self.registry.stats(),
            "pending": self.dispatcher.pending(),
            "dispatcher": self.dispatcher.stats.as_dict(),
        }
