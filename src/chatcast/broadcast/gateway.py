"""Publisher gateway — the single ingress for newly stored messages.

Learn: The gateway is called *after* the message is committed. It never
re-reads the store: the payload handed in is the projection of
already-committed state, and that is exactly what subscribers receive.

publish() is synchronous with respect to intake and asynchronous with
respect to delivery. Every check that can fail (name, payload, intake
capacity) runs before the channel's sequence counter is advanced, so a
rejected publish never burns a sequence number.
"""

import asyncio
import concurrent.futures
import json
from typing import Any, Mapping, Union

import structlog
from pydantic import BaseModel

from chatcast.broadcast.authorizer import SubscriptionAuthorizer
from chatcast.broadcast.dispatcher import DeliveryDispatcher
from chatcast.broadcast.events import BroadcastEvent
from chatcast.broadcast.registry import ConnectionRegistry
from chatcast.errors import Backpressure, InvalidPayload

logger = structlog.get_logger()

Payload = Union[Mapping[str, Any], BaseModel]


def _normalize_payload(payload: Payload) -> dict[str, Any]:
    """Return a JSON-ready dict or raise InvalidPayload."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if not isinstance(payload, Mapping):
        raise InvalidPayload(
            f"payload must be a mapping, got {type(payload).__name__}"
        )
    data = dict(payload)
    try:
        json.dumps(data)
    except (TypeError, ValueError) as e:
        raise InvalidPayload(f"payload is not JSON-serializable: {e}") from e
    return data


class PublisherGateway:
    """Validates, sequences and hands events to the dispatcher."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        dispatcher: DeliveryDispatcher,
        authorizer: SubscriptionAuthorizer,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.authorizer = authorizer

    def publish(
        self,
        channel_name: str,
        event_type: str,
        payload: Payload,
    ) -> BroadcastEvent:
        """Sequence an event and hand it off for fan-out.

        Raises InvalidChannelName, InvalidPayload or Backpressure.
        Returns without waiting for any subscriber.
        """
        parsed = self.authorizer.parse(channel_name)
        if not event_type:
            raise InvalidPayload("event type must not be empty")
        data = _normalize_payload(payload)

        if not self.dispatcher.can_accept(channel_name):
            self.dispatcher.stats.rejected += 1
            logger.warning(
                "broadcast.publish_backpressure",
                channel=channel_name,
                event_type=event_type,
            )
            raise Backpressure(f"intake full for channel {channel_name}")

        channel = self.registry.ensure_channel(channel_name, parsed.policy)
        event = BroadcastEvent(
            channel=channel_name,
            event_type=event_type,
            seq=channel.next_sequence(),
            payload=data,
        )
        # Rendered before handoff: the caller may reuse its payload objects.
        frame = event.frame
        # No await between the capacity check and here, so this cannot fail.
        self.dispatcher.submit(event)

        logger.debug(
            "broadcast.published",
            channel=channel_name,
            event_type=event_type,
            seq=event.seq,
            frame_bytes=len(frame),
        )
        return event

    def publish_threadsafe(
        self,
        loop: asyncio.AbstractEventLoop,
        channel_name: str,
        event_type: str,
        payload: Payload,
    ) -> "concurrent.futures.Future[BroadcastEvent]":
        """Publish from a thread that is not running the service loop.

        The returned future resolves to the BroadcastEvent, or raises the
        same errors publish() would.
        """

        async def _publish() -> BroadcastEvent:
            return self.publish(channel_name, event_type, payload)

        return asyncio.run_coroutine_threadsafe(_publish(), loop)
