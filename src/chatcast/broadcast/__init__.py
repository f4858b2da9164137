"""Real-time broadcast core — registry, channels, gateway, dispatcher.

Learn: A stored message flows through the core like this:
1. PublisherGateway.publish → validated, sequenced, handed to intake
2. DeliveryDispatcher → snapshot of channel members → per-connection queues
3. Per-connection writer → Transport.write_frame (socket I/O lives outside)

Publishers never wait on subscribers, and one slow subscriber never
delays its siblings.
"""

from chatcast.broadcast.authorizer import AuthDecision, SubscriptionAuthorizer
from chatcast.broadcast.channel import Channel, ChannelPolicy
from chatcast.broadcast.dispatcher import DeliveryDispatcher, Transport
from chatcast.broadcast.events import MESSAGE_CREATED, BroadcastEvent
from chatcast.broadcast.gateway import PublisherGateway
from chatcast.broadcast.reaper import IdleReaper
from chatcast.broadcast.registry import Connection, ConnectionRegistry, ConnectionState

__all__ = [
    "AuthDecision",
    "BroadcastEvent",
    "Channel",
    "ChannelPolicy",
    "Connection",
    "ConnectionRegistry",
    "ConnectionState",
    "DeliveryDispatcher",
    "IdleReaper",
    "MESSAGE_CREATED",
    "PublisherGateway",
    "SubscriptionAuthorizer",
    "Transport",
]
