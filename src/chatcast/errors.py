"""Broadcast error taxonomy.

Learn: Every failure the core can report is a BroadcastError subclass
with a short machine-readable ``code``. The HTTP layer maps codes to
status codes; the dispatcher absorbs the per-connection ones
(TransportClosed, outbound Backpressure) so publishers never see them.
"""


class BroadcastError(Exception):
    """Base class for broadcast core failures."""

    code = "broadcast_error"


class NotFound(BroadcastError):
    """Unknown (or already closed) connection or channel."""

    code = "not_found"


class Unauthorized(BroadcastError):
    """Subscription was not granted for the channel."""

    code = "unauthorized"


class Backpressure(BroadcastError):
    """Intake or outbound queue is saturated."""

    code = "backpressure"


class ResourceExhausted(BroadcastError):
    """Registry is at its connection capacity."""

    code = "resource_exhausted"


class InvalidChannelName(BroadcastError):
    """Channel name is empty, malformed, or matches no naming convention."""

    code = "invalid_channel_name"


class InvalidPayload(BroadcastError):
    """Event payload is not a JSON-serializable mapping."""

    code = "invalid_payload"


class TransportClosed(BroadcastError):
    """Write attempted on a connection whose transport is gone."""

    code = "transport_closed"
