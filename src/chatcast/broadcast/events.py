"""Broadcast event types and the wire frame.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.

A BroadcastEvent is immutable once the gateway builds it. The JSON
frame is rendered once and shared by every recipient: all subscribers
speak the same wire format, so there is nothing per-connection to encode.
"""

import json
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Mapping

# ─── Event types ─────────────────────────────────────────

MESSAGE_CREATED = "message-created"


@dataclass(frozen=True)
class BroadcastEvent:
    """One unit of fan-out work: a sequenced event for one channel."""

    channel: str
    event_type: str
    seq: int
    payload: Mapping[str, Any] = field(default_factory=dict)

    @cached_property
    def frame(self) -> str:
        """Serialized wire frame (computed once)."""
        return json.dumps(
            {
                "channel": self.channel,
                "event": self.event_type,
                "seq": self.seq,
                "data": self.payload,
            },
            separators=(",", ":"),
        )
