"""Channel — one named fan-out group.

Learn: The channel owns its publish counter, so sequence numbers define
a total order of events *within* a channel. Nothing orders events across
channels, and nothing here is durable: the per-connection cursors are for
diagnostics (how far behind is this subscriber?) and never for replay.
"""

import time
from enum import Enum
from typing import Callable


class ChannelPolicy(str, Enum):
    PUBLIC = "public"
    RESTRICTED = "restricted"


class Channel:
    """Addressable fan-out group with its sequence counter."""

    def __init__(
        self,
        name: str,
        policy: ChannelPolicy = ChannelPolicy.PUBLIC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.policy = policy
        self.members: set[str] = set()
        self.cursors: dict[str, int] = {}
        self._sequence = 0
        self._clock = clock
        self.last_activity = clock()

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def next_sequence(self) -> int:
        """Advance and return the channel's publish counter."""
        self._sequence += 1
        self.touch()
        return self._sequence

    def is_empty(self) -> bool:
        return not self.members

    def touch(self) -> None:
        self.last_activity = self._clock()

    def add(self, connection_id: str) -> None:
        if connection_id not in self.members:
            # New members start at the current position; nothing is replayed.
            self.cursors[connection_id] = self._sequence
        self.members.add(connection_id)
        self.touch()

    def discard(self, connection_id: str) -> None:
        self.members.discard(connection_id)
        self.cursors.pop(connection_id, None)
        self.touch()

    def record_delivery(self, connection_id: str, seq: int) -> None:
        """Remember the last sequence handed to a member's outbound queue."""
        if seq > self.cursors.get(connection_id, 0):
            self.cursors[connection_id] = seq

    def lag(self, connection_id: str) -> int:
        """How many events the member has not been handed yet."""
        return self._sequence - self.cursors.get(connection_id, 0)

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else self._clock()) - self.last_activity

    def __repr__(self) -> str:
        return (
            f"Channel(name={self.name!r}, policy={self.policy.value}, "
            f"members={len(self.members)}, seq={self._sequence})"
        )
