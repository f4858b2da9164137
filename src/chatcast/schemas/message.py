"""Pydantic schemas for chat messages and publish requests.

Learn: ChatMessage is the payload subscribers receive: the same four
fields the stored row projects to (id, user_id, text, time). The
persistence path can hand over either a ready ``time`` string or the
row's ``created_at`` timestamp; ``format_message_time`` renders the
latter.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def format_message_time(created_at: datetime, time_format: str = "iso") -> str:
    """Render a stored timestamp for the wire ("iso" or a strftime pattern)."""
    if time_format == "iso":
        return created_at.isoformat()
    return created_at.strftime(time_format)


class ChatMessage(BaseModel):
    """Projection of a stored chat message."""

    id: int
    user_id: int
    text: str
    time: str

    @classmethod
    def from_record(
        cls,
        id: int,
        user_id: int,
        text: str,
        created_at: datetime,
        time_format: str = "iso",
    ) -> "ChatMessage":
        return cls(
            id=id,
            user_id=user_id,
            text=text,
            time=format_message_time(created_at, time_format),
        )


# ─── Request / response bodies ────────────────────────────


class MessageStored(BaseModel):
    """Body of POST /messages — a message the store just committed."""

    id: int
    user_id: int
    text: str
    time: Optional[str] = None
    created_at: Optional[datetime] = None
    channel: Optional[str] = None

    @model_validator(mode="after")
    def require_time(self):
        if self.time is None and self.created_at is None:
            raise ValueError("either 'time' or 'created_at' is required")
        return self

    def to_chat_message(self, time_format: str = "iso") -> ChatMessage:
        if self.time is not None:
            return ChatMessage(id=self.id, user_id=self.user_id, text=self.text, time=self.time)
        return ChatMessage.from_record(
            self.id, self.user_id, self.text, self.created_at, time_format
        )


class EventPublish(BaseModel):
    """Body of POST /channels/{channel}/events."""

    event: str = Field("message-created", min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class PublishAccepted(BaseModel):
    channel: str
    event: str
    seq: int


class ChannelRead(BaseModel):
    name: str
    policy: str
    members: int
    last_seq: int
