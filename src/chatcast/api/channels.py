"""Publish and channel API routes.

Learn: These routes are the HTTP face of the persistence boundary. The
chat app stores a message, then POSTs it here; the route calls the
gateway and returns 202 as soon as the event is handed off.

Key patterns:
- 202 Accepted, never 200: delivery happens after the response
- 503 + Retry-After on Backpressure: the message is stored, only the
  live notification is delayed, the caller may retry or move on
- 422 for names/payloads the gateway rejects
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from chatcast.errors import Backpressure, InvalidChannelName, InvalidPayload
from chatcast.schemas.message import (
    ChannelRead,
    EventPublish,
    MessageStored,
    PublishAccepted,
)
from chatcast.service import BroadcastService

router = APIRouter()

RETRY_AFTER_SECONDS = "1"


def _service(request: Request) -> BroadcastService:
    return request.app.state.broadcast


def _accepted(event) -> PublishAccepted:
    return PublishAccepted(channel=event.channel, event=event.event_type, seq=event.seq)


def _publish_error(e: Exception) -> HTTPException:
    if isinstance(e, Backpressure):
        return HTTPException(
            status_code=503,
            detail={"code": e.code, "message": "Message stored; live notification delayed"},
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    return HTTPException(status_code=422, detail={"code": e.code, "message": str(e)})


@router.post("/messages", response_model=PublishAccepted, status_code=202)
async def message_stored(
    body: MessageStored,
    svc: BroadcastService = Depends(_service),
):
    """Announce a committed chat message (default channel: everyone)."""
    message = body.to_chat_message(svc.config.message_time_format)
    try:
        event = svc.on_message_stored(message, channel=body.channel)
    except (Backpressure, InvalidChannelName, InvalidPayload) as e:
        raise _publish_error(e)
    return _accepted(event)


@router.post(
    "/channels/{channel}/events",
    response_model=PublishAccepted,
    status_code=202,
)
async def publish_event(
    channel: str,
    body: EventPublish,
    svc: BroadcastService = Depends(_service),
):
    """Publish an arbitrary event to one channel."""
    try:
        event = svc.publish(channel, body.event, body.data)
    except (Backpressure, InvalidChannelName, InvalidPayload) as e:
        raise _publish_error(e)
    return _accepted(event)


@router.get("/channels/{channel}", response_model=ChannelRead)
async def get_channel(
    channel: str,
    svc: BroadcastService = Depends(_service),
):
    """Current member count and last sequence number of a channel."""
    ch = svc.registry.channel(channel)
    if ch is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return ChannelRead(
        name=ch.name,
        policy=ch.policy.value,
        members=len(ch.members),
        last_seq=ch.last_sequence,
    )


@router.get("/broadcast/stats")
async def broadcast_stats(svc: BroadcastService = Depends(_service)):
    """Registry and dispatcher counters."""
    return svc.stats()
