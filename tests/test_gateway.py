"""Publisher gateway tests — validation, sequencing, backpressure."""

import asyncio
import threading
from datetime import datetime

import pytest

from chatcast.broadcast.events import MESSAGE_CREATED
from chatcast.errors import Backpressure, InvalidChannelName, InvalidPayload
from chatcast.schemas.message import ChatMessage
from chatcast.service import BroadcastService
from tests.conftest import RecordingTransport, make_settings

PAYLOAD = {"id": 1, "user_id": 7, "text": "hi", "time": "01-01-2025-00-00-00"}


@pytest.fixture()
def idle_service():
    """A service whose workers never run, so intake fills up."""
    return BroadcastService(make_settings(dispatch_workers=1, intake_capacity=2))


def test_publish_assigns_increasing_sequence(idle_service):
    gw = idle_service.gateway
    first = gw.publish("everyone", MESSAGE_CREATED, PAYLOAD)
    second = gw.publish("everyone", MESSAGE_CREATED, PAYLOAD)

    assert (first.seq, second.seq) == (1, 2)
    assert first.channel == "everyone"
    assert first.payload == PAYLOAD


def test_empty_channel_name_consumes_no_sequence(idle_service):
    gw = idle_service.gateway
    gw.publish("everyone", MESSAGE_CREATED, PAYLOAD)

    with pytest.raises(InvalidChannelName):
        gw.publish("", MESSAGE_CREATED, PAYLOAD)

    assert idle_service.registry.channel("everyone").last_sequence == 1
    assert idle_service.registry.channel("") is None
    assert idle_service.dispatcher.pending() == 1


def test_malformed_channel_name_rejected(idle_service):
    with pytest.raises(InvalidChannelName):
        idle_service.gateway.publish("no such convention", MESSAGE_CREATED, PAYLOAD)
    assert idle_service.dispatcher.pending() == 0


def test_non_serializable_payload_rejected(idle_service):
    gw = idle_service.gateway
    with pytest.raises(InvalidPayload):
        gw.publish("everyone", MESSAGE_CREATED, {"when": datetime(2025, 1, 1)})
    with pytest.raises(InvalidPayload):
        gw.publish("everyone", MESSAGE_CREATED, ["not", "a", "mapping"])

    assert idle_service.registry.channel("everyone") is None


def test_empty_event_type_rejected(idle_service):
    with pytest.raises(InvalidPayload):
        idle_service.gateway.publish("everyone", "", PAYLOAD)


def test_pydantic_payload_is_dumped(idle_service):
    message = ChatMessage(id=3, user_id=7, text="yo", time="t")
    event = idle_service.gateway.publish("everyone", MESSAGE_CREATED, message)

    assert event.payload == {"id": 3, "user_id": 7, "text": "yo", "time": "t"}


def test_backpressure_when_intake_full(idle_service):
    """Full intake fails the publish; nothing is dropped silently."""
    gw = idle_service.gateway
    gw.publish("everyone", MESSAGE_CREATED, PAYLOAD)
    gw.publish("everyone", MESSAGE_CREATED, PAYLOAD)

    with pytest.raises(Backpressure):
        gw.publish("everyone", MESSAGE_CREATED, PAYLOAD)

    assert idle_service.registry.channel("everyone").last_sequence == 2
    assert idle_service.dispatcher.pending() == 2
    assert idle_service.dispatcher.stats.rejected == 1
    assert idle_service.dispatcher.stats.published == 2


def test_frame_matches_wire_format(idle_service):
    event = idle_service.gateway.publish("everyone", MESSAGE_CREATED, PAYLOAD)
    assert event.frame == (
        '{"channel":"everyone","event":"message-created","seq":1,'
        '"data":{"id":1,"user_id":7,"text":"hi","time":"01-01-2025-00-00-00"}}'
    )


@pytest.mark.asyncio
async def test_later_payload_mutation_does_not_reach_subscribers(service):
    transport = RecordingTransport()
    cid = service.on_connection_opened("7", transport)
    await service.on_subscribe_request(cid, "everyone")

    payload = {"id": 1, "meta": {"tags": ["first"]}}
    service.gateway.publish("everyone", MESSAGE_CREATED, payload)
    payload["meta"]["tags"].append("edited")
    payload["meta"]["pinned"] = True
    await service.dispatcher.flush()

    assert transport.frames[0]["data"] == {"id": 1, "meta": {"tags": ["first"]}}


@pytest.mark.asyncio
async def test_publish_to_channel_without_members(service):
    """Publishing to an empty channel succeeds and delivers nothing."""
    event = service.gateway.publish("public.empty", MESSAGE_CREATED, PAYLOAD)
    await service.dispatcher.flush()

    assert event.seq == 1
    assert service.dispatcher.stats.delivered == 0
    assert service.dispatcher.stats.errors == 0


@pytest.mark.asyncio
async def test_publish_threadsafe_from_worker_thread(service):
    loop = asyncio.get_running_loop()
    result = {}

    def persist_and_publish():
        future = service.gateway.publish_threadsafe(
            loop, "everyone", MESSAGE_CREATED, PAYLOAD
        )
        result["event"] = future.result(timeout=5)

    thread = threading.Thread(target=persist_and_publish)
    thread.start()
    while thread.is_alive():
        await asyncio.sleep(0.01)
    thread.join()

    assert result["event"].seq == 1
    assert result["event"].channel == "everyone"


@pytest.mark.asyncio
async def test_publish_threadsafe_propagates_errors(service):
    loop = asyncio.get_running_loop()
    future = service.gateway.publish_threadsafe(loop, "", MESSAGE_CREATED, PAYLOAD)

    with pytest.raises(InvalidChannelName):
        await asyncio.wrap_future(future)
