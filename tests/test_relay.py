"""Redis relay tests — no Redis server needed.

Learn: The relay's only job is translating ``chatcast:events:<channel>``
messages into gateway publishes. ``handle`` is tested directly; the
start/stop lifecycle and reconnects run against fake pubsub objects.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from chatcast.realtime.relay import DEFAULT_PREFIX, RedisRelay, publish_to_relay
from chatcast.service import BroadcastService
from tests.conftest import RecordingTransport, make_settings


class FakePubSub:
    def __init__(self, messages, fail_with=None):
        self.messages = messages
        self.fail_with = fail_with
        self.patterns = []
        self.closed = False

    async def psubscribe(self, pattern):
        self.patterns.append(pattern)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        for message in self.messages:
            yield message
        if self.fail_with is not None:
            raise self.fail_with
        # Stay subscribed like a real connection would.
        await asyncio.Event().wait()


class FakeRedis:
    """Hands out the given pubsub objects in order, one per subscription."""

    def __init__(self, *pubsubs):
        self._pending = list(pubsubs)
        self.created = []
        self.ping = AsyncMock(return_value=True)
        self.aclose = AsyncMock()

    def pubsub(self):
        pubsub = self._pending.pop(0)
        self.created.append(pubsub)
        return pubsub


def _pmessage(channel, event_data):
    return {
        "type": "pmessage",
        "pattern": f"{DEFAULT_PREFIX}*",
        "channel": f"{DEFAULT_PREFIX}{channel}",
        "data": json.dumps({"event": "message-created", "data": event_data}),
    }


async def _wait_for(predicate):
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_publish_to_relay():
    r = AsyncMock()
    r.publish.return_value = 1

    receivers = await publish_to_relay(r, "everyone", "message-created", {"id": 1})

    assert receivers == 1
    r.publish.assert_awaited_once_with(
        "chatcast:events:everyone",
        json.dumps({"event": "message-created", "data": {"id": 1}}),
    )


@pytest.mark.asyncio
async def test_handle_forwards_to_gateway(service):
    transport = RecordingTransport()
    cid = service.on_connection_opened("7", transport)
    await service.on_subscribe_request(cid, "everyone")
    relay = RedisRelay(service.gateway)

    ok = relay.handle(
        b"chatcast:events:everyone",
        json.dumps({"event": "message-created", "data": {"id": 1}}).encode(),
    )
    await service.dispatcher.flush()

    assert ok is True
    assert relay.forwarded == 1
    assert transport.frames[0]["data"] == {"id": 1}


def test_handle_skips_malformed():
    relay = RedisRelay(BroadcastService(make_settings()).gateway)

    assert relay.handle("chatcast:events:everyone", "not json") is False
    assert relay.handle("chatcast:events:everyone", json.dumps({"data": {}})) is False
    assert relay.skipped == 2


def test_handle_skips_invalid_channel():
    relay = RedisRelay(BroadcastService(make_settings()).gateway)

    assert relay.handle("chatcast:events:bad/name", json.dumps({"event": "x"})) is False
    assert relay.skipped == 1


def test_handle_absorbs_backpressure():
    svc = BroadcastService(make_settings(dispatch_workers=1, intake_capacity=1))
    relay = RedisRelay(svc.gateway)
    raw = json.dumps({"event": "message-created", "data": {"id": 1}})

    assert relay.handle("chatcast:events:everyone", raw) is True
    assert relay.handle("chatcast:events:everyone", raw) is False
    assert relay.forwarded == 1
    assert relay.skipped == 1


@pytest.mark.asyncio
async def test_start_listens_and_stop_closes(service):
    transport = RecordingTransport()
    cid = service.on_connection_opened("7", transport)
    await service.on_subscribe_request(cid, "public.lobby")

    pubsub = FakePubSub(
        [
            {"type": "psubscribe", "channel": f"{DEFAULT_PREFIX}*", "data": 1},
            _pmessage("public.lobby", {"id": 3}),
        ]
    )
    fake = FakeRedis(pubsub)
    relay = RedisRelay(service.gateway, client=fake)

    await relay.start()
    await _wait_for(lambda: relay.forwarded)
    await service.dispatcher.flush()

    assert relay.connected
    assert pubsub.patterns == ["chatcast:events:*"]
    assert transport.frames[0]["channel"] == "public.lobby"

    await relay.stop()

    assert not relay.connected
    assert pubsub.closed
    fake.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_dropped_connection_resubscribes(service):
    transport = RecordingTransport()
    cid = service.on_connection_opened("7", transport)
    await service.on_subscribe_request(cid, "everyone")

    first = FakePubSub(
        [_pmessage("everyone", {"id": 1})],
        fail_with=ConnectionError("Connection reset by peer"),
    )
    second = FakePubSub([_pmessage("everyone", {"id": 2})])
    fake = FakeRedis(first, second)
    relay = RedisRelay(service.gateway, client=fake, retry_delay=0.01)

    await relay.start()
    await _wait_for(lambda: relay.forwarded == 2)
    await service.dispatcher.flush()

    try:
        assert fake.created == [first, second]
        assert first.closed
        assert relay.reconnects == 1
        assert relay.connected
        assert [f["data"]["id"] for f in transport.frames] == [1, 2]
    finally:
        await relay.stop()
