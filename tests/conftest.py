"""Test fixtures — an isolated broadcast service per test.

Learn: BroadcastService is an owned object, not a module singleton, so
every test gets its own registry, queues and workers:

1. ``service`` — started on the test's event loop, stopped afterwards.
2. ``client`` — httpx client bound to an app that uses that same
   service, so a test can POST a message and inspect what subscribers got.

RecordingTransport stands in for a WebSocket: it records every frame
the dispatcher's writer hands it, or raises TransportClosed once closed.
"""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatcast.auth.jwt import create_access_token
from chatcast.config import Settings
from chatcast.errors import TransportClosed
from chatcast.main import create_app
from chatcast.service import BroadcastService


class RecordingTransport:
    """In-memory Transport that keeps decoded frames."""

    def __init__(self, closed: bool = False):
        self.frames: list[dict] = []
        self.closed = closed

    async def write_frame(self, connection_id: str, frame: str) -> None:
        if self.closed:
            raise TransportClosed(connection_id)
        self.frames.append(json.loads(frame))

    def seqs(self, channel: str | None = None) -> list[int]:
        return [
            f["seq"] for f in self.frames if channel is None or f["channel"] == channel
        ]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    """Small queues, two workers, reaper effectively off."""
    values = {
        "dispatch_workers": 2,
        "intake_capacity": 16,
        "outbound_queue_size": 8,
        "reaper_interval_seconds": 3600.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest_asyncio.fixture()
async def service():
    svc = BroadcastService(make_settings())
    await svc.start()
    try:
        yield svc
    finally:
        await svc.stop()


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token('7')}"}


@pytest_asyncio.fixture()
async def client(service, auth_headers):
    """HTTP client for an app wired to the ``service`` fixture."""
    app = create_app(service=service)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=auth_headers,
    ) as ac:
        yield ac
