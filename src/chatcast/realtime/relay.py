"""Redis relay — lets other processes publish into this broadcast service.

Learn: Redis pub/sub is fire-and-forget. If no chatcast process is
listening, the message is lost. That's fine for live notifications (the
message itself is already stored; a client can always re-fetch). The
relay is only needed when the code that stores messages runs in a
different process (API workers, queue consumers) from the one holding
the WebSocket connections.

Channel naming: chatcast:events:{channel}
Wire payload:   {"event": "message-created", "data": {...}}
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from chatcast.broadcast.gateway import PublisherGateway
from chatcast.errors import Backpressure, BroadcastError

logger = structlog.get_logger()

DEFAULT_PREFIX = "chatcast:events:"


async def publish_to_relay(
    r: aioredis.Redis,
    channel: str,
    event_type: str,
    data: dict[str, Any],
    prefix: str = DEFAULT_PREFIX,
) -> int:
    """Publish an event for a chatcast process to fan out.

    Learn: Call this after the database write commits. Returns the
    number of relay subscribers that received it (0 means nobody is
    listening right now).
    """
    payload = json.dumps({"event": event_type, "data": data})
    return await r.publish(f"{prefix}{channel}", payload)


class RedisRelay:
    """Pattern-subscribes to the relay prefix and feeds the gateway.

    Learn: The listener runs in a loop like the idle reaper. A dropped
    Redis connection is logged and the relay resubscribes after
    ``retry_delay`` seconds; messages published in between are lost,
    which pub/sub never promised to keep anyway.
    """

    def __init__(
        self,
        gateway: PublisherGateway,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = DEFAULT_PREFIX,
        client: Optional[aioredis.Redis] = None,
        retry_delay: float = 1.0,
    ):
        self.gateway = gateway
        self.redis_url = redis_url
        self.prefix = prefix
        self.retry_delay = retry_delay
        self._redis = client
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._subscribed = False
        self.forwarded = 0
        self.skipped = 0
        self.reconnects = 0

    @property
    def connected(self) -> bool:
        return self._subscribed and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Connect, subscribe and start forwarding in the background."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        # Fail startup loudly if Redis is not there at all
        await self._redis.ping()
        self._running = True
        self._task = asyncio.create_task(self.run_loop(), name="relay-listener")
        logger.info("relay.started", prefix=self.prefix)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def run_loop(self) -> None:
        """Listen until stopped, resubscribing after connection failures."""
        while self._running:
            try:
                await self._listen()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("relay.listen_failed", retry_in=self.retry_delay)
            finally:
                self._subscribed = False

            if not self._running:
                break
            try:
                await asyncio.sleep(self.retry_delay)
            except asyncio.CancelledError:
                break
            self.reconnects += 1

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.psubscribe(f"{self.prefix}*")
            self._subscribed = True
            logger.info("relay.subscribed", pattern=f"{self.prefix}*")
            async for message in pubsub.listen():
                if message["type"] in ("message", "pmessage"):
                    self.handle(message["channel"], message["data"])
        finally:
            await pubsub.aclose()

    def handle(self, redis_channel: Any, raw: Any) -> bool:
        """Forward one relay message to the gateway. Returns True if published."""
        if isinstance(redis_channel, bytes):
            redis_channel = redis_channel.decode()
        if isinstance(raw, bytes):
            raw = raw.decode()

        channel = str(redis_channel)[len(self.prefix):]
        try:
            msg = json.loads(raw)
            event_type = msg["event"]
            data = msg.get("data", {})
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning("relay.malformed_message", channel=channel)
            self.skipped += 1
            return False

        try:
            self.gateway.publish(channel, event_type, data)
        except Backpressure:
            # Message is stored; only the live notification is lost.
            logger.warning("relay.backpressure", channel=channel, event_type=event_type)
            self.skipped += 1
            return False
        except BroadcastError as e:
            logger.warning("relay.rejected", channel=channel, code=e.code, error=str(e))
            self.skipped += 1
            return False

        self.forwarded += 1
        return True
