"""Delivery dispatcher — asynchronous fan-out with failure isolation.

Learn: The dispatcher runs two kinds of tasks:
1. Workers — one per intake shard. A channel is pinned to a shard by a
   stable hash, so events of one channel are fanned out strictly in
   sequence order while unrelated channels proceed on other workers.
2. Writers — one per attached connection. A writer drains the
   connection's outbound queue (FIFO) into its transport.

Fan-out itself never awaits a subscriber: it does a non-blocking put
into each member's bounded outbound queue. A full queue drops the frame
for that member only; a closed connection is deregistered. Neither is
ever visible to the publisher.
"""

import asyncio
import zlib
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from chatcast.broadcast.events import BroadcastEvent
from chatcast.broadcast.registry import Connection, ConnectionRegistry
from chatcast.errors import Backpressure, TransportClosed

logger = structlog.get_logger()


class Transport(Protocol):
    """Outbound side of the (external) transport layer.

    ``write_frame`` hands serialized bytes to the socket and raises
    TransportClosed synchronously if the connection is gone.
    """

    async def write_frame(self, connection_id: str, frame: str) -> None:
        ...


@dataclass
class DispatcherStats:
    """Runtime statistics for monitoring."""

    published: int = 0  # events accepted into intake
    delivered: int = 0  # frames enqueued to a subscriber
    dropped: int = 0  # frames lost to a full outbound queue
    evicted: int = 0  # connections deregistered on a dead transport
    rejected: int = 0  # publishes refused with Backpressure
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "published": self.published,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "evicted": self.evicted,
            "rejected": self.rejected,
            "errors": self.errors,
        }


class DeliveryDispatcher:
    """Fans BroadcastEvents out to every member of their channel."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        workers: int = 4,
        intake_capacity: int = 1024,
        yield_every: int = 64,
    ):
        self.registry = registry
        self.yield_every = max(1, yield_every)
        self.stats = DispatcherStats()
        self._shards: list[asyncio.Queue] = [
            asyncio.Queue(maxsize=intake_capacity) for _ in range(workers)
        ]
        self._workers: list[asyncio.Task] = []
        self._writers: dict[str, asyncio.Task] = {}
        self._running = False
        registry.on_deregister(self._on_deregister)

    @property
    def running(self) -> bool:
        return self._running

    # ─── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index, queue), name=f"fanout-{index}")
            for index, queue in enumerate(self._shards)
        ]
        logger.info("broadcast.dispatcher_started", workers=len(self._workers))

    async def stop(self) -> None:
        """Cancel workers and writers. Undelivered events are discarded."""
        self._running = False
        tasks = self._workers + list(self._writers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._writers.clear()
        logger.info("broadcast.dispatcher_stopped", **self.stats.as_dict())

    # ─── Intake ───────────────────────────────────────────

    def _shard_for(self, channel: str) -> asyncio.Queue:
        return self._shards[zlib.crc32(channel.encode()) % len(self._shards)]

    def can_accept(self, channel: str) -> bool:
        return not self._shard_for(channel).full()

    def submit(self, event: BroadcastEvent) -> None:
        """Synchronous handoff. Raises Backpressure if the shard is full."""
        try:
            self._shard_for(event.channel).put_nowait(event)
        except asyncio.QueueFull:
            self.stats.rejected += 1
            raise Backpressure(f"intake full for channel {event.channel}") from None
        self.stats.published += 1

    def pending(self) -> int:
        return sum(queue.qsize() for queue in self._shards)

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self.deliver(event)
            except Exception:
                logger.exception(
                    "broadcast.fanout_failed",
                    worker=index,
                    channel=event.channel,
                    seq=event.seq,
                )
                self.stats.errors += 1
            finally:
                queue.task_done()

    # ─── Fan-out ──────────────────────────────────────────

    async def deliver(self, event: BroadcastEvent) -> int:
        """Push one event to every current member. Returns frames enqueued."""
        members = self.registry.members_of(event.channel)
        if not members:
            return 0

        channel = self.registry.channel(event.channel)
        frame = event.frame
        delivered = 0
        for count, connection_id in enumerate(members, start=1):
            if self._deliver_one(connection_id, event, frame, channel):
                delivered += 1
            if count % self.yield_every == 0:
                await asyncio.sleep(0)

        logger.debug(
            "broadcast.fanout_done",
            channel=event.channel,
            seq=event.seq,
            members=len(members),
            delivered=delivered,
        )
        return delivered

    def _deliver_one(self, connection_id, event, frame, channel) -> bool:
        connection = self.registry.lookup(connection_id)
        if connection is None:
            # Left between the snapshot and now.
            return False
        try:
            connection.enqueue(frame, self.registry.clock())
        except Backpressure:
            self.stats.dropped += 1
            logger.debug(
                "broadcast.frame_dropped",
                connection_id=connection_id,
                channel=event.channel,
                seq=event.seq,
                pending=connection.pending,
            )
            return False
        except TransportClosed:
            self.registry.deregister(connection_id)
            self.stats.evicted += 1
            return False

        if channel is not None:
            channel.record_delivery(connection_id, event.seq)
        self.stats.delivered += 1
        return True

    # ─── Writers ──────────────────────────────────────────

    def attach(self, connection_id: str, transport: Transport) -> asyncio.Task:
        """Start the writer that drains a connection into its transport."""
        connection = self.registry.get(connection_id)
        task = asyncio.create_task(
            self._write_loop(connection, transport),
            name=f"writer-{connection_id}",
        )
        self._writers[connection_id] = task
        return task

    async def _write_loop(self, connection: Connection, transport: Transport) -> None:
        queue = connection.outbound
        while not connection.is_closed:
            frame = await queue.get()
            try:
                await transport.write_frame(connection.id, frame)
            except TransportClosed:
                logger.info("broadcast.transport_closed", connection_id=connection.id)
                self.stats.evicted += 1
                self.registry.deregister(connection.id)
                return
            except Exception:
                logger.exception("broadcast.writer_failed", connection_id=connection.id)
                self.stats.errors += 1
                self.stats.evicted += 1
                self.registry.deregister(connection.id)
                return
            finally:
                queue.task_done()
            connection.touch(self.registry.clock())
            connection.settle()

    def _on_deregister(self, connection: Connection) -> None:
        task = self._writers.pop(connection.id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ─── Test/shutdown helpers ────────────────────────────

    async def flush(self, timeout: Optional[float] = 5.0) -> None:
        """Wait until intake is empty and attached writers caught up."""

        async def _drain():
            for queue in self._shards:
                await queue.join()
            for connection_id in list(self._writers):
                connection = self.registry.lookup(connection_id)
                if connection is not None and not connection.is_closed:
                    await connection.outbound.join()

        await asyncio.wait_for(_drain(), timeout=timeout)
