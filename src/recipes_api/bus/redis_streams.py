"""Redis Streams broker implementation.

Each queue is one stream (``<prefix>queue:<name>``) consumed through a
consumer group of the same name, so every subscription on a queue is a
competing consumer and every message gets at-least-once delivery.

Routing happens at publish time: the key is matched against the
declared bindings and the message is appended to each bound stream.
Messages are only acked *after* the consumer settles them; a nack or a
cancelled consumer re-appends the message flagged as redelivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

from recipes_api.core.errors import BrokerNotStartedError

from .base import BaseBroker
from .envelope import Delivery, Envelope
from .subscription import Subscription

logger = logging.getLogger(__name__)


class RedisStreamsBroker(BaseBroker):
    """Production broker backed by Redis Streams.

    Parameters
    ----------
    redis_url:
        Redis connection URL.
    queues:
        Queue name -> binding patterns.
    prefix:
        Key namespace for streams and topology.
    max_stream_length:
        Approximate cap per stream (``XADD MAXLEN ~``).
    block_ms:
        ``XREADGROUP`` block timeout.
    batch_size:
        Entries read per ``XREADGROUP`` call.
    redis:
        Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        queues: dict[str, list[str]] | None = None,
        *,
        prefix: str = "recipes_bus:",
        max_stream_length: int = 10_000,
        block_ms: int = 200,
        batch_size: int = 10,
        redis: aioredis.Redis | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(queues, **kwargs)
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = redis
        self._owns_client = redis is None
        self._prefix = prefix
        self._max_len = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to Redis, then provision the declared topology."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await super().start()

    async def stop(self) -> None:
        """Stop consumer loops and close the Redis connection."""
        await super().stop()
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def nuke(self) -> None:
        await super().nuke()
        if self._redis is not None:
            await self._redis.delete(self._bindings_key)

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise BrokerNotStartedError("RedisStreamsBroker not started")
        return self._redis

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def stream_key(self, queue: str) -> str:
        return f"{self._prefix}queue:{queue}"

    @property
    def _bindings_key(self) -> str:
        return f"{self._prefix}bindings"

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _provision(self, queue: str, patterns: list[str]) -> None:
        """Create the stream and consumer group, ignoring BUSYGROUP."""
        try:
            await self.redis.xgroup_create(
                self.stream_key(queue), queue, id="0", mkstream=True,
            )
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        await self.redis.hset(self._bindings_key, queue, json.dumps(patterns))

    async def _enqueue(self, queue: str, envelope: Envelope, content: dict[str, Any]) -> None:
        await self.redis.xadd(
            self.stream_key(queue),
            self._serialize(envelope, content),
            maxlen=self._max_len,
            approximate=True,
        )

    async def _attach(self, sub: Subscription) -> None:
        self._tasks[sub.consumer_tag] = asyncio.create_task(
            self._consume_loop(sub), name=f"consumer-{sub.consumer_tag}",
        )

    async def _detach(self, sub: Subscription) -> None:
        task = self._tasks.pop(sub.consumer_tag, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._redis is not None and sub.name in self._topology:
            await self._reclaim_pending(sub)
            try:
                await self._redis.xgroup_delconsumer(
                    self.stream_key(sub.name), sub.name, sub.consumer_tag,
                )
            except aioredis.ResponseError:
                logger.debug("Consumer %s already gone", sub.consumer_tag)

    async def _ack(self, sub: Subscription, delivery: Delivery) -> None:
        stream = self.stream_key(sub.name)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xack(stream, sub.name, delivery.tag)
            pipe.xdel(stream, delivery.tag)
            await pipe.execute()

    async def _requeue(self, queue: str, deliveries: list[Delivery]) -> None:
        """Re-append deliveries as redelivered and drop the originals."""
        stream = self.stream_key(queue)
        async with self.redis.pipeline(transaction=True) as pipe:
            for delivery in deliveries:
                pipe.xadd(
                    stream,
                    self._serialize(delivery.envelope.redelivery(), delivery.content),
                    maxlen=self._max_len,
                    approximate=True,
                )
                pipe.xack(stream, queue, delivery.tag)
                pipe.xdel(stream, delivery.tag)
            await pipe.execute()

    async def _reclaim_pending(self, sub: Subscription) -> None:
        """Requeue entries read for *sub* that never reached the consumer.

        ``XGROUP DELCONSUMER`` drops a consumer's pending entries, so
        anything still pending here must be re-appended first.
        """
        stream = self.stream_key(sub.name)
        while True:
            pending = await self.redis.xpending_range(
                stream, sub.name, min="-", max="+",
                count=self._batch_size, consumername=sub.consumer_tag,
            )
            if not pending:
                return

            deliveries: list[Delivery] = []
            for entry in pending:
                msg_id = entry["message_id"]
                rows = await self.redis.xrange(stream, min=msg_id, max=msg_id)
                decoded = self._deserialize(rows[0][1]) if rows else None
                if decoded is None:
                    await self.redis.xack(stream, sub.name, msg_id)
                    continue
                envelope, content = decoded
                deliveries.append(sub.make_delivery(envelope, content, tag=msg_id))

            if deliveries:
                await self._requeue(sub.name, deliveries)
                logger.info(
                    "Reclaimed %d pending messages from %s",
                    len(deliveries), sub.consumer_tag,
                )

    async def _purge_queue(self, queue: str) -> None:
        await self.redis.xtrim(self.stream_key(queue), maxlen=0, approximate=False)

    async def _delete_queue(self, queue: str) -> None:
        await self.redis.delete(self.stream_key(queue))
        await self.redis.hdel(self._bindings_key, queue)

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _consume_loop(self, sub: Subscription) -> None:
        """Read new entries for *sub* and push them as deliveries."""
        stream = self.stream_key(sub.name)

        while self._running and not sub.cancelled:
            try:
                entries = await self.redis.xreadgroup(
                    groupname=sub.name,
                    consumername=sub.consumer_tag,
                    streams={stream: ">"},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                if not entries:
                    continue

                for _stream, messages in entries:
                    for msg_id, fields in messages:
                        decoded = self._deserialize(fields)
                        if decoded is None:
                            # Malformed entry: can't deliver, drop it.
                            await self.redis.xack(stream, sub.name, msg_id)
                            continue
                        envelope, content = decoded
                        sub.push(sub.make_delivery(envelope, content, tag=msg_id))

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Consumer loop error for %s", sub.consumer_tag)
                self._error_counts[sub.name] += 1
                await asyncio.sleep(1)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _serialize(envelope: Envelope, content: dict[str, Any]) -> dict[str, str]:
        return {
            "envelope": envelope.model_dump_json(),
            "content": json.dumps(content),
        }

    @staticmethod
    def _deserialize(fields: dict[str, str]) -> tuple[Envelope, dict[str, Any]] | None:
        """Decode a stream entry back to envelope and content."""
        raw_envelope = fields.get("envelope")
        raw_content = fields.get("content")
        if not raw_envelope or raw_content is None:
            logger.warning("Malformed message: %s", fields)
            return None
        try:
            return Envelope.model_validate_json(raw_envelope), json.loads(raw_content)
        except ValueError:
            logger.warning("Undecodable message: %s", fields)
            return None
