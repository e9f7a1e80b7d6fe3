"""In-memory broker for tests and single-process deployments.

No external dependencies.  Each queue keeps its ready messages in a
deque and hands them round-robin to attached consumers, so behaviour
matches the Redis Streams broker: durable queues, competing consumers,
explicit ack, redelivery on nack or cancel.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .base import BaseBroker
from .envelope import Delivery, Envelope
from .subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class _MemoryQueue:
    name: str
    patterns: list[str]
    ready: deque[tuple[Envelope, dict[str, Any]]] = field(default_factory=deque)
    consumers: list[Subscription] = field(default_factory=list)
    next_consumer: int = 0


class MemoryBroker(BaseBroker):
    """In-memory broker. Safe within a single asyncio event loop."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._queues: dict[str, _MemoryQueue] = {}

    def depth(self, queue: str) -> int:
        """Ready (undelivered) messages on *queue*. For testing."""
        q = self._queues.get(queue)
        return len(q.ready) if q else 0

    # -- backend hooks ---------------------------------------------------

    async def _provision(self, queue: str, patterns: list[str]) -> None:
        q = self._queues.get(queue)
        if q is None:
            self._queues[queue] = _MemoryQueue(queue, patterns)
        else:
            q.patterns = patterns

    async def _enqueue(self, queue: str, envelope: Envelope, content: dict[str, Any]) -> None:
        q = self._queues[queue]
        q.ready.append((envelope, copy.deepcopy(content)))
        self._pump(q)

    async def _attach(self, sub: Subscription) -> None:
        q = self._queues[sub.name]
        q.consumers.append(sub)
        self._pump(q)

    async def _detach(self, sub: Subscription) -> None:
        q = self._queues.get(sub.name)
        if q is not None and sub in q.consumers:
            q.consumers.remove(sub)

    async def _ack(self, sub: Subscription, delivery: Delivery) -> None:
        # Message left the ready deque on delivery; nothing else to drop.
        return None

    async def _requeue(self, queue: str, deliveries: list[Delivery]) -> None:
        q = self._queues.get(queue)
        if q is None:
            return
        for delivery in reversed(deliveries):
            q.ready.appendleft((delivery.envelope.redelivery(), delivery.content))
        self._pump(q)

    async def _purge_queue(self, queue: str) -> None:
        q = self._queues.get(queue)
        if q is not None:
            dropped = len(q.ready)
            q.ready.clear()
            logger.debug("Purged %d messages from %s", dropped, queue)

    async def _delete_queue(self, queue: str) -> None:
        self._queues.pop(queue, None)

    # -- delivery ----------------------------------------------------------

    def _pump(self, q: _MemoryQueue) -> None:
        """Hand ready messages to consumers round-robin."""
        consumers = [s for s in q.consumers if not s.cancelled]
        while q.ready and consumers:
            sub = consumers[q.next_consumer % len(consumers)]
            q.next_consumer += 1
            envelope, content = q.ready.popleft()
            sub.push(sub.make_delivery(envelope, content, tag=envelope.message_id))
