"""Shared broker behaviour: topology, routing and observability.

Concrete brokers (in-memory, Redis Streams) implement queue storage and
delivery; this base owns the declared topology (queue name -> binding
patterns), routes published keys to queues, tracks subscriptions and
keeps the history / error / dead-letter bookkeeping used by tests and
health checks.
"""

from __future__ import annotations

import abc
import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from recipes_api.core.errors import BrokerNotStartedError, UnknownSubscriptionError
from recipes_api.core.interfaces import MessageHandler
from recipes_api.observability.logger import get_correlation_id

from .envelope import Delivery, Envelope
from .routing import topic_matches
from .subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    """Record of a message nacked without requeue."""

    queue: str
    routing_key: str
    message_id: str
    consumer_tag: str
    attempts: int
    timestamp: float = field(default_factory=time.monotonic)


class BaseBroker(abc.ABC):
    """Topic-routed broker with durable named queues.

    Parameters
    ----------
    queues:
        Queue name -> binding patterns, provisioned on :meth:`start`.
    max_handler_attempts:
        Forwarded to every :class:`Subscription`.
    on_handler_error:
        Optional callback ``(queue, consumer_tag, message_id, exc)``
        invoked when a subscription handler raises.
    """

    def __init__(
        self,
        queues: dict[str, list[str]] | None = None,
        *,
        max_handler_attempts: int = 3,
        on_handler_error: Callable[[str, str, str, Exception], None] | None = None,
    ) -> None:
        self._declared: dict[str, list[str]] = {
            name: list(patterns) for name, patterns in (queues or {}).items()
        }
        self._topology: dict[str, list[str]] = {}
        self._subscriptions: list[Subscription] = []
        self._max_attempts = max_handler_attempts
        self._on_handler_error = on_handler_error
        self._running = False

        # Observability
        self._history: list[tuple[str, dict[str, Any]]] = []
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[DeadLetter] = []
        self._messages_acked = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Provision the declared topology and accept traffic."""
        self._running = True
        for name, patterns in self._declared.items():
            await self.declare_queue(name, patterns)

    async def stop(self) -> None:
        """Cancel subscriptions; queued messages survive."""
        for sub in list(self._subscriptions):
            await sub.cancel()
        self._running = False

    async def declare_queue(self, name: str, patterns: list[str]) -> None:
        """Create (or extend) a queue bound to *patterns*."""
        self._require_running()
        self._declared.setdefault(name, list(patterns))
        bound = self._topology.setdefault(name, [])
        for pattern in patterns:
            if pattern not in bound:
                bound.append(pattern)
        await self._provision(name, list(bound))
        logger.debug("Declared queue %s bound to %s", name, bound)

    def queues(self) -> dict[str, list[str]]:
        """Currently provisioned queues and their bindings."""
        return {name: list(p) for name, p in self._topology.items()}

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    async def publish(self, routing_key: str, content: dict[str, Any]) -> None:
        """Deliver *content* to every queue bound to *routing_key*."""
        self._require_running()
        self._history.append((routing_key, content))
        targets = self.route(routing_key)
        headers = {"correlation_id": get_correlation_id()}
        if not targets:
            logger.debug("No queue bound for %s; message dropped", routing_key)
        for queue in targets:
            envelope = Envelope(routing_key=routing_key, queue=queue, headers=headers)
            await self._enqueue(queue, envelope, content)

    async def subscribe(
        self,
        name: str,
        handler: MessageHandler | None = None,
    ) -> Subscription:
        """Attach a new consumer to the queue called *name*."""
        self._require_running()
        if name not in self._topology:
            raise UnknownSubscriptionError(f"No queue declared for subscription {name!r}")

        sub = Subscription(
            name,
            f"{name}-{uuid.uuid4().hex[:12]}",
            self._settle_delivery,
            self._release_subscription,
            max_handler_attempts=self._max_attempts,
            on_handler_error=self._track_handler_error,
        )
        self._subscriptions.append(sub)
        await self._attach(sub)
        if handler is not None:
            sub.on_message(handler)
        return sub

    def route(self, routing_key: str) -> list[str]:
        return [
            name
            for name, patterns in self._topology.items()
            if any(topic_matches(p, routing_key) for p in patterns)
        ]

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    async def purge(self) -> None:
        """Discard queued messages; queues and bindings stay in place."""
        self._require_running()
        for name in self._topology:
            await self._purge_queue(name)
        logger.info("Purged %d queues", len(self._topology))

    async def nuke(self) -> None:
        """Tear down every queue and binding and cancel all consumers."""
        names = list(self._topology)
        self._topology.clear()
        for sub in list(self._subscriptions):
            await sub.cancel()
        for name in names:
            await self._delete_queue(name)
        self._running = False
        logger.warning("Nuked broker topology (%d queues)", len(names))

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_history(self, routing_key: str | None = None) -> list[tuple[str, dict[str, Any]]]:
        """Published messages, optionally filtered by key. For testing."""
        if routing_key is None:
            return list(self._history)
        return [(k, c) for k, c in self._history if k == routing_key]

    def clear_history(self) -> None:
        self._history.clear()

    def get_error_counts(self) -> dict[str, int]:
        """Return per-queue handler error counts."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    @property
    def messages_acked(self) -> int:
        return self._messages_acked

    def clear_dead_letters(self) -> list[DeadLetter]:
        """Drain the dead-letter list and return all entries."""
        drained = self._dead_letters[:]
        self._dead_letters.clear()
        return drained

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_running(self) -> None:
        if not self._running:
            raise BrokerNotStartedError(
                f"{type(self).__name__} not started. Call start() first."
            )

    def _track_handler_error(
        self, queue: str, consumer_tag: str, message_id: str, exc: Exception
    ) -> None:
        self._error_counts[queue] += 1
        if self._on_handler_error is not None:
            self._on_handler_error(queue, consumer_tag, message_id, exc)

    async def _settle_delivery(
        self, sub: Subscription, delivery: Delivery, ack: bool, requeue: bool
    ) -> None:
        if ack:
            self._messages_acked += 1
            await self._ack(sub, delivery)
            return
        if requeue:
            await self._requeue(sub.name, [delivery])
            return
        self._dead_letters.append(
            DeadLetter(
                queue=sub.name,
                routing_key=delivery.routing_key,
                message_id=delivery.envelope.message_id,
                consumer_tag=sub.consumer_tag,
                attempts=delivery.envelope.delivery_count,
            )
        )
        logger.error(
            "Dead-lettering message %s on %s after %d attempts",
            delivery.envelope.message_id,
            sub.name,
            delivery.envelope.delivery_count,
        )
        await self._ack(sub, delivery)

    async def _release_subscription(
        self, sub: Subscription, unsettled: list[Delivery]
    ) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        if unsettled and sub.name in self._topology:
            await self._requeue(sub.name, unsettled)
        await self._detach(sub)

    # -- backend hooks ---------------------------------------------------

    @abc.abstractmethod
    async def _provision(self, queue: str, patterns: list[str]) -> None: ...

    @abc.abstractmethod
    async def _enqueue(self, queue: str, envelope: Envelope, content: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def _attach(self, sub: Subscription) -> None: ...

    @abc.abstractmethod
    async def _detach(self, sub: Subscription) -> None: ...

    @abc.abstractmethod
    async def _ack(self, sub: Subscription, delivery: Delivery) -> None: ...

    @abc.abstractmethod
    async def _requeue(self, queue: str, deliveries: list[Delivery]) -> None:
        """Put deliveries back at the head of *queue*, flagged redelivered."""

    @abc.abstractmethod
    async def _purge_queue(self, queue: str) -> None: ...

    @abc.abstractmethod
    async def _delete_queue(self, queue: str) -> None: ...
