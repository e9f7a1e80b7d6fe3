"""Consumer-side subscription handle shared by all brokers.

A subscription receives deliveries from its broker into a local queue.
Callers either pull them (``await sub.get(timeout)`` / ``async for``) or
register a handler with :meth:`Subscription.on_message`, in which case a
dispatch task calls ``handler(envelope, content, ack_or_nack)`` for each
one.  Every delivery must be acked or nacked.

Cancelling a subscription returns its unsettled deliveries to the
broker, which requeues them flagged as redelivered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from recipes_api.core.errors import BusError
from recipes_api.core.interfaces import MessageHandler

from .envelope import Delivery

logger = logging.getLogger(__name__)

Settler = Callable[["Subscription", Delivery, bool, bool], Awaitable[None]]
Releaser = Callable[["Subscription", list[Delivery]], Awaitable[None]]


class Subscription:
    """One consumer attached to a broker queue.

    Parameters
    ----------
    name:
        Queue name this subscription consumes from.
    consumer_tag:
        Unique id of this consumer.
    settle:
        Broker callback ``(subscription, delivery, ack, requeue)``.
    release:
        Broker callback invoked on cancel with the unsettled deliveries.
    max_handler_attempts:
        Handler failures tolerated per message before it is nacked
        without requeue (dead-lettered).
    on_handler_error:
        Optional callback ``(queue, consumer_tag, message_id, exc)``.
    """

    def __init__(
        self,
        name: str,
        consumer_tag: str,
        settle: Settler,
        release: Releaser,
        *,
        max_handler_attempts: int = 3,
        on_handler_error: Callable[[str, str, str, Exception], None] | None = None,
    ) -> None:
        self._name = name
        self._consumer_tag = consumer_tag
        self._settle_cb = settle
        self._release_cb = release
        self._max_attempts = max_handler_attempts
        self._on_handler_error = on_handler_error
        # None wakes waiters once the subscription is cancelled.
        self._inbox: asyncio.Queue[Delivery | None] = asyncio.Queue()
        self._outstanding: dict[str, Delivery] = {}
        self._handler: MessageHandler | None = None
        self._task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def consumer_tag(self) -> str:
        return self._consumer_tag

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def outstanding(self) -> int:
        """Deliveries received but not yet acked or nacked."""
        return len(self._outstanding)

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def on_message(self, handler: MessageHandler) -> Subscription:
        """Dispatch every delivery to *handler*. Must run inside a loop."""
        if self._handler is not None:
            raise BusError(f"Subscription {self._name!r} already has a handler")
        self._handler = handler
        self._task = asyncio.get_running_loop().create_task(
            self._dispatch_loop(), name=f"subscription-{self._consumer_tag}"
        )
        return self

    async def get(self, timeout: float | None = None) -> Delivery:
        """Wait for the next delivery.

        Raises ``asyncio.TimeoutError`` when *timeout* elapses and
        :class:`BusError` once the subscription is cancelled.
        """
        if self._cancelled:
            raise BusError(f"Subscription {self._name!r} is cancelled")
        if timeout is None:
            delivery = await self._inbox.get()
        else:
            delivery = await asyncio.wait_for(self._inbox.get(), timeout)
        if delivery is None:
            self._inbox.put_nowait(None)
            raise BusError(f"Subscription {self._name!r} is cancelled")
        return delivery

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Delivery:
        if self._cancelled:
            raise StopAsyncIteration
        try:
            return await self.get()
        except BusError:
            if self._cancelled:
                raise StopAsyncIteration from None
            raise

    async def cancel(self) -> None:
        """Stop delivery and hand unsettled deliveries back to the broker."""
        if self._cancelled:
            return
        self._cancelled = True

        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        while not self._inbox.empty():
            self._inbox.get_nowait()
        self._inbox.put_nowait(None)

        unsettled = [d for d in self._outstanding.values() if not d.settled]
        self._outstanding.clear()
        for delivery in unsettled:
            delivery.settled = True
        await self._release_cb(self, unsettled)
        logger.debug(
            "Cancelled subscription %s (%d requeued)", self._consumer_tag, len(unsettled)
        )

    # ------------------------------------------------------------------
    # Broker API
    # ------------------------------------------------------------------

    def make_delivery(self, envelope: Any, content: dict[str, Any], tag: str) -> Delivery:
        return Delivery(envelope, content, tag, self._settle)

    def push(self, delivery: Delivery) -> None:
        """Hand a delivery to this consumer."""
        if self._cancelled:
            # Left for the broker to recover from its own pending state.
            return
        self._outstanding[delivery.tag] = delivery
        self._inbox.put_nowait(delivery)

    async def _settle(self, delivery: Delivery, ack: bool, requeue: bool) -> None:
        self._outstanding.pop(delivery.tag, None)
        await self._settle_cb(self, delivery, ack, requeue)

    # ------------------------------------------------------------------
    # Handler dispatch
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        assert self._handler is not None
        while True:
            delivery = await self._inbox.get()
            if delivery is None:
                return
            try:
                await self._handler(
                    delivery.envelope, delivery.content, delivery.ack_or_nack
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempts = delivery.envelope.delivery_count
                logger.exception(
                    "Handler error on %s msg=%s (attempt %d/%d)",
                    self._name,
                    delivery.envelope.message_id,
                    attempts,
                    self._max_attempts,
                )
                if self._on_handler_error is not None:
                    try:
                        self._on_handler_error(
                            self._name,
                            self._consumer_tag,
                            delivery.envelope.message_id,
                            exc,
                        )
                    except Exception:
                        logger.warning("on_handler_error callback failed", exc_info=True)
                await delivery.nack(requeue=attempts < self._max_attempts)
