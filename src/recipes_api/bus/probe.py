"""Bounded-time message assertions.

A probe subscribes to a queue, acks and skips messages whose routing
key does not match, and returns the first match before a deadline.  The
subscription is always cancelled on the way out.

Usage::

    delivery = await expect_message(broker, "recipes_snoop", key, timeout=2)
    await expect_no_message(broker, "recipes_snoop", key, quiet_period=0.5)
"""

from __future__ import annotations

import asyncio
import logging

from recipes_api.core.errors import MessageTimeoutError, UnexpectedMessageError
from recipes_api.core.interfaces import IBroker

from .envelope import Delivery

logger = logging.getLogger(__name__)


async def collect_messages(
    broker: IBroker,
    subscription: str,
    *,
    duration: float = 0.5,
) -> list[Delivery]:
    """Ack and return every delivery received within *duration* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration
    received: list[Delivery] = []
    sub = await broker.subscribe(subscription)
    try:
        while (remaining := deadline - loop.time()) > 0:
            try:
                delivery = await sub.get(timeout=remaining)
            except asyncio.TimeoutError:
                break
            await delivery.ack()
            received.append(delivery)
    finally:
        await sub.cancel()
    return received


async def expect_message(
    broker: IBroker,
    subscription: str,
    routing_key: str,
    *,
    timeout: float = 2.0,
) -> Delivery:
    """Return the first delivery on *routing_key* within *timeout*.

    Raises
    ------
    MessageTimeoutError
        Nothing matching arrived in time.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    skipped: list[str] = []
    sub = await broker.subscribe(subscription)
    try:
        while (remaining := deadline - loop.time()) > 0:
            try:
                delivery = await sub.get(timeout=remaining)
            except asyncio.TimeoutError:
                break
            await delivery.ack()
            if delivery.routing_key == routing_key:
                return delivery
            skipped.append(delivery.routing_key)
    finally:
        await sub.cancel()

    raise MessageTimeoutError(
        f"No {routing_key!r} message on {subscription!r} within {timeout}s "
        f"(skipped {skipped})"
    )


async def expect_no_message(
    broker: IBroker,
    subscription: str,
    routing_key: str,
    *,
    quiet_period: float = 0.5,
) -> None:
    """Fail if a *routing_key* message arrives within *quiet_period*.

    Raises
    ------
    UnexpectedMessageError
        A matching message was delivered.
    """
    for delivery in await collect_messages(broker, subscription, duration=quiet_period):
        if delivery.routing_key == routing_key:
            raise UnexpectedMessageError(
                f"Unexpected {routing_key!r} message on {subscription!r}: "
                f"{delivery.content}"
            )
    logger.debug("No %s message within %.2fs", routing_key, quiet_period)
