"""Message envelope and delivery handle.

The envelope is the broker-side metadata of a message; the content is
the JSON payload the publisher sent.  A :class:`Delivery` pairs the two
with the acknowledgment callbacks of the consumer that received it.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Envelope(BaseModel):
    """Broker metadata for one message on one queue."""

    message_id: str = Field(default_factory=_uuid)
    routing_key: str
    queue: str = ""
    timestamp: datetime = Field(default_factory=_now)
    redelivered: bool = False
    delivery_count: int = 1
    headers: dict[str, str] = Field(default_factory=dict)

    def redelivery(self) -> Envelope:
        return self.model_copy(
            update={"redelivered": True, "delivery_count": self.delivery_count + 1}
        )


class Delivery:
    """One message handed to one consumer, awaiting ack or nack."""

    def __init__(
        self,
        envelope: Envelope,
        content: dict[str, Any],
        tag: str,
        settle: Callable[[Delivery, bool, bool], Awaitable[None]],
    ) -> None:
        self.envelope = envelope
        self.content = content
        self.tag = tag
        self._settle = settle
        self.settled = False

    @property
    def routing_key(self) -> str:
        return self.envelope.routing_key

    async def ack(self) -> None:
        await self._finish(ack=True, requeue=False)

    async def nack(self, requeue: bool = True) -> None:
        await self._finish(ack=False, requeue=requeue)

    async def ack_or_nack(
        self,
        error: BaseException | None = None,
        *,
        requeue: bool = True,
    ) -> None:
        """Ack when called without an error, nack otherwise."""
        if error is None:
            await self.ack()
        else:
            await self.nack(requeue=requeue)

    async def _finish(self, *, ack: bool, requeue: bool) -> None:
        if self.settled:
            return
        self.settled = True
        await self._settle(self, ack, requeue)

    def __repr__(self) -> str:
        return (
            f"Delivery(routing_key={self.routing_key!r}, "
            f"queue={self.envelope.queue!r}, tag={self.tag!r})"
        )
