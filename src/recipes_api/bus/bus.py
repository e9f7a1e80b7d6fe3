"""Broker factory.

Creates the appropriate broker implementation from configuration.
"""

from __future__ import annotations

from collections.abc import Callable

from recipes_api.core.config import BrokerConfig
from recipes_api.core.enums import BrokerStrategy

from .base import BaseBroker
from .memory_broker import MemoryBroker
from .redis_streams import RedisStreamsBroker


def create_broker(
    config: BrokerConfig,
    on_handler_error: Callable[
        [str, str, str, Exception], None
    ] | None = None,
) -> BaseBroker:
    """Create a broker for the configured strategy.

    - MEMORY: MemoryBroker (no external deps, deterministic)
    - REDIS: RedisStreamsBroker (persistent, shared across processes)

    Args:
        config: Broker section of the settings.
        on_handler_error: Optional callback ``(queue, consumer, msg_id, exc)``
            invoked when a subscription handler raises.
    """
    if config.strategy == BrokerStrategy.MEMORY:
        return MemoryBroker(config.queues, on_handler_error=on_handler_error)
    return RedisStreamsBroker(
        config.redis_url,
        config.queues,
        prefix=config.prefix,
        block_ms=config.block_ms,
        on_handler_error=on_handler_error,
    )
