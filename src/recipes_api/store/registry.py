"""Store strategy registry.

Maps strategy names to store factories.  Adding a backend means adding
an entry here; the conformance suite runs against every entry.
"""

from __future__ import annotations

from collections.abc import Callable

from recipes_api.core.config import StoreConfig
from recipes_api.core.enums import StoreStrategy
from recipes_api.core.errors import InvalidArgumentError
from recipes_api.core.interfaces import IBroker, IIdGenerator

from .base import BaseRecipeStore
from .memory import MemoryRecipeStore
from .redis_store import RedisRecipeStore
from .sql.connection import Database
from .sql.store import SqlRecipeStore

StoreFactory = Callable[..., BaseRecipeStore]


def _memory(
    config: StoreConfig, id_generator: IIdGenerator, broker: IBroker, **kwargs: str
) -> BaseRecipeStore:
    return MemoryRecipeStore(id_generator, broker, **kwargs)


def _redis(
    config: StoreConfig, id_generator: IIdGenerator, broker: IBroker, **kwargs: str
) -> BaseRecipeStore:
    return RedisRecipeStore(
        id_generator,
        broker,
        config.redis.url,
        prefix=config.redis.prefix,
        **kwargs,
    )


def _sql(
    config: StoreConfig, id_generator: IIdGenerator, broker: IBroker, **kwargs: str
) -> BaseRecipeStore:
    database = Database.from_url(
        config.sql.url,
        echo=config.sql.echo,
        pool_size=config.sql.pool_size,
        use_null_pool=config.sql.use_null_pool,
    )
    return SqlRecipeStore(
        id_generator,
        broker,
        database,
        create_tables=config.sql.create_tables,
        **kwargs,
    )


STORE_STRATEGIES: dict[StoreStrategy, StoreFactory] = {
    StoreStrategy.MEMORY: _memory,
    StoreStrategy.REDIS: _redis,
    StoreStrategy.SQL: _sql,
}


def create_store(
    config: StoreConfig,
    id_generator: IIdGenerator,
    broker: IBroker,
    *,
    producer: str = "recipes_api",
    version: str = "v1",
) -> BaseRecipeStore:
    """Build the store selected by ``config.strategy``.

    Raises:
        InvalidArgumentError: No factory is registered for the strategy.
    """
    try:
        strategy = StoreStrategy(config.strategy)
        factory = STORE_STRATEGIES[strategy]
    except (ValueError, KeyError):
        raise InvalidArgumentError(
            f"Unknown store strategy {config.strategy!r}. "
            f"Available: {[s.value for s in STORE_STRATEGIES]}"
        ) from None
    return factory(config, id_generator, broker, producer=producer, version=version)
