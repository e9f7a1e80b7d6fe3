"""Composition root.

Wires the id generator client, the broker and the configured store
strategy from :class:`Settings`, and manages their lifecycle.

Usage::

    settings = load_settings("configs/default.toml")
    async with RecipesSystem.from_settings(settings) as system:
        saved = await system.store.save_recipe(recipe)
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from recipes_api.bus.base import BaseBroker
from recipes_api.bus.bus import create_broker
from recipes_api.core.config import Settings
from recipes_api.core.interfaces import IRecipeStore
from recipes_api.idgen.client import IdGeneratorClient
from recipes_api.observability.logger import setup_logging
from recipes_api.observability.metrics import start_metrics_server
from recipes_api.store.registry import create_store

logger = logging.getLogger(__name__)


class RecipesSystem:
    """Owns the running components of the service."""

    def __init__(
        self,
        settings: Settings,
        id_generator: IdGeneratorClient,
        broker: BaseBroker,
        store: IRecipeStore,
    ) -> None:
        self.settings = settings
        self.id_generator = id_generator
        self.broker = broker
        self.store = store
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        id_transport: httpx.AsyncBaseTransport | None = None,
        on_handler_error: Callable[[str, str, str, Exception], None] | None = None,
    ) -> RecipesSystem:
        """Build every component from *settings* without connecting yet."""
        settings.validate_topology()
        id_generator = IdGeneratorClient.from_config(
            settings.store.id_generator, transport=id_transport,
        )
        broker = create_broker(settings.broker, on_handler_error=on_handler_error)
        store = create_store(
            settings.store,
            id_generator,
            broker,
            producer=settings.broker.producer,
            version=settings.broker.version,
        )
        return cls(settings, id_generator, broker, store)

    async def start(self, *, configure_logging: bool = False) -> None:
        """Open clients, provision bus topology, connect the store."""
        obs = self.settings.observability
        if configure_logging:
            setup_logging(obs.log_level, obs.log_format)
        if obs.metrics_port:
            start_metrics_server(obs.metrics_port, self.store.strategy)

        await self.id_generator.open()
        await self.broker.start()
        await self.store.start()
        self._started = True
        logger.info(
            "Recipes system started (store=%s, broker=%s)",
            self.store.strategy,
            type(self.broker).__name__,
        )

    async def stop(self) -> None:
        """Close the store, the broker and the id generator client."""
        if not self._started:
            return
        await self.store.stop()
        await self.broker.stop()
        await self.id_generator.close()
        self._started = False
        logger.info("Recipes system stopped")

    async def __aenter__(self) -> RecipesSystem:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
