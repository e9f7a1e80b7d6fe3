"""Fixtures that build one isolated system per store strategy.

Every test in this directory runs once per entry of
``STORE_STRATEGIES``.  The ``redis`` strategy runs against the server
named by ``RECIPES_TEST_REDIS_URL`` when set, and against an in-process
fakeredis server (Lua scripting included) otherwise.  The ``sql``
strategy runs on a throwaway SQLite file through aiosqlite.
"""

from __future__ import annotations

import os
import uuid

import fakeredis
import fakeredis.aioredis
import pytest

from recipes_api.core.config import Settings
from recipes_api.core.enums import StoreStrategy
from recipes_api.store.redis_store import RedisRecipeStore
from recipes_api.store.registry import STORE_STRATEGIES
from recipes_api.system import RecipesSystem

ID_HOST = "http://idgen.test"
ID_PATH = "/api/v1/id"
REDIS_URL = os.environ.get("RECIPES_TEST_REDIS_URL")


def _settings_for(strategy: StoreStrategy, tmp_path) -> Settings:
    store: dict = {
        "strategy": strategy.value,
        "id_generator": {"host": ID_HOST, "path": ID_PATH},
    }
    if strategy == StoreStrategy.SQL:
        store["sql"] = {
            "url": f"sqlite+aiosqlite:///{tmp_path / 'recipes.db'}",
            "use_null_pool": True,
            "create_tables": True,
        }
    elif strategy == StoreStrategy.REDIS:
        store["redis"] = {
            "url": REDIS_URL or "redis://fakeredis",
            "prefix": f"test:{uuid.uuid4().hex[:8]}:",
        }
    return Settings(store=store, broker={"strategy": "memory"})


def _build(settings: Settings, id_service) -> RecipesSystem:
    system = RecipesSystem.from_settings(settings, id_transport=id_service.transport)
    if settings.store.strategy == StoreStrategy.REDIS and not REDIS_URL:
        system.store = RedisRecipeStore(
            system.id_generator,
            system.broker,
            prefix=settings.store.redis.prefix,
            redis=fakeredis.aioredis.FakeRedis(
                server=fakeredis.FakeServer(), decode_responses=True,
            ),
        )
    return system


@pytest.fixture(params=list(STORE_STRATEGIES), ids=lambda s: s.value)
async def system(request, tmp_path, id_service):
    """A started system on a fresh broker, empty store and purged queues."""
    system = _build(_settings_for(request.param, tmp_path), id_service)
    await system.start()
    await system.store.flush()
    await system.broker.purge()
    yield system
    await system.store.flush()
    await system.broker.nuke()
    await system.stop()


@pytest.fixture
def store(system):
    return system.store


@pytest.fixture
def broker(system):
    return system.broker
