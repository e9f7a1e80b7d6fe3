"""Shared fixtures for the recipes-api test suite."""

from __future__ import annotations

from collections import deque
from typing import Any

import httpx
import pytest

from recipes_api.bus.memory_broker import MemoryBroker
from recipes_api.core.config import DEFAULT_BINDING
from recipes_api.core.models import Recipe
from recipes_api.idgen.client import IdGeneratorClient
from recipes_api.store.memory import MemoryRecipeStore

ID_HOST = "http://idgen.test"
ID_PATH = "/api/v1/id"


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

def make_recipe(**overrides: Any) -> Recipe:
    """Build a recipe resembling what the ingestion feed sends."""
    data: dict[str, Any] = {
        "source_id": "S1",
        "version": 100,
        "title": "Roast squash with sage butter",
        "url": "https://example.test/recipes/roast-squash",
        "servings": 4,
        "ingredients": [
            {"name": "butternut squash", "quantity": "1"},
            {"name": "butter", "quantity": "50g"},
            {"name": "sage leaves", "quantity": "10"},
        ],
        "steps": ["Heat the oven.", "Roast the squash.", "Brown the butter."],
        "tags": ["vegetarian", "autumn"],
    }
    data.update(overrides)
    return Recipe(**data)


@pytest.fixture
def sample_recipe() -> Recipe:
    """A recipe with no id, as received before identity allocation."""
    return make_recipe()


@pytest.fixture
def recipe_factory():
    """Factory building recipes with field overrides."""
    return make_recipe


# ---------------------------------------------------------------------------
# Identity allocation service stub
# ---------------------------------------------------------------------------

class IdServiceStub:
    """Queue of canned answers served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self._replies: deque[tuple[int, Any]] = deque()
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def reply(self, recipe_id: int | None, status_code: int = 200) -> None:
        body = {"id": recipe_id} if recipe_id is not None else {}
        self._replies.append((status_code, body))

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._replies:
            return httpx.Response(503, json={"error": "no id queued"})
        status_code, body = self._replies.popleft()
        return httpx.Response(status_code, json=body)


@pytest.fixture
def id_service() -> IdServiceStub:
    return IdServiceStub()


# ---------------------------------------------------------------------------
# Bus and store
# ---------------------------------------------------------------------------

@pytest.fixture
async def memory_broker():
    """A started in-memory broker with the default snoop queue."""
    broker = MemoryBroker({"recipes_snoop": [DEFAULT_BINDING]})
    await broker.start()
    yield broker
    await broker.nuke()


@pytest.fixture
async def memory_store(id_service, memory_broker):
    async with IdGeneratorClient(ID_HOST, ID_PATH, transport=id_service.transport) as idgen:
        store = MemoryRecipeStore(idgen, memory_broker)
        await store.start()
        yield store
        await store.stop()
