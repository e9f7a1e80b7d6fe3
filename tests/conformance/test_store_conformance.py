"""Behaviour every store strategy must show, run unmodified per strategy."""

from __future__ import annotations

import pytest

from recipes_api.bus.probe import collect_messages, expect_message, expect_no_message
from recipes_api.bus.routing import recipe_routing_key
from recipes_api.core.enums import RecipeEvent
from recipes_api.core.errors import (
    AllocationError,
    DuplicateSourceIdError,
    InvalidArgumentError,
)
from recipes_api.core.models import normalise

SNOOP = "recipes_snoop"
SAVED = recipe_routing_key(RecipeEvent.SAVED)
UPDATED = recipe_routing_key(RecipeEvent.UPDATED)
DELETED = recipe_routing_key(RecipeEvent.DELETED)


class TestGetRecipe:
    async def test_get_recipe_by_id(self, store, id_service, sample_recipe):
        id_service.reply(1)
        await store.save_recipe(sample_recipe)

        saved = await store.get_recipe(1)
        assert saved.id == 1
        assert normalise(saved) == normalise(sample_recipe)

    async def test_get_recipe_by_source_id(self, store, id_service, sample_recipe):
        id_service.reply(1)
        await store.save_recipe(sample_recipe)

        saved = await store.get_recipe_by_source_id(sample_recipe.source_id)
        assert saved.id == 1
        assert normalise(saved) == normalise(sample_recipe)

    async def test_missing_recipe_is_none(self, store):
        assert await store.get_recipe(404) is None
        assert await store.get_recipe_by_source_id("nope") is None

    async def test_payload_round_trips(self, store, recipe_factory):
        recipe = recipe_factory(id=7, nested={"a": [1, 2, {"b": None}]}, rating=4.5)
        await store.save_recipe(recipe)

        saved = await store.get_recipe(7)
        assert saved.payload["nested"] == {"a": [1, 2, {"b": None}]}
        assert saved.payload["rating"] == 4.5


class TestSaveRecipe:
    async def test_save_without_id_requests_one(self, store, broker, id_service, sample_recipe):
        id_service.reply(1)
        returned = await store.save_recipe(sample_recipe)

        assert returned.id == 1
        assert id_service.calls == 1
        saved = await store.get_recipe(1)
        assert normalise(saved) == normalise(sample_recipe)

        delivery = await expect_message(broker, SNOOP, SAVED)
        assert delivery.content["id"] == 1
        assert normalise(delivery.content) == normalise(sample_recipe)

    async def test_save_with_unknown_id_creates_without_allocation(
        self, store, broker, id_service, sample_recipe
    ):
        recipe = sample_recipe.with_id(42)
        returned = await store.save_recipe(recipe)

        assert returned == recipe
        assert id_service.calls == 0
        assert (await store.get_recipe(42)).version == recipe.version
        delivery = await expect_message(broker, SNOOP, SAVED)
        assert delivery.content["id"] == 42

    async def test_update_when_new_version_is_greater(self, store, broker, sample_recipe):
        recipe = sample_recipe.with_id(1)
        update = recipe.model_copy(update={"version": 1_700_000_000_000})

        await store.save_recipe(recipe)
        await expect_message(broker, SNOOP, SAVED)

        returned = await store.save_recipe(update)
        assert returned.version == update.version

        delivery = await expect_message(broker, SNOOP, UPDATED)
        assert normalise(delivery.content) == normalise(update)
        assert (await store.get_recipe(1)).version == update.version

    async def test_no_update_when_new_version_is_lower(self, store, broker, sample_recipe):
        recipe = sample_recipe.with_id(1)
        stale = recipe.model_copy(update={"version": 1, "title": "changed"})

        await store.save_recipe(recipe)
        returned = await store.save_recipe(stale)

        assert returned.version == recipe.version
        assert normalise(returned) == normalise(recipe)
        saved = await store.get_recipe(1)
        assert saved.version == recipe.version
        assert saved.payload["title"] == recipe.payload["title"]
        await expect_no_message(broker, SNOOP, UPDATED, quiet_period=0.2)

    async def test_no_update_when_version_is_equal(self, store, broker, sample_recipe):
        recipe = sample_recipe.with_id(1)
        same_version = recipe.model_copy(update={"title": "changed"})

        await store.save_recipe(recipe)
        returned = await store.save_recipe(same_version)

        assert returned.payload["title"] == recipe.payload["title"]
        await expect_no_message(broker, SNOOP, UPDATED, quiet_period=0.2)

    async def test_allocation_failure_leaves_no_trace(
        self, store, broker, id_service, sample_recipe
    ):
        id_service.reply(1, status_code=500)

        with pytest.raises(AllocationError):
            await store.save_recipe(sample_recipe)

        assert await store.get_recipe(1) is None
        assert await store.get_recipe_by_source_id(sample_recipe.source_id) is None
        assert broker.get_history() == []

    async def test_update_moves_source_id_index(self, store, recipe_factory):
        await store.save_recipe(recipe_factory(id=1, source_id="S1", version=1))
        await store.save_recipe(recipe_factory(id=1, source_id="S1-renamed", version=2))

        assert await store.get_recipe_by_source_id("S1") is None
        assert (await store.get_recipe_by_source_id("S1-renamed")).id == 1

    async def test_source_id_owned_by_another_recipe_is_rejected(
        self, store, broker, recipe_factory
    ):
        await store.save_recipe(recipe_factory(id=1, source_id="S1", version=1))
        broker.clear_history()

        with pytest.raises(DuplicateSourceIdError):
            await store.save_recipe(recipe_factory(id=2, source_id="S1", version=1))

        assert await store.get_recipe(2) is None
        assert (await store.get_recipe_by_source_id("S1")).id == 1
        assert broker.get_history() == []


class TestDeleteRecipe:
    async def test_delete_with_no_id_raises(self, store):
        with pytest.raises(InvalidArgumentError, match="Could not delete recipe with no id"):
            await store.delete_recipe(None)

    async def test_delete_recipe(self, store, broker, id_service, sample_recipe):
        id_service.reply(1)
        await store.save_recipe(sample_recipe)
        await store.delete_recipe(1)

        assert await store.get_recipe(1) is None
        assert await store.get_recipe_by_source_id(sample_recipe.source_id) is None
        delivery = await expect_message(broker, SNOOP, DELETED)
        assert delivery.content["id"] == 1

    async def test_delete_missing_twice_is_silent(self, store, broker):
        await store.delete_recipe(99)
        await store.delete_recipe(99)

        assert broker.get_history() == []
        await expect_no_message(broker, SNOOP, DELETED, quiet_period=0.2)

    async def test_second_delete_publishes_nothing(self, store, broker, recipe_factory):
        await store.save_recipe(recipe_factory(id=5))
        await store.delete_recipe(5)
        await store.delete_recipe(5)

        assert len(broker.get_history(DELETED)) == 1


class TestFlush:
    async def test_flush_clears_both_indices_without_notifications(
        self, store, broker, recipe_factory
    ):
        await store.save_recipe(recipe_factory(id=1, source_id="S1"))
        await store.save_recipe(recipe_factory(id=2, source_id="S2"))
        broker.clear_history()

        await store.flush()
        await store.flush()

        assert await store.get_recipe(1) is None
        assert await store.get_recipe_by_source_id("S2") is None
        assert broker.get_history() == []
        # Source ids are free again after a flush.
        await store.save_recipe(recipe_factory(id=3, source_id="S1"))
        assert (await store.get_recipe_by_source_id("S1")).id == 3


class TestLifecycle:
    async def test_create_reject_update_delete(self, store, broker, id_service, recipe_factory):
        id_service.reply(1)
        created = await store.save_recipe(recipe_factory(source_id="S1", version=100))
        assert created.id == 1
        assert (await store.get_recipe(1)).id == 1

        stale = await store.save_recipe(recipe_factory(id=1, source_id="S1", version=50))
        assert stale.version == 100

        updated = await store.save_recipe(recipe_factory(id=1, source_id="S1", version=200))
        assert updated.version == 200
        assert (await store.get_recipe(1)).version == 200

        await store.delete_recipe(1)
        assert await store.get_recipe(1) is None

        deliveries = await collect_messages(broker, SNOOP, duration=0.3)
        keys = [d.routing_key for d in deliveries]
        assert keys == [SAVED, UPDATED, DELETED]
        assert deliveries[1].content["version"] == 200
        assert deliveries[2].content["id"] == 1
