"""Versioned recipe store: the behaviour every strategy shares.

Strategies only supply atomic primitives (conditional create, conditional
update, fetch, remove, clear).  This class owns the contract:

* a recipe without ``id`` gets one from the id generator first; an
  allocation failure aborts before anything is written or published;
* a create publishes ``saved``; an update is accepted only when the
  incoming version is strictly greater than the stored one and then
  publishes ``updated``; a stale save returns the stored record and
  publishes nothing;
* deleting an existing id publishes ``deleted``; a missing id is a no-op;
* notifications go out only after the write landed, one per accepted
  mutation, ordered per id within the process.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import weakref
from typing import Any

from recipes_api.bus.routing import recipe_routing_key
from recipes_api.core.enums import MutationOutcome, RecipeEvent
from recipes_api.core.errors import InvalidArgumentError, StorageError
from recipes_api.core.interfaces import IBroker, IIdGenerator
from recipes_api.core.models import Recipe
from recipes_api.observability.metrics import record_mutation, record_notification

logger = logging.getLogger(__name__)

# A save can lose a create race to a concurrent delete and then find no
# row to update; retry the create/update pair this many times.
_MAX_SAVE_ATTEMPTS = 5


class BaseRecipeStore(abc.ABC):
    """Recipe persistence with optimistic versioning and notifications.

    Parameters
    ----------
    id_generator:
        Allocates ids for recipes saved without one.
    broker:
        Bus that receives lifecycle notifications.
    producer:
        First routing-key segment, e.g. ``"recipes_api"``.
    version:
        Second routing-key segment, e.g. ``"v1"``.
    """

    strategy: str = "abstract"

    def __init__(
        self,
        id_generator: IIdGenerator,
        broker: IBroker,
        *,
        producer: str = "recipes_api",
        version: str = "v1",
    ) -> None:
        self._id_generator = id_generator
        self._broker = broker
        self._routing_keys = {
            event: recipe_routing_key(event, producer, version) for event in RecipeEvent
        }
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open backend connections. Default: nothing to do."""

    async def stop(self) -> None:
        """Release backend connections. Default: nothing to do."""

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def save_recipe(self, recipe: Recipe) -> Recipe:
        """Create or version-update *recipe*; see module docstring."""
        if recipe.id is None:
            recipe = recipe.with_id(await self._id_generator.request_id())

        async with self._lock_for(recipe.id):
            for _ in range(_MAX_SAVE_ATTEMPTS):
                if await self._create(recipe):
                    logger.info("Created recipe %s (version %s)", recipe.id, recipe.version)
                    record_mutation(self.strategy, "save", MutationOutcome.CREATED.value)
                    await self._notify(RecipeEvent.SAVED, recipe.to_document())
                    return recipe

                if await self._update_if_newer(recipe):
                    logger.info("Updated recipe %s to version %s", recipe.id, recipe.version)
                    record_mutation(self.strategy, "save", MutationOutcome.UPDATED.value)
                    await self._notify(RecipeEvent.UPDATED, recipe.to_document())
                    return recipe

                stored = await self._fetch(recipe.id)
                if stored is not None:
                    logger.info(
                        "Ignored stale save of recipe %s: version %s <= stored %s",
                        recipe.id,
                        recipe.version,
                        stored.version,
                    )
                    record_mutation(self.strategy, "save", MutationOutcome.STALE.value)
                    return stored

        raise StorageError(
            f"Could not settle save of recipe {recipe.id} after "
            f"{_MAX_SAVE_ATTEMPTS} attempts"
        )

    async def get_recipe(self, recipe_id: int) -> Recipe | None:
        """Return the recipe stored at *recipe_id*, or ``None``."""
        return await self._fetch(recipe_id)

    async def get_recipe_by_source_id(self, source_id: str) -> Recipe | None:
        """Return the recipe indexed under *source_id*, or ``None``."""
        return await self._fetch_by_source_id(source_id)

    async def delete_recipe(self, recipe_id: int | None) -> None:
        """Remove a recipe from both indices and publish ``deleted``.

        Raises
        ------
        InvalidArgumentError
            *recipe_id* is ``None``.
        """
        if recipe_id is None:
            raise InvalidArgumentError("Could not delete recipe with no id")

        async with self._lock_for(recipe_id):
            removed = await self._remove(recipe_id)
            if removed is None:
                logger.debug("Delete of missing recipe %s ignored", recipe_id)
                record_mutation(self.strategy, "delete", MutationOutcome.MISSING.value)
                return
            logger.info("Deleted recipe %s", recipe_id)
            record_mutation(self.strategy, "delete", MutationOutcome.DELETED.value)
            await self._notify(RecipeEvent.DELETED, removed.to_document())

    async def flush(self) -> None:
        """Remove every recipe. Publishes nothing."""
        await self._clear()
        logger.info("Flushed %s recipe store", self.strategy)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, recipe_id: int) -> asyncio.Lock:
        lock = self._locks.get(recipe_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[recipe_id] = lock
        return lock

    async def _notify(self, event: RecipeEvent, content: dict[str, Any]) -> None:
        await self._broker.publish(self._routing_keys[event], content)
        record_notification(event.value)

    # -- strategy primitives ---------------------------------------------

    @abc.abstractmethod
    async def _create(self, recipe: Recipe) -> bool:
        """Insert *recipe* if nothing is stored at its id.

        Returns ``False`` when the id is taken.  Raises
        :class:`DuplicateSourceIdError` when the source id belongs to a
        different recipe.
        """

    @abc.abstractmethod
    async def _update_if_newer(self, recipe: Recipe) -> bool:
        """Replace the stored recipe iff ``recipe.version`` is greater.

        Must move the source-id index atomically with the record.
        Returns ``False`` when nothing is stored or the version is stale.
        """

    @abc.abstractmethod
    async def _fetch(self, recipe_id: int) -> Recipe | None: ...

    @abc.abstractmethod
    async def _fetch_by_source_id(self, source_id: str) -> Recipe | None: ...

    @abc.abstractmethod
    async def _remove(self, recipe_id: int) -> Recipe | None:
        """Delete the recipe and its source-id entry; return what was removed."""

    @abc.abstractmethod
    async def _clear(self) -> None: ...
