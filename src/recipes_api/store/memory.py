"""In-memory recipe store.

Two dicts (id -> document, source_id -> id) guarded by one
``asyncio.Lock`` so both indices always move together.  Documents are
stored as plain JSON dicts so callers never share mutable state with
the store.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

from recipes_api.core.errors import DuplicateSourceIdError
from recipes_api.core.models import Recipe

from .base import BaseRecipeStore


def _load(document: dict[str, Any] | None) -> Recipe | None:
    if document is None:
        return None
    return Recipe.from_document(copy.deepcopy(document))


class MemoryRecipeStore(BaseRecipeStore):
    """Recipe store kept in process memory."""

    strategy = "memory"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._by_id: dict[int, dict[str, Any]] = {}
        self._by_source_id: dict[str, int] = {}
        self._index_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._by_id)

    def _check_source_owner(self, recipe: Recipe) -> None:
        owner = self._by_source_id.get(recipe.source_id)
        if owner is not None and owner != recipe.id:
            raise DuplicateSourceIdError(recipe.source_id, owner)

    async def _create(self, recipe: Recipe) -> bool:
        async with self._index_lock:
            if recipe.id in self._by_id:
                return False
            self._check_source_owner(recipe)
            self._by_id[recipe.id] = recipe.to_document()
            self._by_source_id[recipe.source_id] = recipe.id
            return True

    async def _update_if_newer(self, recipe: Recipe) -> bool:
        async with self._index_lock:
            stored = self._by_id.get(recipe.id)
            if stored is None or recipe.version <= stored["version"]:
                return False
            self._check_source_owner(recipe)
            if stored["source_id"] != recipe.source_id:
                self._by_source_id.pop(stored["source_id"], None)
            self._by_id[recipe.id] = recipe.to_document()
            self._by_source_id[recipe.source_id] = recipe.id
            return True

    async def _fetch(self, recipe_id: int) -> Recipe | None:
        return _load(self._by_id.get(recipe_id))

    async def _fetch_by_source_id(self, source_id: str) -> Recipe | None:
        async with self._index_lock:
            recipe_id = self._by_source_id.get(source_id)
            document = self._by_id.get(recipe_id) if recipe_id is not None else None
        return _load(document)

    async def _remove(self, recipe_id: int) -> Recipe | None:
        async with self._index_lock:
            document = self._by_id.pop(recipe_id, None)
            if document is None:
                return None
            if self._by_source_id.get(document["source_id"]) == recipe_id:
                del self._by_source_id[document["source_id"]]
        return Recipe.from_document(document)

    async def _clear(self) -> None:
        async with self._index_lock:
            self._by_id.clear()
            self._by_source_id.clear()
