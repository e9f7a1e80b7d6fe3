"""SQL recipe store (PostgreSQL via asyncpg, SQLite via aiosqlite).

Versioning is enforced by the database: updates run as
``UPDATE ... WHERE id = :id AND version < :version`` and the unique
constraint on ``source_id`` keeps the secondary index single-valued.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from recipes_api.core.errors import DuplicateSourceIdError
from recipes_api.core.models import Recipe

from ..base import BaseRecipeStore
from .connection import Database
from .models import RecipeRecord, _utcnow

logger = logging.getLogger(__name__)

_recipes = RecipeRecord.__table__


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _recipe_to_record(recipe: Recipe) -> RecipeRecord:
    """Convert a core :class:`Recipe` to an ORM :class:`RecipeRecord`."""
    return RecipeRecord(
        id=recipe.id,
        source_id=recipe.source_id,
        version=recipe.version,
        document=recipe.to_document(),
    )


def _record_to_recipe(record: RecipeRecord) -> Recipe:
    """Convert an ORM :class:`RecipeRecord` back to a core :class:`Recipe`."""
    return Recipe.from_document(record.document)


# ---------------------------------------------------------------------------
# SqlRecipeStore
# ---------------------------------------------------------------------------

class SqlRecipeStore(BaseRecipeStore):
    """Recipe store on a relational database.

    Args:
        id_generator: Allocates ids for new recipes.
        broker: Receives lifecycle notifications.
        database: Engine/session handle.
        create_tables: Run ``CREATE TABLE IF NOT EXISTS`` on start.
    """

    strategy = "sql"

    def __init__(
        self,
        id_generator: Any,
        broker: Any,
        database: Database,
        *,
        create_tables: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(id_generator, broker, **kwargs)
        self._db = database
        self._create_tables = create_tables

    async def start(self) -> None:
        if self._create_tables:
            await self._db.create_all()

    async def stop(self) -> None:
        await self._db.dispose()

    # -- primitives ----------------------------------------------------------

    async def _owner_of(self, source_id: str) -> int | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(RecipeRecord.id).where(RecipeRecord.source_id == source_id)
            )
            return result.scalar_one_or_none()

    async def _create(self, recipe: Recipe) -> bool:
        try:
            async with self._db.session() as session:
                session.add(_recipe_to_record(recipe))
        except IntegrityError:
            if await self._fetch(recipe.id) is not None:
                return False
            owner = await self._owner_of(recipe.source_id)
            if owner is not None and owner != recipe.id:
                raise DuplicateSourceIdError(recipe.source_id, owner) from None
            # Row vanished between insert and check; caller retries.
            return False
        return True

    async def _update_if_newer(self, recipe: Recipe) -> bool:
        stmt = (
            update(_recipes)
            .where(_recipes.c.id == recipe.id, _recipes.c.version < recipe.version)
            .values(
                source_id=recipe.source_id,
                version=recipe.version,
                document=recipe.to_document(),
                updated_at=_utcnow(),
            )
        )
        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                updated = result.rowcount == 1
        except IntegrityError:
            owner = await self._owner_of(recipe.source_id)
            raise DuplicateSourceIdError(recipe.source_id, owner) from None
        return updated

    async def _fetch(self, recipe_id: int) -> Recipe | None:
        async with self._db.session() as session:
            record = await session.get(RecipeRecord, recipe_id)
            return _record_to_recipe(record) if record is not None else None

    async def _fetch_by_source_id(self, source_id: str) -> Recipe | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(RecipeRecord).where(RecipeRecord.source_id == source_id)
            )
            record = result.scalar_one_or_none()
            return _record_to_recipe(record) if record is not None else None

    async def _remove(self, recipe_id: int) -> Recipe | None:
        async with self._db.session() as session:
            result = await session.execute(
                delete(_recipes)
                .where(_recipes.c.id == recipe_id)
                .returning(_recipes.c.document)
            )
            document = result.scalar_one_or_none()
        return Recipe.from_document(document) if document is not None else None

    async def _clear(self) -> None:
        async with self._db.session() as session:
            result = await session.execute(delete(_recipes))
        logger.debug("Deleted %s recipe rows", result.rowcount)
