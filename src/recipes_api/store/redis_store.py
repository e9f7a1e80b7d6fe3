"""Redis-backed recipe store.

Layout (all keys under a configurable prefix, default ``recipes:``):

  - ``<prefix>recipe:<id>``        JSON document of the recipe
  - ``<prefix>source:<source_id>`` id of the recipe owning that source id

Every mutation is a server-side Lua script, so the record and its
source-id entry change together and the version comparison cannot race
with another writer.

Uses ``redis.asyncio`` for non-blocking I/O.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis

from recipes_api.core.errors import DuplicateSourceIdError
from recipes_api.core.models import Recipe

from .base import BaseRecipeStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

# KEYS: recipe key, source key. ARGV: id, document.
# Returns 1 created, 0 id taken, -1 source id owned by another recipe.
_CREATE = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
local owner = redis.call('GET', KEYS[2])
if owner and owner ~= ARGV[1] then
  return -1
end
redis.call('SET', KEYS[1], ARGV[2])
redis.call('SET', KEYS[2], ARGV[1])
return 1
"""

# KEYS: recipe key, new source key. ARGV: id, document, version, source prefix.
# Returns 1 updated, 0 missing or stale, -1 source id owned by another recipe.
_UPDATE_IF_NEWER = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local stored = cjson.decode(raw)
if tonumber(ARGV[3]) <= tonumber(stored['version']) then
  return 0
end
local owner = redis.call('GET', KEYS[2])
if owner and owner ~= ARGV[1] then
  return -1
end
local old_source = ARGV[4] .. stored['source_id']
if old_source ~= KEYS[2] then
  redis.call('DEL', old_source)
end
redis.call('SET', KEYS[1], ARGV[2])
redis.call('SET', KEYS[2], ARGV[1])
return 1
"""

# KEYS: recipe key. ARGV: id, source prefix. Returns the removed document.
_REMOVE = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local stored = cjson.decode(raw)
local source_key = ARGV[2] .. stored['source_id']
if redis.call('GET', source_key) == ARGV[1] then
  redis.call('DEL', source_key)
end
redis.call('DEL', KEYS[1])
return raw
"""

# KEYS: source key. ARGV: recipe key prefix.
_FETCH_BY_SOURCE = """
local id = redis.call('GET', KEYS[1])
if not id then
  return false
end
return redis.call('GET', ARGV[1] .. id)
"""


def _decode(raw: str | bytes | None) -> Recipe | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return Recipe.from_document(json.loads(raw))


class RedisRecipeStore(BaseRecipeStore):
    """Async Redis recipe store.

    Args:
        id_generator: Allocates ids for new recipes.
        broker: Receives lifecycle notifications.
        redis_url: Redis connection URL (e.g. ``redis://localhost:6379/0``).
        prefix: Key namespace prefix. Defaults to ``"recipes:"``.
        redis: Pre-built client, mainly for tests.
    """

    strategy = "redis"

    def __init__(
        self,
        id_generator: Any,
        broker: Any,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "recipes:",
        redis: aioredis.Redis | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(id_generator, broker, **kwargs)
        self._url = redis_url
        self._prefix = prefix
        self._redis: aioredis.Redis | None = redis
        self._owns_client = redis is None
        self._scripts: dict[str, Any] = {}

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Establish the Redis connection pool and register scripts."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._url, decode_responses=True, max_connections=20,
            )
            await self._redis.ping()
            logger.info("Redis connected: %s", self._url.split("@")[-1])
        self._register_scripts()

    async def stop(self) -> None:
        """Close the Redis connection pool."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed.")

    @property
    def redis(self) -> aioredis.Redis:
        """Return the underlying Redis client, raising if not connected."""
        if self._redis is None:
            raise RuntimeError("RedisRecipeStore not connected. Call start() first.")
        return self._redis

    def _register_scripts(self) -> None:
        self._scripts = {
            "create": self.redis.register_script(_CREATE),
            "update": self.redis.register_script(_UPDATE_IF_NEWER),
            "remove": self.redis.register_script(_REMOVE),
            "by_source": self.redis.register_script(_FETCH_BY_SOURCE),
        }

    def _script(self, name: str) -> Any:
        if not self._scripts:
            self._register_scripts()
        return self._scripts[name]

    # -- key builders --------------------------------------------------------

    @property
    def _recipe_prefix(self) -> str:
        return f"{self._prefix}recipe:"

    @property
    def _source_prefix(self) -> str:
        return f"{self._prefix}source:"

    def _recipe_key(self, recipe_id: int) -> str:
        return f"{self._recipe_prefix}{recipe_id}"

    def _source_key(self, source_id: str) -> str:
        return f"{self._source_prefix}{source_id}"

    # -- primitives ----------------------------------------------------------

    async def _source_conflict(self, recipe: Recipe) -> DuplicateSourceIdError:
        owner = await self.redis.get(self._source_key(recipe.source_id))
        return DuplicateSourceIdError(recipe.source_id, owner)

    async def _create(self, recipe: Recipe) -> bool:
        result = await self._script("create")(
            keys=[self._recipe_key(recipe.id), self._source_key(recipe.source_id)],
            args=[str(recipe.id), json.dumps(recipe.to_document())],
        )
        if int(result) < 0:
            raise await self._source_conflict(recipe)
        return int(result) == 1

    async def _update_if_newer(self, recipe: Recipe) -> bool:
        result = await self._script("update")(
            keys=[self._recipe_key(recipe.id), self._source_key(recipe.source_id)],
            args=[
                str(recipe.id),
                json.dumps(recipe.to_document()),
                str(recipe.version),
                self._source_prefix,
            ],
        )
        if int(result) < 0:
            raise await self._source_conflict(recipe)
        return int(result) == 1

    async def _fetch(self, recipe_id: int) -> Recipe | None:
        return _decode(await self.redis.get(self._recipe_key(recipe_id)))

    async def _fetch_by_source_id(self, source_id: str) -> Recipe | None:
        raw = await self._script("by_source")(
            keys=[self._source_key(source_id)],
            args=[self._recipe_prefix],
        )
        return _decode(raw)

    async def _remove(self, recipe_id: int) -> Recipe | None:
        raw = await self._script("remove")(
            keys=[self._recipe_key(recipe_id)],
            args=[str(recipe_id), self._source_prefix],
        )
        return _decode(raw)

    async def _clear(self) -> None:
        """Delete every recipe and source-id key under the prefix."""
        deleted = 0
        for pattern in (f"{self._recipe_prefix}*", f"{self._source_prefix}*"):
            async for key in self.redis.scan_iter(match=pattern, count=200):
                await self.redis.delete(key)
                deleted += 1
        logger.debug("Flushed %d keys under %s", deleted, self._prefix)
