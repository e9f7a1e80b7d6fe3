"""Recipe storage strategies sharing one versioned contract."""

from recipes_api.store.base import BaseRecipeStore
from recipes_api.store.memory import MemoryRecipeStore
from recipes_api.store.redis_store import RedisRecipeStore
from recipes_api.store.registry import STORE_STRATEGIES, create_store
from recipes_api.store.sql.store import SqlRecipeStore

__all__ = [
    "STORE_STRATEGIES",
    "BaseRecipeStore",
    "MemoryRecipeStore",
    "RedisRecipeStore",
    "SqlRecipeStore",
    "create_store",
]
