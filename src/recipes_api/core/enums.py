"""Enumerations used across the recipes service."""

from enum import Enum


class StoreStrategy(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    SQL = "sql"


class BrokerStrategy(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class RecipeEvent(str, Enum):
    SAVED = "saved"
    UPDATED = "updated"
    DELETED = "deleted"


class MutationOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STALE = "stale"
    DELETED = "deleted"
    MISSING = "missing"
