"""Custom exception hierarchy for the recipes service."""


class RecipesError(Exception):
    """Base exception for all recipes service errors."""


# --- Configuration ---
class ConfigError(RecipesError):
    """Invalid or missing configuration."""


# --- Arguments ---
class InvalidArgumentError(RecipesError, ValueError):
    """Caller passed an argument the operation cannot accept."""


class DuplicateSourceIdError(InvalidArgumentError):
    """A write would bind a source id already owned by another recipe."""

    def __init__(self, source_id: str, owner_id: int | str | None):
        self.source_id = source_id
        self.owner_id = owner_id
        super().__init__(
            f"Source id {source_id!r} already belongs to recipe {owner_id}"
        )


# --- Identity allocation ---
class AllocationError(RecipesError):
    """Identity service unreachable or answered without a usable id."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# --- Storage ---
class StorageError(RecipesError):
    """Storage backend failure."""


# --- Bus ---
class BusError(RecipesError):
    """Notification bus failure."""


class BrokerNotStartedError(BusError):
    """Operation attempted before start() or after nuke()."""


class UnknownSubscriptionError(BusError):
    """Subscription name does not match any declared queue."""


class MessageTimeoutError(BusError):
    """No matching message arrived before the deadline."""


class UnexpectedMessageError(BusError):
    """A message arrived that was expected not to."""
