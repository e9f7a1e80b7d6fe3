"""Protocol interfaces for the recipes service.

All module boundaries are defined here as Protocol classes.
Implementations can be swapped (memory/redis/sql) without changing callers.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from .models import Recipe


# ---------------------------------------------------------------------------
# Identity allocation
# ---------------------------------------------------------------------------

@runtime_checkable
class IIdGenerator(Protocol):
    """Hands out globally unique integer ids."""

    async def request_id(self) -> int: ...


# ---------------------------------------------------------------------------
# Notification bus
# ---------------------------------------------------------------------------

AckOrNack = Callable[..., Awaitable[None]]
MessageHandler = Callable[[Any, dict[str, Any], AckOrNack], Awaitable[None]]


@runtime_checkable
class ISubscription(Protocol):
    """Handle over one consumer of a queue."""

    @property
    def name(self) -> str: ...

    def on_message(self, handler: MessageHandler) -> ISubscription: ...

    async def get(self, timeout: float | None = None) -> Any: ...

    async def cancel(self) -> None: ...


@runtime_checkable
class IBroker(Protocol):
    """Topic-routed publish/subscribe bus."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    async def publish(self, routing_key: str, content: dict[str, Any]) -> None: ...

    async def subscribe(
        self,
        name: str,
        handler: MessageHandler | None = None,
    ) -> ISubscription: ...

    async def purge(self) -> None: ...
    async def nuke(self) -> None: ...


# ---------------------------------------------------------------------------
# Storage engine
# ---------------------------------------------------------------------------

@runtime_checkable
class IRecipeStore(Protocol):
    """Versioned recipe persistence with lifecycle notifications."""

    strategy: str

    async def save_recipe(self, recipe: Recipe) -> Recipe: ...

    async def get_recipe(self, recipe_id: int) -> Recipe | None: ...

    async def get_recipe_by_source_id(self, source_id: str) -> Recipe | None: ...

    async def delete_recipe(self, recipe_id: int | None) -> None: ...

    async def flush(self) -> None: ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...
