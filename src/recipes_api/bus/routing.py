"""Routing keys for recipe lifecycle notifications.

Keys look like ``recipes_api.v1.notifications.recipe.saved``.  Queue
bindings use AMQP topic patterns: ``*`` matches exactly one word and
``#`` matches zero or more words.
"""

from __future__ import annotations

from functools import lru_cache

from recipes_api.core.enums import RecipeEvent

NOTIFICATION_SEGMENT = "notifications.recipe"


def recipe_routing_key(
    event: RecipeEvent | str,
    producer: str = "recipes_api",
    version: str = "v1",
) -> str:
    """Build the routing key for a recipe lifecycle *event*."""
    name = event.value if isinstance(event, RecipeEvent) else RecipeEvent(event).value
    return f"{producer}.{version}.{NOTIFICATION_SEGMENT}.{name}"


def event_from_routing_key(routing_key: str) -> RecipeEvent | None:
    """Return the lifecycle event a routing key encodes, if any."""
    head, _, tail = routing_key.rpartition(".")
    if not head.endswith(NOTIFICATION_SEGMENT):
        return None
    try:
        return RecipeEvent(tail)
    except ValueError:
        return None


def _match(pattern: tuple[str, ...], words: tuple[str, ...]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    return (head == "*" or head == words[0]) and _match(rest, words[1:])


@lru_cache(maxsize=1024)
def topic_matches(pattern: str, routing_key: str) -> bool:
    """Return True if *routing_key* matches the binding *pattern*."""
    return _match(tuple(pattern.split(".")), tuple(routing_key.split(".")))
