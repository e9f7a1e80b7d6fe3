"""Notification bus: topic-routed brokers with durable queues."""

from recipes_api.bus.base import BaseBroker, DeadLetter
from recipes_api.bus.bus import create_broker
from recipes_api.bus.envelope import Delivery, Envelope
from recipes_api.bus.memory_broker import MemoryBroker
from recipes_api.bus.redis_streams import RedisStreamsBroker
from recipes_api.bus.routing import recipe_routing_key, topic_matches
from recipes_api.bus.subscription import Subscription

__all__ = [
    "BaseBroker",
    "DeadLetter",
    "Delivery",
    "Envelope",
    "MemoryBroker",
    "RedisStreamsBroker",
    "Subscription",
    "create_broker",
    "recipe_routing_key",
    "topic_matches",
]
