"""RedisStreamsBroker unit tests (no Redis required)."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as aioredis

from recipes_api.bus.envelope import Envelope
from recipes_api.bus.redis_streams import RedisStreamsBroker
from recipes_api.bus.routing import recipe_routing_key
from recipes_api.core.config import DEFAULT_BINDING
from recipes_api.core.enums import RecipeEvent

SNOOP = "recipes_snoop"
SAVED = recipe_routing_key(RecipeEvent.SAVED)
STREAM = "test_bus:queue:recipes_snoop"


def _fake_redis(batches=None):
    """Redis client double: async commands, pipeline and a scripted XREADGROUP."""
    redis = MagicMock()
    for name in (
        "xgroup_create", "hset", "xadd", "xack", "xdel", "xtrim",
        "delete", "hdel", "xgroup_delconsumer", "aclose", "xrange",
    ):
        setattr(redis, name, AsyncMock())
    redis.xpending_range = AsyncMock(return_value=[])

    pending = list(batches or [])

    async def xreadgroup(**kwargs):
        if pending:
            return pending.pop(0)
        await asyncio.sleep(0.01)
        return []

    redis.xreadgroup = AsyncMock(side_effect=xreadgroup)

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    pipe_cm = MagicMock()
    pipe_cm.__aenter__ = AsyncMock(return_value=pipe)
    pipe_cm.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=pipe_cm)
    redis.pipe = pipe
    return redis


def _entry(msg_id: str, content: dict, **envelope_fields) -> tuple:
    envelope = Envelope(routing_key=SAVED, queue=SNOOP, **envelope_fields)
    return msg_id, RedisStreamsBroker._serialize(envelope, content)


async def _started(redis) -> RedisStreamsBroker:
    broker = RedisStreamsBroker(
        queues={SNOOP: [DEFAULT_BINDING]}, prefix="test_bus:", redis=redis,
    )
    await broker.start()
    return broker


class TestRedisStreamsBrokerTopology:
    async def test_start_creates_stream_group_and_binding(self):
        redis = _fake_redis()
        broker = await _started(redis)

        redis.xgroup_create.assert_awaited_once_with(STREAM, SNOOP, id="0", mkstream=True)
        redis.hset.assert_awaited_once_with(
            "test_bus:bindings", SNOOP, json.dumps([DEFAULT_BINDING])
        )
        assert broker.queues() == {SNOOP: [DEFAULT_BINDING]}

    async def test_existing_group_is_reused(self):
        redis = _fake_redis()
        redis.xgroup_create.side_effect = aioredis.ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )
        broker = await _started(redis)
        assert broker.running

    async def test_other_response_errors_propagate(self):
        redis = _fake_redis()
        redis.xgroup_create.side_effect = aioredis.ResponseError("WRONGTYPE")
        with pytest.raises(aioredis.ResponseError):
            await _started(redis)

    async def test_stop_keeps_injected_client_open(self):
        redis = _fake_redis()
        broker = await _started(redis)
        await broker.stop()
        redis.aclose.assert_not_awaited()

    async def test_stream_key(self):
        broker = RedisStreamsBroker(prefix="x:")
        assert broker.stream_key("q") == "x:queue:q"


class TestRedisStreamsBrokerPublish:
    async def test_publish_appends_to_bound_stream(self):
        redis = _fake_redis()
        broker = await _started(redis)

        await broker.publish(SAVED, {"id": 1})

        redis.xadd.assert_awaited_once()
        stream, fields = redis.xadd.await_args.args
        assert stream == STREAM
        assert json.loads(fields["content"]) == {"id": 1}
        assert json.loads(fields["envelope"])["routing_key"] == SAVED

    async def test_unbound_key_not_appended(self):
        redis = _fake_redis()
        broker = await _started(redis)

        await broker.publish("recipes_api.v1.metrics.cpu", {"load": 1})

        redis.xadd.assert_not_awaited()
        assert len(broker.get_history()) == 1


class TestRedisStreamsBrokerConsume:
    async def test_delivery_then_ack(self):
        redis = _fake_redis([[(STREAM, [_entry("1-0", {"id": 1})])]])
        broker = await _started(redis)

        sub = await broker.subscribe(SNOOP)
        delivery = await sub.get(timeout=1)
        assert delivery.content == {"id": 1}
        assert delivery.tag == "1-0"

        await delivery.ack()
        redis.pipe.xack.assert_called_once_with(STREAM, SNOOP, "1-0")
        redis.pipe.xdel.assert_called_once_with(STREAM, "1-0")
        await sub.cancel()

    async def test_nack_reappends_redelivered(self):
        redis = _fake_redis([[(STREAM, [_entry("1-0", {"id": 1})])]])
        broker = await _started(redis)

        sub = await broker.subscribe(SNOOP)
        delivery = await sub.get(timeout=1)
        await delivery.nack(requeue=True)

        stream, fields = redis.pipe.xadd.call_args.args
        assert stream == STREAM
        envelope = Envelope.model_validate_json(fields["envelope"])
        assert envelope.redelivered is True
        assert envelope.delivery_count == 2
        redis.pipe.xack.assert_called_once_with(STREAM, SNOOP, "1-0")
        await sub.cancel()

    async def test_cancel_requeues_unsettled(self):
        redis = _fake_redis([[(STREAM, [_entry("1-0", {"id": 1})])]])
        broker = await _started(redis)

        sub = await broker.subscribe(SNOOP)
        await sub.get(timeout=1)
        await sub.cancel()

        redis.pipe.xadd.assert_called_once()
        redis.xgroup_delconsumer.assert_awaited_once_with(STREAM, SNOOP, sub.consumer_tag)

    async def test_cancel_reclaims_entries_read_but_not_delivered(self):
        redis = _fake_redis()
        msg_id, fields = _entry("2-0", {"id": 2})
        redis.xpending_range.side_effect = [[{"message_id": msg_id}], []]
        redis.xrange.return_value = [(msg_id, fields)]
        broker = await _started(redis)

        sub = await broker.subscribe(SNOOP)
        await sub.cancel()

        kwargs = redis.xpending_range.await_args_list[0].kwargs
        assert kwargs["consumername"] == sub.consumer_tag
        stream, requeued = redis.pipe.xadd.call_args.args
        assert stream == STREAM
        assert json.loads(requeued["content"]) == {"id": 2}
        assert Envelope.model_validate_json(requeued["envelope"]).redelivered is True
        redis.pipe.xack.assert_called_once_with(STREAM, SNOOP, msg_id)
        redis.xgroup_delconsumer.assert_awaited_once()

    async def test_cancel_acks_pending_entries_already_trimmed(self):
        redis = _fake_redis()
        redis.xpending_range.side_effect = [[{"message_id": "3-0"}], []]
        redis.xrange.return_value = []
        broker = await _started(redis)

        sub = await broker.subscribe(SNOOP)
        await sub.cancel()

        redis.xack.assert_awaited_once_with(STREAM, SNOOP, "3-0")
        redis.pipe.xadd.assert_not_called()

    async def test_malformed_entry_is_acked_and_dropped(self):
        redis = _fake_redis([[(STREAM, [("1-0", {"garbage": "x"})])]])
        broker = await _started(redis)

        sub = await broker.subscribe(SNOOP)
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.1)
        redis.xack.assert_awaited_with(STREAM, SNOOP, "1-0")
        await sub.cancel()


class TestRedisStreamsBrokerResets:
    async def test_purge_trims_streams(self):
        redis = _fake_redis()
        broker = await _started(redis)

        await broker.purge()

        redis.xtrim.assert_awaited_once_with(STREAM, maxlen=0, approximate=False)
        assert broker.queues() == {SNOOP: [DEFAULT_BINDING]}

    async def test_nuke_deletes_streams_and_bindings(self):
        redis = _fake_redis()
        broker = await _started(redis)

        await broker.nuke()

        redis.delete.assert_any_await(STREAM)
        redis.delete.assert_any_await("test_bus:bindings")
        redis.hdel.assert_awaited_once_with("test_bus:bindings", SNOOP)
        assert broker.queues() == {}
        assert not broker.running


class TestDeserialize:
    def test_missing_fields(self):
        assert RedisStreamsBroker._deserialize({"content": "{}"}) is None

    def test_bad_json(self):
        envelope = Envelope(routing_key=SAVED).model_dump_json()
        assert RedisStreamsBroker._deserialize({"envelope": envelope, "content": "{"}) is None
