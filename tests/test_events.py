"""Tests for work item serialization and the Redis Streams event bus.

The ``EventBus`` tests require a running Redis/Valkey instance
(``docker compose up -d redis``) and are skipped otherwise.
"""

from __future__ import annotations

import json

import pytest
import redis.asyncio as aioredis

from skill_catalog.events import (
    CheckSkill,
    Classify,
    EventBus,
    MalformedWorkItemError,
    Topic,
    decode_item,
    encode_item,
)
from skill_catalog.settings import RedisSettings

# ---------------------------------------------------------------------------
# Serialization (no Redis)
# ---------------------------------------------------------------------------


def test_encode_decode_check_skill():
    item = CheckSkill(repo_owner="acme", repo_name="skills", skill_path="tools/pdf", source="submit")
    encoded = encode_item(item)
    assert set(encoded) == {b"data"}
    assert decode_item(Topic.CHECK_SKILL, encoded) == item


def test_check_skill_defaults():
    raw = {b"data": json.dumps({"repo_owner": "a", "repo_name": "b"}).encode()}
    item = decode_item(Topic.CHECK_SKILL, raw)
    assert (item.skill_path, item.event_id, item.source) == ("", "", "events")


@pytest.mark.parametrize(
    "fields",
    [
        {},
        {b"data": b"not json"},
        {b"data": b"[1, 2]"},
        {b"data": json.dumps({"repo_owner": "a"}).encode()},
        {b"data": json.dumps({"skill_id": "s", "repo_owner": "a", "repo_name": "b", "blob_path": "k"}).encode()},
    ],
)
def test_malformed_entries_rejected(fields):
    with pytest.raises(MalformedWorkItemError):
        decode_item(Topic.CHECK_SKILL, fields)


# ---------------------------------------------------------------------------
# EventBus (integration)
# ---------------------------------------------------------------------------


@pytest.fixture
async def redis_settings() -> RedisSettings:
    """Default Redis settings (localhost:6379) under a test-only prefix."""
    return RedisSettings(stream_prefix="catalog-test")


@pytest.fixture
async def event_bus(redis_settings: RedisSettings):
    """EventBus connected to Redis, skip if unavailable."""
    b = EventBus(redis_settings)
    try:
        await b.ping()
    except (aioredis.ConnectionError, OSError):
        await b.close()
        pytest.skip("Redis/Valkey not available")
    yield b
    await b.close()


@pytest.fixture
async def _clean_streams(event_bus: EventBus):
    """Delete test streams before and after each test to avoid state leakage."""
    for topic in Topic:
        await event_bus._redis.delete(f"{event_bus._prefix}:{topic.value}")
    yield
    for topic in Topic:
        await event_bus._redis.delete(f"{event_bus._prefix}:{topic.value}")


@pytest.mark.integration
@pytest.mark.usefixtures("_clean_streams")
class TestEventBus:
    async def test_publish_read_ack(self, event_bus: EventBus):
        await event_bus.ensure_group(Topic.CLASSIFY, "classification")
        await event_bus.ensure_group(Topic.CLASSIFY, "classification")  # idempotent
        item = Classify(skill_id="s1", repo_owner="a", repo_name="b", blob_path="skills/a/b/SKILL.md")
        msg_id = await event_bus.publish(Topic.CLASSIFY, item)

        deliveries = await event_bus.read_batch(Topic.CLASSIFY, "classification", "c-0", block_ms=None)
        assert [d.msg_id for d in deliveries] == [msg_id]
        assert decode_item(Topic.CLASSIFY, deliveries[0].fields) == item
        assert deliveries[0].deliveries == 1

        assert (await event_bus.stream_group_info(Topic.CLASSIFY, "classification"))["pending"] == 1
        assert await event_bus.ack(Topic.CLASSIFY, "classification", msg_id) == 1
        assert (await event_bus.stream_group_info(Topic.CLASSIFY, "classification"))["pending"] == 0

    async def test_unacked_entries_are_reclaimed_with_count(self, event_bus: EventBus):
        await event_bus.ensure_group(Topic.CHECK_SKILL, "indexing")
        await event_bus.publish(Topic.CHECK_SKILL, CheckSkill(repo_owner="a", repo_name="b"))
        first = await event_bus.read_batch(Topic.CHECK_SKILL, "indexing", "c-0", block_ms=None)
        assert len(first) == 1

        # Nothing new for a second reader: the entry is pending, not lost
        assert await event_bus.read_batch(Topic.CHECK_SKILL, "indexing", "c-1", block_ms=None) == []

        claimed = await event_bus.claim_stale(Topic.CHECK_SKILL, "indexing", "c-1", min_idle_ms=0)
        assert [d.msg_id for d in claimed] == [first[0].msg_id]
        assert claimed[0].redelivered is True
        assert claimed[0].deliveries == 2

    async def test_group_info_for_missing_stream(self, event_bus: EventBus):
        assert await event_bus.stream_group_info(Topic.CLASSIFY, "nobody") == {"pending": 0, "lag": 0}
