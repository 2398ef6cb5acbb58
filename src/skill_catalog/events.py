"""Work item types and the Redis Streams work queue for the pipeline."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis

from skill_catalog.telemetry import get_tracer

if TYPE_CHECKING:
    from skill_catalog.settings import RedisSettings

_tracer = get_tracer(__name__)


# ---------------------------------------------------------------------------
# Work items (frozen dataclasses, identifying fields only)
# ---------------------------------------------------------------------------


class WorkSource(StrEnum):
    EVENTS = "events"
    SUBMIT = "submit"
    NESTED = "nested"


@dataclass(frozen=True)
class CheckSkill:
    """A repository (optionally a sub-directory of it) may contain a skill manifest."""

    repo_owner: str
    repo_name: str
    skill_path: str = ""  # "" = repository root
    event_id: str = ""
    source: str = WorkSource.EVENTS.value


@dataclass(frozen=True)
class Classify:
    """A skill's manifest was (re)written and needs categories."""

    skill_id: str
    repo_owner: str
    repo_name: str
    blob_path: str


WorkItem = CheckSkill | Classify


class Topic(StrEnum):
    """Redis Stream keys for the pipeline."""

    CHECK_SKILL = "check-skill"
    CLASSIFY = "classify"


_TOPIC_ITEM_MAP: dict[Topic, type[WorkItem]] = {
    Topic.CHECK_SKILL: CheckSkill,
    Topic.CLASSIFY: Classify,
}


class MalformedWorkItemError(ValueError):
    """A stream entry could not be decoded into its topic's work item."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def encode_item(item: WorkItem) -> dict[bytes, bytes]:
    """Serialize a work item for XADD. Returns ``{b"data": <json_bytes>}``."""
    return {b"data": json.dumps(asdict(item)).encode()}


def decode_item(topic: Topic, data: dict[bytes, bytes]) -> WorkItem:
    """Deserialize a Redis Stream entry back into a typed work item."""
    try:
        raw = json.loads(data[b"data"])
        return _TOPIC_ITEM_MAP[topic](**raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedWorkItemError(f"Cannot decode {topic.value} entry: {exc}") from exc


# ---------------------------------------------------------------------------
# Delivery envelope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Delivery:
    """One stream entry handed to a consumer, with its delivery count."""

    msg_id: bytes
    fields: dict[bytes, bytes]
    deliveries: int = 1
    redelivered: bool = field(default=False)


# ---------------------------------------------------------------------------
# EventBus: thin wrapper over redis.asyncio
# ---------------------------------------------------------------------------


class EventBus:
    """Thin async wrapper over Redis Streams for pipeline work items.

    Delivery is at-least-once: an entry stays in the consumer group's pending
    list until acked, and entries idle longer than the redelivery threshold
    are re-claimed by ``claim_stale``.
    """

    def __init__(self, settings: RedisSettings) -> None:
        self._redis = aioredis.from_url(settings.url, decode_responses=False)
        self._prefix = settings.stream_prefix

    def _stream_key(self, topic: Topic) -> str:
        return f"{self._prefix}:{topic.value}"

    async def ping(self) -> bool:
        """Health check; returns True if Redis is reachable."""
        return await self._redis.ping()

    async def ensure_group(self, topic: Topic, group: str) -> None:
        """Idempotently create a consumer group."""
        try:
            await self._redis.xgroup_create(self._stream_key(topic), group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def publish(self, topic: Topic, item: WorkItem, *, maxlen: int = 10_000) -> bytes:
        """Send a work item. Returns the message ID."""
        with _tracer.start_as_current_span("eventbus.publish", attributes={"topic": topic.value}):
            return await self._redis.xadd(self._stream_key(topic), encode_item(item), maxlen=maxlen, approximate=True)

    async def read_batch(
        self,
        topic: Topic,
        group: str,
        consumer: str,
        *,
        count: int = 10,
        block_ms: int | None = 2000,
    ) -> list[Delivery]:
        """Pull never-delivered entries via XREADGROUP (empty list on timeout).

        ``block_ms=None`` returns immediately; note Redis treats ``0`` as "block forever".
        """
        with _tracer.start_as_current_span(
            "eventbus.read_batch", attributes={"topic": topic.value, "group": group, "consumer": consumer}
        ):
            result: Any = await self._redis.xreadgroup(
                group,
                consumer,
                {self._stream_key(topic): ">"},
                count=count,
                block=block_ms,
            )
            if not result:
                return []
            # result shape: [[stream_key, [(msg_id, fields), ...]]]
            return [Delivery(msg_id, fields) for msg_id, fields in result[0][1]]

    async def claim_stale(
        self,
        topic: Topic,
        group: str,
        consumer: str,
        *,
        min_idle_ms: int,
        count: int = 10,
    ) -> list[Delivery]:
        """Re-claim entries left pending (unacked) longer than *min_idle_ms*."""
        key = self._stream_key(topic)
        result: Any = await self._redis.xautoclaim(key, group, consumer, min_idle_ms, start_id="0-0", count=count)
        # Redis >= 7 replies [next_id, entries, deleted_ids]; entries of trimmed messages come back empty
        entries = [(mid, fields) for mid, fields in result[1] if fields]
        if not entries:
            return []

        deliveries: list[Delivery] = []
        for msg_id, fields in entries:
            info = await self._redis.xpending_range(key, group, min=msg_id, max=msg_id, count=1)
            times = int(info[0]["times_delivered"]) if info else 1
            deliveries.append(Delivery(msg_id, fields, deliveries=times, redelivered=True))
        return deliveries

    async def ack(self, topic: Topic, group: str, *msg_ids: bytes) -> int:
        """Acknowledge entries after processing (or after deciding to drop them)."""
        if not msg_ids:
            return 0
        return await self._redis.xack(self._stream_key(topic), group, *msg_ids)

    async def stream_group_info(self, topic: Topic, group: str) -> dict[str, int]:
        """Return ``{"pending": N, "lag": N}`` for a consumer group (zeros if absent)."""
        try:
            groups = await self._redis.xinfo_groups(self._stream_key(topic))
        except aioredis.ResponseError:
            return {"pending": 0, "lag": 0}

        for g in groups:
            name = g.get(b"name", g.get("name", b""))
            if isinstance(name, bytes):
                name = name.decode()
            if name == group:
                pending = g.get(b"pending", g.get("pending", 0))
                lag = g.get(b"lag", g.get("lag", 0))
                return {"pending": int(pending), "lag": int(lag or 0)}

        return {"pending": 0, "lag": 0}

    async def close(self) -> None:
        """Close the connection pool."""
        await self._redis.aclose()
