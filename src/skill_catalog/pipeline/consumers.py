"""Queue consumers for the ingestion pipeline.

Two stages form a linear pipeline:

    CheckSkill → Indexing (metadata + manifest blob) → Classify → Classification

Each consumer pulls a batch (stale pending entries first, then new ones),
deduplicates it, hands every item to a pure handler and translates the
handler's ``Processed | Failed`` outcome into ack / leave-pending.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import TYPE_CHECKING

from loguru import logger

from skill_catalog.events import (
    CheckSkill,
    Classify,
    Delivery,
    EventBus,
    MalformedWorkItemError,
    Topic,
    WorkItem,
    decode_item,
)
from skill_catalog.pipeline.outcomes import Failed, Outcome, Processed
from skill_catalog.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from skill_catalog.pipeline.classification import ClassificationHandler
    from skill_catalog.pipeline.indexing import IndexingHandler
    from skill_catalog.settings import QueueSettings

_tracer = get_tracer(__name__)


# ---------------------------------------------------------------------------
# Abstract work consumer
# ---------------------------------------------------------------------------


class WorkConsumer(ABC):
    """Base class for pipeline consumers.

    Implements the pull loop: XAUTOCLAIM stale → XREADGROUP new → dedup →
    handle → ACK. Subclasses implement ``handle`` for stage-specific work.
    """

    stage: str = "work"

    def __init__(
        self,
        bus: EventBus,
        input_topic: Topic,
        group: str,
        consumer_name: str,
        queue: QueueSettings,
    ) -> None:
        self.bus = bus
        self.input_topic = input_topic
        self.group = group
        self.consumer_name = consumer_name
        self.queue = queue
        self._stop = False

    @abstractmethod
    async def handle(self, item: WorkItem) -> Outcome:
        """Process one item. Must not raise: failures are returned as ``Failed``."""

    def dedup_key(self, item: WorkItem) -> str:
        """Return a dedup key for an item. Override for custom logic."""
        return str(id(item))

    def stop(self) -> None:
        """Signal the consumer to stop after the current iteration."""
        self._stop = True

    async def _pull(self) -> list[Delivery]:
        stale = await self.bus.claim_stale(
            self.input_topic,
            self.group,
            self.consumer_name,
            min_idle_ms=self.queue.redelivery_idle_ms,
            count=self.queue.batch_size,
        )
        fresh = await self.bus.read_batch(
            self.input_topic,
            self.group,
            self.consumer_name,
            count=self.queue.batch_size,
            block_ms=None if stale else self.queue.block_ms,
        )
        return stale + fresh

    async def process(self, deliveries: list[Delivery]) -> dict[str, int]:
        """Handle one pulled batch. Returns outcome counts."""
        counts = {"processed": 0, "retry": 0, "dropped": 0}
        batch: dict[str, WorkItem] = {}
        msg_ids: dict[str, list[bytes]] = defaultdict(list)  # every duplicate gets acked with its key
        to_drop: list[bytes] = []

        for delivery in deliveries:
            if delivery.deliveries > self.queue.max_deliveries:
                logger.error(
                    "{} dropping message {} after {} deliveries",
                    self.consumer_name,
                    delivery.msg_id,
                    delivery.deliveries,
                )
                to_drop.append(delivery.msg_id)
                continue
            try:
                item = decode_item(self.input_topic, delivery.fields)
            except MalformedWorkItemError as exc:
                logger.warning("{} dropping malformed message {}: {}", self.consumer_name, delivery.msg_id, exc)
                to_drop.append(delivery.msg_id)
                continue
            key = self.dedup_key(item)
            batch[key] = item  # latest wins
            msg_ids[key].append(delivery.msg_id)

        if to_drop:
            await self.bus.ack(self.input_topic, self.group, *to_drop)
            counts["dropped"] += len(to_drop)

        metrics = get_metrics()
        for key, item in batch.items():
            outcome = await self.handle(item)
            match outcome:
                case Processed(note=note):
                    await self.bus.ack(self.input_topic, self.group, *msg_ids[key])
                    counts["processed"] += 1
                    if note:
                        logger.debug("{} {}: {}", self.consumer_name, key, note)
                case Failed(reason=reason, retryable=True):
                    counts["retry"] += 1
                    logger.warning("{} {} failed, will retry: {}", self.consumer_name, key, reason)
                case Failed(reason=reason):
                    await self.bus.ack(self.input_topic, self.group, *msg_ids[key])
                    counts["dropped"] += 1
                    logger.warning("{} {} failed permanently: {}", self.consumer_name, key, reason)
            metrics.work_items_total.add(1, {"stage": self.stage, "outcome": type(outcome).__name__.lower()})

        return counts

    async def run_once(self) -> dict[str, int]:
        """Pull and handle a single batch."""
        deliveries = await self._pull()
        if not deliveries:
            return {"processed": 0, "retry": 0, "dropped": 0}
        batch_id = uuid.uuid4().hex[:12]
        with _tracer.start_as_current_span(
            f"{self.stage}.process_batch", attributes={"batch_id": batch_id, "size": len(deliveries)}
        ):
            logger.debug("{} batch {} ({} messages)", self.consumer_name, batch_id, len(deliveries))
            return await self.process(deliveries)

    async def run(self) -> None:
        """Main consumer loop; runs until ``stop()`` is called."""
        await self.bus.ensure_group(self.input_topic, self.group)
        logger.info("{} started (group={}, topic={})", self.consumer_name, self.group, self.input_topic.value)

        while not self._stop:
            try:
                await self.run_once()
            except Exception:
                # Unacked messages stay in the PEL and are re-claimed later
                logger.exception("{} iteration failed", self.consumer_name)

        logger.info("{} stopped", self.consumer_name)


# ---------------------------------------------------------------------------
# Stage consumers
# ---------------------------------------------------------------------------


class IndexingConsumer(WorkConsumer):
    """Consumes ``check-skill``: fetch, upsert, write manifest, emit ``classify``."""

    stage = "indexing"

    def __init__(self, bus: EventBus, handler: IndexingHandler, queue: QueueSettings, *, name: str = "indexing-0"):
        super().__init__(bus, Topic.CHECK_SKILL, "indexing", name, queue)
        self.handler = handler

    def dedup_key(self, item: WorkItem) -> str:
        if isinstance(item, CheckSkill):
            return f"{item.repo_owner}/{item.repo_name}:{item.skill_path}".lower()
        return super().dedup_key(item)

    async def handle(self, item: WorkItem) -> Outcome:
        if not isinstance(item, CheckSkill):
            return Failed(f"unexpected item {type(item).__name__}", retryable=False)
        return await self.handler.handle(item)


class ClassificationConsumer(WorkConsumer):
    """Consumes ``classify``: run the classifier cascade and replace categories."""

    stage = "classification"

    def __init__(
        self, bus: EventBus, handler: ClassificationHandler, queue: QueueSettings, *, name: str = "classification-0"
    ):
        super().__init__(bus, Topic.CLASSIFY, "classification", name, queue)
        self.handler = handler

    def dedup_key(self, item: WorkItem) -> str:
        if isinstance(item, Classify):
            return item.skill_id
        return super().dedup_key(item)

    async def handle(self, item: WorkItem) -> Outcome:
        if not isinstance(item, Classify):
            return Failed(f"unexpected item {type(item).__name__}", retryable=False)
        return await self.handler.handle(item)
