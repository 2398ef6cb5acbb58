"""Daemon manager: consumers + periodic jobs lifecycle.

Encapsulates the EventBus, StateStore, CatalogStore, BlobStore, GitHub
client, both pipeline consumers and the scheduled jobs (discovery, tier
recompute, archive). Used by ``catalog worker``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from skill_catalog.blobs import FileBlobStore
from skill_catalog.classifiers import build_cascade
from skill_catalog.events import EventBus
from skill_catalog.github import GitHubClient
from skill_catalog.lifecycle.archive import ArchiveEngine
from skill_catalog.lifecycle.discovery import DiscoveryRunner
from skill_catalog.lifecycle.tiers import TierEngine
from skill_catalog.pipeline.classification import ClassificationHandler
from skill_catalog.pipeline.consumers import ClassificationConsumer, IndexingConsumer, WorkConsumer
from skill_catalog.pipeline.indexing import IndexingHandler
from skill_catalog.state import StateStore
from skill_catalog.store import CatalogStore

if TYPE_CHECKING:
    from skill_catalog.settings import CatalogSettings


@dataclass
class DaemonManager:
    """Manages consumer + scheduler lifecycle."""

    _bus: EventBus | None = field(default=None, repr=False)
    _state: StateStore | None = field(default=None, repr=False)
    _store: CatalogStore | None = field(default=None, repr=False)
    _github: GitHubClient | None = field(default=None, repr=False)
    _consumers: list[WorkConsumer] = field(default_factory=list, repr=False)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)
    _stopping: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    async def start(self, settings: CatalogSettings, *, include_jobs: bool = True) -> bool:
        """Connect everything and spawn the background tasks.

        Returns ``False`` if Redis or the database is unreachable; nothing
        is left open in that case.

        Parameters
        ----------
        settings:
            Full catalog settings.
        include_jobs:
            If ``False``, only the two consumers run (no discovery, tier or
            archive schedule). Useful for scaling out extra workers.
        """
        bus = EventBus(settings.redis)
        try:
            await bus.ping()
        except Exception:
            logger.exception("Redis unavailable at {}:{}", settings.redis.host, settings.redis.port)
            await bus.close()
            return False

        store = CatalogStore(settings.database)
        try:
            await store.ping()
            await store.ensure_schema()
        except Exception:
            logger.exception("Database unavailable at {}", settings.database.url)
            await store.close()
            await bus.close()
            return False

        self._bus = bus
        self._store = store
        self._state = state = StateStore(settings.redis)
        self._github = github = GitHubClient(settings.github)
        blobs = FileBlobStore(settings.blobs.root)

        indexing = IndexingHandler(store, blobs, github, bus, settings)
        classification = ClassificationHandler(store, blobs, build_cascade(settings.classifier))
        self._consumers = [
            IndexingConsumer(bus, indexing, settings.queue),
            ClassificationConsumer(bus, classification, settings.queue),
        ]

        loop = asyncio.get_running_loop()
        for consumer in self._consumers:
            self._tasks.append(loop.create_task(self._run_consumer(consumer)))

        if include_jobs:
            archive = ArchiveEngine(store, blobs, settings.archive, settings.tiers, state=state)
            tiers = TierEngine(store, settings.tiers, archive=archive, state=state)
            discovery = DiscoveryRunner(github, bus, state, settings.discovery, settings.queue)
            jobs: list[tuple[str, float, Callable[[], Awaitable[Any]]]] = [
                ("discovery", settings.scheduler.discovery_interval_s, discovery.tick),
                ("tiers", settings.scheduler.tiers_interval_s, tiers.run),
                ("archive", settings.scheduler.archive_interval_s, archive.run),
            ]
            for name, interval_s, job in jobs:
                if interval_s <= 0:
                    logger.info("Job {} disabled", name)
                    continue
                self._tasks.append(loop.create_task(self._run_periodic(name, interval_s, job)))

        logger.info("Daemon started: {} consumers, {} tasks", len(self._consumers), len(self._tasks))
        return True

    async def wait(self) -> None:
        """Block until all background tasks finish (or are cancelled)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Graceful shutdown: stop consumers and jobs, close connections."""
        self._stopping.set()
        for consumer in self._consumers:
            consumer.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._github is not None:
            await self._github.close()
        if self._state is not None:
            await self._state.close()
        if self._store is not None:
            await self._store.close()
        if self._bus is not None:
            await self._bus.close()

        logger.debug("DaemonManager stopped")

    async def _run_periodic(self, name: str, interval_s: float, job: Callable[[], Awaitable[Any]]) -> None:
        """Run *job* every *interval_s* seconds. A failed run is logged; the schedule continues."""
        while not self._stopping.is_set():
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled job {} failed", name)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval_s)
            except TimeoutError:
                continue

    @staticmethod
    async def _run_consumer(consumer: WorkConsumer) -> None:
        """Run a consumer, catching exceptions so one failure doesn't crash the rest."""
        try:
            await consumer.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Consumer {} crashed", consumer.consumer_name)
