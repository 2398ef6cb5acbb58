"""Event discovery: poll the public event feed and enqueue ``CheckSkill`` work.

``process_tick`` is pure: the cursor goes in, the new cursor comes out,
and the runner owns all persistence. The cursor is written before any work
is enqueued, so a crash mid-tick re-reads at most one page and the
per-event markers absorb the overlap.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from skill_catalog.events import CheckSkill, Topic, WorkSource
from skill_catalog.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from skill_catalog.github import GitHubClient
    from skill_catalog.pipeline.indexing import Publisher
    from skill_catalog.settings import DiscoverySettings, QueueSettings
    from skill_catalog.state import StateStore

_tracer = get_tracer(__name__)

CURSOR_KEY = "discovery:last-event-id"
_MARKER_PREFIX = "discovery:processed:"


def marker_key(event_id: str) -> str:
    return f"{_MARKER_PREFIX}{event_id}"


@dataclass(frozen=True)
class TickResult:
    new_cursor: str | None
    work_items: list[CheckSkill] = field(default_factory=list)
    processed_ids: list[str] = field(default_factory=list)  # every event considered this tick
    skipped: int = 0


def _split_repo(full_name: Any) -> tuple[str, str] | None:
    if not isinstance(full_name, str):
        return None
    owner, sep, name = full_name.partition("/")
    if not sep or not owner or not name or "/" in name:
        return None
    return owner, name


def process_tick(
    cursor: str | None,
    events: Sequence[dict[str, Any]],
    already_processed: Collection[str],
    event_types: Collection[str] = ("PushEvent",),
) -> TickResult:
    """Turn one page of events into work items.

    Events are walked newest-first and the walk stops at the previous
    cursor. Only *event_types* produce work, but every event walked is
    reported in ``processed_ids`` so it is never reconsidered.
    """
    ordered = sorted(events, key=lambda e: e.get("created_at") or "", reverse=True)
    if not ordered:
        return TickResult(new_cursor=cursor)

    new_cursor = str(ordered[0]["id"])
    work: list[CheckSkill] = []
    processed: list[str] = []
    skipped = 0

    for event in ordered:
        event_id = str(event["id"])
        if event_id == cursor:
            break
        if event_id in already_processed:
            skipped += 1
            continue
        processed.append(event_id)
        if event.get("type") not in event_types:
            continue
        repo = _split_repo((event.get("repo") or {}).get("name"))
        if repo is None:
            continue
        work.append(
            CheckSkill(repo_owner=repo[0], repo_name=repo[1], event_id=event_id, source=WorkSource.EVENTS.value)
        )

    return TickResult(new_cursor=new_cursor, work_items=work, processed_ids=processed, skipped=skipped)


class DiscoveryRunner:
    """Runs discovery ticks against GitHub, Redis state and the work queue."""

    def __init__(
        self,
        github: GitHubClient,
        bus: Publisher,
        state: StateStore,
        settings: DiscoverySettings,
        queue: QueueSettings,
    ) -> None:
        self.github = github
        self.bus = bus
        self.state = state
        self.settings = settings
        self.queue = queue

    async def tick(self) -> dict[str, int]:
        """One bounded tick. Returns ``{"processed": n, "queued": m}``; never raises on fetch errors."""
        started = time.monotonic()
        try:
            summary = await asyncio.wait_for(self._tick(), timeout=self.settings.tick_timeout_s)
        except TimeoutError:
            logger.warning("Discovery tick exceeded {}s, abandoned", self.settings.tick_timeout_s)
            summary = {"processed": 0, "queued": 0}
        get_metrics().job_duration.record(time.monotonic() - started, {"job": "discovery"})
        return summary

    async def _tick(self) -> dict[str, int]:
        with _tracer.start_as_current_span("discovery.tick"):
            try:
                events = await self.github.list_public_events(self.settings.events_per_page)
            except Exception:
                logger.exception("Fetching public events failed, retrying next tick")
                return {"processed": 0, "queued": 0}

            events = [e for e in events if e.get("id") is not None]
            cursor = await self.state.get(CURSOR_KEY)
            ids = [str(e["id"]) for e in events]
            seen_markers = await self.state.exists_many([marker_key(i) for i in ids])
            already = {k.removeprefix(_MARKER_PREFIX) for k in seen_markers}

            result = process_tick(cursor, events, already, self.settings.event_types)
            if result.new_cursor is not None and result.new_cursor != cursor:
                await self.state.set(CURSOR_KEY, result.new_cursor, ttl_s=self.settings.marker_ttl_s)

            for item in result.work_items:
                await self.bus.publish(Topic.CHECK_SKILL, item, maxlen=self.queue.maxlen)
            for event_id in result.processed_ids:
                await self.state.set(marker_key(event_id), "1", ttl_s=self.settings.marker_ttl_s)

        logger.info(
            "Discovery tick: {} events processed, {} queued, {} already seen",
            len(result.processed_ids),
            len(result.work_items),
            result.skipped,
        )
        return {"processed": len(result.processed_ids), "queued": len(result.work_items)}
