"""Lifecycle tier engine.

``compute_tier`` and ``next_update_at`` are pure; ``TierEngine`` runs the
scheduled recompute over the whole catalog in keyset pages:

1. decay expired 7d/30d access counters,
2. page through public live skills by id,
3. write changed tiers per page in one transaction,
4. hand transitions into / out of ``archived`` to the archive engine,
5. record a run summary.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from skill_catalog.schema import Tier
from skill_catalog.store import utcnow
from skill_catalog.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from skill_catalog.lifecycle.archive import ArchiveEngine
    from skill_catalog.settings import TierSettings
    from skill_catalog.state import StateStore
    from skill_catalog.store import CatalogStore

_tracer = get_tracer(__name__)


# ---------------------------------------------------------------------------
# Policy + pure tier rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierRule:
    tier: Tier
    min_stars: int
    access_window: timedelta
    update_interval: timedelta


@dataclass(frozen=True)
class TierPolicy:
    """Thresholds, windows and re-index intervals, hottest rule first."""

    rules: tuple[TierRule, ...]
    archive_max_stars: int
    archive_access_staleness: timedelta
    archive_commit_staleness: timedelta

    @classmethod
    def from_settings(cls, s: TierSettings) -> TierPolicy:
        return cls(
            rules=(
                TierRule(
                    Tier.HOT,
                    s.hot_min_stars,
                    timedelta(seconds=s.hot_access_window_s),
                    timedelta(seconds=s.hot_update_interval_s),
                ),
                TierRule(
                    Tier.WARM,
                    s.warm_min_stars,
                    timedelta(seconds=s.warm_access_window_s),
                    timedelta(seconds=s.warm_update_interval_s),
                ),
                TierRule(
                    Tier.COOL,
                    s.cool_min_stars,
                    timedelta(seconds=s.cool_access_window_s),
                    timedelta(seconds=s.cool_update_interval_s),
                ),
            ),
            archive_max_stars=s.archive_max_stars,
            archive_access_staleness=timedelta(seconds=s.archive_access_staleness_s),
            archive_commit_staleness=timedelta(seconds=s.archive_commit_staleness_s),
        )


def _older_than(ts: datetime | None, now: datetime, age: timedelta) -> bool:
    """Unknown timestamps count as old."""
    return ts is None or now - ts > age


def is_archivable(
    stars: int,
    last_accessed_at: datetime | None,
    last_commit_at: datetime | None,
    now: datetime,
    policy: TierPolicy,
) -> bool:
    return (
        stars < policy.archive_max_stars
        and _older_than(last_accessed_at, now, policy.archive_access_staleness)
        and _older_than(last_commit_at, now, policy.archive_commit_staleness)
    )


def compute_tier(
    stars: int,
    last_accessed_at: datetime | None,
    last_commit_at: datetime | None,
    now: datetime,
    policy: TierPolicy,
) -> Tier:
    """Most specific condition wins: archived, then hot → warm → cool, else cold."""
    if is_archivable(stars, last_accessed_at, last_commit_at, now, policy):
        return Tier.ARCHIVED
    for rule in policy.rules:
        accessed_recently = last_accessed_at is not None and now - last_accessed_at < rule.access_window
        if stars >= rule.min_stars or accessed_recently:
            return rule.tier
    return Tier.COLD


def next_update_at(tier: Tier, now: datetime, policy: TierPolicy) -> datetime | None:
    """Next scheduled re-index. ``None`` for cold (on access only) and archived (never)."""
    for rule in policy.rules:
        if rule.tier == tier:
            return now + rule.update_interval
    return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class TierRunSummary:
    total: int = 0
    changed: int = 0
    failed_pages: int = 0
    pages: int = 0
    archived: int = 0
    resurrected: int = 0
    by_tier: Counter[str] = field(default_factory=Counter)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "changed": self.changed,
            "failed_pages": self.failed_pages,
            "pages": self.pages,
            "archived": self.archived,
            "resurrected": self.resurrected,
            "by_tier": dict(self.by_tier),
        }


class TierEngine:
    """Scheduled tier recompute over every public, non-deleted skill."""

    def __init__(
        self,
        store: CatalogStore,
        settings: TierSettings,
        *,
        archive: ArchiveEngine | None = None,
        state: StateStore | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.policy = TierPolicy.from_settings(settings)
        self.archive = archive
        self.state = state

    async def run(self, now: datetime | None = None) -> TierRunSummary:
        now = now or utcnow()
        started = time.monotonic()
        summary = TierRunSummary()

        with _tracer.start_as_current_span("tiers.run"):
            reset_7d, reset_30d = await self.store.reset_access_counters(
                now, self.settings.counter_7d_window_s, self.settings.counter_30d_window_s
            )
            logger.debug("Access counters reset: 7d={}, 30d={}", reset_7d, reset_30d)

            last_id = ""
            for _ in range(self.settings.max_pages):
                page = await self.store.fetch_tier_page(last_id, self.settings.page_size)
                if not page:
                    break
                last_id = page[-1]["id"]
                summary.pages += 1
                await self._process_page(page, now, summary)
            else:
                if await self.store.fetch_tier_page(last_id, 1):
                    logger.warning(
                        "Tier run stopped at max_pages={} before exhausting skills", self.settings.max_pages
                    )

        get_metrics().job_duration.record(time.monotonic() - started, {"job": "tiers"})
        logger.info(
            "Tier run: {} skills, {} changed, {} failed pages, by tier {}",
            summary.total,
            summary.changed,
            summary.failed_pages,
            dict(summary.by_tier),
        )
        if self.state is not None:
            await self.state.put_json(
                f"metrics:tier-recalc:{now:%Y-%m-%d}", summary.as_dict(), ttl_s=self.settings.summary_ttl_s
            )
        return summary

    async def _process_page(self, page: list[dict[str, Any]], now: datetime, summary: TierRunSummary) -> None:
        updates: list[tuple[str, Tier, datetime | None]] = []
        to_archive: list[str] = []
        to_revive: list[tuple[str, Tier]] = []

        for row in page:
            summary.total += 1
            tier = compute_tier(row["stars"], row["last_accessed_at"], row["last_commit_at"], now, self.policy)
            summary.by_tier[tier.value] += 1
            if tier.value == row["tier"]:
                continue
            if tier == Tier.ARCHIVED:
                to_archive.append(row["id"])
            elif row["tier"] == Tier.ARCHIVED.value:
                to_revive.append((row["id"], tier))
            else:
                updates.append((row["id"], tier, next_update_at(tier, now, self.policy)))

        try:
            summary.changed += await self.store.apply_tier_updates(updates, now)
            for tier in (t for _, t, _ in updates):
                get_metrics().tier_transitions_total.add(1, {"to": tier.value})
        except Exception:
            summary.failed_pages += 1
            logger.exception("Tier page write failed ({} updates), continuing", len(updates))

        if self.archive is None:
            if to_archive or to_revive:
                logger.warning("No archive engine: skipped {} archived transitions", len(to_archive) + len(to_revive))
            return

        for skill_id in to_archive:
            if await self.archive.archive_skill(skill_id, now):
                summary.changed += 1
                summary.archived += 1
                get_metrics().tier_transitions_total.add(1, {"to": Tier.ARCHIVED.value})

        for skill_id, tier in to_revive:
            result = await self.archive.resurrect(skill_id, now, touch_access=False)
            if not result.success:
                continue
            summary.resurrected += 1
            try:
                await self.store.apply_tier_updates([(skill_id, tier, next_update_at(tier, now, self.policy))], now)
            except Exception:
                logger.exception("Failed to write tier {} for resurrected skill {}", tier.value, skill_id)
                continue
            summary.changed += 1
            get_metrics().tier_transitions_total.add(1, {"to": tier.value})
