"""Tests for tier rules and the scheduled tier engine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW, days_ago, skill_row
from loguru import logger

from skill_catalog.blobs import manifest_blob_path
from skill_catalog.lifecycle.archive import ArchiveEngine
from skill_catalog.lifecycle.tiers import TierEngine, TierPolicy, compute_tier, next_update_at
from skill_catalog.schema import Tier
from skill_catalog.settings import ArchiveSettings, TierSettings


@pytest.fixture
def policy() -> TierPolicy:
    return TierPolicy.from_settings(TierSettings())


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


class TestComputeTier:
    @pytest.mark.parametrize(
        ("stars", "accessed", "commit", "expected"),
        [
            (5000, None, days_ago(1), Tier.HOT),
            (3, days_ago(2), days_ago(1000), Tier.HOT),
            (150, days_ago(60), days_ago(10), Tier.WARM),
            (3, days_ago(20), days_ago(10), Tier.WARM),
            (15, None, days_ago(10), Tier.COOL),
            (3, days_ago(80), days_ago(10), Tier.COOL),
            (3, days_ago(200), days_ago(10), Tier.COLD),
            (7, days_ago(400), days_ago(800), Tier.COLD),
            (2, days_ago(400), days_ago(800), Tier.ARCHIVED),
            (2, None, None, Tier.ARCHIVED),
            (2, days_ago(400), days_ago(100), Tier.COLD),
        ],
    )
    def test_rules(self, policy, stars, accessed, commit, expected):
        assert compute_tier(stars, accessed, commit, NOW, policy) == expected

    def test_archive_beats_nothing_but_itself(self, policy):
        # Archival requires all three conditions; a single recent signal keeps the skill live
        assert compute_tier(2, days_ago(364), days_ago(800), NOW, policy) == Tier.COLD

    @pytest.mark.parametrize(
        ("days", "inside", "outside"),
        [(7, Tier.HOT, Tier.WARM), (30, Tier.WARM, Tier.COOL), (90, Tier.COOL, Tier.COLD)],
    )
    def test_access_window_is_exclusive(self, policy, days, inside, outside):
        just_inside = NOW - timedelta(days=days) + timedelta(seconds=1)
        assert compute_tier(0, just_inside, days_ago(10), NOW, policy) == inside
        assert compute_tier(0, days_ago(days), days_ago(10), NOW, policy) == outside

    def test_thresholds_are_configurable(self):
        custom = TierPolicy.from_settings(TierSettings(hot_min_stars=10, archive_max_stars=0))
        assert compute_tier(10, None, days_ago(1), NOW, custom) == Tier.HOT
        assert compute_tier(0, None, None, NOW, custom) == Tier.COLD

    def test_next_update_at(self, policy):
        assert next_update_at(Tier.HOT, NOW, policy) == NOW + timedelta(hours=6)
        assert next_update_at(Tier.WARM, NOW, policy) == NOW + timedelta(days=1)
        assert next_update_at(Tier.COOL, NOW, policy) == NOW + timedelta(days=7)
        assert next_update_at(Tier.COLD, NOW, policy) is None
        assert next_update_at(Tier.ARCHIVED, NOW, policy) is None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestTierEngine:
    async def test_run_writes_changed_tiers_and_is_stable(self, store, state):
        recent_commit = {"last_commit_at": days_ago(5)}
        await store.insert_skill(skill_row("a", stars=5000, **recent_commit))
        await store.insert_skill(skill_row("b", stars=150, **recent_commit))
        await store.insert_skill(skill_row("c", stars=1, last_accessed_at=days_ago(200), **recent_commit))
        engine = TierEngine(store, TierSettings(page_size=2), state=state)

        first = await engine.run(NOW)
        assert (first.total, first.changed, first.pages) == (3, 2, 2)
        assert await store.count_by_tier() == {"hot": 1, "warm": 1, "cold": 1}
        hot = await store.get_skill("a")
        assert hot["next_update_at"] == NOW + timedelta(hours=6)

        second = await engine.run(NOW)
        assert second.changed == 0
        assert await state.get_json("metrics:tier-recalc:2025-06-01") == second.as_dict()

    async def test_counters_decay_before_tiering(self, store):
        await store.insert_skill(
            skill_row(
                "a",
                stars=1,
                last_accessed_at=days_ago(40),
                last_commit_at=days_ago(5),
                access_count_7d=12,
                access_count_30d=30,
            )
        )
        await TierEngine(store, TierSettings()).run(NOW)
        row = await store.get_skill("a")
        assert (row["access_count_7d"], row["access_count_30d"]) == (0, 0)
        assert row["tier"] == "cool"

    async def test_private_and_deleted_skills_untouched(self, store):
        await store.insert_skill(skill_row("a", stars=5000, visibility="private"))
        await store.insert_skill(skill_row("b", stars=5000, deleted_at=days_ago(1)))
        summary = await TierEngine(store, TierSettings()).run(NOW)
        assert summary.total == 0
        assert (await store.get_skill("a"))["tier"] == "cold"

    async def test_failed_page_does_not_halt_run(self, store, monkeypatch):
        for sid in ("a", "b", "c"):
            await store.insert_skill(skill_row(sid, stars=5000))
        original = store.apply_tier_updates
        calls = 0

        async def flaky(updates, now):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database is locked")
            return await original(updates, now)

        monkeypatch.setattr(store, "apply_tier_updates", flaky)
        summary = await TierEngine(store, TierSettings(page_size=1)).run(NOW)
        assert summary.failed_pages == 1
        assert summary.changed == 2
        assert (await store.get_skill("a"))["tier"] == "cold"

    async def test_max_pages_bounds_run(self, store):
        for sid in ("a", "b", "c"):
            await store.insert_skill(skill_row(sid, stars=5000))
        summary = await TierEngine(store, TierSettings(page_size=1, max_pages=2)).run(NOW)
        assert summary.pages == 2
        assert (await store.get_skill("c"))["tier"] == "cold"

    async def test_max_pages_warns_only_when_rows_remain(self, store):
        for sid in ("a", "b"):
            await store.insert_skill(skill_row(sid, stars=5000))
        warnings: list[str] = []
        sink = logger.add(lambda message: warnings.append(str(message)), level="WARNING")
        try:
            await TierEngine(store, TierSettings(page_size=1, max_pages=2)).run(NOW)
            assert warnings == []
            await store.insert_skill(skill_row("c", stars=5000))
            await TierEngine(store, TierSettings(page_size=1, max_pages=2)).run(NOW)
        finally:
            logger.remove(sink)
        assert len(warnings) == 1
        assert "max_pages=2" in warnings[0]

    async def test_archived_transition_needs_archive_engine(self, store):
        await store.insert_skill(skill_row("a", stars=2, last_accessed_at=days_ago(400), last_commit_at=days_ago(800)))
        summary = await TierEngine(store, TierSettings()).run(NOW)
        assert summary.archived == 0
        assert (await store.get_skill("a"))["tier"] == "cold"


class TestArchiveScenario:
    async def test_stale_unpopular_skill_archived_then_resurrected(self, store, blobs, state):
        await store.insert_skill(
            skill_row(
                "s1",
                repo_owner="acme",
                repo_name="old",
                stars=2,
                tier="cool",
                last_accessed_at=days_ago(400),
                last_commit_at=days_ago(800),
            )
        )
        await store.replace_categories("s1", [{"slug": "git", "is_primary": True}], method="keyword", now=NOW)
        hot_key = manifest_blob_path("acme", "old")
        manifest = b"---\nname: old\n---\n# Old skill\n"
        await blobs.put(hot_key, manifest)

        archive = ArchiveEngine(store, blobs, ArchiveSettings(), TierSettings(), state=state)
        summary = await TierEngine(store, TierSettings(), archive=archive, state=state).run(NOW)

        assert summary.archived == 1
        assert (await store.get_skill("s1"))["tier"] == "archived"
        assert not await blobs.exists(hot_key)
        assert await blobs.list_prefix("archive/") == ["archive/2025/06/s1.json"]

        result = await archive.resurrect("s1", NOW + timedelta(days=1))
        assert result.success
        assert result.restored
        assert (await store.get_skill("s1"))["tier"] == "cold"
        assert await blobs.get(hot_key) == manifest
        assert await blobs.list_prefix("archive/") == []
        assert [c["slug"] for c in await store.get_categories("s1")] == ["git"]

    async def test_archived_skill_gaining_stars_is_revived(self, store, blobs):
        await store.insert_skill(
            skill_row("s1", stars=5000, tier="archived", last_accessed_at=days_ago(400), last_commit_at=days_ago(800))
        )
        archive = ArchiveEngine(store, blobs, ArchiveSettings(), TierSettings())
        summary = await TierEngine(store, TierSettings(), archive=archive).run(NOW)

        assert summary.resurrected == 1
        row = await store.get_skill("s1")
        assert row["tier"] == "hot"
        # Revival on stars is not an access
        assert row["last_accessed_at"] == days_ago(400)
