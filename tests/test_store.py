"""Tests for the SQLAlchemy metadata store (SQLite via aiosqlite, no server needed)."""

from __future__ import annotations

import pytest
from conftest import NOW, days_ago, skill_row

from skill_catalog.categories import CATEGORIES
from skill_catalog.schema import SCHEMA_VERSION, Tier
from skill_catalog.store import CatalogStore

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    async def test_fresh_schema_records_version(self, store: CatalogStore):
        assert await store.get_schema_version() == SCHEMA_VERSION
        assert await store.ping() is True

    async def test_ensure_schema_idempotent(self, store: CatalogStore):
        await store.ensure_schema()
        await store.ensure_schema()
        assert await store.get_schema_version() == SCHEMA_VERSION

    async def test_vocabulary_seeded(self, store: CatalogStore):
        sid = await store.insert_skill(skill_row("a"))
        # Every vocabulary slug is a valid FK target
        await store.replace_categories(
            sid, [{"slug": c.slug, "is_primary": False} for c in CATEGORIES], method="keyword", now=NOW
        )
        assert len(await store.get_categories(sid)) == len(CATEGORIES)

    async def test_newer_schema_refused(self, settings):
        from sqlalchemy import update

        from skill_catalog.schema import schema_version

        s = CatalogStore(settings.database)
        await s.ensure_schema()
        async with s._engine.begin() as conn:
            await conn.execute(update(schema_version).values(version=SCHEMA_VERSION + 1))
        with pytest.raises(RuntimeError, match="newer"):
            await s.ensure_schema()
        await s.close()


# ---------------------------------------------------------------------------
# Skills
# ---------------------------------------------------------------------------


class TestSkills:
    async def test_insert_and_find(self, store: CatalogStore):
        sid = await store.insert_skill(skill_row("a", repo_owner="Acme", repo_name="Tools", skill_path="x"))
        assert sid == "a"
        found = await store.find_skill("Acme", "Tools", "x")
        assert found is not None
        assert found["id"] == "a"
        assert found["created_at"] == NOW
        assert await store.find_skill("Acme", "Tools", "") is None

    async def test_insert_same_natural_key_converges(self, store: CatalogStore):
        first = await store.insert_skill(skill_row("a", repo_name="r"))
        second = await store.insert_skill(skill_row("b", repo_name="r", slug="other-slug"))
        assert first == second == "a"
        assert await store.get_skill("b") is None

    async def test_soft_deleted_rows_release_natural_key(self, store: CatalogStore):
        await store.insert_skill(skill_row("a", repo_name="r", deleted_at=days_ago(1)))
        assert await store.find_skill("acme", "r", "") is None
        assert await store.insert_skill(skill_row("b", repo_name="r", slug="fresh")) == "b"

    async def test_slug_exists(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        assert await store.slug_exists("slug-a")
        assert not await store.slug_exists("slug-b")

    async def test_find_duplicate_requires_popular_original(self, store: CatalogStore):
        await store.insert_skill(skill_row("small", content_hash="h1", stars=50))
        assert await store.find_duplicate("h1", 1000) is None
        await store.insert_skill(skill_row("big", content_hash="h1", stars=5000))
        dup = await store.find_duplicate("h1", 1000)
        assert dup is not None
        assert dup["id"] == "big"

    async def test_update_and_manifest_sha(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        await store.update_skill("a", {"stars": 7, "topics": ["x"]})
        await store.set_manifest_sha("a", "abc")
        row = await store.get_skill("a")
        assert (row["stars"], row["topics"], row["manifest_sha"]) == (7, ["x"], "abc")


class TestAuthors:
    async def test_upsert_recomputes_aggregates(self, store: CatalogStore):
        await store.insert_skill(skill_row("a", repo_owner="acme", stars=10))
        await store.insert_skill(skill_row("b", repo_owner="acme", stars=5))
        author = {"id": "github-1", "github_id": 1, "username": "acme", "avatar_url": None, "type": "User"}
        await store.upsert_author(author, NOW)
        await store.upsert_author({**author, "type": "Organization"}, NOW)

        from sqlalchemy import select

        from skill_catalog.schema import authors

        async with store._engine.connect() as conn:
            row = (await conn.execute(select(authors))).mappings().one()
        assert (row["skills_count"], row["total_stars"], row["type"]) == (2, 15, "Organization")


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


class TestCategories:
    async def test_replace_is_total(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        await store.replace_categories(
            "a",
            [{"slug": "git", "is_primary": True, "confidence": 0.9}, {"slug": "testing", "is_primary": False}],
            method="ai",
            now=NOW,
        )
        await store.replace_categories("a", [{"slug": "security", "is_primary": True}], method="keyword", now=NOW)
        cats = await store.get_categories("a")
        assert [c["slug"] for c in cats] == ["security"]
        assert (await store.get_skill("a"))["classification_method"] == "keyword"

    async def test_replace_rolls_back_on_bad_slug(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        await store.replace_categories("a", [{"slug": "git", "is_primary": True}], method="ai", now=NOW)
        with pytest.raises(Exception):  # noqa: B017, PT011
            await store.replace_categories(
                "a",
                [{"slug": "testing", "is_primary": True}, {"slug": "not-a-category", "is_primary": False}],
                method="ai",
                now=NOW,
            )
        # Nothing half-applied: the old association survives
        assert [c["slug"] for c in await store.get_categories("a")] == ["git"]

    async def test_primary_first(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        await store.replace_categories(
            "a",
            [{"slug": "git", "is_primary": False}, {"slug": "testing", "is_primary": True}],
            method=None,
            now=NOW,
        )
        assert [c["slug"] for c in await store.get_categories("a")] == ["testing", "git"]


# ---------------------------------------------------------------------------
# Tiers / archive queries
# ---------------------------------------------------------------------------


class TestTierQueries:
    async def test_reset_access_counters(self, store: CatalogStore):
        await store.insert_skill(
            skill_row("a", last_accessed_at=days_ago(10), access_count_7d=4, access_count_30d=9)
        )
        await store.insert_skill(skill_row("b", last_accessed_at=days_ago(1), access_count_7d=2, access_count_30d=2))
        reset = await store.reset_access_counters(NOW, 7 * 86400, 30 * 86400)
        assert reset == (1, 0)
        a = await store.get_skill("a")
        assert (a["access_count_7d"], a["access_count_30d"]) == (0, 9)

    async def test_tier_page_skips_private_and_deleted(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        await store.insert_skill(skill_row("b", visibility="private"))
        await store.insert_skill(skill_row("c", deleted_at=NOW))
        await store.insert_skill(skill_row("d"))
        page = await store.fetch_tier_page("", 10)
        assert [r["id"] for r in page] == ["a", "d"]
        assert [r["id"] for r in await store.fetch_tier_page("a", 10)] == ["d"]

    async def test_apply_tier_updates_and_counts(self, store: CatalogStore):
        await store.insert_skill(skill_row("a"))
        await store.insert_skill(skill_row("b"))
        n = await store.apply_tier_updates([("a", Tier.HOT, days_ago(-1))], NOW)
        assert n == 1
        assert await store.count_by_tier() == {"hot": 1, "cold": 1}

    async def test_archive_candidates(self, store: CatalogStore):
        old = {"last_accessed_at": days_ago(400), "last_commit_at": days_ago(800)}
        await store.insert_skill(skill_row("a", stars=2, **old))
        await store.insert_skill(skill_row("b", stars=50, **old))
        await store.insert_skill(skill_row("c", stars=2, last_accessed_at=days_ago(3), last_commit_at=days_ago(800)))
        await store.insert_skill(skill_row("d", stars=2, tier="archived", **old))
        found = await store.find_archive_candidates(
            max_stars=5, access_cutoff=days_ago(365), commit_cutoff=days_ago(730), limit=10
        )
        assert [r["id"] for r in found] == ["a"]

    async def test_mark_archived_and_resurrected(self, store: CatalogStore):
        await store.insert_skill(skill_row("a", next_update_at=days_ago(-1)))
        await store.replace_categories("a", [{"slug": "git", "is_primary": True}], method="ai", now=NOW)
        await store.mark_archived("a", NOW)
        row = await store.get_skill("a")
        assert (row["tier"], row["next_update_at"]) == ("archived", None)
        assert await store.get_categories("a") == []

        await store.mark_resurrected("a", NOW, [{"slug": "git", "is_primary": True, "confidence": 0.9}])
        row = await store.get_skill("a")
        assert (row["tier"], row["last_accessed_at"]) == ("cold", NOW)
        assert [c["slug"] for c in await store.get_categories("a")] == ["git"]

    async def test_resurrect_without_touching_access(self, store: CatalogStore):
        await store.insert_skill(skill_row("a", tier="archived"))
        await store.mark_resurrected("a", NOW, None, touch_access=False)
        row = await store.get_skill("a")
        assert (row["tier"], row["last_accessed_at"]) == ("cold", None)
