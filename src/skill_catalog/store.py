"""Async relational metadata store for the skill catalog.

Wraps a SQLAlchemy async engine (SQLite via aiosqlite, or PostgreSQL).
Every multi-row state change runs in a single transaction so the catalog
never shows a half-applied classification, tier change or archival.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger
from sqlalchemy import delete, event, func, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine

from skill_catalog.categories import CATEGORIES
from skill_catalog.schema import (
    SCHEMA_VERSION,
    Tier,
    Visibility,
    authors,
    categories,
    metadata,
    schema_version,
    skill_categories,
    skills,
)
from skill_catalog.telemetry import get_tracer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

    from skill_catalog.settings import DatabaseSettings

_tracer = get_tracer(__name__)


class QueryTimeoutError(Exception):
    """Raised when a store operation exceeds the configured timeout."""

    def __init__(self, timeout_s: float, operation: str = "") -> None:
        self.timeout_s = timeout_s
        self.operation = operation
        super().__init__(f"Store operation timed out after {timeout_s}s: {operation}")


class SlugConflictError(Exception):
    """A new skill lost a race for its slug to a different skill."""


def utcnow() -> datetime:
    return datetime.now(UTC)


def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    """Enforce foreign keys and wait on locks instead of failing."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


class CatalogStore:
    """Async metadata store client.

    Follows the same lifecycle pattern as EventBus: construct → ping → use → close.
    """

    def __init__(self, settings: DatabaseSettings) -> None:
        kwargs: dict[str, Any] = {"echo": settings.echo}
        if settings.url.startswith("sqlite"):
            kwargs["connect_args"] = {"timeout": 30}
        self._engine: AsyncEngine = create_async_engine(settings.url, **kwargs)
        if self._engine.dialect.name == "sqlite":
            event.listens_for(self._engine.sync_engine, "connect")(_set_sqlite_pragma)
        self._query_timeout_s = settings.query_timeout_s
        self._write_timeout_s = settings.write_timeout_s

    # -- plumbing ------------------------------------------------------------

    def _insert(self, table):
        """Dialect-specific INSERT supporting ``ON CONFLICT``."""
        if self._engine.dialect.name == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    async def _read(self, name: str, fn: Callable[[AsyncConnection], Awaitable[Any]]) -> Any:
        async def _inner() -> Any:
            async with self._engine.connect() as conn:
                return await fn(conn)

        with _tracer.start_as_current_span("store.read", attributes={"db.operation": name}):
            try:
                return await asyncio.wait_for(_inner(), timeout=self._query_timeout_s)
            except TimeoutError:
                raise QueryTimeoutError(self._query_timeout_s, name) from None

    async def _write(self, name: str, fn: Callable[[AsyncConnection], Awaitable[Any]]) -> Any:
        """Run *fn* inside one transaction (committed on success, rolled back on error)."""

        async def _inner() -> Any:
            async with self._engine.begin() as conn:
                return await fn(conn)

        with _tracer.start_as_current_span("store.write", attributes={"db.operation": name}):
            try:
                return await asyncio.wait_for(_inner(), timeout=self._write_timeout_s)
            except TimeoutError:
                raise QueryTimeoutError(self._write_timeout_s, name) from None

    async def ping(self) -> bool:
        """Health check; returns True if the database answers."""

        async def _q(conn: AsyncConnection) -> Any:
            return (await conn.execute(select(1))).scalar()

        return await self._read("ping", _q) == 1

    async def close(self) -> None:
        await self._engine.dispose()

    # -- schema ----------------------------------------------------------------

    async def get_schema_version(self) -> int | None:
        async def _q(conn: AsyncConnection) -> int | None:
            has_table = await conn.run_sync(lambda sync: sync.dialect.has_table(sync, "schema_version"))
            if not has_table:
                return None
            return (await conn.execute(select(func.max(schema_version.c.version)))).scalar()

        return await self._read("get_schema_version", _q)

    async def ensure_schema(self) -> None:
        """Create missing tables and (re)seed the category vocabulary. Idempotent.

        - Fresh DB: create all tables, record the version.
        - Same version: refresh the vocabulary only.
        - Newer version: raise RuntimeError (downgrade not supported).
        """
        stored = await self.get_schema_version()
        if stored is not None and stored > SCHEMA_VERSION:
            msg = f"Database schema v{stored} is newer than code v{SCHEMA_VERSION}. Downgrade is not supported."
            raise RuntimeError(msg)

        async def _apply(conn: AsyncConnection) -> None:
            await conn.run_sync(metadata.create_all)
            for order, cat in enumerate(CATEGORIES):
                values = {
                    "name": cat.name,
                    "description": cat.description,
                    "keywords": list(cat.keywords),
                    "sort_order": order,
                }
                stmt = self._insert(categories).values(slug=cat.slug, **values)
                await conn.execute(stmt.on_conflict_do_update(index_elements=["slug"], set_=values))
            if stored is None:
                await conn.execute(insert(schema_version).values(version=SCHEMA_VERSION, applied_at=utcnow()))

        await self._write("ensure_schema", _apply)
        if stored is None:
            logger.info("Fresh database, schema v{} applied", SCHEMA_VERSION)
        else:
            logger.debug("Schema v{} already current", SCHEMA_VERSION)

    # -- skills: lookups -------------------------------------------------------

    async def get_skill(self, skill_id: str) -> dict[str, Any] | None:
        async def _q(conn: AsyncConnection) -> dict[str, Any] | None:
            row = (await conn.execute(select(skills).where(skills.c.id == skill_id))).mappings().first()
            return dict(row) if row else None

        return await self._read("get_skill", _q)

    async def find_skill(self, repo_owner: str, repo_name: str, skill_path: str) -> dict[str, Any] | None:
        """Look up a live skill by its natural key."""

        async def _q(conn: AsyncConnection) -> dict[str, Any] | None:
            stmt = select(skills).where(
                skills.c.repo_owner == repo_owner,
                skills.c.repo_name == repo_name,
                skills.c.skill_path == skill_path,
                skills.c.deleted_at.is_(None),
            )
            row = (await conn.execute(stmt)).mappings().first()
            return dict(row) if row else None

        return await self._read("find_skill", _q)

    async def slug_exists(self, slug: str) -> bool:
        async def _q(conn: AsyncConnection) -> bool:
            return (await conn.execute(select(skills.c.id).where(skills.c.slug == slug).limit(1))).first() is not None

        return await self._read("slug_exists", _q)

    async def find_duplicate(self, content_hash: str, min_stars: int) -> dict[str, Any] | None:
        """Return a popular public skill with identical normalized content, if any."""

        async def _q(conn: AsyncConnection) -> dict[str, Any] | None:
            stmt = (
                select(skills.c.id, skills.c.repo_owner, skills.c.repo_name, skills.c.stars)
                .where(
                    skills.c.content_hash == content_hash,
                    skills.c.stars >= min_stars,
                    skills.c.visibility == Visibility.PUBLIC.value,
                    skills.c.deleted_at.is_(None),
                )
                .order_by(skills.c.stars.desc())
                .limit(1)
            )
            row = (await conn.execute(stmt)).mappings().first()
            return dict(row) if row else None

        return await self._read("find_duplicate", _q)

    # -- skills: writes --------------------------------------------------------

    async def insert_skill(self, values: dict[str, Any]) -> str:
        """Insert a new skill, converging on the existing row under a natural-key race.

        Returns the id of the row that holds the natural key afterwards, which
        is ``values["id"]`` unless a concurrent insert won.
        """

        async def _q(conn: AsyncConnection) -> str | None:
            await conn.execute(self._insert(skills).values(**values).on_conflict_do_nothing())
            stmt = select(skills.c.id).where(
                skills.c.repo_owner == values["repo_owner"],
                skills.c.repo_name == values["repo_name"],
                skills.c.skill_path == values["skill_path"],
                skills.c.deleted_at.is_(None),
            )
            return (await conn.execute(stmt)).scalar()

        skill_id = await self._write("insert_skill", _q)
        if skill_id is None:
            raise SlugConflictError(f"Slug {values['slug']!r} was taken concurrently")
        return skill_id

    async def update_skill(self, skill_id: str, values: dict[str, Any]) -> None:
        async def _q(conn: AsyncConnection) -> None:
            await conn.execute(update(skills).where(skills.c.id == skill_id).values(**values))

        await self._write("update_skill", _q)

    async def set_manifest_sha(self, skill_id: str, sha: str) -> None:
        await self.update_skill(skill_id, {"manifest_sha": sha})

    async def upsert_author(self, values: dict[str, Any], now: datetime) -> None:
        """Create or refresh an author and recompute its aggregates from the skills table."""

        async def _q(conn: AsyncConnection) -> None:
            refresh = {k: values[k] for k in ("username", "avatar_url", "type", "github_id") if k in values}
            stmt = self._insert(authors).values(**values, created_at=now, updated_at=now)
            await conn.execute(
                stmt.on_conflict_do_update(index_elements=["id"], set_={**refresh, "updated_at": now})
            )
            live = (skills.c.repo_owner == values["username"]) & skills.c.deleted_at.is_(None)
            count = select(func.count()).select_from(skills).where(live).scalar_subquery()
            stars = select(func.coalesce(func.sum(skills.c.stars), 0)).where(live).scalar_subquery()
            await conn.execute(
                update(authors).where(authors.c.id == values["id"]).values(skills_count=count, total_stars=stars)
            )

        await self._write("upsert_author", _q)

    # -- categories ------------------------------------------------------------

    async def get_categories(self, skill_id: str) -> list[dict[str, Any]]:
        """Return ``[{slug, is_primary, confidence}]`` with the primary category first."""

        async def _q(conn: AsyncConnection) -> list[dict[str, Any]]:
            stmt = (
                select(
                    skill_categories.c.category_slug.label("slug"),
                    skill_categories.c.is_primary,
                    skill_categories.c.confidence,
                )
                .where(skill_categories.c.skill_id == skill_id)
                .order_by(skill_categories.c.is_primary.desc(), skill_categories.c.category_slug)
            )
            return [dict(r) for r in (await conn.execute(stmt)).mappings()]

        return await self._read("get_categories", _q)

    async def has_categories(self, skill_id: str) -> bool:
        return bool(await self.get_categories(skill_id))

    async def replace_categories(
        self,
        skill_id: str,
        entries: Sequence[dict[str, Any]],
        *,
        method: str | None,
        now: datetime,
    ) -> None:
        """Delete-all then insert-all category associations in one transaction."""

        async def _q(conn: AsyncConnection) -> None:
            await conn.execute(delete(skill_categories).where(skill_categories.c.skill_id == skill_id))
            if entries:
                rows = [
                    {
                        "skill_id": skill_id,
                        "category_slug": e["slug"],
                        "is_primary": bool(e["is_primary"]),
                        "confidence": e.get("confidence"),
                        "created_at": now,
                    }
                    for e in entries
                ]
                await conn.execute(insert(skill_categories), rows)
            values: dict[str, Any] = {"updated_at": now}
            if method is not None:
                values["classification_method"] = method
            await conn.execute(update(skills).where(skills.c.id == skill_id).values(**values))

        await self._write("replace_categories", _q)

    # -- tiers -----------------------------------------------------------------

    async def reset_access_counters(self, now: datetime, window_7d_s: int, window_30d_s: int) -> tuple[int, int]:
        """Zero counters whose window expired. Returns ``(reset_7d, reset_30d)``."""

        def _expired(window_s: int):
            cutoff = now - timedelta(seconds=window_s)
            return or_(skills.c.last_accessed_at.is_(None), skills.c.last_accessed_at < cutoff)

        async def _q(conn: AsyncConnection) -> tuple[int, int]:
            r7 = await conn.execute(
                update(skills).where(_expired(window_7d_s), skills.c.access_count_7d != 0).values(access_count_7d=0)
            )
            r30 = await conn.execute(
                update(skills)
                .where(_expired(window_30d_s), skills.c.access_count_30d != 0)
                .values(access_count_30d=0)
            )
            return r7.rowcount or 0, r30.rowcount or 0

        return await self._write("reset_access_counters", _q)

    async def fetch_tier_page(self, after_id: str, limit: int) -> list[dict[str, Any]]:
        """Keyset page of public live skills with the fields tiering needs."""

        async def _q(conn: AsyncConnection) -> list[dict[str, Any]]:
            stmt = (
                select(
                    skills.c.id,
                    skills.c.stars,
                    skills.c.last_accessed_at,
                    skills.c.last_commit_at,
                    skills.c.tier,
                )
                .where(
                    skills.c.id > after_id,
                    skills.c.visibility == Visibility.PUBLIC.value,
                    skills.c.deleted_at.is_(None),
                )
                .order_by(skills.c.id)
                .limit(limit)
            )
            return [dict(r) for r in (await conn.execute(stmt)).mappings()]

        return await self._read("fetch_tier_page", _q)

    async def apply_tier_updates(
        self, updates: Sequence[tuple[str, Tier, datetime | None]], now: datetime
    ) -> int:
        """Write ``(skill_id, tier, next_update_at)`` changes in one transaction."""

        async def _q(conn: AsyncConnection) -> int:
            for skill_id, tier, next_update in updates:
                await conn.execute(
                    update(skills)
                    .where(skills.c.id == skill_id)
                    .values(tier=tier.value, next_update_at=next_update, updated_at=now)
                )
            return len(updates)

        if not updates:
            return 0
        return await self._write("apply_tier_updates", _q)

    async def count_by_tier(self) -> dict[str, int]:
        async def _q(conn: AsyncConnection) -> dict[str, int]:
            stmt = (
                select(skills.c.tier, func.count())
                .where(skills.c.deleted_at.is_(None))
                .group_by(skills.c.tier)
            )
            return {tier: n for tier, n in (await conn.execute(stmt)).all()}

        return await self._read("count_by_tier", _q)

    # -- archive / resurrection -----------------------------------------------

    async def find_archive_candidates(
        self,
        *,
        max_stars: int,
        access_cutoff: datetime,
        commit_cutoff: datetime,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Public live non-archived skills meeting the cold-archive predicate."""

        async def _q(conn: AsyncConnection) -> list[dict[str, Any]]:
            stmt = (
                select(skills)
                .where(
                    skills.c.tier != Tier.ARCHIVED.value,
                    skills.c.visibility == Visibility.PUBLIC.value,
                    skills.c.deleted_at.is_(None),
                    skills.c.stars < max_stars,
                    or_(skills.c.last_accessed_at.is_(None), skills.c.last_accessed_at < access_cutoff),
                    or_(skills.c.last_commit_at.is_(None), skills.c.last_commit_at < commit_cutoff),
                )
                .order_by(skills.c.id)
                .limit(limit)
            )
            return [dict(r) for r in (await conn.execute(stmt)).mappings()]

        return await self._read("find_archive_candidates", _q)

    async def mark_archived(self, skill_id: str, now: datetime) -> None:
        """Flip to archived and drop category associations in one transaction."""

        async def _q(conn: AsyncConnection) -> None:
            await conn.execute(
                update(skills)
                .where(skills.c.id == skill_id)
                .values(tier=Tier.ARCHIVED.value, next_update_at=None, updated_at=now)
            )
            await conn.execute(delete(skill_categories).where(skill_categories.c.skill_id == skill_id))

        await self._write("mark_archived", _q)

    async def mark_resurrected(
        self,
        skill_id: str,
        now: datetime,
        restored_categories: Sequence[dict[str, Any]] | None,
        *,
        touch_access: bool = True,
    ) -> None:
        """Flip back to cold and, when a snapshot was found, restore its categories."""
        values: dict[str, Any] = {"tier": Tier.COLD.value, "next_update_at": None, "updated_at": now}
        if touch_access:
            values["last_accessed_at"] = now

        async def _q(conn: AsyncConnection) -> None:
            await conn.execute(update(skills).where(skills.c.id == skill_id).values(**values))
            if restored_categories is None:
                return
            await conn.execute(delete(skill_categories).where(skill_categories.c.skill_id == skill_id))
            if restored_categories:
                rows = [
                    {
                        "skill_id": skill_id,
                        "category_slug": c["slug"],
                        "is_primary": bool(c.get("is_primary", False)),
                        "confidence": c.get("confidence"),
                        "created_at": now,
                    }
                    for c in restored_categories
                ]
                await conn.execute(insert(skill_categories), rows)

        await self._write("mark_resurrected", _q)
