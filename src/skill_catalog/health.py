"""Health check and diagnostics for the skill catalog infrastructure."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from skill_catalog.blobs import FileBlobStore
from skill_catalog.events import EventBus
from skill_catalog.github import GitHubClient
from skill_catalog.schema import SCHEMA_VERSION
from skill_catalog.store import CatalogStore

if TYPE_CHECKING:
    from skill_catalog.blobs import BlobStore
    from skill_catalog.settings import CatalogSettings, GitHubSettings, RedisSettings

_CHECK_TIMEOUT = 3.0  # seconds per individual check


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class CheckStatus(StrEnum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class CheckResult:
    """Result of a single health check."""

    name: str
    status: CheckStatus
    message: str
    detail: str = ""
    suggestion: str = ""


@dataclass(frozen=True)
class HealthReport:
    """Aggregated results from all health checks."""

    checks: list[CheckResult]
    elapsed_ms: float

    @property
    def ok(self) -> bool:
        """True when no check has FAIL status (WARN is treated as passing)."""
        return all(c.status != CheckStatus.FAIL for c in self.checks)


# ---------------------------------------------------------------------------
# Individual check functions
# ---------------------------------------------------------------------------


async def check_database(store: CatalogStore, url: str) -> CheckResult:
    """Verify database connectivity and schema version."""
    name = "database"
    try:
        await asyncio.wait_for(store.ping(), timeout=_CHECK_TIMEOUT)
        stored = await asyncio.wait_for(store.get_schema_version(), timeout=_CHECK_TIMEOUT)
    except Exception as exc:
        return CheckResult(
            name, CheckStatus.FAIL, f"Unreachable ({url})", detail=str(exc), suggestion="Check database.url."
        )

    if stored is None:
        return CheckResult(
            name,
            CheckStatus.WARN,
            "No schema version found",
            detail="Database may be empty.",
            suggestion="Run 'catalog init-db' to create the schema.",
        )
    if stored > SCHEMA_VERSION:
        return CheckResult(
            name,
            CheckStatus.FAIL,
            f"Schema version {stored} > code {SCHEMA_VERSION}",
            detail="Database schema is newer than the installed code.",
            suggestion="Update your skill-catalog installation.",
        )
    if stored < SCHEMA_VERSION:
        return CheckResult(
            name,
            CheckStatus.WARN,
            f"Schema version {stored} (expected {SCHEMA_VERSION})",
            suggestion="Run 'catalog init-db' to migrate the schema.",
        )
    return CheckResult(name, CheckStatus.OK, f"Connected, schema version {stored}")


async def check_redis(redis_settings: RedisSettings) -> CheckResult:
    """Verify Redis connectivity (work queue and pipeline state)."""
    name = "redis"
    addr = f"{redis_settings.host}:{redis_settings.port}"
    bus = EventBus(redis_settings)
    try:
        ok = await asyncio.wait_for(bus.ping(), timeout=_CHECK_TIMEOUT)
        if ok:
            return CheckResult(name, CheckStatus.OK, f"Connected ({addr})")
        return CheckResult(name, CheckStatus.FAIL, f"Ping failed ({addr})", suggestion="docker compose up -d redis")
    except Exception as exc:
        return CheckResult(
            name,
            CheckStatus.FAIL,
            f"Unreachable ({addr})",
            detail=str(exc),
            suggestion="docker compose up -d redis",
        )
    finally:
        await bus.close()


async def check_blobs(blobs: BlobStore) -> CheckResult:
    """Verify the blob store accepts writes."""
    name = "blobs"
    try:
        ok = await asyncio.wait_for(blobs.ping(), timeout=_CHECK_TIMEOUT)
    except Exception as exc:
        return CheckResult(name, CheckStatus.FAIL, f"Unavailable ({blobs.backend_type})", detail=str(exc))
    if ok:
        return CheckResult(name, CheckStatus.OK, f"Writable ({blobs.backend_type})")
    return CheckResult(
        name, CheckStatus.FAIL, f"Not writable ({blobs.backend_type})", suggestion="Check blobs.root permissions."
    )


async def check_github(gh_settings: GitHubSettings) -> CheckResult:
    """Verify the GitHub API is reachable. Missing token is a warning."""
    name = "github"
    client = GitHubClient(gh_settings)
    try:
        ok = await asyncio.wait_for(client.ping(), timeout=_CHECK_TIMEOUT)
    except Exception as exc:
        return CheckResult(name, CheckStatus.WARN, f"Unreachable ({gh_settings.api_base})", detail=str(exc))
    finally:
        await client.close()

    if not ok:
        return CheckResult(name, CheckStatus.WARN, f"Unexpected response ({gh_settings.api_base})")
    if not gh_settings.token:
        return CheckResult(
            name,
            CheckStatus.WARN,
            f"Reachable without token ({gh_settings.api_base})",
            detail="Unauthenticated requests are limited to 60 per hour.",
            suggestion="Set CATALOG_GITHUB__TOKEN.",
        )
    return CheckResult(name, CheckStatus.OK, f"Reachable ({gh_settings.api_base})")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


async def run_health_checks(
    settings: CatalogSettings,
    *,
    store: CatalogStore | None = None,
    blobs: BlobStore | None = None,
) -> HealthReport:
    """Run all health checks concurrently and return an aggregated report.

    When called from the CLI, *store* and *blobs* are ``None``; temporary
    ones are created (and the store closed) here.
    """
    t0 = time.monotonic()

    own_store = store is None
    if store is None:
        store = CatalogStore(settings.database)
    if blobs is None:
        blobs = FileBlobStore(settings.blobs.root)

    try:
        results = list(
            await asyncio.gather(
                check_database(store, settings.database.url),
                check_redis(settings.redis),
                check_blobs(blobs),
                check_github(settings.github),
            )
        )
    finally:
        if own_store:
            await store.close()

    elapsed = (time.monotonic() - t0) * 1000
    return HealthReport(checks=results, elapsed_ms=elapsed)
