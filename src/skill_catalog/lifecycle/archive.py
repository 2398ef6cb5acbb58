"""Archive engine and resurrection flow.

Archival moves a cold, unpopular skill out of the hot path: its record,
categories and manifest are serialized into one snapshot blob, then the
tier flips to ``archived`` and the hot manifest and category rows go away.
Resurrection is the exact inverse and consumes the snapshot.

Ordering keeps the blob store and the metadata store consistent: the
snapshot is written before any metadata changes, and blobs are only
deleted after the metadata transaction has committed.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from skill_catalog.blobs import archive_blob_path, manifest_blob_path
from skill_catalog.schema import Tier
from skill_catalog.store import utcnow
from skill_catalog.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from skill_catalog.blobs import BlobStore
    from skill_catalog.settings import ArchiveSettings, TierSettings
    from skill_catalog.state import StateStore
    from skill_catalog.store import CatalogStore

_tracer = get_tracer(__name__)

SNAPSHOT_VERSION = 1
ARCHIVE_PREFIX = "archive/"


# ---------------------------------------------------------------------------
# Snapshot codec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArchiveSnapshot:
    skill: dict[str, Any]
    categories: list[dict[str, Any]]
    manifest: str | None
    archived_at: str
    version: int = SNAPSHOT_VERSION


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def encode_snapshot(
    skill: dict[str, Any],
    categories: list[dict[str, Any]],
    manifest: bytes | None,
    archived_at: datetime,
) -> bytes:
    """Serialize a snapshot. Manifest bytes survive the round trip exactly."""
    doc = {
        "version": SNAPSHOT_VERSION,
        "skill": skill,
        "categories": [
            {"slug": c["slug"], "is_primary": bool(c["is_primary"]), "confidence": c.get("confidence")}
            for c in categories
        ],
        "manifest": manifest.decode("utf-8", errors="surrogateescape") if manifest is not None else None,
        "archived_at": archived_at.isoformat(),
    }
    return json.dumps(doc, default=_json_default).encode("utf-8")


def decode_snapshot(data: bytes) -> ArchiveSnapshot:
    doc = json.loads(data)
    version = doc.get("version")
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported archive snapshot version: {version!r}")
    return ArchiveSnapshot(
        skill=doc["skill"],
        categories=list(doc.get("categories") or []),
        manifest=doc.get("manifest"),
        archived_at=doc["archived_at"],
        version=version,
    )


def manifest_bytes(snapshot: ArchiveSnapshot) -> bytes | None:
    if snapshot.manifest is None:
        return None
    return snapshot.manifest.encode("utf-8", errors="surrogateescape")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResurrectionResult:
    success: bool
    restored: bool = False  # True when a snapshot was found and applied
    reason: str = ""


@dataclass
class ArchiveRunSummary:
    total: int = 0
    archived: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"total": self.total, "archived": self.archived, "failed": self.failed}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ArchiveEngine:
    """Archives cold skills into snapshot blobs and resurrects them on demand."""

    def __init__(
        self,
        store: CatalogStore,
        blobs: BlobStore,
        settings: ArchiveSettings,
        tiers: TierSettings,
        *,
        state: StateStore | None = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.settings = settings
        self.tiers = tiers
        self.state = state

    # -- archival --------------------------------------------------------------

    async def run(self, now: datetime | None = None) -> ArchiveRunSummary:
        """Archive up to ``batch_limit`` eligible skills; failures are counted, never fatal."""
        now = now or utcnow()
        started = time.monotonic()
        summary = ArchiveRunSummary()

        with _tracer.start_as_current_span("archive.run"):
            candidates = await self.store.find_archive_candidates(
                max_stars=self.tiers.archive_max_stars,
                access_cutoff=now - timedelta(seconds=self.tiers.archive_access_staleness_s),
                commit_cutoff=now - timedelta(seconds=self.tiers.archive_commit_staleness_s),
                limit=self.settings.batch_limit,
            )
            summary.total = len(candidates)
            for skill in candidates:
                if await self._archive_guarded(skill, now):
                    summary.archived += 1
                else:
                    summary.failed += 1
                    summary.failed_ids.append(skill["id"])

        get_metrics().job_duration.record(time.monotonic() - started, {"job": "archive"})
        logger.info(
            "Archive run: {} candidates, {} archived, {} failed", summary.total, summary.archived, summary.failed
        )
        if self.state is not None:
            await self.state.put_json(
                f"metrics:archive:{now:%Y-%m}", summary.as_dict(), ttl_s=self.settings.summary_ttl_s
            )
        return summary

    async def archive_skill(self, skill_id: str, now: datetime | None = None) -> bool:
        """Archive one skill by id. Returns False (logged) on any failure."""
        now = now or utcnow()
        skill = await self.store.get_skill(skill_id)
        if skill is None or skill["tier"] == Tier.ARCHIVED.value:
            logger.debug("Skill {} not archivable (missing or already archived)", skill_id)
            return False
        return await self._archive_guarded(skill, now)

    async def _archive_guarded(self, skill: dict[str, Any], now: datetime) -> bool:
        try:
            await self._archive(skill, now)
        except Exception:
            logger.exception("Failed to archive skill {}", skill["id"])
            return False
        return True

    async def _archive(self, skill: dict[str, Any], now: datetime) -> None:
        skill_id = skill["id"]
        categories = await self.store.get_categories(skill_id)
        hot_key = manifest_blob_path(skill["repo_owner"], skill["repo_name"], skill["skill_path"])
        manifest = await self.blobs.get(hot_key)
        if manifest is None:
            logger.warning("Archiving skill {} without a manifest blob ({})", skill_id, hot_key)

        archive_key = archive_blob_path(skill_id, now)
        await self.blobs.put(
            archive_key,
            encode_snapshot(skill, categories, manifest, now),
            content_type="application/json",
            metadata={"skill_id": skill_id, "archived_at": now.isoformat()},
        )

        try:
            await self.store.mark_archived(skill_id, now)
        except Exception:
            # Tier unchanged: drop the orphan snapshot so the two stores agree
            await self._delete_quietly(archive_key)
            raise

        await self._delete_quietly(hot_key)
        logger.info("Archived skill {} → {}", skill_id, archive_key)

    # -- resurrection ----------------------------------------------------------

    async def find_archive_key(self, skill_id: str) -> str | None:
        """Latest snapshot key for *skill_id* (keys sort chronologically)."""
        suffix = f"/{skill_id}.json"
        keys = [k for k in await self.blobs.list_prefix(ARCHIVE_PREFIX) if k.endswith(suffix)]
        return keys[-1] if keys else None

    async def resurrect(
        self, skill_id: str, now: datetime | None = None, *, touch_access: bool = True
    ) -> ResurrectionResult:
        """Restore an archived skill to ``cold``. Never raises.

        ``touch_access`` records the resurrection as an access (a user
        resubmission); the tier engine passes False when reviving on stars.
        """
        now = now or utcnow()
        with _tracer.start_as_current_span("archive.resurrect", attributes={"skill_id": skill_id}):
            try:
                return await self._resurrect(skill_id, now, touch_access)
            except Exception as exc:
                logger.exception("Failed to resurrect skill {}", skill_id)
                return ResurrectionResult(False, False, f"error: {exc}")

    async def _resurrect(self, skill_id: str, now: datetime, touch_access: bool) -> ResurrectionResult:
        skill = await self.store.get_skill(skill_id)
        if skill is None:
            return ResurrectionResult(False, False, "skill_not_found")
        if skill["tier"] != Tier.ARCHIVED.value:
            return ResurrectionResult(False, False, "not_archived")

        archive_key = await self.find_archive_key(skill_id)
        if archive_key is None:
            await self.store.mark_resurrected(skill_id, now, None, touch_access=touch_access)
            logger.warning("No archive snapshot for skill {}; set to cold without content", skill_id)
            return ResurrectionResult(True, False, "no_archive")

        data = await self.blobs.get(archive_key)
        if data is None:
            raise RuntimeError(f"Archive blob {archive_key} disappeared")
        snapshot = decode_snapshot(data)

        hot_key = manifest_blob_path(skill["repo_owner"], skill["repo_name"], skill["skill_path"])
        manifest = manifest_bytes(snapshot)
        if manifest is not None:
            await self.blobs.put(
                hot_key,
                manifest,
                content_type="text/markdown",
                metadata={"skill_id": skill_id, "restored_from": archive_key},
            )

        try:
            await self.store.mark_resurrected(skill_id, now, snapshot.categories, touch_access=touch_access)
        except Exception:
            # Still archived: the snapshot stays the only copy of the content
            if manifest is not None:
                await self._delete_quietly(hot_key)
            raise
        await self._delete_quietly(archive_key)
        logger.info("Resurrected skill {} from {}", skill_id, archive_key)
        return ResurrectionResult(True, True, "restored")

    async def _delete_quietly(self, key: str) -> None:
        try:
            await self.blobs.delete(key)
        except Exception:
            logger.exception("Failed to delete blob {}", key)
