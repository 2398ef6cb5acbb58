"""Indexing stage: turn a ``CheckSkill`` into catalog state.

Steps per item: fetch repository metadata, fetch the manifest, create or
refresh the skill row, write the manifest blob, emit ``Classify`` and
finally record the manifest sha. The sha is written last so a crash
anywhere earlier makes the redelivered item redo the full pass.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger

from skill_catalog.blobs import manifest_blob_path
from skill_catalog.events import CheckSkill, Classify, Topic, WorkItem, WorkSource
from skill_catalog.github import GitHubError
from skill_catalog.lifecycle.tiers import TierPolicy, compute_tier, next_update_at
from skill_catalog.manifest import (
    content_hash,
    derive_description,
    derive_name,
    generate_slug,
    is_in_dot_folder,
    manifest_candidates,
    nested_manifest_dirs,
    parse_manifest,
)
from skill_catalog.pipeline.outcomes import Failed, Outcome, Processed
from skill_catalog.schema import SourceType, Tier, Visibility
from skill_catalog.store import utcnow
from skill_catalog.telemetry import get_tracer
from skill_catalog.trending import record_snapshot, trending_score

if TYPE_CHECKING:
    from datetime import datetime

    from skill_catalog.blobs import BlobStore
    from skill_catalog.github import GitHubClient, RepoFile, RepoInfo
    from skill_catalog.manifest import ParsedManifest
    from skill_catalog.settings import CatalogSettings
    from skill_catalog.store import CatalogStore

_tracer = get_tracer(__name__)

_MAX_SLUG_SUFFIX = 100


class Publisher(Protocol):
    async def publish(self, topic: Topic, item: WorkItem, *, maxlen: int = ...) -> bytes: ...


class IndexingHandler:
    """Pure-ish handler: all I/O goes through the injected collaborators."""

    def __init__(
        self,
        store: CatalogStore,
        blobs: BlobStore,
        github: GitHubClient,
        bus: Publisher,
        settings: CatalogSettings,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.github = github
        self.bus = bus
        self.settings = settings
        self.policy = TierPolicy.from_settings(settings.tiers)

    async def handle(self, item: CheckSkill) -> Outcome:
        label = f"{item.repo_owner}/{item.repo_name}:{item.skill_path or '/'}"
        with _tracer.start_as_current_span("indexing.handle", attributes={"skill": label}):
            try:
                return await self._index(item)
            except GitHubError as exc:
                return Failed(f"GitHub: {exc}", retryable=exc.retryable)
            except Exception as exc:
                logger.exception("Indexing {} failed", label)
                return Failed(f"{type(exc).__name__}: {exc}", retryable=True)

    # -- steps -----------------------------------------------------------------

    async def _index(self, item: CheckSkill) -> Outcome:
        skill_path = item.skill_path.strip("/")
        if skill_path and is_in_dot_folder(f"{skill_path}/"):
            return Processed("dot folder, not indexed")

        repo = await self.github.get_repo(item.repo_owner, item.repo_name)
        if repo is None:
            return Processed("repository not found")
        if repo.fork:
            return Processed("fork, not indexed")

        manifest = await self._fetch_manifest(repo, skill_path)
        if manifest is None:
            if not skill_path and self.settings.indexing.discover_nested:
                return await self._enqueue_nested(repo, item)
            return Processed("no manifest")

        parsed = parse_manifest(manifest.content)
        chash = content_hash(manifest.content)
        now = utcnow()

        existing = await self.store.find_skill(repo.owner, repo.name, skill_path)
        if existing is not None:
            if existing["tier"] == Tier.ARCHIVED.value:
                # Only a user resubmission (which resurrects first) brings it back
                return Processed("archived, not re-indexed")
            skill_id = existing["id"]
            await self.store.update_skill(skill_id, self._stats_values(repo, existing, now))
        else:
            if repo.stars < self.settings.indexing.duplicate_guard_max_stars:
                original = await self.store.find_duplicate(
                    chash, self.settings.indexing.duplicate_guard_min_original_stars
                )
                if original is not None:
                    logger.info(
                        "Rejecting {}/{}:{} as a copy of {}/{} ({} stars)",
                        repo.owner,
                        repo.name,
                        skill_path,
                        original["repo_owner"],
                        original["repo_name"],
                        original["stars"],
                    )
                    return Processed("duplicate of a popular skill")
            skill_id = await self._create_skill(repo, manifest, parsed, skill_path, chash, now)

        blob_key = manifest_blob_path(repo.owner, repo.name, skill_path)
        if (
            existing is not None
            and existing["manifest_sha"] == manifest.sha
            and await self.blobs.exists(blob_key)
            and await self.store.has_categories(skill_id)
        ):
            return Processed("content unchanged")

        await self.blobs.put(
            blob_key,
            manifest.content.encode("utf-8"),
            content_type="text/markdown",
            metadata={
                "skill_id": skill_id,
                "sha": manifest.sha,
                "indexed_at": now.isoformat(),
                "skill_path": skill_path,
            },
        )
        if existing is not None and existing["content_hash"] != chash:
            await self.store.update_skill(skill_id, {"content_hash": chash, "manifest_url": manifest.html_url})

        await self.bus.publish(
            Topic.CLASSIFY,
            Classify(skill_id=skill_id, repo_owner=repo.owner, repo_name=repo.name, blob_path=blob_key),
            maxlen=self.settings.queue.maxlen,
        )
        await self.store.set_manifest_sha(skill_id, manifest.sha)
        logger.info("Indexed {}/{}:{} as {}", repo.owner, repo.name, skill_path or "/", skill_id)
        return Processed("indexed")

    async def _fetch_manifest(self, repo: RepoInfo, skill_path: str) -> RepoFile | None:
        for path in manifest_candidates(skill_path):
            file = await self.github.get_file(repo.owner, repo.name, path)
            if file is not None:
                return file
        return None

    async def _enqueue_nested(self, repo: RepoInfo, item: CheckSkill) -> Outcome:
        tree = await self.github.list_tree_paths(repo.owner, repo.name, repo.default_branch)
        dirs = nested_manifest_dirs(tree, limit=self.settings.indexing.max_nested_manifests)
        if not dirs:
            return Processed("no manifest")
        for directory in dirs:
            await self.bus.publish(
                Topic.CHECK_SKILL,
                CheckSkill(
                    repo_owner=repo.owner,
                    repo_name=repo.name,
                    skill_path=directory,
                    event_id=item.event_id,
                    source=WorkSource.NESTED.value,
                ),
                maxlen=self.settings.queue.maxlen,
            )
        logger.info("{}/{}: enqueued {} nested manifest(s)", repo.owner, repo.name, len(dirs))
        return Processed(f"enqueued {len(dirs)} nested manifests")

    def _stats_values(self, repo: RepoInfo, existing: dict[str, Any], now: datetime) -> dict[str, Any]:
        snapshots = record_snapshot(existing["star_snapshots"], existing["stars"], repo.stars, now)
        indexed_at = existing["indexed_at"] or now
        return {
            "stars": repo.stars,
            "forks": repo.forks,
            "language": repo.language,
            "license": repo.license,
            "topics": repo.topics,
            "last_commit_at": repo.pushed_at,
            "star_snapshots": snapshots,
            "trending_score": trending_score(repo.stars, snapshots, indexed_at, repo.pushed_at, now),
            "indexed_at": now,
            "updated_at": now,
        }

    async def _choose_slug(self, repo: RepoInfo, skill_path: str, display_name: str | None) -> str:
        """Display-name slug → path slug → numeric suffix, first free one wins."""
        candidates = []
        if skill_path and display_name:
            candidates.append(generate_slug(repo.owner, repo.name, skill_path, display_name))
        base = generate_slug(repo.owner, repo.name, skill_path)
        candidates.append(base)
        candidates.extend(f"{base}-{n}" for n in range(2, _MAX_SLUG_SUFFIX))
        for slug in candidates:
            if not await self.store.slug_exists(slug):
                return slug
        return f"{base}-{uuid.uuid4().hex[:8]}"

    async def _create_skill(
        self,
        repo: RepoInfo,
        manifest: RepoFile,
        parsed: ParsedManifest,
        skill_path: str,
        chash: str,
        now: datetime,
    ) -> str:
        display_name = parsed.frontmatter.name if parsed.frontmatter else None
        tier = compute_tier(repo.stars, None, repo.pushed_at, now, self.policy)
        if tier == Tier.ARCHIVED:
            tier = Tier.COLD  # new entries start reachable; the archive engine decides later
        author_id = f"github-{repo.owner_id}"
        snapshots = record_snapshot(None, -1, repo.stars, now)

        skill_id = await self.store.insert_skill(
            {
                "id": uuid.uuid4().hex,
                "name": derive_name(parsed, repo.name),
                "slug": await self._choose_slug(repo, skill_path, display_name),
                "description": derive_description(
                    parsed, repo.description, max_chars=self.settings.indexing.description_max_chars
                ),
                "repo_owner": repo.owner,
                "repo_name": repo.name,
                "skill_path": skill_path,
                "repo_url": repo.html_url,
                "manifest_url": manifest.html_url,
                "stars": repo.stars,
                "forks": repo.forks,
                "star_snapshots": snapshots,
                "trending_score": trending_score(repo.stars, snapshots, now, repo.pushed_at, now),
                "language": repo.language,
                "license": repo.license,
                "topics": repo.topics,
                "author_id": author_id,
                "last_commit_at": repo.pushed_at,
                "visibility": Visibility.PUBLIC.value,
                "source_type": SourceType.GITHUB.value,
                "content_hash": chash,
                "tier": tier.value,
                "next_update_at": next_update_at(tier, now, self.policy),
                "created_at": now,
                "updated_at": now,
                "indexed_at": now,
            }
        )
        await self.store.upsert_author(
            {
                "id": author_id,
                "github_id": repo.owner_id,
                "username": repo.owner,
                "avatar_url": repo.owner_avatar_url,
                "type": repo.owner_type,
            },
            now,
        )
        return skill_id
