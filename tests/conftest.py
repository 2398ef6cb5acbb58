"""Shared test fixtures for the skill catalog."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from skill_catalog.blobs import FileBlobStore
from skill_catalog.events import Topic, WorkItem
from skill_catalog.github import RepoFile, RepoInfo
from skill_catalog.settings import BlobSettings, CatalogSettings, DatabaseSettings
from skill_catalog.store import CatalogStore

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def days_ago(n: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=n)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway SQLite file and blob root."""
    return CatalogSettings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}"),
        blobs=BlobSettings(root=tmp_path / "blobs"),
    )


@pytest.fixture
async def store(settings):
    s = CatalogStore(settings.database)
    await s.ensure_schema()
    yield s
    await s.close()


@pytest.fixture
def blobs(settings):
    return FileBlobStore(settings.blobs.root)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingBus:
    """Stands in for EventBus.publish; keeps everything published per topic."""

    def __init__(self) -> None:
        self.published: list[tuple[Topic, WorkItem]] = []

    async def publish(self, topic: Topic, item: WorkItem, *, maxlen: int = 10_000) -> bytes:  # noqa: ARG002
        self.published.append((topic, item))
        return f"{len(self.published)}-0".encode()

    def items(self, topic: Topic) -> list[WorkItem]:
        return [item for t, item in self.published if t == topic]


class FakeState:
    """In-memory StateStore (TTLs are recorded, never enforced)."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.writes: list[str] = []

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, *, ttl_s: int | None = None) -> None:
        self.data[key] = value
        self.ttls[key] = ttl_s
        self.writes.append(key)

    async def exists_many(self, keys: list[str]) -> set[str]:
        return {k for k in keys if k in self.data}

    async def put_json(self, key: str, payload: dict[str, Any], *, ttl_s: int) -> bool:
        import json

        await self.set(key, json.dumps(payload), ttl_s=ttl_s)
        return True

    async def get_json(self, key: str) -> dict[str, Any] | None:
        import json

        raw = self.data.get(key)
        return json.loads(raw) if raw else None


@dataclass
class FakeGitHub:
    """Serves repositories, files and trees from dicts. Missing entries behave like a 404."""

    repos: dict[tuple[str, str], RepoInfo] = field(default_factory=dict)
    files: dict[tuple[str, str, str], RepoFile] = field(default_factory=dict)
    trees: dict[tuple[str, str], list[str]] = field(default_factory=dict)
    events: list[dict[str, Any]] = field(default_factory=list)
    fail_with: Exception | None = None
    calls: list[str] = field(default_factory=list)

    def add_repo(self, repo: RepoInfo) -> RepoInfo:
        self.repos[(repo.owner.lower(), repo.name.lower())] = repo
        return repo

    def add_file(self, owner: str, name: str, path: str, content: str, sha: str = "sha-1") -> None:
        self.files[(owner.lower(), name.lower(), path)] = RepoFile(
            path=path, sha=sha, html_url=f"https://github.com/{owner}/{name}/blob/main/{path}", content=content
        )

    def set_stars(self, owner: str, name: str, stars: int) -> None:
        key = (owner.lower(), name.lower())
        self.repos[key] = replace(self.repos[key], stars=stars)

    async def get_repo(self, owner: str, name: str) -> RepoInfo | None:
        self.calls.append(f"repo:{owner}/{name}")
        if self.fail_with is not None:
            raise self.fail_with
        return self.repos.get((owner.lower(), name.lower()))

    async def get_file(self, owner: str, name: str, path: str) -> RepoFile | None:
        self.calls.append(f"file:{owner}/{name}/{path}")
        return self.files.get((owner.lower(), name.lower(), path))

    async def list_tree_paths(self, owner: str, name: str, ref: str) -> list[str]:  # noqa: ARG002
        self.calls.append(f"tree:{owner}/{name}")
        return self.trees.get((owner.lower(), name.lower()), [])

    async def list_public_events(self, per_page: int = 100) -> list[dict[str, Any]]:
        if self.fail_with is not None:
            raise self.fail_with
        return self.events[:per_page]


def make_repo(owner: str = "acme", name: str = "skills", **overrides: Any) -> RepoInfo:
    values: dict[str, Any] = {
        "owner": owner,
        "name": name,
        "owner_id": 4242,
        "owner_avatar_url": f"https://avatars.example/{owner}",
        "owner_type": "Organization",
        "html_url": f"https://github.com/{owner}/{name}",
        "description": "A collection of agent skills",
        "fork": False,
        "stars": 42,
        "forks": 3,
        "language": "Python",
        "license": "MIT",
        "topics": ["agents"],
        "default_branch": "main",
        "pushed_at": days_ago(3),
    }
    values.update(overrides)
    return RepoInfo(**values)


def skill_row(skill_id: str, **overrides: Any) -> dict[str, Any]:
    """Minimal insertable ``skills`` row."""
    values: dict[str, Any] = {
        "id": skill_id,
        "name": skill_id,
        "slug": f"slug-{skill_id}",
        "repo_owner": "acme",
        "repo_name": f"repo-{skill_id}",
        "skill_path": "",
        "stars": 0,
        "tier": "cold",
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return values


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def state():
    return FakeState()


@pytest.fixture
def github():
    return FakeGitHub()
