"""Async client for the GitHub REST endpoints the pipeline depends on.

Only four shapes are used: the public events feed, repository metadata,
file contents and the recursive git tree. A 404 is a normal answer
(``None``); rate limiting and server errors are retryable failures.
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from skill_catalog.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from skill_catalog.settings import GitHubSettings

_tracer = get_tracer(__name__)

_RETRYABLE_STATUS = frozenset({403, 429})


class GitHubError(Exception):
    """A GitHub request failed.

    ``retryable`` is True for rate limiting, server errors and network
    failures, where redelivering the work item later can succeed.
    """

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = True) -> None:
        self.status = status
        self.retryable = retryable
        super().__init__(message)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps (``2024-01-01T00:00:00Z``)."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


@dataclass(frozen=True)
class RepoInfo:
    owner: str
    name: str
    owner_id: int
    owner_avatar_url: str
    owner_type: str
    html_url: str
    description: str | None
    fork: bool
    stars: int
    forks: int
    language: str | None
    license: str | None
    topics: list[str] = field(default_factory=list)
    default_branch: str = "main"
    pushed_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RepoInfo:
        owner = data.get("owner") or {}
        license_info = data.get("license") or {}
        return cls(
            owner=owner.get("login", ""),
            name=data.get("name", ""),
            owner_id=int(owner.get("id", 0)),
            owner_avatar_url=owner.get("avatar_url", ""),
            owner_type=owner.get("type", "User"),
            html_url=data.get("html_url", ""),
            description=data.get("description"),
            fork=bool(data.get("fork", False)),
            stars=int(data.get("stargazers_count", 0)),
            forks=int(data.get("forks_count", 0)),
            language=data.get("language"),
            license=license_info.get("spdx_id"),
            topics=list(data.get("topics") or []),
            default_branch=data.get("default_branch") or "main",
            pushed_at=parse_timestamp(data.get("pushed_at")),
        )


@dataclass(frozen=True)
class RepoFile:
    """A file fetched through the contents API."""

    path: str
    sha: str
    html_url: str
    content: str


class GitHubClient:
    """Thin async wrapper over ``httpx.AsyncClient`` for the GitHub REST API."""

    def __init__(self, settings: GitHubSettings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": settings.api_version,
            "User-Agent": settings.user_agent,
        }
        if settings.token:
            headers["Authorization"] = f"Bearer {settings.token}"
        self._client = httpx.AsyncClient(
            base_url=settings.api_base,
            headers=headers,
            timeout=settings.timeout_s,
            transport=transport,
            follow_redirects=True,
        )

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response | None:
        """GET *url*; ``None`` on 404, ``GitHubError`` on any other failure."""
        started = time.monotonic()
        with _tracer.start_as_current_span("github.get", attributes={"http.url": url}):
            try:
                response = await self._client.get(url, params=params)
            except httpx.TransportError as exc:
                raise GitHubError(f"GitHub request failed: {exc}", retryable=True) from exc
            finally:
                get_metrics().github_latency.record(time.monotonic() - started)

        if response.status_code == 404:
            return None
        if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
            remaining = response.headers.get("x-ratelimit-remaining")
            logger.warning("GitHub {} for {} (ratelimit remaining={})", response.status_code, url, remaining)
            raise GitHubError(f"GitHub API error: {response.status_code}", status=response.status_code)
        if response.is_error:
            raise GitHubError(
                f"GitHub API error: {response.status_code}", status=response.status_code, retryable=False
            )
        return response

    async def ping(self) -> bool:
        """Health check. ``/rate_limit`` does not count against the quota."""
        return await self._get("/rate_limit") is not None

    async def list_public_events(self, per_page: int = 100) -> list[dict[str, Any]]:
        response = await self._get("/events", params={"per_page": per_page})
        return response.json() if response is not None else []

    async def get_repo(self, owner: str, name: str) -> RepoInfo | None:
        response = await self._get(f"/repos/{owner}/{name}")
        return RepoInfo.from_api(response.json()) if response is not None else None

    async def get_file(self, owner: str, name: str, path: str) -> RepoFile | None:
        """Fetch a file's text. ``None`` if it is absent or not a regular file."""
        response = await self._get(f"/repos/{owner}/{name}/contents/{path}")
        if response is None:
            return None
        data = response.json()
        if not isinstance(data, dict) or data.get("type") != "file":
            return None

        if data.get("content"):
            raw = base64.b64decode(data["content"].replace("\n", ""))
            text = raw.decode("utf-8", errors="replace")
        elif data.get("download_url"):
            download = await self._get(data["download_url"])
            if download is None:
                return None
            text = download.text
        else:
            return None

        return RepoFile(
            path=data.get("path", path),
            sha=data.get("sha", ""),
            html_url=data.get("html_url", ""),
            content=text,
        )

    async def list_tree_paths(self, owner: str, name: str, ref: str) -> list[str]:
        """Return every blob path in the repository tree at *ref*."""
        response = await self._get(f"/repos/{owner}/{name}/git/trees/{ref}", params={"recursive": "1"})
        if response is None:
            return []
        data = response.json()
        if data.get("truncated"):
            logger.warning("Tree listing for {}/{} was truncated", owner, name)
        return [entry["path"] for entry in data.get("tree", []) if entry.get("type") == "blob"]

    async def close(self) -> None:
        await self._client.aclose()
