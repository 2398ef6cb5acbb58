"""Tests for the GitHub client against a mocked HTTP transport."""

from __future__ import annotations

import base64

import httpx
import pytest

from skill_catalog.github import GitHubClient, GitHubError, parse_timestamp
from skill_catalog.settings import GitHubSettings

REPO_JSON = {
    "name": "Skills",
    "owner": {"login": "Acme", "id": 7, "avatar_url": "https://a/7", "type": "Organization"},
    "html_url": "https://github.com/Acme/Skills",
    "description": "Agent skills",
    "fork": False,
    "stargazers_count": 120,
    "forks_count": 4,
    "language": "Python",
    "license": {"spdx_id": "MIT"},
    "topics": ["agents", "skills"],
    "default_branch": "trunk",
    "pushed_at": "2025-05-30T08:00:00Z",
}


def _client(handler, token: str = "") -> GitHubClient:
    return GitHubClient(GitHubSettings(token=token), transport=httpx.MockTransport(handler))


async def test_get_repo_maps_fields_and_sends_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=REPO_JSON)

    client = _client(handler, token="ghp_x")
    repo = await client.get_repo("acme", "skills")
    await client.close()

    assert repo is not None
    assert (repo.owner, repo.name, repo.owner_id, repo.stars, repo.license) == ("Acme", "Skills", 7, 120, "MIT")
    assert repo.default_branch == "trunk"
    assert repo.pushed_at == parse_timestamp("2025-05-30T08:00:00Z")
    assert seen[0].url.path == "/repos/acme/skills"
    assert seen[0].headers["Authorization"] == "Bearer ghp_x"


async def test_not_found_is_none():
    client = _client(lambda request: httpx.Response(404, json={"message": "Not Found"}))
    assert await client.get_repo("a", "b") is None
    assert await client.get_file("a", "b", "SKILL.md") is None
    assert await client.list_tree_paths("a", "b", "main") == []
    await client.close()


@pytest.mark.parametrize(("status", "retryable"), [(403, True), (429, True), (502, True), (422, False)])
async def test_error_statuses(status, retryable):
    client = _client(lambda request: httpx.Response(status))
    with pytest.raises(GitHubError) as info:
        await client.get_repo("a", "b")
    await client.close()
    assert info.value.status == status
    assert info.value.retryable is retryable


async def test_network_error_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(GitHubError) as info:
        await client.list_public_events()
    await client.close()
    assert info.value.retryable is True


async def test_get_file_decodes_base64():
    body = "---\nname: pdf\n---\n# PDF tools ✓\n"
    encoded = base64.b64encode(body.encode()).decode()
    payload = {
        "type": "file",
        "path": "tools/SKILL.md",
        "sha": "abc",
        "html_url": "https://github.com/a/b/blob/main/tools/SKILL.md",
        "content": encoded[:10] + "\n" + encoded[10:],
    }
    client = _client(lambda request: httpx.Response(200, json=payload))
    file = await client.get_file("a", "b", "tools/SKILL.md")
    await client.close()
    assert file is not None
    assert (file.sha, file.content) == ("abc", body)


async def test_get_file_ignores_directories():
    client = _client(lambda request: httpx.Response(200, json=[{"type": "file", "path": "x"}]))
    assert await client.get_file("a", "b", "tools") is None
    await client.close()


async def test_tree_lists_blobs_only():
    tree = {
        "truncated": False,
        "tree": [
            {"path": "a/SKILL.md", "type": "blob"},
            {"path": "a", "type": "tree"},
            {"path": "README.md", "type": "blob"},
        ],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["recursive"] == "1"
        return httpx.Response(200, json=tree)

    client = _client(handler)
    assert await client.list_tree_paths("a", "b", "main") == ["a/SKILL.md", "README.md"]
    await client.close()


async def test_events_passes_page_size():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["per_page"] == "30"
        return httpx.Response(200, json=[{"id": "1", "type": "PushEvent"}])

    client = _client(handler)
    assert await client.list_public_events(30) == [{"id": "1", "type": "PushEvent"}]
    await client.close()


def test_parse_timestamp():
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("2025-01-02T03:04:05Z").tzinfo is not None
