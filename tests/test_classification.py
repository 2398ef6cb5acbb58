"""Tests for the classification handler."""

from __future__ import annotations

import pytest
from conftest import skill_row

from skill_catalog.classifiers import (
    ClassificationResult,
    Classifier,
    ClassifierCascade,
    ClassifierError,
    FrontmatterClassifier,
    KeywordClassifier,
)
from skill_catalog.events import Classify
from skill_catalog.pipeline.classification import ClassificationHandler
from skill_catalog.pipeline.outcomes import Failed, Processed
from skill_catalog.schema import ClassificationMethod

BLOB = "skills/acme/skills/SKILL.md"


class FailingClassifier(Classifier):
    name = "failing"

    async def classify(self, content: str) -> ClassificationResult:  # noqa: ARG002
        raise ClassifierError("always fails")


class FixedClassifier(Classifier):
    name = "fixed"

    def __init__(self, categories: list[str]) -> None:
        self.categories = categories

    async def classify(self, content: str) -> ClassificationResult:  # noqa: ARG002
        return ClassificationResult(self.categories, 0.8, ClassificationMethod.AI, self.name)


@pytest.fixture
async def seeded(store, blobs):
    await store.insert_skill(skill_row("s1", repo_owner="acme", repo_name="skills"))
    await blobs.put(BLOB, b"# Commit helper\n\ncommit, rebase and branch with git.\n")
    return Classify(skill_id="s1", repo_owner="acme", repo_name="skills", blob_path=BLOB)


async def test_keyword_fallback_assigns_git(store, blobs, seeded):
    handler = ClassificationHandler(store, blobs, ClassifierCascade([FailingClassifier(), KeywordClassifier()]))

    outcome = await handler.handle(seeded)

    assert outcome == Processed("keyword")
    cats = await store.get_categories("s1")
    assert cats[0]["slug"] == "git"
    assert cats[0]["is_primary"]
    assert not any(c["is_primary"] for c in cats[1:])
    assert all(c["confidence"] == 0.6 for c in cats)
    assert (await store.get_skill("s1"))["classification_method"] == "keyword"


async def test_reclassification_replaces_previous_set(store, blobs, seeded):
    await store.replace_categories(
        "s1",
        [{"slug": "security", "is_primary": True}, {"slug": "testing", "is_primary": False}],
        method="ai",
        now=skill_row("x")["created_at"],
    )
    handler = ClassificationHandler(store, blobs, ClassifierCascade([FixedClassifier(["devops", "automation"])]))

    assert isinstance(await handler.handle(seeded), Processed)
    assert [c["slug"] for c in await store.get_categories("s1")] == ["devops", "automation"]


async def test_frontmatter_categories_win(store, blobs, seeded):
    await blobs.put(BLOB, b"---\ncategory: testing\n---\n# git commit rebase\n")
    handler = ClassificationHandler(
        store, blobs, ClassifierCascade([FrontmatterClassifier(), FailingClassifier(), KeywordClassifier()])
    )
    assert await handler.handle(seeded) == Processed("direct")
    assert [c["slug"] for c in await store.get_categories("s1")] == ["testing"]


async def test_missing_blob_is_dropped(store, blobs):
    await store.insert_skill(skill_row("s1"))
    handler = ClassificationHandler(store, blobs, ClassifierCascade([KeywordClassifier()]))
    outcome = await handler.handle(Classify(skill_id="s1", repo_owner="a", repo_name="b", blob_path="missing/SKILL.md"))
    assert isinstance(outcome, Processed)
    assert await store.get_categories("s1") == []


async def test_missing_skill_is_dropped(store, blobs):
    await blobs.put(BLOB, b"content")
    handler = ClassificationHandler(store, blobs, ClassifierCascade([KeywordClassifier()]))
    outcome = await handler.handle(Classify(skill_id="gone", repo_owner="acme", repo_name="skills", blob_path=BLOB))
    assert outcome == Processed("skill no longer exists")


async def test_every_classifier_failing_is_retryable(store, blobs, seeded):
    handler = ClassificationHandler(store, blobs, ClassifierCascade([FailingClassifier()]))
    outcome = await handler.handle(seeded)
    assert isinstance(outcome, Failed)
    assert outcome.retryable is True
    assert await store.get_categories("s1") == []


async def test_archived_skill_keeps_no_categories(store, blobs):
    await store.insert_skill(skill_row("old", repo_owner="acme", repo_name="old", tier="archived"))
    stale = "skills/acme/old/SKILL.md"
    await blobs.put(stale, b"# Commit helper\n\ncommit, rebase and branch with git.\n")
    handler = ClassificationHandler(store, blobs, ClassifierCascade([KeywordClassifier()]))

    outcome = await handler.handle(Classify(skill_id="old", repo_owner="acme", repo_name="old", blob_path=stale))

    assert outcome == Processed("skill archived")
    assert await store.get_categories("old") == []
    assert (await store.get_skill("old"))["tier"] == "archived"
