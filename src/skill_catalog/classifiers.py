"""Cascading skill classifiers.

Every classifier implements ``classify(content) -> ClassificationResult`` and
raises ``ClassifierError`` when it cannot produce an answer. The cascade tries
them in order: declared front-matter categories, a primary and a secondary
remote model (routed through litellm), then local keyword matching, which
never fails.
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import litellm
from loguru import logger

from skill_catalog.categories import CATEGORIES, CATEGORY_SLUGS, FALLBACK_CATEGORY
from skill_catalog.manifest import parse_manifest
from skill_catalog.schema import ClassificationMethod
from skill_catalog.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from skill_catalog.settings import ClassifierSettings

_tracer = get_tracer(__name__)

MAX_CATEGORIES = 3
KEYWORD_CONFIDENCE = 0.6
FALLBACK_CONFIDENCE = 0.3
DEFAULT_CONFIDENCE = 0.5
TAG_KEYWORD_BOOST = 3
TAG_SLUG_BOOST = 5

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class ClassifierError(Exception):
    """Raised when a classifier cannot produce a valid classification."""


@dataclass(frozen=True)
class ClassificationResult:
    categories: list[str]  # most relevant first; the first one is primary
    confidence: float
    method: ClassificationMethod
    classifier: str = ""
    reasoning: str = ""

    def as_entries(self) -> list[dict[str, Any]]:
        """Rows for the category association table."""
        return [
            {"slug": slug, "is_primary": i == 0, "confidence": self.confidence}
            for i, slug in enumerate(self.categories)
        ]


# ---------------------------------------------------------------------------
# Prompt building / response parsing
# ---------------------------------------------------------------------------


def author_tags(content: str) -> list[str]:
    """Lower-cased tags the author declared in the manifest front-matter."""
    parsed = parse_manifest(content)
    return parsed.frontmatter.tags if parsed.frontmatter else []


def build_prompt(content: str, *, max_chars: int = 4000) -> str:
    """Fixed classification prompt: vocabulary, author tags as hints, truncated manifest."""
    vocabulary = "\n".join(
        f"- {c.slug}: {c.name} - {c.description} (keywords: {', '.join(c.keywords)})" for c in CATEGORIES
    )
    tags = author_tags(content)
    hint = f"Author-provided tags (use as hints for classification): {', '.join(tags)}\n\n" if tags else ""
    return (
        "You are a skill classifier for AI agent skills. Analyze the following SKILL.md content "
        "and classify it into 1-3 most relevant categories.\n\n"
        f"Available categories:\n{vocabulary}\n\n"
        f"{hint}"
        f"SKILL.md content:\n---\n{content[:max_chars]}\n---\n\n"
        "Respond with a JSON object containing:\n"
        "- categories: array of category slugs (1-3 items, most relevant first)\n"
        "- confidence: number between 0 and 1\n"
        "- reasoning: brief explanation of why these categories were chosen\n\n"
        "Example response:\n"
        '{"categories": ["git", "automation"], "confidence": 0.85, '
        '"reasoning": "This skill automates git commit message generation"}\n\n'
        "Respond ONLY with the JSON object, no other text."
    )


def _valid_categories(candidates: Any) -> list[str]:
    if not isinstance(candidates, list):
        return []
    valid = [c for c in candidates if isinstance(c, str) and c in CATEGORY_SLUGS]
    return list(dict.fromkeys(valid))[:MAX_CATEGORIES]


def parse_classification_response(text: str) -> tuple[list[str], float, str]:
    """Extract ``(categories, confidence, reasoning)`` from a model reply.

    Raises:
        ClassifierError: No JSON object, invalid JSON, or no known category.
    """
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        raise ClassifierError("No JSON object in response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ClassifierError(f"Invalid JSON in response: {exc}") from exc
    if not isinstance(data, dict):
        raise ClassifierError("Response JSON is not an object")

    categories = _valid_categories(data.get("categories"))
    if not categories:
        raise ClassifierError("Response contains no known category")

    try:
        confidence = float(data.get("confidence") or DEFAULT_CONFIDENCE)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    confidence = min(1.0, max(0.0, confidence))
    return categories, confidence, str(data.get("reasoning") or "")


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------


class Classifier(ABC):
    name: str = "classifier"

    @abstractmethod
    async def classify(self, content: str) -> ClassificationResult:
        """Classify manifest *content*. Raises ``ClassifierError`` on failure."""


class FrontmatterClassifier(Classifier):
    """Accept categories the author declared in the manifest front-matter."""

    name = "frontmatter"

    async def classify(self, content: str) -> ClassificationResult:
        parsed = parse_manifest(content)
        declared = parsed.frontmatter.categories if parsed.frontmatter else []
        categories = _valid_categories(declared)
        if not categories:
            raise ClassifierError("No known category declared in front-matter")
        return ClassificationResult(
            categories, 1.0, ClassificationMethod.DIRECT, self.name, "Declared in front-matter"
        )


class LLMClassifier(Classifier):
    """Remote chat-completion classifier backed by litellm."""

    def __init__(
        self,
        name: str,
        model: str,
        *,
        api_key: str,
        api_base: str | None = None,
        max_content_chars: int = 4000,
        temperature: float = 0.3,
        max_tokens: int = 500,
        timeout_s: float = 30.0,
    ) -> None:
        self.name = name
        self._model = model
        self._api_key = api_key
        self._api_base = api_base
        self._max_content_chars = max_content_chars
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout_s

    async def classify(self, content: str) -> ClassificationResult:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": "user", "content": build_prompt(content, max_chars=self._max_content_chars)}],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "timeout": self._timeout,
            "api_key": self._api_key,
        }
        if self._api_base:
            kwargs["api_base"] = self._api_base

        started = time.monotonic()
        with _tracer.start_as_current_span("classifier.completion", attributes={"classifier": self.name}):
            try:
                response = await litellm.acompletion(**kwargs)
                text = response.choices[0].message.content
            except Exception as exc:
                raise ClassifierError(f"{self.name} request failed: {exc}") from exc
            finally:
                get_metrics().classifier_latency.record(time.monotonic() - started, {"classifier": self.name})

        if not text:
            raise ClassifierError(f"{self.name} returned no content")
        categories, confidence, reasoning = parse_classification_response(text)
        return ClassificationResult(categories, confidence, ClassificationMethod.AI, self.name, reasoning)


class KeywordClassifier(Classifier):
    """Whole-word keyword counting, boosted by author tags. Always answers."""

    name = "keyword"

    def __init__(self) -> None:
        self._patterns = [
            (c.slug, c.keywords, [re.compile(rf"\b{re.escape(kw)}\b") for kw in c.keywords]) for c in CATEGORIES
        ]

    async def classify(self, content: str) -> ClassificationResult:
        lowered = content.lower()
        tags = set(author_tags(content))
        scores: dict[str, int] = {}
        for slug, keywords, patterns in self._patterns:
            score = sum(len(p.findall(lowered)) for p in patterns)
            score += TAG_KEYWORD_BOOST * sum(1 for kw in keywords if kw in tags)
            if slug in tags:
                score += TAG_SLUG_BOOST
            if score:
                scores[slug] = score

        if not scores:
            return ClassificationResult(
                [FALLBACK_CATEGORY], FALLBACK_CONFIDENCE, ClassificationMethod.KEYWORD, self.name, "No keyword matched"
            )
        # sorted() is stable, so ties keep vocabulary order
        ranked = sorted(scores, key=lambda s: scores[s], reverse=True)[:MAX_CATEGORIES]
        return ClassificationResult(
            ranked, KEYWORD_CONFIDENCE, ClassificationMethod.KEYWORD, self.name, "Keyword match"
        )


@dataclass
class ClassifierCascade:
    """Try each classifier in order; the first success wins."""

    classifiers: list[Classifier] = field(default_factory=list)

    async def classify(self, content: str) -> ClassificationResult:
        for classifier in self.classifiers:
            try:
                result = await classifier.classify(content)
            except ClassifierError as exc:
                logger.info("Classifier {} failed, falling through: {}", classifier.name, exc)
                continue
            get_metrics().classifications_total.add(1, {"method": result.method.value})
            return result
        raise ClassifierError("Every classifier failed")


def build_cascade(settings: ClassifierSettings) -> ClassifierCascade:
    """Assemble the configured cascade. Remote models without an API key are skipped."""
    chain: list[Classifier] = []
    if settings.use_frontmatter:
        chain.append(FrontmatterClassifier())
    common = {
        "max_content_chars": settings.max_content_chars,
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
        "timeout_s": settings.timeout_s,
    }
    if settings.primary_api_key:
        chain.append(
            LLMClassifier(
                "primary",
                settings.primary_model,
                api_key=settings.primary_api_key,
                api_base=settings.primary_api_base,
                **common,
            )
        )
    if settings.secondary_api_key:
        chain.append(
            LLMClassifier(
                "secondary",
                settings.secondary_model,
                api_key=settings.secondary_api_key,
                api_base=settings.secondary_api_base,
                **common,
            )
        )
    chain.append(KeywordClassifier())
    return ClassifierCascade(chain)
