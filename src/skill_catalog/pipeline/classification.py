"""Classification stage: assign vocabulary categories to an indexed skill."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from skill_catalog.classifiers import ClassifierError
from skill_catalog.pipeline.outcomes import Failed, Outcome, Processed
from skill_catalog.schema import Tier
from skill_catalog.store import utcnow
from skill_catalog.telemetry import get_tracer

if TYPE_CHECKING:
    from skill_catalog.blobs import BlobStore
    from skill_catalog.classifiers import ClassifierCascade
    from skill_catalog.events import Classify
    from skill_catalog.store import CatalogStore

_tracer = get_tracer(__name__)


class ClassificationHandler:
    def __init__(self, store: CatalogStore, blobs: BlobStore, cascade: ClassifierCascade) -> None:
        self.store = store
        self.blobs = blobs
        self.cascade = cascade

    async def handle(self, item: Classify) -> Outcome:
        with _tracer.start_as_current_span("classification.handle", attributes={"skill_id": item.skill_id}):
            try:
                return await self._classify(item)
            except Exception as exc:
                logger.exception("Classifying {} failed", item.skill_id)
                return Failed(f"{type(exc).__name__}: {exc}", retryable=True)

    async def _classify(self, item: Classify) -> Outcome:
        data = await self.blobs.get(item.blob_path)
        if data is None:
            return Processed(f"manifest blob {item.blob_path} missing")
        skill = await self.store.get_skill(item.skill_id)
        if skill is None:
            return Processed("skill no longer exists")
        if skill["tier"] == Tier.ARCHIVED.value:
            # categories of an archived skill live only in its snapshot
            return Processed("skill archived")

        try:
            result = await self.cascade.classify(data.decode("utf-8", errors="replace"))
        except ClassifierError as exc:
            return Failed(str(exc), retryable=True)

        await self.store.replace_categories(item.skill_id, result.as_entries(), method=result.method, now=utcnow())
        logger.info(
            "Classified {} as {} via {} ({:.2f})",
            item.skill_id,
            ", ".join(result.categories),
            result.classifier,
            result.confidence,
        )
        return Processed(result.method.value)
