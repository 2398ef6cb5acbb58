"""Pipeline package: work consumers, stage handlers, and daemon."""

from __future__ import annotations

from skill_catalog.pipeline.classification import ClassificationHandler
from skill_catalog.pipeline.consumers import ClassificationConsumer, IndexingConsumer, WorkConsumer
from skill_catalog.pipeline.daemon import DaemonManager
from skill_catalog.pipeline.indexing import IndexingHandler
from skill_catalog.pipeline.outcomes import Failed, Outcome, Processed

__all__ = [
    "ClassificationConsumer",
    "ClassificationHandler",
    "DaemonManager",
    "Failed",
    "IndexingConsumer",
    "IndexingHandler",
    "Outcome",
    "Processed",
    "WorkConsumer",
]
