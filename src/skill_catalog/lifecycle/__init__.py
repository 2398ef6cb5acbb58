"""Lifecycle package: event discovery, tier recompute, archive and resurrection."""

from __future__ import annotations

from skill_catalog.lifecycle.archive import ArchiveEngine, ArchiveRunSummary, ResurrectionResult
from skill_catalog.lifecycle.discovery import DiscoveryRunner, TickResult, process_tick
from skill_catalog.lifecycle.tiers import TierEngine, TierPolicy, TierRunSummary, compute_tier, next_update_at

__all__ = [
    "ArchiveEngine",
    "ArchiveRunSummary",
    "DiscoveryRunner",
    "ResurrectionResult",
    "TickResult",
    "TierEngine",
    "TierPolicy",
    "TierRunSummary",
    "compute_tier",
    "next_update_at",
    "process_tick",
]
