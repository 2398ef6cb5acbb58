"""Star snapshot history and trending score.

Pure functions; callers pass ``now`` so results are reproducible.
A snapshot is ``{"d": "YYYY-MM-DD", "s": stars}``.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta

MAX_SNAPSHOTS = 20

Snapshot = dict[str, object]


def _stars_days_ago(snapshots: list[Snapshot], days_ago: int, current: int, now: datetime) -> int:
    if not snapshots:
        return current
    target = (now - timedelta(days=days_ago)).date().isoformat()
    for snap in reversed(snapshots):
        if str(snap["d"]) <= target:
            return int(snap["s"])
    return int(snapshots[0]["s"])


def trending_score(
    stars: int,
    snapshots: list[Snapshot],
    indexed_at: datetime,
    last_commit_at: datetime | None,
    now: datetime,
) -> float:
    """log-scaled stars × growth velocity × recency boost × inactivity penalty."""
    base = math.log10(stars + 1) * 10

    growth_7d = max(0.0, (stars - _stars_days_ago(snapshots, 7, stars, now)) / 7)
    growth_30d = max(0.0, (stars - _stars_days_ago(snapshots, 30, stars, now)) / 30)
    if growth_30d > 0.1:
        acceleration = growth_7d / growth_30d
    else:
        acceleration = 2.0 if growth_7d > 0 else 1.0
    velocity = min(5.0, max(1.0, 1.0 + math.log2(growth_7d + 1) * min(acceleration, 3) * 0.4))

    days_since_indexed = (now - indexed_at).total_seconds() / 86400
    recency = max(1.0, 1.5 - days_since_indexed / 14)

    penalty = 1.0
    if last_commit_at is not None:
        days_since_commit = (now - last_commit_at).total_seconds() / 86400
        if days_since_commit > 365:
            penalty = 0.3
        elif days_since_commit > 180:
            penalty = 0.5
        elif days_since_commit > 90:
            penalty = 0.7
        elif days_since_commit > 30:
            penalty = 0.9

    return round(base * velocity * recency * penalty, 2)


def compress_snapshots(snapshots: list[Snapshot], now: datetime) -> list[Snapshot]:
    """Thin the history to at most ``MAX_SNAPSHOTS`` points.

    Keeps the first and last points, the last 7 days, Sundays within 8 weeks,
    month starts before that, and any >10% jump.
    """
    if len(snapshots) <= MAX_SNAPSHOTS:
        return snapshots

    today = now.date()
    kept: list[Snapshot] = []
    for i, snap in enumerate(snapshots):
        day = date.fromisoformat(str(snap["d"]))
        days_ago = (today - day).days
        prev_stars = int(snapshots[i - 1]["s"]) if i > 0 else 0
        significant = prev_stars > 0 and abs(int(snap["s"]) - prev_stars) / prev_stars > 0.1
        if (
            i == 0
            or i == len(snapshots) - 1
            or days_ago <= 7
            or (days_ago <= 56 and day.weekday() == 6)
            or (days_ago > 56 and day.day == 1)
            or significant
        ):
            kept.append(snap)
    return kept[-MAX_SNAPSHOTS:]


def record_snapshot(
    snapshots: list[Snapshot] | None, previous_stars: int, stars: int, now: datetime
) -> list[Snapshot]:
    """Append today's point when the star count changed, then compress."""
    history = list(snapshots or [])
    if stars != previous_stars:
        today = now.date().isoformat()
        if history and history[-1]["d"] == today:
            history[-1] = {"d": today, "s": stars}
        else:
            history.append({"d": today, "s": stars})
    return compress_snapshots(history, now)
