"""Granularity bucketing — snapshots into hour/day/week aggregated points."""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, time, timedelta, timezone
from typing import Sequence

from src.core.constants import METRIC_FIELDS
from src.core.exceptions import AggregationError
from src.core.interfaces import BaseHistoryStore
from src.core.logging import get_logger
from src.core.types import AggregatedPoint, Granularity, Snapshot, utcnow

log = get_logger(__name__)


def bucket_start(ts: datetime, granularity: Granularity) -> datetime:
    """UTC start of the bucket holding ``ts``.

    ``day`` is the UTC calendar date; ``week`` is the most recent Sunday at
    or before the timestamp.
    """
    ts_utc = ts.astimezone(timezone.utc) if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    if granularity is Granularity.HOUR:
        return ts_utc.replace(minute=0, second=0, microsecond=0)
    day = ts_utc.date()
    if granularity is Granularity.WEEK:
        # Monday=0 .. Sunday=6 -> days since Sunday
        day -= timedelta(days=(day.weekday() + 1) % 7)
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _validated_metrics(snapshot: Snapshot) -> dict[str, float | None]:
    """Metric values of a snapshot, or AggregationError if malformed."""
    if not isinstance(snapshot.collected_at, datetime):
        raise AggregationError(
            "snapshot has no valid timestamp", {"snapshot_id": snapshot.snapshot_id},
        )
    values: dict[str, float | None] = {}
    for name in METRIC_FIELDS:
        value = getattr(snapshot, name, None)
        if value is None:
            values[name] = None
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise AggregationError(
                f"snapshot field {name} is not numeric",
                {"snapshot_id": snapshot.snapshot_id},
            )
        values[name] = float(value)
    return values


class Aggregator:
    """Group raw snapshots into mean-valued buckets.

    Within a bucket each field is averaged over the snapshots that carry it;
    an absent field is left out of that field's mean rather than counted as
    zero. Malformed snapshots are logged and skipped.
    """

    def __init__(self, history: BaseHistoryStore | None = None) -> None:
        self._history = history

    def group(
        self, snapshots: Sequence[Snapshot], granularity: Granularity | str,
    ) -> list[AggregatedPoint]:
        granularity = Granularity(granularity)

        valid: list[tuple[Snapshot, dict[str, float | None]]] = []
        for snap in snapshots:
            try:
                valid.append((snap, _validated_metrics(snap)))
            except AggregationError as exc:
                log.warning("snapshot_skipped_malformed", error=str(exc), **exc.context)

        if granularity is Granularity.HOUR:
            points = [
                AggregatedPoint(collected_at=snap.collected_at, sample_count=1, **values)
                for snap, values in valid
            ]
            return sorted(points, key=lambda p: p.collected_at)

        buckets: dict[datetime, list[dict[str, float | None]]] = defaultdict(list)
        for snap, values in valid:
            buckets[bucket_start(snap.collected_at, granularity)].append(values)

        return [
            _average(key, buckets[key]) for key in sorted(buckets)
        ]

    async def series(
        self,
        org_id: str,
        days: int,
        granularity: Granularity | str,
        now: datetime | None = None,
    ) -> list[AggregatedPoint]:
        """Query ``[now - days, now]`` from the history store and group it."""
        if self._history is None:
            msg = "Aggregator was built without a history store"
            raise RuntimeError(msg)
        end = now or utcnow()
        snapshots = await self._history.query(org_id, end - timedelta(days=days), end)
        return self.group(snapshots, granularity)


def _average(key: datetime, rows: list[dict[str, float | None]]) -> AggregatedPoint:
    means: dict[str, float | None] = {}
    for name in METRIC_FIELDS:
        present = [row[name] for row in rows if row[name] is not None]
        means[name] = sum(present) / len(present) if present else None  # type: ignore[arg-type]
    return AggregatedPoint(collected_at=key, sample_count=len(rows), **means)
