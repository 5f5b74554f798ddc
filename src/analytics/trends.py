"""Usage trend analysis — growth rate and classification per tracked metric."""

from __future__ import annotations

from datetime import datetime

from src.analytics.aggregator import Aggregator
from src.core.constants import (
    GROWTH_FROM_ZERO_PCT,
    TREND_HOURLY_FALLBACK_DAYS,
    TREND_MIN_POINTS,
    TREND_STABLE_THRESHOLD_PCT,
)
from src.core.logging import get_logger
from src.core.types import (
    AggregatedPoint,
    Granularity,
    TrendClassification,
    TrendReport,
    TrendResult,
)

log = get_logger(__name__)

# metric family -> field compared between first and last point
TREND_METRICS: dict[str, str] = {
    "api": "api_usage_percentage",
    "data": "data_usage_percentage",
    "file": "file_usage_percentage",
}


def calculate_growth_rate(initial: float | None, final: float | None) -> float:
    """Percent change from ``initial`` to ``final``.

    Absent values count as zero. Zero to zero is 0; zero to anything
    positive is reported as 100.
    """
    first = initial or 0.0
    last = final or 0.0
    if first == 0:
        return GROWTH_FROM_ZERO_PCT if last > 0 else 0.0
    return (last - first) / first * 100


def classify_trend(growth_rate: float) -> TrendClassification:
    if abs(growth_rate) < TREND_STABLE_THRESHOLD_PCT:
        return TrendClassification.STABLE
    if growth_rate > 0:
        return TrendClassification.INCREASING
    return TrendClassification.DECREASING


class TrendAnalyzer:
    """Classify usage trends from the first and last point of a series.

    Daily points over the requested window are preferred. With fewer than
    two of those, hourly points over at most the last week are used. With
    fewer than two points either way every metric is ``insufficient_data``.
    """

    def __init__(self, aggregator: Aggregator) -> None:
        self._aggregator = aggregator

    async def analyze(
        self, org_id: str, days: int, now: datetime | None = None,
    ) -> TrendReport:
        granularity = Granularity.DAY
        points = await self._aggregator.series(org_id, days, granularity, now)

        if len(points) < TREND_MIN_POINTS:
            log.debug("trend_fallback_hourly", org_id=org_id, daily_points=len(points))
            granularity = Granularity.HOUR
            points = await self._aggregator.series(
                org_id, min(days, TREND_HOURLY_FALLBACK_DAYS), granularity, now,
            )

        if len(points) < TREND_MIN_POINTS:
            return TrendReport(
                organization_id=org_id,
                days=days,
                granularity=granularity,
                points=len(points),
                metrics={
                    name: TrendResult(TrendClassification.INSUFFICIENT_DATA, 0.0)
                    for name in TREND_METRICS
                },
            )

        return TrendReport(
            organization_id=org_id,
            days=days,
            granularity=granularity,
            points=len(points),
            metrics=self.compare(points[0], points[-1]),
        )

    @staticmethod
    def compare(first: AggregatedPoint, last: AggregatedPoint) -> dict[str, TrendResult]:
        results: dict[str, TrendResult] = {}
        for name, field_name in TREND_METRICS.items():
            rate = calculate_growth_rate(
                getattr(first, field_name), getattr(last, field_name),
            )
            results[name] = TrendResult(classify_trend(rate), rate)
        return results
