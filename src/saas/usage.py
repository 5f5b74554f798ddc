"""Usage service — the owner-scoped entry points used by the API layer.

Exposes history, trends, summary, live limits, and scheduler control. Every
per-organization call first checks that the organization belongs to the
caller's owner id.
"""

from __future__ import annotations

from typing import Any

from src.analytics.aggregator import Aggregator
from src.analytics.trends import TrendAnalyzer
from src.core.constants import (
    DEFAULT_HISTORY_DAYS,
    HISTORY_MAX_DAYS,
    HISTORY_MIN_DAYS,
    TRENDS_MAX_DAYS,
    TRENDS_MIN_DAYS,
)
from src.core.exceptions import InvalidRequestError, SweepInProgressError
from src.core.interfaces import BaseHistoryStore
from src.core.logging import get_logger
from src.core.types import AggregatedPoint, Granularity, TrendReport, utcnow
from src.data.collector import LimitsFetcher
from src.data.scheduler import CollectionScheduler
from src.saas.organization import OrganizationRegistry

log = get_logger(__name__)


def _check_days(days: int, low: int, high: int) -> None:
    if isinstance(days, bool) or not isinstance(days, int) or not low <= days <= high:
        raise InvalidRequestError(
            f"days must be between {low} and {high}", {"days": days},
        )


def _parse_granularity(value: Granularity | str) -> Granularity:
    try:
        return Granularity(value)
    except ValueError as exc:
        raise InvalidRequestError(
            "granularity must be one of: hour, day, week", {"granularity": value},
        ) from exc


class UsageService:
    """Facade over registry, history, analytics, and the scheduler."""

    def __init__(
        self,
        registry: OrganizationRegistry,
        history: BaseHistoryStore,
        fetcher: LimitsFetcher,
        scheduler: CollectionScheduler,
    ) -> None:
        self._registry = registry
        self._history = history
        self._fetcher = fetcher
        self._scheduler = scheduler
        self._aggregator = Aggregator(history)
        self._trends = TrendAnalyzer(self._aggregator)

    async def list_history(
        self,
        org_id: str,
        owner_id: str,
        days: int = DEFAULT_HISTORY_DAYS,
        granularity: Granularity | str = Granularity.DAY,
    ) -> list[AggregatedPoint]:
        _check_days(days, HISTORY_MIN_DAYS, HISTORY_MAX_DAYS)
        gran = _parse_granularity(granularity)
        await self._registry.get(org_id, owner_id)
        return await self._aggregator.series(org_id, days, gran)

    async def get_trends(
        self, org_id: str, owner_id: str, days: int = DEFAULT_HISTORY_DAYS,
    ) -> TrendReport:
        _check_days(days, TRENDS_MIN_DAYS, TRENDS_MAX_DAYS)
        await self._registry.get(org_id, owner_id)
        return await self._trends.analyze(org_id, days)

    async def get_summary(self, org_id: str, owner_id: str) -> dict[str, Any]:
        """Latest usage, point counts, and 30-day trends.

        Returns ``has_data=False`` when nothing has been collected yet.
        """
        org = await self._registry.get(org_id, owner_id)
        now = utcnow()
        latest = await self._history.latest(org_id)
        if latest is None:
            return {
                "has_data": False,
                "message": "No historical data available for this organization",
                "needs_reconnect": org.needs_reconnect,
            }

        last_7 = await self._aggregator.series(org_id, 7, Granularity.DAY, now)
        last_30 = await self._aggregator.series(org_id, 30, Granularity.DAY, now)
        trends = await self._trends.analyze(org_id, DEFAULT_HISTORY_DAYS, now)
        return {
            "has_data": True,
            "latest_collection": latest.collected_at.isoformat(),
            "current_usage": {
                "api": latest.api_usage_percentage or 0.0,
                "data": latest.data_usage_percentage or 0.0,
                "file": latest.file_usage_percentage or 0.0,
            },
            "data_points": {
                "last_7_days": len(last_7),
                "last_30_days": len(last_30),
            },
            "trends": trends.to_dict(),
            "needs_reconnect": org.needs_reconnect,
        }

    async def get_current_limits(self, org_id: str, owner_id: str) -> dict[str, Any]:
        """Live limits straight from the remote API, outside any sweep."""
        return await self._fetcher.fetch_for(org_id, owner_id)

    async def trigger_collection_now(self) -> dict[str, Any]:
        try:
            result = await self._scheduler.trigger_now()
        except SweepInProgressError:
            log.info("manual_collection_rejected_in_progress")
            return {"accepted": False, "reason": "sweep_in_progress"}
        return {"accepted": True, **result.to_dict()}

    def get_scheduler_status(self) -> dict[str, Any]:
        return self._scheduler.status()

