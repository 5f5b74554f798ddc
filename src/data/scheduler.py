"""Collection scheduler — periodic, overlap-guarded sweeps over all tenants."""

from __future__ import annotations

import asyncio
from typing import Any

from config.settings import get_settings
from src.core.exceptions import (
    FetchFailedError,
    SweepCancelledError,
    SweepInProgressError,
)
from src.core.interfaces import BaseHistoryStore
from src.core.logging import get_logger
from src.core.types import OrganizationSummary, SweepResult, utcnow
from src.data.collector import LimitsFetcher
from src.data.normalizer import build_snapshot
from src.saas.organization import OrganizationRegistry

log = get_logger(__name__)


class CollectionScheduler:
    """Run collection sweeps on a fixed interval and on demand.

    The timer loop and ``trigger_now()`` share one guard, so at most one sweep
    is ever in flight. Within a sweep each organization is collected inside
    its own failure boundary on a worker pool bounded by
    ``max_concurrency``; one failing tenant never blocks the others.

    Construct once at process start and pass the instance to whatever needs
    to trigger or inspect it.
    """

    def __init__(
        self,
        registry: OrganizationRegistry,
        fetcher: LimitsFetcher,
        history: BaseHistoryStore,
        interval_minutes: float | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._fetcher = fetcher
        self._history = history
        self._interval_minutes = interval_minutes or settings.sweep_interval_minutes
        self._max_concurrency = max_concurrency or settings.max_concurrent_fetches
        self._sweep_lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._cancel: asyncio.Event | None = None
        self._last_sweep: SweepResult | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_lock.locked()

    @property
    def last_sweep(self) -> SweepResult | None:
        return self._last_sweep

    async def start(
        self, interval_minutes: float | None = None, run_immediately: bool = True,
    ) -> None:
        """Start the recurring sweep loop. No-op if already running."""
        if self._running:
            log.info("scheduler_already_running")
            return
        if interval_minutes is not None:
            self._interval_minutes = interval_minutes
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._loop(run_immediately), name="collection_scheduler",
        )
        log.info("scheduler_started", interval_min=self._interval_minutes)

    async def stop(self, cancel_in_flight: bool = False) -> None:
        """Stop future sweeps and wait for the loop to exit.

        An in-flight sweep runs to completion unless ``cancel_in_flight`` is
        set, in which case tenants not yet past their next network call are
        skipped.
        """
        if cancel_in_flight and self._cancel is not None:
            self._cancel.set()
            log.info("in_flight_sweep_cancelled")
        if not self._running:
            log.info("scheduler_not_running")
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        log.info("scheduler_stopped")

    async def trigger_now(self) -> SweepResult:
        """Run one sweep immediately.

        Raises:
            SweepInProgressError: a sweep is already running.
        """
        log.info("manual_sweep_triggered")
        return await self._run_guarded()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "sweeping": self.is_sweeping,
            "interval_minutes": self._interval_minutes,
            "max_concurrency": self._max_concurrency,
            "last_sweep": self._last_sweep.to_dict() if self._last_sweep else None,
        }

    # ── internals ─────────────────────────────────────────────────

    async def _loop(self, run_immediately: bool) -> None:
        interval_seconds = self._interval_minutes * 60
        if not run_immediately:
            await self._wait_interval(interval_seconds)

        while self._running:
            try:
                await self._run_guarded()
            except SweepInProgressError:
                log.info("scheduled_sweep_skipped_in_progress")
            except Exception as exc:
                log.error("sweep_failed", error=str(exc))

            await self._wait_interval(interval_seconds)

    async def _wait_interval(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_guarded(self) -> SweepResult:
        # Check and acquire happen without an intervening await.
        if self._sweep_lock.locked():
            raise SweepInProgressError("a collection sweep is already running")
        async with self._sweep_lock:
            self._cancel = asyncio.Event()
            try:
                result = await self._sweep(self._cancel)
            finally:
                self._cancel = None
            self._last_sweep = result
            return result

    async def _sweep(self, cancel: asyncio.Event) -> SweepResult:
        result = SweepResult()
        orgs = await self._registry.list_active()
        result.total = len(orgs)
        log.info("sweep_starting", organizations=len(orgs))

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(org: OrganizationSummary) -> None:
            async with semaphore:
                await self._collect_one(org, cancel, result)

        await asyncio.gather(*(_bounded(org) for org in orgs))

        result.finished_at = utcnow()
        log.info(
            "sweep_completed",
            total=result.total,
            collected=len(result.collected),
            failed=len(result.failed),
            skipped=len(result.skipped),
            duration_s=round(result.duration_seconds, 3),
        )
        return result

    async def _collect_one(
        self,
        org: OrganizationSummary,
        cancel: asyncio.Event,
        result: SweepResult,
    ) -> None:
        """Collect one tenant. Never raises for tenant-level failures."""
        try:
            if cancel.is_set():
                raise SweepCancelledError("sweep cancelled", {"org_id": org.id})
            conn = await self._registry.get_with_credentials(org.id, org.owner_id)
            payload = await self._fetcher.fetch(conn, cancel)
            snapshot = build_snapshot(org.id, payload, utcnow())
            await self._history.append(snapshot)
            await self._registry.mark_synced(org.id)
            result.collected.append(org.id)
            log.info("organization_collected", org_id=org.id)
        except SweepCancelledError:
            result.skipped.append(org.id)
            log.info("organization_skipped_cancelled", org_id=org.id)
        except Exception as exc:
            result.failed[org.id] = str(exc)
            log.error(
                "organization_collection_failed",
                org_id=org.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._record_failure(org.id, exc)

    async def _record_failure(self, org_id: str, exc: Exception) -> None:
        reconnect = isinstance(exc, FetchFailedError) and exc.reconnect_required
        try:
            await self._registry.mark_sync_failed(
                org_id, str(exc), reconnect_required=reconnect,
            )
        except Exception as mark_exc:
            log.warning("sync_failure_not_recorded", org_id=org_id, error=str(mark_exc))
