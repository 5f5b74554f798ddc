"""Limits fetcher — remote limits call with the refresh-on-expiry protocol.

Per invocation the fetch moves through::

    FETCHING -> SUCCESS
    FETCHING -> AUTH_EXPIRED -> REFRESHING -> SUCCESS | FAILED

An expired access token triggers exactly one refresh and exactly one retry.
A credential that is still rejected after that surfaces a terminal
``FetchFailedError``; the fetcher never loops.

Refreshes are single-flight per organization id: two refreshes spending the
same refresh token would invalidate each other's access token, so the
second caller waits on the lock and reuses the token the first one stored.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from config.settings import get_settings
from src.core.exceptions import (
    AuthExpiredError,
    FetchFailedError,
    RefreshFailedError,
    RemoteAPIError,
    SweepCancelledError,
)
from src.core.interfaces import BaseLimitsAPI
from src.core.logging import get_logger
from src.core.types import ConnectedOrganization, Credentials, OrganizationSummary
from src.saas.organization import OrganizationRegistry

log = get_logger(__name__)


class LimitsFetcher:
    """Fetch an organization's limits, refreshing an expired token once.

    Usage::

        fetcher = LimitsFetcher(registry, SalesforceLimitsClient())
        conn = await registry.get_with_credentials(org_id, owner_id)
        payload = await fetcher.fetch(conn)
    """

    def __init__(
        self,
        registry: OrganizationRegistry,
        api: BaseLimitsAPI,
        timeout_seconds: float | None = None,
    ) -> None:
        self._registry = registry
        self._api = api
        self._timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().fetch_timeout_seconds
        )
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def fetch(
        self,
        conn: ConnectedOrganization,
        cancel: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Return the raw limits payload for one organization.

        Raises:
            RefreshFailedError: the refresh grant failed; reconnect required.
            FetchFailedError: token expired without a usable refresh path.
            RemoteAPIError: network, timeout, or non-auth error status.
            SweepCancelledError: ``cancel`` was set between network calls.
        """
        creds = conn.credentials
        try:
            return await self._call_limits(creds)
        except AuthExpiredError:
            log.info("access_token_expired", org_id=conn.id)

        if not creds.refresh_token:
            raise FetchFailedError(
                "access token expired and no refresh token is stored",
                {"org_id": conn.id},
                reconnect_required=True,
            )

        _check_cancelled(cancel, conn.id)
        fresh = await self._refresh(conn, stale_access_token=creds.access_token)
        _check_cancelled(cancel, conn.id)

        try:
            payload = await self._call_limits(fresh)
        except AuthExpiredError as exc:
            raise FetchFailedError(
                "access token rejected after refresh",
                {"org_id": conn.id},
                reconnect_required=True,
            ) from exc
        log.info("limits_fetched_after_refresh", org_id=conn.id)
        return payload

    async def fetch_for(self, org_id: str, owner_id: str) -> dict[str, Any]:
        """On-demand fetch for one owner's organization. Marks it synced."""
        conn = await self._registry.get_with_credentials(org_id, owner_id)
        payload = await self.fetch(conn)
        await self._registry.mark_synced(org_id)
        return payload

    async def force_refresh(self, org_id: str, owner_id: str) -> OrganizationSummary:
        """Rotate the access token now, through the same single-flight lock."""
        conn = await self._registry.get_with_credentials(org_id, owner_id)
        if not conn.credentials.refresh_token:
            raise FetchFailedError(
                "no refresh token is stored",
                {"org_id": org_id},
                reconnect_required=True,
            )
        await self._refresh(conn, stale_access_token=conn.credentials.access_token)
        return await self._registry.get(org_id, owner_id)

    # ── internals ─────────────────────────────────────────────────

    @asynccontextmanager
    async def _single_flight(self, org_id: str) -> AsyncIterator[None]:
        """Hold the org's refresh lock; drop it once no task holds or awaits it."""
        lock = self._refresh_locks.get(org_id)
        if lock is None:
            lock = self._refresh_locks[org_id] = asyncio.Lock()
        self._lock_users[org_id] = self._lock_users.get(org_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[org_id] -= 1
            if self._lock_users[org_id] == 0:
                del self._lock_users[org_id]
                del self._refresh_locks[org_id]

    async def _call_limits(self, creds: Credentials) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self._api.fetch_limits(creds.access_token, creds.instance_url),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RemoteAPIError(
                "limits request timed out", {"timeout_s": self._timeout},
            ) from exc

    async def _refresh(
        self, conn: ConnectedOrganization, stale_access_token: str,
    ) -> Credentials:
        org_id = conn.id
        async with self._single_flight(org_id):
            current = await self._registry.get_with_credentials(
                org_id, conn.organization.owner_id,
            )
            stored = current.credentials
            if stored.access_token != stale_access_token:
                log.info("refresh_skipped_token_already_rotated", org_id=org_id)
                return stored
            if not stored.refresh_token:
                raise FetchFailedError(
                    "no refresh token is stored",
                    {"org_id": org_id},
                    reconnect_required=True,
                )

            log.info("token_refresh_starting", org_id=org_id)
            try:
                grant = await asyncio.wait_for(
                    self._api.refresh(stored.refresh_token, conn.organization.environment),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                raise RefreshFailedError(
                    "token refresh timed out", {"org_id": org_id},
                ) from exc
            except RefreshFailedError:
                raise
            except FetchFailedError as exc:
                raise RefreshFailedError(
                    f"token refresh failed: {exc}", {"org_id": org_id},
                ) from exc

            fresh = Credentials(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token or stored.refresh_token,
                instance_url=grant.instance_url or stored.instance_url,
            )
            await self._registry.update_credentials(org_id, fresh)
            log.info("token_refresh_completed", org_id=org_id)
            return fresh


def _check_cancelled(cancel: asyncio.Event | None, org_id: str) -> None:
    if cancel is not None and cancel.is_set():
        raise SweepCancelledError("sweep cancelled", {"org_id": org_id})
