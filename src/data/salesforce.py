"""Salesforce REST client — org limits and refresh-token grant over httpx."""

from __future__ import annotations

from typing import Any

import httpx

from config.settings import get_settings
from src.core.constants import (
    SALESFORCE_INVALID_SESSION,
    SALESFORCE_LIMITS_PATH,
    SALESFORCE_TOKEN_PATH,
)
from src.core.exceptions import AuthExpiredError, RefreshFailedError, RemoteAPIError
from src.core.interfaces import BaseLimitsAPI
from src.core.logging import get_logger
from src.core.types import Environment, TokenRefresh

log = get_logger(__name__)


def _is_auth_failure(resp: httpx.Response) -> bool:
    """401, or an error body carrying INVALID_SESSION_ID."""
    if resp.status_code == 401:
        return True
    if resp.status_code != 403:
        return False
    try:
        body = resp.json()
    except ValueError:
        return False
    errors = body if isinstance(body, list) else [body]
    return any(
        isinstance(e, dict) and e.get("errorCode") == SALESFORCE_INVALID_SESSION
        for e in errors
    )


class SalesforceLimitsClient(BaseLimitsAPI):
    """Calls ``/limits`` and the OAuth token endpoint.

    Pass a shared ``httpx.AsyncClient`` to reuse connections across a sweep;
    otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
        self._api_version = settings.salesforce_api_version
        self._client_id = settings.salesforce_client_id
        self._client_secret = settings.salesforce_client_secret
        self._login_urls = {
            Environment.PRODUCTION: settings.salesforce_login_url,
            Environment.SANDBOX: settings.salesforce_sandbox_login_url,
        }

    async def fetch_limits(self, access_token: str, instance_url: str) -> dict[str, Any]:
        url = instance_url.rstrip("/") + SALESFORCE_LIMITS_PATH.format(
            version=self._api_version,
        )
        try:
            resp = await self._request(
                "GET",
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as exc:
            raise RemoteAPIError("limits request timed out", {"url": url}) from exc
        except httpx.HTTPError as exc:
            raise RemoteAPIError(f"limits request failed: {exc}", {"url": url}) from exc

        if _is_auth_failure(resp):
            raise AuthExpiredError(
                "access token rejected", {"status": resp.status_code},
            )
        if resp.status_code >= 400:
            raise RemoteAPIError(
                f"limits request returned {resp.status_code}",
                {"status": resp.status_code},
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RemoteAPIError("limits response is not JSON") from exc
        if not isinstance(payload, dict):
            raise RemoteAPIError("limits response is not an object")
        return payload

    async def refresh(self, refresh_token: str, environment: Environment) -> TokenRefresh:
        url = self._login_urls[environment].rstrip("/") + SALESFORCE_TOKEN_PATH
        try:
            resp = await self._request(
                "POST",
                url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret.get_secret_value(),
                    "refresh_token": refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise RefreshFailedError(f"token refresh request failed: {exc}") from exc

        if resp.status_code >= 400:
            detail = ""
            try:
                detail = str(resp.json().get("error_description", ""))
            except (ValueError, AttributeError):
                pass
            raise RefreshFailedError(
                f"token refresh returned {resp.status_code}",
                {"status": resp.status_code, "detail": detail},
            )

        try:
            data = resp.json()
            access_token = str(data["access_token"])
        except (ValueError, KeyError, TypeError) as exc:
            raise RefreshFailedError("token refresh response missing access_token") from exc

        log.info("salesforce_token_refreshed", environment=environment.value)
        return TokenRefresh(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            instance_url=data.get("instance_url") or None,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)
