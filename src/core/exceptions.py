"""Custom exception hierarchy for LimitWatch."""

from __future__ import annotations

from typing import Any


class LimitWatchError(Exception):
    """Base exception for all LimitWatch errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


class ConfigurationError(LimitWatchError):
    """Process configuration is invalid. Fatal at startup."""


# ── Credential custody ───────────────────────────────────────────

class DecryptionError(LimitWatchError):
    """Credential envelope is malformed or failed authentication."""


class NotFoundError(LimitWatchError):
    """No organization matches the id/owner pair."""


class InvalidRequestError(LimitWatchError):
    """Caller supplied an out-of-range or unknown parameter."""


# ── Remote fetch ─────────────────────────────────────────────────

class FetchFailedError(LimitWatchError):
    """Collecting limits for an organization failed for this cycle."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        reconnect_required: bool = False,
    ) -> None:
        super().__init__(message, context)
        self.reconnect_required = reconnect_required


class AuthExpiredError(FetchFailedError):
    """Remote API rejected the access token as expired or invalid."""


class RefreshFailedError(FetchFailedError):
    """The one-shot token refresh failed. Organization must reconnect."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context, reconnect_required=True)


class RemoteAPIError(FetchFailedError):
    """Network error, timeout, or non-auth error status from the remote API."""


# ── History & analytics ──────────────────────────────────────────

class SnapshotConflictError(LimitWatchError):
    """A snapshot already exists for this organization and timestamp."""


class AggregationError(LimitWatchError):
    """A stored snapshot is malformed and cannot be aggregated."""


# ── Scheduler ────────────────────────────────────────────────────

class SweepInProgressError(LimitWatchError):
    """A collection sweep is already running."""


class SweepCancelledError(LimitWatchError):
    """The sweep was cancelled before this tenant finished."""
