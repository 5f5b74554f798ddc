"""System-wide shared types — the single source of truth for all data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid_extensions import uuid7


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────

class Environment(str, Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


class TrendClassification(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


# ── Credentials ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Credentials:
    """Plaintext connection secrets. Transient: never persisted or logged."""

    access_token: str
    instance_url: str
    refresh_token: str | None = None

    def __repr__(self) -> str:
        return (
            f"Credentials(access_token='***', instance_url={self.instance_url!r}, "
            f"refresh_token={'***' if self.refresh_token else None})"
        )


@dataclass(frozen=True)
class TokenRefresh:
    """Result of a refresh-token grant. Omitted fields keep their old value."""

    access_token: str
    refresh_token: str | None = None
    instance_url: str | None = None

    def __repr__(self) -> str:
        return f"TokenRefresh(access_token='***', instance_url={self.instance_url!r})"


# ── Organizations ────────────────────────────────────────────────

@dataclass
class Organization:
    """Stored record of one tenant's connection. Secrets are envelopes."""

    owner_id: str
    external_id: str
    instance_url: str
    access_token_envelope: str
    refresh_token_envelope: str | None = None
    name: str = ""
    environment: Environment = Environment.PRODUCTION
    is_active: bool = True
    needs_reconnect: bool = False
    last_sync_at: datetime | None = None
    last_sync_error: str | None = None
    id: str = field(default_factory=lambda: str(uuid7()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_summary(self) -> OrganizationSummary:
        return OrganizationSummary(
            id=self.id,
            owner_id=self.owner_id,
            external_id=self.external_id,
            name=self.name,
            instance_url=self.instance_url,
            environment=self.environment,
            is_active=self.is_active,
            needs_reconnect=self.needs_reconnect,
            has_refresh_token=self.refresh_token_envelope is not None,
            last_sync_at=self.last_sync_at,
            last_sync_error=self.last_sync_error,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class OrganizationSummary:
    """Credential-free view of an organization."""

    id: str
    owner_id: str
    external_id: str
    name: str
    instance_url: str
    environment: Environment
    is_active: bool
    needs_reconnect: bool
    has_refresh_token: bool
    last_sync_at: datetime | None
    last_sync_error: str | None
    created_at: datetime


@dataclass(frozen=True)
class ConnectedOrganization:
    """An organization with its decrypted credentials, for one operation."""

    organization: OrganizationSummary
    credentials: Credentials

    @property
    def id(self) -> str:
        return self.organization.id


# ── Time series ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Snapshot:
    """Immutable point-in-time capture of an organization's limits."""

    organization_id: str
    collected_at: datetime
    limits_data: dict[str, Any]
    api_requests_used: float | None = None
    api_requests_max: float | None = None
    api_usage_percentage: float | None = None
    data_storage_used: float | None = None
    data_storage_max: float | None = None
    data_usage_percentage: float | None = None
    file_storage_used: float | None = None
    file_storage_max: float | None = None
    file_usage_percentage: float | None = None
    snapshot_id: str = field(default_factory=lambda: str(uuid7()))


@dataclass(frozen=True)
class AggregatedPoint:
    """Mean of all snapshots in one hour/day/week bucket."""

    collected_at: datetime
    sample_count: int = 1
    api_requests_used: float | None = None
    api_requests_max: float | None = None
    api_usage_percentage: float | None = None
    data_storage_used: float | None = None
    data_storage_max: float | None = None
    data_usage_percentage: float | None = None
    file_storage_used: float | None = None
    file_storage_max: float | None = None
    file_usage_percentage: float | None = None


# ── Trends ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrendResult:
    classification: TrendClassification
    growth_rate: float


@dataclass(frozen=True)
class TrendReport:
    """Per-metric trends for one organization over a window."""

    organization_id: str
    days: int
    granularity: Granularity
    points: int
    metrics: dict[str, TrendResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "days": self.days,
            "granularity": self.granularity.value,
            "points": self.points,
            "trends": {
                name: result.classification.value
                for name, result in self.metrics.items()
            },
            "growth_rates": {
                name: result.growth_rate for name, result in self.metrics.items()
            },
        }


# ── Sweeps ───────────────────────────────────────────────────────

@dataclass
class SweepResult:
    """Outcome of one collection pass over all active organizations."""

    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    total: int = 0
    collected: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total": self.total,
            "collected": len(self.collected),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
        }
