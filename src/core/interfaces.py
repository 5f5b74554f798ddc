"""Abstract base classes — storage backends and remote APIs implement these."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection
from datetime import datetime
from typing import Any

from src.core.types import Environment, Organization, Snapshot, TokenRefresh

# Organization fields a store may overwrite after insert.
MUTABLE_ORGANIZATION_FIELDS = frozenset({
    "name",
    "instance_url",
    "access_token_envelope",
    "refresh_token_envelope",
    "environment",
    "is_active",
    "needs_reconnect",
    "last_sync_at",
    "last_sync_error",
    "updated_at",
})


def check_mutable_fields(fields: Collection[str]) -> None:
    unknown = set(fields) - MUTABLE_ORGANIZATION_FIELDS
    if unknown:
        msg = f"organization fields are not updatable: {sorted(unknown)}"
        raise ValueError(msg)


class BaseLimitsAPI(ABC):
    """Interface for the remote metered API."""

    @abstractmethod
    async def fetch_limits(self, access_token: str, instance_url: str) -> dict[str, Any]:
        """Return the raw limits payload.

        Raises ``AuthExpiredError`` when the access token is rejected and
        ``RemoteAPIError`` for any other failure.
        """
        ...

    @abstractmethod
    async def refresh(self, refresh_token: str, environment: Environment) -> TokenRefresh:
        """Exchange a refresh token for a new access token.

        Raises ``RefreshFailedError`` when the grant is refused or unreachable.
        """
        ...


class BaseOrganizationStore(ABC):
    """Persistence for organization records (secrets already encrypted)."""

    @abstractmethod
    async def find_by_id(self, org_id: str) -> Organization | None:
        ...

    @abstractmethod
    async def find_by_external_id(
        self, owner_id: str, external_id: str,
    ) -> Organization | None:
        ...

    @abstractmethod
    async def upsert(
        self, org: Organization, on_conflict: Collection[str],
    ) -> Organization:
        """Insert ``org``, or overwrite only ``on_conflict`` fields of the row
        already stored for its (owner_id, external_id). Returns the stored row.

        The existence check and the write are one atomic step.
        """
        ...

    @abstractmethod
    async def update(self, org_id: str, changes: dict[str, Any]) -> Organization | None:
        """Write only the given fields. Returns the updated row, or None if missing."""
        ...

    @abstractmethod
    async def delete(self, org_id: str) -> bool:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> list[Organization]:
        ...

    @abstractmethod
    async def list_active(self) -> list[Organization]:
        ...


class BaseHistoryStore(ABC):
    """Append-only snapshot log. No update or delete is exposed."""

    @abstractmethod
    async def append(self, snapshot: Snapshot) -> None:
        ...

    @abstractmethod
    async def query(
        self, org_id: str, from_time: datetime, to_time: datetime,
    ) -> list[Snapshot]:
        """Snapshots with ``from_time <= collected_at <= to_time``, ascending."""
        ...

    @abstractmethod
    async def latest(self, org_id: str) -> Snapshot | None:
        ...

