"""DB-backed organization store — replaces InMemoryOrganizationStore."""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from src.core.interfaces import BaseOrganizationStore, check_mutable_fields
from src.core.logging import get_logger
from src.core.types import Environment, Organization

log = get_logger(__name__)

_COLUMNS = (
    "id, owner_id, external_id, name, instance_url, access_token, refresh_token, "
    "environment, is_active, needs_reconnect, last_sync_at, last_sync_error, "
    "created_at, updated_at"
)

# Organization fields whose column name differs.
_FIELD_COLUMNS = {
    "access_token_envelope": "access_token",
    "refresh_token_envelope": "refresh_token",
}


def _column(field_name: str) -> str:
    return _FIELD_COLUMNS.get(field_name, field_name)


class OrganizationRepository(BaseOrganizationStore):
    """Async PostgreSQL-backed organization storage.

    Stores credential envelopes only; plaintext never reaches this layer.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_id(self, org_id: str) -> Organization | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(f"SELECT {_COLUMNS} FROM organizations WHERE id = :id"),
                {"id": org_id},
            )
            r = row.mappings().first()
            return self._row_to_org(r) if r is not None else None

    async def find_by_external_id(
        self, owner_id: str, external_id: str,
    ) -> Organization | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    f"SELECT {_COLUMNS} FROM organizations "
                    "WHERE owner_id = :owner AND external_id = :ext"
                ),
                {"owner": owner_id, "ext": external_id},
            )
            r = row.mappings().first()
            return self._row_to_org(r) if r is not None else None

    async def upsert(
        self, org: Organization, on_conflict: Collection[str],
    ) -> Organization:
        check_mutable_fields(on_conflict)
        # an empty assignment list still needs DO UPDATE so RETURNING yields the row
        assignments = ", ".join(
            f"{c} = EXCLUDED.{c}" for c in sorted(_column(f) for f in on_conflict)
        ) or "id = organizations.id"
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    f"""
                    INSERT INTO organizations
                        (id, owner_id, external_id, name, instance_url,
                         access_token, refresh_token, environment, is_active,
                         needs_reconnect, last_sync_at, last_sync_error,
                         created_at, updated_at)
                    VALUES
                        (:id, :owner_id, :external_id, :name, :instance_url,
                         :access_token, :refresh_token, :environment, :is_active,
                         :needs_reconnect, :last_sync_at, :last_sync_error,
                         :created_at, :updated_at)
                    ON CONFLICT (owner_id, external_id) DO UPDATE SET {assignments}
                    RETURNING {_COLUMNS}
                    """
                ),
                self._org_to_params(org),
            )
            stored = self._row_to_org(result.mappings().one())
        log.debug("organization_row_upserted", org_id=stored.id, inserted=stored.id == org.id)
        return stored

    async def update(self, org_id: str, changes: dict[str, Any]) -> Organization | None:
        check_mutable_fields(changes)
        if not changes:
            return await self.find_by_id(org_id)
        params: dict[str, Any] = {"id": org_id}
        assignments = []
        for field_name, value in changes.items():
            column = _column(field_name)
            assignments.append(f"{column} = :{column}")
            params[column] = value.value if isinstance(value, Environment) else value
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    f"UPDATE organizations SET {', '.join(assignments)} "
                    f"WHERE id = :id RETURNING {_COLUMNS}"
                ),
                params,
            )
            r = result.mappings().first()
            return self._row_to_org(r) if r is not None else None

    async def delete(self, org_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text("DELETE FROM organizations WHERE id = :id"), {"id": org_id},
            )
        return bool(result.rowcount)

    async def list_by_owner(self, owner_id: str) -> list[Organization]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(
                    f"SELECT {_COLUMNS} FROM organizations "
                    "WHERE owner_id = :owner ORDER BY created_at DESC"
                ),
                {"owner": owner_id},
            )
            return [self._row_to_org(r) for r in rows.mappings().all()]

    async def list_active(self) -> list[Organization]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(
                    f"SELECT {_COLUMNS} FROM organizations "
                    "WHERE is_active = true ORDER BY created_at"
                )
            )
            return [self._row_to_org(r) for r in rows.mappings().all()]

    @staticmethod
    def _org_to_params(org: Organization) -> dict[str, Any]:
        return {
            "id": org.id,
            "owner_id": org.owner_id,
            "external_id": org.external_id,
            "name": org.name,
            "instance_url": org.instance_url,
            "access_token": org.access_token_envelope,
            "refresh_token": org.refresh_token_envelope,
            "environment": org.environment.value,
            "is_active": org.is_active,
            "needs_reconnect": org.needs_reconnect,
            "last_sync_at": org.last_sync_at,
            "last_sync_error": org.last_sync_error,
            "created_at": org.created_at,
            "updated_at": org.updated_at,
        }

    @staticmethod
    def _row_to_org(r: Any) -> Organization:
        """Convert a DB row mapping to an Organization dataclass."""
        try:
            environment = Environment(r["environment"])
        except ValueError:
            environment = Environment.PRODUCTION

        return Organization(
            id=r["id"],
            owner_id=r["owner_id"],
            external_id=r["external_id"],
            name=r["name"] or "",
            instance_url=r["instance_url"],
            access_token_envelope=r["access_token"],
            refresh_token_envelope=r.get("refresh_token"),
            environment=environment,
            is_active=bool(r["is_active"]),
            needs_reconnect=bool(r.get("needs_reconnect", False)),
            last_sync_at=r.get("last_sync_at"),
            last_sync_error=r.get("last_sync_error"),
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )
