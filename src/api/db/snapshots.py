"""DB-backed snapshot log — replaces InMemoryHistoryStore.

Rows are only ever inserted. The (organization_id, collected_at) primary key
backs both duplicate rejection and the range scans used by ``query``.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.core.constants import METRIC_FIELDS
from src.core.exceptions import SnapshotConflictError
from src.core.interfaces import BaseHistoryStore
from src.core.logging import get_logger
from src.core.types import Snapshot

log = get_logger(__name__)

_METRIC_COLUMNS = ", ".join(METRIC_FIELDS)
_METRIC_PARAMS = ", ".join(f":{name}" for name in METRIC_FIELDS)
_SELECT = (
    f"SELECT snapshot_id, organization_id, collected_at, limits_data, {_METRIC_COLUMNS} "
    "FROM org_limit_snapshots"
)


class SnapshotRepository(BaseHistoryStore):
    """Async PostgreSQL-backed append-only snapshot storage."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def append(self, snapshot: Snapshot) -> None:
        params: dict[str, Any] = {
            "snapshot_id": snapshot.snapshot_id,
            "organization_id": snapshot.organization_id,
            "collected_at": snapshot.collected_at,
            "limits_data": json.dumps(snapshot.limits_data),
        }
        for name in METRIC_FIELDS:
            params[name] = getattr(snapshot, name)

        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        "INSERT INTO org_limit_snapshots "
                        f"(snapshot_id, organization_id, collected_at, limits_data, {_METRIC_COLUMNS}) "
                        "VALUES (:snapshot_id, :organization_id, :collected_at, "
                        f"CAST(:limits_data AS JSONB), {_METRIC_PARAMS})"
                    ),
                    params,
                )
        except IntegrityError as exc:
            raise SnapshotConflictError(
                "snapshot already recorded",
                {"org_id": snapshot.organization_id},
            ) from exc
        log.debug("snapshot_row_inserted", org_id=snapshot.organization_id)

    async def query(
        self, org_id: str, from_time: datetime, to_time: datetime,
    ) -> list[Snapshot]:
        async with self._engine.begin() as conn:
            rows = await conn.execute(
                text(
                    f"{_SELECT} WHERE organization_id = :org "
                    "AND collected_at >= :start AND collected_at <= :end "
                    "ORDER BY collected_at ASC"
                ),
                {"org": org_id, "start": from_time, "end": to_time},
            )
            return [self._row_to_snapshot(r) for r in rows.mappings().all()]

    async def latest(self, org_id: str) -> Snapshot | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    f"{_SELECT} WHERE organization_id = :org "
                    "ORDER BY collected_at DESC LIMIT 1"
                ),
                {"org": org_id},
            )
            r = row.mappings().first()
            return self._row_to_snapshot(r) if r is not None else None

    @staticmethod
    def _row_to_snapshot(r: Any) -> Snapshot:
        """Convert a DB row mapping to a Snapshot dataclass."""
        payload = r["limits_data"] if r["limits_data"] else {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Snapshot(
            snapshot_id=r["snapshot_id"],
            organization_id=r["organization_id"],
            collected_at=r["collected_at"],
            limits_data=payload,
            **{name: r.get(name) for name in METRIC_FIELDS},
        )
