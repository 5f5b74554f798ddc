"""In-memory append-only snapshot log.

Snapshots are kept per organization in ``collected_at`` order. The store
exposes no update or delete; a second snapshot for the same
(organization, collected_at) key is rejected, mirroring the primary key of
the ``org_limit_snapshots`` table.
"""

from __future__ import annotations

import bisect
from collections import defaultdict
from datetime import datetime

from src.core.exceptions import SnapshotConflictError
from src.core.interfaces import BaseHistoryStore
from src.core.logging import get_logger
from src.core.types import Snapshot

log = get_logger(__name__)


class InMemoryHistoryStore(BaseHistoryStore):
    """Append-only time series. Use SnapshotRepository for production."""

    def __init__(self) -> None:
        self._series: dict[str, list[Snapshot]] = defaultdict(list)
        self._keys: dict[str, list[datetime]] = defaultdict(list)

    async def append(self, snapshot: Snapshot) -> None:
        org_id = snapshot.organization_id
        keys = self._keys[org_id]
        idx = bisect.bisect_left(keys, snapshot.collected_at)
        if idx < len(keys) and keys[idx] == snapshot.collected_at:
            raise SnapshotConflictError(
                "snapshot already recorded",
                {"org_id": org_id, "collected_at": snapshot.collected_at.isoformat()},
            )
        keys.insert(idx, snapshot.collected_at)
        self._series[org_id].insert(idx, snapshot)
        log.debug("snapshot_appended", org_id=org_id, snapshot_id=snapshot.snapshot_id)

    async def query(
        self, org_id: str, from_time: datetime, to_time: datetime,
    ) -> list[Snapshot]:
        keys = self._keys.get(org_id, [])
        lo = bisect.bisect_left(keys, from_time)
        hi = bisect.bisect_right(keys, to_time)
        return list(self._series.get(org_id, [])[lo:hi])

    async def latest(self, org_id: str) -> Snapshot | None:
        series = self._series.get(org_id)
        return series[-1] if series else None
