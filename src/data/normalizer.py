"""Limits payload normalization — raw remote payload into a Snapshot.

The remote payload is a schema-less map of ``{limit name: {"Max": n,
"Remaining": n}}``. It is persisted verbatim; only the tracked limits are
extracted, through lookups that yield ``None`` for anything absent or
non-numeric instead of raising.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from src.core.constants import TRACKED_LIMITS
from src.core.logging import get_logger
from src.core.types import Snapshot

log = get_logger(__name__)

# metric family -> (used field, max field, percentage field)
_FIELD_NAMES: dict[str, tuple[str, str, str]] = {
    "api": ("api_requests_used", "api_requests_max", "api_usage_percentage"),
    "data": ("data_storage_used", "data_storage_max", "data_usage_percentage"),
    "file": ("file_storage_used", "file_storage_max", "file_usage_percentage"),
}


def _number(value: object) -> float | None:
    """Return value as float if it is a finite real number, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    result = float(value)
    return result if math.isfinite(result) else None


def extract_limit(payload: Mapping[str, Any], key: str) -> tuple[float | None, float | None, float | None]:
    """Return ``(used, max, percentage)`` for one limit entry.

    ``used`` comes from ``Used`` when present, otherwise ``Max - Remaining``.
    Percentage is only defined when ``max > 0``.
    """
    entry = payload.get(key)
    if not isinstance(entry, Mapping):
        return None, None, None

    maximum = _number(entry.get("Max"))
    used = _number(entry.get("Used"))
    if used is None:
        remaining = _number(entry.get("Remaining"))
        if remaining is not None and maximum is not None:
            used = maximum - remaining

    percentage = None
    if used is not None and maximum is not None and maximum > 0:
        percentage = used / maximum * 100
    return used, maximum, percentage


def extract_key_metrics(payload: Mapping[str, Any]) -> dict[str, float | None]:
    """Extract the tracked headline metrics from a raw limits payload."""
    metrics: dict[str, float | None] = {}
    for family, key in TRACKED_LIMITS.items():
        used_f, max_f, pct_f = _FIELD_NAMES[family]
        used, maximum, pct = extract_limit(payload, key)
        metrics[used_f] = used
        metrics[max_f] = maximum
        metrics[pct_f] = pct
    return metrics


def build_snapshot(
    organization_id: str,
    payload: Mapping[str, Any],
    collected_at: datetime,
) -> Snapshot:
    """Create an immutable Snapshot holding the verbatim payload."""
    metrics = extract_key_metrics(payload)
    missing = [k for k in TRACKED_LIMITS.values() if k not in payload]
    if missing:
        log.debug("limits_missing_keys", org_id=organization_id, missing=missing)
    return Snapshot(
        organization_id=organization_id,
        collected_at=collected_at,
        limits_data=dict(payload),
        **metrics,
    )
