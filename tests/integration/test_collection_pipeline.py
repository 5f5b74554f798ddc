"""End-to-end integration test — full collection cycle with a mock remote API.

Proves the complete pipeline works without real Salesforce credentials:
    connect orgs -> sweep (one expired token refreshed) -> snapshots stored
    -> history / trends / summary served through UsageService
"""

from __future__ import annotations

import os
from datetime import timedelta

import pytest

from src.app import build_app
from src.core.exceptions import AuthExpiredError
from src.core.types import Credentials, Granularity, TokenRefresh, utcnow
from src.saas.vault import CredentialVault
from tests.factories import FakeLimitsAPI, limits_payload, make_snapshot


@pytest.mark.asyncio
async def test_full_collection_cycle() -> None:
    api = FakeLimitsAPI()
    app = build_app(api=api, vault=CredentialVault(os.urandom(32)))

    acme = await app.registry.create(
        "owner-1",
        "00DACME",
        Credentials(
            access_token="acme-access-1",
            instance_url="https://acme.my.salesforce.com",
            refresh_token="acme-refresh",
        ),
        {"name": "Acme"},
    )
    globex = await app.registry.create(
        "owner-2",
        "00DGLOBEX",
        Credentials(access_token="globex-access", instance_url="https://globex.my.salesforce.com"),
        {"name": "Globex", "environment": "sandbox"},
    )

    # Acme's token expires on the first call and is refreshed once.
    api.expired_tokens = {"acme-access-1"}
    api.refresh_script = [TokenRefresh(access_token="acme-access-2")]
    api.default_payload = limits_payload(api_used=3000)

    result = await app.scheduler.trigger_now()

    assert result.total == 2
    assert sorted(result.collected) == sorted([acme.id, globex.id])
    assert len(api.refresh_calls) == 1

    conn = await app.registry.get_with_credentials(acme.id, "owner-1")
    assert conn.credentials.access_token == "acme-access-2"

    latest = await app.history.latest(acme.id)
    assert latest is not None
    assert latest.api_usage_percentage == pytest.approx(20.0)
    assert latest.limits_data == limits_payload(api_used=3000)

    # Backfill an older snapshot so trends have two daily points.
    await app.history.append(
        make_snapshot(acme.id, utcnow() - timedelta(days=5), 10.0),
    )

    points = await app.usage.list_history(acme.id, "owner-1", days=30, granularity=Granularity.DAY)
    assert len(points) == 2

    trends = await app.usage.get_trends(acme.id, "owner-1", days=30)
    assert trends.to_dict()["trends"]["api"] == "increasing"

    summary = await app.usage.get_summary(acme.id, "owner-1")
    assert summary["has_data"] is True
    assert summary["current_usage"]["api"] == pytest.approx(20.0)

    status = app.usage.get_scheduler_status()
    assert status["last_sweep"]["collected"] == 2


@pytest.mark.asyncio
async def test_reconnect_flow() -> None:
    api = FakeLimitsAPI()
    app = build_app(api=api, vault=CredentialVault(os.urandom(32)))
    org = await app.registry.create(
        "owner-1",
        "00DACME",
        Credentials(access_token="stale", instance_url="https://acme.my.salesforce.com"),
    )
    api.fetch_script = [AuthExpiredError("expired")]

    result = await app.scheduler.trigger_now()

    assert list(result.failed) == [org.id]
    summary = await app.usage.get_summary(org.id, "owner-1")
    assert summary == {
        "has_data": False,
        "message": "No historical data available for this organization",
        "needs_reconnect": True,
    }

    # Reconnecting with fresh credentials clears the flag and collection resumes.
    await app.registry.create(
        "owner-1",
        "00DACME",
        Credentials(
            access_token="fresh",
            instance_url="https://acme.my.salesforce.com",
            refresh_token="refresh",
        ),
    )
    result = await app.scheduler.trigger_now()
    assert result.collected == [org.id]
    assert (await app.registry.get(org.id, "owner-1")).needs_reconnect is False
