"""Pytest configuration, async fallback runner, and shared fixtures.

Async tests are marked with ``@pytest.mark.asyncio``. Some environments run
the suite without ``pytest-asyncio`` installed, so a fallback hook executes
coroutine tests on a fresh event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import os
from typing import Any

import pytest

from src.core.types import Credentials
from src.data.collector import LimitsFetcher
from src.data.history import InMemoryHistoryStore
from src.saas.organization import InMemoryOrganizationStore, OrganizationRegistry
from src.saas.vault import CredentialVault
from tests.factories import FakeLimitsAPI


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` tests without external plugins."""
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


# ── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(os.urandom(32))


@pytest.fixture
def registry(vault: CredentialVault) -> OrganizationRegistry:
    return OrganizationRegistry(InMemoryOrganizationStore(), vault)


@pytest.fixture
def history() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture
def api() -> FakeLimitsAPI:
    return FakeLimitsAPI()


@pytest.fixture
def fetcher(registry: OrganizationRegistry, api: FakeLimitsAPI) -> LimitsFetcher:
    return LimitsFetcher(registry, api, timeout_seconds=5)


@pytest.fixture
def creds() -> Credentials:
    return Credentials(
        access_token="00D-access-1",
        refresh_token="5Aep-refresh-1",
        instance_url="https://acme.my.salesforce.com",
    )
