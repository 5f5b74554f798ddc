"""Component wiring — builds the collection service graph once per process."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from src.api.db.organizations import OrganizationRepository
from src.api.db.snapshots import SnapshotRepository
from src.core.interfaces import BaseHistoryStore, BaseLimitsAPI, BaseOrganizationStore
from src.core.logging import get_logger
from src.data.collector import LimitsFetcher
from src.data.history import InMemoryHistoryStore
from src.data.salesforce import SalesforceLimitsClient
from src.data.scheduler import CollectionScheduler
from src.saas.organization import InMemoryOrganizationStore, OrganizationRegistry
from src.saas.usage import UsageService
from src.saas.vault import CredentialVault

log = get_logger(__name__)


@dataclass
class LimitWatchApp:
    registry: OrganizationRegistry
    history: BaseHistoryStore
    fetcher: LimitsFetcher
    scheduler: CollectionScheduler
    usage: UsageService


def build_app(
    engine: AsyncEngine | None = None,
    api: BaseLimitsAPI | None = None,
    vault: CredentialVault | None = None,
) -> LimitWatchApp:
    """Assemble all components.

    With an engine, organizations and snapshots live in PostgreSQL;
    without one, in-memory stores are used. The vault is built from
    settings unless given, so a misconfigured key fails here.
    """
    vault = vault or CredentialVault.from_settings()

    org_store: BaseOrganizationStore
    history: BaseHistoryStore
    if engine is not None:
        org_store = OrganizationRepository(engine)
        history = SnapshotRepository(engine)
    else:
        org_store = InMemoryOrganizationStore()
        history = InMemoryHistoryStore()

    registry = OrganizationRegistry(org_store, vault)
    fetcher = LimitsFetcher(registry, api or SalesforceLimitsClient())
    scheduler = CollectionScheduler(registry, fetcher, history)
    usage = UsageService(registry, history, fetcher, scheduler)

    log.info("app_built", storage="postgres" if engine is not None else "memory")
    return LimitWatchApp(
        registry=registry,
        history=history,
        fetcher=fetcher,
        scheduler=scheduler,
        usage=usage,
    )
