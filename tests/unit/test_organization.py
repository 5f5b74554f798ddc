"""Tests for the organization registry and its in-memory store."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from typing import Any

import pytest

from src.core.exceptions import DecryptionError, NotFoundError
from src.core.types import Credentials, Environment, Organization
from src.saas.organization import InMemoryOrganizationStore, OrganizationRegistry


class SlowOrganizationStore(InMemoryOrganizationStore):
    """Yields to the event loop around every call, as a database round-trip would."""

    async def find_by_id(self, org_id: str) -> Organization | None:
        org = await super().find_by_id(org_id)
        await asyncio.sleep(0.01)
        return org

    async def upsert(
        self, org: Organization, on_conflict: Collection[str],
    ) -> Organization:
        await asyncio.sleep(0.01)
        return await super().upsert(org, on_conflict)

    async def update(self, org_id: str, changes: dict[str, Any]) -> Organization | None:
        await asyncio.sleep(0.01)
        return await super().update(org_id, changes)


@pytest.mark.asyncio
class TestCreate:
    async def test_create_returns_summary(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds, {"name": "Acme"})
        assert org.owner_id == "owner-1"
        assert org.external_id == "00D001"
        assert org.name == "Acme"
        assert org.environment == Environment.PRODUCTION
        assert org.is_active is True
        assert org.has_refresh_token is True
        assert org.last_sync_at is not None

    async def test_secrets_stored_as_envelopes(self, vault, creds: Credentials) -> None:
        store = InMemoryOrganizationStore()
        registry = OrganizationRegistry(store, vault)
        summary = await registry.create("owner-1", "00D001", creds)

        stored = await store.find_by_id(summary.id)
        assert stored is not None
        assert creds.access_token not in stored.access_token_envelope
        assert stored.refresh_token_envelope is not None
        assert creds.refresh_token not in stored.refresh_token_envelope
        assert vault.decrypt(stored.access_token_envelope) == creds.access_token

    async def test_summary_has_no_secrets(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        summary = await registry.create("owner-1", "00D001", creds)
        text = repr(summary)
        assert creds.access_token not in text
        assert creds.refresh_token not in text

    async def test_sandbox_environment(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds, {"environment": "sandbox"})
        assert org.environment == Environment.SANDBOX

    async def test_reconnect_updates_in_place(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        first = await registry.create("owner-1", "00D001", creds, {"name": "Acme"})
        await registry.mark_sync_failed(first.id, "expired", reconnect_required=True)
        await registry.deactivate(first.id, "owner-1")

        new_creds = Credentials(
            access_token="00D-access-2",
            instance_url="https://acme2.my.salesforce.com",
            refresh_token="5Aep-refresh-2",
        )
        second = await registry.create("owner-1", "00D001", new_creds)

        assert second.id == first.id
        assert second.name == "Acme"
        assert second.instance_url == "https://acme2.my.salesforce.com"
        assert second.is_active is True
        assert second.needs_reconnect is False
        assert second.last_sync_error is None
        conn = await registry.get_with_credentials(first.id, "owner-1")
        assert conn.credentials.access_token == "00D-access-2"
        assert len(await registry.list_for_owner("owner-1")) == 1

    async def test_same_external_id_different_owners(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        a = await registry.create("owner-1", "00D001", creds)
        b = await registry.create("owner-2", "00D001", creds)
        assert a.id != b.id


@pytest.mark.asyncio
class TestOwnerScoping:
    async def test_get_other_owner_not_found(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        with pytest.raises(NotFoundError):
            await registry.get(org.id, "owner-2")

    async def test_get_with_credentials_other_owner_not_found(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        with pytest.raises(NotFoundError):
            await registry.get_with_credentials(org.id, "owner-2")

    async def test_update_other_owner_not_found(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds, {"name": "Acme"})
        with pytest.raises(NotFoundError):
            await registry.update(org.id, "owner-2", name="Hijacked")
        assert (await registry.get(org.id, "owner-1")).name == "Acme"

    async def test_delete_other_owner_not_found(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        with pytest.raises(NotFoundError):
            await registry.delete(org.id, "owner-2")
        assert (await registry.get(org.id, "owner-1")).id == org.id

    async def test_list_for_owner_only_returns_own(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        await registry.create("owner-1", "00D001", creds)
        await registry.create("owner-1", "00D002", creds)
        await registry.create("owner-2", "00D003", creds)
        orgs = await registry.list_for_owner("owner-1")
        assert {o.external_id for o in orgs} == {"00D001", "00D002"}

    async def test_unknown_id(self, registry: OrganizationRegistry) -> None:
        with pytest.raises(NotFoundError):
            await registry.get("missing", "owner-1")


@pytest.mark.asyncio
class TestCredentials:
    async def test_get_with_credentials_decrypts(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        conn = await registry.get_with_credentials(org.id, "owner-1")
        assert conn.id == org.id
        assert conn.credentials == creds

    async def test_no_refresh_token(self, registry: OrganizationRegistry) -> None:
        creds = Credentials(access_token="tok", instance_url="https://x.my.salesforce.com")
        org = await registry.create("owner-1", "00D001", creds)
        assert org.has_refresh_token is False
        conn = await registry.get_with_credentials(org.id, "owner-1")
        assert conn.credentials.refresh_token is None

    async def test_corrupted_envelope_raises_decryption_error(
        self, vault, creds: Credentials,
    ) -> None:
        store = InMemoryOrganizationStore()
        registry = OrganizationRegistry(store, vault)
        summary = await registry.create("owner-1", "00D001", creds)

        await store.update(summary.id, {"access_token_envelope": "00:11:22"})

        with pytest.raises(DecryptionError):
            await registry.get_with_credentials(summary.id, "owner-1")

    async def test_update_credentials_clears_reconnect(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        await registry.mark_sync_failed(org.id, "expired", reconnect_required=True)
        assert (await registry.get(org.id, "owner-1")).needs_reconnect is True

        rotated = Credentials(
            access_token="rotated",
            instance_url=creds.instance_url,
            refresh_token=creds.refresh_token,
        )
        updated = await registry.update_credentials(org.id, rotated)
        assert updated.needs_reconnect is False
        conn = await registry.get_with_credentials(org.id, "owner-1")
        assert conn.credentials.access_token == "rotated"


@pytest.mark.asyncio
class TestLifecycle:
    async def test_update_name_and_active(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        updated = await registry.update(org.id, "owner-1", name="Renamed", is_active=False)
        assert updated.name == "Renamed"
        assert updated.is_active is False

    async def test_deactivated_excluded_from_active(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        a = await registry.create("owner-1", "00D001", creds)
        b = await registry.create("owner-1", "00D002", creds)
        await registry.deactivate(a.id, "owner-1")
        assert [o.id for o in await registry.list_active()] == [b.id]

    async def test_delete(self, registry: OrganizationRegistry, creds: Credentials) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        await registry.delete(org.id, "owner-1")
        with pytest.raises(NotFoundError):
            await registry.get(org.id, "owner-1")

    async def test_mark_synced_clears_error(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        await registry.mark_sync_failed(org.id, "boom")
        failed = await registry.get(org.id, "owner-1")
        assert failed.last_sync_error == "boom"
        assert failed.needs_reconnect is False

        await registry.mark_synced(org.id)
        assert (await registry.get(org.id, "owner-1")).last_sync_error is None

    async def test_sync_error_truncated(
        self, registry: OrganizationRegistry, creds: Credentials,
    ) -> None:
        org = await registry.create("owner-1", "00D001", creds)
        await registry.mark_sync_failed(org.id, "x" * 2000)
        assert len((await registry.get(org.id, "owner-1")).last_sync_error or "") == 500


@pytest.mark.asyncio
class TestConcurrentWrites:
    async def test_sync_bookkeeping_keeps_rotated_tokens(
        self, vault, creds: Credentials,
    ) -> None:
        registry = OrganizationRegistry(SlowOrganizationStore(), vault)
        org = await registry.create("owner-1", "00D001", creds)
        rotated = Credentials(
            access_token="00D-access-2",
            instance_url=creds.instance_url,
            refresh_token="5Aep-refresh-2",
        )

        await asyncio.gather(
            registry.mark_synced(org.id),
            registry.update_credentials(org.id, rotated),
            registry.mark_sync_failed(org.id, "transient"),
            registry.update(org.id, "owner-1", name="Renamed"),
        )

        conn = await registry.get_with_credentials(org.id, "owner-1")
        assert conn.credentials == rotated
        assert conn.organization.name == "Renamed"

    async def test_credentials_survive_concurrent_sync_failure(
        self, vault, creds: Credentials,
    ) -> None:
        registry = OrganizationRegistry(SlowOrganizationStore(), vault)
        org = await registry.create("owner-1", "00D001", creds)
        rotated = Credentials(
            access_token="00D-access-2",
            instance_url=creds.instance_url,
            refresh_token="5Aep-refresh-2",
        )

        await asyncio.gather(
            registry.update_credentials(org.id, rotated),
            registry.mark_sync_failed(org.id, "timeout"),
        )

        summary = await registry.get(org.id, "owner-1")
        assert summary.last_sync_error == "timeout"
        conn = await registry.get_with_credentials(org.id, "owner-1")
        assert conn.credentials.refresh_token == "5Aep-refresh-2"

    async def test_concurrent_connects_converge_on_one_record(
        self, vault, creds: Credentials,
    ) -> None:
        registry = OrganizationRegistry(SlowOrganizationStore(), vault)

        results = await asyncio.gather(
            registry.create("owner-1", "00D001", creds, {"name": "Acme"}),
            registry.create("owner-1", "00D001", creds, {"name": "Acme"}),
            registry.create("owner-1", "00D001", creds),
        )

        assert len({r.id for r in results}) == 1
        orgs = await registry.list_for_owner("owner-1")
        assert len(orgs) == 1
        assert orgs[0].name == "Acme"


def _org(**kwargs: object) -> Organization:
    fields: dict[str, object] = {
        "owner_id": "o", "external_id": "e", "instance_url": "https://x",
        "access_token_envelope": "env",
    }
    fields.update(kwargs)
    return Organization(**fields)  # type: ignore[arg-type]


@pytest.mark.asyncio
class TestInMemoryOrganizationStore:
    async def test_returns_copies(self) -> None:
        store = InMemoryOrganizationStore()
        org = await store.upsert(_org(), ())
        fetched = await store.find_by_id(org.id)
        assert fetched is not None
        fetched.name = "mutated"
        again = await store.find_by_id(org.id)
        assert again is not None and again.name == ""

    async def test_upsert_existing_overwrites_listed_fields_only(self) -> None:
        store = InMemoryOrganizationStore()
        first = await store.upsert(_org(name="Acme"), ())
        second = await store.upsert(
            _org(name="Other", access_token_envelope="env-2"),
            {"access_token_envelope"},
        )
        assert second.id == first.id
        assert second.name == "Acme"
        assert second.access_token_envelope == "env-2"

    async def test_upsert_rejects_identity_fields(self) -> None:
        store = InMemoryOrganizationStore()
        with pytest.raises(ValueError):
            await store.upsert(_org(), {"owner_id"})

    async def test_update_writes_only_given_fields(self) -> None:
        store = InMemoryOrganizationStore()
        org = await store.upsert(_org(refresh_token_envelope="r-env"), ())
        updated = await store.update(org.id, {"last_sync_error": "boom"})
        assert updated is not None
        assert updated.last_sync_error == "boom"
        assert updated.access_token_envelope == "env"
        assert updated.refresh_token_envelope == "r-env"

    async def test_update_unknown_returns_none(self) -> None:
        store = InMemoryOrganizationStore()
        assert await store.update("missing", {"name": "x"}) is None

    async def test_update_rejects_identity_fields(self) -> None:
        store = InMemoryOrganizationStore()
        org = await store.upsert(_org(), ())
        with pytest.raises(ValueError):
            await store.update(org.id, {"external_id": "other"})

    async def test_delete_frees_external_id(self) -> None:
        store = InMemoryOrganizationStore()
        org = await store.upsert(_org(), ())
        assert await store.delete(org.id) is True
        assert await store.delete(org.id) is False
        assert await store.find_by_external_id("o", "e") is None
