"""Organization registry — tenant connection records and their credential envelopes.

Each organization belongs to exactly one owner. Every lookup that a caller
can reach is scoped by owner id, so one owner can never read or mutate
another owner's record. Secrets are stored only as vault envelopes and are
decrypted transiently by ``get_with_credentials``.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import replace
from typing import Any

from src.core.constants import SYNC_ERROR_MAX_CHARS
from src.core.exceptions import NotFoundError
from src.core.interfaces import BaseOrganizationStore, check_mutable_fields
from src.core.logging import get_logger
from src.core.types import (
    ConnectedOrganization,
    Credentials,
    Environment,
    Organization,
    OrganizationSummary,
    utcnow,
)
from src.saas.vault import CredentialVault

log = get_logger(__name__)

# Overwritten when an already-known organization is connected again.
_RECONNECT_FIELDS = (
    "instance_url",
    "access_token_envelope",
    "refresh_token_envelope",
    "is_active",
    "needs_reconnect",
    "last_sync_error",
    "last_sync_at",
    "updated_at",
)


class InMemoryOrganizationStore(BaseOrganizationStore):
    """In-memory organization store. Use OrganizationRepository for production.

    Methods never suspend between reading and writing a record, so each call
    is atomic with respect to other tasks on the loop.
    """

    def __init__(self) -> None:
        self._orgs: dict[str, Organization] = {}
        self._external_index: dict[tuple[str, str], str] = {}  # (owner, external) -> id

    async def find_by_id(self, org_id: str) -> Organization | None:
        org = self._orgs.get(org_id)
        return replace(org) if org else None

    async def find_by_external_id(
        self, owner_id: str, external_id: str,
    ) -> Organization | None:
        org_id = self._external_index.get((owner_id, external_id))
        if org_id is None:
            return None
        return await self.find_by_id(org_id)

    async def upsert(
        self, org: Organization, on_conflict: Collection[str],
    ) -> Organization:
        check_mutable_fields(on_conflict)
        key = (org.owner_id, org.external_id)
        existing_id = self._external_index.get(key)
        if existing_id is None:
            self._orgs[org.id] = replace(org)
            self._external_index[key] = org.id
            return replace(org)
        stored = self._orgs[existing_id]
        for name in on_conflict:
            setattr(stored, name, getattr(org, name))
        return replace(stored)

    async def update(self, org_id: str, changes: dict[str, Any]) -> Organization | None:
        check_mutable_fields(changes)
        stored = self._orgs.get(org_id)
        if stored is None:
            return None
        for name, value in changes.items():
            setattr(stored, name, value)
        return replace(stored)

    async def delete(self, org_id: str) -> bool:
        org = self._orgs.pop(org_id, None)
        if org is None:
            return False
        self._external_index.pop((org.owner_id, org.external_id), None)
        return True

    async def list_by_owner(self, owner_id: str) -> list[Organization]:
        orgs = [replace(o) for o in self._orgs.values() if o.owner_id == owner_id]
        return sorted(orgs, key=lambda o: o.created_at, reverse=True)

    async def list_active(self) -> list[Organization]:
        return [replace(o) for o in self._orgs.values() if o.is_active]


class OrganizationRegistry:
    """Tenant record CRUD. Owns credential envelopes via the vault."""

    def __init__(self, store: BaseOrganizationStore, vault: CredentialVault) -> None:
        self._store = store
        self._vault = vault

    async def create(
        self,
        owner_id: str,
        external_id: str,
        credentials: Credentials,
        meta: dict[str, Any] | None = None,
    ) -> OrganizationSummary:
        """Connect an organization, or reconnect it in place if already known.

        On reconnect the stored name and environment are kept unless ``meta``
        supplies them.
        """
        meta = meta or {}
        access_env, refresh_env = self._seal(credentials)
        now = utcnow()
        candidate = Organization(
            owner_id=owner_id,
            external_id=external_id,
            instance_url=credentials.instance_url,
            access_token_envelope=access_env,
            refresh_token_envelope=refresh_env,
            name=str(meta.get("name", "")),
            environment=Environment(meta.get("environment", Environment.PRODUCTION)),
            last_sync_at=now,
            created_at=now,
            updated_at=now,
        )
        on_conflict = set(_RECONNECT_FIELDS)
        on_conflict.update(f for f in ("name", "environment") if f in meta)

        org = await self._store.upsert(candidate, on_conflict)
        if org.id == candidate.id:
            log.info(
                "organization_created",
                org_id=org.id,
                owner_id=owner_id,
                environment=org.environment.value,
            )
        else:
            log.info("organization_reconnected", org_id=org.id, owner_id=owner_id)
        return org.to_summary()

    async def get(self, org_id: str, owner_id: str) -> OrganizationSummary:
        return (await self._require(org_id, owner_id)).to_summary()

    async def get_with_credentials(
        self, org_id: str, owner_id: str,
    ) -> ConnectedOrganization:
        """Decrypt secrets for the duration of one operation.

        ``DecryptionError`` propagates untouched; the caller decides.
        """
        org = await self._require(org_id, owner_id)
        refresh_token = (
            self._vault.decrypt(org.refresh_token_envelope)
            if org.refresh_token_envelope
            else None
        )
        creds = Credentials(
            access_token=self._vault.decrypt(org.access_token_envelope),
            refresh_token=refresh_token,
            instance_url=org.instance_url,
        )
        return ConnectedOrganization(organization=org.to_summary(), credentials=creds)

    async def list_for_owner(self, owner_id: str) -> list[OrganizationSummary]:
        return [o.to_summary() for o in await self._store.list_by_owner(owner_id)]

    async def list_active(self) -> list[OrganizationSummary]:
        return [o.to_summary() for o in await self._store.list_active()]

    async def update(
        self,
        org_id: str,
        owner_id: str,
        *,
        name: str | None = None,
        is_active: bool | None = None,
    ) -> OrganizationSummary:
        await self._require(org_id, owner_id)
        changes: dict[str, Any] = {"updated_at": utcnow()}
        if name is not None:
            changes["name"] = name
        if is_active is not None:
            changes["is_active"] = is_active
        org = await self._write(org_id, changes)
        log.info("organization_updated", org_id=org_id, is_active=org.is_active)
        return org.to_summary()

    async def update_credentials(
        self, org_id: str, credentials: Credentials,
    ) -> OrganizationSummary:
        """Re-encrypt and overwrite secrets. Used by the refresh path."""
        access_env, refresh_env = self._seal(credentials)
        now = utcnow()
        org = await self._write(org_id, {
            "access_token_envelope": access_env,
            "refresh_token_envelope": refresh_env,
            "instance_url": credentials.instance_url,
            "needs_reconnect": False,
            "last_sync_at": now,
            "updated_at": now,
        })
        log.info("organization_credentials_updated", org_id=org_id)
        return org.to_summary()

    async def mark_synced(self, org_id: str) -> None:
        await self._write(org_id, {"last_sync_at": utcnow(), "last_sync_error": None})

    async def mark_sync_failed(
        self, org_id: str, error: str, *, reconnect_required: bool = False,
    ) -> None:
        changes: dict[str, Any] = {
            "last_sync_error": error[:SYNC_ERROR_MAX_CHARS],
            "updated_at": utcnow(),
        }
        if reconnect_required:
            changes["needs_reconnect"] = True
        await self._write(org_id, changes)
        if reconnect_required:
            log.warning("organization_reconnect_required", org_id=org_id)

    async def deactivate(self, org_id: str, owner_id: str) -> OrganizationSummary:
        summary = await self.update(org_id, owner_id, is_active=False)
        log.info("organization_deactivated", org_id=org_id)
        return summary

    async def delete(self, org_id: str, owner_id: str) -> None:
        await self._require(org_id, owner_id)
        await self._store.delete(org_id)
        log.info("organization_deleted", org_id=org_id, owner_id=owner_id)

    # ── internals ─────────────────────────────────────────────────

    def _seal(self, credentials: Credentials) -> tuple[str, str | None]:
        access_env = self._vault.encrypt(credentials.access_token)
        refresh_env = (
            self._vault.encrypt(credentials.refresh_token)
            if credentials.refresh_token
            else None
        )
        return access_env, refresh_env

    async def _require(self, org_id: str, owner_id: str) -> Organization:
        org = await self._store.find_by_id(org_id)
        if org is None or org.owner_id != owner_id:
            raise NotFoundError(
                "organization not found", {"org_id": org_id, "owner_id": owner_id},
            )
        return org

    async def _write(self, org_id: str, changes: dict[str, Any]) -> Organization:
        org = await self._store.update(org_id, changes)
        if org is None:
            raise NotFoundError("organization not found", {"org_id": org_id})
        return org
