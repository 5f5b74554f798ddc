"""SaaS multi-tenant layer — organization registry, credential vault, usage queries."""

from src.saas.organization import InMemoryOrganizationStore, OrganizationRegistry
from src.saas.vault import CredentialVault, decode_key

__all__ = [
    "CredentialVault",
    "InMemoryOrganizationStore",
    "OrganizationRegistry",
    "decode_key",
]
