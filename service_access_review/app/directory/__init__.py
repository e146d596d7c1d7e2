"""
Identity directory: people, applications and the entitlement catalog.
"""

from .cache import CachedIdentityDirectory
from .http_client import HttpIdentityDirectory
from .identity import IdentityDirectory, StoreIdentityDirectory
from .importers import (
    ApplicationImporter,
    EntitlementCatalogImporter,
    IdentityImporter,
    privileged_entitlements,
)
from .models import Application, CatalogEntitlement, Identity, IdentityStatus

__all__ = [
    "Application",
    "ApplicationImporter",
    "CachedIdentityDirectory",
    "CatalogEntitlement",
    "EntitlementCatalogImporter",
    "HttpIdentityDirectory",
    "Identity",
    "IdentityDirectory",
    "IdentityImporter",
    "IdentityStatus",
    "StoreIdentityDirectory",
    "privileged_entitlements",
]
