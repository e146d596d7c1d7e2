"""
Persistence package.

Provides the document store used by every component: an abstract
``DocumentStore`` with optimistic concurrency (etag / if-match), an
in-memory implementation for local runs and tests, and a PostgreSQL
implementation for deployments.
"""

from .store import (
    ACCOUNTS,
    APPLICATIONS,
    AUDIT_LOGS,
    ENTITLEMENT_CATALOG,
    IDENTITIES,
    REVIEW_CYCLES,
    REVIEW_ITEMS,
    SOD_POLICIES,
    DocumentStore,
    InMemoryDocumentStore,
    QueryPage,
    StoredDocument,
)

__all__ = [
    "ACCOUNTS",
    "APPLICATIONS",
    "AUDIT_LOGS",
    "ENTITLEMENT_CATALOG",
    "IDENTITIES",
    "REVIEW_CYCLES",
    "REVIEW_ITEMS",
    "SOD_POLICIES",
    "DocumentStore",
    "InMemoryDocumentStore",
    "QueryPage",
    "StoredDocument",
]
