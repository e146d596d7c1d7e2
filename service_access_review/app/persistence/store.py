"""
Document store contract and the in-memory implementation.

Documents live in named containers and are addressed by
``(partition_key, id)``. Every write mints a new opaque ``etag``; callers
pass it back as ``if_match`` to make a write conditional. A mismatch is
reported as ``ConflictError`` carrying both the stale and current tokens.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from shared.errors import ConflictError, NotFoundError
from shared.logging import get_logger


# Container names
ACCOUNTS = "accounts"                 # PK: app_id
IDENTITIES = "identities"             # PK: user_id
APPLICATIONS = "applications"         # PK: app_id
ENTITLEMENT_CATALOG = "entitlements"  # PK: app_id
SOD_POLICIES = "sod_policies"         # PK: policy id
REVIEW_CYCLES = "review_cycles"       # PK: app_id
REVIEW_ITEMS = "review_items"         # PK: reviewer_id
AUDIT_LOGS = "audit_logs"             # PK: actor id


@dataclass
class StoredDocument:
    """A document as returned by the store."""
    container: str
    partition_key: str
    id: str
    body: Dict[str, Any]
    etag: str
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class QueryPage:
    """One page of query results."""
    documents: List[StoredDocument]
    continuation: Optional[str] = None


def new_etag() -> str:
    return f'"{uuid.uuid4().hex}"'


def matches_filters(body: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """Equality match on top-level fields."""
    if not filters:
        return True
    return all(body.get(key) == value for key, value in filters.items())


class DocumentStore(ABC):
    """Async document store with per-document optimistic concurrency."""

    @abstractmethod
    async def read(self, container: str, partition_key: str, doc_id: str) -> Optional[StoredDocument]:
        """Point read; ``None`` when absent."""

    @abstractmethod
    async def create(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        """Insert; raises ``ConflictError`` if the document already exists."""

    @abstractmethod
    async def upsert(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        """Unconditional insert-or-replace."""

    @abstractmethod
    async def replace(
        self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any], if_match: str
    ) -> StoredDocument:
        """Replace only if the current etag equals ``if_match``."""

    @abstractmethod
    async def delete(self, container: str, partition_key: str, doc_id: str, if_match: Optional[str] = None) -> None:
        """Delete, optionally conditional on ``if_match``."""

    @abstractmethod
    async def query(
        self,
        container: str,
        filters: Optional[Dict[str, Any]] = None,
        partition_key: Optional[str] = None,
        page_size: Optional[int] = None,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        """Filtered query, optionally scoped to one partition, returned in pages."""

    async def query_all(
        self,
        container: str,
        filters: Optional[Dict[str, Any]] = None,
        partition_key: Optional[str] = None,
        page_size: int = 500,
    ) -> List[StoredDocument]:
        """Drain every page of a query."""
        documents: List[StoredDocument] = []
        continuation: Optional[str] = None
        while True:
            page = await self.query(
                container,
                filters=filters,
                partition_key=partition_key,
                page_size=page_size,
                continuation=continuation,
            )
            documents.extend(page.documents)
            if not page.continuation:
                return documents
            continuation = page.continuation

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Close connections. No-op by default."""

    async def health_check(self) -> bool:
        return True


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store used for local runs and tests.

    Mutations hold a lock so the check-then-write of a conditional
    operation is atomic with respect to other coroutines.
    """

    def __init__(self):
        self.logger = get_logger("access_review.persistence.memory")
        self._containers: Dict[str, Dict[Tuple[str, str], StoredDocument]] = {}
        self._lock = asyncio.Lock()

    def _container(self, name: str) -> Dict[Tuple[str, str], StoredDocument]:
        return self._containers.setdefault(name, {})

    @staticmethod
    def _copy(doc: StoredDocument) -> StoredDocument:
        return StoredDocument(
            container=doc.container,
            partition_key=doc.partition_key,
            id=doc.id,
            body=copy.deepcopy(doc.body),
            etag=doc.etag,
            updated_at=doc.updated_at,
        )

    def _write(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        doc = StoredDocument(
            container=container,
            partition_key=partition_key,
            id=doc_id,
            body=copy.deepcopy(body),
            etag=new_etag(),
        )
        self._container(container)[(partition_key, doc_id)] = doc
        return self._copy(doc)

    async def read(self, container: str, partition_key: str, doc_id: str) -> Optional[StoredDocument]:
        doc = self._container(container).get((partition_key, doc_id))
        return self._copy(doc) if doc else None

    async def create(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        async with self._lock:
            existing = self._container(container).get((partition_key, doc_id))
            if existing is not None:
                raise ConflictError(
                    f"{container} document '{doc_id}' already exists",
                    resource=container,
                    resource_id=doc_id,
                    current_token=existing.etag,
                )
            return self._write(container, partition_key, doc_id, body)

    async def upsert(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        async with self._lock:
            return self._write(container, partition_key, doc_id, body)

    async def replace(
        self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any], if_match: str
    ) -> StoredDocument:
        async with self._lock:
            existing = self._container(container).get((partition_key, doc_id))
            if existing is None:
                raise NotFoundError(container, doc_id)
            if existing.etag != if_match:
                raise ConflictError(
                    resource=container,
                    resource_id=doc_id,
                    stale_token=if_match,
                    current_token=existing.etag,
                )
            return self._write(container, partition_key, doc_id, body)

    async def delete(self, container: str, partition_key: str, doc_id: str, if_match: Optional[str] = None) -> None:
        async with self._lock:
            docs = self._container(container)
            existing = docs.get((partition_key, doc_id))
            if existing is None:
                raise NotFoundError(container, doc_id)
            if if_match is not None and existing.etag != if_match:
                raise ConflictError(
                    resource=container,
                    resource_id=doc_id,
                    stale_token=if_match,
                    current_token=existing.etag,
                )
            del docs[(partition_key, doc_id)]

    async def query(
        self,
        container: str,
        filters: Optional[Dict[str, Any]] = None,
        partition_key: Optional[str] = None,
        page_size: Optional[int] = None,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        matched = [
            doc for (pk, _), doc in sorted(self._container(container).items())
            if (partition_key is None or pk == partition_key) and matches_filters(doc.body, filters)
        ]
        offset = int(continuation) if continuation else 0
        if page_size is None:
            window = matched[offset:]
            next_token = None
        else:
            window = matched[offset:offset + page_size]
            next_token = str(offset + page_size) if offset + page_size < len(matched) else None
        return QueryPage(documents=[self._copy(d) for d in window], continuation=next_token)
