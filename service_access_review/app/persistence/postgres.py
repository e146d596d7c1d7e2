"""
PostgreSQL-backed document store.

All containers share one ``documents`` table keyed by
``(container, partition_key, id)``. Bodies are JSONB; the ``etag`` column
is rewritten on every write and guards conditional updates.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import ConflictError, DependencyError, NotFoundError
from shared.logging import get_logger
from .store import DocumentStore, QueryPage, StoredDocument, new_etag


class PostgresDocumentStore(DocumentStore):
    """Document store on PostgreSQL via asyncpg."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("access_review.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and make sure the schema exists."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=self._init_connection,
            )
            await self._create_tables()
            self.logger.info("PostgreSQL document store started")
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL document store", error=str(e))
            raise DependencyError("postgres", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL document store stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    container VARCHAR(64) NOT NULL,
                    partition_key VARCHAR(255) NOT NULL,
                    id VARCHAR(512) NOT NULL,
                    body JSONB NOT NULL,
                    etag VARCHAR(64) NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (container, partition_key, id)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_body ON documents USING GIN (body jsonb_path_ops);
            """)

    @staticmethod
    def _row_to_document(row) -> StoredDocument:
        return StoredDocument(
            container=row["container"],
            partition_key=row["partition_key"],
            id=row["id"],
            body=row["body"],
            etag=row["etag"],
            updated_at=row["updated_at"],
        )

    async def _current_etag(self, conn, container: str, partition_key: str, doc_id: str) -> Optional[str]:
        return await conn.fetchval(
            "SELECT etag FROM documents WHERE container = $1 AND partition_key = $2 AND id = $3",
            container, partition_key, doc_id,
        )

    async def read(self, container: str, partition_key: str, doc_id: str) -> Optional[StoredDocument]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM documents WHERE container = $1 AND partition_key = $2 AND id = $3",
                container, partition_key, doc_id,
            )
        return self._row_to_document(row) if row else None

    async def create(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO documents (container, partition_key, id, body, etag)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (container, partition_key, id) DO NOTHING
                RETURNING *
            """, container, partition_key, doc_id, body, new_etag())
            if row is None:
                current = await self._current_etag(conn, container, partition_key, doc_id)
                raise ConflictError(
                    f"{container} document '{doc_id}' already exists",
                    resource=container,
                    resource_id=doc_id,
                    current_token=current,
                )
        return self._row_to_document(row)

    async def upsert(self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any]) -> StoredDocument:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO documents (container, partition_key, id, body, etag)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (container, partition_key, id) DO UPDATE SET
                    body = EXCLUDED.body,
                    etag = EXCLUDED.etag,
                    updated_at = NOW()
                RETURNING *
            """, container, partition_key, doc_id, body, new_etag())
        return self._row_to_document(row)

    async def replace(
        self, container: str, partition_key: str, doc_id: str, body: Dict[str, Any], if_match: str
    ) -> StoredDocument:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE documents SET body = $4, etag = $5, updated_at = NOW()
                WHERE container = $1 AND partition_key = $2 AND id = $3 AND etag = $6
                RETURNING *
            """, container, partition_key, doc_id, body, new_etag(), if_match)
            if row is None:
                current = await self._current_etag(conn, container, partition_key, doc_id)
                if current is None:
                    raise NotFoundError(container, doc_id)
                raise ConflictError(
                    resource=container,
                    resource_id=doc_id,
                    stale_token=if_match,
                    current_token=current,
                )
        return self._row_to_document(row)

    async def delete(self, container: str, partition_key: str, doc_id: str, if_match: Optional[str] = None) -> None:
        async with self.pool.acquire() as conn:
            if if_match is None:
                result = await conn.execute(
                    "DELETE FROM documents WHERE container = $1 AND partition_key = $2 AND id = $3",
                    container, partition_key, doc_id,
                )
            else:
                result = await conn.execute(
                    "DELETE FROM documents WHERE container = $1 AND partition_key = $2 AND id = $3 AND etag = $4",
                    container, partition_key, doc_id, if_match,
                )
            if result == "DELETE 1":
                return
            current = await self._current_etag(conn, container, partition_key, doc_id)
            if current is None:
                raise NotFoundError(container, doc_id)
            raise ConflictError(
                resource=container,
                resource_id=doc_id,
                stale_token=if_match,
                current_token=current,
            )

    async def query(
        self,
        container: str,
        filters: Optional[Dict[str, Any]] = None,
        partition_key: Optional[str] = None,
        page_size: Optional[int] = None,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        clauses = ["container = $1"]
        params: List[Any] = [container]
        if partition_key is not None:
            params.append(partition_key)
            clauses.append(f"partition_key = ${len(params)}")
        if filters:
            params.append(filters)
            clauses.append(f"body @> ${len(params)}::jsonb")

        sql = f"SELECT * FROM documents WHERE {' AND '.join(clauses)} ORDER BY partition_key, id"
        offset = int(continuation) if continuation else 0
        if page_size is not None:
            # Fetch one extra row to know whether another page exists
            params.extend([page_size + 1, offset])
            sql += f" LIMIT ${len(params) - 1} OFFSET ${len(params)}"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *params)

        next_token = None
        if page_size is not None and len(rows) > page_size:
            rows = rows[:page_size]
            next_token = str(offset + page_size)
        return QueryPage(documents=[self._row_to_document(r) for r in rows], continuation=next_token)

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (OSError, asyncpg.PostgresError, AttributeError):
            return False
