"""
Bulk imports feeding the identity directory and entitlement catalog.

Rows are applied independently; a bad row is reported and the rest of the
batch still lands.
"""

from typing import Any, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ValidationError as PydanticValidationError

from shared.errors import ValidationError
from shared.logging import get_logger
from ..batching import ImportResult, run_batches
from ..persistence import APPLICATIONS, ENTITLEMENT_CATALOG, IDENTITIES, DocumentStore
from ..sod.engine import normalize
from .models import Application, CatalogEntitlement, Identity


logger = get_logger("access_review.directory.importers")


def parse_row(model: Type[BaseModel], raw: Any):
    """Validate one raw row, turning pydantic errors into a domain error."""
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(f"Invalid {model.__name__} row: {', '.join(fields)}")


class _Importer:
    """Common batch plumbing."""

    kind = "row"

    def __init__(self, store: DocumentStore, batch_size: int = 50):
        self.store = store
        self.batch_size = batch_size

    async def import_rows(self, rows: List[Dict[str, Any]]) -> ImportResult:
        outcome = await run_batches(list(rows), self.batch_size, self._apply_row, key=self._row_key)
        result = ImportResult.from_outcome(outcome, processed=len(rows))
        logger.info(
            "Import finished",
            kind=self.kind,
            processed=result.processed,
            upserted=result.upserted,
            failed=result.failed,
        )
        return result

    async def _apply_row(self, raw: Any) -> str:
        raise NotImplementedError

    def _row_key(self, raw: Any) -> Optional[str]:
        return None


class IdentityImporter(_Importer):
    kind = "identity"

    async def _apply_row(self, raw: Any) -> str:
        identity = parse_row(Identity, raw)
        await self.store.upsert(IDENTITIES, identity.user_id, identity.user_id, identity.model_dump())
        return "upserted"

    def _row_key(self, raw: Any) -> Optional[str]:
        if isinstance(raw, dict):
            return raw.get("user_id") or raw.get("userId") or raw.get("id")
        return None


class ApplicationImporter(_Importer):
    kind = "application"

    async def _apply_row(self, raw: Any) -> str:
        app = parse_row(Application, raw)
        if app.owner_email:
            app.owner_email = app.owner_email.strip().lower()
        await self.store.upsert(APPLICATIONS, app.app_id, app.app_id, app.model_dump())
        return "upserted"

    def _row_key(self, raw: Any) -> Optional[str]:
        if isinstance(raw, dict):
            return raw.get("app_id") or raw.get("appId") or raw.get("id")
        return None


class EntitlementCatalogImporter(_Importer):
    """Catalog rows for one application; ids are the normalized entitlement."""

    kind = "entitlement"

    def __init__(self, store: DocumentStore, app_id: str, batch_size: int = 50):
        super().__init__(store, batch_size)
        self.app_id = (app_id or "").strip()
        if not self.app_id:
            raise ValidationError("app_id is required")

    async def _apply_row(self, raw: Any) -> str:
        if isinstance(raw, dict) and not (raw.get("app_id") or raw.get("appId")):
            raw = {**raw, "app_id": self.app_id}
        entry = parse_row(CatalogEntitlement, raw)
        if entry.app_id != self.app_id:
            raise ValidationError(f"Row belongs to application '{entry.app_id}', expected '{self.app_id}'")
        doc_id = normalize(entry.entitlement)
        body = {"id": doc_id, "normalized": doc_id, **entry.model_dump()}
        await self.store.upsert(ENTITLEMENT_CATALOG, self.app_id, doc_id, body)
        return "upserted"

    def _row_key(self, raw: Any) -> Optional[str]:
        if isinstance(raw, dict):
            return raw.get("entitlement") or raw.get("entitlementName") or raw.get("name")
        return None


async def privileged_entitlements(store: DocumentStore, app_id: str) -> Set[str]:
    """Normalized names of the catalog entitlements flagged privileged."""
    docs = await store.query_all(ENTITLEMENT_CATALOG, filters={"is_privileged": True}, partition_key=app_id)
    return {doc.id for doc in docs}
