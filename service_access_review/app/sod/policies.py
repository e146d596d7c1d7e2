"""
SoD policy storage: snapshot loading and bulk import.
"""

from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError
from shared.logging import get_logger
from ..batching import ImportResult, run_batches
from ..persistence import SOD_POLICIES, DocumentStore
from .engine import PolicySnapshot, normalize
from .models import Severity, SodPolicy, SodPolicyImportRow


logger = get_logger("access_review.sod.policies")


async def load_policies(store: DocumentStore) -> List[SodPolicy]:
    """Read every active policy; malformed documents are skipped."""
    policies = []
    for doc in await store.query_all(SOD_POLICIES, filters={"active": True}):
        try:
            policies.append(SodPolicy.model_validate(doc.body))
        except PydanticValidationError as e:
            logger.warning("Skipping malformed SoD policy", policy_id=doc.id, error=str(e))
    return policies


async def load_snapshot(store: DocumentStore, portal_url: str = "") -> PolicySnapshot:
    """Freeze the current policy set for one evaluation pass."""
    return PolicySnapshot.from_policies(await load_policies(store), portal_url)


def deterministic_policy_id(row: SodPolicyImportRow) -> Optional[str]:
    """Stable id for rows that carry neither an id nor a resolvable name."""
    if row.policy_name and row.policy_name.strip():
        return f"SOD_{normalize(row.policy_name)}"
    if row.missing_sides():
        return None
    return "SOD_{}_{}__{}_{}".format(
        normalize(row.app_id1), normalize(row.entitlement1),
        normalize(row.app_id2), normalize(row.entitlement2),
    )


class SodPolicyImporter:
    """Upserts and deletes SoD policies from raw rows, row by row."""

    def __init__(self, store: DocumentStore, batch_size: int = 50):
        self.store = store
        self.batch_size = batch_size

    async def resolve_id(self, row: SodPolicyImportRow) -> str:
        """Explicit id, then an existing policy with the same name, then a derived id."""
        if row.id and row.id.strip():
            return row.id.strip()
        if row.policy_name and row.policy_name.strip():
            existing = await self.store.query(
                SOD_POLICIES, filters={"name": row.policy_name.strip()}, page_size=1
            )
            if existing.documents:
                return existing.documents[0].id
        policy_id = deterministic_policy_id(row)
        if policy_id is None:
            raise ValidationError("Policy row needs an id, a name, or both sides")
        return policy_id

    async def import_rows(self, rows: List[Dict[str, Any]]) -> ImportResult:
        outcome = await run_batches(
            list(enumerate(rows)),
            self.batch_size,
            self._apply_row,
            key=lambda pair: _row_key(pair[1]),
        )
        result = ImportResult.from_outcome(outcome, processed=len(rows))
        logger.info(
            "SoD policy import finished",
            processed=result.processed,
            upserted=result.upserted,
            deleted=result.deleted,
            failed=result.failed,
        )
        return result

    async def _apply_row(self, pair) -> str:
        _, raw = pair
        try:
            row = SodPolicyImportRow.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError("Invalid policy row", {"errors": e.errors(include_url=False)})

        policy_id = await self.resolve_id(row)
        if row.is_delete:
            await self.store.delete(SOD_POLICIES, policy_id, policy_id)
            return "deleted"

        missing = row.missing_sides()
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        policy = SodPolicy(
            id=policy_id,
            name=(row.policy_name or policy_id).strip(),
            app_id1=normalize(row.app_id1),
            entitlement1=normalize(row.entitlement1),
            app_id2=normalize(row.app_id2),
            entitlement2=normalize(row.entitlement2),
            severity=(row.severity or Severity.MEDIUM).strip().upper(),
            link=row.url or None,
            active=True if row.active is None else row.active,
        )
        await self.store.upsert(SOD_POLICIES, policy_id, policy_id, policy.model_dump())
        return "upserted"


def _row_key(raw: Any) -> Optional[str]:
    if not isinstance(raw, dict):
        return None
    for name in ("id", "policy_id", "policyId", "policy_name", "policyName", "name"):
        if raw.get(name):
            return str(raw[name])
    return None
