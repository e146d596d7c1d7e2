"""
Entitlement reconciliation.

Replaces the stored account inventory of one application with the latest
authoritative extract: validate, dedupe, correlate, tag SoD conflicts,
apply blocking, upsert survivors, then delete every stored grant of the
application that did not survive.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from shared.errors import DependencyError, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..audit import AuditAction, AuditSink
from ..batching import BatchStatus, gather_in_batches, run_batches, summarize
from ..directory import IdentityDirectory, privileged_entitlements
from ..directory.models import Identity
from ..persistence import ACCOUNTS, DocumentStore, StoredDocument
from ..sod import PolicySnapshot, load_snapshot, normalize, normalize_pair
from .models import (
    AccountGrant,
    AccountRow,
    Correlation,
    CorrelationStatus,
    ReconciliationOptions,
    ReconciliationResult,
    SodConflict,
    SodScope,
    SodStatus,
)


class Reconciler:
    """Runs reconciliations against a document store and identity directory."""

    def __init__(
        self,
        store: DocumentStore,
        directory: IdentityDirectory,
        portal_url: str = "",
        metrics: Optional[MetricsCollector] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.store = store
        self.directory = directory
        self.portal_url = portal_url
        self.metrics = metrics
        self.audit = audit
        self.logger = get_logger("access_review.reconciliation")

    async def reconcile(
        self,
        app_id: str,
        rows: List[Any],
        options: Optional[ReconciliationOptions] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReconciliationResult:
        options = options or ReconciliationOptions()
        app_id = (app_id or "").strip()
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + options.timeout_seconds if options.timeout_seconds else None

        parsed = self._validate(app_id, rows, options.allow_empty)
        unique = self._dedupe(parsed)
        result = ReconciliationResult(app_id=app_id, received=len(parsed), unique_rows=len(unique))

        existing = {doc.id: doc for doc in await self.store.query_all(ACCOUNTS, partition_key=app_id)}

        try:
            identities = await asyncio.wait_for(
                self._correlate(unique, options.batch_size),
                timeout=None if deadline is None else max(deadline - loop.time(), 0),
            )
        except asyncio.TimeoutError:
            self.logger.warning("Reconciliation timed out during correlation", app_id=app_id)
            result.timed_out = True
            result.delete_skipped = True
            result.upsert_failed = len(unique)
            return await self._finish(result, started, actor_id, actor_name)

        snapshot = await load_snapshot(self.store, self.portal_url)
        privileged = await privileged_entitlements(self.store, app_id)
        held = await self._held_entitlements(unique, existing, options)

        now = datetime.now(timezone.utc)
        survivors: List[AccountGrant] = []
        for row in unique:
            grant = self._build_grant(row, identities.get(row.user_id), snapshot, held, privileged, existing, now)
            if grant.is_orphan:
                result.orphans += 1
            if grant.sod.has_conflict:
                result.sod_conflicts += 1

            if grant.is_orphan and options.block_uncorrelated:
                result.blocked_uncorrelated += 1
                continue
            if grant.sod.has_conflict and options.block_on_conflict:
                result.blocked_sod += 1
                continue
            survivors.append(grant)

        if self.metrics and result.sod_conflicts:
            self.metrics.increment_counter("sod_violations_total", result.sod_conflicts, stage="reconciliation")

        upserts = await run_batches(
            survivors,
            options.batch_size,
            lambda grant: self.store.upsert(ACCOUNTS, app_id, grant.id, grant.to_document()),
            key=lambda grant: grant.id,
            deadline=deadline,
        )
        result.upserted = upserts.ok
        result.upsert_failed = upserts.failed + upserts.not_started
        result.upsert_errors = [e.to_dict() for e in upserts.errors]

        if upserts.timed_out:
            # Without the full set of upserted ids a delete would drop live grants
            result.timed_out = True
            result.delete_skipped = True
            self.logger.warning("Reconciliation timed out, sync-delete skipped", app_id=app_id)
            return await self._finish(result, started, actor_id, actor_name)

        stale = sorted(set(existing) - set(upserts.succeeded_keys))
        deletes = await run_batches(
            stale,
            options.batch_size,
            lambda doc_id: self._delete_grant(app_id, doc_id),
            key=lambda doc_id: doc_id,
            deadline=deadline,
        )
        result.deleted = deletes.ok
        result.delete_failed = deletes.failed + deletes.not_started
        result.delete_errors = [e.to_dict() for e in deletes.errors]
        result.timed_out = deletes.timed_out

        return await self._finish(result, started, actor_id, actor_name)

    def _validate(self, app_id: str, rows: Any, allow_empty: bool) -> List[AccountRow]:
        """All-or-nothing schema gate."""
        if not app_id:
            raise ValidationError("app_id is required")
        if not isinstance(rows, list):
            raise ValidationError("rows must be a list")
        if not rows and not allow_empty:
            raise ValidationError(
                "Import contains no rows; pass allow_empty to clear the application",
                {"app_id": app_id},
            )

        parsed: List[AccountRow] = []
        errors: List[Dict[str, Any]] = []
        for index, raw in enumerate(rows):
            try:
                row = AccountRow.model_validate(raw)
            except PydanticValidationError as e:
                fields = sorted({".".join(str(p) for p in err["loc"]) or "row" for err in e.errors()})
                errors.append({"index": index, "error": f"invalid fields: {', '.join(fields)}"})
                continue
            if row.app_id != app_id:
                errors.append({"index": index, "error": f"app_id '{row.app_id}' does not match '{app_id}'"})
                continue
            parsed.append(row)

        if errors:
            raise ValidationError(f"{len(errors)} invalid row(s); nothing was imported", {"errors": errors})
        return parsed

    @staticmethod
    def _dedupe(rows: List[AccountRow]) -> List[AccountRow]:
        unique: Dict[str, AccountRow] = {}
        for row in rows:
            unique[row.grant_id] = row
        return list(unique.values())

    async def _correlate(self, rows: List[AccountRow], batch_size: int) -> Dict[str, Optional[Identity]]:
        """Look up each distinct user once; directory outages degrade to uncorrelated."""
        user_ids = sorted({row.user_id for row in rows})
        results = await gather_in_batches(user_ids, batch_size, self.directory.get_identity)

        identities: Dict[str, Optional[Identity]] = {}
        outages = 0
        for user_id, found in zip(user_ids, results):
            if isinstance(found, DependencyError):
                outages += 1
                identities[user_id] = None
            elif isinstance(found, BaseException):
                raise found
            else:
                identities[user_id] = found
        if outages:
            self.logger.warning(
                "Identity directory unavailable, treating users as uncorrelated",
                users=outages,
            )
        return identities

    async def _held_entitlements(
        self,
        rows: List[AccountRow],
        existing: Dict[str, StoredDocument],
        options: ReconciliationOptions,
    ) -> Dict[str, Set]:
        """
        Per-user held set: grants already on record (this application, or
        every application in global scope) plus the batch.
        """
        held: Dict[str, Set] = {}
        for row in rows:
            held.setdefault(row.user_id, set()).add(normalize_pair(row.app_id, row.entitlement))

        if options.scope == SodScope.GLOBAL:
            user_ids = sorted(held)
            results = await gather_in_batches(
                user_ids,
                options.batch_size,
                lambda uid: self.store.query_all(ACCOUNTS, filters={"user_id": uid}),
            )
            on_record = []
            for docs in results:
                if isinstance(docs, BaseException):
                    raise docs
                on_record.extend(docs)
        else:
            on_record = existing.values()

        for doc in on_record:
            user_held = held.get(doc.body.get("user_id"))
            if user_held is not None:
                user_held.add(normalize_pair(doc.body.get("app_id"), doc.body.get("entitlement")))
        return held

    def _build_grant(
        self,
        row: AccountRow,
        identity: Optional[Identity],
        snapshot: PolicySnapshot,
        held: Dict[str, Set],
        privileged: Set[str],
        existing: Dict[str, StoredDocument],
        now: datetime,
    ) -> AccountGrant:
        if identity is not None:
            correlation = Correlation(
                is_correlated=identity.is_active,
                status=CorrelationStatus.ACTIVE if identity.is_active else CorrelationStatus.INACTIVE,
                hr_user_id=identity.user_id,
                display_name=identity.name or None,
                department=identity.department,
                checked_at=now,
            )
        else:
            correlation = Correlation(checked_at=now)

        violations = snapshot.evaluate(row.app_id, row.entitlement, held.get(row.user_id, ()))
        previous = existing.get(row.grant_id)
        created_at = previous.body.get("created_at") if previous else None

        return AccountGrant(
            id=row.grant_id,
            app_id=row.app_id,
            user_id=row.user_id,
            entitlement=row.entitlement,
            user_name=row.user_name or (identity.name if identity else None),
            email=(row.email or (identity.email if identity else None) or None),
            correlation=correlation,
            sod=SodStatus(
                has_conflict=bool(violations),
                conflicts=[SodConflict(**v.to_dict()) for v in violations],
                checked_at=now,
            ),
            is_orphan=not correlation.is_correlated,
            is_privileged=normalize(row.entitlement) in privileged,
            created_at=created_at or now,
            updated_at=now,
        )

    async def _delete_grant(self, app_id: str, doc_id: str) -> str:
        try:
            await self.store.delete(ACCOUNTS, app_id, doc_id)
        except NotFoundError:
            # Deleted concurrently; the end state is the same
            pass
        return doc_id

    async def _finish(
        self,
        result: ReconciliationResult,
        started: float,
        actor_id: Optional[str],
        actor_name: Optional[str],
    ) -> ReconciliationResult:
        ok = result.upserted + result.deleted
        result.status = summarize(ok, result.failed)
        if result.status == BatchStatus.SUCCESS and (
            result.timed_out or result.blocked_uncorrelated or result.blocked_sod
        ):
            result.status = BatchStatus.PARTIAL

        duration = asyncio.get_running_loop().time() - started
        if self.metrics:
            self.metrics.observe_histogram("reconciliation_duration_seconds", duration)
            for outcome in ("upserted", "upsert_failed", "deleted", "delete_failed",
                            "blocked_uncorrelated", "blocked_sod"):
                count = getattr(result, outcome)
                if count:
                    self.metrics.increment_counter(
                        "reconciliation_rows_total", count, app_id=result.app_id, outcome=outcome
                    )

        self.logger.info(
            "Reconciliation finished",
            app_id=result.app_id,
            status=result.status.value,
            upserted=result.upserted,
            upsert_failed=result.upsert_failed,
            deleted=result.deleted,
            delete_failed=result.delete_failed,
            blocked_uncorrelated=result.blocked_uncorrelated,
            blocked_sod=result.blocked_sod,
            timed_out=result.timed_out,
            duration_ms=round(duration * 1000, 2),
        )

        if self.audit:
            await self.audit.record(
                actor_id,
                AuditAction.IMPORT_ACCOUNTS,
                {
                    "app_id": result.app_id,
                    "status": result.status.value,
                    "upserted": result.upserted,
                    "deleted": result.deleted,
                    "failed": result.failed,
                    "blocked_uncorrelated": result.blocked_uncorrelated,
                    "blocked_sod": result.blocked_sod,
                    "timed_out": result.timed_out,
                },
                actor_name=actor_name,
            )
        return result
