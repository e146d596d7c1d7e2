"""
Campaign lifecycle: launch, counter recomputation, confirmation, archive.

Cycle counters and status are always re-derived from the live review
items and written back with a conditional replace against a token read
immediately before the write, so an interleaved or missed update is
corrected by the next recomputation.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..audit import AuditAction, AuditSink
from ..batching import BatchStatus, gather_in_batches, run_batches
from ..directory import IdentityDirectory
from ..persistence import ACCOUNTS, REVIEW_CYCLES, REVIEW_ITEMS, DocumentStore, StoredDocument
from ..reconciliation import AccountGrant
from ..sod import load_snapshot, normalize, normalize_pair
from .models import CycleStatus, ItemStatus, LaunchResult, ReviewCycle, ReviewItem
from .reviewers import ReviewerResolver, degrade


def derive_status(
    current: CycleStatus, pending: int, revoked: int, all_confirmed: bool
) -> CycleStatus:
    """
    The single completion rule used everywhere.

    ``COMPLETED`` needs every reviewer confirmed, nothing pending and
    nothing awaiting remediation; it is terminal once reached.
    """
    if current == CycleStatus.COMPLETED:
        return CycleStatus.COMPLETED
    if all_confirmed and pending == 0:
        return CycleStatus.REMEDIATION if revoked > 0 else CycleStatus.COMPLETED
    return CycleStatus.ACTIVE


def logical_items(docs: Iterable[StoredDocument]) -> List[ReviewItem]:
    """
    Collapse copies that share a logical id.

    A reassignment in flight leaves the claimed original next to its new
    copy; the unclaimed copy is the live one.
    """
    by_id: Dict[str, ReviewItem] = {}
    for doc in docs:
        item = ReviewItem.from_document(doc)
        current = by_id.get(item.id)
        if current is None or (current.reassignment_target and not item.reassignment_target):
            by_id[item.id] = item
    return list(by_id.values())


def new_cycle_id(app_id: str, now: datetime) -> str:
    return f"RC_{normalize(app_id)}_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:6].upper()}"


class CampaignManager:
    """Owns the review cycle state machine."""

    def __init__(
        self,
        store: DocumentStore,
        directory: IdentityDirectory,
        review_due_days: int = 14,
        batch_size: int = 50,
        portal_url: str = "",
        metrics: Optional[MetricsCollector] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.store = store
        self.directory = directory
        self.resolver = ReviewerResolver(directory)
        self.review_due_days = review_due_days
        self.batch_size = batch_size
        self.portal_url = portal_url
        self.metrics = metrics
        self.audit = audit
        self.logger = get_logger("access_review.campaigns.lifecycle")

    async def open_cycles(self, app_id: str) -> List[ReviewCycle]:
        docs = await self.store.query_all(REVIEW_CYCLES, partition_key=app_id)
        cycles = [ReviewCycle.from_document(d) for d in docs]
        return [c for c in cycles if c.status != CycleStatus.COMPLETED]

    async def get_cycle(self, cycle_id: str, app_id: Optional[str] = None) -> ReviewCycle:
        return ReviewCycle.from_document(await self._read_cycle(cycle_id, app_id))

    async def _read_cycle(self, cycle_id: str, app_id: Optional[str] = None) -> StoredDocument:
        if app_id:
            doc = await self.store.read(REVIEW_CYCLES, app_id, cycle_id)
        else:
            page = await self.store.query(REVIEW_CYCLES, filters={"id": cycle_id}, page_size=1)
            doc = page.documents[0] if page.documents else None
        if doc is None:
            raise NotFoundError("review_cycle", cycle_id)
        return doc

    async def launch(
        self,
        app_id: str,
        due_date: Optional[datetime] = None,
        name: Optional[str] = None,
        force_relaunch: bool = False,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> LaunchResult:
        app_id = (app_id or "").strip()
        if not app_id:
            raise ValidationError("app_id is required")

        open_cycles = await self.open_cycles(app_id)
        if open_cycles and not force_relaunch:
            raise ConflictError(
                f"Application '{app_id}' already has an open review cycle",
                resource="review_cycle",
                resource_id=open_cycles[0].id,
                details={"app_id": app_id, "open_cycle_ids": [c.id for c in open_cycles]},
            )

        grants = [
            AccountGrant.model_validate(doc.body)
            for doc in await self.store.query_all(ACCOUNTS, partition_key=app_id)
        ]
        if not grants:
            raise ValidationError(f"No accounts on record for application '{app_id}'", {"app_id": app_id})

        application = await degrade(self.directory.get_application(app_id), "application", app_id)
        app_name = application.display_name if application else app_id
        owner_id = await self.resolver.resolve_owner(application)

        user_ids = sorted({g.user_id for g in grants})
        holders = dict(zip(user_ids, await gather_in_batches(
            user_ids, self.batch_size,
            lambda uid: degrade(self.directory.get_identity(uid), "identity", uid),
        )))
        held = await self._held_globally(user_ids)
        snapshot = await load_snapshot(self.store, self.portal_url)

        now = datetime.now(timezone.utc)
        cycle_id = new_cycle_id(app_id, now)
        items: List[ReviewItem] = []
        violations_found = 0
        for grant in sorted(grants, key=lambda g: g.id):
            holder = holders.get(grant.user_id)
            if isinstance(holder, BaseException):
                raise holder
            violations = snapshot.evaluate(grant.app_id, grant.entitlement, held.get(grant.user_id, ()))
            violations_found += len(violations)
            items.append(ReviewItem(
                id=f"{cycle_id}_{grant.id}",
                review_cycle_id=cycle_id,
                reviewer_id=self.resolver.reviewer_for(app_id, holder, owner_id),
                app_id=app_id,
                app_name=app_name,
                account_id=grant.id,
                account_user_id=grant.user_id,
                user_name=grant.user_name or (holder.name if holder else None),
                entitlement=grant.entitlement,
                is_sod_conflict=bool(violations),
                is_orphan=holder is None or grant.is_orphan,
                is_privileged=grant.is_privileged,
                violated_policy_ids=[v.policy_id for v in violations],
                created_at=now,
            ))

        cycle = ReviewCycle(
            id=cycle_id,
            app_id=app_id,
            app_name=app_name,
            name=name or f"{app_name} access review {now:%Y-%m-%d}",
            status=CycleStatus.ACTIVE,
            total_items=len(items),
            pending_items=len(items),
            pending_remediation_items=0,
            confirmed_managers=[],
            reviewers=sorted({i.reviewer_id for i in items}),
            launched_at=now,
            launched_by=actor_id,
            due_date=due_date or now + timedelta(days=self.review_due_days),
        )
        await self.store.create(REVIEW_CYCLES, app_id, cycle_id, cycle.to_document())

        outcome = await run_batches(
            items,
            self.batch_size,
            lambda item: self.store.create(REVIEW_ITEMS, item.reviewer_id, item.id, item.to_document()),
            key=lambda item: item.id,
        )
        if outcome.failed:
            # Counters must describe the items that exist; with none the cycle settles as COMPLETED
            cycle = await self.recompute_counters(cycle_id, app_id)
        else:
            cycle = await self.get_cycle(cycle_id, app_id)

        status = BatchStatus.SUCCESS if not outcome.failed else (
            BatchStatus.FAILED if outcome.ok == 0 else BatchStatus.PARTIAL
        )
        if self.metrics:
            self.metrics.increment_counter("review_items_created_total", outcome.ok)
            if violations_found:
                self.metrics.increment_counter("sod_violations_total", violations_found, stage="launch")

        self.logger.info(
            "Review cycle launched",
            cycle_id=cycle_id,
            app_id=app_id,
            items_created=outcome.ok,
            items_failed=outcome.failed,
            reviewers=len(cycle.reviewers),
            forced=bool(open_cycles),
        )
        await self._audit(actor_id, actor_name, AuditAction.LAUNCH_REVIEW, {
            "cycle_id": cycle_id,
            "app_id": app_id,
            "items_created": outcome.ok,
            "items_failed": outcome.failed,
            "force_relaunch": force_relaunch,
        })

        return LaunchResult(
            cycle_id=cycle_id,
            status=status,
            items_created=outcome.ok,
            items_failed=outcome.failed,
            errors=[e.to_dict() for e in outcome.errors],
            cycle=cycle.model_dump(mode="json"),
        )

    async def _held_globally(self, user_ids: List[str]) -> Dict[str, Set]:
        """Every grant each user holds, across all applications."""
        results = await gather_in_batches(
            user_ids,
            self.batch_size,
            lambda uid: self.store.query_all(ACCOUNTS, filters={"user_id": uid}),
        )
        held: Dict[str, Set] = {}
        for user_id, docs in zip(user_ids, results):
            if isinstance(docs, BaseException):
                raise docs
            held[user_id] = {normalize_pair(d.body.get("app_id"), d.body.get("entitlement")) for d in docs}
        return held

    async def recompute_counters(self, cycle_id: str, app_id: Optional[str] = None) -> ReviewCycle:
        """Re-derive counters, reviewers and status from live item state."""
        return await self._settle(cycle_id, app_id)

    async def confirm(
        self,
        cycle_id: str,
        reviewer_id: str,
        app_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReviewCycle:
        reviewer_id = (reviewer_id or "").strip()
        if not reviewer_id:
            raise ValidationError("reviewer_id is required")
        cycle = await self._settle(cycle_id, app_id, confirm_reviewer=reviewer_id)
        await self._audit(reviewer_id, actor_name, AuditAction.CONFIRM_REVIEW, {
            "cycle_id": cycle_id,
            "status": cycle.status.value,
        })
        return cycle

    async def archive(
        self,
        cycle_id: str,
        app_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReviewCycle:
        """Settle the cycle; stamp ``archived_at`` only when it derives as COMPLETED."""
        cycle = await self._settle(cycle_id, app_id, archive=True)
        await self._audit(actor_id, actor_name, AuditAction.ARCHIVE_REVIEW, {
            "cycle_id": cycle_id,
            "status": cycle.status.value,
            "archived": cycle.archived_at is not None,
        })
        return cycle

    async def _settle(
        self,
        cycle_id: str,
        app_id: Optional[str] = None,
        confirm_reviewer: Optional[str] = None,
        archive: bool = False,
    ) -> ReviewCycle:
        doc = await self._read_cycle(cycle_id, app_id)
        before = ReviewCycle.from_document(doc)
        items = logical_items(
            await self.store.query_all(REVIEW_ITEMS, filters={"review_cycle_id": cycle_id})
        )

        cycle = before.model_copy(deep=True)
        if confirm_reviewer and confirm_reviewer not in cycle.confirmed_managers:
            cycle.confirmed_managers = sorted(set(cycle.confirmed_managers) | {confirm_reviewer})
        cycle.total_items = len(items)
        cycle.pending_items = sum(1 for i in items if i.status == ItemStatus.PENDING)
        cycle.pending_remediation_items = sum(1 for i in items if i.status == ItemStatus.REVOKED)
        cycle.reviewers = sorted({i.reviewer_id for i in items})
        cycle.status = derive_status(
            before.status, cycle.pending_items, cycle.pending_remediation_items, cycle.all_reviewers_confirmed
        )

        now = datetime.now(timezone.utc)
        if cycle.status == CycleStatus.COMPLETED and cycle.completed_at is None:
            cycle.completed_at = now
        if archive:
            if cycle.status == CycleStatus.COMPLETED:
                cycle.archived_at = cycle.archived_at or now
            else:
                cycle.archived_at = None

        if cycle.to_document() == before.to_document():
            return before

        try:
            stored = await self.store.replace(
                REVIEW_CYCLES, doc.partition_key, cycle_id, cycle.to_document(), if_match=doc.etag
            )
        except ConflictError:
            if self.metrics:
                self.metrics.increment_counter("concurrency_conflicts_total", resource="review_cycle")
            self.logger.warning("Review cycle changed during recomputation", cycle_id=cycle_id)
            raise

        if before.status != cycle.status:
            self.logger.info(
                "Review cycle status changed",
                cycle_id=cycle_id,
                from_status=before.status.value,
                to_status=cycle.status.value,
            )
            if self.metrics:
                self.metrics.increment_counter(
                    "cycle_transitions_total", from_status=before.status.value, to_status=cycle.status.value
                )
        return ReviewCycle.from_document(stored)

    async def _audit(self, actor_id, actor_name, action, details):
        if self.audit:
            await self.audit.record(actor_id, action, details, actor_name=actor_name)
