"""
Review item actions: decisions, remediation and reassignment.

Items are partitioned by reviewer, so a reassignment moves the document
to another partition. The move is done in three idempotent steps:

1. claim the original (``reassignment_target``) with a conditional write,
2. create the copy under the new reviewer if it does not exist yet,
3. delete the claimed original, guarded by the claim's token.

A retry with the same target resumes at whichever step was not done, and
``recover_reassignments`` rolls forward any claim left behind.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.errors import (
    ConflictError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..audit import AuditAction, AuditSink
from ..directory import IdentityDirectory
from ..persistence import REVIEW_ITEMS, DocumentStore, StoredDocument
from .lifecycle import CampaignManager
from .models import ItemActionRequest, ItemStatus, RecoveryResult, ReviewCycle, ReviewItem


DECISIONS = (ItemStatus.APPROVED.value, ItemStatus.REVOKED.value)


class ReviewItemService:
    """Applies reviewer and administrator actions to review items."""

    def __init__(
        self,
        store: DocumentStore,
        directory: IdentityDirectory,
        campaigns: CampaignManager,
        max_reassignments: int = 3,
        metrics: Optional[MetricsCollector] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.store = store
        self.directory = directory
        self.campaigns = campaigns
        self.max_reassignments = max_reassignments
        self.metrics = metrics
        self.audit = audit
        self.logger = get_logger("access_review.campaigns.items")

    async def apply_action(
        self,
        request: ItemActionRequest,
        if_match: Optional[str],
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReviewItem:
        """Entry point for the public API; a concurrency token is mandatory."""
        token = (if_match or request.etag or "").strip()
        if not token:
            raise PreconditionError(
                "An If-Match header (or etag field) with the item's current token is required",
                {"item_id": request.item_id},
            )

        if request.reassign_to:
            return await self.reassign(
                request.item_id,
                request.reviewer_id,
                request.reassign_to,
                comment=request.comment,
                if_match=token,
                actor_id=actor_id or request.reviewer_id,
                actor_name=actor_name,
            )
        if request.decision == ItemStatus.REMEDIATED.value:
            return await self.remediate(
                request.item_id,
                remediated_at=request.remediated_at,
                comment=request.comment,
                reviewer_id=request.reviewer_id,
                if_match=token,
                actor_id=actor_id,
                actor_name=actor_name,
            )
        return await self.act(
            request.item_id,
            request.reviewer_id,
            request.decision,
            comment=request.comment,
            if_match=token,
            actor_name=actor_name,
        )

    async def act(
        self,
        item_id: str,
        reviewer_id: str,
        decision: str,
        comment: Optional[str] = None,
        if_match: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReviewItem:
        """Approve or revoke a pending item owned by ``reviewer_id``."""
        decision = (decision or "").strip().upper()
        if decision not in DECISIONS:
            raise ValidationError(f"decision must be one of {', '.join(DECISIONS)}")

        doc = await self._read_owned(item_id, reviewer_id)
        item = ReviewItem.from_document(doc)
        self._check_token(doc, if_match)
        self._require_movable(item)
        if item.status != ItemStatus.PENDING:
            raise ConflictError(
                f"Item is already {item.status.value}",
                resource="review_item",
                resource_id=item_id,
                details={"status": item.status.value},
            )

        comment = (comment or "").strip() or None
        if decision == ItemStatus.APPROVED.value and item.is_high_risk and not comment:
            raise PreconditionError(
                "A justification comment is required to approve a high-risk item",
                {"item_id": item_id, "is_sod_conflict": item.is_sod_conflict, "is_orphan": item.is_orphan},
            )

        item.status = ItemStatus(decision)
        item.comment = comment
        item.actioned_at = datetime.now(timezone.utc)
        item.actioned_by = reviewer_id
        updated = await self._replace(doc, item)

        if self.metrics:
            self.metrics.increment_counter("review_decisions_total", decision=decision)
        self.logger.info("Review item actioned", item_id=item_id, reviewer_id=reviewer_id, decision=decision)
        await self._audit(reviewer_id, actor_name, AuditAction.REVIEW_ACTION, {
            "item_id": item_id,
            "cycle_id": item.review_cycle_id,
            "decision": decision,
            "comment": comment,
        })

        await self._recompute_after(updated)
        return updated

    async def remediate(
        self,
        item_id: str,
        remediated_at: Optional[datetime] = None,
        comment: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        if_match: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReviewItem:
        """Record that a revoked entitlement was removed at the source."""
        if reviewer_id:
            doc = await self._read_owned(item_id, reviewer_id)
        else:
            doc = await self._find(item_id)
        item = ReviewItem.from_document(doc)
        self._check_token(doc, if_match)
        if item.status != ItemStatus.REVOKED:
            raise ConflictError(
                f"Only revoked items can be remediated; item is {item.status.value}",
                resource="review_item",
                resource_id=item_id,
                details={"status": item.status.value},
            )

        item.status = ItemStatus.REMEDIATED
        item.remediated_at = remediated_at or datetime.now(timezone.utc)
        item.remediation_comment = (comment or "").strip() or None
        updated = await self._replace(doc, item)

        if self.metrics:
            self.metrics.increment_counter("review_decisions_total", decision=ItemStatus.REMEDIATED.value)
        self.logger.info("Review item remediated", item_id=item_id)
        await self._audit(actor_id or reviewer_id, actor_name, AuditAction.REMEDIATE, {
            "item_id": item_id,
            "cycle_id": item.review_cycle_id,
            "remediated_at": updated.remediated_at.isoformat(),
        })

        await self._recompute_after(updated)
        return updated

    async def reassign(
        self,
        item_id: str,
        from_reviewer_id: str,
        to_reviewer_id: str,
        comment: Optional[str] = None,
        if_match: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> ReviewItem:
        """Move a pending item to another reviewer."""
        from_reviewer_id = (from_reviewer_id or "").strip()
        to_reviewer_id = (to_reviewer_id or "").strip()
        if not to_reviewer_id:
            raise ValidationError("reassign_to is required")
        if to_reviewer_id == from_reviewer_id:
            raise ValidationError("Item is already assigned to this reviewer")

        doc = await self.store.read(REVIEW_ITEMS, from_reviewer_id, item_id)
        if doc is None:
            moved = await self.store.read(REVIEW_ITEMS, to_reviewer_id, item_id)
            if moved is not None and moved.body.get("reassigned_from") == from_reviewer_id:
                # Retry of a move that already finished
                return ReviewItem.from_document(moved)
            raise NotFoundError("review_item", item_id, {"reviewer_id": from_reviewer_id})

        item = ReviewItem.from_document(doc)
        if item.reassignment_target:
            if item.reassignment_target != to_reviewer_id:
                raise ConflictError(
                    f"Item is being reassigned to '{item.reassignment_target}'",
                    resource="review_item",
                    resource_id=item_id,
                    details={"reassignment_target": item.reassignment_target},
                )
            return await self._complete_move(doc)

        self._check_token(doc, if_match)
        if item.status != ItemStatus.PENDING:
            raise ConflictError(
                f"Only pending items can be reassigned; item is {item.status.value}",
                resource="review_item",
                resource_id=item_id,
                details={"status": item.status.value},
            )
        if item.reassignment_count >= self.max_reassignments:
            raise ValidationError(
                f"Item has reached the reassignment limit of {self.max_reassignments}",
                {"item_id": item_id, "reassignment_count": item.reassignment_count},
            )
        if to_reviewer_id.lower() == item.account_user_id.lower():
            raise ValidationError("An item cannot be reassigned to the account holder under review")
        if await self.directory.get_identity(to_reviewer_id) is None:
            raise ValidationError(f"Unknown reviewer '{to_reviewer_id}'")

        item.reassignment_target = to_reviewer_id
        item.reassigned_at = datetime.now(timezone.utc)
        item.reassigned_by = actor_id or from_reviewer_id
        item.reassignment_comment = (comment or "").strip() or None
        claimed = await self._replace_raw(doc, item)

        moved_item = await self._complete_move(claimed)
        self.logger.info(
            "Review item reassigned",
            item_id=item_id,
            from_reviewer=from_reviewer_id,
            to_reviewer=to_reviewer_id,
            reassignment_count=moved_item.reassignment_count,
        )
        await self._audit(item.reassigned_by, actor_name, AuditAction.REASSIGN, {
            "item_id": item_id,
            "cycle_id": item.review_cycle_id,
            "from": from_reviewer_id,
            "to": to_reviewer_id,
            "comment": item.reassignment_comment,
        })
        return moved_item

    async def recover_reassignments(
        self,
        cycle_id: str,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> RecoveryResult:
        """Roll forward every interrupted move in a cycle, then settle its counters."""
        docs = await self.store.query_all(REVIEW_ITEMS, filters={"review_cycle_id": cycle_id})
        result = RecoveryResult(cycle_id=cycle_id)
        app_id = None

        copies: Dict[str, int] = {}
        for doc in docs:
            copies[doc.id] = copies.get(doc.id, 0) + 1
            app_id = app_id or doc.body.get("app_id")

        for doc in docs:
            if not doc.body.get("reassignment_target"):
                continue
            try:
                await self._complete_move(doc, recompute=False)
                result.recovered += 1
                copies[doc.id] -= 1
            except (ConflictError, NotFoundError) as e:
                result.failed += 1
                result.errors.append({"item_id": doc.id, "reviewer_id": doc.partition_key, "error": e.message})

        result.unresolved_duplicates = sorted(item_id for item_id, n in copies.items() if n > 1)
        if result.unresolved_duplicates:
            self.logger.warning(
                "Duplicate review items without a pending move",
                cycle_id=cycle_id,
                item_ids=result.unresolved_duplicates,
            )

        cycle = await self.campaigns.recompute_counters(cycle_id, app_id)
        result.cycle = cycle.model_dump(mode="json")

        self.logger.info(
            "Reassignment recovery finished",
            cycle_id=cycle_id,
            recovered=result.recovered,
            failed=result.failed,
        )
        await self._audit(actor_id, actor_name, AuditAction.RECOVER_REASSIGNMENTS, {
            "cycle_id": cycle_id,
            "recovered": result.recovered,
            "failed": result.failed,
        })
        return result

    async def _complete_move(self, claimed: StoredDocument, recompute: bool = True) -> ReviewItem:
        """Steps 2 and 3 of a reassignment; safe to repeat."""
        original = ReviewItem.from_document(claimed)
        target = original.reassignment_target

        moved = original.model_copy(deep=True)
        moved.reviewer_id = target
        moved.reassignment_target = None
        moved.reassigned_from = original.reviewer_id
        moved.reassignment_count = original.reassignment_count + 1

        # A copy at the target, or a live copy anywhere else, means step 2 already
        # ran and the item may have moved on since; only the claimed original is
        # left to remove. Claims left by older moves are not live copies.
        elsewhere = [
            doc for doc in await self.store.query_all(REVIEW_ITEMS, filters={"id": original.id})
            if doc.partition_key != claimed.partition_key
            and (doc.partition_key == target or not doc.body.get("reassignment_target"))
        ]
        if elsewhere:
            created = next((doc for doc in elsewhere if doc.partition_key == target), elsewhere[0])
            if created.partition_key != target:
                self.logger.info(
                    "Reassigned item already moved on",
                    item_id=original.id,
                    claimed_by=claimed.partition_key,
                    current_reviewer=created.partition_key,
                )
        else:
            try:
                created = await self.store.create(REVIEW_ITEMS, target, original.id, moved.to_document())
            except ConflictError:
                created = await self.store.read(REVIEW_ITEMS, target, original.id)
                if created is None:
                    raise

        try:
            await self.store.delete(REVIEW_ITEMS, claimed.partition_key, original.id, if_match=claimed.etag)
        except NotFoundError:
            pass

        result = ReviewItem.from_document(created)
        if recompute:
            await self._recompute_after(result)
        return result

    async def _read_owned(self, item_id: str, reviewer_id: str) -> StoredDocument:
        doc = await self.store.read(REVIEW_ITEMS, (reviewer_id or "").strip(), item_id)
        if doc is None:
            raise NotFoundError("review_item", item_id, {"reviewer_id": reviewer_id})
        return doc

    async def _find(self, item_id: str) -> StoredDocument:
        """Locate an item by logical id when the owning reviewer is not known."""
        docs = await self.store.query_all(REVIEW_ITEMS, filters={"id": item_id})
        if not docs:
            raise NotFoundError("review_item", item_id)
        live = [d for d in docs if not d.body.get("reassignment_target")]
        return (live or docs)[0]

    def _check_token(self, doc: StoredDocument, if_match: Optional[str]):
        if if_match is not None and doc.etag != if_match:
            if self.metrics:
                self.metrics.increment_counter("concurrency_conflicts_total", resource="review_item")
            raise ConflictError(
                resource="review_item",
                resource_id=doc.id,
                stale_token=if_match,
                current_token=doc.etag,
            )

    @staticmethod
    def _require_movable(item: ReviewItem):
        if item.reassignment_target:
            raise ConflictError(
                f"Item is being reassigned to '{item.reassignment_target}'",
                resource="review_item",
                resource_id=item.id,
                details={"reassignment_target": item.reassignment_target},
            )

    async def _replace_raw(self, doc: StoredDocument, item: ReviewItem) -> StoredDocument:
        try:
            return await self.store.replace(
                REVIEW_ITEMS, doc.partition_key, doc.id, item.to_document(), if_match=doc.etag
            )
        except ConflictError:
            if self.metrics:
                self.metrics.increment_counter("concurrency_conflicts_total", resource="review_item")
            raise

    async def _replace(self, doc: StoredDocument, item: ReviewItem) -> ReviewItem:
        return ReviewItem.from_document(await self._replace_raw(doc, item))

    async def _recompute_after(self, item: ReviewItem) -> ReviewCycle:
        """Cascade to the owning cycle; the item change stays committed either way."""
        try:
            return await self.campaigns.recompute_counters(item.review_cycle_id, item.app_id)
        except ConflictError as e:
            raise ConflictError(
                "Item saved, but its review cycle changed concurrently; archive the cycle to settle its counters",
                resource="review_cycle",
                resource_id=item.review_cycle_id,
                stale_token=e.stale_token,
                current_token=e.current_token,
                details={"item_id": item.id, "item_committed": True},
            )

    async def _audit(self, actor_id: Optional[str], actor_name: Optional[str], action: str, details: Dict[str, Any]):
        if self.audit:
            await self.audit.record(actor_id, action, details, actor_name=actor_name)
