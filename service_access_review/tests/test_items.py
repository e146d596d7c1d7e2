"""
Unit tests for review item actions and reassignment.
"""

import pytest
import pytest_asyncio

from shared.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from service_access_review.app.campaigns import (
    CampaignManager,
    CycleStatus,
    ItemActionRequest,
    ItemStatus,
    ReviewItemService,
)
from service_access_review.app.persistence import REVIEW_CYCLES, REVIEW_ITEMS


class TestReviewItemService:
    """Test cases for ReviewItemService."""

    @pytest.fixture
    def campaigns(self, store, directory):
        return CampaignManager(store, directory)

    @pytest.fixture
    def items(self, store, directory, campaigns):
        return ReviewItemService(store, directory, campaigns, max_reassignments=2)

    @pytest_asyncio.fixture
    async def item(self, store, seed, campaigns):
        """A single pending item owned by mgr1."""
        await seed.directory()
        await seed.accounts({"app_id": "APP1", "user_id": "user1", "entitlement": "ENT_A"})
        result = await campaigns.launch("APP1")
        docs = await store.query_all(REVIEW_ITEMS, filters={"review_cycle_id": result.cycle_id})
        return docs[0]

    @pytest.mark.asyncio
    async def test_apply_action_requires_token(self, items, item):
        request = ItemActionRequest(item_id=item.id, reviewer_id="mgr1", decision="approved")

        with pytest.raises(PreconditionError):
            await items.apply_action(request, if_match=None)

        updated = await items.apply_action(request, if_match=item.etag)
        assert updated.status == ItemStatus.APPROVED
        assert updated.concurrency_token != item.etag

    @pytest.mark.asyncio
    async def test_token_from_body(self, items, item):
        request = ItemActionRequest(item_id=item.id, reviewer_id="mgr1", decision="REVOKED", etag=item.etag)
        updated = await items.apply_action(request, if_match=None)
        assert updated.status == ItemStatus.REVOKED

    @pytest.mark.asyncio
    async def test_stale_token_conflicts(self, store, items, item):
        await items.act(item.id, "mgr1", "APPROVED", if_match=item.etag)

        with pytest.raises(ConflictError) as exc_info:
            await items.act(item.id, "mgr1", "REVOKED", if_match=item.etag)

        current = await store.read(REVIEW_ITEMS, "mgr1", item.id)
        assert exc_info.value.stale_token == item.etag
        assert exc_info.value.current_token == current.etag
        assert current.body["status"] == "APPROVED"

    @pytest.mark.asyncio
    async def test_only_pending_items_can_be_decided(self, items, item):
        await items.act(item.id, "mgr1", "APPROVED")
        with pytest.raises(ConflictError):
            await items.act(item.id, "mgr1", "REVOKED")

    @pytest.mark.asyncio
    async def test_wrong_reviewer_cannot_see_item(self, items, item):
        with pytest.raises(NotFoundError):
            await items.act(item.id, "mgr2", "APPROVED")

    @pytest.mark.asyncio
    async def test_unknown_decision(self, items, item):
        with pytest.raises(ValidationError):
            await items.act(item.id, "mgr1", "MAYBE")

    @pytest.mark.asyncio
    async def test_remediation_flow(self, campaigns, items, item):
        with pytest.raises(ConflictError):
            await items.remediate(item.id)

        await items.act(item.id, "mgr1", "REVOKED")
        cycle_id = item.body["review_cycle_id"]
        cycle = await campaigns.confirm(cycle_id, "mgr1")
        assert cycle.status == CycleStatus.REMEDIATION

        remediated = await items.remediate(item.id, comment="Removed in source system")
        assert remediated.status == ItemStatus.REMEDIATED
        assert remediated.remediated_at is not None
        assert remediated.remediation_comment == "Removed in source system"

        cycle = await campaigns.get_cycle(cycle_id)
        assert cycle.status == CycleStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reassign_moves_item(self, store, campaigns, items, item):
        moved = await items.reassign(item.id, "mgr1", "mgr2", comment="Changed teams", if_match=item.etag)

        assert moved.reviewer_id == "mgr2"
        assert moved.reassigned_from == "mgr1"
        assert moved.reassignment_count == 1
        assert moved.reassignment_comment == "Changed teams"
        assert moved.reassignment_target is None
        assert await store.read(REVIEW_ITEMS, "mgr1", item.id) is None
        assert await store.read(REVIEW_ITEMS, "mgr2", item.id) is not None

        cycle = await campaigns.get_cycle(item.body["review_cycle_id"])
        assert cycle.total_items == 1
        assert cycle.pending_items == 1
        assert cycle.reviewers == ["mgr2"]

    @pytest.mark.asyncio
    async def test_reassign_retry_is_idempotent(self, items, item):
        first = await items.reassign(item.id, "mgr1", "mgr2")
        again = await items.reassign(item.id, "mgr1", "mgr2")
        assert again.id == first.id
        assert again.reassignment_count == 1

    @pytest.mark.asyncio
    async def test_reassignment_limit(self, store, items, item):
        await items.reassign(item.id, "mgr1", "mgr2")
        await items.reassign(item.id, "mgr2", "owner1")

        with pytest.raises(ValidationError):
            await items.reassign(item.id, "owner1", "mgr1")

        doc = await store.read(REVIEW_ITEMS, "owner1", item.id)
        assert doc.body["reassignment_count"] == 2

    @pytest.mark.asyncio
    async def test_no_self_review(self, items, item):
        with pytest.raises(ValidationError):
            await items.reassign(item.id, "mgr1", "USER1")

    @pytest.mark.asyncio
    async def test_unknown_target(self, items, item):
        with pytest.raises(ValidationError):
            await items.reassign(item.id, "mgr1", "nobody")

    @pytest.mark.asyncio
    async def test_decided_item_cannot_move(self, items, item):
        await items.act(item.id, "mgr1", "APPROVED")
        with pytest.raises(ConflictError):
            await items.reassign(item.id, "mgr1", "mgr2")

    @pytest.mark.asyncio
    async def test_interrupted_reassignment_is_recovered(self, store, campaigns, items, item):
        """A claim left behind by a crash is rolled forward and counted once."""
        real_delete = store.delete

        async def crashing_delete(container, pk, doc_id, if_match=None):
            raise RuntimeError("connection reset")

        store.delete = crashing_delete
        with pytest.raises(RuntimeError):
            await items.reassign(item.id, "mgr1", "mgr2")
        store.delete = real_delete

        # Both copies exist; the counters still see one logical item
        copies = await store.query_all(REVIEW_ITEMS, filters={"id": item.id})
        assert len(copies) == 2
        cycle_id = item.body["review_cycle_id"]
        cycle = await campaigns.recompute_counters(cycle_id)
        assert cycle.total_items == 1
        assert cycle.reviewers == ["mgr2"]

        # The original cannot be decided while it is claimed
        with pytest.raises(ConflictError):
            await items.act(item.id, "mgr1", "APPROVED")

        result = await items.recover_reassignments(cycle_id)

        assert result.recovered == 1
        assert result.failed == 0
        assert result.unresolved_duplicates == []
        assert await store.read(REVIEW_ITEMS, "mgr1", item.id) is None
        assert result.cycle["total_items"] == 1

    @pytest.mark.asyncio
    async def test_recovery_after_onward_move_keeps_one_copy(self, store, campaigns, items, item):
        """A stale claim must not bring back a copy the new reviewer already passed on."""
        real_delete = store.delete

        async def crashing_delete(container, pk, doc_id, if_match=None):
            raise RuntimeError("connection reset")

        store.delete = crashing_delete
        with pytest.raises(RuntimeError):
            await items.reassign(item.id, "mgr1", "mgr2")
        store.delete = real_delete

        at_mgr2 = await store.read(REVIEW_ITEMS, "mgr2", item.id)
        moved = await items.reassign(item.id, "mgr2", "owner1", if_match=at_mgr2.etag)
        assert moved.reviewer_id == "owner1"

        result = await items.recover_reassignments(item.body["review_cycle_id"])

        copies = await store.query_all(REVIEW_ITEMS, filters={"id": item.id})
        assert [doc.partition_key for doc in copies] == ["owner1"]
        assert result.recovered == 1
        assert result.unresolved_duplicates == []
        assert result.cycle["reviewers"] == ["owner1"]
        assert result.cycle["total_items"] == 1

    @pytest.mark.asyncio
    async def test_retry_resumes_interrupted_move(self, store, items, item):
        real_create = store.create

        async def crashing_create(container, pk, doc_id, body):
            raise RuntimeError("connection reset")

        store.create = crashing_create
        with pytest.raises(RuntimeError):
            await items.reassign(item.id, "mgr1", "mgr2")
        store.create = real_create

        claimed = await store.read(REVIEW_ITEMS, "mgr1", item.id)
        assert claimed.body["reassignment_target"] == "mgr2"

        with pytest.raises(ConflictError):
            await items.reassign(item.id, "mgr1", "owner1")

        moved = await items.reassign(item.id, "mgr1", "mgr2")
        assert moved.reviewer_id == "mgr2"
        assert await store.read(REVIEW_ITEMS, "mgr1", item.id) is None

    @pytest.mark.asyncio
    async def test_cascade_conflict_keeps_item_change(self, store, items, item):
        real_replace = store.replace

        async def racing_replace(container, pk, doc_id, body, if_match):
            if container == REVIEW_CYCLES:
                current = await store.read(container, pk, doc_id)
                await store.upsert(container, pk, doc_id, current.body)
            return await real_replace(container, pk, doc_id, body, if_match)

        store.replace = racing_replace
        with pytest.raises(ConflictError) as exc_info:
            await items.act(item.id, "mgr1", "APPROVED")

        assert exc_info.value.details["item_committed"] is True
        assert exc_info.value.details["item_id"] == item.id
        saved = await store.read(REVIEW_ITEMS, "mgr1", item.id)
        assert saved.body["status"] == "APPROVED"

    def test_action_request_validation(self):
        with pytest.raises(ValueError):
            ItemActionRequest(item_id="x", reviewer_id="mgr1")
        with pytest.raises(ValueError):
            ItemActionRequest(item_id="x", reviewer_id="mgr1", decision="APPROVED", reassign_to="mgr2")

        request = ItemActionRequest.model_validate(
            {"itemId": "x", "reviewerId": "mgr1", "reassignTo": "mgr2"}
        )
        assert request.reassign_to == "mgr2"
