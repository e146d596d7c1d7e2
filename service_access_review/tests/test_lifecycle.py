"""
Unit tests for the review cycle lifecycle.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from shared.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from service_access_review.app.campaigns import (
    CampaignManager,
    CycleStatus,
    ItemStatus,
    ReviewItemService,
    derive_status,
)
from service_access_review.app.persistence import REVIEW_CYCLES, REVIEW_ITEMS


async def cycle_items(store, cycle_id):
    docs = await store.query_all(REVIEW_ITEMS, filters={"review_cycle_id": cycle_id})
    return {d.body["account_user_id"]: d for d in docs}


class TestDeriveStatus:
    """Test cases for the completion rule."""

    @pytest.mark.parametrize("current,pending,revoked,confirmed,expected", [
        (CycleStatus.ACTIVE, 1, 0, True, CycleStatus.ACTIVE),
        (CycleStatus.ACTIVE, 0, 0, False, CycleStatus.ACTIVE),
        (CycleStatus.ACTIVE, 0, 0, True, CycleStatus.COMPLETED),
        (CycleStatus.ACTIVE, 0, 2, True, CycleStatus.REMEDIATION),
        (CycleStatus.REMEDIATION, 0, 0, True, CycleStatus.COMPLETED),
        (CycleStatus.COMPLETED, 3, 1, False, CycleStatus.COMPLETED),
    ])
    def test_derive_status(self, current, pending, revoked, confirmed, expected):
        assert derive_status(current, pending, revoked, confirmed) == expected


class TestCampaignManager:
    """Test cases for CampaignManager."""

    @pytest.fixture
    def campaigns(self, store, directory):
        return CampaignManager(store, directory, review_due_days=10)

    @pytest.fixture
    def items(self, store, directory, campaigns):
        return ReviewItemService(store, directory, campaigns)

    @pytest_asyncio.fixture
    async def launched(self, store, seed, campaigns):
        """APP1 with one correlated account and one orphan."""
        await seed.directory()
        await seed.accounts(
            {"app_id": "APP1", "user_id": "user1", "entitlement": "ENT_A"},
            {"app_id": "APP1", "user_id": "ghost", "entitlement": "ENT_B", "is_orphan": True},
        )
        return await campaigns.launch("APP1")

    @pytest.mark.asyncio
    async def test_launch_creates_cycle_and_items(self, store, launched):
        result = launched
        assert result.items_created == 2
        assert result.status.value == "success"
        assert result.cycle["total_items"] == 2
        assert result.cycle["pending_items"] == 2
        assert result.cycle["pending_remediation_items"] == 0
        assert result.cycle["confirmed_managers"] == []
        assert result.cycle["app_name"] == "General Ledger"

        by_user = await cycle_items(store, result.cycle_id)
        assert by_user["user1"].partition_key == "mgr1"
        # Orphan falls back to the application owner, resolved by e-mail
        assert by_user["ghost"].partition_key == "owner1"
        assert by_user["ghost"].body["is_orphan"] is True
        assert by_user["user1"].body["is_orphan"] is False

    @pytest.mark.asyncio
    async def test_default_due_date(self, campaigns, launched):
        cycle = await campaigns.get_cycle(launched.cycle_id, "APP1")
        assert (cycle.due_date - cycle.launched_at).days == 10

    @pytest.mark.asyncio
    async def test_explicit_due_date_and_name(self, seed, campaigns):
        await seed.directory()
        await seed.accounts({"app_id": "APP2", "user_id": "user2", "entitlement": "PAY"})
        due = datetime(2030, 1, 31, tzinfo=timezone.utc)

        result = await campaigns.launch("APP2", due_date=due, name="Q1 review")

        cycle = await campaigns.get_cycle(result.cycle_id)
        assert cycle.name == "Q1 review"
        assert cycle.due_date == due

    @pytest.mark.asyncio
    async def test_open_cycle_blocks_relaunch(self, campaigns, launched):
        with pytest.raises(ConflictError) as exc_info:
            await campaigns.launch("APP1")
        assert exc_info.value.details["open_cycle_ids"] == [launched.cycle_id]

        forced = await campaigns.launch("APP1", force_relaunch=True)
        assert forced.cycle_id != launched.cycle_id

    @pytest.mark.asyncio
    async def test_launch_without_accounts(self, seed, campaigns):
        await seed.directory()
        with pytest.raises(ValidationError):
            await campaigns.launch("APP1")

    @pytest.mark.asyncio
    async def test_synthetic_reviewer_when_no_owner(self, store, seed, campaigns):
        await seed.directory()
        await seed.accounts({"app_id": "APP3", "user_id": "ghost", "entitlement": "READ"})

        result = await campaigns.launch("APP3")

        by_user = await cycle_items(store, result.cycle_id)
        assert by_user["ghost"].partition_key == "OWNER_APP3"

    @pytest.mark.asyncio
    async def test_owner_resolved_by_name(self, store, seed, campaigns):
        await seed.directory()
        await seed.accounts({"app_id": "APP2", "user_id": "user3", "entitlement": "PAY"})

        result = await campaigns.launch("APP2")

        by_user = await cycle_items(store, result.cycle_id)
        assert by_user["user3"].partition_key == "owner1"

    @pytest.mark.asyncio
    async def test_sod_flags_use_global_scope(self, store, seed, factory, campaigns):
        await seed.directory()
        await seed.policies(factory.create_sod_policy(side1=("APP1", "ENT_A"), side2=("APP2", "PAY")))
        await seed.accounts(
            {"app_id": "APP1", "user_id": "user1", "entitlement": "ENT_A"},
            {"app_id": "APP1", "user_id": "user2", "entitlement": "ENT_A"},
            {"app_id": "APP2", "user_id": "user1", "entitlement": "PAY"},
        )

        result = await campaigns.launch("APP1")

        by_user = await cycle_items(store, result.cycle_id)
        assert by_user["user1"].body["is_sod_conflict"] is True
        assert by_user["user1"].body["violated_policy_ids"] == ["SOD1"]
        assert by_user["user2"].body["is_sod_conflict"] is False

    @pytest.mark.asyncio
    async def test_privileged_flag_copied(self, store, seed, campaigns):
        await seed.directory()
        await seed.accounts({"app_id": "APP1", "user_id": "user1", "entitlement": "ROOT", "is_privileged": True})

        result = await campaigns.launch("APP1")

        by_user = await cycle_items(store, result.cycle_id)
        assert by_user["user1"].body["is_privileged"] is True

    @pytest.mark.asyncio
    async def test_approve_high_risk_needs_comment(self, store, campaigns, items, launched):
        """Approving an orphan without a justification is rejected."""
        ghost = (await cycle_items(store, launched.cycle_id))["ghost"]

        with pytest.raises(PreconditionError):
            await items.act(ghost.id, "owner1", "APPROVED")

        item = await items.act(ghost.id, "owner1", "APPROVED", comment="Service account, owner verified")
        assert item.status == ItemStatus.APPROVED
        assert item.actioned_at is not None

        cycle = await campaigns.get_cycle(launched.cycle_id)
        assert cycle.pending_items == 1

    @pytest.mark.asyncio
    async def test_completion_requires_every_reviewer(self, store, campaigns, items, launched):
        by_user = await cycle_items(store, launched.cycle_id)
        await items.act(by_user["user1"].id, "mgr1", "APPROVED")
        await items.act(by_user["ghost"].id, "owner1", "APPROVED", comment="ok")

        cycle = await campaigns.confirm(launched.cycle_id, "mgr1")
        assert cycle.status == CycleStatus.ACTIVE
        assert cycle.pending_items == 0

        cycle = await campaigns.confirm(launched.cycle_id, "owner1")
        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.completed_at is not None

    @pytest.mark.asyncio
    async def test_revoked_item_leads_to_remediation(self, store, campaigns, items, launched):
        by_user = await cycle_items(store, launched.cycle_id)
        await items.act(by_user["user1"].id, "mgr1", "APPROVED")
        revoked = await items.act(by_user["ghost"].id, "owner1", "REVOKED")
        await campaigns.confirm(launched.cycle_id, "mgr1")
        cycle = await campaigns.confirm(launched.cycle_id, "owner1")

        assert cycle.status == CycleStatus.REMEDIATION
        assert cycle.pending_remediation_items == 1

        await items.remediate(revoked.id)
        cycle = await campaigns.get_cycle(launched.cycle_id)
        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.pending_remediation_items == 0

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, campaigns, launched):
        await campaigns.confirm(launched.cycle_id, "mgr1")
        cycle = await campaigns.confirm(launched.cycle_id, "mgr1")
        assert cycle.confirmed_managers == ["mgr1"]

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, store, campaigns, items, launched):
        by_user = await cycle_items(store, launched.cycle_id)
        await items.act(by_user["user1"].id, "mgr1", "APPROVED")
        await items.act(by_user["ghost"].id, "owner1", "APPROVED", comment="ok")
        await campaigns.confirm(launched.cycle_id, "mgr1")
        completed = await campaigns.confirm(launched.cycle_id, "owner1")

        again = await campaigns.recompute_counters(launched.cycle_id)
        assert again.status == CycleStatus.COMPLETED
        assert again.completed_at == completed.completed_at

    @pytest.mark.asyncio
    async def test_counters_self_heal(self, store, campaigns, items, launched):
        """Counters are re-derived from item state, not patched."""
        by_user = await cycle_items(store, launched.cycle_id)
        await items.act(by_user["ghost"].id, "owner1", "REVOKED")

        doc = await store.read(REVIEW_CYCLES, "APP1", launched.cycle_id)
        corrupted = dict(doc.body, pending_items=42, pending_remediation_items=7, total_items=0)
        await store.replace(REVIEW_CYCLES, "APP1", launched.cycle_id, corrupted, if_match=doc.etag)

        first = await campaigns.recompute_counters(launched.cycle_id)
        second = await campaigns.recompute_counters(launched.cycle_id, "APP1")
        for cycle in (first, second):
            assert cycle.total_items == 2
            assert cycle.pending_items == 1
            assert cycle.pending_remediation_items == 1

    @pytest.mark.asyncio
    async def test_archive(self, store, campaigns, items, launched):
        active = await campaigns.archive(launched.cycle_id)
        assert active.archived_at is None

        by_user = await cycle_items(store, launched.cycle_id)
        await items.act(by_user["user1"].id, "mgr1", "APPROVED")
        await items.act(by_user["ghost"].id, "owner1", "APPROVED", comment="ok")
        await campaigns.confirm(launched.cycle_id, "mgr1")
        await campaigns.confirm(launched.cycle_id, "owner1")

        archived = await campaigns.archive(launched.cycle_id)
        assert archived.status == CycleStatus.COMPLETED
        assert archived.archived_at is not None

        again = await campaigns.archive(launched.cycle_id)
        assert again.archived_at == archived.archived_at

    @pytest.mark.asyncio
    async def test_unknown_cycle(self, campaigns):
        with pytest.raises(NotFoundError):
            await campaigns.recompute_counters("RC_NOPE")

    @pytest.mark.asyncio
    async def test_stale_cycle_write_conflicts(self, store, campaigns, launched):
        """A recompute racing another cycle write surfaces a conflict."""
        real_replace = store.replace

        async def racing_replace(container, pk, doc_id, body, if_match):
            if container == REVIEW_CYCLES:
                current = await store.read(container, pk, doc_id)
                await store.upsert(container, pk, doc_id, current.body)
            return await real_replace(container, pk, doc_id, body, if_match)

        store.replace = racing_replace
        with pytest.raises(ConflictError) as exc_info:
            await campaigns.confirm(launched.cycle_id, "mgr1")
        assert exc_info.value.stale_token != exc_info.value.current_token

    @pytest.mark.asyncio
    async def test_failed_launch_does_not_block_relaunch(self, store, seed, campaigns):
        await seed.directory()
        await seed.accounts({"app_id": "APP1", "user_id": "user1", "entitlement": "ENT_A"})
        real_create = store.create

        async def failing_create(container, pk, doc_id, body):
            if container == REVIEW_ITEMS:
                raise RuntimeError("store unavailable")
            return await real_create(container, pk, doc_id, body)

        store.create = failing_create
        result = await campaigns.launch("APP1")

        assert result.status.value == "failed"
        assert result.items_created == 0
        assert result.errors[0]["error"] == "store unavailable"
        assert result.cycle["status"] == "COMPLETED"
        assert result.cycle["total_items"] == 0

        store.create = real_create
        relaunched = await campaigns.launch("APP1")
        assert relaunched.items_created == 1

    @pytest.mark.asyncio
    async def test_partial_launch_counts_created_items(self, store, seed, campaigns):
        await seed.directory()
        await seed.accounts(
            {"app_id": "APP1", "user_id": "user1", "entitlement": "ENT_A"},
            {"app_id": "APP1", "user_id": "user2", "entitlement": "ENT_B"},
        )
        real_create = store.create

        async def flaky_create(container, pk, doc_id, body):
            if container == REVIEW_ITEMS and body["account_user_id"] == "user2":
                raise RuntimeError("write failed")
            return await real_create(container, pk, doc_id, body)

        store.create = flaky_create
        result = await campaigns.launch("APP1")

        assert result.status.value == "partial"
        assert result.items_created == 1
        assert result.cycle["total_items"] == 1
        assert result.cycle["pending_items"] == 1
        assert result.cycle["reviewers"] == ["mgr1"]
