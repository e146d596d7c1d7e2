"""
Integration tests for the access review flow, from extract import to archive.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from shared.test_helpers import TestDataFactory
from service_access_review.app.main import AccessReviewService
from service_access_review.app.persistence import ACCOUNTS, REVIEW_ITEMS, InMemoryDocumentStore


class TestAccessReviewFlow:
    """Integration tests for a complete review campaign."""

    @pytest.fixture
    def service(self):
        return AccessReviewService(store=InMemoryDocumentStore())

    @pytest_asyncio.fixture
    async def client(self, service):
        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://access-review") as client:
            yield client

    @pytest_asyncio.fixture
    async def loaded(self, client):
        """Directory, a cross-application SoD policy and two application extracts."""
        await client.post("/identities/import", json=TestDataFactory.create_test_identities())
        await client.post("/applications/import", json=TestDataFactory.create_test_applications())
        await client.post("/sod/policies/import", json=[TestDataFactory.create_sod_policy(
            "SOD_XAPP", side1=("APP1", "ENT_A"), side2=("APP2", "PAY"), severity="CRITICAL"
        )])

        response = await client.post(
            "/accounts/import", params={"app_id": "APP2"},
            json=TestDataFactory.create_account_rows("APP2", entitlements=["PAY"]),
        )
        assert response.status_code == 200

        rows = TestDataFactory.create_account_rows(entitlements=["ENT_A", "ENT_C"])
        rows.append({"app_id": "APP1", "user_id": "user2", "entitlement": "ENT_C"})
        response = await client.post("/accounts/import", params={"app_id": "APP1", "scope": "global"}, json=rows)
        assert response.status_code == 200
        assert response.json()["sod_conflicts"] == 1
        return client

    async def items_by_key(self, service, cycle_id):
        docs = await service.store.query_all(REVIEW_ITEMS, filters={"review_cycle_id": cycle_id})
        return {(d.body["account_user_id"], d.body["entitlement"]): d for d in docs}

    @pytest.mark.asyncio
    async def test_complete_campaign(self, service, loaded):
        client = loaded

        # 1. Launch
        launch = await client.post("/reviews/launch", json={"appId": "APP1", "name": "APP1 quarterly"})
        assert launch.status_code == 200
        cycle_id = launch.json()["cycle_id"]
        assert launch.json()["cycle"]["reviewers"] == ["mgr1", "mgr2"]

        items = await self.items_by_key(service, cycle_id)
        conflicted = items[("user1", "ENT_A")]
        assert conflicted.body["violated_policy_ids"] == ["SOD_XAPP"]

        # 2. Reassign user2's item from mgr2 to mgr1
        user2_item = items[("user2", "ENT_C")]
        moved = await client.post(
            "/reviews/items/action",
            json={"itemId": user2_item.id, "reviewerId": "mgr2", "reassignTo": "mgr1"},
            headers={"If-Match": user2_item.etag, "x-actor-id": "mgr2"},
        )
        assert moved.status_code == 200

        # 3. Decisions by mgr1
        await self._decide(client, items[("user1", "ENT_C")].id, items[("user1", "ENT_C")].etag, "APPROVED")
        await self._decide(client, user2_item.id, moved.headers["ETag"], "APPROVED")
        approved = await self._decide(
            client, conflicted.id, conflicted.etag, "APPROVED", comment="Compensating control: dual approval"
        )
        assert approved.json()["comment"] == "Compensating control: dual approval"

        # 4. mgr2 no longer reviews anything; mgr1's confirmation completes the cycle
        confirmed = await client.post("/reviews/confirm", json={"cycleId": cycle_id, "reviewerId": "mgr1"})
        assert confirmed.json()["reviewers"] == ["mgr1"]
        assert confirmed.json()["status"] == "COMPLETED"

        archived = await client.post("/reviews/archive", json={"cycleId": cycle_id})
        assert archived.json()["archived_at"] is not None

        # 5. A completed cycle does not block the next launch
        relaunch = await client.post("/reviews/launch", json={"appId": "APP1"})
        assert relaunch.status_code == 200

    @pytest.mark.asyncio
    async def test_concurrent_decisions_on_one_item(self, service, loaded):
        client = loaded
        cycle_id = (await client.post("/reviews/launch", json={"appId": "APP1"})).json()["cycle_id"]
        item = (await self.items_by_key(service, cycle_id))[("user1", "ENT_C")]

        responses = await asyncio.gather(
            self._decide(client, item.id, item.etag, "APPROVED"),
            self._decide(client, item.id, item.etag, "REVOKED"),
        )

        assert sorted(r.status_code for r in responses) == [200, 409]
        cycle = await client.post("/reviews/archive", json={"cycleId": cycle_id})
        assert cycle.json()["pending_items"] == 2

    @pytest.mark.asyncio
    async def test_extract_replaces_accounts(self, service, loaded):
        client = loaded

        response = await client.post(
            "/accounts/import", params={"app_id": "APP1"},
            json=[{"app_id": "APP1", "user_id": "user2", "entitlement": "ENT_C"}],
        )

        assert response.json()["deleted"] == 2
        remaining = await service.store.query_all(ACCOUNTS, partition_key="APP1")
        assert [d.id for d in remaining] == ["user2_APP1_ENT_C"]
        assert len(await service.store.query_all(ACCOUNTS, partition_key="APP2")) == 1

    async def _decide(self, client, item_id, etag, decision, comment=None):
        body = {"itemId": item_id, "reviewerId": "mgr1", "decision": decision}
        if comment:
            body["comment"] = comment
        return await client.post("/reviews/items/action", json=body, headers={"If-Match": etag})
