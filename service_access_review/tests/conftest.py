"""
Shared fixtures for Access Review service tests.
"""

import pytest

from shared.test_helpers import TestDataFactory
from service_access_review.app.directory import Application, Identity, StoreIdentityDirectory
from service_access_review.app.persistence import (
    ACCOUNTS,
    APPLICATIONS,
    IDENTITIES,
    SOD_POLICIES,
    InMemoryDocumentStore,
)


class Seeder:
    """Writes factory data straight into a document store."""

    def __init__(self, store):
        self.store = store

    async def directory(self):
        for raw in TestDataFactory.create_test_identities():
            identity = Identity.model_validate(raw)
            await self.store.upsert(IDENTITIES, identity.user_id, identity.user_id, identity.model_dump())
        for raw in TestDataFactory.create_test_applications():
            app = Application.model_validate(raw)
            await self.store.upsert(APPLICATIONS, app.app_id, app.app_id, app.model_dump())

    async def policies(self, *policies):
        for policy in policies:
            await self.store.upsert(SOD_POLICIES, policy["id"], policy["id"], policy)

    async def accounts(self, *grants):
        """Account grants bypassing reconciliation."""
        for grant in grants:
            body = {
                "id": f"{grant['user_id']}_{grant['app_id']}_{grant['entitlement']}",
                "is_orphan": False,
                "is_privileged": False,
                **grant,
            }
            await self.store.upsert(ACCOUNTS, grant["app_id"], body["id"], body)


@pytest.fixture
def store():
    """Empty in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture
def directory(store):
    """Store-backed identity directory."""
    return StoreIdentityDirectory(store)


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def factory():
    return TestDataFactory
