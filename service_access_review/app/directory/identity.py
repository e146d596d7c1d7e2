"""
Identity directory contract and the document-store implementation.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..persistence import APPLICATIONS, IDENTITIES, DocumentStore
from .models import Application, Identity


class IdentityDirectory(ABC):
    """Lookup of identities and application metadata."""

    @abstractmethod
    async def get_identity(self, user_id: str) -> Optional[Identity]:
        """Identity by user id, ``None`` when unknown."""

    @abstractmethod
    async def find_identity_by_email(self, email: str) -> Optional[Identity]:
        """Identity by (case-insensitive) e-mail address."""

    @abstractmethod
    async def find_identity_by_name(self, name: str) -> Optional[Identity]:
        """Identity by exact display name."""

    @abstractmethod
    async def get_application(self, app_id: str) -> Optional[Application]:
        """Application metadata, ``None`` when unknown."""

    async def start(self):
        pass

    async def stop(self):
        pass

    async def health_check(self) -> bool:
        return True


class StoreIdentityDirectory(IdentityDirectory):
    """Directory backed by the ``identities`` and ``applications`` containers."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_identity(self, user_id: str) -> Optional[Identity]:
        user_id = (user_id or "").strip()
        if not user_id:
            return None
        doc = await self.store.read(IDENTITIES, user_id, user_id)
        return Identity.model_validate(doc.body) if doc else None

    async def find_identity_by_email(self, email: str) -> Optional[Identity]:
        email = (email or "").strip().lower()
        if not email:
            return None
        page = await self.store.query(IDENTITIES, filters={"email": email}, page_size=1)
        return Identity.model_validate(page.documents[0].body) if page.documents else None

    async def find_identity_by_name(self, name: str) -> Optional[Identity]:
        name = (name or "").strip()
        if not name:
            return None
        page = await self.store.query(IDENTITIES, filters={"name": name}, page_size=1)
        return Identity.model_validate(page.documents[0].body) if page.documents else None

    async def get_application(self, app_id: str) -> Optional[Application]:
        app_id = (app_id or "").strip()
        if not app_id:
            return None
        doc = await self.store.read(APPLICATIONS, app_id, app_id)
        return Application.model_validate(doc.body) if doc else None

    async def health_check(self) -> bool:
        return await self.store.health_check()
