"""
Reviewer resolution for campaign launch.

Priority: the account holder's manager, then the application owner mapped
to a known identity, then a synthetic per-application reviewer.
"""

from typing import Awaitable, Optional, TypeVar

from shared.errors import DependencyError
from shared.logging import get_logger
from ..directory import Application, Identity, IdentityDirectory
from ..sod import normalize


T = TypeVar("T")

logger = get_logger("access_review.campaigns.reviewers")


def fallback_reviewer(app_id: str) -> str:
    return f"OWNER_{normalize(app_id)}"


async def degrade(lookup: Awaitable[Optional[T]], what: str, key: str) -> Optional[T]:
    """Await a directory lookup, treating an outage as "unknown"."""
    try:
        return await lookup
    except DependencyError as e:
        logger.warning("Directory lookup failed, treating as unknown", lookup=what, key=key, error=e.message)
        return None


class ReviewerResolver:
    def __init__(self, directory: IdentityDirectory):
        self.directory = directory

    async def resolve_owner(self, application: Optional[Application]) -> Optional[str]:
        """Map the application's designated owner to an identity's user id."""
        if application is None:
            return None

        candidates = []
        if application.owner_id:
            candidates.append(application.owner_id)
        if application.owner_email:
            candidates.append(application.owner_email)
        if application.owner_name:
            candidates.append(application.owner_name)
        candidates.extend(application.owners)

        for candidate in candidates:
            identity = await self._lookup(candidate.strip())
            if identity is not None:
                return identity.user_id
        return None

    async def _lookup(self, reference: str) -> Optional[Identity]:
        """A reference may be a user id, an e-mail address, or a display name."""
        if not reference:
            return None
        identity = await degrade(self.directory.get_identity(reference), "identity", reference)
        if identity is None and "@" in reference:
            identity = await degrade(self.directory.find_identity_by_email(reference), "email", reference)
        if identity is None:
            identity = await degrade(self.directory.find_identity_by_name(reference), "name", reference)
        return identity

    @staticmethod
    def reviewer_for(app_id: str, holder: Optional[Identity], owner_id: Optional[str]) -> str:
        if holder is not None and holder.manager_id and holder.manager_id != holder.user_id:
            return holder.manager_id
        if owner_id:
            return owner_id
        return fallback_reviewer(app_id)
