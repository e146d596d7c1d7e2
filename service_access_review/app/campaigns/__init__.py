"""
Access review campaigns: cycle lifecycle and review item actions.
"""

from .items import ReviewItemService
from .lifecycle import CampaignManager, derive_status, logical_items
from .models import (
    CycleRequest,
    CycleStatus,
    ItemActionRequest,
    ItemStatus,
    LaunchRequest,
    LaunchResult,
    RecoveryResult,
    ReviewCycle,
    ReviewItem,
)
from .reviewers import ReviewerResolver, fallback_reviewer

__all__ = [
    "CampaignManager",
    "CycleRequest",
    "CycleStatus",
    "ItemActionRequest",
    "ItemStatus",
    "LaunchRequest",
    "LaunchResult",
    "RecoveryResult",
    "ReviewCycle",
    "ReviewItem",
    "ReviewItemService",
    "ReviewerResolver",
    "derive_status",
    "fallback_reviewer",
    "logical_items",
]
