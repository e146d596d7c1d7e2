"""
Review campaign data models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from ..batching import BatchStatus
from ..persistence import StoredDocument


class CycleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REMEDIATION = "REMEDIATION"
    COMPLETED = "COMPLETED"


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REVOKED = "REVOKED"
    REMEDIATED = "REMEDIATED"


class _Document(BaseModel):
    """Stored entity whose concurrency token lives outside the body."""

    model_config = ConfigDict(extra="ignore", use_enum_values=False)

    concurrency_token: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"concurrency_token"})

    @classmethod
    def from_document(cls, doc: StoredDocument):
        entity = cls.model_validate(doc.body)
        entity.concurrency_token = doc.etag
        return entity


class ReviewCycle(_Document):
    """One review campaign over one application."""

    id: str
    app_id: str
    app_name: str = ""
    name: str = ""
    status: CycleStatus = CycleStatus.ACTIVE
    total_items: int = 0
    pending_items: int = 0
    pending_remediation_items: int = 0
    confirmed_managers: List[str] = Field(default_factory=list)
    reviewers: List[str] = Field(default_factory=list)
    launched_at: datetime
    launched_by: Optional[str] = None
    due_date: datetime
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @property
    def all_reviewers_confirmed(self) -> bool:
        return set(self.reviewers) <= set(self.confirmed_managers)


class ReviewItem(_Document):
    """One account/entitlement under review, owned by one reviewer."""

    id: str
    review_cycle_id: str
    reviewer_id: str
    app_id: str
    app_name: str = ""
    account_id: Optional[str] = None
    account_user_id: str
    user_name: Optional[str] = None
    entitlement: str
    status: ItemStatus = ItemStatus.PENDING
    is_sod_conflict: bool = False
    is_orphan: bool = False
    is_privileged: bool = False
    violated_policy_ids: List[str] = Field(default_factory=list)
    comment: Optional[str] = None
    actioned_at: Optional[datetime] = None
    actioned_by: Optional[str] = None
    remediated_at: Optional[datetime] = None
    remediation_comment: Optional[str] = None
    reassigned_at: Optional[datetime] = None
    reassigned_by: Optional[str] = None
    reassigned_from: Optional[str] = None
    reassignment_comment: Optional[str] = None
    reassignment_count: int = 0
    reassignment_target: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_high_risk(self) -> bool:
        return self.is_sod_conflict or self.is_orphan


class LaunchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_id: str = Field(validation_alias=AliasChoices("app_id", "appId"))
    due_date: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("due_date", "dueDate"))
    name: Optional[str] = None
    force_relaunch: bool = Field(default=False, validation_alias=AliasChoices("force_relaunch", "forceRelaunch"))


class LaunchResult(BaseModel):
    cycle_id: str
    status: BatchStatus
    items_created: int
    items_failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    cycle: Optional[Dict[str, Any]] = None


class ItemActionRequest(BaseModel):
    """Body of the item-action endpoint: a decision, a remediation, or a reassignment."""

    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(validation_alias=AliasChoices("item_id", "itemId"))
    reviewer_id: str = Field(validation_alias=AliasChoices("reviewer_id", "reviewerId"))
    decision: Optional[str] = None
    reassign_to: Optional[str] = Field(default=None, validation_alias=AliasChoices("reassign_to", "reassignTo"))
    comment: Optional[str] = None
    remediated_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("remediated_at", "remediatedAt"))
    etag: Optional[str] = None

    @model_validator(mode="after")
    def one_operation(self):
        if bool(self.decision) == bool(self.reassign_to):
            raise ValueError("exactly one of decision or reassign_to is required")
        if self.decision:
            self.decision = self.decision.strip().upper()
        return self


class CycleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cycle_id: str = Field(validation_alias=AliasChoices("cycle_id", "cycleId"))
    app_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("app_id", "appId"))
    reviewer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("reviewer_id", "reviewerId"))


class RecoveryResult(BaseModel):
    cycle_id: str
    recovered: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    unresolved_duplicates: List[str] = Field(default_factory=list)
    cycle: Optional[Dict[str, Any]] = None
