"""
Reconciliation data models.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..batching import BatchStatus


class CorrelationStatus:
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    NOT_FOUND = "NotFound"


class SodScope:
    APP = "app"
    GLOBAL = "global"


class AccountRow(BaseModel):
    """One row of an authoritative account extract."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    app_id: str = Field(validation_alias=AliasChoices("app_id", "appId"))
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"))
    entitlement: str
    user_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_name", "userName", "name"))
    email: Optional[str] = None

    @field_validator("app_id", "user_id", "entitlement", mode="before")
    @classmethod
    def required_text(cls, v: Any) -> str:
        v = "" if v is None else str(v).strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @property
    def grant_id(self) -> str:
        return grant_id(self.user_id, self.app_id, self.entitlement)


def grant_id(user_id: str, app_id: str, entitlement: str) -> str:
    """Deterministic account document id."""
    return f"{user_id}_{app_id}_{entitlement}"


class Correlation(BaseModel):
    is_correlated: bool = False
    status: str = CorrelationStatus.NOT_FOUND
    hr_user_id: Optional[str] = None
    display_name: Optional[str] = None
    department: Optional[str] = None
    checked_at: Optional[datetime] = None


class SodConflict(BaseModel):
    policy_id: str
    policy_name: Optional[str] = None
    severity: str
    link: Optional[str] = None


class SodStatus(BaseModel):
    has_conflict: bool = False
    conflicts: List[SodConflict] = Field(default_factory=list)
    checked_at: Optional[datetime] = None


class AccountGrant(BaseModel):
    """A stored (application, account, entitlement) grant."""

    model_config = ConfigDict(extra="ignore")

    id: str
    app_id: str
    user_id: str
    entitlement: str
    user_name: Optional[str] = None
    email: Optional[str] = None
    correlation: Correlation = Field(default_factory=Correlation)
    sod: SodStatus = Field(default_factory=SodStatus)
    is_orphan: bool = True
    is_privileged: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    concurrency_token: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"concurrency_token"})


class ReconciliationOptions(BaseModel):
    block_uncorrelated: bool = False
    block_on_conflict: bool = False
    scope: str = SodScope.APP
    batch_size: int = Field(default=50, ge=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    allow_empty: bool = False

    @field_validator("scope")
    @classmethod
    def known_scope(cls, v: str) -> str:
        v = (v or SodScope.APP).strip().lower()
        if v not in (SodScope.APP, SodScope.GLOBAL):
            raise ValueError("scope must be 'app' or 'global'")
        return v


class ReconciliationResult(BaseModel):
    """Outcome summary; partial failures are reported here, never raised."""

    app_id: str
    status: BatchStatus = BatchStatus.SUCCESS
    received: int = 0
    unique_rows: int = 0
    upserted: int = 0
    upsert_failed: int = 0
    deleted: int = 0
    delete_failed: int = 0
    blocked_uncorrelated: int = 0
    blocked_sod: int = 0
    orphans: int = 0
    sod_conflicts: int = 0
    upsert_errors: List[Dict[str, Any]] = Field(default_factory=list)
    delete_errors: List[Dict[str, Any]] = Field(default_factory=list)
    timed_out: bool = False
    delete_skipped: bool = False

    @property
    def failed(self) -> int:
        return self.upsert_failed + self.delete_failed

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return self.upsert_errors + self.delete_errors

    @property
    def http_status(self) -> int:
        return self.status.http_status

    def to_response(self) -> Dict[str, Any]:
        body = self.model_dump(mode="json")
        body["failed"] = self.failed
        body["errors"] = self.errors
        return body
