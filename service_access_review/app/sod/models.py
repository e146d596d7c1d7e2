"""
SoD policy data models.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Severity:
    """Known severity labels; anything else is kept verbatim."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SodPolicy(BaseModel):
    """A toxic combination of two (application, entitlement) pairs."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = ""
    app_id1: str = Field(validation_alias=AliasChoices("app_id1", "appId1"))
    entitlement1: str
    app_id2: str = Field(validation_alias=AliasChoices("app_id2", "appId2"))
    entitlement2: str
    severity: str = Severity.MEDIUM
    link: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class PolicyViolation:
    """One policy violated by the evaluated entitlement."""
    policy_id: str
    policy_name: str
    severity: str
    link: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "severity": self.severity,
            "link": self.link,
        }


class SodPolicyImportRow(BaseModel):
    """Row accepted by the policy import; ``action: DELETE`` removes a policy."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "policy_id", "policyId"))
    policy_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("policy_name", "policyName", "name"))
    app_id1: Optional[str] = Field(default=None, validation_alias=AliasChoices("app_id1", "appId1"))
    entitlement1: Optional[str] = None
    app_id2: Optional[str] = Field(default=None, validation_alias=AliasChoices("app_id2", "appId2"))
    entitlement2: Optional[str] = None
    severity: Optional[str] = Field(default=None, validation_alias=AliasChoices("severity", "risk_level", "riskLevel"))
    url: Optional[str] = None
    active: Optional[bool] = None
    action: Optional[str] = None
    delete: bool = False

    @property
    def is_delete(self) -> bool:
        return self.delete or (self.action or "").strip().upper() in ("DELETE", "REMOVE")

    def missing_sides(self) -> List[str]:
        return [
            name for name in ("app_id1", "entitlement1", "app_id2", "entitlement2")
            if not (getattr(self, name) or "").strip()
        ]
