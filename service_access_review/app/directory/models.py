"""
Identity, application and entitlement catalog models.
"""

from typing import List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class IdentityStatus:
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class Identity(BaseModel):
    """A person known to the HR/identity source."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId", "id"))
    name: str = Field(default="", validation_alias=AliasChoices("name", "displayName", "display_name"))
    email: Optional[str] = None
    manager_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("manager_id", "managerId"))
    status: str = Field(
        default=IdentityStatus.ACTIVE,
        validation_alias=AliasChoices("status", "employment_status", "employmentStatus"),
    )
    department: Optional[str] = None

    @field_validator("user_id")
    @classmethod
    def strip_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("user_id must not be empty")
        return v

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip().lower()
        return v or None

    @field_validator("manager_id")
    @classmethod
    def blank_manager(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None

    @field_validator("status", mode="before")
    @classmethod
    def canonical_status(cls, v: Optional[str]) -> str:
        """Active only when the HR status says so; leavers and unknown values are inactive."""
        raw = str(v or "").strip().lower()
        if raw.startswith(("inactive", "in-active", "in active", "non-active", "not active")):
            return IdentityStatus.INACTIVE
        if any(word in raw for word in ("active", "onroll", "enabled")):
            return IdentityStatus.ACTIVE
        return IdentityStatus.INACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE


class Application(BaseModel):
    """A managed application and its accountable owner(s)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    app_id: str = Field(validation_alias=AliasChoices("app_id", "appId", "id"))
    name: str = Field(default="", validation_alias=AliasChoices("name", "app_name", "appName"))
    owner_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("owner_id", "ownerId"))
    owner_email: Optional[str] = Field(default=None, validation_alias=AliasChoices("owner_email", "ownerEmail"))
    owner_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("owner_name", "ownerName", "owner"))
    owners: List[str] = Field(default_factory=list)

    @field_validator("app_id")
    @classmethod
    def strip_app_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("app_id must not be empty")
        return v

    @field_validator("owners", mode="before")
    @classmethod
    def split_owners(cls, v: Union[str, List[str], None]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.replace(";", ",").split(",")
        return [o.strip() for o in v if o and o.strip()]

    @property
    def display_name(self) -> str:
        return self.name or self.app_id


class CatalogEntitlement(BaseModel):
    """An entitlement definition from an application's catalog."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    app_id: str = Field(validation_alias=AliasChoices("app_id", "appId"))
    entitlement: str = Field(validation_alias=AliasChoices("entitlement", "entitlement_name", "entitlementName", "name"))
    is_privileged: bool = Field(default=False, validation_alias=AliasChoices("is_privileged", "isPrivileged", "privileged"))
    risk_level: Optional[str] = Field(default=None, validation_alias=AliasChoices("risk_level", "riskLevel", "risk"))
    owner: Optional[str] = None
    description: Optional[str] = None

    @field_validator("app_id", "entitlement")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v
