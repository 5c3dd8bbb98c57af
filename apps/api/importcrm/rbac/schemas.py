from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from importcrm.rbac.permissions import RolePermissions
from importcrm.rbac.resolver import normalize_overrides


class EntityPermissionsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_read_all: bool = False


class RolePermissionsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organisations: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)
    contacts: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)
    deals: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)
    leads: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)
    tasks: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)
    pipelines: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)
    contracts: EntityPermissionsModel = Field(default_factory=EntityPermissionsModel)

    def to_permissions(self) -> RolePermissions:
        return RolePermissions.from_dict(self.model_dump())

    @classmethod
    def from_permissions(cls, permissions: RolePermissions) -> RolePermissionsModel:
        return cls.model_validate(permissions.to_dict())


class CustomRoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    color: str | None = Field(default=None, max_length=32)
    permissions: RolePermissionsModel = Field(default_factory=RolePermissionsModel)


class CustomRoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    color: str | None = Field(default=None, max_length=32)
    permissions: RolePermissionsModel | None = None
    is_active: bool | None = None


class CustomRoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    description: str | None
    color: str | None
    permissions: RolePermissionsModel
    is_system: bool
    is_active: bool
    user_count: int = 0
    created_at: datetime
    updated_at: datetime


RoleListFilter = Literal["all", "active", "system", "custom"]


class UserProfileAssign(BaseModel):
    user_id: str = Field(min_length=1)
    custom_role_id: str | None = None
    display_name: str | None = None
    permission_overrides: dict[str, dict[str, bool | None]] | None = None
    assigned_entity_ids: list[str] = Field(default_factory=list)

    @field_validator("permission_overrides")
    @classmethod
    def _validate_overrides(
        cls, value: dict[str, dict[str, bool | None]] | None
    ) -> dict[str, dict[str, bool]] | None:
        if value is None:
            return None
        return normalize_overrides(value)


class UserProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    user_id: str
    display_name: str | None
    custom_role_id: str | None
    permission_overrides: dict[str, dict[str, bool]] | None
    assigned_entity_ids: list[str]
    is_active: bool


class EffectivePermissionsRead(BaseModel):
    user_id: str
    source: Literal["system_role", "custom_role", "none"]
    role: str | None
    permissions: RolePermissionsModel
    assigned_entity_ids: list[str]
