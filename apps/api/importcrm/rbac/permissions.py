"""Entity permission flags and the built-in system role tables.

Governed entity types are a closed set (:class:`EntityType`); every role, built in or
custom, carries exactly one :class:`EntityPermissions` per type.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from enum import StrEnum
from typing import Any

from importcrm.rbac.errors import UnknownRoleError


class EntityType(StrEnum):
    ORGANISATIONS = "organisations"
    CONTACTS = "contacts"
    DEALS = "deals"
    LEADS = "leads"
    TASKS = "tasks"
    PIPELINES = "pipelines"
    CONTRACTS = "contracts"


class PermissionAction(StrEnum):
    CAN_CREATE = "can_create"
    CAN_READ = "can_read"
    CAN_UPDATE = "can_update"
    CAN_DELETE = "can_delete"
    CAN_READ_ALL = "can_read_all"


class SystemRole(StrEnum):
    ADMIN = "admin"
    SENIOR_SALES_MANAGER = "senior_sales_manager"
    JUNIOR_SALES_MANAGER = "junior_sales_manager"


@dataclass(frozen=True, slots=True)
class EntityPermissions:
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_read_all: bool = False

    def allows(self, action: PermissionAction | str) -> bool:
        return bool(getattr(self, PermissionAction(action).value))

    def merged(self, patch: Mapping[str, Any]) -> EntityPermissions:
        changes: dict[str, bool] = {}
        for key, value in patch.items():
            if key not in PERMISSION_FLAGS:
                raise ValueError(f"Unknown permission flag: {key}")
            if value is not None:
                changes[key] = bool(value)
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in PERMISSION_FLAGS}


PERMISSION_FLAGS = tuple(item.name for item in fields(EntityPermissions))

ALL_ALLOWED = EntityPermissions(True, True, True, True, True)
NONE_ALLOWED = EntityPermissions()


@dataclass(frozen=True, slots=True)
class RolePermissions:
    organisations: EntityPermissions = NONE_ALLOWED
    contacts: EntityPermissions = NONE_ALLOWED
    deals: EntityPermissions = NONE_ALLOWED
    leads: EntityPermissions = NONE_ALLOWED
    tasks: EntityPermissions = NONE_ALLOWED
    pipelines: EntityPermissions = NONE_ALLOWED
    contracts: EntityPermissions = NONE_ALLOWED

    def for_entity(self, entity_type: EntityType | str) -> EntityPermissions:
        return getattr(self, EntityType(entity_type).value)

    def with_entity(self, entity_type: EntityType | str, permissions: EntityPermissions) -> RolePermissions:
        return replace(self, **{EntityType(entity_type).value: permissions})

    def to_dict(self) -> dict[str, dict[str, bool]]:
        return {entity_type.value: self.for_entity(entity_type).to_dict() for entity_type in EntityType}

    @classmethod
    def uniform(cls, permissions: EntityPermissions) -> RolePermissions:
        return cls(**{entity_type.value: permissions for entity_type in EntityType})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RolePermissions:
        """Build from a stored ``{entity_type: {flag: bool}}`` map; missing entity types resolve to all-false."""
        resolved: dict[str, EntityPermissions] = {}
        for entity_type in EntityType:
            raw = (data or {}).get(entity_type.value)
            resolved[entity_type.value] = NONE_ALLOWED.merged(raw) if isinstance(raw, Mapping) else NONE_ALLOWED
        return cls(**resolved)


def _flags(create: bool, read: bool, update: bool, delete: bool, read_all: bool) -> EntityPermissions:
    return EntityPermissions(
        can_create=create,
        can_read=read,
        can_update=update,
        can_delete=delete,
        can_read_all=read_all,
    )


SYSTEM_ROLE_PERMISSIONS: dict[SystemRole, RolePermissions] = {
    SystemRole.ADMIN: RolePermissions.uniform(ALL_ALLOWED),
    SystemRole.SENIOR_SALES_MANAGER: RolePermissions(
        organisations=_flags(True, True, True, False, True),
        contacts=_flags(True, True, True, False, True),
        deals=_flags(True, True, False, False, True),
        leads=_flags(True, True, False, False, True),
        tasks=_flags(True, True, False, False, True),
        pipelines=_flags(False, True, False, False, True),
        contracts=_flags(True, True, True, False, True),
    ),
    SystemRole.JUNIOR_SALES_MANAGER: RolePermissions(
        organisations=_flags(True, False, False, False, False),
        contacts=_flags(True, False, False, False, False),
        deals=_flags(True, False, False, False, False),
        leads=_flags(True, False, False, False, False),
        tasks=_flags(True, False, False, False, False),
        pipelines=_flags(False, True, False, False, True),
        contracts=_flags(True, False, False, False, False),
    ),
}


def parse_system_role(role: SystemRole | str | None) -> SystemRole:
    if isinstance(role, SystemRole):
        return role
    try:
        return SystemRole(str(role).strip().lower())
    except ValueError as exc:
        raise UnknownRoleError(role) from exc


def get_user_permissions(role: SystemRole | str) -> RolePermissions:
    """Return the fixed permission table of a built-in role.

    Raises :class:`UnknownRoleError` for anything that is not a :class:`SystemRole`.
    """
    return SYSTEM_ROLE_PERMISSIONS[parse_system_role(role)]
