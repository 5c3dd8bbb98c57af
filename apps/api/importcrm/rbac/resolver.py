from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from importcrm.rbac.permissions import (
    PERMISSION_FLAGS,
    EntityPermissions,
    EntityType,
    PermissionAction,
    RolePermissions,
    SystemRole,
    get_user_permissions,
)

PermissionOverrides = Mapping[str, Mapping[str, bool | None]]

_SCOPED_ACTIONS = frozenset(
    {PermissionAction.CAN_READ, PermissionAction.CAN_UPDATE, PermissionAction.CAN_DELETE}
)


@dataclass(slots=True)
class RBACUser:
    id: str
    role: SystemRole | str
    assigned_entity_ids: Sequence[str] = field(default_factory=tuple)


@dataclass(slots=True)
class CRMRBACUser:
    id: str
    custom_role_id: str | None
    assigned_entity_ids: Sequence[str] = field(default_factory=tuple)
    permission_overrides: PermissionOverrides | None = None


def _is_assigned(
    user_id: str,
    assigned_entity_ids: Sequence[str],
    entity_id: str | None,
    entity_owner_id: str | None,
) -> bool:
    if entity_id is not None and entity_id in assigned_entity_ids:
        return True
    return entity_owner_id is not None and entity_owner_id == user_id


def check_entity_permission(
    permissions: EntityPermissions,
    action: PermissionAction | str,
    *,
    user_id: str,
    assigned_entity_ids: Sequence[str],
    entity_id: str | None = None,
    entity_owner_id: str | None = None,
) -> bool:
    """Decide one action against one entity type's flags.

    A false base flag always denies; assignment only narrows a capability the role
    already grants. Without ``can_read_all``, read/update/delete need the entity to be
    assigned to the user or owned by them.
    """
    requested = PermissionAction(action)
    if not permissions.allows(requested):
        return False
    if requested not in _SCOPED_ACTIONS:
        return True
    if permissions.can_read_all:
        return True
    return _is_assigned(user_id, assigned_entity_ids, entity_id, entity_owner_id)


def can_user_access_entity(
    user: RBACUser,
    entity_type: EntityType | str,
    action: PermissionAction | str,
    entity_id: str | None = None,
    entity_owner_id: str | None = None,
) -> bool:
    permissions = get_user_permissions(user.role).for_entity(entity_type)
    return check_entity_permission(
        permissions,
        action,
        user_id=user.id,
        assigned_entity_ids=user.assigned_entity_ids,
        entity_id=entity_id,
        entity_owner_id=entity_owner_id,
    )


def resolve_user_permissions(crm_user: CRMRBACUser, base_role: RolePermissions) -> RolePermissions:
    overrides = crm_user.permission_overrides
    if not overrides:
        return base_role

    resolved = base_role
    for entity_key, patch in overrides.items():
        if not patch:
            continue
        entity_type = EntityType(entity_key)
        resolved = resolved.with_entity(entity_type, resolved.for_entity(entity_type).merged(patch))
    return resolved


def can_crm_user_access_entity(
    crm_user: CRMRBACUser,
    base_role: RolePermissions,
    entity_type: EntityType | str,
    action: PermissionAction | str,
    entity_id: str | None = None,
    entity_owner_id: str | None = None,
) -> bool:
    permissions = resolve_user_permissions(crm_user, base_role).for_entity(entity_type)
    return check_entity_permission(
        permissions,
        action,
        user_id=crm_user.id,
        assigned_entity_ids=crm_user.assigned_entity_ids,
        entity_id=entity_id,
        entity_owner_id=entity_owner_id,
    )


def normalize_overrides(raw: Mapping[str, Any] | None) -> dict[str, dict[str, bool]]:
    """Validate a stored override patch and drop ``None`` flags."""
    normalized: dict[str, dict[str, bool]] = {}
    for entity_key, patch in (raw or {}).items():
        entity_type = EntityType(entity_key)
        if not isinstance(patch, Mapping):
            raise ValueError(f"Override for '{entity_key}' must be an object")
        flags: dict[str, bool] = {}
        for flag, value in patch.items():
            if flag not in PERMISSION_FLAGS:
                raise ValueError(f"Unknown permission flag: {flag}")
            if value is not None:
                flags[flag] = bool(value)
        if flags:
            normalized[entity_type.value] = flags
    return normalized
