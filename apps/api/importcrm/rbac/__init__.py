from importcrm.rbac.errors import AuthorizationError, RoleInUseError, SystemRoleProtectedError, UnknownRoleError
from importcrm.rbac.permissions import (
    EntityPermissions,
    EntityType,
    PermissionAction,
    RolePermissions,
    SystemRole,
    get_user_permissions,
)
from importcrm.rbac.resolver import (
    CRMRBACUser,
    RBACUser,
    can_crm_user_access_entity,
    can_user_access_entity,
    resolve_user_permissions,
)

__all__ = [
    "AuthorizationError",
    "CRMRBACUser",
    "EntityPermissions",
    "EntityType",
    "PermissionAction",
    "RBACUser",
    "RoleInUseError",
    "RolePermissions",
    "SystemRole",
    "SystemRoleProtectedError",
    "UnknownRoleError",
    "can_crm_user_access_entity",
    "can_user_access_entity",
    "get_user_permissions",
    "resolve_user_permissions",
]
