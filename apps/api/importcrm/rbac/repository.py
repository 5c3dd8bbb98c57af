from __future__ import annotations

from typing import Any

from sqlalchemy import func, select

from importcrm.core.repository import BaseRepository
from importcrm.rbac.errors import RoleInUseError, SystemRoleProtectedError
from importcrm.rbac.models import CRMUserProfile, CustomRole
from importcrm.rbac.permissions import RolePermissions


class CustomRoleRepository(BaseRepository[CustomRole]):
    model = CustomRole
    resource = "crm.custom_role"

    def list_filtered(self, role_filter: str = "all") -> list[CustomRole]:
        if role_filter == "active":
            return self.list(is_active=True)
        if role_filter == "system":
            return self.list(is_system=True)
        if role_filter == "custom":
            return self.list(is_system=False)
        return self.list()

    def get_by_name(self, name: str) -> CustomRole | None:
        query = self.apply_scope_query(select(CustomRole)).where(
            func.lower(CustomRole.name) == name.strip().lower()
        )
        return self.session.scalar(query)

    def user_count(self, role_id: str) -> int:
        query = select(func.count(CRMUserProfile.id)).where(
            CRMUserProfile.tenant_id == self.tenant_id,
            CRMUserProfile.custom_role_id == role_id,
            CRMUserProfile.is_active.is_(True),
        )
        return int(self.session.scalar(query) or 0)

    def get_with_stats(self, role_id: str) -> tuple[CustomRole, int] | None:
        role = self.get(role_id)
        if role is None:
            return None
        return role, self.user_count(role_id)

    def activate(self, role_id: str) -> CustomRole | None:
        return self.update(role_id, {"is_active": True})

    def deactivate(self, role_id: str) -> CustomRole | None:
        role = self.get(role_id)
        if role is None:
            return None
        assigned = self.user_count(role_id)
        if assigned > 0:
            raise RoleInUseError(role_id, assigned)
        return self.update(role_id, {"is_active": False})

    def update_permissions(self, role_id: str, permissions: RolePermissions) -> CustomRole | None:
        role = self.get(role_id)
        if role is None:
            return None
        if role.is_system:
            raise SystemRoleProtectedError(role_id, "modified")
        return self.update(role_id, {"permissions": permissions.to_dict()})

    def can_delete(self, role_id: str) -> bool:
        role = self.get(role_id)
        if role is None or role.is_system:
            return False
        return self.user_count(role_id) == 0

    def remove(self, role_id: str) -> bool:
        role = self.get(role_id)
        if role is None:
            return False
        if role.is_system:
            raise SystemRoleProtectedError(role_id, "deleted")
        assigned = self.user_count(role_id)
        if assigned > 0:
            raise RoleInUseError(role_id, assigned)
        return super().remove(role_id)


class CRMUserProfileRepository(BaseRepository[CRMUserProfile]):
    model = CRMUserProfile
    resource = "crm.user_profile"

    def get_by_user(self, user_id: str) -> CRMUserProfile | None:
        query = self.apply_scope_query(select(CRMUserProfile)).where(CRMUserProfile.user_id == user_id)
        return self.session.scalar(query)

    def upsert(self, user_id: str, values: dict[str, Any]) -> CRMUserProfile:
        profile = self.get_by_user(user_id)
        if profile is None:
            return self.create(CRMUserProfile(user_id=user_id, **values))
        return self.apply_patch(profile, values)
