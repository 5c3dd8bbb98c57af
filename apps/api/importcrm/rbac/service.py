from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from importcrm import audit
from importcrm.metrics import observe_rbac_denied
from importcrm.rbac.context import ActorUser
from importcrm.rbac.errors import AuthorizationError, RoleInUseError, SystemRoleProtectedError, UnknownRoleError
from importcrm.rbac.models import CRMUserProfile, CustomRole
from importcrm.rbac.permissions import (
    EntityType,
    PermissionAction,
    RolePermissions,
    SystemRole,
    get_user_permissions,
)
from importcrm.rbac.repository import CRMUserProfileRepository, CustomRoleRepository
from importcrm.rbac.resolver import (
    CRMRBACUser,
    RBACUser,
    can_crm_user_access_entity,
    can_user_access_entity,
    resolve_user_permissions,
)
from importcrm.rbac.schemas import (
    CustomRoleCreate,
    CustomRoleRead,
    CustomRoleUpdate,
    EffectivePermissionsRead,
    RoleListFilter,
    RolePermissionsModel,
    UserProfileAssign,
    UserProfileRead,
)

logger = logging.getLogger("importcrm.rbac")

PermissionSource = Literal["system_role", "custom_role", "none"]


@dataclass(slots=True)
class EffectivePermissions:
    user_id: str
    source: PermissionSource
    role: str | None
    base_permissions: RolePermissions
    overrides: dict[str, dict[str, bool]] | None = None
    assigned_entity_ids: list[str] = field(default_factory=list)

    @property
    def permissions(self) -> RolePermissions:
        if self.source != "custom_role":
            return self.base_permissions
        return resolve_user_permissions(self.as_crm_user(), self.base_permissions)

    def as_crm_user(self) -> CRMRBACUser:
        return CRMRBACUser(
            id=self.user_id,
            custom_role_id=self.role,
            assigned_entity_ids=self.assigned_entity_ids,
            permission_overrides=self.overrides,
        )


def _merge_assignments(*sources: list[str] | None) -> list[str]:
    merged: list[str] = []
    for source in sources:
        for entity_id in source or []:
            if entity_id not in merged:
                merged.append(entity_id)
    return merged


def authorization_error_to_http(exc: AuthorizationError) -> HTTPException:
    if isinstance(exc, (SystemRoleProtectedError, RoleInUseError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, UnknownRoleError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


class AccessService:
    """Applies the RBAC contract to an :class:`ActorUser` before a service operation runs."""

    def resolve_profile_permissions(self, session: Session, actor: ActorUser) -> EffectivePermissions:
        if actor.system_role is not None:
            return EffectivePermissions(
                user_id=actor.user_id,
                source="system_role",
                role=actor.system_role.value,
                base_permissions=get_user_permissions(actor.system_role),
                assigned_entity_ids=list(actor.assigned_entity_ids),
            )

        profile = CRMUserProfileRepository(session, actor.tenant_id).get_by_user(actor.user_id)
        custom_role_id = actor.custom_role_id or (profile.custom_role_id if profile is not None else None)
        role = CustomRoleRepository(session, actor.tenant_id).get(custom_role_id) if custom_role_id else None
        if role is None or not role.is_active or (profile is not None and not profile.is_active):
            if custom_role_id:
                logger.warning(
                    "rbac_custom_role_unavailable",
                    extra={"user_id": actor.user_id, "role_id": custom_role_id},
                )
            return EffectivePermissions(
                user_id=actor.user_id,
                source="none",
                role=None,
                base_permissions=RolePermissions(),
            )

        return EffectivePermissions(
            user_id=actor.user_id,
            source="custom_role",
            role=role.id,
            base_permissions=RolePermissions.from_dict(role.permissions),
            overrides=profile.permission_overrides if profile is not None else None,
            assigned_entity_ids=_merge_assignments(
                actor.assigned_entity_ids,
                profile.assigned_entity_ids if profile is not None else None,
            ),
        )

    def has_entity_access(
        self,
        session: Session,
        actor: ActorUser,
        entity_type: EntityType | str,
        action: PermissionAction | str,
        *,
        entity_id: str | None = None,
        entity_owner_id: str | None = None,
    ) -> bool:
        effective = self.resolve_profile_permissions(session, actor)
        if effective.source == "system_role":
            user = RBACUser(
                id=actor.user_id,
                role=SystemRole(effective.role),
                assigned_entity_ids=effective.assigned_entity_ids,
            )
            return can_user_access_entity(user, entity_type, action, entity_id, entity_owner_id)
        if effective.source == "custom_role":
            return can_crm_user_access_entity(
                effective.as_crm_user(),
                effective.base_permissions,
                entity_type,
                action,
                entity_id,
                entity_owner_id,
            )
        return False

    def ensure_entity_access(
        self,
        session: Session,
        actor: ActorUser,
        entity_type: EntityType | str,
        action: PermissionAction | str,
        *,
        entity_id: str | None = None,
        entity_owner_id: str | None = None,
    ) -> None:
        if self.has_entity_access(
            session,
            actor,
            entity_type,
            action,
            entity_id=entity_id,
            entity_owner_id=entity_owner_id,
        ):
            return
        entity_value = EntityType(entity_type).value
        action_value = PermissionAction(action).value
        observe_rbac_denied(entity_value, action_value)
        logger.info(
            "rbac_access_denied",
            extra={"user_id": actor.user_id, "entity_type": entity_value, "permission_action": action_value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not authorized: {action_value} on {entity_value}",
        )

    def require_admin(self, actor: ActorUser) -> None:
        if not actor.is_admin:
            observe_rbac_denied("roles", "admin")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: admin")


access_service = AccessService()


class CustomRoleService:
    def list_roles(self, session: Session, actor: ActorUser, role_filter: RoleListFilter = "all") -> list[CustomRoleRead]:
        access_service.require_admin(actor)
        repository = CustomRoleRepository(session, actor.tenant_id)
        return [self._to_read(role, repository.user_count(role.id)) for role in repository.list_filtered(role_filter)]

    def get_role(self, session: Session, actor: ActorUser, role_id: str) -> CustomRoleRead:
        access_service.require_admin(actor)
        repository = CustomRoleRepository(session, actor.tenant_id)
        found = repository.get_with_stats(role_id)
        if found is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
        role, user_count = found
        return self._to_read(role, user_count)

    def create_role(self, session: Session, actor: ActorUser, dto: CustomRoleCreate) -> CustomRoleRead:
        access_service.require_admin(actor)
        repository = CustomRoleRepository(session, actor.tenant_id)
        if repository.get_by_name(dto.name) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")

        role = repository.create(
            CustomRole(
                name=dto.name.strip(),
                description=dto.description,
                color=dto.color,
                permissions=dto.permissions.to_permissions().to_dict(),
                is_system=False,
                is_active=True,
                created_by=actor.user_id,
                updated_by=actor.user_id,
            )
        )
        after = self._to_read(role, 0).model_dump(mode="json")
        self._audit(actor, role.id, "rbac.role.created", None, after)
        session.commit()
        session.refresh(role)
        return self._to_read(role, 0)

    def update_role(self, session: Session, actor: ActorUser, role_id: str, dto: CustomRoleUpdate) -> CustomRoleRead:
        access_service.require_admin(actor)
        repository = CustomRoleRepository(session, actor.tenant_id)
        role = repository.get(role_id)
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
        before = self._to_read(role, repository.user_count(role_id)).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)

        try:
            if "name" in payload and payload["name"] is not None:
                if role.is_system and payload["name"].strip() != role.name:
                    raise SystemRoleProtectedError(role_id, "renamed")
                existing = repository.get_by_name(payload["name"])
                if existing is not None and existing.id != role_id:
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role already exists")
            if dto.permissions is not None:
                repository.update_permissions(role_id, dto.permissions.to_permissions())
            if payload.get("is_active") is True:
                repository.activate(role_id)
            elif payload.get("is_active") is False:
                repository.deactivate(role_id)
        except AuthorizationError as exc:
            session.rollback()
            raise authorization_error_to_http(exc) from exc

        patch: dict[str, Any] = {key: payload[key] for key in ("description", "color") if key in payload}
        if payload.get("name"):
            patch["name"] = payload["name"].strip()
        patch["updated_by"] = actor.user_id
        role = repository.update(role_id, patch)
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")

        after = self._to_read(role, repository.user_count(role_id)).model_dump(mode="json")
        self._audit(actor, role_id, "rbac.role.updated", before, after)
        session.commit()
        session.refresh(role)
        return self._to_read(role, repository.user_count(role_id))

    def delete_role(self, session: Session, actor: ActorUser, role_id: str) -> None:
        access_service.require_admin(actor)
        repository = CustomRoleRepository(session, actor.tenant_id)
        role = repository.get(role_id)
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
        before = self._to_read(role, repository.user_count(role_id)).model_dump(mode="json")
        try:
            repository.remove(role_id)
        except AuthorizationError as exc:
            session.rollback()
            raise authorization_error_to_http(exc) from exc
        self._audit(actor, role_id, "rbac.role.deleted", before, None)
        session.commit()

    def assign_user(self, session: Session, actor: ActorUser, dto: UserProfileAssign) -> UserProfileRead:
        access_service.require_admin(actor)
        if dto.custom_role_id is not None:
            role = CustomRoleRepository(session, actor.tenant_id).get(dto.custom_role_id)
            if role is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
            if not role.is_active:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="role is inactive")

        repository = CRMUserProfileRepository(session, actor.tenant_id)
        existing = repository.get_by_user(dto.user_id)
        before = self._profile_read(existing).model_dump(mode="json") if existing is not None else None
        values = dto.model_dump(exclude={"user_id"}, exclude_unset=True)
        profile = repository.upsert(dto.user_id, values)
        after = self._profile_read(profile).model_dump(mode="json")
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="rbac.user_profile",
            entity_id=profile.user_id,
            action="rbac.user_profile.assigned",
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
            tenant_id=actor.tenant_id,
        )
        session.commit()
        session.refresh(profile)
        return self._profile_read(profile)

    def get_profile(self, session: Session, actor: ActorUser, user_id: str) -> UserProfileRead:
        if user_id != actor.user_id:
            access_service.require_admin(actor)
        profile = CRMUserProfileRepository(session, actor.tenant_id).get_by_user(user_id)
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user profile not found")
        return self._profile_read(profile)

    def effective_permissions(self, session: Session, actor: ActorUser) -> EffectivePermissionsRead:
        effective = access_service.resolve_profile_permissions(session, actor)
        return EffectivePermissionsRead(
            user_id=actor.user_id,
            source=effective.source,
            role=effective.role,
            permissions=RolePermissionsModel.from_permissions(effective.permissions),
            assigned_entity_ids=effective.assigned_entity_ids,
        )

    def _audit(
        self,
        actor: ActorUser,
        role_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="rbac.custom_role",
            entity_id=role_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
            tenant_id=actor.tenant_id,
        )

    def _to_read(self, role: CustomRole, user_count: int) -> CustomRoleRead:
        return CustomRoleRead(
            id=role.id,
            tenant_id=role.tenant_id,
            name=role.name,
            description=role.description,
            color=role.color,
            permissions=RolePermissionsModel.from_permissions(RolePermissions.from_dict(role.permissions)),
            is_system=role.is_system,
            is_active=role.is_active,
            user_count=user_count,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )

    def _profile_read(self, profile: CRMUserProfile) -> UserProfileRead:
        return UserProfileRead.model_validate(profile)


custom_role_service = CustomRoleService()
