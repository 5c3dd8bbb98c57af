from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from importcrm.core.database import Base
from importcrm.rbac.context import ActorUser
from importcrm.rbac.models import CRMUserProfile, CustomRole
from importcrm.rbac.permissions import EntityType, PermissionAction, SystemRole
from importcrm.rbac.service import access_service

TENANT = "tenant-rbac"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _add_role(session: Session, role_id: str, permissions: dict, *, is_active: bool = True) -> CustomRole:
    role = CustomRole(
        id=role_id,
        tenant_id=TENANT,
        name=f"Role {role_id}",
        permissions=permissions,
        is_system=False,
        is_active=is_active,
    )
    session.add(role)
    session.commit()
    return role


def _add_profile(session: Session, user_id: str, **values) -> CRMUserProfile:
    profile = CRMUserProfile(id=f"profile-{user_id}", tenant_id=TENANT, user_id=user_id, **values)
    session.add(profile)
    session.commit()
    return profile


def test_system_role_takes_precedence_over_custom_role(db_session: Session) -> None:
    _add_role(db_session, "role-readonly", {"deals": {"can_read": True}})
    actor = ActorUser(
        user_id="admin-1",
        tenant_id=TENANT,
        system_role=SystemRole.ADMIN,
        custom_role_id="role-readonly",
    )

    effective = access_service.resolve_profile_permissions(db_session, actor)

    assert effective.source == "system_role"
    assert effective.role == "admin"
    assert access_service.has_entity_access(db_session, actor, EntityType.DEALS, PermissionAction.CAN_DELETE)


def test_custom_role_from_profile_with_overrides(db_session: Session) -> None:
    _add_role(
        db_session,
        "role-deals",
        {"deals": {"can_create": True, "can_read": True, "can_update": False}},
    )
    _add_profile(
        db_session,
        "user-1",
        custom_role_id="role-deals",
        permission_overrides={"deals": {"can_update": True}},
        assigned_entity_ids=["deal-1"],
    )
    actor = ActorUser(user_id="user-1", tenant_id=TENANT)

    effective = access_service.resolve_profile_permissions(db_session, actor)

    assert effective.source == "custom_role"
    assert effective.role == "role-deals"
    assert effective.permissions.deals.can_update is True
    assert effective.base_permissions.deals.can_update is False
    assert access_service.has_entity_access(
        db_session, actor, EntityType.DEALS, PermissionAction.CAN_UPDATE, entity_id="deal-1"
    )
    assert not access_service.has_entity_access(
        db_session, actor, EntityType.DEALS, PermissionAction.CAN_UPDATE, entity_id="deal-2"
    )
    assert access_service.has_entity_access(
        db_session,
        actor,
        EntityType.DEALS,
        PermissionAction.CAN_UPDATE,
        entity_id="deal-2",
        entity_owner_id="user-1",
    )


def test_token_assignments_merge_with_profile_assignments(db_session: Session) -> None:
    _add_role(db_session, "role-orgs", {"organisations": {"can_read": True}})
    _add_profile(db_session, "user-2", custom_role_id="role-orgs", assigned_entity_ids=["org-1"])
    actor = ActorUser(user_id="user-2", tenant_id=TENANT, assigned_entity_ids=["org-2", "org-1"])

    effective = access_service.resolve_profile_permissions(db_session, actor)

    assert effective.assigned_entity_ids == ["org-2", "org-1"]
    assert access_service.has_entity_access(
        db_session, actor, EntityType.ORGANISATIONS, PermissionAction.CAN_READ, entity_id="org-1"
    )


def test_inactive_custom_role_resolves_to_no_permissions(db_session: Session) -> None:
    _add_role(db_session, "role-off", {"deals": {"can_read": True, "can_read_all": True}}, is_active=False)
    actor = ActorUser(user_id="user-3", tenant_id=TENANT, custom_role_id="role-off")

    effective = access_service.resolve_profile_permissions(db_session, actor)

    assert effective.source == "none"
    assert not access_service.has_entity_access(db_session, actor, EntityType.DEALS, PermissionAction.CAN_READ)


def test_user_without_role_or_profile_is_denied(db_session: Session) -> None:
    actor = ActorUser(user_id="nobody", tenant_id=TENANT)

    with pytest.raises(HTTPException) as exc_info:
        access_service.ensure_entity_access(db_session, actor, EntityType.PIPELINES, PermissionAction.CAN_READ)

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Not authorized: can_read on pipelines"


def test_roles_are_scoped_per_tenant(db_session: Session) -> None:
    _add_role(db_session, "role-deals", {"deals": {"can_read": True, "can_read_all": True}})
    actor = ActorUser(user_id="user-4", tenant_id="other-tenant", custom_role_id="role-deals")

    assert not access_service.has_entity_access(db_session, actor, EntityType.DEALS, PermissionAction.CAN_READ)


def test_require_admin_rejects_non_admins() -> None:
    with pytest.raises(HTTPException) as exc_info:
        access_service.require_admin(
            ActorUser(user_id="senior-1", tenant_id=TENANT, system_role=SystemRole.SENIOR_SALES_MANAGER)
        )

    assert exc_info.value.status_code == 403
