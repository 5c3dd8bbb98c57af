from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from importcrm.rbac.models import CustomRole
from importcrm.rbac.permissions import SYSTEM_ROLE_PERMISSIONS, RolePermissions, SystemRole
from importcrm.rbac.repository import CustomRoleRepository

logger = logging.getLogger("importcrm.rbac")


@dataclass(frozen=True, slots=True)
class SystemRoleTemplate:
    id: str
    name: str
    description: str
    color: str
    permissions: RolePermissions


SYSTEM_CUSTOM_ROLES: tuple[SystemRoleTemplate, ...] = (
    SystemRoleTemplate(
        id="role-system-admin",
        name="CRM Administrator",
        description="Full access to every CRM entity, pipeline rules and role administration",
        color="#dc2626",
        permissions=SYSTEM_ROLE_PERMISSIONS[SystemRole.ADMIN],
    ),
    SystemRoleTemplate(
        id="role-system-senior-sales-manager",
        name="Senior Sales Manager",
        description="Reads everything; edits organisations, contacts and contracts",
        color="#2563eb",
        permissions=SYSTEM_ROLE_PERMISSIONS[SystemRole.SENIOR_SALES_MANAGER],
    ),
    SystemRoleTemplate(
        id="role-system-junior-sales-manager",
        name="Junior Sales Manager",
        description="Creates records; sees pipelines and whatever is assigned to them",
        color="#16a34a",
        permissions=SYSTEM_ROLE_PERMISSIONS[SystemRole.JUNIOR_SALES_MANAGER],
    ),
)


def seed_system_roles(session: Session, *, tenant_id: str | None = None) -> list[str]:
    """Create the system custom roles that are missing for a tenant; returns the created ids."""
    repository = CustomRoleRepository(session, tenant_id)
    created: list[str] = []
    for template in SYSTEM_CUSTOM_ROLES:
        if repository.get(template.id) is not None or repository.get_by_name(template.name) is not None:
            continue
        repository.create(
            CustomRole(
                id=template.id,
                name=template.name,
                description=template.description,
                color=template.color,
                permissions=template.permissions.to_dict(),
                is_system=True,
                is_active=True,
                created_by="system",
                updated_by="system",
            )
        )
        created.append(template.id)
    if created:
        logger.info("rbac_system_roles_seeded", extra={"reason": ",".join(created)})
    session.commit()
    return created
