from __future__ import annotations

from dataclasses import dataclass, field

from importcrm.rbac.permissions import SystemRole


@dataclass(slots=True)
class ActorUser:
    """The authenticated caller as seen by services and the RBAC checks."""

    user_id: str
    tenant_id: str
    system_role: SystemRole | None = None
    custom_role_id: str | None = None
    assigned_entity_ids: list[str] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.system_role == SystemRole.ADMIN


SYSTEM_ACTOR_ID = "system"


def system_actor(tenant_id: str, correlation_id: str | None = None) -> ActorUser:
    return ActorUser(
        user_id=SYSTEM_ACTOR_ID,
        tenant_id=tenant_id,
        system_role=SystemRole.ADMIN,
        correlation_id=correlation_id,
    )
