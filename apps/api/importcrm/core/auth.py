from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from importcrm.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_id: str
    system_role: str | None = None
    custom_role_id: str | None = None
    assigned_entity_ids: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _anonymous(tenant_id: str) -> AuthUser:
    return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"], tenant_id=tenant_id)


async def get_current_user(request: Request) -> AuthUser:
    settings = get_settings()
    tenant_id = getattr(request.state, "tenant_id", None) or settings.default_tenant_id

    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else ""
    if not token:
        return _anonymous(tenant_id)

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _anonymous(tenant_id)

    roles = _string_list(payload.get("roles")) or ["user"]
    return AuthUser(
        sub=str(payload.get("sub", ANONYMOUS_SUBJECT)),
        roles=roles,
        tenant_id=_optional_str(payload.get("tenant_id")) or tenant_id,
        system_role=_optional_str(payload.get("crm_role")),
        custom_role_id=_optional_str(payload.get("custom_role_id")),
        assigned_entity_ids=_string_list(payload.get("assigned_entity_ids")),
    )
