from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from importcrm.context import get_correlation_id
from importcrm.core.auth import AuthUser, get_current_user as get_auth_user
from importcrm.rbac.context import ActorUser
from importcrm.rbac.errors import UnknownRoleError
from importcrm.rbac.permissions import SystemRole, parse_system_role


logger = logging.getLogger("importcrm.rbac")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _system_role(raw: str | None, user_id: str) -> SystemRole | None:
    if raw is None:
        return None
    try:
        return parse_system_role(raw)
    except UnknownRoleError:
        logger.warning("rbac_unknown_token_role", extra={"user_id": user_id, "role_id": raw})
        return None


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    if auth_user.is_anonymous:
        return ActorUser(
            user_id=auth_user.sub,
            tenant_id=auth_user.tenant_id,
            roles=list(auth_user.roles),
            correlation_id=correlation_id,
        )
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=auth_user.tenant_id,
        system_role=_system_role(auth_user.system_role, auth_user.sub),
        custom_role_id=auth_user.custom_role_id,
        assigned_entity_ids=list(auth_user.assigned_entity_ids),
        roles=list(auth_user.roles),
        correlation_id=correlation_id,
    )
