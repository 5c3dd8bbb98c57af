from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from importcrm.api.deps import error_response, get_current_user
from importcrm.core.database import get_db
from importcrm.rbac.context import ActorUser
from importcrm.rbac.schemas import (
    CustomRoleCreate,
    CustomRoleRead,
    CustomRoleUpdate,
    EffectivePermissionsRead,
    RoleListFilter,
    UserProfileAssign,
    UserProfileRead,
)
from importcrm.rbac.service import custom_role_service

roles_router = APIRouter(prefix="/api/crm", tags=["crm.roles"])


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@roles_router.get("/roles", response_model=list[CustomRoleRead])
def list_roles(
    request: Request,
    role_filter: RoleListFilter = Query(default="all", alias="filter"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomRoleRead] | JSONResponse:
    try:
        return custom_role_service.list_roles(db, user, role_filter)
    except HTTPException as exc:
        return _failed(request, exc, "crm_role_list_failed")


@roles_router.post("/roles", response_model=CustomRoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    request: Request,
    dto: CustomRoleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomRoleRead | JSONResponse:
    try:
        return custom_role_service.create_role(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_role_create_failed")


@roles_router.get("/roles/{role_id}", response_model=CustomRoleRead)
def get_role(
    request: Request,
    role_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomRoleRead | JSONResponse:
    try:
        return custom_role_service.get_role(db, user, role_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_role_get_failed")


@roles_router.patch("/roles/{role_id}", response_model=CustomRoleRead)
def update_role(
    request: Request,
    role_id: str,
    dto: CustomRoleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomRoleRead | JSONResponse:
    try:
        return custom_role_service.update_role(db, user, role_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_role_update_failed")


@roles_router.delete("/roles/{role_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_role(
    request: Request,
    role_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        custom_role_service.delete_role(db, user, role_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_role_delete_failed")


@roles_router.put("/users/{user_id}/profile", response_model=UserProfileRead)
def assign_user_profile(
    request: Request,
    user_id: str,
    dto: UserProfileAssign,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        if dto.user_id != user_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="user_id does not match path")
        return custom_role_service.assign_user(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_user_profile_assign_failed")


@roles_router.get("/users/{user_id}/profile", response_model=UserProfileRead)
def get_user_profile(
    request: Request,
    user_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return custom_role_service.get_profile(db, user, user_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_user_profile_get_failed")


@roles_router.get("/permissions/me", response_model=EffectivePermissionsRead)
def my_permissions(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EffectivePermissionsRead:
    return custom_role_service.effective_permissions(db, user)
