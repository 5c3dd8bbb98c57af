from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from importcrm.api.deps import error_response, get_current_user
from importcrm.core.database import get_db
from importcrm.crm.schemas import (
    PipelineRuleCreate,
    PipelineRuleRead,
    PipelineRuleUpdate,
    PipelineScopedRuleCreate,
    RuleEvaluateRequest,
    RuleEvaluationResult,
    RuleExecutionRead,
    RuleExecutionSummary,
    RuleReorderRequest,
    RuleReorderResponse,
    RuleSeedReport,
)
from importcrm.crm.service import pipeline_rule_service
from importcrm.rbac.context import ActorUser

router = APIRouter(prefix="/api/crm", tags=["crm.rules"])


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@router.get("/pipelines/{pipeline_id}/rules", response_model=list[PipelineRuleRead])
def list_pipeline_rules(
    request: Request,
    pipeline_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRuleRead] | JSONResponse:
    try:
        return pipeline_rule_service.list_pipeline_rules(db, user, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_list_failed")


@router.post(
    "/pipelines/{pipeline_id}/rules",
    response_model=PipelineRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_pipeline_rule(
    request: Request,
    pipeline_id: str,
    dto: PipelineScopedRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRuleRead | JSONResponse:
    try:
        return pipeline_rule_service.create_rule(db, user, dto, pipeline_id=pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_create_failed")


@router.get("/rules", response_model=list[PipelineRuleRead])
def list_rules(
    request: Request,
    trigger: str | None = Query(default=None),
    pipeline_id: str | None = Query(default=None),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRuleRead] | JSONResponse:
    try:
        return pipeline_rule_service.list_rules(
            db,
            user,
            trigger=trigger,
            pipeline_id=pipeline_id,
            active_only=active_only,
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_list_failed")


@router.post("/rules", response_model=PipelineRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: PipelineRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRuleRead | JSONResponse:
    try:
        return pipeline_rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_create_failed")


@router.post("/rules/reorder", response_model=RuleReorderResponse)
def reorder_rules(
    request: Request,
    dto: RuleReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleReorderResponse | JSONResponse:
    try:
        return pipeline_rule_service.reorder_rules(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_reorder_failed")


@router.post("/rules/seed", response_model=RuleSeedReport)
def seed_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleSeedReport | JSONResponse:
    try:
        return pipeline_rule_service.seed(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_seed_failed")


@router.post("/rules/evaluate", response_model=list[RuleEvaluationResult])
def evaluate_rules(
    request: Request,
    dto: RuleEvaluateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RuleEvaluationResult] | JSONResponse:
    try:
        return pipeline_rule_service.evaluate(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_evaluate_failed")


@router.get("/rules/{rule_id}", response_model=PipelineRuleRead)
def get_rule(
    request: Request,
    rule_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRuleRead | JSONResponse:
    try:
        return pipeline_rule_service.get_rule(db, user, rule_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_get_failed")


@router.patch("/rules/{rule_id}", response_model=PipelineRuleRead)
def update_rule(
    request: Request,
    rule_id: str,
    dto: PipelineRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRuleRead | JSONResponse:
    try:
        return pipeline_rule_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_update_failed")


@router.delete("/rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_rule(
    request: Request,
    rule_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        pipeline_rule_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_delete_failed")


@router.post("/rules/{rule_id}/activate", response_model=PipelineRuleRead)
def activate_rule(
    request: Request,
    rule_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRuleRead | JSONResponse:
    try:
        return pipeline_rule_service.set_active(db, user, rule_id, True)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_activate_failed")


@router.post("/rules/{rule_id}/deactivate", response_model=PipelineRuleRead)
def deactivate_rule(
    request: Request,
    rule_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRuleRead | JSONResponse:
    try:
        return pipeline_rule_service.set_active(db, user, rule_id, False)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_deactivate_failed")


@router.get("/rules/{rule_id}/executions", response_model=list[RuleExecutionRead])
def list_rule_executions(
    request: Request,
    rule_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RuleExecutionRead] | JSONResponse:
    try:
        return pipeline_rule_service.get_executions(db, user, rule_id, limit)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_executions_failed")


@router.get("/rules/{rule_id}/summary", response_model=RuleExecutionSummary)
def rule_execution_summary(
    request: Request,
    rule_id: str,
    period_start: datetime | None = Query(default=None),
    period_end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleExecutionSummary | JSONResponse:
    try:
        return pipeline_rule_service.get_summary(db, user, rule_id, period_start, period_end)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rule_summary_failed")
