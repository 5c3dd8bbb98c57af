from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from importcrm import audit, events
from importcrm.context import (
    reset_correlation_id,
    reset_rule_dispatch_depth,
    set_correlation_id,
    set_rule_dispatch_depth,
)
from importcrm.core.config import get_settings
from importcrm.core.repository import as_utc
from importcrm.crm.engine import RuleEngine, RuleEvaluationContext, rule_engine
from importcrm.crm.errors import RuleNotFoundError, SystemRuleProtectedError
from importcrm.crm.models import CRMPipelineRule, utcnow
from importcrm.crm.repositories import DealRepository, PipelineRepository, PipelineRuleRepository
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
    RuleTrigger,
)
from importcrm.crm.seed import seed_default_rules
from importcrm.metrics import observe_rule_dispatch_block
from importcrm.rbac.context import ActorUser
from importcrm.rbac.permissions import EntityType, PermissionAction
from importcrm.rbac.service import access_service

logger = logging.getLogger("importcrm.rules.engine")

EVENT_TRIGGERS: dict[str, RuleTrigger] = {
    events.DEAL_CREATED: RuleTrigger.DEAL_CREATED,
    events.DEAL_STAGE_CHANGED: RuleTrigger.DEAL_STAGE_CHANGED,
    events.DEAL_MARKED_WON: RuleTrigger.DEAL_MARKED_WON,
    events.DEAL_MARKED_LOST: RuleTrigger.DEAL_MARKED_LOST,
    events.DEAL_INACTIVE: RuleTrigger.DEAL_INACTIVE,
}

_NULLABLE_RULE_FIELDS = {"description"}
SUMMARY_DEFAULT_WINDOW = timedelta(days=30)


def _rule_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="rule not found")


class PipelineRuleService:
    def list_rules(
        self,
        session: Session,
        actor: ActorUser,
        *,
        trigger: str | None = None,
        pipeline_id: str | None = None,
        active_only: bool = False,
    ) -> list[PipelineRuleRead]:
        access_service.ensure_entity_access(session, actor, EntityType.PIPELINES, PermissionAction.CAN_READ)
        repository = PipelineRuleRepository(session, actor.tenant_id)
        if trigger is not None:
            rules = repository.get_by_trigger(trigger, pipeline_id)
        elif active_only:
            rules = repository.get_active_rules(pipeline_id)
        elif pipeline_id is not None:
            rules = repository.get_by_pipeline(pipeline_id)
        else:
            rules = sorted(repository.list(), key=lambda rule: rule.priority)
        return [self._to_read(rule) for rule in rules]

    def list_pipeline_rules(self, session: Session, actor: ActorUser, pipeline_id: str) -> list[PipelineRuleRead]:
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_READ, entity_id=pipeline_id
        )
        self._require_pipeline(session, actor, pipeline_id)
        return [
            self._to_read(rule)
            for rule in PipelineRuleRepository(session, actor.tenant_id).get_by_pipeline(pipeline_id)
        ]

    def get_rule(self, session: Session, actor: ActorUser, rule_id: str) -> PipelineRuleRead:
        rule = self._get_rule(session, actor, rule_id)
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_READ, entity_id=rule.pipeline_id
        )
        return self._to_read(rule)

    def create_rule(
        self,
        session: Session,
        actor: ActorUser,
        dto: PipelineRuleCreate | PipelineScopedRuleCreate,
        *,
        pipeline_id: str | None = None,
    ) -> PipelineRuleRead:
        access_service.ensure_entity_access(session, actor, EntityType.PIPELINES, PermissionAction.CAN_CREATE)
        values = dto.model_dump(mode="json", exclude={"id"})
        if pipeline_id is not None:
            values.update(pipeline_id=pipeline_id, is_global=False)
        if values.get("pipeline_id") is not None:
            self._require_pipeline(session, actor, values["pipeline_id"])

        repository = PipelineRuleRepository(session, actor.tenant_id)
        if dto.id is not None and repository.get(dto.id) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="rule already exists")
        if values["priority"] is None:
            values["priority"] = repository.next_priority(values.get("pipeline_id"))

        # user-created rules are never system or migrated rules
        rule = repository.create(
            CRMPipelineRule(
                **values,
                id=dto.id,
                is_system=False,
                is_migrated=False,
                created_by=actor.user_id,
                updated_by=actor.user_id,
            )
        )
        after = self._to_read(rule).model_dump(mode="json")
        self._audit(actor, rule.id, "crm.pipeline_rule.created", None, after)
        session.commit()
        session.refresh(rule)
        return self._to_read(rule)

    def update_rule(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: str,
        dto: PipelineRuleUpdate,
    ) -> PipelineRuleRead:
        rule = self._get_rule(session, actor, rule_id)
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_UPDATE, entity_id=rule.pipeline_id
        )
        before = self._to_read(rule).model_dump(mode="json")
        patch: dict[str, Any] = {
            key: value
            for key, value in dto.model_dump(mode="json", exclude_unset=True).items()
            if value is not None or key in _NULLABLE_RULE_FIELDS
        }
        patch["updated_by"] = actor.user_id
        updated = PipelineRuleRepository(session, actor.tenant_id).update(rule_id, patch)
        if updated is None:
            raise _rule_not_found()

        after = self._to_read(updated).model_dump(mode="json")
        self._audit(actor, rule_id, "crm.pipeline_rule.updated", before, after)
        session.commit()
        session.refresh(updated)
        return self._to_read(updated)

    def delete_rule(self, session: Session, actor: ActorUser, rule_id: str) -> None:
        rule = self._get_rule(session, actor, rule_id)
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_DELETE, entity_id=rule.pipeline_id
        )
        before = self._to_read(rule).model_dump(mode="json")
        try:
            PipelineRuleRepository(session, actor.tenant_id).remove(rule_id)
        except SystemRuleProtectedError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except RuleNotFoundError as exc:
            raise _rule_not_found() from exc
        self._audit(actor, rule_id, "crm.pipeline_rule.deleted", before, None)
        session.commit()

    def set_active(self, session: Session, actor: ActorUser, rule_id: str, is_active: bool) -> PipelineRuleRead:
        rule = self._get_rule(session, actor, rule_id)
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_UPDATE, entity_id=rule.pipeline_id
        )
        before = self._to_read(rule).model_dump(mode="json")
        repository = PipelineRuleRepository(session, actor.tenant_id)
        updated = repository.activate(rule_id) if is_active else repository.deactivate(rule_id)
        if updated is None:
            raise _rule_not_found()

        action = "crm.pipeline_rule.activated" if is_active else "crm.pipeline_rule.deactivated"
        self._audit(actor, rule_id, action, before, self._to_read(updated).model_dump(mode="json"))
        session.commit()
        session.refresh(updated)
        return self._to_read(updated)

    def reorder_rules(self, session: Session, actor: ActorUser, dto: RuleReorderRequest) -> RuleReorderResponse:
        access_service.ensure_entity_access(session, actor, EntityType.PIPELINES, PermissionAction.CAN_UPDATE)
        success = PipelineRuleRepository(session, actor.tenant_id).reorder_rules(dto.rule_ids)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.pipeline_rule",
            entity_id=",".join(dto.rule_ids),
            action="crm.pipeline_rule.reordered",
            before=None,
            after={"rule_ids": dto.rule_ids, "success": success},
            correlation_id=actor.correlation_id,
            tenant_id=actor.tenant_id,
        )
        session.commit()
        return RuleReorderResponse(success=success)

    def get_executions(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: str,
        limit: int | None = None,
    ) -> list[RuleExecutionRead]:
        rule = self._get_rule(session, actor, rule_id)
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_READ, entity_id=rule.pipeline_id
        )
        executions = PipelineRuleRepository(session, actor.tenant_id).get_executions(rule_id, limit)
        return [RuleExecutionRead.model_validate(execution) for execution in executions]

    def get_summary(
        self,
        session: Session,
        actor: ActorUser,
        rule_id: str,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> RuleExecutionSummary:
        rule = self._get_rule(session, actor, rule_id)
        access_service.ensure_entity_access(
            session, actor, EntityType.PIPELINES, PermissionAction.CAN_READ, entity_id=rule.pipeline_id
        )
        period_end = as_utc(period_end) or utcnow()
        period_start = as_utc(period_start) or period_end - SUMMARY_DEFAULT_WINDOW
        if period_start > period_end:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="period_start must not be after period_end",
            )
        return PipelineRuleRepository(session, actor.tenant_id).get_execution_summary(rule_id, period_start, period_end)

    def seed(self, session: Session, actor: ActorUser) -> RuleSeedReport:
        access_service.ensure_entity_access(session, actor, EntityType.PIPELINES, PermissionAction.CAN_CREATE)
        report = seed_default_rules(session, tenant_id=actor.tenant_id, actor_user_id=actor.user_id)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.pipeline_rule",
            entity_id="seed",
            action="crm.pipeline_rule.seeded",
            before=None,
            after=report.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
            tenant_id=actor.tenant_id,
        )
        return report

    def evaluate(self, session: Session, actor: ActorUser, dto: RuleEvaluateRequest) -> list[RuleEvaluationResult]:
        deal = DealRepository(session, actor.tenant_id).get(dto.deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        access_service.ensure_entity_access(
            session,
            actor,
            EntityType.DEALS,
            PermissionAction.CAN_UPDATE,
            entity_id=deal.id,
            entity_owner_id=deal.responsible_user_id,
        )
        context = RuleEvaluationContext.for_deal(
            session,
            actor.tenant_id,
            deal.id,
            metadata=dto.metadata,
            actor_user_id=actor.user_id,
        )
        if context is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return rule_engine.evaluate_rules(session, dto.trigger, context)

    def _get_rule(self, session: Session, actor: ActorUser, rule_id: str) -> CRMPipelineRule:
        rule = PipelineRuleRepository(session, actor.tenant_id).get(rule_id)
        if rule is None:
            raise _rule_not_found()
        return rule

    def _require_pipeline(self, session: Session, actor: ActorUser, pipeline_id: str) -> None:
        if PipelineRepository(session, actor.tenant_id).get(pipeline_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")

    def _audit(
        self,
        actor: ActorUser,
        rule_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.pipeline_rule",
            entity_id=rule_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
            tenant_id=actor.tenant_id,
        )

    def _to_read(self, rule: CRMPipelineRule) -> PipelineRuleRead:
        return PipelineRuleRead.model_validate(rule)


class RuleDispatchService:
    """Runs the rule engine for deal lifecycle events published on the in-process bus."""

    def __init__(self, engine: RuleEngine = rule_engine) -> None:
        self.engine = engine

    @staticmethod
    def _parse_depth(value: Any) -> int:
        try:
            depth = int(value)
        except (TypeError, ValueError):
            return 0
        return depth if depth >= 0 else 0

    def handle_deal_event(self, session: Session, envelope: dict[str, Any]) -> list[RuleEvaluationResult]:
        settings = get_settings()
        if not settings.rules_engine_enabled:
            return []

        event_type = str(envelope.get("event_type") or "")
        trigger = EVENT_TRIGGERS.get(event_type)
        if trigger is None:
            return []

        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        deal_id = str(payload.get("deal_id") or "").strip()
        if not deal_id:
            return []

        tenant_id = str(envelope.get("tenant_id") or "").strip() or settings.default_tenant_id
        correlation_id = str(envelope.get("correlation_id") or "").strip() or None
        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        depth = self._parse_depth(meta.get("rule_dispatch_depth", 0))

        correlation_token = set_correlation_id(correlation_id)
        try:
            if depth >= settings.rules_max_dispatch_depth:
                logger.warning(
                    "rule_dispatch_blocked",
                    extra={
                        "reason": "max_depth",
                        "event_type": event_type,
                        "deal_id": deal_id,
                        "dispatch_depth": depth,
                    },
                )
                observe_rule_dispatch_block("max_depth")
                audit.record(
                    actor_user_id=str(envelope.get("actor_user_id") or "system"),
                    entity_type="crm.rule_dispatch",
                    entity_id=str(envelope.get("event_id") or deal_id),
                    action="crm.rule_dispatch.blocked",
                    before=None,
                    after={
                        "reason": "max_depth",
                        "event_type": event_type,
                        "deal_id": deal_id,
                        "dispatch_depth": depth,
                        "max_depth": settings.rules_max_dispatch_depth,
                    },
                    correlation_id=correlation_id,
                    tenant_id=tenant_id,
                )
                return []

            metadata = {key: value for key, value in payload.items() if key != "deal_id"}
            metadata["event_id"] = envelope.get("event_id")
            context = RuleEvaluationContext.for_deal(
                session,
                tenant_id,
                deal_id,
                metadata=metadata,
                actor_user_id=str(envelope.get("actor_user_id") or "system"),
            )
            if context is None:
                logger.warning(
                    "rule_dispatch_deal_missing",
                    extra={"event_type": event_type, "deal_id": deal_id, "reason": "deal_not_found"},
                )
                return []

            depth_token = set_rule_dispatch_depth(depth + 1)
            try:
                return self.engine.evaluate_rules(session, trigger, context)
            finally:
                reset_rule_dispatch_depth(depth_token)
        finally:
            reset_correlation_id(correlation_token)


pipeline_rule_service = PipelineRuleService()
rule_dispatch_service = RuleDispatchService()
