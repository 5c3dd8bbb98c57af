from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from importcrm import events
from importcrm.crm.actions import ActionRegistry, action_registry
from importcrm.crm.conditions import combine_results, condition_registry, resolve_field
from importcrm.crm.errors import ActionConfigurationError, ActionValidationError
from importcrm.crm.models import CRMDeal, CRMPipeline, CRMPipelineRule, CRMPipelineStage, utcnow
from importcrm.crm.repositories import DealRepository, PipelineRepository, PipelineRuleRepository
from importcrm.crm.schemas import (
    ActionResult,
    ConditionResult,
    RuleEvaluationResult,
    RuleExecutionCreate,
    RuleTrigger,
)
from importcrm.metrics import observe_rule_action, observe_rule_evaluation
from importcrm.otel import get_tracer

logger = logging.getLogger("importcrm.rules.engine")
tracer = get_tracer("importcrm.rules.engine")


def _stage_view(stage: CRMPipelineStage | None) -> dict[str, Any] | None:
    if stage is None:
        return None
    return {"id": stage.id, "name": stage.name, "position": stage.position, "is_closing": stage.is_closing}


@dataclass
class RuleEvaluationContext:
    tenant_id: str
    deal: CRMDeal
    pipeline: CRMPipeline | None = None
    stage: CRMPipelineStage | None = None
    from_stage: CRMPipelineStage | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    actor_user_id: str = "system"
    trigger: str | None = None
    current_rule_id: str | None = None
    pending_events: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def for_deal(
        cls,
        session: Session,
        tenant_id: str,
        deal_id: str,
        *,
        metadata: dict[str, Any] | None = None,
        actor_user_id: str = "system",
    ) -> RuleEvaluationContext | None:
        deal = DealRepository(session, tenant_id).get(deal_id)
        if deal is None:
            return None
        pipelines = PipelineRepository(session, tenant_id)
        metadata = dict(metadata or {})
        from_stage_id = metadata.get("from_stage_id")
        return cls(
            tenant_id=tenant_id,
            deal=deal,
            pipeline=pipelines.get(deal.pipeline_id),
            stage=pipelines.get_stage(deal.stage_id) if deal.stage_id else None,
            from_stage=pipelines.get_stage(str(from_stage_id)) if from_stage_id else None,
            metadata=metadata,
            actor_user_id=actor_user_id,
        )

    def scope(self) -> dict[str, Any]:
        """Values visible to condition field paths and message templates."""
        deal_values = {attr.key: getattr(self.deal, attr.key) for attr in inspect(CRMDeal).column_attrs}
        scope: dict[str, Any] = dict(deal_values)
        scope["deal"] = deal_values
        scope["pipeline"] = (
            {"id": self.pipeline.id, "name": self.pipeline.name, "is_default": self.pipeline.is_default}
            if self.pipeline is not None
            else None
        )
        scope["stage"] = _stage_view(self.stage)
        scope["from_stage"] = _stage_view(self.from_stage)
        scope["metadata"] = self.metadata
        return scope


class RuleEngine:
    """Evaluates the active rules of one trigger against one deal.

    Rules run in priority order. Each rule is gated, evaluated, recorded and marked under the
    repository's execution guard and committed on its own, so a failing rule never rolls back
    or stops the rules after it.
    """

    def __init__(self, actions: ActionRegistry = action_registry) -> None:
        self.actions = actions

    def evaluate_rules(
        self,
        session: Session,
        trigger: RuleTrigger | str,
        context: RuleEvaluationContext,
    ) -> list[RuleEvaluationResult]:
        try:
            rule_trigger = RuleTrigger(str(trigger))
        except ValueError:
            logger.warning("rule_trigger_unknown", extra={"trigger": str(trigger), "deal_id": context.deal.id})
            observe_rule_evaluation("unknown", "unknown_trigger")
            return []

        context.trigger = rule_trigger.value
        deal_id = context.deal.id
        repository = PipelineRuleRepository(session, context.tenant_id)
        rules = [(rule.id, rule.name) for rule in repository.get_by_trigger(rule_trigger, context.deal.pipeline_id)]

        results: list[RuleEvaluationResult] = []
        for rule_id, rule_name in rules:
            try:
                result = self._run_rule(session, repository, rule_id, context)
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "rule_evaluation_failed",
                    extra={"rule_id": rule_id, "deal_id": deal_id, "trigger": context.trigger, "error": str(exc)},
                )
                observe_rule_evaluation(context.trigger, "error")
                results.append(
                    RuleEvaluationResult(
                        rule_id=rule_id,
                        rule_name=rule_name,
                        deal_id=deal_id,
                        trigger=context.trigger,
                        conditions_matched=False,
                        success=False,
                        error=str(exc),
                    )
                )
                continue
            if result is not None:
                results.append(result)

        self._publish_pending(context)
        return results

    def _run_rule(
        self,
        session: Session,
        repository: PipelineRuleRepository,
        rule_id: str,
        context: RuleEvaluationContext,
    ) -> RuleEvaluationResult | None:
        deal_id = context.deal.id
        trigger = context.trigger or ""
        log_fields = {"rule_id": rule_id, "deal_id": deal_id, "trigger": trigger}

        with tracer.start_as_current_span("crm.rule.evaluate") as span, repository.execution_guard(rule_id, deal_id):
            span.set_attribute("crm.rule.id", rule_id)
            span.set_attribute("crm.deal.id", deal_id)
            span.set_attribute("crm.rule.trigger", trigger)

            rule = repository.get(rule_id)
            if rule is None or not repository.can_execute(rule_id, deal_id):
                span.set_attribute("crm.rule.outcome", "gated")
                observe_rule_evaluation(trigger, "gated")
                logger.info("rule_execution_gated", extra=log_fields)
                return None

            started = time.perf_counter()
            pending_mark = len(context.pending_events)
            context.current_rule_id = rule_id
            try:
                result = self.evaluate_rule(session, rule, context)
            except Exception as exc:
                session.rollback()
                del context.pending_events[pending_mark:]
                logger.exception("rule_action_crashed", extra={**log_fields, "error": str(exc)})
                rule = repository.get(rule_id)
                result = RuleEvaluationResult(
                    rule_id=rule_id,
                    rule_name=rule.name if rule is not None else rule_id,
                    deal_id=deal_id,
                    trigger=trigger,
                    conditions_matched=True,
                    executed=True,
                    success=False,
                    error=str(exc),
                )
            finally:
                context.current_rule_id = None

            duration = time.perf_counter() - started
            result.execution_time_ms = round(duration * 1000, 3)
            repository.record_execution(self._execution_record(result, context))
            if result.executed and result.success:
                repository.mark_executed(rule_id, deal_id)
            session.commit()

            outcome = self._outcome(result)
            span.set_attribute("crm.rule.outcome", outcome)

        observe_rule_evaluation(trigger, outcome, duration)
        if outcome == "failed":
            logger.warning("rule_execution_failed", extra={**log_fields, "error": result.error})
        else:
            logger.info("rule_evaluated", extra={**log_fields, "reason": outcome})
        return result

    def evaluate_rule(
        self,
        session: Session,
        rule: CRMPipelineRule,
        context: RuleEvaluationContext,
    ) -> RuleEvaluationResult:
        conditions = list(rule.conditions or [])
        condition_results = self._evaluate_conditions(conditions, context)
        matched = combine_results(
            [item.matched for item in condition_results],
            [str(condition.get("logical_operator") or "AND") for condition in conditions],
        )
        result = RuleEvaluationResult(
            rule_id=rule.id,
            rule_name=rule.name,
            deal_id=context.deal.id,
            trigger=context.trigger or rule.trigger,
            conditions_matched=matched,
            condition_results=condition_results,
        )
        if not matched:
            result.success = True
            return result

        action_results = self._execute_actions(session, list(rule.actions or []), context)
        failures = [item.error for item in action_results if not item.success and item.error]
        result.executed = True
        result.action_results = action_results
        result.success = all(item.success for item in action_results)
        result.error = "; ".join(failures) or None
        return result

    def _evaluate_conditions(
        self,
        conditions: list[dict[str, Any]],
        context: RuleEvaluationContext,
    ) -> list[ConditionResult]:
        scope = context.scope()
        results: list[ConditionResult] = []
        for condition in conditions:
            field_path = str(condition.get("field") or "")
            operator = str(condition.get("operator") or "")
            actual = resolve_field(scope, field_path) if field_path else None
            results.append(
                ConditionResult(
                    condition_id=condition.get("id"),
                    field=field_path,
                    operator=operator,
                    expected=condition.get("value"),
                    actual=jsonable_encoder(actual),
                    matched=condition_registry.evaluate(operator, actual, condition.get("value")),
                )
            )
        return results

    def _execute_actions(
        self,
        session: Session,
        actions: list[dict[str, Any]],
        context: RuleEvaluationContext,
    ) -> list[ActionResult]:
        ordered = [payload for _, payload in sorted(enumerate(actions), key=lambda item: (item[1].get("order", 0), item[0]))]
        results: list[ActionResult] = []
        for payload in ordered:
            action_type = str(payload.get("type"))
            action_id = payload.get("id")
            log_fields = {"rule_id": context.current_rule_id, "deal_id": context.deal.id, "action_type": action_type}

            executor = self.actions.get(action_type)
            if executor is None:
                logger.warning("rule_action_unknown", extra=log_fields)
                observe_rule_action("unknown", "skipped")
                results.append(
                    ActionResult(action_id=action_id, type=action_type, success=True, skipped=True, reason="unknown_action")
                )
                continue

            try:
                action = self.actions.parse(payload)
            except ActionConfigurationError as exc:
                logger.warning("rule_action_invalid", extra={**log_fields, "error": str(exc)})
                observe_rule_action(action_type, "failed")
                results.append(ActionResult(action_id=action_id, type=action_type, success=False, error=str(exc)))
                continue

            if getattr(action, "delay", 0) > 0:
                logger.info("rule_action_deferred", extra={**log_fields, "reason": "deferred"})
                observe_rule_action(action_type, "deferred")
                results.append(
                    ActionResult(action_id=action_id, type=action_type, success=True, skipped=True, reason="deferred")
                )
                continue

            try:
                data = executor(session, context, action)
                session.flush()
            except ActionValidationError as exc:
                logger.warning("rule_action_failed", extra={**log_fields, "error": str(exc)})
                observe_rule_action(action_type, "failed")
                results.append(ActionResult(action_id=action_id, type=action_type, success=False, error=str(exc)))
                continue

            observe_rule_action(action_type, "succeeded")
            results.append(
                ActionResult(action_id=action_id, type=action_type, success=True, result=jsonable_encoder(data))
            )
        return results

    def _execution_record(self, result: RuleEvaluationResult, context: RuleEvaluationContext) -> RuleExecutionCreate:
        deal = context.deal
        return RuleExecutionCreate(
            rule_id=result.rule_id,
            rule_name=result.rule_name,
            deal_id=result.deal_id,
            deal_title=deal.title,
            pipeline_id=deal.pipeline_id,
            stage_id=deal.stage_id,
            trigger=result.trigger,
            trigger_data=jsonable_encoder(context.metadata),
            conditions_matched=result.conditions_matched,
            evaluation_result={
                "condition_results": [item.model_dump(mode="json") for item in result.condition_results]
            },
            executed=result.executed,
            executed_at=utcnow() if result.executed else None,
            actions_performed=[item.model_dump(mode="json") for item in result.action_results],
            success=result.success,
            error=result.error,
            execution_time_ms=result.execution_time_ms,
        )

    @staticmethod
    def _outcome(result: RuleEvaluationResult) -> str:
        if not result.executed:
            return "not_matched"
        return "executed" if result.success else "failed"

    @staticmethod
    def _publish_pending(context: RuleEvaluationContext) -> None:
        pending, context.pending_events = context.pending_events, []
        for envelope in pending:
            events.publish(envelope)


rule_engine = RuleEngine()
