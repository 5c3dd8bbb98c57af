"""Rule action executors.

Each action type has one typed pydantic variant (``importcrm.crm.schemas``) and one executor
registered here. Executors receive ``(session, context, action)``, flush their writes without
committing, and return a JSON-able result dict. A requirement the deal does not meet is
reported by raising :class:`~importcrm.crm.errors.ActionValidationError` before anything
is written.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from importcrm import events
from importcrm.crm.conditions import resolve_field
from importcrm.crm.errors import ActionConfigurationError, ActionValidationError
from importcrm.crm.models import CRMDeal, CRMNotificationIntent, CRMTask, utcnow
from importcrm.crm.repositories import (
    DealRepository,
    NotificationIntentRepository,
    PipelineRepository,
    TaskRepository,
)
from importcrm.crm.schemas import (
    AssignToUserAction,
    CreateTaskAction,
    MarkLostAction,
    MarkWonAction,
    MoveToStageAction,
    RequireFieldAction,
    RequireLostReasonAction,
    RuleActionType,
    SendNotificationAction,
    SetFieldValueAction,
    SpawnInPipelineAction,
    UnassignDealAction,
    register_action_model,
)

if TYPE_CHECKING:
    from importcrm.crm.engine import RuleEvaluationContext

logger = logging.getLogger("importcrm.rules.engine")

ActionExecutor = Callable[[Session, "RuleEvaluationContext", Any], dict[str, Any]]

_TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_PROTECTED_DEAL_FIELDS = frozenset({"id", "tenant_id", "pipeline_id", "created_at", "updated_at"})


def render_template(template: str, scope: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = resolve_field(scope, match.group(1))
        return "" if value is None else str(value)

    return _TEMPLATE_PATTERN.sub(_replace, template)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


class ActionRegistry:
    def __init__(self) -> None:
        self._executors: dict[str, ActionExecutor] = {}
        self._models: dict[str, type[BaseModel]] = {}

    def register(self, action_type: str, model: type[BaseModel]) -> Callable[[ActionExecutor], ActionExecutor]:
        def decorator(func: ActionExecutor) -> ActionExecutor:
            self._executors[action_type] = func
            self._models[action_type] = model
            register_action_model(action_type, model)
            return func

        return decorator

    def __contains__(self, action_type: object) -> bool:
        return action_type in self._executors

    def get(self, action_type: str) -> ActionExecutor | None:
        return self._executors.get(action_type)

    def parse(self, payload: dict[str, Any]) -> BaseModel:
        action_type = str(payload.get("type"))
        model = self._models.get(action_type)
        if model is None:
            raise ActionConfigurationError(action_type, "unknown action type")
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ActionConfigurationError(action_type, str(exc)) from exc


action_registry = ActionRegistry()


@action_registry.register(RuleActionType.SPAWN_IN_PIPELINE, SpawnInPipelineAction)
def spawn_in_pipeline(session: Session, context: RuleEvaluationContext, action: SpawnInPipelineAction) -> dict[str, Any]:
    parameters = action.parameters
    pipelines = PipelineRepository(session, context.tenant_id)
    target = pipelines.get_with_stages(parameters.pipeline_id)
    if target is None or not target.stages:
        raise ActionValidationError("Target pipeline not found or has no stages", field="pipeline_id")

    stage_ids = {stage.id for stage in target.stages}
    target_stage_id = parameters.target_stage_id or target.stages[0].id
    if target_stage_id not in stage_ids:
        raise ActionValidationError("Target stage does not belong to the target pipeline", field="target_stage_id")

    source = context.deal
    copied = {name: getattr(source, name) for name in parameters.copy_fields if hasattr(CRMDeal, name)}
    copied.pop("title", None)
    for name in _PROTECTED_DEAL_FIELDS | {"stage_id", "status"}:
        copied.pop(name, None)

    deals = DealRepository(session, context.tenant_id)
    spawned = deals.create(
        CRMDeal(
            **copied,
            title=f"{source.title}{parameters.title_suffix}",
            pipeline_id=target.id,
            stage_id=target_stage_id,
            status="OPEN",
            notes=f"Auto-spawned from deal #{source.id}",
            original_deal_id=source.id,
            last_activity_at=utcnow(),
        )
    )
    note = f"Spawned deal #{spawned.id} in {target.name} pipeline"
    deals.update(source.id, {"notes": f"{source.notes}\n\n{note}" if source.notes else note})

    context.pending_events.append(
        events.build_deal_event(
            events.DEAL_CREATED,
            spawned.id,
            pipeline_id=target.id,
            actor_user_id=context.actor_user_id,
            tenant_id=context.tenant_id,
            payload={"original_deal_id": source.id, "source_rule_id": context.current_rule_id},
        )
    )
    return {
        "original_deal_id": source.id,
        "new_deal_id": spawned.id,
        "target_pipeline_id": target.id,
        "target_stage_id": target_stage_id,
    }


@action_registry.register(RuleActionType.SEND_NOTIFICATION, SendNotificationAction)
def send_notification(session: Session, context: RuleEvaluationContext, action: SendNotificationAction) -> dict[str, Any]:
    parameters = action.parameters
    message = render_template(parameters.message or "Deal {{deal.title}} changed", context.scope())
    intent = NotificationIntentRepository(session, context.tenant_id).create(
        CRMNotificationIntent(
            intent_type="crm.rule.notification",
            recipient_user_id=parameters.recipient_user_id,
            recipient_team_id=parameters.recipient_team_id,
            recipients=list(parameters.recipients),
            deal_id=context.deal.id,
            message=message,
            payload_json={"deal_title": context.deal.title, "trigger": context.trigger},
            source_rule_id=context.current_rule_id,
        )
    )
    logger.info(
        "rule_notification_queued",
        extra={"deal_id": context.deal.id, "rule_id": context.current_rule_id, "action_type": action.type},
    )
    return {
        "notification_id": intent.id,
        "recipient": parameters.recipient_user_id or parameters.recipient_team_id,
        "recipients": list(parameters.recipients),
        "message": message,
    }


@action_registry.register(RuleActionType.REQUIRE_LOST_REASON, RequireLostReasonAction)
def require_lost_reason(
    session: Session, context: RuleEvaluationContext, action: RequireLostReasonAction
) -> dict[str, Any]:
    if _is_blank(context.deal.loss_reason):
        raise ActionValidationError("A lost reason is required when marking a deal as lost", field="loss_reason")
    return {"field_name": "loss_reason", "value": context.deal.loss_reason}


@action_registry.register(RuleActionType.REQUIRE_FIELD, RequireFieldAction)
def require_field(session: Session, context: RuleEvaluationContext, action: RequireFieldAction) -> dict[str, Any]:
    field_name = action.parameters.field_name
    value = resolve_field(context.scope(), field_name)
    if _is_blank(value):
        message = action.parameters.message or f"Field '{field_name}' is required but not set"
        raise ActionValidationError(message, field=field_name)
    return {"field_name": field_name, "value": value if isinstance(value, (str, int, float, bool)) else str(value)}


@action_registry.register(RuleActionType.SET_FIELD_VALUE, SetFieldValueAction)
def set_field_value(session: Session, context: RuleEvaluationContext, action: SetFieldValueAction) -> dict[str, Any]:
    field_name = action.parameters.field_name
    if field_name in _PROTECTED_DEAL_FIELDS or not hasattr(CRMDeal, field_name):
        raise ActionValidationError(f"Field '{field_name}' cannot be set by a rule", field=field_name)
    DealRepository(session, context.tenant_id).update(context.deal.id, {field_name: action.parameters.field_value})
    return {"deal_id": context.deal.id, "field_name": field_name, "value": action.parameters.field_value}


@action_registry.register(RuleActionType.CREATE_TASK, CreateTaskAction)
def create_task(session: Session, context: RuleEvaluationContext, action: CreateTaskAction) -> dict[str, Any]:
    parameters = action.parameters
    scope = context.scope()
    due_at = utcnow() + timedelta(days=parameters.task_due_in_days) if parameters.task_due_in_days else None
    assignee = parameters.recipient_user_id or context.deal.responsible_user_id
    task = TaskRepository(session, context.tenant_id).create(
        CRMTask(
            deal_id=context.deal.id,
            title=render_template(parameters.task_title, scope),
            description=render_template(parameters.message, scope) if parameters.message else None,
            priority=parameters.task_priority,
            status="OPEN",
            assignee_user_id=assignee,
            due_at=due_at,
            source_rule_id=context.current_rule_id,
        )
    )
    return {"task_id": task.id, "deal_id": context.deal.id, "assignee_user_id": assignee}


@action_registry.register(RuleActionType.ASSIGN_TO_USER, AssignToUserAction)
def assign_to_user(session: Session, context: RuleEvaluationContext, action: AssignToUserAction) -> dict[str, Any]:
    user_id = action.parameters.recipient_user_id
    DealRepository(session, context.tenant_id).update(context.deal.id, {"responsible_user_id": user_id})
    return {"deal_id": context.deal.id, "assigned_to": user_id}


@action_registry.register(RuleActionType.UNASSIGN_DEAL, UnassignDealAction)
def unassign_deal(session: Session, context: RuleEvaluationContext, action: UnassignDealAction) -> dict[str, Any]:
    previous = context.deal.responsible_user_id
    DealRepository(session, context.tenant_id).update(context.deal.id, {"responsible_user_id": None})
    return {"deal_id": context.deal.id, "previous_user_id": previous}


@action_registry.register(RuleActionType.MOVE_TO_STAGE, MoveToStageAction)
def move_to_stage(session: Session, context: RuleEvaluationContext, action: MoveToStageAction) -> dict[str, Any]:
    deal = context.deal
    stage = PipelineRepository(session, context.tenant_id).get_stage(action.parameters.stage_id)
    if stage is None or stage.pipeline_id != deal.pipeline_id:
        raise ActionValidationError("Stage does not belong to the deal's pipeline", field="stage_id")

    from_stage_id = deal.stage_id
    DealRepository(session, context.tenant_id).update(deal.id, {"stage_id": stage.id, "last_activity_at": utcnow()})
    if from_stage_id != stage.id:
        context.pending_events.append(
            events.build_deal_event(
                events.DEAL_STAGE_CHANGED,
                deal.id,
                pipeline_id=deal.pipeline_id,
                actor_user_id=context.actor_user_id,
                tenant_id=context.tenant_id,
                payload={"from_stage_id": from_stage_id, "to_stage_id": stage.id},
            )
        )
    return {"deal_id": deal.id, "from_stage_id": from_stage_id, "stage_id": stage.id}


@action_registry.register(RuleActionType.MARK_WON, MarkWonAction)
def mark_won(session: Session, context: RuleEvaluationContext, action: MarkWonAction) -> dict[str, Any]:
    deal = context.deal
    if deal.status == "WON":
        return {"deal_id": deal.id, "status": deal.status}
    now = utcnow()
    DealRepository(session, context.tenant_id).update(
        deal.id, {"status": "WON", "won_at": now, "lost_at": None, "last_activity_at": now}
    )
    context.pending_events.append(
        events.build_deal_event(
            events.DEAL_MARKED_WON,
            deal.id,
            pipeline_id=deal.pipeline_id,
            actor_user_id=context.actor_user_id,
            tenant_id=context.tenant_id,
        )
    )
    return {"deal_id": deal.id, "status": "WON"}


@action_registry.register(RuleActionType.MARK_LOST, MarkLostAction)
def mark_lost(session: Session, context: RuleEvaluationContext, action: MarkLostAction) -> dict[str, Any]:
    deal = context.deal
    reason = action.parameters.loss_reason
    if deal.status == "LOST":
        return {"deal_id": deal.id, "status": deal.status, "loss_reason": deal.loss_reason}
    now = utcnow()
    DealRepository(session, context.tenant_id).update(
        deal.id,
        {
            "status": "LOST",
            "loss_reason": reason,
            "loss_notes": action.parameters.message,
            "lost_at": now,
            "last_activity_at": now,
        },
    )
    context.pending_events.append(
        events.build_deal_event(
            events.DEAL_MARKED_LOST,
            deal.id,
            pipeline_id=deal.pipeline_id,
            actor_user_id=context.actor_user_id,
            tenant_id=context.tenant_id,
            payload={"loss_reason": reason},
        )
    )
    return {"deal_id": deal.id, "status": "LOST", "loss_reason": reason}
