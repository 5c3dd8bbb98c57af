from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from importcrm.crm.conditions import condition_registry


class RuleTrigger(StrEnum):
    DEAL_CREATED = "DEAL_CREATED"
    DEAL_STAGE_CHANGED = "DEAL_STAGE_CHANGED"
    DEAL_MARKED_WON = "DEAL_MARKED_WON"
    DEAL_MARKED_LOST = "DEAL_MARKED_LOST"
    DEAL_INACTIVE = "DEAL_INACTIVE"


class RuleActionType(StrEnum):
    SPAWN_IN_PIPELINE = "SPAWN_IN_PIPELINE"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    REQUIRE_LOST_REASON = "REQUIRE_LOST_REASON"
    REQUIRE_FIELD = "REQUIRE_FIELD"
    SET_FIELD_VALUE = "SET_FIELD_VALUE"
    CREATE_TASK = "CREATE_TASK"
    ASSIGN_TO_USER = "ASSIGN_TO_USER"
    UNASSIGN_DEAL = "UNASSIGN_DEAL"
    MOVE_TO_STAGE = "MOVE_TO_STAGE"
    MARK_WON = "MARK_WON"
    MARK_LOST = "MARK_LOST"


LogicalOperator = Literal["AND", "OR"]
TaskPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]

DEFAULT_SPAWN_COPY_FIELDS = ["title", "amount", "currency", "organisation_id", "contact_id"]


def _new_id() -> str:
    return str(uuid.uuid4())


class RuleCondition(BaseModel):
    id: str = Field(default_factory=_new_id)
    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)
    value: Any = None
    logical_operator: LogicalOperator = "AND"

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, value: str) -> str:
        if value not in condition_registry:
            raise ValueError(f"unsupported condition operator: {value}")
        return value


class _Parameters(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SpawnInPipelineParameters(_Parameters):
    pipeline_id: str = Field(min_length=1)
    target_stage_id: str | None = None
    copy_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_SPAWN_COPY_FIELDS))
    title_suffix: str = " (Auto-spawned)"


class SendNotificationParameters(_Parameters):
    message: str | None = None
    recipient_user_id: str | None = None
    recipient_team_id: str | None = None
    recipients: list[str] = Field(default_factory=list)


class RequireLostReasonParameters(_Parameters):
    pass


class RequireFieldParameters(_Parameters):
    field_name: str = Field(min_length=1)
    message: str | None = None


class SetFieldValueParameters(_Parameters):
    field_name: str = Field(min_length=1)
    field_value: Any = None


class CreateTaskParameters(_Parameters):
    task_title: str = Field(min_length=1)
    message: str | None = None
    task_priority: TaskPriority = "MEDIUM"
    task_due_in_days: int | None = Field(default=None, ge=0)
    recipient_user_id: str | None = None


class AssignToUserParameters(_Parameters):
    recipient_user_id: str = Field(min_length=1)


class UnassignDealParameters(_Parameters):
    pass


class MoveToStageParameters(_Parameters):
    stage_id: str = Field(min_length=1)


class MarkWonParameters(_Parameters):
    pass


class MarkLostParameters(_Parameters):
    loss_reason: str = Field(default="OTHER", min_length=1)
    message: str | None = None


class _RuleActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=_new_id)
    delay: int = Field(default=0, ge=0)
    order: int = 0


class SpawnInPipelineAction(_RuleActionBase):
    type: Literal["SPAWN_IN_PIPELINE"]
    parameters: SpawnInPipelineParameters


class SendNotificationAction(_RuleActionBase):
    type: Literal["SEND_NOTIFICATION"]
    parameters: SendNotificationParameters = Field(default_factory=SendNotificationParameters)


class RequireLostReasonAction(_RuleActionBase):
    type: Literal["REQUIRE_LOST_REASON"]
    parameters: RequireLostReasonParameters = Field(default_factory=RequireLostReasonParameters)


class RequireFieldAction(_RuleActionBase):
    type: Literal["REQUIRE_FIELD"]
    parameters: RequireFieldParameters


class SetFieldValueAction(_RuleActionBase):
    type: Literal["SET_FIELD_VALUE"]
    parameters: SetFieldValueParameters


class CreateTaskAction(_RuleActionBase):
    type: Literal["CREATE_TASK"]
    parameters: CreateTaskParameters


class AssignToUserAction(_RuleActionBase):
    type: Literal["ASSIGN_TO_USER"]
    parameters: AssignToUserParameters


class UnassignDealAction(_RuleActionBase):
    type: Literal["UNASSIGN_DEAL"]
    parameters: UnassignDealParameters = Field(default_factory=UnassignDealParameters)


class MoveToStageAction(_RuleActionBase):
    type: Literal["MOVE_TO_STAGE"]
    parameters: MoveToStageParameters


class MarkWonAction(_RuleActionBase):
    type: Literal["MARK_WON"]
    parameters: MarkWonParameters = Field(default_factory=MarkWonParameters)


class MarkLostAction(_RuleActionBase):
    type: Literal["MARK_LOST"]
    parameters: MarkLostParameters = Field(default_factory=MarkLostParameters)


RuleAction = Annotated[
    SpawnInPipelineAction
    | SendNotificationAction
    | RequireLostReasonAction
    | RequireFieldAction
    | SetFieldValueAction
    | CreateTaskAction
    | AssignToUserAction
    | UnassignDealAction
    | MoveToStageAction
    | MarkWonAction
    | MarkLostAction,
    Field(discriminator="type"),
]

_rule_action_adapter = TypeAdapter(RuleAction)
_condition_list_adapter = TypeAdapter(list[RuleCondition])

# action type -> model; extended at runtime through ActionRegistry.register
_action_models: dict[str, type[BaseModel]] = {}


def register_action_model(action_type: str, model: type[BaseModel]) -> None:
    _action_models[action_type] = model


def parse_rule_action(payload: dict[str, Any]) -> BaseModel:
    model = _action_models.get(str(payload.get("type")))
    if model is not None:
        return model.model_validate(payload)
    return _rule_action_adapter.validate_python(payload)


def _validate_actions(raw: list[dict[str, Any]]) -> list[dict[str, Any]]:
    parsed = [parse_rule_action(item) for item in raw]
    return [item.model_dump(mode="json") for item in parsed]


def _validate_conditions(raw: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in _condition_list_adapter.validate_python(raw)]


class PipelineScopedRuleCreate(BaseModel):
    """Rule body posted under a pipeline; scope comes from the path."""

    id: str | None = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: RuleTrigger
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    actions: list[dict[str, Any]] = Field(min_length=1)
    is_active: bool = True
    # None means one past the highest priority in the same scope
    priority: int | None = Field(default=None, ge=0)
    execute_once: bool = False
    cooldown_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_rule_body(self) -> PipelineScopedRuleCreate:
        self.conditions = _validate_conditions(self.conditions)
        self.actions = _validate_actions(self.actions)
        return self


class PipelineRuleCreate(PipelineScopedRuleCreate):
    pipeline_id: str | None = None
    is_global: bool = False

    @model_validator(mode="after")
    def validate_rule_scope(self) -> PipelineRuleCreate:
        if self.is_global == bool(self.pipeline_id):
            raise ValueError("a rule is either global or scoped to exactly one pipeline")
        return self


class SeededRuleCreate(PipelineRuleCreate):
    """Platform-seeded rule; the only shape that can carry the system and migrated flags."""

    is_system: bool = False
    is_migrated: bool = False


class PipelineRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: RuleTrigger | None = None
    trigger_config: dict[str, Any] | None = None
    conditions: list[dict[str, Any]] | None = None
    actions: list[dict[str, Any]] | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    priority: int | None = Field(default=None, ge=0)
    execute_once: bool | None = None
    cooldown_minutes: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_rule_structure(self) -> PipelineRuleUpdate:
        if self.conditions is not None:
            self.conditions = _validate_conditions(self.conditions)
        if self.actions is not None:
            self.actions = _validate_actions(self.actions)
        return self


class PipelineRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    description: str | None
    pipeline_id: str | None
    is_global: bool
    trigger: str
    trigger_config: dict[str, Any]
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    is_active: bool
    priority: int
    execute_once: bool
    cooldown_minutes: int
    is_system: bool
    is_migrated: bool
    last_triggered_at: datetime | None
    execution_count: int
    created_at: datetime
    updated_at: datetime


class RuleReorderRequest(BaseModel):
    rule_ids: list[str] = Field(min_length=1)


class RuleReorderResponse(BaseModel):
    success: bool


class ConditionResult(BaseModel):
    condition_id: str | None = None
    field: str
    operator: str
    expected: Any = None
    actual: Any = None
    matched: bool


class ActionResult(BaseModel):
    action_id: str | None = None
    type: str
    success: bool
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


class RuleEvaluationResult(BaseModel):
    rule_id: str
    rule_name: str
    deal_id: str
    trigger: str
    conditions_matched: bool
    condition_results: list[ConditionResult] = Field(default_factory=list)
    executed: bool = False
    action_results: list[ActionResult] = Field(default_factory=list)
    success: bool = False
    error: str | None = None
    execution_time_ms: float | None = None


class RuleExecutionCreate(BaseModel):
    rule_id: str
    rule_name: str
    deal_id: str
    deal_title: str | None = None
    pipeline_id: str | None = None
    stage_id: str | None = None
    trigger: str
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    conditions_matched: bool = False
    evaluation_result: dict[str, Any] = Field(default_factory=dict)
    executed: bool = False
    executed_at: datetime | None = None
    actions_performed: list[dict[str, Any]] = Field(default_factory=list)
    success: bool = False
    error: str | None = None
    execution_time_ms: float | None = None


class RuleExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    rule_id: str
    rule_name: str
    deal_id: str
    deal_title: str | None
    pipeline_id: str | None
    stage_id: str | None
    trigger: str
    conditions_matched: bool
    executed: bool
    executed_at: datetime | None
    actions_performed: list[dict[str, Any]]
    success: bool
    error: str | None
    execution_time_ms: float | None
    created_at: datetime


class RuleExecutionSummary(BaseModel):
    rule_id: str
    period_start: datetime
    period_end: datetime
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_execution_time_ms: float
    deals_affected: int
    last_executed_at: datetime | None


class RuleEvaluateRequest(BaseModel):
    trigger: str = Field(min_length=1)
    deal_id: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RuleSeedSkip(BaseModel):
    rule_id: str
    reason: str


class RuleSeedReport(BaseModel):
    created: list[str] = Field(default_factory=list)
    skipped: list[RuleSeedSkip] = Field(default_factory=list)


