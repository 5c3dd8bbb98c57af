from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import selectinload

from importcrm.core.config import get_settings
from importcrm.core.repository import BaseRepository, as_utc, new_id
from importcrm.crm.errors import RuleNotFoundError, SystemRuleProtectedError
from importcrm.crm.models import (
    CRMDeal,
    CRMNotificationIntent,
    CRMPipeline,
    CRMPipelineRule,
    CRMPipelineStage,
    CRMRuleCooldown,
    CRMRuleExecution,
    CRMTask,
    utcnow,
)
from importcrm.crm.schemas import RuleExecutionCreate, RuleExecutionSummary

__all__ = [
    "BaseRepository",
    "DealRepository",
    "NotificationIntentRepository",
    "PipelineRepository",
    "PipelineRuleRepository",
    "TaskRepository",
]

_GUARD_STRIPES = 64
_guard_locks = [threading.RLock() for _ in range(_GUARD_STRIPES)]


def _guard_lock(tenant_id: str, rule_id: str, deal_id: str) -> threading.RLock:
    return _guard_locks[hash((tenant_id, rule_id, deal_id)) % _GUARD_STRIPES]


class PipelineRepository(BaseRepository[CRMPipeline]):
    model = CRMPipeline
    resource = "crm.pipeline"

    def get_with_stages(self, pipeline_id: str) -> CRMPipeline | None:
        query = (
            self.apply_scope_query(select(CRMPipeline))
            .where(CRMPipeline.id == pipeline_id)
            .options(selectinload(CRMPipeline.stages))
        )
        return self.session.scalar(query)

    def get_by_name(self, name: str) -> CRMPipeline | None:
        query = self.apply_scope_query(select(CRMPipeline)).where(CRMPipeline.name == name)
        return self.session.scalars(query.order_by(CRMPipeline.created_at.asc())).first()

    def get_stage(self, stage_id: str) -> CRMPipelineStage | None:
        query = select(CRMPipelineStage).where(
            CRMPipelineStage.tenant_id == self.tenant_id,
            CRMPipelineStage.id == stage_id,
        )
        return self.session.scalar(query)


class DealRepository(BaseRepository[CRMDeal]):
    model = CRMDeal
    resource = "crm.deal"


class TaskRepository(BaseRepository[CRMTask]):
    model = CRMTask
    resource = "crm.task"


class NotificationIntentRepository(BaseRepository[CRMNotificationIntent]):
    model = CRMNotificationIntent
    resource = "crm.notification_intent"


class PipelineRuleRepository(BaseRepository[CRMPipelineRule]):
    """Rule storage plus the execution log and cooldown anchors used to gate firing."""

    model = CRMPipelineRule
    resource = "crm.pipeline_rule"

    def _ordered(self, query: Select[Any]) -> list[CRMPipelineRule]:
        ordered = query.order_by(
            CRMPipelineRule.priority.asc(),
            CRMPipelineRule.created_at.asc(),
            CRMPipelineRule.id.asc(),
        )
        return list(self.session.scalars(ordered))

    def _scoped_to(self, query: Select[Any], pipeline_id: str | None) -> Select[Any]:
        if pipeline_id is None:
            return query
        return query.where(
            or_(
                CRMPipelineRule.is_global.is_(True),
                CRMPipelineRule.pipeline_id == pipeline_id,
            )
        )

    def get_by_pipeline(self, pipeline_id: str) -> list[CRMPipelineRule]:
        query = self.apply_scope_query(select(CRMPipelineRule)).where(
            CRMPipelineRule.pipeline_id == pipeline_id,
            CRMPipelineRule.is_global.is_(False),
        )
        return self._ordered(query)

    def get_global_rules(self) -> list[CRMPipelineRule]:
        query = self.apply_scope_query(select(CRMPipelineRule)).where(CRMPipelineRule.is_global.is_(True))
        return self._ordered(query)

    def get_active_rules(self, pipeline_id: str | None = None) -> list[CRMPipelineRule]:
        query = self.apply_scope_query(select(CRMPipelineRule)).where(CRMPipelineRule.is_active.is_(True))
        return self._ordered(self._scoped_to(query, pipeline_id))

    def get_by_trigger(self, trigger: str, pipeline_id: str | None = None) -> list[CRMPipelineRule]:
        query = self.apply_scope_query(select(CRMPipelineRule)).where(
            CRMPipelineRule.is_active.is_(True),
            CRMPipelineRule.trigger == str(trigger),
        )
        return self._ordered(self._scoped_to(query, pipeline_id))

    def get_system_rules(self) -> list[CRMPipelineRule]:
        return self._ordered(self.apply_scope_query(select(CRMPipelineRule)).where(CRMPipelineRule.is_system.is_(True)))

    def get_migrated_rules(self) -> list[CRMPipelineRule]:
        return self._ordered(
            self.apply_scope_query(select(CRMPipelineRule)).where(CRMPipelineRule.is_migrated.is_(True))
        )

    def next_priority(self, pipeline_id: str | None) -> int:
        query = self.apply_scope_query(select(func.max(CRMPipelineRule.priority)))
        if pipeline_id is None:
            query = query.where(CRMPipelineRule.is_global.is_(True))
        else:
            query = query.where(
                CRMPipelineRule.pipeline_id == pipeline_id,
                CRMPipelineRule.is_global.is_(False),
            )
        return (self.session.scalar(query) or 0) + 1

    def activate(self, rule_id: str) -> CRMPipelineRule | None:
        return self.update(rule_id, {"is_active": True})

    def deactivate(self, rule_id: str) -> CRMPipelineRule | None:
        return self.update(rule_id, {"is_active": False})

    def reorder_rules(self, rule_ids: list[str]) -> bool:
        # every id is attempted; a missing id only flips the overall result
        results = [self.update(rule_id, {"priority": index + 1}) is not None for index, rule_id in enumerate(rule_ids)]
        return all(results)

    def can_delete(self, rule_id: str) -> bool:
        rule = self.get(rule_id)
        return rule is not None and not rule.is_system

    def remove(self, rule_id: str) -> bool:
        rule = self.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if not self.can_delete(rule_id):
            raise SystemRuleProtectedError(rule_id)
        return super().remove(rule_id)

    def record_execution(self, execution: RuleExecutionCreate) -> CRMRuleExecution:
        now = utcnow()
        entry = CRMRuleExecution(**execution.model_dump(), created_at=now, updated_at=now)
        self.session.add(self._stamp(entry))
        if execution.executed:
            rule = self.get(execution.rule_id)
            if rule is not None:
                rule.execution_count = (rule.execution_count or 0) + 1
                rule.last_triggered_at = now
                self.session.add(rule)
        self.session.flush()
        return entry

    def _stamp(self, entry: CRMRuleExecution) -> CRMRuleExecution:
        if entry.id is None:
            entry.id = new_id()
        entry.tenant_id = self.tenant_id
        return entry

    def _executions_query(self) -> Select[Any]:
        return select(CRMRuleExecution).where(CRMRuleExecution.tenant_id == self.tenant_id)

    def get_executions(self, rule_id: str, limit: int | None = None) -> list[CRMRuleExecution]:
        query = (
            self._executions_query()
            .where(CRMRuleExecution.rule_id == rule_id)
            .order_by(CRMRuleExecution.created_at.desc(), CRMRuleExecution.id.desc())
            .limit(limit or get_settings().rule_execution_history_limit)
        )
        return list(self.session.scalars(query))

    def get_executions_by_deal(self, deal_id: str, limit: int | None = None) -> list[CRMRuleExecution]:
        query = (
            self._executions_query()
            .where(CRMRuleExecution.deal_id == deal_id)
            .order_by(CRMRuleExecution.created_at.desc(), CRMRuleExecution.id.desc())
            .limit(limit or get_settings().rule_execution_history_limit)
        )
        return list(self.session.scalars(query))

    def get_execution_summary(
        self,
        rule_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> RuleExecutionSummary:
        start = as_utc(period_start)
        end = as_utc(period_end)
        query = (
            self._executions_query()
            .where(
                CRMRuleExecution.rule_id == rule_id,
                CRMRuleExecution.created_at.between(start, end),
            )
            .order_by(CRMRuleExecution.created_at.desc(), CRMRuleExecution.id.desc())
        )
        executions = list(self.session.scalars(query))

        successful = sum(1 for execution in executions if execution.success)
        timed = [execution.execution_time_ms for execution in executions if execution.execution_time_ms is not None]
        last_executed_at = None
        if executions:
            latest = executions[0]
            last_executed_at = as_utc(latest.executed_at or latest.created_at)

        return RuleExecutionSummary(
            rule_id=rule_id,
            period_start=start,
            period_end=end,
            total_executions=len(executions),
            successful_executions=successful,
            failed_executions=len(executions) - successful,
            average_execution_time_ms=sum(timed) / len(timed) if timed else 0.0,
            deals_affected=len({execution.deal_id for execution in executions}),
            last_executed_at=last_executed_at,
        )

    def get_last_executed_at(self, rule_id: str, deal_id: str) -> datetime | None:
        anchor = self.session.get(CRMRuleCooldown, (self.tenant_id, rule_id, deal_id))
        return as_utc(anchor.last_executed_at) if anchor is not None else None

    def has_successful_execution(self, rule_id: str, deal_id: str) -> bool:
        query = (
            self._executions_query()
            .where(
                CRMRuleExecution.rule_id == rule_id,
                CRMRuleExecution.deal_id == deal_id,
                CRMRuleExecution.executed.is_(True),
                CRMRuleExecution.success.is_(True),
            )
            .limit(1)
        )
        return self.session.scalar(query) is not None

    def can_execute(self, rule_id: str, deal_id: str) -> bool:
        rule = self.get(rule_id)
        if rule is None or not rule.is_active:
            return False

        if rule.cooldown_minutes > 0:
            last_executed_at = self.get_last_executed_at(rule_id, deal_id)
            if last_executed_at is not None and utcnow() - last_executed_at < timedelta(minutes=rule.cooldown_minutes):
                return False

        if rule.execute_once and self.has_successful_execution(rule_id, deal_id):
            return False

        return True

    def mark_executed(self, rule_id: str, deal_id: str) -> None:
        now = utcnow()
        anchor = self.session.get(CRMRuleCooldown, (self.tenant_id, rule_id, deal_id))
        if anchor is None:
            anchor = CRMRuleCooldown(tenant_id=self.tenant_id, rule_id=rule_id, deal_id=deal_id)
        anchor.last_executed_at = now
        self.session.add(anchor)
        self.session.flush()

    @contextmanager
    def execution_guard(self, rule_id: str, deal_id: str) -> Iterator[None]:
        """Serialise check, run, record and mark for one (tenant, rule, deal) key in this process."""
        with _guard_lock(self.tenant_id, rule_id, deal_id):
            yield
