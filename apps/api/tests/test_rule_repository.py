from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from importcrm.core.database import Base
from importcrm.crm import repositories
from importcrm.crm.errors import RuleNotFoundError, SystemRuleProtectedError
from importcrm.crm.models import CRMPipelineRule
from importcrm.crm.repositories import PipelineRuleRepository
from importcrm.crm.schemas import RuleExecutionCreate

TENANT = "tenant-rules"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clock(monkeypatch: pytest.MonkeyPatch) -> dict[str, datetime]:
    state = {"now": T0}
    monkeypatch.setattr(repositories, "utcnow", lambda: state["now"])
    return state


@pytest.fixture()
def repository(db_session: Session) -> PipelineRuleRepository:
    return PipelineRuleRepository(db_session, TENANT)


def _add_rule(repository: PipelineRuleRepository, rule_id: str, **overrides) -> CRMPipelineRule:
    values = {
        "name": f"Rule {rule_id}",
        "pipeline_id": "pipeline-a",
        "is_global": False,
        "trigger": "DEAL_MARKED_WON",
        "actions": [{"id": f"act-{rule_id}", "type": "SEND_NOTIFICATION", "parameters": {}}],
        "priority": 100,
    }
    values.update(overrides)
    if values["is_global"]:
        values["pipeline_id"] = None
    rule = repository.create(CRMPipelineRule(id=rule_id, **values))
    repository.session.commit()
    return rule


def _execution(rule_id: str, deal_id: str, **overrides) -> RuleExecutionCreate:
    values = {
        "rule_id": rule_id,
        "rule_name": f"Rule {rule_id}",
        "deal_id": deal_id,
        "trigger": "DEAL_MARKED_WON",
        "conditions_matched": True,
        "executed": True,
        "success": True,
    }
    values.update(overrides)
    return RuleExecutionCreate(**values)


def test_scope_queries_sort_by_priority(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "scoped-late", priority=20)
    _add_rule(repository, "scoped-early", priority=5)
    _add_rule(repository, "global-mid", is_global=True, priority=10)
    _add_rule(repository, "other-pipeline", pipeline_id="pipeline-b", priority=1)
    _add_rule(repository, "inactive", priority=2, is_active=False)
    _add_rule(repository, "lost-trigger", trigger="DEAL_MARKED_LOST", priority=3)

    assert [rule.id for rule in repository.get_by_pipeline("pipeline-a")] == [
        "inactive",
        "lost-trigger",
        "scoped-early",
        "scoped-late",
    ]
    assert [rule.id for rule in repository.get_global_rules()] == ["global-mid"]
    assert [rule.id for rule in repository.get_active_rules("pipeline-a")] == [
        "lost-trigger",
        "scoped-early",
        "global-mid",
        "scoped-late",
    ]
    assert [rule.id for rule in repository.get_by_trigger("DEAL_MARKED_WON", "pipeline-a")] == [
        "scoped-early",
        "global-mid",
        "scoped-late",
    ]
    assert len(repository.get_active_rules()) == 5


def test_equal_priorities_keep_creation_order(repository: PipelineRuleRepository) -> None:
    for rule_id in ("rule-c", "rule-a", "rule-b"):
        _add_rule(repository, rule_id, priority=7)

    assert [rule.id for rule in repository.get_by_pipeline("pipeline-a")] == ["rule-c", "rule-a", "rule-b"]


def test_provenance_filters(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "seeded", is_system=True, is_migrated=True)
    _add_rule(repository, "protected", is_system=True)
    _add_rule(repository, "custom")

    assert {rule.id for rule in repository.get_system_rules()} == {"seeded", "protected"}
    assert [rule.id for rule in repository.get_migrated_rules()] == ["seeded"]


def test_activate_and_deactivate(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "toggle")

    assert repository.deactivate("toggle").is_active is False
    assert repository.activate("toggle").is_active is True
    assert repository.activate("missing") is None


def test_reorder_assigns_sequential_priorities(repository: PipelineRuleRepository) -> None:
    for rule_id, priority in (("id1", 10), ("id2", 20), ("id3", 30)):
        _add_rule(repository, rule_id, priority=priority)

    assert repository.reorder_rules(["id3", "id1", "id2"]) is True

    priorities = {rule.id: rule.priority for rule in repository.list()}
    assert priorities == {"id3": 1, "id1": 2, "id2": 3}
    assert [rule.id for rule in repository.get_active_rules()] == ["id3", "id1", "id2"]


def test_reorder_with_unknown_id_reports_partial_failure(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "id1", priority=10)
    _add_rule(repository, "id2", priority=20)

    assert repository.reorder_rules(["id2", "ghost", "id1"]) is False

    priorities = {rule.id: rule.priority for rule in repository.list()}
    assert priorities == {"id2": 1, "id1": 3}


def test_remove_protects_system_rules(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "system-rule", is_system=True)
    _add_rule(repository, "user-rule")

    assert repository.can_delete("system-rule") is False
    assert repository.can_delete("ghost") is False
    with pytest.raises(SystemRuleProtectedError):
        repository.remove("system-rule")
    with pytest.raises(RuleNotFoundError):
        repository.remove("ghost")

    assert repository.remove("user-rule") is True
    assert repository.get("user-rule") is None
    assert repository.get("system-rule") is not None


def test_rules_are_tenant_scoped(db_session: Session, repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "shared-id")
    other = PipelineRuleRepository(db_session, "tenant-other")

    assert other.get("shared-id") is None
    assert other.get_active_rules() == []


def test_record_execution_bumps_counters_only_when_executed(
    repository: PipelineRuleRepository,
    clock: dict[str, datetime],
) -> None:
    _add_rule(repository, "counted")

    skipped = repository.record_execution(_execution("counted", "deal-1", executed=False, conditions_matched=False))
    rule = repository.get("counted")
    assert skipped.id
    assert skipped.tenant_id == TENANT
    assert rule.execution_count == 0
    assert rule.last_triggered_at is None

    clock["now"] = T0 + timedelta(minutes=5)
    repository.record_execution(_execution("counted", "deal-1", success=False))
    repository.session.commit()

    rule = repository.get("counted")
    assert rule.execution_count == 1
    assert repositories.as_utc(rule.last_triggered_at) == T0 + timedelta(minutes=5)


def test_executions_are_listed_newest_first(
    repository: PipelineRuleRepository,
    clock: dict[str, datetime],
) -> None:
    _add_rule(repository, "history")
    for minute, deal_id in ((1, "deal-1"), (2, "deal-2"), (3, "deal-1")):
        clock["now"] = T0 + timedelta(minutes=minute)
        repository.record_execution(_execution("history", deal_id, execution_time_ms=float(minute)))
    repository.session.commit()

    assert [item.execution_time_ms for item in repository.get_executions("history")] == [3.0, 2.0, 1.0]
    assert [item.execution_time_ms for item in repository.get_executions("history", limit=2)] == [3.0, 2.0]
    assert [item.execution_time_ms for item in repository.get_executions_by_deal("deal-1")] == [3.0, 1.0]


def test_cooldown_blocks_until_window_elapses(
    repository: PipelineRuleRepository,
    clock: dict[str, datetime],
) -> None:
    _add_rule(repository, "cooldown", cooldown_minutes=60)

    assert repository.can_execute("cooldown", "deal-1") is True
    repository.mark_executed("cooldown", "deal-1")
    assert repositories.as_utc(repository.get_last_executed_at("cooldown", "deal-1")) == T0

    assert repository.can_execute("cooldown", "deal-1") is False
    assert repository.can_execute("cooldown", "deal-2") is True

    clock["now"] = T0 + timedelta(minutes=59)
    assert repository.can_execute("cooldown", "deal-1") is False

    clock["now"] = T0 + timedelta(minutes=60)
    assert repository.can_execute("cooldown", "deal-1") is True


def test_mark_executed_moves_the_cooldown_anchor(
    repository: PipelineRuleRepository,
    clock: dict[str, datetime],
) -> None:
    _add_rule(repository, "cooldown", cooldown_minutes=30)
    repository.mark_executed("cooldown", "deal-1")

    clock["now"] = T0 + timedelta(minutes=45)
    repository.mark_executed("cooldown", "deal-1")

    clock["now"] = T0 + timedelta(minutes=60)
    assert repository.can_execute("cooldown", "deal-1") is False


def test_execute_once_counts_only_successful_runs(
    repository: PipelineRuleRepository,
    clock: dict[str, datetime],
) -> None:
    _add_rule(repository, "once", execute_once=True)

    repository.record_execution(_execution("once", "deal-1", success=False))
    repository.record_execution(_execution("once", "deal-1", executed=False, success=True))
    assert repository.can_execute("once", "deal-1") is True

    repository.record_execution(_execution("once", "deal-1"))
    assert repository.can_execute("once", "deal-1") is False
    assert repository.can_execute("once", "deal-2") is True


def test_inactive_or_missing_rules_cannot_execute(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "dormant", is_active=False)

    assert repository.can_execute("dormant", "deal-1") is False
    assert repository.can_execute("ghost", "deal-1") is False


def test_execution_summary_over_window(
    repository: PipelineRuleRepository,
    clock: dict[str, datetime],
) -> None:
    _add_rule(repository, "summary")
    clock["now"] = T0 - timedelta(days=2)
    repository.record_execution(_execution("summary", "deal-old", execution_time_ms=999.0))

    recorded = [
        (T0 + timedelta(minutes=1), "deal-1", True, 100.0),
        (T0 + timedelta(minutes=2), "deal-2", True, 200.0),
        (T0 + timedelta(minutes=3), "deal-1", False, None),
    ]
    for moment, deal_id, success, elapsed in recorded:
        clock["now"] = moment
        repository.record_execution(
            _execution("summary", deal_id, success=success, execution_time_ms=elapsed, executed_at=moment)
        )
    repository.session.commit()

    summary = repository.get_execution_summary("summary", T0, T0 + timedelta(hours=1))

    assert summary.total_executions == 3
    assert summary.successful_executions == 2
    assert summary.failed_executions == 1
    assert summary.average_execution_time_ms == 150
    assert summary.deals_affected == 2
    assert summary.last_executed_at == T0 + timedelta(minutes=3)


def test_execution_summary_of_empty_window(repository: PipelineRuleRepository) -> None:
    _add_rule(repository, "quiet")

    summary = repository.get_execution_summary("quiet", T0, T0 + timedelta(days=1))

    assert summary.total_executions == 0
    assert summary.average_execution_time_ms == 0
    assert summary.deals_affected == 0
    assert summary.last_executed_at is None
