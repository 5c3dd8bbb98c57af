from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from importcrm import audit, events
from importcrm.context import get_rule_dispatch_depth
from importcrm.core.config import get_settings
from importcrm.core.database import Base
from importcrm.crm.models import CRMDeal, CRMNotificationIntent, CRMPipeline, CRMPipelineRule, CRMPipelineStage
from importcrm.crm.repositories import DealRepository, PipelineRepository, PipelineRuleRepository
from importcrm.crm.schemas import PipelineRuleCreate
from importcrm.crm.service import rule_dispatch_service

TENANT = "tenant-dispatch"


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


@pytest.fixture(autouse=True)
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setattr(events, "event_bus", events.InProcessEventBus())
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def dispatch_handler(db_session: Session) -> Generator[None, None, None]:
    def handler(event: events.InternalEvent) -> None:
        rule_dispatch_service.handle_deal_event(db_session, event.payload)

    for event_type in events.DEAL_EVENT_TYPES:
        events.event_bus.subscribe(event_type, handler)
    yield
    for event_type in events.DEAL_EVENT_TYPES:
        events.event_bus.unsubscribe(event_type, handler)


def _pipeline(session: Session, name: str) -> CRMPipeline:
    pipeline = PipelineRepository(session, TENANT).create(CRMPipeline(name=name))
    session.add(
        CRMPipelineStage(
            id=f"{pipeline.id}-stage-1",
            tenant_id=TENANT,
            pipeline_id=pipeline.id,
            name="New",
            position=1,
        )
    )
    session.commit()
    return pipeline


def _deal(session: Session, pipeline: CRMPipeline, title: str = "Acme Motors") -> CRMDeal:
    deal = DealRepository(session, TENANT).create(
        CRMDeal(title=title, pipeline_id=pipeline.id, stage_id=f"{pipeline.id}-stage-1", status="OPEN")
    )
    session.commit()
    return deal


def _rule(session: Session, rule_id: str, pipeline: CRMPipeline, trigger: str, actions: list[dict]) -> None:
    dto = PipelineRuleCreate(id=rule_id, name=rule_id, pipeline_id=pipeline.id, trigger=trigger, actions=actions)
    PipelineRuleRepository(session, TENANT).create(
        CRMPipelineRule(**dto.model_dump(mode="json", exclude={"id"}, exclude_none=True), id=rule_id)
    )
    session.commit()


def _deal_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(CRMDeal).where(CRMDeal.tenant_id == TENANT))


def test_self_spawning_rule_stops_at_max_dispatch_depth(
    db_session: Session,
    dispatch_handler: None,
    caplog: pytest.LogCaptureFixture,
) -> None:
    pipeline = _pipeline(db_session, "Loop")
    seed = _deal(db_session, pipeline)
    _rule(
        db_session,
        "loop-spawn",
        pipeline,
        "DEAL_CREATED",
        [{"type": "SPAWN_IN_PIPELINE", "parameters": {"pipeline_id": pipeline.id, "title_suffix": "+"}}],
    )

    results = rule_dispatch_service.handle_deal_event(
        db_session,
        events.build_deal_event(events.DEAL_CREATED, seed.id, pipeline_id=pipeline.id, tenant_id=TENANT),
    )

    assert len(results) == 1
    assert results[0].executed is True
    assert _deal_count(db_session) == 4
    titles = sorted(db_session.scalars(select(CRMDeal.title).where(CRMDeal.tenant_id == TENANT)))
    assert titles == ["Acme Motors", "Acme Motors+", "Acme Motors++", "Acme Motors+++"]

    created = [item for item in events.published_events if item["event_type"] == events.DEAL_CREATED]
    assert [item["meta"]["rule_dispatch_depth"] for item in created] == [1, 2, 3]

    blocked = audit.entries_for("crm.rule_dispatch")
    assert len(blocked) == 1
    assert blocked[0]["action"] == "crm.rule_dispatch.blocked"
    assert blocked[0]["after"]["dispatch_depth"] == 3
    assert blocked[0]["after"]["max_depth"] == 3
    assert blocked[0]["tenant_id"] == TENANT
    assert any(record.getMessage() == "rule_dispatch_blocked" for record in caplog.records)
    assert get_rule_dispatch_depth() is None


def test_lower_depth_limit_is_read_from_settings(
    db_session: Session,
    dispatch_handler: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RULES_MAX_DISPATCH_DEPTH", "1")
    get_settings.cache_clear()
    pipeline = _pipeline(db_session, "Loop")
    seed = _deal(db_session, pipeline)
    _rule(
        db_session,
        "loop-spawn",
        pipeline,
        "DEAL_CREATED",
        [{"type": "SPAWN_IN_PIPELINE", "parameters": {"pipeline_id": pipeline.id}}],
    )

    rule_dispatch_service.handle_deal_event(
        db_session,
        events.build_deal_event(events.DEAL_CREATED, seed.id, pipeline_id=pipeline.id, tenant_id=TENANT),
    )

    assert _deal_count(db_session) == 2
    assert len(audit.entries_for("crm.rule_dispatch")) == 1


def test_event_already_at_max_depth_is_blocked(db_session: Session) -> None:
    pipeline = _pipeline(db_session, "Sales")
    deal = _deal(db_session, pipeline)
    _rule(db_session, "notify", pipeline, "DEAL_MARKED_WON", [{"type": "SEND_NOTIFICATION", "parameters": {}}])
    envelope = events.build_deal_event(events.DEAL_MARKED_WON, deal.id, pipeline_id=pipeline.id, tenant_id=TENANT)
    envelope["meta"] = {"rule_dispatch_depth": 3}

    assert rule_dispatch_service.handle_deal_event(db_session, envelope) == []
    assert db_session.scalar(select(func.count()).select_from(CRMNotificationIntent)) == 0
    assert audit.entries_for("crm.rule_dispatch", envelope["event_id"])


def test_malformed_depth_is_treated_as_top_level(db_session: Session) -> None:
    pipeline = _pipeline(db_session, "Sales")
    deal = _deal(db_session, pipeline)
    _rule(db_session, "notify", pipeline, "DEAL_MARKED_WON", [{"type": "SEND_NOTIFICATION", "parameters": {}}])
    envelope = events.build_deal_event(events.DEAL_MARKED_WON, deal.id, pipeline_id=pipeline.id, tenant_id=TENANT)
    envelope["meta"] = {"rule_dispatch_depth": "not-a-number"}

    results = rule_dispatch_service.handle_deal_event(db_session, envelope)

    assert [result.rule_id for result in results] == ["notify"]
    assert audit.entries_for("crm.rule_dispatch") == []


def test_payload_fields_become_condition_metadata(db_session: Session) -> None:
    pipeline = _pipeline(db_session, "Sales")
    deal = _deal(db_session, pipeline)
    dto = PipelineRuleCreate(
        id="from-new",
        name="from-new",
        pipeline_id=pipeline.id,
        trigger="DEAL_STAGE_CHANGED",
        conditions=[{"field": "metadata.from_stage_id", "operator": "equals", "value": "stage-old"}],
        actions=[{"type": "SEND_NOTIFICATION", "parameters": {"message": "moved"}}],
    )
    PipelineRuleRepository(db_session, TENANT).create(
        CRMPipelineRule(**dto.model_dump(mode="json", exclude={"id"}, exclude_none=True), id="from-new")
    )
    db_session.commit()

    envelope = events.build_deal_event(
        events.DEAL_STAGE_CHANGED,
        deal.id,
        pipeline_id=pipeline.id,
        tenant_id=TENANT,
        payload={"from_stage_id": "stage-old", "to_stage_id": f"{pipeline.id}-stage-1"},
    )
    results = rule_dispatch_service.handle_deal_event(db_session, envelope)

    assert results[0].conditions_matched is True
    assert results[0].executed is True


def test_disabled_engine_ignores_events(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RULES_ENGINE_ENABLED", "false")
    get_settings.cache_clear()
    pipeline = _pipeline(db_session, "Sales")
    deal = _deal(db_session, pipeline)
    _rule(db_session, "notify", pipeline, "DEAL_MARKED_WON", [{"type": "SEND_NOTIFICATION", "parameters": {}}])

    envelope = events.build_deal_event(events.DEAL_MARKED_WON, deal.id, pipeline_id=pipeline.id, tenant_id=TENANT)

    assert rule_dispatch_service.handle_deal_event(db_session, envelope) == []
    assert db_session.scalar(select(func.count()).select_from(CRMNotificationIntent)) == 0


def test_unmapped_event_type_and_missing_deal_are_ignored(
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    unmapped = events.build_deal_event("crm.deal.archived", "deal-1", tenant_id=TENANT)
    missing = events.build_deal_event(events.DEAL_MARKED_WON, "deal-missing", tenant_id=TENANT)
    no_deal = {"event_type": events.DEAL_MARKED_WON, "tenant_id": TENANT, "payload": {}}

    assert rule_dispatch_service.handle_deal_event(db_session, unmapped) == []
    assert rule_dispatch_service.handle_deal_event(db_session, missing) == []
    assert rule_dispatch_service.handle_deal_event(db_session, no_deal) == []
    assert any(record.getMessage() == "rule_dispatch_deal_missing" for record in caplog.records)


def test_events_raised_by_rules_keep_the_correlation_id(db_session: Session, dispatch_handler: None) -> None:
    source = _pipeline(db_session, "Dealer Acquisition")
    target = _pipeline(db_session, "Dealer Integration")
    deal = _deal(db_session, source)
    _rule(
        db_session,
        "spawn",
        source,
        "DEAL_MARKED_WON",
        [{"type": "SPAWN_IN_PIPELINE", "parameters": {"pipeline_id": target.id}}],
    )
    _rule(
        db_session,
        "welcome",
        target,
        "DEAL_CREATED",
        [{"type": "SEND_NOTIFICATION", "parameters": {"message": "Welcome {{deal.title}}"}}],
    )
    envelope = events.build_deal_event(events.DEAL_MARKED_WON, deal.id, pipeline_id=source.id, tenant_id=TENANT)
    envelope["correlation_id"] = "corr-dispatch-1"

    rule_dispatch_service.handle_deal_event(db_session, envelope)

    created = [item for item in events.published_events if item["event_type"] == events.DEAL_CREATED]
    assert len(created) == 1
    assert created[0]["correlation_id"] == "corr-dispatch-1"
    assert created[0]["payload"]["original_deal_id"] == deal.id
    assert created[0]["payload"]["source_rule_id"] == "spawn"

    intent = db_session.scalars(select(CRMNotificationIntent)).one()
    assert intent.source_rule_id == "welcome"
    assert intent.deal_id == created[0]["payload"]["deal_id"]
    assert intent.message == "Welcome Acme Motors (Auto-spawned)"
