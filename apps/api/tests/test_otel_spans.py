from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from importcrm import events
from importcrm.api.deps import get_current_user
from importcrm.core.config import get_settings
from importcrm.core.database import Base, get_db
from importcrm.crm.models import CRMDeal, CRMPipeline, CRMPipelineStage
from importcrm.crm.repositories import DealRepository, PipelineRepository
from importcrm.main import app
from importcrm.otel import setup_inmemory_otel
from importcrm.rbac.context import ActorUser
from importcrm.rbac.permissions import SystemRole

TENANT = "tenant-otel"


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setattr(events, "event_bus", events.InProcessEventBus())
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id=TENANT,
            system_role=SystemRole.ADMIN,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _deal(session: Session) -> CRMDeal:
    pipeline = PipelineRepository(session, TENANT).create(CRMPipeline(name="OTel Pipeline"))
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
    deal = DealRepository(session, TENANT).create(
        CRMDeal(title="OTel Deal", pipeline_id=pipeline.id, stage_id=f"{pipeline.id}-stage-1", currency="USD")
    )
    session.commit()
    return deal


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/crm/rules", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_rule_span_contains_rule_deal_and_outcome(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    deal = _deal(db_session)
    rule = client.post(
        "/api/crm/rules",
        json={
            "name": "EUR only",
            "is_global": True,
            "trigger": "DEAL_MARKED_WON",
            "conditions": [{"field": "deal.currency", "operator": "equals", "value": "EUR"}],
            "actions": [{"type": "SEND_NOTIFICATION"}],
        },
    )
    assert rule.status_code == 201

    evaluated = client.post(
        "/api/crm/rules/evaluate",
        json={"trigger": "DEAL_MARKED_WON", "deal_id": deal.id},
        headers={"X-Correlation-Id": "otel-rule-corr-1"},
    )
    assert evaluated.status_code == 200
    assert evaluated.json()[0]["conditions_matched"] is False

    rule_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.rule.evaluate"]
    assert rule_spans
    assert any(
        span.attributes.get("crm.rule.id") == rule.json()["id"]
        and span.attributes.get("crm.deal.id") == deal.id
        and span.attributes.get("crm.rule.trigger") == "DEAL_MARKED_WON"
        and span.attributes.get("crm.rule.outcome") == "not_matched"
        for span in rule_spans
    )
