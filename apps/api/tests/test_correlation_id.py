from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from importcrm import audit, events
from importcrm.api.deps import get_current_user
from importcrm.core.config import get_settings
from importcrm.core.database import Base, get_db
from importcrm.crm.models import CRMDeal, CRMPipeline, CRMPipelineStage
from importcrm.crm.repositories import DealRepository, PipelineRepository
from importcrm.main import app
from importcrm.rbac.context import ActorUser
from importcrm.rbac.permissions import SystemRole

TENANT = "tenant-corr"


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


def _spawn_setup(session: Session) -> CRMDeal:
    pipelines = PipelineRepository(session, TENANT)
    source = pipelines.create(CRMPipeline(name="Dealer Acquisition"))
    target = pipelines.create(CRMPipeline(name="Dealer Integration"))
    for pipeline in (source, target):
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
        CRMDeal(title="Corr Deal", pipeline_id=source.id, stage_id=f"{source.id}-stage-1", status="WON")
    )
    session.commit()
    return deal


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/crm/rules/rule-missing")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "crm_rule_get_failed"
    assert body["message"] == "rule not found"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/crm/rules/rule-missing", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_truncated(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 300})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "x" * 128


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/rules",
        json={
            "name": "Corr rule",
            "is_global": True,
            "trigger": "DEAL_MARKED_LOST",
            "actions": [{"type": "REQUIRE_LOST_REASON"}],
        },
        headers={"X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    rule_audits = audit.entries_for("crm.pipeline_rule", response.json()["id"])
    assert rule_audits
    assert rule_audits[-1]["correlation_id"] == "corr-audit-1"
    assert rule_audits[-1]["tenant_id"] == TENANT


def test_event_envelope_includes_correlation_id(client: TestClient, db_session: Session) -> None:
    deal = _spawn_setup(db_session)
    target = PipelineRepository(db_session, TENANT).get_by_name("Dealer Integration")
    created = client.post(
        "/api/crm/rules",
        json={
            "name": "Spawn",
            "is_global": True,
            "trigger": "DEAL_MARKED_WON",
            "actions": [{"type": "SPAWN_IN_PIPELINE", "parameters": {"pipeline_id": target.id}}],
        },
    )
    assert created.status_code == 201

    response = client.post(
        "/api/crm/rules/evaluate",
        json={"trigger": "DEAL_MARKED_WON", "deal_id": deal.id},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200
    assert response.json()[0]["executed"] is True

    created_events = [item for item in events.published_events if item.get("event_type") == events.DEAL_CREATED]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    assert "meta" not in created_events[-1]
