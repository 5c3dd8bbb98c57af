from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from importcrm import events
from importcrm.api.deps import get_current_user as actor_get_current_user
from importcrm.core.auth import AuthUser, get_current_user as auth_get_current_user
from importcrm.core.config import get_settings
from importcrm.core.database import Base, get_db
from importcrm.crm.models import CRMDeal, CRMPipeline, CRMPipelineStage
from importcrm.crm.repositories import DealRepository, PipelineRepository
from importcrm.main import app
from importcrm.rbac.context import ActorUser
from importcrm.rbac.permissions import SystemRole

TENANT = "tenant-metrics"


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setattr(events, "event_bus", events.InProcessEventBus())
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def auth_roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, auth_roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_actor() -> ActorUser:
        return ActorUser(user_id="metrics-admin", tenant_id=TENANT, system_role=SystemRole.ADMIN)

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=list(auth_roles), tenant_id=TENANT)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[actor_get_current_user] = override_actor
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _deal(session: Session) -> CRMDeal:
    pipeline = PipelineRepository(session, TENANT).create(CRMPipeline(name="Metrics Pipeline"))
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
        CRMDeal(title="Metrics Deal", pipeline_id=pipeline.id, stage_id=f"{pipeline.id}-stage-1")
    )
    session.commit()
    return deal


def test_metrics_endpoint_exposes_http_and_rule_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["service"] == "ImportCRM API"

    deal = _deal(db_session)
    rule = client.post(
        "/api/crm/rules",
        json={
            "name": "Metrics rule",
            "is_global": True,
            "trigger": "DEAL_STAGE_CHANGED",
            "actions": [
                {"type": "SEND_NOTIFICATION", "parameters": {"message": "moved"}},
                {"type": "SEND_NOTIFICATION", "delay": 30, "parameters": {"message": "later"}},
            ],
        },
    )
    assert rule.status_code == 201

    evaluated = client.post(
        "/api/crm/rules/evaluate",
        json={"trigger": "DEAL_STAGE_CHANGED", "deal_id": deal.id},
    )
    assert evaluated.status_code == 200
    missing = client.get("/api/crm/rules/rule-missing")
    assert missing.status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_rule_evaluations_total" in body
    assert "crm_rule_execution_duration_seconds" in body
    assert "crm_rule_actions_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/rules/evaluate"' in body
    assert 'path="/api/crm/rules/{id}"' in body
    assert 'trigger="DEAL_STAGE_CHANGED"' in body
    assert 'outcome="executed"' in body
    assert 'action_type="SEND_NOTIFICATION",outcome="deferred"' in body


def test_denied_access_is_counted(client: TestClient) -> None:
    app.dependency_overrides[actor_get_current_user] = lambda: ActorUser(
        user_id="metrics-junior",
        tenant_id=TENANT,
        system_role=SystemRole.JUNIOR_SALES_MANAGER,
    )

    denied = client.post(
        "/api/crm/rules",
        json={"name": "Nope", "is_global": True, "trigger": "DEAL_CREATED", "actions": [{"type": "REQUIRE_LOST_REASON"}]},
    )
    assert denied.status_code == 403

    body = client.get("/metrics").text
    assert 'rbac_access_denied_total{entity_type="pipelines",action="can_create"}' in body


@pytest.mark.parametrize("auth_roles", [["user"]])
def test_metrics_require_permission(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
