from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from importcrm.api.routes import router as api_router
from importcrm.core.config import get_settings
from importcrm.core.database import SessionLocal, get_db
from importcrm.crm.seed import seed_default_rules
from importcrm.crm.service import rule_dispatch_service
from importcrm.events import DEAL_EVENT_TYPES, InternalEvent, event_bus
from importcrm.logging import configure_logging
from importcrm.middleware.correlation_id import CorrelationIdMiddleware
from importcrm.middleware.request_logging import RequestLoggingMiddleware
from importcrm.otel import get_fastapi_server_request_hook, setup_otel
from importcrm.rbac.seed import seed_system_roles


configure_logging()
logger = logging.getLogger("importcrm.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


@contextmanager
def _rule_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_deal_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    try:
        with _rule_session_scope() as session:
            rule_dispatch_service.handle_deal_event(session, envelope)
    except Exception as exc:
        logger.exception("rule_dispatch_failed", extra={"event_type": event.name, "error": str(exc)})


def _seed_on_startup() -> None:
    settings = get_settings()
    try:
        with _rule_session_scope() as session:
            seed_system_roles(session, tenant_id=settings.default_tenant_id)
            report = seed_default_rules(session, tenant_id=settings.default_tenant_id)
        logger.info(
            "startup_seed_completed",
            extra={"reason": f"created={len(report.created)} skipped={len(report.skipped)}"},
        )
    except Exception as exc:
        logger.exception("startup_seed_failed", extra={"error": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in DEAL_EVENT_TYPES:
            event_bus.subscribe(event_name, _on_deal_event)
        _subscriptions_registered = True
    if get_settings().rules_seed_on_startup:
        _seed_on_startup()
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(enable=True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
