from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_rule_evaluations_total = Counter(
    "crm_rule_evaluations_total",
    "Pipeline rule evaluations by trigger and outcome",
    ["trigger", "outcome"],
)

crm_rule_execution_duration_seconds = Histogram(
    "crm_rule_execution_duration_seconds",
    "Pipeline rule evaluation duration in seconds",
    ["trigger"],
)

crm_rule_actions_total = Counter(
    "crm_rule_actions_total",
    "Pipeline rule actions by type and outcome",
    ["action_type", "outcome"],
)

crm_rule_dispatch_blocks_total = Counter(
    "crm_rule_dispatch_blocks_total",
    "Deal events not dispatched into the rule engine, by reason",
    ["reason"],
)

crm_rule_seed_skipped_total = Counter(
    "crm_rule_seed_skipped_total",
    "Default rules skipped during seeding, by reason",
    ["reason"],
)

rbac_access_denied_total = Counter(
    "rbac_access_denied_total",
    "Entity access checks denied by RBAC",
    ["entity_type", "action"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rule_evaluation(trigger: str, outcome: str, duration: float | None = None) -> None:
    crm_rule_evaluations_total.labels(trigger=trigger, outcome=outcome).inc()
    if duration is not None:
        crm_rule_execution_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_rule_action(action_type: str, outcome: str) -> None:
    crm_rule_actions_total.labels(action_type=action_type, outcome=outcome).inc()


def observe_rule_dispatch_block(reason: str) -> None:
    crm_rule_dispatch_blocks_total.labels(reason=reason).inc()


def observe_rule_seed_skipped(reason: str) -> None:
    crm_rule_seed_skipped_total.labels(reason=reason).inc()


def observe_rbac_denied(entity_type: str, action: str) -> None:
    rbac_access_denied_total.labels(entity_type=entity_type, action=action).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
