from __future__ import annotations

import copy
import logging
from typing import Any

from sqlalchemy.orm import Session

from importcrm.crm.models import CRMPipelineRule
from importcrm.crm.repositories import PipelineRepository, PipelineRuleRepository
from importcrm.crm.schemas import RuleActionType, RuleSeedReport, RuleSeedSkip, RuleTrigger, SeededRuleCreate
from importcrm.metrics import observe_rule_seed_skipped

logger = logging.getLogger("importcrm.rules.seed")

DEALER_ACQUISITION_PIPELINE = "Dealer Acquisition"
DEALER_INTEGRATION_PIPELINE = "Dealer Integration"

# Pipelines are referenced by name ("pipeline_name") and resolved to ids when seeding.
DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "id": "rule-dealer-won-spawn-integration",
        "name": "Dealer Acquisition Close Won → Spawn Integration",
        "description": (
            "When a deal is closed won in the Dealer Acquisition pipeline, "
            "spawn it into the Dealer Integration pipeline"
        ),
        "pipeline_name": DEALER_ACQUISITION_PIPELINE,
        "is_global": False,
        "trigger": RuleTrigger.DEAL_MARKED_WON,
        "conditions": [
            {
                "id": "cond-dealer-won-pipeline",
                "field": "pipeline.name",
                "operator": "equals",
                "value": DEALER_ACQUISITION_PIPELINE,
                "logical_operator": "AND",
            }
        ],
        "actions": [
            {
                "id": "act-dealer-won-spawn",
                "type": RuleActionType.SPAWN_IN_PIPELINE,
                "parameters": {
                    "pipeline_name": DEALER_INTEGRATION_PIPELINE,
                    "copy_fields": ["title", "amount", "currency", "organisation_id", "contact_id"],
                },
                "delay": 0,
                "order": 0,
            }
        ],
        "priority": 1,
        "execute_once": False,
        "cooldown_minutes": 0,
        "is_system": True,
        "is_migrated": True,
    },
    {
        "id": "rule-inactive-deal-notification",
        "name": "Inactive Deal Notification",
        "description": "Send a notification when a deal has been inactive for 7 days",
        "is_global": True,
        "trigger": RuleTrigger.DEAL_INACTIVE,
        "trigger_config": {"days_inactive": 7},
        "conditions": [],
        "actions": [
            {
                "id": "act-inactive-deal-notify",
                "type": RuleActionType.SEND_NOTIFICATION,
                "parameters": {
                    "message": "Deal {{deal.title}} has been inactive for 7 days",
                    "recipients": ["assignee", "manager"],
                },
                "delay": 0,
                "order": 0,
            }
        ],
        "priority": 10,
        "execute_once": False,
        "cooldown_minutes": 7 * 24 * 60,
        "is_system": False,
        "is_migrated": False,
    },
    {
        "id": "rule-require-lost-reason",
        "name": "Require Lost Reason",
        "description": "Require a lost reason when marking a deal as lost",
        "is_global": True,
        "trigger": RuleTrigger.DEAL_MARKED_LOST,
        "conditions": [],
        "actions": [
            {
                "id": "act-require-lost-reason",
                "type": RuleActionType.REQUIRE_LOST_REASON,
                "parameters": {},
                "delay": 0,
                "order": 0,
            }
        ],
        "priority": 1,
        "execute_once": False,
        "cooldown_minutes": 0,
        "is_system": True,
        "is_migrated": False,
    },
]


def _resolve_pipelines(template: dict[str, Any], pipelines: PipelineRepository) -> tuple[dict[str, Any], list[str]]:
    """Return the template with pipeline names swapped for ids, plus the names that did not resolve."""
    resolved = copy.deepcopy(template)
    missing: list[str] = []

    pipeline_name = resolved.pop("pipeline_name", None)
    if pipeline_name:
        pipeline = pipelines.get_by_name(pipeline_name)
        if pipeline is None:
            missing.append(pipeline_name)
        else:
            resolved["pipeline_id"] = pipeline.id

    for action in resolved.get("actions", []):
        parameters = action.get("parameters") or {}
        target_name = parameters.pop("pipeline_name", None)
        if not target_name:
            continue
        target = pipelines.get_by_name(target_name)
        if target is None:
            missing.append(target_name)
        else:
            parameters["pipeline_id"] = target.id

    return resolved, missing


def seed_default_rules(
    session: Session,
    *,
    tenant_id: str | None = None,
    actor_user_id: str = "system",
) -> RuleSeedReport:
    """Create the default rules a tenant is missing.

    Rules that already exist are left alone. Rules whose pipelines are not there yet are
    skipped with a warning and reported, so the seed can be re-run once they are.
    """
    rules = PipelineRuleRepository(session, tenant_id)
    pipelines = PipelineRepository(session, rules.tenant_id)
    report = RuleSeedReport()

    for template in DEFAULT_RULES:
        rule_id = template["id"]
        if rules.get(rule_id) is not None:
            report.skipped.append(RuleSeedSkip(rule_id=rule_id, reason="already_exists"))
            continue

        resolved, missing = _resolve_pipelines(template, pipelines)
        if missing:
            logger.warning(
                "rule_seed_pipeline_missing",
                extra={"rule_id": rule_id, "reason": "missing_pipeline", "error": ", ".join(missing)},
            )
            observe_rule_seed_skipped("missing_pipeline")
            report.skipped.append(RuleSeedSkip(rule_id=rule_id, reason=f"missing_pipeline: {', '.join(missing)}"))
            continue

        dto = SeededRuleCreate.model_validate(resolved)
        rules.create(
            CRMPipelineRule(
                **dto.model_dump(mode="json", exclude={"id"}, exclude_none=True),
                id=rule_id,
                created_by=actor_user_id,
                updated_by=actor_user_id,
            )
        )
        report.created.append(rule_id)

    session.commit()
    logger.info(
        "rule_seed_completed",
        extra={"reason": f"created={len(report.created)} skipped={len(report.skipped)}"},
    )
    return report
