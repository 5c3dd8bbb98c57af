from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from importcrm.context import get_correlation_id, get_rule_dispatch_depth, get_tenant_id

DEAL_CREATED = "crm.deal.created"
DEAL_STAGE_CHANGED = "crm.deal.stage_changed"
DEAL_MARKED_WON = "crm.deal.marked_won"
DEAL_MARKED_LOST = "crm.deal.marked_lost"
DEAL_INACTIVE = "crm.deal.inactive"

DEAL_EVENT_TYPES = (
    DEAL_CREATED,
    DEAL_STAGE_CHANGED,
    DEAL_MARKED_WON,
    DEAL_MARKED_LOST,
    DEAL_INACTIVE,
)


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out; handlers run on the publisher's thread in subscription order."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)


event_bus = InProcessEventBus()
published_events: list[dict[str, Any]] = []


def build_deal_event(
    event_type: str,
    deal_id: str,
    *,
    pipeline_id: str | None = None,
    actor_user_id: str | None = None,
    tenant_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"deal_id": deal_id}
    if pipeline_id is not None:
        body["pipeline_id"] = pipeline_id
    if payload:
        body.update(payload)
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id or "system",
        "tenant_id": tenant_id or get_tenant_id(),
        "version": 1,
        "payload": body,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    dispatch_depth = get_rule_dispatch_depth()
    if dispatch_depth is not None and "rule_dispatch_depth" not in meta:
        meta["rule_dispatch_depth"] = dispatch_depth
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
