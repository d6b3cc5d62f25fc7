"""
Inspection Workflow — Notification Seam

Delivery (SMS, email, push, in-app) belongs to an external collaborator that
implements ``NotificationDispatcher``. This module decides *what* to send:
it maps post-actions to notification events, filters the shop's notification
rules by their conditions, resolves recipients to users / the customer, and
hands each rule to the dispatcher. Dispatch failures are logged, never
raised into the workflow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from app.services.workflow_conditions import TransitionContext, evaluate_condition
from app.services.workflow_rules import (
    Action,
    InspectionState,
    Recipient,
    Role,
    WorkflowConfig,
)

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def dispatch(
        self,
        event: str,
        recipients: list[dict[str, Any]],
        channels: list[str],
        template: str,
        context: dict[str, Any],
    ) -> None: ...


class LoggingDispatcher:
    """Default dispatcher: records what would be sent."""

    def dispatch(self, event, recipients, channels, template, context):
        logger.info(
            "Notification %s → %d recipient(s) via %s (template=%s)",
            event, len(recipients), ",".join(channels), template,
            extra={
                "event_type": event,
                "tenant_id": context.get("tenant_id"),
                "inspection_id": context.get("inspection_id"),
            },
        )


# ── Action → event mapping ───────────────────────────────────────────────

ACTION_EVENTS = {
    Action.NOTIFY_ASSIGNMENT: "inspection_assigned",
    Action.NOTIFY_MANAGERS: "inspection_submitted_for_review",
    Action.SEND_SMS: "inspection_sent_to_customer",
}

TECHNICIAN_EVENTS = {
    InspectionState.APPROVED: "inspection_approved",
    InspectionState.REJECTED: "inspection_rejected",
    InspectionState.CHANGES_REQUESTED: "inspection_changes_requested",
}


def events_for_action(action: Action, ctx: TransitionContext) -> list[str]:
    """Notification events a post-action stands for (empty for non-notify actions)."""
    if action == Action.NOTIFY_TECHNICIAN:
        event = TECHNICIAN_EVENTS.get(ctx.to_state)
        return [event] if event else []
    events = [ACTION_EVENTS[action]] if action in ACTION_EVENTS else []
    if action == Action.NOTIFY_MANAGERS and ctx.critical_items:
        events.append("critical_items_found")
    return events


@dataclass
class PreparedNotification:
    event: str
    recipients: list[dict[str, Any]]
    channels: list[str]
    template: str
    context: dict[str, Any]


_ROLE_RECIPIENTS = {
    Recipient.SHOP_MANAGER: Role.SHOP_MANAGER,
    Recipient.ADMIN: Role.ADMIN,
    Recipient.OWNER: Role.OWNER,
}


class WorkflowNotifier:
    """Turns workflow events into dispatcher calls for one shop's rules."""

    def __init__(self, dispatcher: NotificationDispatcher | None = None, users_with_role=None):
        self.dispatcher = dispatcher or LoggingDispatcher()
        # (tenant_id, role) -> list of user ids; injected by the engine from its store.
        self._users_with_role = users_with_role or (lambda tenant_id, role: [])

    def _recipients(self, recipients, ctx: TransitionContext, extra: dict) -> list[dict]:
        resolved: list[dict] = []
        seen: set[int] = set()

        def add_user(user_id):
            if user_id is not None and user_id not in seen:
                seen.add(user_id)
                resolved.append({"type": "user", "id": user_id})

        for recipient in recipients:
            if recipient == Recipient.ASSIGNED_TECHNICIAN:
                add_user(ctx.inspection.get("assigned_technician_id"))
            elif recipient == Recipient.ASSIGNED_MANAGER:
                add_user((ctx.workflow or {}).get("assigned_to"))
            elif recipient == Recipient.ESCALATION_TARGET:
                add_user(extra.get("escalated_to") or (ctx.workflow or {}).get("escalated_to"))
            elif recipient == Recipient.CUSTOMER:
                phone = ctx.inspection.get("customer_phone")
                email = ctx.inspection.get("customer_email")
                if phone or email:
                    resolved.append({"type": "customer", "phone": phone, "email": email})
            else:
                for user_id in self._users_with_role(ctx.tenant_id, _ROLE_RECIPIENTS[recipient]):
                    add_user(user_id)
        return resolved

    def prepare(
        self,
        event: str,
        ctx: TransitionContext,
        config: WorkflowConfig,
        extra: dict | None = None,
    ) -> list[PreparedNotification]:
        """Match *event* against the shop's rules and resolve recipients.

        Condition evaluation and recipient lookups happen here, so a caller
        that must record a send exactly once can do so between ``prepare``
        and ``send``.
        """
        extra = extra or {}
        prepared = []
        for rule in config.notification_rules_for(event):
            if not all(evaluate_condition(c, ctx) for c in rule.conditions):
                continue
            recipients = self._recipients(rule.recipients, ctx, extra)
            if not recipients:
                logger.debug("Notification %s has no recipients", event,
                             extra={"tenant_id": ctx.tenant_id, "event_type": event})
                continue
            prepared.append(PreparedNotification(
                event=event,
                recipients=recipients,
                channels=[c.value for c in rule.channels],
                template=rule.template,
                context={
                    "tenant_id": ctx.tenant_id,
                    "inspection_id": ctx.inspection.get("id"),
                    "reference_number": ctx.inspection.get("reference_number"),
                    "status": ctx.inspection.get("status"),
                    "workflow_id": (ctx.workflow or {}).get("id"),
                    "delay_minutes": rule.delay_minutes,
                    **extra,
                },
            ))
        return prepared

    def send(self, prepared: list[PreparedNotification]) -> int:
        """Hand prepared notifications to the dispatcher. Never raises."""
        sent = 0
        for n in prepared:
            try:
                self.dispatcher.dispatch(n.event, n.recipients, n.channels, n.template, n.context)
                sent += 1
            except Exception:
                logger.warning("Notification dispatch failed for %s", n.event, exc_info=True,
                               extra={"tenant_id": n.context["tenant_id"], "event_type": n.event,
                                      "inspection_id": n.context["inspection_id"]})
        return sent

    def notify(
        self,
        event: str,
        ctx: TransitionContext,
        config: WorkflowConfig,
        extra: dict | None = None,
    ) -> int:
        """Dispatch every enabled rule for *event*. Returns the number of dispatches."""
        return self.send(self.prepare(event, ctx, config, extra))
