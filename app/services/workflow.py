"""
Module-level entry points into the inspection workflow.

The engine, config service and escalation service are built once by
``create_app`` and kept in ``app.extensions``; these functions resolve them
from the current application so callers never wire them by hand.

Usage:
    from app.services import workflow
    result = workflow.attempt_transition(42, "pending_review", principal)
"""

from __future__ import annotations

from flask import current_app

from app.services.workflow_conditions import AuthorizationContext


def _ext(name: str):
    return current_app.extensions[name]


def attempt_transition(inspection_id: int, to_state, principal: AuthorizationContext, payload: dict | None = None):
    return _ext("workflow_engine").attempt_transition(inspection_id, to_state, principal, payload)


def resolve_config(tenant_id: int):
    return _ext("workflow_config").resolve(tenant_id)


def run_escalation_sweep(now=None):
    return _ext("escalation_service").run_escalation_sweep(now)


def get_history(inspection_id: int, principal: AuthorizationContext | None = None) -> list[dict]:
    return _ext("workflow_engine").get_history(inspection_id, principal)


def get_available_transitions(inspection_id: int, principal: AuthorizationContext) -> list[dict]:
    return _ext("workflow_engine").get_available_transitions(inspection_id, principal)


def start_review(workflow_id: int, principal: AuthorizationContext) -> dict:
    return _ext("workflow_engine").start_review(workflow_id, principal)
