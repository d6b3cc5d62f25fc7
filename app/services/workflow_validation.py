"""
Inspection Workflow — Validation Evaluator

Runs validation rules against a transition context. Record-scope rules run
once, item-scope rules once per item (with the item merged into the
context), transition-scope rules only when a transition names them in
``validation_checks``. A rule runs only if all of its conditions hold.

Error-severity violations block a transition; warnings and infos are
advisory and travel back with the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.core.exceptions import ConfigInvalid
from app.services.workflow_conditions import TransitionContext, evaluate_condition, run_check
from app.services.workflow_rules import (
    Severity,
    TransitionRule,
    ValidationRule,
    ValidationScope,
    WorkflowConfig,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationViolation:
    rule_name: str
    severity: Severity
    message: str
    details: dict = field(default_factory=dict)
    item_id: int | None = None

    def to_dict(self) -> dict:
        d = {
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
        }
        if self.item_id is not None:
            d["item_id"] = self.item_id
        return d


@dataclass
class ValidationOutcome:
    errors: list[ValidationViolation] = field(default_factory=list)
    warnings: list[ValidationViolation] = field(default_factory=list)
    infos: list[ValidationViolation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, violation: ValidationViolation) -> None:
        if violation.severity == Severity.ERROR:
            self.errors.append(violation)
        elif violation.severity == Severity.WARNING:
            self.warnings.append(violation)
        else:
            self.infos.append(violation)

    @property
    def advisories(self) -> list[ValidationViolation]:
        return self.warnings + self.infos

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [v.to_dict() for v in self.errors],
            "warnings": [v.to_dict() for v in self.warnings],
            "infos": [v.to_dict() for v in self.infos],
        }


class _Placeholders(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def format_message(rule: ValidationRule, details: dict) -> str:
    if rule.severity == Severity.ERROR:
        template = rule.error_message or rule.warning_message
    else:
        template = rule.warning_message or rule.error_message
    template = template or f"Validation rule '{rule.rule_name}' failed"
    return template.format_map(_Placeholders(details))


def _conditions_hold(rule: ValidationRule, ctx: TransitionContext) -> bool:
    return all(evaluate_condition(c, ctx) for c in rule.conditions)


def _run_rule(rule: ValidationRule, ctx: TransitionContext, outcome: ValidationOutcome) -> None:
    if rule.scope == ValidationScope.ITEM:
        targets = [(ctx.for_item(item), item.get("id")) for item in ctx.items]
    else:
        targets = [(ctx, None)]

    for target_ctx, item_id in targets:
        if not _conditions_hold(rule, target_ctx):
            continue
        details = run_check(rule, target_ctx)
        if details is None:
            continue
        outcome.add(ValidationViolation(
            rule_name=rule.rule_name,
            severity=rule.severity,
            message=format_message(rule, details),
            details=details,
            item_id=item_id,
        ))


def evaluate(scope, ctx: TransitionContext, config: WorkflowConfig) -> ValidationOutcome:
    """Run every rule of *scope* whose conditions hold."""
    scope = ValidationScope(scope)
    outcome = ValidationOutcome()
    for rule in config.validation_rules:
        if rule.scope == scope:
            _run_rule(rule, ctx, outcome)
    return outcome


def evaluate_transition(
    rule: TransitionRule, ctx: TransitionContext, config: WorkflowConfig,
) -> ValidationOutcome:
    """Record and item rules plus the checks the transition names, each at most once."""
    outcome = ValidationOutcome()
    seen: set[str] = set()

    for vr in config.validation_rules:
        if vr.scope in (ValidationScope.RECORD, ValidationScope.ITEM) and vr.rule_name not in seen:
            seen.add(vr.rule_name)
            _run_rule(vr, ctx, outcome)

    for name in rule.validation_checks:
        if name in seen:
            continue
        vr = config.validation_rule(name)
        if vr is None:
            raise ConfigInvalid([f"transition '{rule.name}' names unknown validation check '{name}'"])
        seen.add(name)
        _run_rule(vr, ctx, outcome)

    if outcome.errors:
        logger.debug(
            "Transition %s blocked by %d validation error(s)", rule.name, len(outcome.errors),
            extra={"tenant_id": ctx.tenant_id, "inspection_id": ctx.inspection.get("id")},
        )
    return outcome
