"""
Inspection Workflow — Rule Store

Typed, immutable rule records for the inspection workflow and the default
rule set every shop starts from. A shop can layer an override on top
(extra transitions, business rule scalars, custom validation / timeout /
escalation rules, disabled notifications); the merge lives in
``app.services.workflow_config``.

Every identifier that appears in a rule (states, roles, conditions, actions,
validation logic, channels) is a closed enumeration. Parsing a dict with an
unknown identifier collects an error and ends in ``ConfigInvalid``; there is
no silent "unknown condition means true".

Usage:
    from app.services.workflow_rules import DEFAULT_WORKFLOW_CONFIG, InspectionState

    rule = DEFAULT_WORKFLOW_CONFIG.transition_for(
        InspectionState.PENDING_REVIEW, InspectionState.APPROVED,
    )
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import Any, Mapping

from app.core.exceptions import ConfigInvalid


# ═════════════════════════════════════════════════════════════════════════════
# Enumerations
# ═════════════════════════════════════════════════════════════════════════════

class InspectionState(str, Enum):
    """Coarse-grained lifecycle state of the inspection itself."""
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"
    SENT_TO_CUSTOMER = "sent_to_customer"
    COMPLETED = "completed"


# States every shop's transition graph must contain and reach from draft.
CANONICAL_STATES = (
    InspectionState.DRAFT,
    InspectionState.IN_PROGRESS,
    InspectionState.PENDING_REVIEW,
    InspectionState.APPROVED,
    InspectionState.REJECTED,
    InspectionState.CHANGES_REQUESTED,
    InspectionState.SENT_TO_CUSTOMER,
    InspectionState.COMPLETED,
)


class WorkflowStatus(str, Enum):
    """Status of the manager-review record (ApprovalWorkflow)."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


# Review outcome written to the workflow record when the inspection enters
# one of these states from pending_review.
REVIEW_OUTCOMES = {
    InspectionState.APPROVED: WorkflowStatus.APPROVED,
    InspectionState.REJECTED: WorkflowStatus.REJECTED,
    InspectionState.CHANGES_REQUESTED: WorkflowStatus.CHANGES_REQUESTED,
}


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_ORDER = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.NORMAL: 3,
    Priority.LOW: 4,
}

URGENCY_TO_PRIORITY = {
    "low": Priority.LOW,
    "medium": Priority.NORMAL,
    "high": Priority.HIGH,
    "critical": Priority.URGENT,
}


class Role(str, Enum):
    MECHANIC = "mechanic"
    SHOP_MANAGER = "shop_manager"
    SENIOR_MANAGER = "senior_manager"
    OWNER = "owner"
    ADMIN = "admin"
    SYSTEM = "system"


# Reviewer auto-assignment order when the submitter names no assignee.
REVIEWER_ROLES = (Role.SHOP_MANAGER, Role.SENIOR_MANAGER, Role.OWNER)


class Condition(str, Enum):
    """Named predicates over a transition context."""
    HAS_ITEMS = "has_items"
    ALL_ITEMS_ASSESSED = "all_items_assessed"
    HAS_ASSIGNED_TECHNICIAN = "has_assigned_technician"
    HAS_PHOTOS = "has_photos"
    HAS_VOICE_NOTES = "has_voice_notes"
    HAS_CRITICAL_ITEMS = "has_critical_items"
    MANAGER_REVIEW_NOTES = "manager_review_notes"
    REJECTION_REASON = "rejection_reason"
    REQUESTED_CHANGES = "requested_changes"
    REVISION_NOTES = "revision_notes"
    CUSTOMER_CONTACT_INFO = "customer_contact_info"
    CUSTOMER_VIEWED = "customer_viewed"
    CUSTOMER_VIEWED_REPORT = "customer_viewed_report"
    NO_CRITICAL_ITEMS_AND_AUTO_APPROVE_ENABLED = "no_critical_items_and_auto_approve_enabled"
    INSPECTION_DURATION_EXCEEDED = "inspection_duration_exceeded"
    INSPECTION_IN_PROGRESS_OVER_LIMIT = "inspection_in_progress_over_limit"
    AUTO_NOTIFY_ENABLED = "auto_notify_enabled"
    AUTO_COMPLETE_AFTER_DAYS = "auto_complete_after_days"
    TECHNICIAN_WANTS_NOTIFICATIONS = "technician_wants_notifications"
    STATE_TRANSITION_TO_PENDING_REVIEW = "state_transition_to_pending_review"
    CONDITION_IS_NEEDS_IMMEDIATE = "condition_is_needs_immediate"
    HAS_COST_ESTIMATE = "has_cost_estimate"
    HAS_MEASUREMENTS = "has_measurements"
    HAS_ODOMETER_READING = "has_odometer_reading"


class Action(str, Enum):
    """Named side-effect hooks attached to a transition."""
    LOCK_VEHICLE = "lock_vehicle"
    UNLOCK_VEHICLE = "unlock_vehicle"
    START_TIMER = "start_timer"
    CALCULATE_URGENCY = "calculate_urgency"
    GENERATE_SUMMARY = "generate_summary"
    FINAL_VALIDATION = "final_validation"
    LOG_REJECTION = "log_rejection"
    CLEAR_REJECTION = "clear_rejection"
    GENERATE_CUSTOMER_LINK = "generate_customer_link"
    RECORD_COMPLETION = "record_completion"
    NOTIFY_ASSIGNMENT = "notify_assignment"
    NOTIFY_MANAGERS = "notify_managers"
    NOTIFY_TECHNICIAN = "notify_technician"
    PREPARE_CUSTOMER_REPORT = "prepare_customer_report"
    REOPEN_FOR_EDITING = "reopen_for_editing"
    SEND_SMS = "send_sms"
    LOG_CUSTOMER_NOTIFICATION = "log_customer_notification"
    ARCHIVE_INSPECTION = "archive_inspection"
    UPDATE_CUSTOMER_HISTORY = "update_customer_history"


class AutoAction(str, Enum):
    """What a timeout rule does once its threshold is crossed."""
    FLAG_FOR_REVIEW = "flag_for_review"
    AUTO_APPROVE_IF_NO_CRITICAL = "auto_approve_if_no_critical"
    SEND_TO_CUSTOMER = "send_to_customer"
    COMPLETE = "complete"


class EscalationAction(str, Enum):
    """Who gets told when a timeout threshold is crossed."""
    NOTIFY_MANAGER = "notify_manager"
    ESCALATE_TO_ADMIN = "escalate_to_admin"
    AUTO_SEND_TO_CUSTOMER = "auto_send_to_customer"


class ValidationScope(str, Enum):
    RECORD = "record"
    ITEM = "item"
    TRANSITION = "transition"

    @classmethod
    def _missing_(cls, value):
        # Older rule sets call the record scope "inspection".
        if value == "inspection":
            return cls.RECORD
        return None


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationLogic(str, Enum):
    CHECK_MANDATORY_CATEGORIES_EXIST = "check_mandatory_categories_exist"
    CHECK_MINIMUM_ITEM_COUNT = "check_minimum_item_count"
    CHECK_ALL_ITEMS_HAVE_CONDITION = "check_all_items_have_condition"
    CHECK_CRITICAL_ITEM_DOCUMENTATION = "check_critical_item_documentation"
    CHECK_COST_ESTIMATE_RANGE = "check_cost_estimate_range"
    VALIDATE_MEASUREMENT_RANGES = "validate_measurement_ranges"
    CHECK_ODOMETER_PROGRESSION = "check_odometer_progression"
    CHECK_VEHICLE_AVAILABLE = "check_vehicle_available"
    CHECK_NO_BLOCKING_CRITICAL_ITEMS = "check_no_blocking_critical_items"
    CHECK_NOT_SELF_APPROVAL = "check_not_self_approval"
    CHECK_CUSTOMER_PHONE_PRESENT = "check_customer_phone_present"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


class Recipient(str, Enum):
    ASSIGNED_TECHNICIAN = "assigned_technician"
    ASSIGNED_MANAGER = "assigned_manager"
    ESCALATION_TARGET = "escalation_target"
    SHOP_MANAGER = "shop_manager"
    ADMIN = "admin"
    OWNER = "owner"
    CUSTOMER = "customer"


# ═════════════════════════════════════════════════════════════════════════════
# Rule records
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AutoTrigger:
    condition: Condition
    delay_minutes: int = 0
    requires_confirmation: bool = False


@dataclass(frozen=True)
class TransitionRule:
    """One guarded edge of the inspection lifecycle graph."""
    name: str
    from_state: InspectionState
    to_state: InspectionState
    allowed_roles: frozenset[Role]
    required_conditions: tuple[Condition, ...] = ()
    optional_conditions: tuple[Condition, ...] = ()
    validation_checks: tuple[str, ...] = ()
    pre_actions: tuple[Action, ...] = ()
    post_actions: tuple[Action, ...] = ()
    auto_triggers: tuple[AutoTrigger, ...] = ()
    history_action: str | None = None

    @property
    def key(self) -> tuple[InspectionState, InspectionState]:
        return (self.from_state, self.to_state)

    @property
    def audit_action(self) -> str:
        """Action name written to the history trail."""
        return self.history_action or self.to_state.value


@dataclass(frozen=True)
class NotificationRule:
    trigger_event: str
    recipients: tuple[Recipient, ...]
    channels: tuple[Channel, ...]
    template: str
    delay_minutes: int = 0
    conditions: tuple[Condition, ...] = ()


@dataclass(frozen=True)
class ValidationRule:
    rule_name: str
    scope: ValidationScope
    validation_logic: ValidationLogic
    severity: Severity
    conditions: tuple[Condition, ...] = ()
    error_message: str = ""
    warning_message: str = ""
    params: Mapping[str, Any] = field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.severity == Severity.ERROR


@dataclass(frozen=True)
class TimeoutRule:
    state: InspectionState
    timeout_minutes: int
    escalation_action: EscalationAction | None = None
    notify_before_minutes: tuple[int, ...] = ()
    auto_action: AutoAction | None = None


@dataclass(frozen=True)
class EscalationRule:
    priority: Priority
    threshold_minutes: int
    escalate_to_role: Role
    notify_immediately: bool = False


@dataclass(frozen=True)
class BusinessRules:
    """Per-shop scalars. An override replaces individual fields."""

    # Timing constraints
    max_inspection_duration_minutes: int = 120
    max_in_progress_hours: int = 4
    max_pending_review_hours: int = 24

    # Approval requirements
    require_manager_approval_for_critical: bool = True
    require_manager_approval_threshold: int = 1
    allow_self_approval: bool = False
    auto_approve_enabled: bool = False

    # Quality gates
    mandatory_categories: tuple[str, ...] = ("Brakes", "Tires", "Lights")
    min_items_required: int = 5
    require_all_items_assessed: bool = True

    # Concurrent editing / review claim
    allow_concurrent_editing: bool = False
    lock_timeout_minutes: int = 15

    # Auto-progression
    auto_calculate_urgency: bool = True
    auto_transition_on_complete: bool = True
    auto_notify_customer: bool = True

    # Cost and estimation
    require_cost_estimates: bool = False
    max_estimate_without_approval: float = 500
    min_cost_estimate: float = 5
    max_cost_estimate: float = 5000

    # Photo and voice requirements
    min_photos_per_critical_item: int = 1
    require_voice_notes_for_critical: bool = False

    # Odometer sanity
    max_odometer_jump: int = 50000


@dataclass(frozen=True)
class WorkflowConfig:
    """Effective rule set for one shop. Never mutated after construction."""
    business_rules: BusinessRules
    transitions: tuple[TransitionRule, ...]
    notifications: tuple[NotificationRule, ...]
    validation_rules: tuple[ValidationRule, ...]
    timeout_rules: tuple[TimeoutRule, ...]
    escalation_rules: tuple[EscalationRule, ...]

    @cached_property
    def _transition_index(self) -> Mapping[tuple[InspectionState, InspectionState], TransitionRule]:
        index = {}
        for rule in self.transitions:
            index.setdefault(rule.key, rule)
        return MappingProxyType(index)

    @cached_property
    def _validation_index(self) -> Mapping[str, ValidationRule]:
        return MappingProxyType({r.rule_name: r for r in self.validation_rules})

    def transition_for(self, from_state, to_state) -> TransitionRule | None:
        return self._transition_index.get((InspectionState(from_state), InspectionState(to_state)))

    def transitions_from(self, state) -> list[TransitionRule]:
        state = InspectionState(state)
        return [r for r in self.transitions if r.from_state == state]

    def validation_rule(self, name: str) -> ValidationRule | None:
        return self._validation_index.get(name)

    def timeout_rule_for(self, state) -> TimeoutRule | None:
        state = InspectionState(state)
        return next((r for r in self.timeout_rules if r.state == state), None)

    def escalation_rule_for(self, priority) -> EscalationRule | None:
        priority = Priority(priority)
        return next((r for r in self.escalation_rules if r.priority == priority), None)

    def notification_rules_for(self, event: str) -> list[NotificationRule]:
        return [n for n in self.notifications if n.trigger_event == event]


@dataclass(frozen=True)
class TenantOverride:
    """Shop-specific fragments layered over the default rule set."""
    tenant_id: int
    business_rules: Mapping[str, Any] = field(default_factory=dict)
    extra_transitions: tuple[TransitionRule, ...] = ()
    disabled_notifications: tuple[str, ...] = ()
    custom_validation_rules: tuple[ValidationRule, ...] = ()
    custom_timeout_rules: tuple[TimeoutRule, ...] = ()
    custom_escalation_rules: tuple[EscalationRule, ...] = ()
    version: int | None = None


# ═════════════════════════════════════════════════════════════════════════════
# Default rule set
# ═════════════════════════════════════════════════════════════════════════════

_S = InspectionState
_R = Role
_C = Condition
_A = Action

_MECHANIC_PLUS = frozenset({_R.MECHANIC, _R.SHOP_MANAGER, _R.ADMIN})
_MANAGERS = frozenset({_R.SHOP_MANAGER, _R.SENIOR_MANAGER, _R.OWNER, _R.ADMIN})

DEFAULT_TRANSITIONS: tuple[TransitionRule, ...] = (
    TransitionRule(
        name="submit",
        from_state=_S.DRAFT,
        to_state=_S.IN_PROGRESS,
        allowed_roles=_MECHANIC_PLUS,
        optional_conditions=(_C.HAS_ASSIGNED_TECHNICIAN,),
        validation_checks=("vehicle_available",),
        pre_actions=(_A.LOCK_VEHICLE, _A.START_TIMER),
        post_actions=(_A.NOTIFY_ASSIGNMENT,),
        history_action="started",
    ),
    TransitionRule(
        name="submit_for_review",
        from_state=_S.IN_PROGRESS,
        to_state=_S.PENDING_REVIEW,
        allowed_roles=_MECHANIC_PLUS,
        required_conditions=(_C.HAS_ITEMS, _C.ALL_ITEMS_ASSESSED),
        optional_conditions=(_C.HAS_PHOTOS, _C.HAS_VOICE_NOTES),
        validation_checks=("mandatory_categories_present", "min_items_required"),
        pre_actions=(_A.CALCULATE_URGENCY, _A.GENERATE_SUMMARY),
        post_actions=(_A.NOTIFY_MANAGERS, _A.UNLOCK_VEHICLE),
        auto_triggers=(
            AutoTrigger(_C.INSPECTION_DURATION_EXCEEDED, delay_minutes=0, requires_confirmation=True),
        ),
        history_action="submitted",
    ),
    TransitionRule(
        name="approve",
        from_state=_S.PENDING_REVIEW,
        to_state=_S.APPROVED,
        allowed_roles=_MANAGERS | {_R.SYSTEM},
        optional_conditions=(_C.MANAGER_REVIEW_NOTES,),
        validation_checks=("no_blocking_critical_items", "no_self_approval"),
        pre_actions=(_A.FINAL_VALIDATION,),
        post_actions=(_A.PREPARE_CUSTOMER_REPORT, _A.NOTIFY_TECHNICIAN),
        auto_triggers=(
            AutoTrigger(_C.NO_CRITICAL_ITEMS_AND_AUTO_APPROVE_ENABLED, delay_minutes=30),
        ),
    ),
    TransitionRule(
        name="reject",
        from_state=_S.PENDING_REVIEW,
        to_state=_S.REJECTED,
        allowed_roles=_MANAGERS,
        required_conditions=(_C.REJECTION_REASON,),
        pre_actions=(_A.LOG_REJECTION,),
        post_actions=(_A.NOTIFY_TECHNICIAN, _A.REOPEN_FOR_EDITING),
    ),
    TransitionRule(
        name="request_changes",
        from_state=_S.PENDING_REVIEW,
        to_state=_S.CHANGES_REQUESTED,
        allowed_roles=_MANAGERS,
        required_conditions=(_C.REQUESTED_CHANGES,),
        optional_conditions=(_C.MANAGER_REVIEW_NOTES,),
        post_actions=(_A.NOTIFY_TECHNICIAN, _A.REOPEN_FOR_EDITING),
    ),
    TransitionRule(
        name="resume",
        from_state=_S.REJECTED,
        to_state=_S.IN_PROGRESS,
        allowed_roles=_MECHANIC_PLUS,
        optional_conditions=(_C.REVISION_NOTES,),
        pre_actions=(_A.CLEAR_REJECTION, _A.LOCK_VEHICLE),
        post_actions=(_A.NOTIFY_ASSIGNMENT,),
        history_action="resumed",
    ),
    TransitionRule(
        name="resume",
        from_state=_S.CHANGES_REQUESTED,
        to_state=_S.IN_PROGRESS,
        allowed_roles=_MECHANIC_PLUS,
        optional_conditions=(_C.REVISION_NOTES,),
        pre_actions=(_A.LOCK_VEHICLE,),
        post_actions=(_A.NOTIFY_ASSIGNMENT,),
        history_action="resumed",
    ),
    TransitionRule(
        name="send",
        from_state=_S.APPROVED,
        to_state=_S.SENT_TO_CUSTOMER,
        allowed_roles=_MANAGERS | {_R.SYSTEM},
        required_conditions=(_C.CUSTOMER_CONTACT_INFO,),
        validation_checks=("customer_phone_present",),
        pre_actions=(_A.GENERATE_CUSTOMER_LINK,),
        post_actions=(_A.SEND_SMS, _A.LOG_CUSTOMER_NOTIFICATION),
        auto_triggers=(
            AutoTrigger(_C.AUTO_NOTIFY_ENABLED, delay_minutes=10),
        ),
    ),
    TransitionRule(
        name="complete",
        from_state=_S.SENT_TO_CUSTOMER,
        to_state=_S.COMPLETED,
        allowed_roles=_MANAGERS | {_R.SYSTEM},
        optional_conditions=(_C.CUSTOMER_VIEWED,),
        pre_actions=(_A.RECORD_COMPLETION,),
        post_actions=(_A.ARCHIVE_INSPECTION, _A.UPDATE_CUSTOMER_HISTORY),
        auto_triggers=(
            AutoTrigger(_C.CUSTOMER_VIEWED_REPORT, delay_minutes=0),
            AutoTrigger(_C.AUTO_COMPLETE_AFTER_DAYS, delay_minutes=10080),  # 7 days
        ),
    ),
)

_RT = Recipient
_CH = Channel

DEFAULT_NOTIFICATIONS: tuple[NotificationRule, ...] = (
    NotificationRule(
        trigger_event="inspection_assigned",
        recipients=(_RT.ASSIGNED_TECHNICIAN,),
        channels=(_CH.IN_APP, _CH.PUSH),
        template="inspection_assigned",
        conditions=(_C.TECHNICIAN_WANTS_NOTIFICATIONS,),
    ),
    NotificationRule(
        trigger_event="inspection_submitted_for_review",
        recipients=(_RT.SHOP_MANAGER,),
        channels=(_CH.IN_APP, _CH.EMAIL),
        template="inspection_ready_for_review",
        conditions=(_C.HAS_CRITICAL_ITEMS,),
    ),
    NotificationRule(
        trigger_event="inspection_approved",
        recipients=(_RT.ASSIGNED_TECHNICIAN,),
        channels=(_CH.IN_APP,),
        template="inspection_approved",
    ),
    NotificationRule(
        trigger_event="inspection_rejected",
        recipients=(_RT.ASSIGNED_TECHNICIAN,),
        channels=(_CH.IN_APP, _CH.PUSH),
        template="inspection_rejected",
    ),
    NotificationRule(
        trigger_event="inspection_changes_requested",
        recipients=(_RT.ASSIGNED_TECHNICIAN,),
        channels=(_CH.IN_APP, _CH.PUSH),
        template="inspection_changes_requested",
    ),
    NotificationRule(
        trigger_event="inspection_sent_to_customer",
        recipients=(_RT.CUSTOMER,),
        channels=(_CH.SMS,),
        template="inspection_results_ready",
    ),
    NotificationRule(
        trigger_event="inspection_overdue",
        recipients=(_RT.ASSIGNED_TECHNICIAN, _RT.SHOP_MANAGER),
        channels=(_CH.IN_APP, _CH.PUSH),
        template="inspection_overdue",
        conditions=(_C.INSPECTION_IN_PROGRESS_OVER_LIMIT,),
    ),
    NotificationRule(
        trigger_event="critical_items_found",
        recipients=(_RT.SHOP_MANAGER,),
        channels=(_CH.IN_APP, _CH.PUSH, _CH.EMAIL),
        template="critical_safety_items",
    ),
    NotificationRule(
        trigger_event="review_escalated",
        recipients=(_RT.ESCALATION_TARGET,),
        channels=(_CH.IN_APP, _CH.PUSH, _CH.EMAIL),
        template="review_escalated",
    ),
    NotificationRule(
        trigger_event="review_overdue",
        recipients=(_RT.ADMIN,),
        channels=(_CH.IN_APP, _CH.EMAIL),
        template="review_overdue",
    ),
    NotificationRule(
        trigger_event="timeout_warning",
        recipients=(_RT.ASSIGNED_TECHNICIAN, _RT.ASSIGNED_MANAGER),
        channels=(_CH.IN_APP,),
        template="timeout_warning",
    ),
)

_V = ValidationLogic
_SC = ValidationScope

DEFAULT_VALIDATION_RULES: tuple[ValidationRule, ...] = (
    ValidationRule(
        rule_name="mandatory_categories_present",
        scope=_SC.RECORD,
        conditions=(_C.STATE_TRANSITION_TO_PENDING_REVIEW,),
        validation_logic=_V.CHECK_MANDATORY_CATEGORIES_EXIST,
        error_message="Missing mandatory inspection categories: {missing_categories}",
        severity=Severity.ERROR,
    ),
    ValidationRule(
        rule_name="min_items_required",
        scope=_SC.RECORD,
        conditions=(_C.STATE_TRANSITION_TO_PENDING_REVIEW,),
        validation_logic=_V.CHECK_MINIMUM_ITEM_COUNT,
        error_message="Inspection must have at least {min_items} items",
        severity=Severity.ERROR,
    ),
    ValidationRule(
        rule_name="all_items_assessed",
        scope=_SC.RECORD,
        conditions=(_C.STATE_TRANSITION_TO_PENDING_REVIEW,),
        validation_logic=_V.CHECK_ALL_ITEMS_HAVE_CONDITION,
        error_message="{unassessed_count} items missing condition assessment",
        severity=Severity.ERROR,
    ),
    ValidationRule(
        rule_name="critical_items_documented",
        scope=_SC.ITEM,
        conditions=(_C.CONDITION_IS_NEEDS_IMMEDIATE,),
        validation_logic=_V.CHECK_CRITICAL_ITEM_DOCUMENTATION,
        error_message="Critical safety items must have detailed notes and photos",
        warning_message="Consider adding photos and voice notes for critical item {component}",
        severity=Severity.WARNING,
    ),
    ValidationRule(
        rule_name="cost_estimate_reasonable",
        scope=_SC.ITEM,
        conditions=(_C.HAS_COST_ESTIMATE,),
        validation_logic=_V.CHECK_COST_ESTIMATE_RANGE,
        warning_message="Cost estimate {cost_estimate} seems unusually high/low for {component}",
        severity=Severity.WARNING,
    ),
    ValidationRule(
        rule_name="measurement_values_realistic",
        scope=_SC.ITEM,
        conditions=(_C.HAS_MEASUREMENTS,),
        validation_logic=_V.VALIDATE_MEASUREMENT_RANGES,
        warning_message="Measurement value {measurement_value} outside typical range for {component}",
        severity=Severity.WARNING,
    ),
    ValidationRule(
        rule_name="odometer_progression_check",
        scope=_SC.RECORD,
        conditions=(_C.HAS_ODOMETER_READING,),
        validation_logic=_V.CHECK_ODOMETER_PROGRESSION,
        warning_message="Odometer reading inconsistent with previous inspections",
        severity=Severity.WARNING,
    ),
    ValidationRule(
        rule_name="vehicle_available",
        scope=_SC.TRANSITION,
        validation_logic=_V.CHECK_VEHICLE_AVAILABLE,
        error_message="Vehicle is not available for inspection",
        severity=Severity.ERROR,
    ),
    ValidationRule(
        rule_name="no_blocking_critical_items",
        scope=_SC.TRANSITION,
        validation_logic=_V.CHECK_NO_BLOCKING_CRITICAL_ITEMS,
        error_message="{blocking_count} critical item(s) lack required documentation: {components}",
        severity=Severity.ERROR,
    ),
    ValidationRule(
        rule_name="no_self_approval",
        scope=_SC.TRANSITION,
        validation_logic=_V.CHECK_NOT_SELF_APPROVAL,
        error_message="Inspections cannot be approved by the technician who submitted them",
        severity=Severity.ERROR,
    ),
    ValidationRule(
        rule_name="customer_phone_present",
        scope=_SC.TRANSITION,
        validation_logic=_V.CHECK_CUSTOMER_PHONE_PRESENT,
        warning_message="Customer has no mobile number; the report link goes out by email only",
        severity=Severity.WARNING,
    ),
)

DEFAULT_TIMEOUT_RULES: tuple[TimeoutRule, ...] = (
    TimeoutRule(
        state=_S.IN_PROGRESS,
        timeout_minutes=240,                 # 4 hours
        escalation_action=EscalationAction.NOTIFY_MANAGER,
        notify_before_minutes=(60, 15),
        auto_action=AutoAction.FLAG_FOR_REVIEW,
    ),
    TimeoutRule(
        state=_S.PENDING_REVIEW,
        timeout_minutes=1440,                # 24 hours
        escalation_action=EscalationAction.ESCALATE_TO_ADMIN,
        notify_before_minutes=(240, 60),
        auto_action=AutoAction.AUTO_APPROVE_IF_NO_CRITICAL,
    ),
    TimeoutRule(
        state=_S.APPROVED,
        timeout_minutes=60,                  # 1 hour before auto-sending
        escalation_action=EscalationAction.AUTO_SEND_TO_CUSTOMER,
        notify_before_minutes=(30, 10),
        auto_action=AutoAction.SEND_TO_CUSTOMER,
    ),
    TimeoutRule(
        state=_S.SENT_TO_CUSTOMER,
        timeout_minutes=7 * 24 * 60,         # 7 days
        auto_action=AutoAction.COMPLETE,
    ),
)

DEFAULT_ESCALATION_RULES: tuple[EscalationRule, ...] = (
    EscalationRule(Priority.URGENT, threshold_minutes=2 * 60, escalate_to_role=_R.OWNER, notify_immediately=True),
    EscalationRule(Priority.HIGH, threshold_minutes=4 * 60, escalate_to_role=_R.SENIOR_MANAGER, notify_immediately=True),
    EscalationRule(Priority.NORMAL, threshold_minutes=24 * 60, escalate_to_role=_R.SENIOR_MANAGER),
    EscalationRule(Priority.LOW, threshold_minutes=48 * 60, escalate_to_role=_R.SENIOR_MANAGER),
)

DEFAULT_WORKFLOW_CONFIG = WorkflowConfig(
    business_rules=BusinessRules(),
    transitions=DEFAULT_TRANSITIONS,
    notifications=DEFAULT_NOTIFICATIONS,
    validation_rules=DEFAULT_VALIDATION_RULES,
    timeout_rules=DEFAULT_TIMEOUT_RULES,
    escalation_rules=DEFAULT_ESCALATION_RULES,
)


# ═════════════════════════════════════════════════════════════════════════════
# Parsing & serialisation
# ═════════════════════════════════════════════════════════════════════════════

_BUSINESS_RULE_FIELDS = {f.name: f for f in dataclasses.fields(BusinessRules)}


def _enum(enum_cls, value, errors: list[str], where: str):
    """Coerce *value* to *enum_cls*, recording an error for unknown identifiers."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        errors.append(f"{where}: unknown {enum_cls.__name__} '{value}'")
        return None


def _enum_tuple(enum_cls, values, errors: list[str], where: str) -> tuple:
    parsed = (_enum(enum_cls, v, errors, where) for v in (values or ()))
    return tuple(v for v in parsed if v is not None)


def _positive_int(value, errors: list[str], where: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"{where}: expected an integer, got {value!r}")
        return 0


def business_rules_from_dict(data: Mapping[str, Any], errors: list[str]) -> dict[str, Any]:
    """Validate business-rule overrides against BusinessRules field types."""
    clean: dict[str, Any] = {}
    defaults = BusinessRules()
    for key, value in (data or {}).items():
        if key not in _BUSINESS_RULE_FIELDS:
            errors.append(f"business_rules: unknown rule '{key}'")
            continue
        default = getattr(defaults, key)
        if isinstance(default, bool):
            if not isinstance(value, bool):
                errors.append(f"business_rules.{key}: expected true/false")
                continue
        elif isinstance(default, tuple):
            if not isinstance(value, (list, tuple)):
                errors.append(f"business_rules.{key}: expected a list")
                continue
            value = tuple(value)
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"business_rules.{key}: expected a number")
                continue
        clean[key] = value
    return clean


def transition_from_dict(data: Mapping[str, Any], errors: list[str]) -> TransitionRule | None:
    where = f"transition {data.get('from_state')}->{data.get('to_state')}"
    local: list[str] = []
    from_state = _enum(InspectionState, data.get("from_state"), local, where)
    to_state = _enum(InspectionState, data.get("to_state"), local, where)
    triggers = []
    for t in data.get("auto_triggers") or ():
        cond = _enum(Condition, t.get("condition"), local, f"{where} auto_trigger")
        if cond is not None:
            triggers.append(AutoTrigger(
                condition=cond,
                delay_minutes=_positive_int(t.get("delay_minutes", 0), local, f"{where} auto_trigger"),
                requires_confirmation=bool(t.get("requires_confirmation", False)),
            ))
    rule = TransitionRule(
        name=str(data.get("name") or (to_state.value if to_state else "")),
        from_state=from_state,
        to_state=to_state,
        allowed_roles=frozenset(_enum_tuple(Role, data.get("allowed_roles"), local, where)),
        required_conditions=_enum_tuple(Condition, data.get("required_conditions"), local, where),
        optional_conditions=_enum_tuple(Condition, data.get("optional_conditions"), local, where),
        validation_checks=tuple(str(c) for c in data.get("validation_checks") or ()),
        pre_actions=_enum_tuple(Action, data.get("pre_actions"), local, where),
        post_actions=_enum_tuple(Action, data.get("post_actions"), local, where),
        auto_triggers=tuple(triggers),
        history_action=data.get("history_action"),
    )
    errors.extend(local)
    return None if local else rule


def notification_from_dict(data: Mapping[str, Any], errors: list[str]) -> NotificationRule | None:
    where = f"notification {data.get('trigger_event')}"
    local: list[str] = []
    rule = NotificationRule(
        trigger_event=str(data.get("trigger_event") or ""),
        recipients=_enum_tuple(Recipient, data.get("recipients"), local, where),
        channels=_enum_tuple(Channel, data.get("channels"), local, where),
        template=str(data.get("template") or ""),
        delay_minutes=_positive_int(data.get("delay_minutes", 0), local, where),
        conditions=_enum_tuple(Condition, data.get("conditions"), local, where),
    )
    errors.extend(local)
    return None if local else rule


def validation_rule_from_dict(data: Mapping[str, Any], errors: list[str]) -> ValidationRule | None:
    where = f"validation rule {data.get('rule_name')}"
    local: list[str] = []
    rule = ValidationRule(
        rule_name=str(data.get("rule_name") or ""),
        scope=_enum(ValidationScope, data.get("scope"), local, where),
        validation_logic=_enum(ValidationLogic, data.get("validation_logic"), local, where),
        severity=_enum(Severity, data.get("severity", "error"), local, where),
        conditions=_enum_tuple(Condition, data.get("conditions"), local, where),
        error_message=str(data.get("error_message") or ""),
        warning_message=str(data.get("warning_message") or ""),
        params=MappingProxyType(dict(data.get("params") or {})),
    )
    if not rule.rule_name:
        local.append("validation rule: rule_name is required")
    errors.extend(local)
    return None if local else rule


def timeout_rule_from_dict(data: Mapping[str, Any], errors: list[str]) -> TimeoutRule | None:
    where = f"timeout rule {data.get('state')}"
    local: list[str] = []
    escalation_action = data.get("escalation_action")
    auto_action = data.get("auto_action")
    rule = TimeoutRule(
        state=_enum(InspectionState, data.get("state"), local, where),
        timeout_minutes=_positive_int(data.get("timeout_minutes"), local, where),
        escalation_action=(
            _enum(EscalationAction, escalation_action, local, where) if escalation_action else None
        ),
        notify_before_minutes=tuple(
            _positive_int(m, local, where) for m in data.get("notify_before_minutes") or ()
        ),
        auto_action=_enum(AutoAction, auto_action, local, where) if auto_action else None,
    )
    errors.extend(local)
    return None if local else rule


def escalation_rule_from_dict(data: Mapping[str, Any], errors: list[str]) -> EscalationRule | None:
    where = f"escalation rule {data.get('priority')}"
    local: list[str] = []
    rule = EscalationRule(
        priority=_enum(Priority, data.get("priority"), local, where),
        threshold_minutes=_positive_int(data.get("threshold_minutes"), local, where),
        escalate_to_role=_enum(Role, data.get("escalate_to_role"), local, where),
        notify_immediately=bool(data.get("notify_immediately", False)),
    )
    errors.extend(local)
    return None if local else rule


def _collect(parser, items, errors) -> tuple:
    parsed = (parser(item, errors) for item in (items or ()))
    return tuple(p for p in parsed if p is not None)


def override_from_dict(tenant_id: int, data: Mapping[str, Any]) -> TenantOverride:
    """Parse a raw override payload into a typed TenantOverride.

    Raises:
        ConfigInvalid: listing every unknown identifier or malformed field.
    """
    errors: list[str] = []
    override = TenantOverride(
        tenant_id=tenant_id,
        business_rules=MappingProxyType(business_rules_from_dict(data.get("business_rules") or {}, errors)),
        extra_transitions=_collect(transition_from_dict, data.get("extra_transitions"), errors),
        disabled_notifications=tuple(str(e) for e in data.get("disabled_notifications") or ()),
        custom_validation_rules=_collect(validation_rule_from_dict, data.get("custom_validation_rules"), errors),
        custom_timeout_rules=_collect(timeout_rule_from_dict, data.get("custom_timeout_rules"), errors),
        custom_escalation_rules=_collect(escalation_rule_from_dict, data.get("custom_escalation_rules"), errors),
        version=data.get("version"),
    )
    if errors:
        raise ConfigInvalid(errors)
    return override


def config_from_dict(data: Mapping[str, Any]) -> WorkflowConfig:
    """Rebuild a WorkflowConfig from ``config_to_dict`` output.

    Raises:
        ConfigInvalid: if the payload carries unknown identifiers.
    """
    errors: list[str] = []
    config = WorkflowConfig(
        business_rules=BusinessRules(**business_rules_from_dict(data.get("business_rules") or {}, errors)),
        transitions=_collect(transition_from_dict, data.get("transitions"), errors),
        notifications=_collect(notification_from_dict, data.get("notifications"), errors),
        validation_rules=_collect(validation_rule_from_dict, data.get("validation_rules"), errors),
        timeout_rules=_collect(timeout_rule_from_dict, data.get("timeout_rules"), errors),
        escalation_rules=_collect(escalation_rule_from_dict, data.get("escalation_rules"), errors),
    )
    if errors:
        raise ConfigInvalid(errors)
    return config


def _plain(value):
    """Convert enums / tuples / frozensets / mappings into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, frozenset):
        return sorted(_plain(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if dataclasses.is_dataclass(value):
        return {f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    return value


def rule_to_dict(rule) -> dict:
    return _plain(rule)


def config_to_dict(config: WorkflowConfig) -> dict:
    return _plain(config)
