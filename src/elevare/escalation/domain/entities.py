"""
Escalation Domain Entities
===========================

Pure Python domain entities for the escalation engine.

These entities contain the business rules for escalation rules, entity
snapshots and escalation events, and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any

from elevare.config import (
    TriggerCondition, NotificationStatus, SweepStatus,
    VALID_ENTITY_TYPES, VALID_TRIGGER_CONDITIONS, VALID_ROLES,
    VALID_PRIORITIES, VALID_CHANNELS, TERMINAL_STATUSES
)
from elevare.core import ValidationException


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Fields an operator may change on an existing rule
MUTABLE_RULE_FIELDS = frozenset([
    "name", "description", "entity_type", "trigger_condition",
    "escalate_to_role", "time_threshold_hours", "predicate_ref",
    "priority_filter", "notify_channels", "is_active",
])
# A null in a patch clears these; for the others it means "leave unchanged"
NULLABLE_RULE_FIELDS = frozenset([
    "description", "time_threshold_hours", "predicate_ref",
    "priority_filter", "notify_channels",
])


@dataclass
class EscalationRule:
    """
    A configurable condition that raises escalations for one entity type.

    `time_threshold_hours` is required for `status_stale`, acts as a grace
    period for `sla_breach` and `overdue`, and is ignored by
    `high_priority_unassigned`. `custom` rules name a predicate in
    `predicate_ref` and never carry a threshold.
    """

    id: Optional[str]
    name: str
    entity_type: str
    trigger_condition: str
    escalate_to_role: str
    description: Optional[str] = None
    time_threshold_hours: Optional[int] = None
    predicate_ref: Optional[str] = None
    priority_filter: List[str] = field(default_factory=list)
    notify_channels: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.priority_filter = [p.lower() for p in (self.priority_filter or [])]
        self.notify_channels = list(self.notify_channels or [])
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        self.validate()

    def validate(self) -> None:
        """Raise ValidationException listing every invalid field."""
        errors: List[Dict[str, str]] = []

        def reject(field_name: str, message: str) -> None:
            errors.append({"field": field_name, "message": message})

        if not self.name or not self.name.strip():
            reject("name", "name is required")
        elif len(self.name) > 255:
            reject("name", "name must be at most 255 characters")
        if self.entity_type not in VALID_ENTITY_TYPES:
            reject("entity_type", f"entity_type must be one of {VALID_ENTITY_TYPES}")
        if self.trigger_condition not in VALID_TRIGGER_CONDITIONS:
            reject("trigger_condition", f"trigger_condition must be one of {VALID_TRIGGER_CONDITIONS}")
        if self.escalate_to_role not in VALID_ROLES:
            reject("escalate_to_role", f"escalate_to_role must be one of {VALID_ROLES}")

        threshold = self.time_threshold_hours
        if threshold is not None and (isinstance(threshold, bool) or not isinstance(threshold, int)):
            reject("time_threshold_hours", "time_threshold_hours must be an integer")
        elif threshold is not None and threshold < 0:
            reject("time_threshold_hours", "time_threshold_hours must be non-negative")

        if self.trigger_condition == TriggerCondition.STATUS_STALE and threshold is None:
            reject("time_threshold_hours", "status_stale rules require time_threshold_hours")
        if self.trigger_condition == TriggerCondition.CUSTOM:
            if not self.predicate_ref:
                reject("predicate_ref", "custom rules require predicate_ref")
            if threshold is not None:
                reject("time_threshold_hours", "custom rules do not use time_threshold_hours")

        for priority in self.priority_filter:
            if priority not in VALID_PRIORITIES:
                reject("priority_filter", f"unknown priority '{priority}'")
        for channel in self.notify_channels:
            if channel not in VALID_CHANNELS:
                reject("notify_channels", f"unknown channel '{channel}'")

        if errors:
            raise ValidationException(
                f"Invalid escalation rule: {errors[0]['message']}",
                errors=errors
            )

    @property
    def threshold(self) -> Optional[timedelta]:
        """Threshold as a timedelta, None when unset."""
        if self.time_threshold_hours is None:
            return None
        return timedelta(hours=self.time_threshold_hours)

    def applies_to_priority(self, priority: Optional[str]) -> bool:
        """Rules with a priority filter only consider listed priorities."""
        if not self.priority_filter:
            return True
        return (priority or "").lower() in self.priority_filter

    def apply_patch(self, patch: Dict[str, Any]) -> "EscalationRule":
        """
        Return a new rule with the patch applied.

        Raises:
            ValidationException: unknown fields, a threshold change on a
                custom rule, or an invalid resulting rule
        """
        unknown = sorted(set(patch) - MUTABLE_RULE_FIELDS)
        if unknown:
            raise ValidationException(
                f"Fields cannot be updated: {', '.join(unknown)}",
                errors=[{"field": name, "message": "field cannot be updated"} for name in unknown]
            )

        changes = {
            key: value for key, value in patch.items()
            if value is not None or key in NULLABLE_RULE_FIELDS
        }

        target_condition = changes.get("trigger_condition", self.trigger_condition)
        if target_condition == TriggerCondition.CUSTOM:
            if changes.get("time_threshold_hours") is not None:
                raise ValidationException(
                    "time_threshold_hours cannot be changed on custom rules",
                    field="time_threshold_hours"
                )
            changes["time_threshold_hours"] = None

        changes["updated_at"] = utcnow()
        return replace(self, **changes)


@dataclass(frozen=True)
class EntitySnapshot:
    """
    Read-only, point-in-time view of an entity owned by another domain.

    Produced by a snapshot provider; never persisted or mutated here.
    """

    entity_type: str
    entity_id: str
    title: str
    status: str
    priority: Optional[str]
    created_at: datetime
    last_status_change_at: datetime
    due_or_sla_at: Optional[datetime] = None
    assignee_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "status", (self.status or "").lower())
        object.__setattr__(self, "priority", self.priority.lower() if self.priority else None)
        object.__setattr__(self, "created_at", ensure_utc(self.created_at))
        object.__setattr__(
            self, "last_status_change_at",
            ensure_utc(self.last_status_change_at) or self.created_at
        )
        object.__setattr__(self, "due_or_sla_at", ensure_utc(self.due_or_sla_at))
        if self.assignee_id is not None:
            object.__setattr__(self, "assignee_id", str(self.assignee_id).strip() or None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_assigned(self) -> bool:
        return bool(self.assignee_id)


@dataclass
class EscalationEvent:
    """
    A raised escalation.

    Created by a rule match or manually; mutated once by acknowledgment;
    never deleted. `rule_id` is None for manual escalations.
    """

    id: Optional[str]
    rule_id: Optional[str]
    entity_type: str
    entity_id: str
    entity_title: Optional[str]
    escalated_to: str
    reason: str
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    created_at: Optional[datetime] = None

    # Delivery tracking
    notification_status: str = NotificationStatus.PENDING
    notified_at: Optional[datetime] = None
    notification_error: Optional[str] = None

    # Denormalized from the rule for display
    rule_name: Optional[str] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)
        self.acknowledged_at = ensure_utc(self.acknowledged_at)
        self.notified_at = ensure_utc(self.notified_at)

    @property
    def is_open(self) -> bool:
        return not self.acknowledged

    @property
    def is_manual(self) -> bool:
        return self.rule_id is None


@dataclass(frozen=True)
class EmissionResult:
    """Outcome of an emit call; `created` is False for a dedup no-op."""
    event: EscalationEvent
    created: bool


@dataclass
class DomainFailure:
    """A unit of sweep work that was skipped, kept for operators."""
    entity_type: str
    error_type: str
    message: str
    rule_id: Optional[str] = None
    entity_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "error_type": self.error_type,
            "message": self.message,
            "rule_id": self.rule_id,
            "entity_id": self.entity_id,
        }


@dataclass
class SweepReport:
    """Counters and failures for one evaluation pass."""

    id: str
    started_at: datetime
    status: str = SweepStatus.COMPLETED
    finished_at: Optional[datetime] = None
    trigger: str = "scheduled"
    rules_evaluated: int = 0
    entity_types: List[str] = field(default_factory=list)
    entities_scanned: int = 0
    matches: int = 0
    events_created: int = 0
    duplicates_skipped: int = 0
    failures: List[DomainFailure] = field(default_factory=list)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def record_failure(self, failure: DomainFailure) -> None:
        self.failures.append(failure)

    def finish(self, status: Optional[str] = None, at: Optional[datetime] = None) -> None:
        self.finished_at = at or utcnow()
        if status is not None:
            self.status = status
        elif self.failures:
            self.status = SweepStatus.COMPLETED_WITH_ERRORS

    def metric_values(self) -> Dict[str, int]:
        return {
            "duration_ms": self.duration_ms or 0,
            "rules_evaluated": self.rules_evaluated,
            "entities_scanned": self.entities_scanned,
            "matches": self.matches,
            "events_created": self.events_created,
            "duplicates_skipped": self.duplicates_skipped,
            "failures": len(self.failures),
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for logs and API responses."""
        return {
            "id": self.id,
            "trigger": self.trigger,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "rules_evaluated": self.rules_evaluated,
            "entity_types": list(self.entity_types),
            "entities_scanned": self.entities_scanned,
            "matches": self.matches,
            "events_created": self.events_created,
            "duplicates_skipped": self.duplicates_skipped,
            "failures": [failure.to_dict() for failure in self.failures],
        }
