"""
Condition Matchers
==================

Pure functions deciding whether a rule fires for an entity snapshot.

Matchers read only the rule, the snapshot and the evaluation time. They
perform no I/O, which keeps per-entity cost bounded and makes them
deterministic under test. `custom` rules are the exception: the predicate
is supplied by the caller, resolved from a registry outside the domain.
"""

from datetime import datetime
from typing import Callable, Dict, Optional

from elevare.config import TriggerCondition, HIGH_PRIORITIES
from elevare.core import DependencyException, ValidationException
from elevare.escalation.domain.entities import EscalationRule, EntitySnapshot, ensure_utc

# (rule, snapshot, now) -> bool
CustomPredicate = Callable[[EscalationRule, EntitySnapshot, datetime], bool]


class ConditionMatcher:
    """
    One static matcher per trigger kind plus dispatch and reason building.

    All times are compared as aware UTC datetimes.
    """

    @staticmethod
    def _deadline(rule: EscalationRule, snapshot: EntitySnapshot) -> Optional[datetime]:
        """Due date shifted by the rule's grace period, if any."""
        if snapshot.due_or_sla_at is None:
            return None
        grace = rule.threshold
        return snapshot.due_or_sla_at + grace if grace else snapshot.due_or_sla_at

    @staticmethod
    def sla_breach(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> bool:
        """Past the SLA deadline and not yet terminal."""
        deadline = ConditionMatcher._deadline(rule, snapshot)
        if deadline is None or snapshot.is_terminal:
            return False
        return now > deadline

    @staticmethod
    def status_stale(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> bool:
        """No status change for at least the threshold, and not terminal."""
        threshold = rule.threshold
        if threshold is None or snapshot.is_terminal:
            return False
        return now - snapshot.last_status_change_at >= threshold

    @staticmethod
    def high_priority_unassigned(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> bool:
        """High or urgent priority with nobody assigned. Threshold is ignored."""
        return snapshot.priority in HIGH_PRIORITIES and not snapshot.is_assigned

    @staticmethod
    def overdue(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> bool:
        """Past the due date regardless of status."""
        deadline = ConditionMatcher._deadline(rule, snapshot)
        if deadline is None:
            return False
        return now > deadline

    @classmethod
    def matches(
        cls,
        rule: EscalationRule,
        snapshot: EntitySnapshot,
        now: datetime,
        predicate: Optional[CustomPredicate] = None
    ) -> bool:
        """
        Decide whether `rule` fires for `snapshot` at `now`.

        Args:
            rule: The rule being evaluated
            snapshot: Entity snapshot of the rule's entity type
            now: Evaluation time
            predicate: Resolved predicate, required for custom rules

        Raises:
            ValidationException: custom rule evaluated without a predicate
            DependencyException: custom predicate returned a non-boolean
        """
        if snapshot.entity_type != rule.entity_type:
            return False
        if not rule.applies_to_priority(snapshot.priority):
            return False

        now = ensure_utc(now)

        if rule.trigger_condition == TriggerCondition.CUSTOM:
            if predicate is None:
                raise ValidationException(
                    f"Custom rule {rule.id} evaluated without a resolved predicate",
                    field="predicate_ref"
                )
            result = predicate(rule, snapshot, now)
            if not isinstance(result, bool):
                raise DependencyException(
                    "Predicate resolver",
                    f"predicate '{rule.predicate_ref}' returned {type(result).__name__}, expected bool"
                )
            return result

        matcher = MATCHERS.get(rule.trigger_condition)
        if matcher is None:
            raise ValidationException(
                f"Unknown trigger condition '{rule.trigger_condition}'",
                field="trigger_condition"
            )
        return matcher(rule, snapshot, now)

    @staticmethod
    def describe(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> str:
        """Machine-generated reason text for a match."""
        now = ensure_utc(now)
        condition = rule.trigger_condition
        label = f"{snapshot.entity_type} '{snapshot.title}'"

        if condition in (TriggerCondition.SLA_BREACH, TriggerCondition.OVERDUE):
            due = snapshot.due_or_sla_at
            hours_late = (now - due).total_seconds() / 3600 if due else 0.0
            kind = "SLA breached" if condition == TriggerCondition.SLA_BREACH else "Overdue"
            due_text = due.isoformat() if due else "unknown"
            return (
                f"{kind}: {label} was due {due_text} "
                f"({hours_late:.1f}h late, status {snapshot.status})"
            )
        if condition == TriggerCondition.STATUS_STALE:
            idle_hours = (now - snapshot.last_status_change_at).total_seconds() / 3600
            return (
                f"Status stale: {label} has been '{snapshot.status}' for {idle_hours:.1f}h "
                f"(threshold {rule.time_threshold_hours}h)"
            )
        if condition == TriggerCondition.HIGH_PRIORITY_UNASSIGNED:
            return f"Unassigned {snapshot.priority} priority {label}"
        return f"Custom condition '{rule.predicate_ref}' matched for {label}"


MATCHERS: Dict[str, Callable[[EscalationRule, EntitySnapshot, datetime], bool]] = {
    TriggerCondition.SLA_BREACH: ConditionMatcher.sla_breach,
    TriggerCondition.STATUS_STALE: ConditionMatcher.status_stale,
    TriggerCondition.HIGH_PRIORITY_UNASSIGNED: ConditionMatcher.high_priority_unassigned,
    TriggerCondition.OVERDUE: ConditionMatcher.overdue,
}
