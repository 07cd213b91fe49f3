"""Unit tests for the condition matchers."""

from datetime import timedelta

import pytest

from elevare.core import DependencyException, ValidationException
from elevare.escalation.domain import ConditionMatcher, EscalationRule
from tests.helpers.fakes import make_snapshot


def rule_for(condition: str, threshold=None, **kwargs) -> EscalationRule:
    return EscalationRule(
        id="r1",
        name=f"{condition} rule",
        entity_type=kwargs.pop("entity_type", "maintenance"),
        trigger_condition=condition,
        escalate_to_role="manager",
        time_threshold_hours=threshold,
        **kwargs
    )


class TestSlaBreach:
    """sla_breach: past due and not terminal."""

    def test_open_entity_past_due_matches(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=2), due=now - timedelta(hours=1))

        assert ConditionMatcher.matches(rule_for("sla_breach"), snapshot, now)

    def test_resolved_entity_past_due_does_not_match(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=2), status="resolved", due=now - timedelta(hours=1))

        assert not ConditionMatcher.matches(rule_for("sla_breach"), snapshot, now)

    def test_no_due_date_never_matches(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=30))

        assert not ConditionMatcher.matches(rule_for("sla_breach"), snapshot, now)

    def test_threshold_acts_as_grace_period(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=2), due=now - timedelta(hours=1))

        assert not ConditionMatcher.matches(rule_for("sla_breach", threshold=2), snapshot, now)
        assert ConditionMatcher.matches(rule_for("sla_breach", threshold=2), snapshot, now + timedelta(hours=2))

    def test_exactly_at_deadline_does_not_match(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=2), due=now)

        assert not ConditionMatcher.matches(rule_for("sla_breach"), snapshot, now)


class TestStatusStale:
    """status_stale: no status change for at least the threshold."""

    def test_stale_beyond_threshold_matches(self, now) -> None:
        snapshot = make_snapshot(
            "m1", now - timedelta(days=5), status="in_progress", last_change=now - timedelta(hours=25)
        )

        assert ConditionMatcher.matches(rule_for("status_stale", threshold=24), snapshot, now)

    def test_recent_change_does_not_match(self, now) -> None:
        snapshot = make_snapshot(
            "m1", now - timedelta(days=5), status="in_progress", last_change=now - timedelta(hours=23)
        )

        assert not ConditionMatcher.matches(rule_for("status_stale", threshold=24), snapshot, now)

    def test_threshold_boundary_is_inclusive(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=5), last_change=now - timedelta(hours=24))

        assert ConditionMatcher.matches(rule_for("status_stale", threshold=24), snapshot, now)

    def test_terminal_status_does_not_match(self, now) -> None:
        snapshot = make_snapshot(
            "m1", now - timedelta(days=5), status="closed", last_change=now - timedelta(days=4)
        )

        assert not ConditionMatcher.matches(rule_for("status_stale", threshold=24), snapshot, now)

    def test_missing_last_change_falls_back_to_created_at(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(hours=30))

        assert snapshot.last_status_change_at == snapshot.created_at
        assert ConditionMatcher.matches(rule_for("status_stale", threshold=24), snapshot, now)


class TestHighPriorityUnassigned:
    """high_priority_unassigned: high or urgent with nobody assigned."""

    @pytest.mark.parametrize("threshold", [None, 0, 1, 48])
    def test_urgent_unassigned_matches_for_any_threshold(self, now, threshold) -> None:
        snapshot = make_snapshot("m1", now, priority="urgent", assignee=None)

        assert ConditionMatcher.matches(rule_for("high_priority_unassigned", threshold=threshold), snapshot, now)

    def test_assigned_does_not_match(self, now) -> None:
        snapshot = make_snapshot("m1", now, priority="high", assignee="u-42")

        assert not ConditionMatcher.matches(rule_for("high_priority_unassigned"), snapshot, now)

    def test_blank_assignee_counts_as_unassigned(self, now) -> None:
        snapshot = make_snapshot("m1", now, priority="HIGH", assignee="  ")

        assert ConditionMatcher.matches(rule_for("high_priority_unassigned"), snapshot, now)

    @pytest.mark.parametrize("priority", ["low", "medium", "critical", None])
    def test_other_priorities_do_not_match(self, now, priority) -> None:
        snapshot = make_snapshot("m1", now, priority=priority, assignee=None)

        assert not ConditionMatcher.matches(rule_for("high_priority_unassigned"), snapshot, now)


class TestOverdue:
    """overdue: past due regardless of status."""

    def test_completed_entity_past_due_matches(self, now) -> None:
        snapshot = make_snapshot(
            "c1", now - timedelta(days=40), entity_type="compliance",
            status="completed", due=now - timedelta(days=1)
        )

        assert ConditionMatcher.matches(rule_for("overdue", entity_type="compliance"), snapshot, now)

    def test_future_due_date_does_not_match(self, now) -> None:
        snapshot = make_snapshot(
            "c1", now, entity_type="compliance", due=now + timedelta(days=1)
        )

        assert not ConditionMatcher.matches(rule_for("overdue", entity_type="compliance"), snapshot, now)


class TestRuleScoping:
    """Checks applied before any trigger kind."""

    def test_other_entity_type_never_matches(self, now) -> None:
        snapshot = make_snapshot("t1", now, entity_type="support_ticket", priority="urgent", assignee=None)

        assert not ConditionMatcher.matches(rule_for("high_priority_unassigned"), snapshot, now)

    def test_priority_filter_excludes_other_priorities(self, now) -> None:
        rule = rule_for("sla_breach", priority_filter=["urgent"])
        snapshot = make_snapshot("m1", now - timedelta(days=2), priority="low", due=now - timedelta(hours=3))

        assert not ConditionMatcher.matches(rule, snapshot, now)


class TestCustom:
    """custom: delegated to a resolved predicate."""

    def test_predicate_result_is_returned(self, now) -> None:
        rule = rule_for("custom", predicate_ref="always")
        snapshot = make_snapshot("m1", now)

        assert ConditionMatcher.matches(rule, snapshot, now, predicate=lambda r, s, t: True)
        assert not ConditionMatcher.matches(rule, snapshot, now, predicate=lambda r, s, t: False)

    def test_missing_predicate_raises(self, now) -> None:
        rule = rule_for("custom", predicate_ref="always")

        with pytest.raises(ValidationException):
            ConditionMatcher.matches(rule, make_snapshot("m1", now), now)

    def test_non_boolean_result_raises(self, now) -> None:
        rule = rule_for("custom", predicate_ref="sloppy")

        with pytest.raises(DependencyException):
            ConditionMatcher.matches(rule, make_snapshot("m1", now), now, predicate=lambda r, s, t: "yes")


class TestDescribe:
    """Reason text attached to events."""

    def test_sla_breach_reason_mentions_lateness(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=2), due=now - timedelta(hours=3), title="Leaking roof")

        reason = ConditionMatcher.describe(rule_for("sla_breach"), snapshot, now)

        assert reason.startswith("SLA breached")
        assert "Leaking roof" in reason
        assert "3.0h late" in reason

    def test_stale_reason_mentions_threshold(self, now) -> None:
        snapshot = make_snapshot("m1", now - timedelta(days=3), last_change=now - timedelta(hours=30))

        reason = ConditionMatcher.describe(rule_for("status_stale", threshold=24), snapshot, now)

        assert "30.0h" in reason
        assert "threshold 24h" in reason
