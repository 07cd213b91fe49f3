"""
Unit tests for escalation domain entities.

Tests cover:
- EscalationRule validation per trigger kind
- Partial updates through apply_patch
- EntitySnapshot normalization
- EscalationEvent acknowledgment
- SweepReport status and counters
"""

from datetime import datetime, timedelta, timezone

import pytest

from elevare.config import NotificationStatus, SweepStatus
from elevare.core import ValidationException
from elevare.escalation.domain import (
    DomainFailure,
    EntitySnapshot,
    EscalationEvent,
    EscalationRule,
    SweepReport,
)


def make_rule(**overrides) -> EscalationRule:
    values = {
        "id": "rule-1",
        "name": "Stale maintenance",
        "entity_type": "maintenance",
        "trigger_condition": "status_stale",
        "escalate_to_role": "manager",
        "time_threshold_hours": 48,
    }
    values.update(overrides)
    return EscalationRule(**values)


class TestEscalationRuleValidation:
    """Construction-time invariants."""

    def test_valid_rule_normalizes_priorities(self) -> None:
        """Priority filters are stored lowercase."""
        rule = make_rule(priority_filter=["HIGH", "Urgent"])

        assert rule.priority_filter == ["high", "urgent"]
        assert rule.is_active is True

    def test_status_stale_requires_threshold(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            make_rule(time_threshold_hours=None)

        assert exc_info.value.errors[0]["field"] == "time_threshold_hours"

    def test_sla_breach_threshold_is_optional(self) -> None:
        rule = make_rule(trigger_condition="sla_breach", time_threshold_hours=None)

        assert rule.threshold is None

    def test_custom_rule_requires_predicate_ref(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            make_rule(trigger_condition="custom", time_threshold_hours=None)

        assert [e["field"] for e in exc_info.value.errors] == ["predicate_ref"]

    def test_custom_rule_rejects_threshold(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            make_rule(trigger_condition="custom", predicate_ref="critical_unassigned")

        assert exc_info.value.errors[0]["field"] == "time_threshold_hours"

    def test_negative_threshold_rejected(self) -> None:
        with pytest.raises(ValidationException):
            make_rule(time_threshold_hours=-1)

    def test_every_invalid_field_is_reported(self) -> None:
        """All problems are listed, not just the first."""
        with pytest.raises(ValidationException) as exc_info:
            make_rule(
                name=" ", entity_type="spaceship", escalate_to_role="janitor",
                notify_channels=["carrier_pigeon"]
            )

        fields = {e["field"] for e in exc_info.value.errors}
        assert fields == {"name", "entity_type", "escalate_to_role", "notify_channels"}

    def test_priority_filter_scope(self) -> None:
        rule = make_rule(priority_filter=["urgent"])

        assert rule.applies_to_priority("URGENT")
        assert not rule.applies_to_priority("low")
        assert not rule.applies_to_priority(None)
        assert make_rule().applies_to_priority(None)


class TestApplyPatch:
    """Partial updates keep omitted fields."""

    def test_omitted_fields_unchanged(self) -> None:
        rule = make_rule(description="original")

        updated = rule.apply_patch({"name": "Renamed"})

        assert updated.name == "Renamed"
        assert updated.description == "original"
        assert updated.time_threshold_hours == 48
        assert rule.name == "Stale maintenance"

    def test_null_leaves_required_fields_unchanged(self) -> None:
        updated = make_rule().apply_patch({"name": None, "is_active": None})

        assert updated.name == "Stale maintenance"
        assert updated.is_active is True

    def test_null_clears_nullable_fields(self) -> None:
        rule = make_rule(trigger_condition="sla_breach", time_threshold_hours=4, description="x")

        updated = rule.apply_patch({"time_threshold_hours": None, "description": None})

        assert updated.time_threshold_hours is None
        assert updated.description is None

    def test_revalidates_result(self) -> None:
        """Clearing the threshold of a status_stale rule is rejected."""
        with pytest.raises(ValidationException):
            make_rule().apply_patch({"time_threshold_hours": None})

    def test_threshold_change_on_custom_rule_rejected(self) -> None:
        rule = make_rule(trigger_condition="custom", time_threshold_hours=None, predicate_ref="p")

        with pytest.raises(ValidationException) as exc_info:
            rule.apply_patch({"time_threshold_hours": 12})

        assert exc_info.value.errors[0]["field"] == "time_threshold_hours"

    def test_switching_to_custom_drops_threshold(self) -> None:
        updated = make_rule().apply_patch({"trigger_condition": "custom", "predicate_ref": "p"})

        assert updated.trigger_condition == "custom"
        assert updated.time_threshold_hours is None

    def test_unknown_fields_rejected(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            make_rule().apply_patch({"id": "other", "created_at": None})

        assert {e["field"] for e in exc_info.value.errors} == {"id", "created_at"}

    def test_touches_updated_at(self) -> None:
        rule = make_rule(updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc))

        updated = rule.apply_patch({"is_active": False})

        assert updated.updated_at > rule.updated_at
        assert updated.is_active is False


class TestEntitySnapshot:
    """Snapshot normalization."""

    def test_naive_datetimes_are_utc(self) -> None:
        snapshot = EntitySnapshot(
            entity_type="legal_case", entity_id="l1", title="Lease dispute",
            status="OPEN", priority="High",
            created_at=datetime(2026, 1, 1, 9, 0),
            last_status_change_at=None
        )

        assert snapshot.created_at.tzinfo == timezone.utc
        assert snapshot.last_status_change_at == snapshot.created_at
        assert snapshot.status == "open"
        assert snapshot.priority == "high"

    def test_offset_datetimes_converted(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        snapshot = EntitySnapshot(
            entity_type="inspection", entity_id="i1", title="Fire safety",
            status="open", priority=None,
            created_at=datetime(2026, 1, 1, 12, 0, tzinfo=plus_two),
            last_status_change_at=datetime(2026, 1, 1, 12, 0, tzinfo=plus_two)
        )

        assert snapshot.created_at == datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert snapshot.priority is None

    @pytest.mark.parametrize("status", ["completed", "Resolved", "closed", "CANCELLED"])
    def test_terminal_statuses(self, now, status) -> None:
        snapshot = EntitySnapshot(
            entity_type="maintenance", entity_id="m1", title="t", status=status,
            priority=None, created_at=now, last_status_change_at=now
        )

        assert snapshot.is_terminal


class TestEscalationEvent:
    """Open and manual flags."""

    def make_event(self) -> EscalationEvent:
        return EscalationEvent(
            id="e1", rule_id="rule-1", entity_type="maintenance", entity_id="m1",
            entity_title="Broken boiler", escalated_to="u-manager", reason="stale"
        )

    def test_new_event_is_open_and_pending(self) -> None:
        event = self.make_event()

        assert event.is_open
        assert not event.is_manual
        assert event.notification_status == NotificationStatus.PENDING


class TestSweepReport:
    """Final status follows recorded failures."""

    def test_clean_sweep_completes(self, now) -> None:
        report = SweepReport(id="s1", started_at=now)

        report.finish(at=now + timedelta(seconds=2))

        assert report.status == SweepStatus.COMPLETED
        assert report.duration_ms == 2000

    def test_failures_mark_completed_with_errors(self, now) -> None:
        report = SweepReport(id="s1", started_at=now)
        report.record_failure(DomainFailure("compliance", "DependencyException", "down"))

        report.finish(at=now)

        assert report.status == SweepStatus.COMPLETED_WITH_ERRORS
        assert report.to_dict()["failures"][0]["entity_type"] == "compliance"

    def test_explicit_status_wins(self, now) -> None:
        report = SweepReport(id="s1", started_at=now)
        report.record_failure(DomainFailure("compliance", "TimeoutError", "slow"))

        report.finish(SweepStatus.TIMED_OUT, at=now)

        assert report.status == SweepStatus.TIMED_OUT
        assert report.metric_values()["failures"] == 1
