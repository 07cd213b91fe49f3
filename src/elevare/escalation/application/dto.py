"""
Escalation Application DTOs
============================

Pydantic models for the escalation REST surface.

Enum membership and basic shapes are checked here; cross-field rule
invariants (threshold vs trigger kind) are enforced by the domain entity so
creates and partial updates share one set of rules.
"""

from pydantic import BaseModel, Field, AliasChoices, ConfigDict
from typing import List, Optional, Literal
from datetime import datetime

from elevare.escalation.domain import EscalationRule, EscalationEvent, SweepReport


# ========== Type Aliases for Literals ==========
EntityTypeStr = Literal[
    "maintenance", "support_ticket", "legal_case",
    "compliance", "inspection", "construction"
]
TriggerConditionStr = Literal[
    "sla_breach", "status_stale", "high_priority_unassigned", "overdue", "custom"
]
RoleStr = Literal[
    "admin", "manager", "senior_manager", "director", "legal_head", "operations_head"
]
PriorityStr = Literal["low", "medium", "high", "urgent", "critical"]
ChannelStr = Literal["in_app", "slack"]
NotificationStatusStr = Literal["pending", "sent", "failed", "skipped"]


# ========== Request DTOs ==========

class RuleCreateRequest(BaseModel):
    """Create an escalation rule. `rule_name` is accepted for `name`."""
    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("name", "rule_name"),
        description="Display name"
    )
    description: Optional[str] = Field(None, description="Display description")
    entity_type: EntityTypeStr
    trigger_condition: TriggerConditionStr
    escalate_to_role: RoleStr
    time_threshold_hours: Optional[int] = Field(
        None, ge=0, description="Hours; required for status_stale, grace period for sla_breach/overdue"
    )
    predicate_ref: Optional[str] = Field(
        None, min_length=1, max_length=255, description="Named predicate for custom rules"
    )
    priority_filter: Optional[List[PriorityStr]] = Field(
        None, description="Only consider entities with these priorities"
    )
    notify_channels: Optional[List[ChannelStr]] = Field(
        None, description="Notification channels; defaults from configuration"
    )
    is_active: bool = True


class RuleUpdateRequest(BaseModel):
    """Partial rule update. Omitted fields are left unchanged."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(
        None, min_length=1, max_length=255,
        validation_alias=AliasChoices("name", "rule_name")
    )
    description: Optional[str] = None
    entity_type: Optional[EntityTypeStr] = None
    trigger_condition: Optional[TriggerConditionStr] = None
    escalate_to_role: Optional[RoleStr] = None
    time_threshold_hours: Optional[int] = Field(None, ge=0)
    predicate_ref: Optional[str] = Field(None, min_length=1, max_length=255)
    priority_filter: Optional[List[PriorityStr]] = None
    notify_channels: Optional[List[ChannelStr]] = None
    is_active: Optional[bool] = None

    def to_patch(self) -> dict:
        """Only the fields the client actually sent."""
        return self.model_dump(exclude_unset=True)


class ManualEscalationRequest(BaseModel):
    """Operator-raised escalation; never deduplicated."""
    entity_type: EntityTypeStr
    entity_id: str = Field(..., min_length=1, max_length=255)
    escalated_to: str = Field(..., min_length=1, max_length=255, description="Recipient user id")
    reason: str = Field(..., min_length=1, description="Why the operator escalated")
    entity_title: Optional[str] = Field(None, max_length=500)
    notify_channels: Optional[List[ChannelStr]] = None


class AcknowledgeRequest(BaseModel):
    """Acknowledge an event. Acknowledgment cannot be undone."""
    acknowledged: Literal[True]
    acknowledged_by: Optional[str] = Field(None, max_length=255)


class DedupClearRequest(BaseModel):
    """Release the dedup lock for a (rule, entity) pair."""
    rule_id: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    cleared_by: Optional[str] = Field(None, max_length=255)


# ========== Response DTOs ==========

class RuleResponse(BaseModel):
    """Escalation rule as returned by the API."""
    id: str
    name: str
    description: Optional[str] = None
    entity_type: EntityTypeStr
    trigger_condition: TriggerConditionStr
    escalate_to_role: RoleStr
    time_threshold_hours: Optional[int] = None
    predicate_ref: Optional[str] = None
    priority_filter: List[PriorityStr] = Field(default_factory=list)
    notify_channels: List[ChannelStr] = Field(default_factory=list)
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, rule: EscalationRule) -> "RuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            entity_type=rule.entity_type,
            trigger_condition=rule.trigger_condition,
            escalate_to_role=rule.escalate_to_role,
            time_threshold_hours=rule.time_threshold_hours,
            predicate_ref=rule.predicate_ref,
            priority_filter=rule.priority_filter,
            notify_channels=rule.notify_channels,
            is_active=rule.is_active,
            created_at=rule.created_at,
            updated_at=rule.updated_at
        )


class EventResponse(BaseModel):
    """Escalation event as returned by the API."""
    id: str
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    entity_type: EntityTypeStr
    entity_id: str
    entity_title: Optional[str] = None
    escalated_to: str
    reason: str
    acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    notification_status: NotificationStatusStr
    notified_at: Optional[datetime] = None
    notification_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, event: EscalationEvent) -> "EventResponse":
        return cls(
            id=event.id,
            rule_id=event.rule_id,
            rule_name=event.rule_name,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            entity_title=event.entity_title,
            escalated_to=event.escalated_to,
            reason=event.reason,
            acknowledged=event.acknowledged,
            acknowledged_at=event.acknowledged_at,
            acknowledged_by=event.acknowledged_by,
            notification_status=event.notification_status,
            notified_at=event.notified_at,
            notification_error=event.notification_error,
            created_at=event.created_at
        )


class SweepFailureResponse(BaseModel):
    entity_type: str
    error_type: str
    message: str
    rule_id: Optional[str] = None
    entity_id: Optional[str] = None


class SweepRunResponse(BaseModel):
    """One evaluator sweep from the run ledger."""
    id: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    rules_evaluated: int
    entity_types: List[str] = Field(default_factory=list)
    entities_scanned: int
    matches: int
    events_created: int
    duplicates_skipped: int
    failures: List[SweepFailureResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, report: SweepReport) -> "SweepRunResponse":
        return cls(**report.to_dict())


class DedupClearResponse(BaseModel):
    rule_id: str
    entity_id: str
    events_acknowledged: int


class MessageResponse(BaseModel):
    message: str
