"""
Escalation Infrastructure Models
=================================

SQLAlchemy ORM models for the escalation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional, List
from uuid import UUID, uuid4

from sqlalchemy import (
    String, DateTime, Boolean, Integer, Text, Uuid, JSON,
    ForeignKey, Index, text
)
from sqlalchemy.orm import Mapped, mapped_column

from elevare.infrastructure.database import Base
from elevare.config import NotificationStatus, SweepStatus


# Predicate of the partial unique index on open (rule_id, entity_id) pairs,
# per dialect. Inserts that rely on the index must repeat it verbatim.
OPEN_EVENT_PREDICATES = {
    "postgresql": text("acknowledged = false"),
    "sqlite": text("acknowledged = 0"),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RuleModel(Base):
    """
    Database model for EscalationRule entity.

    Maps to the 'escalation_rules' table.
    """
    __tablename__ = "escalation_rules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Matching
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    trigger_condition: Mapped[str] = mapped_column(String(50), nullable=False)
    time_threshold_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    predicate_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    priority_filter: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Routing
    escalate_to_role: Mapped[str] = mapped_column(String(50), nullable=False)
    notify_channels: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class EventModel(Base):
    """
    Database model for EscalationEvent entity.

    Maps to the 'escalation_events' table. Rows are never deleted.
    """
    __tablename__ = "escalation_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Null for manual escalations
    rule_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("escalation_rules.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    escalated_to: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    # Acknowledgment
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Notification tracking
    notification_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationStatus.PENDING
    )
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        # At most one open event per (rule, entity). Manual events have a
        # null rule_id and never collide.
        Index(
            "uq_escalation_events_open_pair",
            "rule_id", "entity_id",
            unique=True,
            postgresql_where=OPEN_EVENT_PREDICATES["postgresql"],
            sqlite_where=OPEN_EVENT_PREDICATES["sqlite"],
        ),
        Index("ix_escalation_events_created_at", "created_at"),
        Index("ix_escalation_events_entity", "entity_type", "entity_id"),
    )


class SweepRunModel(Base):
    """
    Database model for SweepReport.

    Maps to the 'escalation_sweep_runs' table.
    """
    __tablename__ = "escalation_sweep_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=SweepStatus.COMPLETED)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Counters
    rules_evaluated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entity_types: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    entities_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    failures: Mapped[list] = mapped_column(JSON, nullable=False, default=list)


class NotificationModel(Base):
    """
    In-app notification shown in the console's notification tray.

    Maps to the 'notifications' table.
    """
    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Source
    entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    escalation_event_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)

    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
