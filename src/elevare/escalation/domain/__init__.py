"""
Escalation Domain Layer
=======================

Contains:
- Entities: EscalationRule, EntitySnapshot, EscalationEvent, SweepReport
- Matchers: ConditionMatcher, one pure function per trigger kind
- Value Objects: EscalationConfig (role directory, channels, sources)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from elevare.escalation.domain.entities import (
    EscalationRule,
    EntitySnapshot,
    EscalationEvent,
    EmissionResult,
    DomainFailure,
    SweepReport,
    utcnow,
    ensure_utc,
)
from elevare.escalation.domain.matchers import ConditionMatcher, CustomPredicate, MATCHERS
from elevare.escalation.domain.value_objects import (
    EscalationConfig,
    RoleRecipients,
    SnapshotSourceConfig,
    default_snapshot_sources,
)

__all__ = [
    # Entities
    "EscalationRule",
    "EntitySnapshot",
    "EscalationEvent",
    "EmissionResult",
    "DomainFailure",
    "SweepReport",
    "utcnow",
    "ensure_utc",
    # Matchers
    "ConditionMatcher",
    "CustomPredicate",
    "MATCHERS",
    # Value Objects
    "EscalationConfig",
    "RoleRecipients",
    "SnapshotSourceConfig",
    "default_snapshot_sources",
]
