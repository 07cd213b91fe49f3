"""
Escalation Application Layer
=============================

Contains:
- Services: rule store, dedup tracker, emitter and acknowledgment
- DTOs: Pydantic models for the REST surface
- Interfaces: repositories and collaborators (snapshot provider, recipient
  resolver, predicate resolver, notification dispatcher)

This layer depends on the domain layer and on interfaces, never on
concrete infrastructure.
"""

from elevare.escalation.application.dto import (
    RuleCreateRequest,
    RuleUpdateRequest,
    ManualEscalationRequest,
    AcknowledgeRequest,
    DedupClearRequest,
    RuleResponse,
    EventResponse,
    SweepRunResponse,
    SweepFailureResponse,
    DedupClearResponse,
    MessageResponse,
    EntityTypeStr,
)
from elevare.escalation.application.services import (
    RuleService,
    DeduplicationTracker,
    EscalationService,
    IRuleRepository,
    IEventRepository,
    ISweepRunRepository,
    IEntitySnapshotProvider,
    IRecipientResolver,
    IPredicateResolver,
    INotificationDispatcher,
    IEscalationConfigProvider,
)

__all__ = [
    # DTOs
    "RuleCreateRequest",
    "RuleUpdateRequest",
    "ManualEscalationRequest",
    "AcknowledgeRequest",
    "DedupClearRequest",
    "RuleResponse",
    "EventResponse",
    "SweepRunResponse",
    "SweepFailureResponse",
    "DedupClearResponse",
    "MessageResponse",
    "EntityTypeStr",
    # Services
    "RuleService",
    "DeduplicationTracker",
    "EscalationService",
    # Interfaces
    "IRuleRepository",
    "IEventRepository",
    "ISweepRunRepository",
    "IEntitySnapshotProvider",
    "IRecipientResolver",
    "IPredicateResolver",
    "INotificationDispatcher",
    "IEscalationConfigProvider",
]
