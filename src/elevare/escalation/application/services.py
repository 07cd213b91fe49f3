"""
Escalation Application Services
================================

Application services orchestrate the domain and coordinate with
repositories and collaborators.

Following SOLID principles:
- Single Responsibility: rule store, dedup tracker, emitter/acknowledgment
- Dependency Inversion: depend on the interfaces below, not on SQLAlchemy,
  Slack or any concrete collaborator
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Dict, Any
from uuid import uuid4

from elevare.config import VALID_ENTITY_TYPES
from elevare.core import (
    ValidationException, ResourceNotFoundException,
    ConflictException, RuleInUseException
)
from elevare.escalation.domain import (
    EscalationRule, EscalationEvent, EntitySnapshot, EmissionResult,
    SweepReport, EscalationConfig, CustomPredicate, utcnow
)
from elevare.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class IRuleRepository(ABC):
    """Interface for escalation rule storage."""

    @abstractmethod
    async def create(self, rule: EscalationRule) -> EscalationRule:
        """Persist a new rule and return it with its id."""

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[EscalationRule]:
        """Get rule by id."""

    @abstractmethod
    async def save(self, rule: EscalationRule) -> EscalationRule:
        """Persist changes to an existing rule."""

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Physically delete a rule. Returns False if it did not exist."""

    @abstractmethod
    async def list(
        self,
        filters: Dict[str, Any],
        limit: int = 20,
        offset: int = 0
    ) -> List[EscalationRule]:
        """List rules, newest first."""

    @abstractmethod
    async def list_active(self, entity_type: Optional[str] = None) -> List[EscalationRule]:
        """All active rules, optionally for one entity type."""


class IEventRepository(ABC):
    """Interface for escalation event storage."""

    @abstractmethod
    async def insert(self, event: EscalationEvent) -> EscalationEvent:
        """
        Insert an event as a single atomic write.

        Raises:
            ConflictException: rule-originated event whose (rule_id,
                entity_id) pair already has an open event
        """

    @abstractmethod
    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        """Get event by id."""

    @abstractmethod
    async def latest_for(self, rule_id: str, entity_id: str) -> Optional[EscalationEvent]:
        """Most recent event for a (rule, entity) pair."""

    @abstractmethod
    async def find_open(self, rule_id: str, entity_id: str) -> Optional[EscalationEvent]:
        """The open event for a (rule, entity) pair, if any."""

    @abstractmethod
    async def list(
        self,
        filters: Dict[str, Any],
        limit: int = 20,
        offset: int = 0
    ) -> List[EscalationEvent]:
        """List events, most recent first."""

    @abstractmethod
    async def acknowledge(
        self,
        event_id: str,
        by: Optional[str],
        at: datetime
    ) -> Optional[EscalationEvent]:
        """Acknowledge if open; return the stored event either way."""

    @abstractmethod
    async def acknowledge_open(
        self,
        rule_id: str,
        entity_id: str,
        by: Optional[str],
        at: datetime
    ) -> int:
        """Acknowledge every open event of a pair. Returns the count."""

    @abstractmethod
    async def count_for_rule(self, rule_id: str) -> int:
        """Number of events referencing a rule."""

    @abstractmethod
    async def update_notification(
        self,
        event_id: str,
        status: str,
        at: Optional[datetime],
        error: Optional[str] = None
    ) -> None:
        """Record delivery status on an event."""


class ISweepRunRepository(ABC):
    """Interface for the sweep run ledger."""

    @abstractmethod
    async def record(self, report: SweepReport) -> None:
        """Persist a finished sweep."""

    @abstractmethod
    async def list(self, limit: int = 20, offset: int = 0) -> List[SweepReport]:
        """List sweeps, most recent first."""


# ========== Collaborator Interfaces ==========

class IEntitySnapshotProvider(ABC):
    """Supplies normalized entity snapshots for one domain."""

    @abstractmethod
    async def fetch(self, entity_type: str, include_terminal: bool = False) -> List[EntitySnapshot]:
        """
        Snapshots for an entity type.

        Raises:
            DependencyException: the domain's store is unavailable
        """


class IRecipientResolver(ABC):
    """Turns an escalation role into a concrete recipient."""

    @abstractmethod
    async def resolve_recipient(self, role: str, entity_type: str, entity_id: str) -> str:
        """
        Raises:
            DependencyException: no recipient can be determined
        """


class IPredicateResolver(ABC):
    """Resolves the opaque predicate reference of a custom rule."""

    @abstractmethod
    def resolve(self, predicate_ref: str) -> CustomPredicate:
        """
        Raises:
            DependencyException: unknown reference
        """


class INotificationDispatcher(ABC):
    """Delivers an emitted event to its recipient."""

    @abstractmethod
    async def dispatch(
        self,
        event: EscalationEvent,
        channels: List[str],
        role: Optional[str] = None
    ) -> str:
        """
        Deliver on every requested channel.

        Returns:
            NotificationStatus.SENT, or SKIPPED when no channel is usable

        Raises:
            DispatchException: delivery failed on at least one channel
        """


class IEscalationConfigProvider(ABC):
    """Interface for escalation configuration access."""

    @abstractmethod
    def get_config(self) -> EscalationConfig:
        """Get current escalation configuration."""


# ========== Application Services ==========

class RuleService:
    """
    Rule store operations.

    Rules are soft-disabled through `is_active`; physical deletion is only
    allowed while no event references the rule.
    """

    def __init__(
        self,
        rule_repository: IRuleRepository,
        event_repository: Optional[IEventRepository] = None
    ):
        self._rule_repo = rule_repository
        self._event_repo = event_repository

    async def create(self, data: Dict[str, Any]) -> EscalationRule:
        """Validate and store a new rule."""
        now = utcnow()
        rule = EscalationRule(
            id=None,
            name=data.get("name", ""),
            description=data.get("description"),
            entity_type=data.get("entity_type", ""),
            trigger_condition=data.get("trigger_condition", ""),
            escalate_to_role=data.get("escalate_to_role", ""),
            time_threshold_hours=data.get("time_threshold_hours"),
            predicate_ref=data.get("predicate_ref"),
            priority_filter=data.get("priority_filter") or [],
            notify_channels=data.get("notify_channels") or [],
            is_active=data.get("is_active", True),
            created_at=now,
            updated_at=now
        )
        created = await self._rule_repo.create(rule)
        logger.info(
            "Escalation rule created",
            extra={
                "rule_id": created.id,
                "entity_type": created.entity_type,
                "trigger_condition": created.trigger_condition
            }
        )
        return created

    async def get(self, rule_id: str) -> EscalationRule:
        rule = await self._rule_repo.get(rule_id)
        if rule is None:
            raise ResourceNotFoundException("Escalation rule", rule_id)
        return rule

    async def update(self, rule_id: str, patch: Dict[str, Any]) -> EscalationRule:
        """Apply a partial update; see EscalationRule.apply_patch."""
        rule = await self.get(rule_id)
        updated = await self._rule_repo.save(rule.apply_patch(patch))
        logger.info(
            "Escalation rule updated",
            extra={"rule_id": rule_id, "fields": sorted(patch)}
        )
        return updated

    async def set_active(self, rule_id: str, active: bool) -> EscalationRule:
        """Enable or disable; takes effect from the next sweep."""
        return await self.update(rule_id, {"is_active": active})

    async def list_rules(
        self,
        entity_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[EscalationRule]:
        filters: Dict[str, Any] = {}
        if entity_type is not None:
            filters["entity_type"] = entity_type
        if is_active is not None:
            filters["is_active"] = is_active
        return await self._rule_repo.list(filters, limit=limit, offset=offset)

    async def list_active(self, entity_type: Optional[str] = None) -> List[EscalationRule]:
        return await self._rule_repo.list_active(entity_type)

    async def delete(self, rule_id: str) -> None:
        """
        Delete an unreferenced rule.

        Raises:
            RuleInUseException: events reference the rule
        """
        await self.get(rule_id)
        if self._event_repo is not None:
            referenced = await self._event_repo.count_for_rule(rule_id)
            if referenced:
                raise RuleInUseException(rule_id, referenced)
        await self._rule_repo.delete(rule_id)
        logger.info("Escalation rule deleted", extra={"rule_id": rule_id})


class DeduplicationTracker:
    """
    Open-event bookkeeping per (rule, entity) pair.

    There is no separate lock table: a pair is locked while its latest
    event is unacknowledged. The storage-level unique index on open pairs
    makes check-then-create atomic across workers and replicas.
    """

    def __init__(self, event_repository: IEventRepository):
        self._event_repo = event_repository

    async def has_open_event(self, rule_id: str, entity_id: str) -> bool:
        latest = await self._event_repo.latest_for(rule_id, entity_id)
        return latest is not None and latest.is_open

    async def record(self, rule_id: str, entity_id: str, event_id: str) -> None:
        """Confirm the inserted event now holds the pair's lock."""
        latest = await self._event_repo.latest_for(rule_id, entity_id)
        if latest is None or latest.id != event_id:
            logger.warning(
                "Dedup record does not match latest event",
                extra={"rule_id": rule_id, "entity_id": entity_id, "event_id": event_id}
            )
            return
        logger.debug(
            "Dedup lock recorded",
            extra={"rule_id": rule_id, "entity_id": entity_id, "event_id": event_id}
        )

    async def clear(self, rule_id: str, entity_id: str, by: Optional[str] = None) -> int:
        """Release the lock by acknowledging the pair's open events."""
        cleared = await self._event_repo.acknowledge_open(rule_id, entity_id, by, utcnow())
        if cleared:
            logger.info(
                "Dedup lock cleared",
                extra={"rule_id": rule_id, "entity_id": entity_id, "events_acknowledged": cleared}
            )
        return cleared


class EscalationService:
    """
    Event emitter, manual escalation and acknowledgment.

    Notification dispatch is not done here: callers hand created events to
    the notification relay after the transaction commits, so a delivery
    failure can never roll an event back.
    """

    def __init__(
        self,
        event_repository: IEventRepository,
        tracker: Optional[DeduplicationTracker] = None
    ):
        self._event_repo = event_repository
        self._tracker = tracker or DeduplicationTracker(event_repository)

    @property
    def tracker(self) -> DeduplicationTracker:
        return self._tracker

    @staticmethod
    def _validate_emission(entity_type: str, entity_id: str, escalated_to: str, reason: str) -> None:
        errors = []
        if entity_type not in VALID_ENTITY_TYPES:
            errors.append({"field": "entity_type", "message": f"entity_type must be one of {VALID_ENTITY_TYPES}"})
        if not entity_id or not str(entity_id).strip():
            errors.append({"field": "entity_id", "message": "entity_id is required"})
        if not escalated_to or not escalated_to.strip():
            errors.append({"field": "escalated_to", "message": "escalated_to is required"})
        if not reason or not reason.strip():
            errors.append({"field": "reason", "message": "reason is required"})
        if errors:
            raise ValidationException(f"Invalid escalation: {errors[0]['message']}", errors=errors)

    async def emit(
        self,
        rule_id: Optional[str],
        entity_type: str,
        entity_id: str,
        entity_title: Optional[str],
        escalated_to: str,
        reason: str
    ) -> EmissionResult:
        """
        Create an escalation event.

        Rule-originated emissions are deduplicated: if the pair already has
        an open event that event is returned with `created=False`. Manual
        emissions (`rule_id=None`) always create a new event.
        """
        self._validate_emission(entity_type, entity_id, escalated_to, reason)

        event = EscalationEvent(
            id=str(uuid4()),
            rule_id=rule_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_title=entity_title,
            escalated_to=escalated_to,
            reason=reason,
            created_at=utcnow()
        )

        if rule_id is None:
            created = await self._event_repo.insert(event)
            logger.info(
                "Manual escalation created",
                extra={"event_id": created.id, "entity_type": entity_type, "entity_id": entity_id}
            )
            return EmissionResult(event=created, created=True)

        if await self._tracker.has_open_event(rule_id, event.entity_id):
            existing = await self._event_repo.find_open(rule_id, event.entity_id)
            if existing is not None:
                return EmissionResult(event=existing, created=False)

        try:
            created = await self._event_repo.insert(event)
        except ConflictException:
            # Another worker won the insert race; its event stands
            existing = await self._event_repo.find_open(rule_id, event.entity_id)
            if existing is None:
                raise
            logger.debug(
                "Duplicate open escalation suppressed",
                extra={"rule_id": rule_id, "entity_id": entity_id}
            )
            return EmissionResult(event=existing, created=False)

        await self._tracker.record(rule_id, created.entity_id, created.id)
        logger.info(
            "Escalation created",
            extra={
                "event_id": created.id,
                "rule_id": rule_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "escalated_to": escalated_to
            }
        )
        return EmissionResult(event=created, created=True)

    async def escalate_manually(
        self,
        entity_type: str,
        entity_id: str,
        escalated_to: str,
        reason: str,
        entity_title: Optional[str] = None
    ) -> EscalationEvent:
        """Operator escalation; bypasses matching and dedup."""
        result = await self.emit(None, entity_type, entity_id, entity_title, escalated_to, reason)
        return result.event

    async def acknowledge(self, event_id: str, by: Optional[str] = None) -> EscalationEvent:
        """
        Acknowledge an event. Idempotent: an acknowledged event is returned
        unchanged. Acknowledging releases the pair's dedup lock.
        """
        event = await self._event_repo.acknowledge(event_id, by, utcnow())
        if event is None:
            raise ResourceNotFoundException("Escalation event", event_id)
        logger.info(
            "Escalation acknowledged",
            extra={"event_id": event_id, "acknowledged_by": event.acknowledged_by}
        )
        return event

    async def get_event(self, event_id: str) -> EscalationEvent:
        event = await self._event_repo.get(event_id)
        if event is None:
            raise ResourceNotFoundException("Escalation event", event_id)
        return event

    async def list_events(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[EscalationEvent]:
        return await self._event_repo.list(filters or {}, limit=limit, offset=offset)
