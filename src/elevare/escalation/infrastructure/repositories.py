"""
Escalation Infrastructure Repositories
=======================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
rules, events and sweep runs. Repositories flush but never commit; the
session owner decides the transaction boundary.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select, update, func, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from elevare.config import NotificationStatus
from elevare.core import ConflictException, RepositoryException
from elevare.escalation.application import (
    IRuleRepository, IEventRepository, ISweepRunRepository
)
from elevare.escalation.domain import (
    EscalationRule, EscalationEvent, SweepReport, DomainFailure, ensure_utc
)
from elevare.escalation.infrastructure.models import (
    RuleModel, EventModel, SweepRunModel, OPEN_EVENT_PREDICATES
)

# Dialects whose INSERT supports ON CONFLICT against a partial index
_ON_CONFLICT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    """Parse an id from the API; malformed ids never match a row."""
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _rule_to_domain(model: RuleModel) -> EscalationRule:
    return EscalationRule(
        id=str(model.id),
        name=model.name,
        description=model.description,
        entity_type=model.entity_type,
        trigger_condition=model.trigger_condition,
        escalate_to_role=model.escalate_to_role,
        time_threshold_hours=model.time_threshold_hours,
        predicate_ref=model.predicate_ref,
        priority_filter=list(model.priority_filter or []),
        notify_channels=list(model.notify_channels or []),
        is_active=model.is_active,
        created_at=model.created_at,
        updated_at=model.updated_at
    )


def _event_to_domain(model: EventModel, rule_name: Optional[str] = None) -> EscalationEvent:
    return EscalationEvent(
        id=str(model.id),
        rule_id=str(model.rule_id) if model.rule_id else None,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        entity_title=model.entity_title,
        escalated_to=model.escalated_to,
        reason=model.reason,
        acknowledged=model.acknowledged,
        acknowledged_at=model.acknowledged_at,
        acknowledged_by=model.acknowledged_by,
        created_at=model.created_at,
        notification_status=model.notification_status,
        notified_at=model.notified_at,
        notification_error=model.notification_error,
        rule_name=rule_name
    )


class SQLAlchemyRuleRepository(IRuleRepository):
    """
    SQLAlchemy implementation of the rule repository.

    Handles persistence of EscalationRule entities using async SQLAlchemy.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, rule_id: str) -> Optional[RuleModel]:
        rule_uuid = _parse_uuid(rule_id)
        if rule_uuid is None:
            return None
        return await self._session.get(RuleModel, rule_uuid)

    async def create(self, rule: EscalationRule) -> EscalationRule:
        """Create new rule."""
        model = RuleModel(
            id=uuid4(),
            name=rule.name,
            description=rule.description,
            entity_type=rule.entity_type,
            trigger_condition=rule.trigger_condition,
            escalate_to_role=rule.escalate_to_role,
            time_threshold_hours=rule.time_threshold_hours,
            predicate_ref=rule.predicate_ref,
            priority_filter=list(rule.priority_filter),
            notify_channels=list(rule.notify_channels),
            is_active=rule.is_active,
            created_at=rule.created_at,
            updated_at=rule.updated_at
        )

        self._session.add(model)
        await self._session.flush()

        rule.id = str(model.id)
        return rule

    async def get(self, rule_id: str) -> Optional[EscalationRule]:
        """Get rule by ID."""
        model = await self._get_model(rule_id)
        return _rule_to_domain(model) if model else None

    async def save(self, rule: EscalationRule) -> EscalationRule:
        """Update existing rule."""
        model = await self._get_model(rule.id)
        if model is None:
            raise RepositoryException(f"Escalation rule {rule.id} not found")

        model.name = rule.name
        model.description = rule.description
        model.entity_type = rule.entity_type
        model.trigger_condition = rule.trigger_condition
        model.escalate_to_role = rule.escalate_to_role
        model.time_threshold_hours = rule.time_threshold_hours
        model.predicate_ref = rule.predicate_ref
        model.priority_filter = list(rule.priority_filter)
        model.notify_channels = list(rule.notify_channels)
        model.is_active = rule.is_active
        model.updated_at = rule.updated_at

        await self._session.flush()
        return _rule_to_domain(model)

    async def delete(self, rule_id: str) -> bool:
        model = await self._get_model(rule_id)
        if model is None:
            return False
        await self._session.delete(model)
        await self._session.flush()
        return True

    async def list(
        self,
        filters: Dict[str, Any],
        limit: int = 20,
        offset: int = 0
    ) -> List[EscalationRule]:
        """List rules with filters."""
        stmt = select(RuleModel)

        conditions = []
        if "entity_type" in filters:
            conditions.append(RuleModel.entity_type == filters["entity_type"])
        if "is_active" in filters:
            conditions.append(RuleModel.is_active.is_(bool(filters["is_active"])))

        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(RuleModel.created_at.desc()).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [_rule_to_domain(model) for model in result.scalars().all()]

    async def list_active(self, entity_type: Optional[str] = None) -> List[EscalationRule]:
        """Active rules in creation order."""
        stmt = select(RuleModel).where(RuleModel.is_active.is_(True))
        if entity_type:
            stmt = stmt.where(RuleModel.entity_type == entity_type)
        stmt = stmt.order_by(RuleModel.created_at)

        result = await self._session.execute(stmt)
        return [_rule_to_domain(model) for model in result.scalars().all()]


class SQLAlchemyEventRepository(IEventRepository):
    """
    SQLAlchemy implementation of the event repository.

    Rule-originated inserts go through ON CONFLICT DO NOTHING against the
    partial unique index on open pairs, so check-and-create is one atomic
    statement. Dialects without that support fall back to a savepoint and
    the IntegrityError raised by the same index.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    def _select_with_rule_name(self):
        return (
            select(EventModel, RuleModel.name)
            .outerjoin(RuleModel, EventModel.rule_id == RuleModel.id)
            .execution_options(populate_existing=True)
        )

    async def _first(self, stmt) -> Optional[EscalationEvent]:
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        model, rule_name = row
        return _event_to_domain(model, rule_name)

    async def insert(self, event: EscalationEvent) -> EscalationEvent:
        """Create new event; raises ConflictException for a duplicate open pair."""
        event_id = _parse_uuid(event.id) or uuid4()
        rule_uuid = _parse_uuid(event.rule_id)
        if event.rule_id is not None and rule_uuid is None:
            raise RepositoryException(f"Invalid rule id '{event.rule_id}'")

        values = {
            "id": event_id,
            "rule_id": rule_uuid,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "entity_title": event.entity_title,
            "escalated_to": event.escalated_to,
            "reason": event.reason,
            "acknowledged": False,
            "notification_status": event.notification_status or NotificationStatus.PENDING,
            "created_at": event.created_at,
        }

        if rule_uuid is None:
            self._session.add(EventModel(**values))
            await self._session.flush()
        else:
            dialect = self._session.get_bind().dialect.name
            insert_fn = _ON_CONFLICT_INSERTS.get(dialect)
            if insert_fn is not None:
                stmt = (
                    insert_fn(EventModel)
                    .values(**values)
                    .on_conflict_do_nothing(
                        index_elements=[EventModel.rule_id, EventModel.entity_id],
                        index_where=OPEN_EVENT_PREDICATES[dialect],
                    )
                    .returning(EventModel.id)
                )
                result = await self._session.execute(stmt)
                if result.scalar_one_or_none() is None:
                    raise ConflictException(event.rule_id, event.entity_id)
            else:
                try:
                    async with self._session.begin_nested():
                        self._session.add(EventModel(**values))
                        await self._session.flush()
                except IntegrityError as e:
                    raise ConflictException(event.rule_id, event.entity_id) from e

        event.id = str(event_id)
        event.acknowledged = False
        return event

    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        """Get event by ID."""
        event_uuid = _parse_uuid(event_id)
        if event_uuid is None:
            return None
        return await self._first(self._select_with_rule_name().where(EventModel.id == event_uuid))

    async def latest_for(self, rule_id: str, entity_id: str) -> Optional[EscalationEvent]:
        rule_uuid = _parse_uuid(rule_id)
        if rule_uuid is None:
            return None
        stmt = (
            self._select_with_rule_name()
            .where(EventModel.rule_id == rule_uuid, EventModel.entity_id == str(entity_id))
            .order_by(EventModel.created_at.desc())
            .limit(1)
        )
        return await self._first(stmt)

    async def find_open(self, rule_id: str, entity_id: str) -> Optional[EscalationEvent]:
        rule_uuid = _parse_uuid(rule_id)
        if rule_uuid is None:
            return None
        stmt = (
            self._select_with_rule_name()
            .where(
                EventModel.rule_id == rule_uuid,
                EventModel.entity_id == str(entity_id),
                EventModel.acknowledged.is_(False)
            )
            .limit(1)
        )
        return await self._first(stmt)

    async def list(
        self,
        filters: Dict[str, Any],
        limit: int = 20,
        offset: int = 0
    ) -> List[EscalationEvent]:
        """List events with filters, most recent first."""
        stmt = self._select_with_rule_name()

        conditions = []
        if filters.get("acknowledged") is not None:
            conditions.append(EventModel.acknowledged.is_(bool(filters["acknowledged"])))
        if filters.get("entity_type"):
            conditions.append(EventModel.entity_type == filters["entity_type"])
        if filters.get("entity_id"):
            conditions.append(EventModel.entity_id == str(filters["entity_id"]))
        if filters.get("rule_id"):
            rule_uuid = _parse_uuid(filters["rule_id"])
            if rule_uuid is None:
                return []
            conditions.append(EventModel.rule_id == rule_uuid)

        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(EventModel.created_at.desc()).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [_event_to_domain(model, rule_name) for model, rule_name in result.all()]

    async def acknowledge(
        self,
        event_id: str,
        by: Optional[str],
        at: datetime
    ) -> Optional[EscalationEvent]:
        """Conditional update; an already acknowledged row is left as is."""
        event_uuid = _parse_uuid(event_id)
        if event_uuid is None:
            return None

        stmt = (
            update(EventModel)
            .where(EventModel.id == event_uuid, EventModel.acknowledged.is_(False))
            .values(acknowledged=True, acknowledged_at=ensure_utc(at), acknowledged_by=by)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        return await self.get(event_id)

    async def acknowledge_open(
        self,
        rule_id: str,
        entity_id: str,
        by: Optional[str],
        at: datetime
    ) -> int:
        rule_uuid = _parse_uuid(rule_id)
        if rule_uuid is None:
            return 0

        stmt = (
            update(EventModel)
            .where(
                EventModel.rule_id == rule_uuid,
                EventModel.entity_id == str(entity_id),
                EventModel.acknowledged.is_(False)
            )
            .values(acknowledged=True, acknowledged_at=ensure_utc(at), acknowledged_by=by)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def count_for_rule(self, rule_id: str) -> int:
        rule_uuid = _parse_uuid(rule_id)
        if rule_uuid is None:
            return 0
        stmt = select(func.count()).select_from(EventModel).where(EventModel.rule_id == rule_uuid)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def update_notification(
        self,
        event_id: str,
        status: str,
        at: Optional[datetime],
        error: Optional[str] = None
    ) -> None:
        event_uuid = _parse_uuid(event_id)
        if event_uuid is None:
            raise RepositoryException(f"Invalid event id '{event_id}'")

        stmt = (
            update(EventModel)
            .where(EventModel.id == event_uuid)
            .values(notification_status=status, notified_at=ensure_utc(at), notification_error=error)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class SQLAlchemySweepRunRepository(ISweepRunRepository):
    """
    SQLAlchemy implementation of the sweep run ledger.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(self, report: SweepReport) -> None:
        model = SweepRunModel(
            id=_parse_uuid(report.id) or uuid4(),
            trigger=report.trigger,
            status=report.status,
            started_at=report.started_at,
            finished_at=report.finished_at,
            duration_ms=report.duration_ms,
            rules_evaluated=report.rules_evaluated,
            entity_types=list(report.entity_types),
            entities_scanned=report.entities_scanned,
            matches=report.matches,
            events_created=report.events_created,
            duplicates_skipped=report.duplicates_skipped,
            failures=[failure.to_dict() for failure in report.failures]
        )
        self._session.add(model)
        await self._session.flush()

    async def list(self, limit: int = 20, offset: int = 0) -> List[SweepReport]:
        stmt = (
            select(SweepRunModel)
            .order_by(SweepRunModel.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)

        reports = []
        for model in result.scalars().all():
            reports.append(SweepReport(
                id=str(model.id),
                trigger=model.trigger,
                status=model.status,
                started_at=ensure_utc(model.started_at),
                finished_at=ensure_utc(model.finished_at),
                rules_evaluated=model.rules_evaluated,
                entity_types=list(model.entity_types or []),
                entities_scanned=model.entities_scanned,
                matches=model.matches,
                events_created=model.events_created,
                duplicates_skipped=model.duplicates_skipped,
                failures=[DomainFailure(**failure) for failure in (model.failures or [])]
            ))
        return reports
