"""
Escalation Collaborators
========================

Concrete collaborators used by the evaluator:
- SQLSnapshotProvider: reads entity snapshots from the shared store
- ConfigRecipientResolver: role directory lookup
- PredicateRegistry: named Python predicates for custom rules
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional, Any

from sqlalchemy import select, column, table, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from elevare.config import Priority, TERMINAL_STATUSES
from elevare.core import DependencyException
from elevare.escalation.application import (
    IEntitySnapshotProvider, IRecipientResolver, IPredicateResolver,
    IEscalationConfigProvider
)
from elevare.escalation.domain import (
    EntitySnapshot, EscalationRule, CustomPredicate, SnapshotSourceConfig
)
from elevare.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _as_datetime(value: Any) -> Optional[datetime]:
    """Normalize driver values (datetime, date, ISO string) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"unsupported timestamp value {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class SQLSnapshotProvider(IEntitySnapshotProvider):
    """
    Snapshot provider over the console's relational store.

    Table and column names come from the escalation configuration, so a
    reload can repoint a domain without a deploy. Each fetch uses its own
    short-lived session and never writes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config_provider: IEscalationConfigProvider
    ):
        self._session_factory = session_factory
        self._config_provider = config_provider

    @staticmethod
    def _build_query(source: SnapshotSourceConfig, include_terminal: bool):
        wanted = {
            "entity_id": source.id_column,
            "title": source.title_column,
            "status": source.status_column,
            "priority": source.priority_column,
            "created_at": source.created_at_column,
            "last_status_change_at": source.status_changed_column,
            "due_or_sla_at": source.due_column,
            "assignee_id": source.assignee_column,
        }
        present = {label: name for label, name in wanted.items() if name}
        source_table = table(source.table, *[column(name) for name in set(present.values())])

        stmt = select(*[source_table.c[name].label(label) for label, name in present.items()])
        if not include_terminal:
            stmt = stmt.where(
                func.lower(source_table.c[source.status_column]).not_in(sorted(TERMINAL_STATUSES))
            )
        return stmt

    async def fetch(self, entity_type: str, include_terminal: bool = False) -> List[EntitySnapshot]:
        source = self._config_provider.get_config().get_source(entity_type)
        if source is None:
            raise DependencyException(
                f"snapshot:{entity_type}", "no snapshot source configured"
            )

        stmt = self._build_query(source, include_terminal)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise DependencyException(
                f"snapshot:{entity_type}",
                f"failed to read {source.table}: {e.__class__.__name__}"
            ) from e

        snapshots = []
        for row in rows:
            try:
                snapshots.append(self._to_snapshot(entity_type, row))
            except (TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed entity row",
                    extra={"entity_type": entity_type, "entity_id": row.get("entity_id"), "error": str(e)}
                )

        logger.debug(
            "Entity snapshots fetched",
            extra={"entity_type": entity_type, "count": len(snapshots)}
        )
        return snapshots

    @staticmethod
    def _to_snapshot(entity_type: str, row) -> EntitySnapshot:
        entity_id = str(row["entity_id"])
        created_at = _as_datetime(row["created_at"])
        if created_at is None:
            raise ValueError("created_at is missing")

        assignee = row.get("assignee_id")
        return EntitySnapshot(
            entity_type=entity_type,
            entity_id=entity_id,
            title=str(row.get("title") or f"{entity_type} {entity_id}"),
            status=str(row["status"] or ""),
            priority=row.get("priority"),
            created_at=created_at,
            last_status_change_at=_as_datetime(row.get("last_status_change_at")),
            due_or_sla_at=_as_datetime(row.get("due_or_sla_at")),
            assignee_id=str(assignee) if assignee is not None else None
        )


class ConfigRecipientResolver(IRecipientResolver):
    """Resolves roles through the configured role directory."""

    def __init__(self, config_provider: IEscalationConfigProvider):
        self._config_provider = config_provider

    async def resolve_recipient(self, role: str, entity_type: str, entity_id: str) -> str:
        recipient = self._config_provider.get_config().recipient_for(role, entity_type)
        if not recipient:
            raise DependencyException(
                "recipient_resolver",
                f"no recipient configured for role '{role}' on {entity_type}"
            )
        return recipient


class PredicateRegistry(IPredicateResolver):
    """
    Named predicates for custom rules.

    A custom rule's `predicate_ref` is a key into this registry. Predicates
    are plain synchronous callables `(rule, snapshot, now) -> bool`; the
    evaluator runs them off the event loop under a timeout.
    """

    def __init__(self):
        self._predicates: Dict[str, CustomPredicate] = {}

    def register(self, name: str, predicate: Optional[CustomPredicate] = None):
        """Register a predicate; usable directly or as a decorator."""
        def decorator(func: CustomPredicate) -> CustomPredicate:
            self._predicates[name] = func
            return func

        if predicate is not None:
            return decorator(predicate)
        return decorator

    def resolve(self, predicate_ref: str) -> CustomPredicate:
        try:
            return self._predicates[predicate_ref]
        except KeyError:
            raise DependencyException(
                "predicate_registry", f"unknown predicate '{predicate_ref}'"
            ) from None

    def names(self) -> List[str]:
        return sorted(self._predicates)


def _critical_unassigned(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> bool:
    return snapshot.priority == Priority.CRITICAL and not snapshot.is_assigned and not snapshot.is_terminal


def _due_within_24h(rule: EscalationRule, snapshot: EntitySnapshot, now: datetime) -> bool:
    if snapshot.due_or_sla_at is None or snapshot.is_terminal:
        return False
    return now <= snapshot.due_or_sla_at <= now + timedelta(hours=24)


def default_predicate_registry() -> PredicateRegistry:
    """Registry preloaded with the predicates the console ships with."""
    registry = PredicateRegistry()
    registry.register("critical_unassigned", _critical_unassigned)
    registry.register("due_within_24h", _due_within_24h)
    return registry
