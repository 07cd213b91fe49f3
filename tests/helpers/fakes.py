"""In-memory collaborators for evaluator and emitter tests."""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Set

from elevare.config import NotificationStatus
from elevare.core import DependencyException, DispatchException
from elevare.escalation.application import IEntitySnapshotProvider, INotificationDispatcher
from elevare.escalation.domain import EntitySnapshot, EscalationEvent


def make_snapshot(
    entity_id: str,
    created_at: datetime,
    entity_type: str = "maintenance",
    status: str = "open",
    priority: Optional[str] = "medium",
    due: Optional[datetime] = None,
    last_change: Optional[datetime] = None,
    assignee: Optional[str] = "u-tech",
    title: Optional[str] = None
) -> EntitySnapshot:
    return EntitySnapshot(
        entity_type=entity_type,
        entity_id=entity_id,
        title=title or f"{entity_type} {entity_id}",
        status=status,
        priority=priority,
        created_at=created_at,
        last_status_change_at=last_change or created_at,
        due_or_sla_at=due,
        assignee_id=assignee
    )


class FakeSnapshotProvider(IEntitySnapshotProvider):
    """Serves snapshots per entity type; types can be made to fail or hang."""

    def __init__(self):
        self.snapshots: Dict[str, List[EntitySnapshot]] = {}
        self.failing: Set[str] = set()
        self.hanging: Set[str] = set()
        self.calls: List[tuple] = []

    def set(self, entity_type: str, snapshots: List[EntitySnapshot]) -> None:
        self.snapshots[entity_type] = list(snapshots)

    async def fetch(self, entity_type: str, include_terminal: bool = False) -> List[EntitySnapshot]:
        self.calls.append((entity_type, include_terminal))
        if entity_type in self.failing:
            raise DependencyException(f"snapshot:{entity_type}", "store unavailable")
        if entity_type in self.hanging:
            await asyncio.sleep(3600)
        snapshots = self.snapshots.get(entity_type, [])
        if include_terminal:
            return list(snapshots)
        return [snapshot for snapshot in snapshots if not snapshot.is_terminal]


class RecordingDispatcher(INotificationDispatcher):
    """Records deliveries; `fail=True` makes every delivery raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.deliveries: List[tuple] = []

    async def dispatch(
        self,
        event: EscalationEvent,
        channels: List[str],
        role: Optional[str] = None
    ) -> str:
        self.deliveries.append((event.id, list(channels), role))
        if self.fail:
            raise DispatchException("in_app", "notification store down", event_id=event.id)
        return NotificationStatus.SENT

    @property
    def event_ids(self) -> List[str]:
        return [event_id for event_id, _, _ in self.deliveries]
