"""
Escalation Infrastructure Layer
================================

Infrastructure implementations for the escalation engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- Providers: entity snapshots, recipient resolution, custom predicates
- Notifications: in-app and Slack delivery
- External: Slack client, config watcher, scheduler
"""

from elevare.escalation.infrastructure.models import (
    RuleModel,
    EventModel,
    SweepRunModel,
    NotificationModel,
)
from elevare.escalation.infrastructure.repositories import (
    SQLAlchemyRuleRepository,
    SQLAlchemyEventRepository,
    SQLAlchemySweepRunRepository,
)
from elevare.escalation.infrastructure.providers import (
    SQLSnapshotProvider,
    ConfigRecipientResolver,
    PredicateRegistry,
    default_predicate_registry,
)
from elevare.escalation.infrastructure.external import (
    EscalationConfigManager,
    CircuitBreaker,
    CircuitState,
    SlackClient,
    SlackMessage,
    EscalationScheduler,
)
from elevare.escalation.infrastructure.notifications import (
    InAppNotificationSender,
    SlackNotificationSender,
    CompositeNotificationDispatcher,
)

__all__ = [
    "RuleModel",
    "EventModel",
    "SweepRunModel",
    "NotificationModel",
    "SQLAlchemyRuleRepository",
    "SQLAlchemyEventRepository",
    "SQLAlchemySweepRunRepository",
    "SQLSnapshotProvider",
    "ConfigRecipientResolver",
    "PredicateRegistry",
    "default_predicate_registry",
    "EscalationConfigManager",
    "CircuitBreaker",
    "CircuitState",
    "SlackClient",
    "SlackMessage",
    "EscalationScheduler",
    "InAppNotificationSender",
    "SlackNotificationSender",
    "CompositeNotificationDispatcher",
]
