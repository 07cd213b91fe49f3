"""
Notification Dispatchers
========================

Channel implementations behind INotificationDispatcher:
- in_app: a row in the console's notifications table
- slack: Block Kit message through the Slack webhook client
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from elevare.config import NotificationChannel, NotificationStatus
from elevare.core import DispatchException
from elevare.escalation.application import INotificationDispatcher, IEscalationConfigProvider
from elevare.escalation.domain import EscalationEvent, utcnow
from elevare.escalation.infrastructure.external import SlackClient, SlackMessage
from elevare.escalation.infrastructure.models import NotificationModel
from elevare.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ChannelSender(ABC):
    """One delivery channel. `send` returns False when the channel is unusable."""

    channel: str = ""

    @abstractmethod
    async def send(self, event: EscalationEvent, role: Optional[str] = None) -> bool:
        """Deliver one event."""


class InAppNotificationSender(ChannelSender):
    """Writes a notification for the recipient in its own transaction."""

    channel = NotificationChannel.IN_APP

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], console_base_url: str = ""):
        self._session_factory = session_factory
        self._console_base_url = console_base_url.rstrip("/")

    async def send(self, event: EscalationEvent, role: Optional[str] = None) -> bool:
        label = event.entity_title or event.entity_id
        model = NotificationModel(
            user_id=event.escalated_to,
            title=f"Escalation: {label}"[:255],
            message=event.reason,
            link=f"{self._console_base_url}/{event.entity_type}/{event.entity_id}",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            escalation_event_id=UUID(event.id) if event.id else None,
            is_read=False,
            created_at=utcnow()
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.commit()
        except SQLAlchemyError as e:
            raise DispatchException(self.channel, str(e), event_id=event.id) from e
        return True


class SlackNotificationSender(ChannelSender):
    """Posts to Slack; the role's configured channel wins over the default."""

    channel = NotificationChannel.SLACK

    def __init__(self, slack_client: SlackClient, config_provider: Optional[IEscalationConfigProvider] = None):
        self._client = slack_client
        self._config_provider = config_provider

    async def send(self, event: EscalationEvent, role: Optional[str] = None) -> bool:
        if not self._client.is_configured:
            return False

        slack_channel = None
        if self._config_provider is not None:
            slack_channel = self._config_provider.get_config().slack_channel_for(role)

        message = SlackMessage(
            event_id=event.id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            entity_title=event.entity_title,
            escalated_to=event.escalated_to,
            reason=event.reason,
            rule_name=event.rule_name,
            created_at=event.created_at.isoformat() if event.created_at else "",
            channel=slack_channel
        )
        if not await self._client.send_alert(message):
            raise DispatchException(self.channel, "Slack webhook delivery failed", event_id=event.id)
        return True


class CompositeNotificationDispatcher(INotificationDispatcher):
    """
    Fans an event out to the requested channels.

    Every channel is attempted even if an earlier one fails; failures are
    collected into a single DispatchException.
    """

    def __init__(self, senders: List[ChannelSender]):
        self._senders: Dict[str, ChannelSender] = {sender.channel: sender for sender in senders}

    async def dispatch(
        self,
        event: EscalationEvent,
        channels: List[str],
        role: Optional[str] = None
    ) -> str:
        delivered = []
        failures = []

        for channel in channels:
            sender = self._senders.get(channel)
            if sender is None:
                logger.debug("No sender for channel", extra={"channel": channel, "event_id": event.id})
                continue
            try:
                if await sender.send(event, role):
                    delivered.append(channel)
            except DispatchException as e:
                failures.append(f"{channel}: {e.message}")

        if failures:
            raise DispatchException(
                ",".join(channel.split(":")[0] for channel in failures),
                "; ".join(failures),
                event_id=event.id
            )

        if not delivered:
            return NotificationStatus.SKIPPED

        logger.info(
            "Escalation notification delivered",
            extra={"event_id": event.id, "channels": delivered}
        )
        return NotificationStatus.SENT
