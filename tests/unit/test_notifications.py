"""
Unit tests for notification fan-out and the lightweight collaborators.

Tests cover:
- CompositeNotificationDispatcher outcomes (sent, skipped, failed)
- SlackNotificationSender channel selection
- ConfigRecipientResolver and PredicateRegistry
"""

from datetime import timedelta
from typing import Optional

import httpx
import pytest

from elevare.config import NotificationStatus
from elevare.core import DependencyException, DispatchException
from elevare.escalation.domain import EscalationEvent
from elevare.escalation.infrastructure import (
    CompositeNotificationDispatcher,
    ConfigRecipientResolver,
    PredicateRegistry,
    SlackClient,
    SlackNotificationSender,
    default_predicate_registry,
)
from elevare.escalation.infrastructure.notifications import ChannelSender
from tests.helpers.fakes import make_snapshot


class StubSender(ChannelSender):
    def __init__(self, channel: str, outcome="ok"):
        self.channel = channel
        self.outcome = outcome
        self.sent = []

    async def send(self, event: EscalationEvent, role: Optional[str] = None) -> bool:
        self.sent.append((event.id, role))
        if self.outcome == "fail":
            raise DispatchException(self.channel, "unreachable", event_id=event.id)
        return self.outcome == "ok"


@pytest.fixture
def event(now) -> EscalationEvent:
    return EscalationEvent(
        id="8d6a3c1e-0000-4000-8000-000000000001", rule_id=None,
        entity_type="legal_case", entity_id="l-7", entity_title="Lease dispute",
        escalated_to="u-legal-head", reason="Manual escalation", created_at=now
    )


class TestCompositeNotificationDispatcher:
    """Fan-out across channels."""

    def test_sender_must_implement_send(self) -> None:
        class Incomplete(ChannelSender):
            channel = "in_app"

        with pytest.raises(TypeError):
            Incomplete()

    async def test_delivered_channel_reports_sent(self, event) -> None:
        in_app = StubSender("in_app")
        dispatcher = CompositeNotificationDispatcher([in_app])

        status = await dispatcher.dispatch(event, ["in_app"], role="legal_head")

        assert status == NotificationStatus.SENT
        assert in_app.sent == [(event.id, "legal_head")]

    async def test_unusable_channels_report_skipped(self, event) -> None:
        """An unconfigured sender and an unknown channel deliver nothing."""
        dispatcher = CompositeNotificationDispatcher([StubSender("slack", outcome="unconfigured")])

        status = await dispatcher.dispatch(event, ["slack", "in_app"])

        assert status == NotificationStatus.SKIPPED

    async def test_every_channel_attempted_before_failing(self, event) -> None:
        slack = StubSender("slack", outcome="fail")
        in_app = StubSender("in_app")
        dispatcher = CompositeNotificationDispatcher([slack, in_app])

        with pytest.raises(DispatchException) as exc_info:
            await dispatcher.dispatch(event, ["slack", "in_app"])

        assert in_app.sent
        assert exc_info.value.channel == "slack"
        assert exc_info.value.event_id == event.id


class TestSlackNotificationSender:
    """Role channel lookup and failure translation."""

    async def test_role_channel_used(self, event, config_provider) -> None:
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request.read().decode())
            return httpx.Response(200)

        client = SlackClient(
            webhook_url="https://hooks.slack.test/x",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            retry_base_delay=0
        )
        sender = SlackNotificationSender(client, config_provider)

        assert await sender.send(event, role="legal_head") is True
        assert "#legal" in bodies[0]
        await client.close()

    async def test_unconfigured_client_is_skipped(self, event) -> None:
        sender = SlackNotificationSender(SlackClient(webhook_url=""))

        assert await sender.send(event) is False

    async def test_failed_delivery_raises(self, event) -> None:
        client = SlackClient(
            webhook_url="https://hooks.slack.test/x",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
            retry_base_delay=0
        )

        with pytest.raises(DispatchException):
            await SlackNotificationSender(client).send(event)
        await client.close()


class TestConfigRecipientResolver:
    async def test_resolves_override(self, config_provider) -> None:
        resolver = ConfigRecipientResolver(config_provider)

        assert await resolver.resolve_recipient("manager", "support_ticket", "t-1") == "u-support-lead"

    async def test_missing_recipient_raises(self, config_provider) -> None:
        resolver = ConfigRecipientResolver(config_provider)

        with pytest.raises(DependencyException):
            await resolver.resolve_recipient("operations_head", "construction", "c-1")


class TestPredicateRegistry:
    def test_decorator_registration(self) -> None:
        registry = PredicateRegistry()

        @registry.register("always")
        def always(rule, snapshot, now):
            return True

        assert registry.resolve("always") is always
        assert registry.names() == ["always"]

    def test_unknown_predicate_raises(self) -> None:
        with pytest.raises(DependencyException):
            PredicateRegistry().resolve("nope")

    def test_default_predicates(self, now) -> None:
        registry = default_predicate_registry()
        due_soon = registry.resolve("due_within_24h")
        critical = registry.resolve("critical_unassigned")

        assert due_soon(None, make_snapshot("m1", now, due=now + timedelta(hours=5)), now)
        assert not due_soon(None, make_snapshot("m1", now, due=now + timedelta(days=3)), now)
        assert critical(None, make_snapshot("m1", now, priority="critical", assignee=None), now)
        assert not critical(None, make_snapshot("m1", now, priority="critical"), now)
