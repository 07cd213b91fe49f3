"""
Pytest configuration and shared fixtures for the escalation engine tests.

Testing Standards:
- Async tests run in pytest-asyncio auto mode (see pyproject.toml)
- Unit tests go in tests/unit/, database-backed tests in tests/integration/
- Integration tests use a per-test SQLite file through aiosqlite
- Collaborators (snapshot provider, dispatcher) are in-memory fakes
"""

import os
from pathlib import Path

# Settings are read once at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ESCALATION_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault(
    "ESCALATION_CONFIG_PATH",
    str(Path(__file__).parent / "fixtures" / "escalation_config.yaml")
)
os.environ["SLACK_WEBHOOK_URL"] = ""

from datetime import datetime, timezone  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402

from elevare.infrastructure.database import (  # noqa: E402
    init_database, close_database, create_tables, get_session_maker
)
from elevare.escalation.domain import EscalationConfig  # noqa: E402
from elevare.escalation.infrastructure import (  # noqa: E402
    EscalationConfigManager, ConfigRecipientResolver, PredicateRegistry
)
from elevare.escalation.services import (  # noqa: E402
    NotificationRelay, EscalationEmitter, EscalationEvaluator
)
from tests.helpers.fakes import (  # noqa: E402
    FakeSnapshotProvider, RecordingDispatcher
)

FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with all tables, one per test."""
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'escalations.db'}")
    await create_tables()
    yield get_session_maker()
    await close_database()


@pytest.fixture
def escalation_config() -> EscalationConfig:
    return EscalationConfig(
        role_directory={
            "manager": {"default": "u-manager", "by_entity_type": {"support_ticket": "u-support-lead"}},
            "legal_head": {"default": "u-legal-head", "slack_channel": "#legal"},
            "director": {"default": "u-director"},
        },
        default_channels=["in_app"],
    )


@pytest.fixture
def config_provider(escalation_config) -> EscalationConfigManager:
    return EscalationConfigManager(config=escalation_config)


@pytest.fixture
def snapshot_provider() -> FakeSnapshotProvider:
    return FakeSnapshotProvider()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def predicates() -> PredicateRegistry:
    return PredicateRegistry()


@pytest.fixture
async def engine(session_factory, config_provider, snapshot_provider, dispatcher, predicates, now):
    """Relay, emitter and evaluator wired to fakes and a real database."""
    relay = NotificationRelay(dispatcher, session_factory, timeout=2)
    emitter = EscalationEmitter(session_factory, relay, config_provider)
    evaluator = EscalationEvaluator(
        session_factory=session_factory,
        snapshot_provider=snapshot_provider,
        recipient_resolver=ConfigRecipientResolver(config_provider),
        predicate_resolver=predicates,
        emitter=emitter,
        max_workers=4,
        sweep_timeout=10,
        fetch_timeout=1,
        call_timeout=5,
        predicate_timeout=1,
        clock=lambda: now
    )
    yield SimpleNamespace(relay=relay, emitter=emitter, evaluator=evaluator)
    await emitter.drain(timeout=5)
    await relay.drain(timeout=5)
