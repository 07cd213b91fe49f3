#!/usr/bin/env python3
"""
Run One Escalation Sweep
========================

Runs a single evaluator sweep outside the API process, e.g. from cron or
after a migration, and prints the sweep report as JSON.

Usage:
    python scripts/run_sweep.py [--create-tables]
"""

import argparse
import asyncio
import json

from elevare.config import settings
from elevare.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)
from elevare.escalation.infrastructure import (
    EscalationConfigManager, SlackClient, SQLSnapshotProvider,
    ConfigRecipientResolver, default_predicate_registry,
    InAppNotificationSender, SlackNotificationSender, CompositeNotificationDispatcher
)
from elevare.escalation.services import (
    NotificationRelay, EscalationEmitter, EscalationEvaluator
)
from elevare.shared.infrastructure.logging import setup_logging


async def main(create: bool) -> int:
    setup_logging(settings.log_level, settings.environment)
    init_database()
    if create:
        await create_tables()

    config_manager = EscalationConfigManager()
    config_manager.load(settings.escalation_config_path)

    session_factory = get_session_maker()
    slack_client = SlackClient()
    relay = NotificationRelay(
        CompositeNotificationDispatcher([
            InAppNotificationSender(session_factory, settings.console_base_url),
            SlackNotificationSender(slack_client, config_manager),
        ]),
        session_factory
    )
    evaluator = EscalationEvaluator(
        session_factory=session_factory,
        snapshot_provider=SQLSnapshotProvider(session_factory, config_manager),
        recipient_resolver=ConfigRecipientResolver(config_manager),
        predicate_resolver=default_predicate_registry(),
        emitter=EscalationEmitter(session_factory, relay, config_manager)
    )

    try:
        report = await evaluator.run_sweep(trigger="manual")
        await relay.drain(timeout=settings.escalation_shutdown_grace_seconds)
    finally:
        await slack_client.close()
        await close_database()

    print(json.dumps(report.to_dict(), indent=2))
    return 0 if not report.failures else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--create-tables", action="store_true", help="Create tables before sweeping")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(main(args.create_tables)))
