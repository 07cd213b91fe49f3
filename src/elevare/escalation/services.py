"""
Escalation Engine Services
==========================

Background services that drive the engine:
- NotificationRelay: fire-and-forget delivery with status write-back
- EscalationEmitter: emit in a dedicated transaction, then hand off
- EscalationEvaluator: periodic sweeps over all active rules

These coordinate the application services with concrete infrastructure
(sessions, snapshot providers, dispatchers) and own the sweep's
concurrency, timeouts and failure isolation.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from elevare.config import (
    settings, NotificationStatus, SweepState, SweepStatus, TriggerCondition
)
from elevare.core import ApplicationException, DependencyException, DispatchException
from elevare.escalation.application import (
    EscalationService, IEntitySnapshotProvider, IRecipientResolver,
    IPredicateResolver, INotificationDispatcher, IEscalationConfigProvider
)
from elevare.escalation.domain import (
    ConditionMatcher, CustomPredicate, DomainFailure, EmissionResult,
    EntitySnapshot, EscalationEvent, EscalationRule, SweepReport, utcnow
)
from elevare.escalation.infrastructure.repositories import (
    SQLAlchemyEventRepository, SQLAlchemyRuleRepository, SQLAlchemySweepRunRepository
)
from elevare.shared.infrastructure.grafana import GrafanaOTLPExporter
from elevare.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


class NotificationRelay:
    """
    Delivers emitted events in the background.

    Delivery runs in its own task and its own transaction. The outcome is
    written back to the event's delivery status; nothing that happens here
    can roll back or re-create the event.
    """

    def __init__(
        self,
        dispatcher: INotificationDispatcher,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: Optional[float] = None
    ):
        self._dispatcher = dispatcher
        self._session_factory = session_factory
        self._timeout = timeout or settings.escalation_call_timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        event: EscalationEvent,
        channels: List[str],
        role: Optional[str] = None
    ) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(event, channels, role))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, event: EscalationEvent, channels: List[str], role: Optional[str]) -> str:
        notified_at: Optional[datetime] = None
        error: Optional[str] = None

        try:
            status = await asyncio.wait_for(
                self._dispatcher.dispatch(event, channels, role),
                timeout=self._timeout
            )
            if status == NotificationStatus.SENT:
                notified_at = utcnow()
        except DispatchException as e:
            status, error = NotificationStatus.FAILED, e.message
        except asyncio.TimeoutError:
            status, error = NotificationStatus.FAILED, f"delivery timed out after {self._timeout}s"
        except Exception as e:
            # Background task: nobody awaits the result, so log with traceback
            logger.exception("Unexpected notification error", extra={"event_id": event.id})
            status, error = NotificationStatus.FAILED, f"{e.__class__.__name__}: {e}"

        if error:
            logger.warning(
                "Escalation notification failed",
                extra={"event_id": event.id, "channels": channels, "error": error}
            )

        try:
            async with self._session_factory() as session:
                await SQLAlchemyEventRepository(session).update_notification(
                    event.id, status, notified_at, error
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record notification status",
                extra={"event_id": event.id, "status": status, "error": str(e)}
            )

        event.notification_status = status
        event.notified_at = notified_at
        event.notification_error = error
        return status

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries; cancel what is left after `timeout`."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled undelivered notifications", extra={"count": len(pending)})


class EscalationEmitter:
    """
    The single entry point that creates escalation events.

    Each emit runs in a dedicated transaction that is committed before the
    notification is handed to the relay, so a created event is durable
    before anyone is told about it. The commit and the hand-off run as one
    shielded task: a caller that times out or is cancelled still gets every
    committed event delivered.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        relay: NotificationRelay,
        config_provider: IEscalationConfigProvider
    ):
        self._session_factory = session_factory
        self._relay = relay
        self._config_provider = config_provider
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def is_escalated(self, rule_id: str, entity_id: str) -> bool:
        async with self._session_factory() as session:
            service = EscalationService(SQLAlchemyEventRepository(session))
            return await service.tracker.has_open_event(rule_id, entity_id)

    async def emit(
        self,
        rule_id: Optional[str],
        entity_type: str,
        entity_id: str,
        entity_title: Optional[str],
        escalated_to: str,
        reason: str,
        channels: Optional[List[str]] = None,
        role: Optional[str] = None
    ) -> EmissionResult:
        task = asyncio.ensure_future(self._emit(
            rule_id, entity_type, entity_id, entity_title, escalated_to, reason, channels, role
        ))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(task)

    async def _emit(
        self,
        rule_id: Optional[str],
        entity_type: str,
        entity_id: str,
        entity_title: Optional[str],
        escalated_to: str,
        reason: str,
        channels: Optional[List[str]],
        role: Optional[str]
    ) -> EmissionResult:
        async with self._session_factory() as session:
            service = EscalationService(SQLAlchemyEventRepository(session))
            result = await service.emit(rule_id, entity_type, entity_id, entity_title, escalated_to, reason)
            await session.commit()
            if result.created:
                # Handed off before the session closes; closing can still be interrupted
                config = self._config_provider.get_config()
                self._relay.submit(result.event, config.channels_for(channels), role)
        return result

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for emits whose callers have stopped waiting."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Escalation writes still in flight at shutdown", extra={"count": len(pending)})


class EscalationEvaluator:
    """
    Periodic evaluator.

    One sweep at a time (`Idle -> LoadingRules -> Dispatching ->
    AwaitingWorkers -> Idle`). A sweep reads the active rules once, fetches
    snapshots once per entity type, and fans (rule, snapshot) work out to a
    bounded pool. A failing type or unit is recorded on the sweep report and
    skipped; it is picked up again by the next sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshot_provider: IEntitySnapshotProvider,
        recipient_resolver: IRecipientResolver,
        predicate_resolver: IPredicateResolver,
        emitter: EscalationEmitter,
        exporter: Optional[GrafanaOTLPExporter] = None,
        max_workers: Optional[int] = None,
        sweep_timeout: Optional[float] = None,
        fetch_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
        predicate_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self._provider = snapshot_provider
        self._resolver = recipient_resolver
        self._predicates = predicate_resolver
        self._emitter = emitter
        self._exporter = exporter
        self._max_workers = max_workers or settings.escalation_max_workers
        self._sweep_timeout = sweep_timeout or settings.escalation_sweep_timeout_seconds
        self._fetch_timeout = fetch_timeout or settings.escalation_fetch_timeout_seconds
        self._call_timeout = call_timeout or settings.escalation_call_timeout_seconds
        self._predicate_timeout = predicate_timeout or settings.custom_predicate_timeout_seconds
        self._clock = clock

        self._lock = asyncio.Lock()
        self._state = SweepState.IDLE
        self._current_task: Optional[asyncio.Task] = None
        self._last_report: Optional[SweepReport] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_report(self) -> Optional[SweepReport]:
        return self._last_report

    async def run_sweep(self, trigger: str = "scheduled") -> SweepReport:
        """
        Run one sweep and return its report.

        If a sweep is already in progress this returns immediately with a
        `skipped` report; sweeps never queue up.
        """
        if self._lock.locked():
            report = SweepReport(id=str(uuid4()), started_at=utcnow(), trigger=trigger)
            report.finish(SweepStatus.SKIPPED)
            logger.info("Escalation sweep skipped, previous sweep still running", extra={"trigger": trigger})
            return report

        async with self._lock:
            report = SweepReport(id=str(uuid4()), started_at=utcnow(), trigger=trigger)
            self._current_task = asyncio.current_task()
            logger.info("Escalation sweep started", extra={"sweep_id": report.id, "trigger": trigger})

            try:
                await asyncio.wait_for(self._sweep(report), timeout=self._sweep_timeout)
                report.finish()
            except asyncio.TimeoutError:
                logger.error(
                    "Escalation sweep timed out",
                    extra={"sweep_id": report.id, "timeout_seconds": self._sweep_timeout}
                )
                report.finish(SweepStatus.TIMED_OUT)
            except asyncio.CancelledError:
                report.finish(SweepStatus.CANCELLED)
                logger.warning("Escalation sweep cancelled", extra={"sweep_id": report.id})
                await self._complete(report)
                raise
            except DependencyException as e:
                report.record_failure(DomainFailure(
                    entity_type="*", error_type=type(e).__name__, message=e.message
                ))
                report.finish(SweepStatus.FAILED)
                logger.error("Escalation sweep failed", extra={"sweep_id": report.id, "error": e.message})
            finally:
                self._state = SweepState.IDLE
                self._current_task = None

            await self._complete(report)
            return report

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """Give an in-flight sweep `grace` seconds to finish, then cancel it."""
        task = self._current_task
        if task is None or task.done():
            return
        grace = settings.escalation_shutdown_grace_seconds if grace is None else grace
        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ========== Sweep internals ==========

    async def _sweep(self, report: SweepReport) -> None:
        self._state = SweepState.LOADING_RULES
        now = self._clock()
        rules = await self._load_rules()
        report.rules_evaluated = len(rules)

        by_type: Dict[str, List[EscalationRule]] = defaultdict(list)
        for rule in rules:
            by_type[rule.entity_type].append(rule)
        report.entity_types = sorted(by_type)

        if not by_type:
            return

        self._state = SweepState.DISPATCHING
        semaphore = asyncio.Semaphore(self._max_workers)
        type_tasks = [
            asyncio.create_task(self._evaluate_type(entity_type, type_rules, now, report, semaphore))
            for entity_type, type_rules in by_type.items()
        ]

        self._state = SweepState.AWAITING_WORKERS
        await asyncio.gather(*type_tasks)

    async def _load_rules(self) -> List[EscalationRule]:
        """Active rules as stored at sweep start."""
        try:
            async with self._session_factory() as session:
                return await asyncio.wait_for(
                    SQLAlchemyRuleRepository(session).list_active(),
                    timeout=self._call_timeout
                )
        except (SQLAlchemyError, asyncio.TimeoutError) as e:
            raise DependencyException("rule_store", f"could not load active rules: {e!r}") from e

    async def _evaluate_type(
        self,
        entity_type: str,
        rules: List[EscalationRule],
        now: datetime,
        report: SweepReport,
        semaphore: asyncio.Semaphore
    ) -> None:
        """Fetch one type's snapshots and evaluate every rule of that type."""
        include_terminal = any(rule.trigger_condition == TriggerCondition.OVERDUE for rule in rules)

        try:
            async with semaphore:
                with log_latency(logger, "snapshot_fetch", entity_type=entity_type, sweep_id=report.id):
                    snapshots = await asyncio.wait_for(
                        self._provider.fetch(entity_type, include_terminal=include_terminal),
                        timeout=self._fetch_timeout
                    )
        except asyncio.TimeoutError:
            self._record(report, DomainFailure(
                entity_type=entity_type, error_type="TimeoutError",
                message=f"snapshot fetch exceeded {self._fetch_timeout}s"
            ))
            return
        except DependencyException as e:
            self._record(report, DomainFailure(
                entity_type=entity_type, error_type=type(e).__name__, message=e.message
            ))
            return

        report.entities_scanned += len(snapshots)
        live = [snapshot for snapshot in snapshots if not snapshot.is_terminal]

        units = []
        for rule in rules:
            candidates = snapshots if rule.trigger_condition == TriggerCondition.OVERDUE else live

            if rule.trigger_condition == TriggerCondition.CUSTOM:
                try:
                    predicate = self._predicates.resolve(rule.predicate_ref)
                except DependencyException as e:
                    self._record(report, DomainFailure(
                        entity_type=entity_type, error_type=type(e).__name__,
                        message=e.message, rule_id=rule.id
                    ))
                    continue
                units.extend(
                    self._escalate(rule, snapshot, now, report, semaphore, predicate)
                    for snapshot in candidates
                )
                continue

            for snapshot in candidates:
                try:
                    matched = ConditionMatcher.matches(rule, snapshot, now)
                except ApplicationException as e:
                    self._record(report, DomainFailure(
                        entity_type=entity_type, error_type=type(e).__name__,
                        message=e.message, rule_id=rule.id, entity_id=snapshot.entity_id
                    ))
                    continue
                if matched:
                    units.append(self._escalate(rule, snapshot, now, report, semaphore))

        if units:
            await asyncio.gather(*[asyncio.create_task(unit) for unit in units])

    async def _run_predicate(
        self,
        rule: EscalationRule,
        snapshot: EntitySnapshot,
        now: datetime,
        predicate: CustomPredicate
    ) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(ConditionMatcher.matches, rule, snapshot, now, predicate),
                timeout=self._predicate_timeout
            )
        except (ApplicationException, asyncio.TimeoutError):
            raise
        except Exception as e:
            raise DependencyException(
                "predicate_resolver",
                f"predicate '{rule.predicate_ref}' raised {type(e).__name__}: {e}"
            ) from e

    async def _escalate(
        self,
        rule: EscalationRule,
        snapshot: EntitySnapshot,
        now: datetime,
        report: SweepReport,
        semaphore: asyncio.Semaphore,
        predicate: Optional[CustomPredicate] = None
    ) -> None:
        """One (rule, snapshot) unit of work. Failures stay inside the unit."""
        async with semaphore:
            try:
                if predicate is not None and not await self._run_predicate(rule, snapshot, now, predicate):
                    return
                report.matches += 1

                if await asyncio.wait_for(
                    self._emitter.is_escalated(rule.id, snapshot.entity_id),
                    timeout=self._call_timeout
                ):
                    report.duplicates_skipped += 1
                    return

                recipient = await asyncio.wait_for(
                    self._resolver.resolve_recipient(
                        rule.escalate_to_role, snapshot.entity_type, snapshot.entity_id
                    ),
                    timeout=self._call_timeout
                )
                result = await asyncio.wait_for(
                    self._emitter.emit(
                        rule.id,
                        snapshot.entity_type,
                        snapshot.entity_id,
                        snapshot.title,
                        recipient,
                        ConditionMatcher.describe(rule, snapshot, now),
                        channels=rule.notify_channels,
                        role=rule.escalate_to_role
                    ),
                    timeout=self._call_timeout
                )
            except asyncio.TimeoutError:
                self._record(report, DomainFailure(
                    entity_type=snapshot.entity_type, error_type="TimeoutError",
                    message="escalation call timed out", rule_id=rule.id, entity_id=snapshot.entity_id
                ))
                return
            except ApplicationException as e:
                self._record(report, DomainFailure(
                    entity_type=snapshot.entity_type, error_type=type(e).__name__,
                    message=e.message, rule_id=rule.id, entity_id=snapshot.entity_id
                ))
                return
            except SQLAlchemyError as e:
                self._record(report, DomainFailure(
                    entity_type=snapshot.entity_type, error_type="StorageError",
                    message=str(e), rule_id=rule.id, entity_id=snapshot.entity_id
                ))
                return

        if result.created:
            report.events_created += 1
        else:
            report.duplicates_skipped += 1

    @staticmethod
    def _record(report: SweepReport, failure: DomainFailure) -> None:
        report.record_failure(failure)
        logger.warning(
            "Escalation sweep unit skipped",
            extra={
                "sweep_id": report.id,
                "entity_type": failure.entity_type,
                "error_type": failure.error_type,
                "error": failure.message,
                "rule_id": failure.rule_id,
                "entity_id": failure.entity_id
            }
        )

    async def _complete(self, report: SweepReport) -> None:
        """Log, persist and export a finished sweep."""
        self._last_report = report
        logger.info(
            "Escalation sweep finished",
            extra={"sweep_id": report.id, "status": report.status, **report.metric_values()}
        )

        try:
            async with self._session_factory() as session:
                await SQLAlchemySweepRunRepository(session).record(report)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to record sweep run", extra={"sweep_id": report.id, "error": str(e)})

        if self._exporter is not None:
            await self._exporter.export_sweep_metrics(
                report.metric_values(),
                {"status": report.status, "trigger": report.trigger}
            )
