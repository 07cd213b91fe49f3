"""
Elevare Escalations - Main Application
=======================================

Escalation engine for the Elevare property and legal operations console.

Watches maintenance requests, support tickets, legal cases, compliance
checks, inspections and construction projects, and raises escalation
events when configurable rules match.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, matchers and value objects
- Infrastructure: Database, snapshot providers, Slack, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

# Configuration and Core
from elevare.config import settings
from elevare.core import ApplicationException

# Infrastructure
from elevare.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)

# Escalation module
from elevare.escalation.infrastructure import (
    EscalationConfigManager, SlackClient, EscalationScheduler,
    SQLSnapshotProvider, ConfigRecipientResolver, default_predicate_registry,
    InAppNotificationSender, SlackNotificationSender, CompositeNotificationDispatcher
)
from elevare.escalation.services import (
    NotificationRelay, EscalationEmitter, EscalationEvaluator
)
from elevare.escalation.interfaces import escalation_router

# Shared
from elevare.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    request_validation_handler,
    global_exception_handler
)
from elevare.shared.infrastructure.logging import setup_logging, get_logger
from elevare.shared.infrastructure.grafana import get_grafana_exporter

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load escalation configuration and start watching it
    4. Wire notification relay, emitter and evaluator
    5. Start the sweep scheduler

    SHUTDOWN:
    1. Stop the scheduler
    2. Give an in-flight sweep its grace period, then cancel it
    3. Drain pending notifications
    4. Stop config watcher, close Slack client and database
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting escalation service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    # Tables are managed by migrations in production
    logger.info("Creating database tables")
    try:
        await create_tables()
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    logger.info("Loading escalation configuration")
    config_manager = EscalationConfigManager()
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    session_factory = get_session_maker()
    slack_client = SlackClient()

    dispatcher = CompositeNotificationDispatcher([
        InAppNotificationSender(session_factory, settings.console_base_url),
        SlackNotificationSender(slack_client, config_manager),
    ])
    relay = NotificationRelay(dispatcher, session_factory)
    emitter = EscalationEmitter(session_factory, relay, config_manager)

    exporter = get_grafana_exporter()
    evaluator = EscalationEvaluator(
        session_factory=session_factory,
        snapshot_provider=SQLSnapshotProvider(session_factory, config_manager),
        recipient_resolver=ConfigRecipientResolver(config_manager),
        predicate_resolver=default_predicate_registry(),
        emitter=emitter,
        exporter=exporter if exporter and exporter.is_enabled() else None
    )

    scheduler = EscalationScheduler(interval_seconds=settings.escalation_sweep_interval_seconds)
    if settings.escalation_sweep_interval_seconds > 0:
        await scheduler.start(evaluator.run_sweep)
    else:
        logger.info("Escalation scheduler disabled")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.config_manager = config_manager
    app.state.relay = relay
    app.state.emitter = emitter
    app.state.evaluator = evaluator
    app.state.scheduler = scheduler

    logger.info("Escalation service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down escalation service")

    await scheduler.stop()
    await evaluator.shutdown(settings.escalation_shutdown_grace_seconds)
    await emitter.drain(timeout=settings.escalation_shutdown_grace_seconds)
    await relay.drain(timeout=settings.escalation_shutdown_grace_seconds)
    config_manager.stop_watching()
    await slack_client.close()
    await close_database()

    logger.info("Escalation service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Elevare Escalations API",
    description="""
    ## Escalation Engine

    Raises escalation events when operational entities breach SLAs, go
    stale, sit unassigned at high priority, run overdue, or match a named
    custom predicate.

    **Endpoints:**
    - `GET/POST /escalations/rules`, `GET/PUT/DELETE /escalations/rules/{id}`
    - `GET/POST /escalations/events`, `GET/PUT /escalations/events/{id}`
    - `POST /escalations/dedup/clear`
    - `GET/POST /escalations/sweeps`
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(escalation_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service health",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "escalation_config": "loaded",
                        "scheduler": "running",
                        "evaluator": "idle",
                        "pending_notifications": 0
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports database connectivity, configuration, scheduler and evaluator
    state. Status is `degraded` when the database is unreachable.
    """
    state = request.app.state
    checks = {
        "database": "connected",
        "escalation_config": "loaded" if getattr(state, "config_manager", None) else "not_loaded",
        "scheduler": "running" if getattr(state, "scheduler", None) and state.scheduler.is_running else "stopped",
        "evaluator": state.evaluator.state if getattr(state, "evaluator", None) else "not_initialized",
        "pending_notifications": state.relay.pending if getattr(state, "relay", None) else 0,
    }

    try:
        async with get_session_maker()() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError, RuntimeError) as e:
        checks["database"] = f"error: {e.__class__.__name__}"

    last = state.evaluator.last_report if getattr(state, "evaluator", None) else None
    if last is not None:
        checks["last_sweep"] = {
            "id": last.id,
            "status": last.status,
            "finished_at": last.finished_at.isoformat() if last.finished_at else None
        }

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalations": {
                "prefix": "/escalations",
                "endpoints": [
                    "GET /escalations/rules - List rules",
                    "POST /escalations/rules - Create rule",
                    "PUT /escalations/rules/{id} - Update or disable rule",
                    "GET /escalations/events - List events",
                    "POST /escalations/events - Manual escalation",
                    "PUT /escalations/events/{id} - Acknowledge event",
                    "POST /escalations/sweeps - Run a sweep now"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "elevare.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower()
    )
