"""
Escalation Controllers (API Routes)
====================================

FastAPI routes for escalation rules, events and sweeps.

Controllers are thin - they delegate to application services. Writes that
create events go through the emitter so notification hand-off happens
after commit.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from elevare.infrastructure.database import get_session
from elevare.escalation.application import (
    RuleService, EscalationService,
    RuleCreateRequest, RuleUpdateRequest, ManualEscalationRequest,
    AcknowledgeRequest, DedupClearRequest,
    RuleResponse, EventResponse, SweepRunResponse,
    DedupClearResponse, MessageResponse,
    EntityTypeStr
)
from elevare.escalation.infrastructure import (
    SQLAlchemyRuleRepository, SQLAlchemyEventRepository, SQLAlchemySweepRunRepository
)
from elevare.escalation.services import EscalationEmitter, EscalationEvaluator
from elevare.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/escalations", tags=["Escalations"])


# ========== Example payloads for Swagger ==========

RULE_CREATE_EXAMPLE = {
    "name": "Maintenance SLA breach",
    "entity_type": "maintenance",
    "trigger_condition": "sla_breach",
    "escalate_to_role": "manager",
    "time_threshold_hours": None,
    "notify_channels": ["in_app", "slack"]
}

MANUAL_ESCALATION_EXAMPLE = {
    "entity_type": "legal_case",
    "entity_id": "LC-2031",
    "escalated_to": "u-legal-head",
    "reason": "Hearing moved forward, counsel not yet briefed"
}


# ========== Dependencies ==========

def pagination(
    page: int = Query(1, ge=1, description="Page number, starting at 1"),
    limit: int = Query(20, ge=1, le=100, description="Page size")
) -> dict:
    return {"limit": limit, "offset": (page - 1) * limit}


async def get_rule_service(
    session: AsyncSession = Depends(get_session)
) -> RuleService:
    """Get rule service instance."""
    return RuleService(SQLAlchemyRuleRepository(session), SQLAlchemyEventRepository(session))


async def get_escalation_service(
    session: AsyncSession = Depends(get_session)
) -> EscalationService:
    """Get escalation service instance."""
    return EscalationService(SQLAlchemyEventRepository(session))


def get_emitter(request: Request) -> EscalationEmitter:
    return request.app.state.emitter


def get_evaluator(request: Request) -> EscalationEvaluator:
    return request.app.state.evaluator


# ========== Rules ==========

@router.get("/rules", response_model=List[RuleResponse], summary="List escalation rules")
async def list_rules(
    entity_type: Optional[EntityTypeStr] = Query(None),
    is_active: Optional[bool] = Query(None),
    page: dict = Depends(pagination),
    service: RuleService = Depends(get_rule_service)
):
    rules = await service.list_rules(entity_type=entity_type, is_active=is_active, **page)
    return [RuleResponse.from_domain(rule) for rule in rules]


@router.post(
    "/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an escalation rule",
    description="""
    Create a rule that raises escalations for one entity type.

    - `status_stale` requires `time_threshold_hours`
    - `sla_breach` / `overdue` treat `time_threshold_hours` as a grace period
    - `custom` requires `predicate_ref` and takes no threshold
    """,
    openapi_extra={"requestBody": {"content": {"application/json": {"example": RULE_CREATE_EXAMPLE}}}}
)
async def create_rule(
    body: RuleCreateRequest,
    session: AsyncSession = Depends(get_session),
    service: RuleService = Depends(get_rule_service)
):
    rule = await service.create(body.model_dump())
    await session.commit()
    return RuleResponse.from_domain(rule)


@router.get("/rules/{rule_id}", response_model=RuleResponse, summary="Get an escalation rule")
async def get_rule(rule_id: str, service: RuleService = Depends(get_rule_service)):
    return RuleResponse.from_domain(await service.get(rule_id))


@router.put(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    summary="Update an escalation rule",
    description="Partial update; omitted fields are unchanged. `is_active: false` disables the rule from the next sweep."
)
async def update_rule(
    rule_id: str,
    body: RuleUpdateRequest,
    session: AsyncSession = Depends(get_session),
    service: RuleService = Depends(get_rule_service)
):
    rule = await service.update(rule_id, body.to_patch())
    await session.commit()
    return RuleResponse.from_domain(rule)


@router.delete(
    "/rules/{rule_id}",
    response_model=MessageResponse,
    summary="Delete an unreferenced escalation rule",
    responses={409: {"description": "Rule is referenced by events; deactivate it instead"}}
)
async def delete_rule(
    rule_id: str,
    session: AsyncSession = Depends(get_session),
    service: RuleService = Depends(get_rule_service)
):
    await service.delete(rule_id)
    await session.commit()
    return MessageResponse(message="Escalation rule deleted successfully")


# ========== Events ==========

@router.get("/events", response_model=List[EventResponse], summary="List escalation events, most recent first")
async def list_events(
    acknowledged: Optional[bool] = Query(None),
    entity_type: Optional[EntityTypeStr] = Query(None),
    entity_id: Optional[str] = Query(None),
    rule_id: Optional[str] = Query(None),
    page: dict = Depends(pagination),
    service: EscalationService = Depends(get_escalation_service)
):
    filters = {
        "acknowledged": acknowledged,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "rule_id": rule_id,
    }
    events = await service.list_events(filters, **page)
    return [EventResponse.from_domain(event) for event in events]


@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise a manual escalation",
    description="Always creates a new event; manual escalations are never deduplicated.",
    openapi_extra={"requestBody": {"content": {"application/json": {"example": MANUAL_ESCALATION_EXAMPLE}}}}
)
async def create_manual_escalation(
    body: ManualEscalationRequest,
    emitter: EscalationEmitter = Depends(get_emitter)
):
    result = await emitter.emit(
        None,
        body.entity_type,
        body.entity_id,
        body.entity_title,
        body.escalated_to,
        body.reason,
        channels=body.notify_channels
    )
    return EventResponse.from_domain(result.event)


@router.get("/events/{event_id}", response_model=EventResponse, summary="Get an escalation event")
async def get_event(event_id: str, service: EscalationService = Depends(get_escalation_service)):
    return EventResponse.from_domain(await service.get_event(event_id))


@router.put(
    "/events/{event_id}",
    response_model=EventResponse,
    summary="Acknowledge an escalation event",
    description="Idempotent. Acknowledging releases the (rule, entity) pair so it can escalate again."
)
async def acknowledge_event(
    event_id: str,
    body: AcknowledgeRequest,
    session: AsyncSession = Depends(get_session),
    service: EscalationService = Depends(get_escalation_service)
):
    event = await service.acknowledge(event_id, body.acknowledged_by)
    await session.commit()
    return EventResponse.from_domain(event)


@router.post(
    "/dedup/clear",
    response_model=DedupClearResponse,
    summary="Release the dedup lock of a (rule, entity) pair"
)
async def clear_dedup(
    body: DedupClearRequest,
    session: AsyncSession = Depends(get_session),
    service: EscalationService = Depends(get_escalation_service)
):
    cleared = await service.tracker.clear(body.rule_id, body.entity_id, body.cleared_by)
    await session.commit()
    return DedupClearResponse(rule_id=body.rule_id, entity_id=body.entity_id, events_acknowledged=cleared)


# ========== Sweeps ==========

@router.get("/sweeps", response_model=List[SweepRunResponse], summary="List evaluator sweeps, most recent first")
async def list_sweeps(
    page: dict = Depends(pagination),
    session: AsyncSession = Depends(get_session)
):
    reports = await SQLAlchemySweepRunRepository(session).list(**page)
    return [SweepRunResponse.from_domain(report) for report in reports]


@router.post(
    "/sweeps",
    response_model=SweepRunResponse,
    summary="Run a sweep now",
    description="Runs one sweep and returns its report. Returns a `skipped` report if a sweep is already running."
)
async def run_sweep(evaluator: EscalationEvaluator = Depends(get_evaluator)):
    report = await evaluator.run_sweep(trigger="manual")
    logger.info("Manual sweep requested", extra={"sweep_id": report.id, "status": report.status})
    return SweepRunResponse.from_domain(report)
