"""Inbound event and webhook endpoints."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, status

from agent_engine.application.api.dependencies import get_engine
from agent_engine.application.api.schema.requests import (
    EventRequest,
    ExecutionAccepted,
    TriggeredExecutions,
)
from agent_engine.domain.orchestration.core.engine import AgentEngine
from agent_engine.domain.orchestration.trigger.trigger_adapter import InboundEvent

router = APIRouter(tags=["triggers"])


@router.post("/events", response_model=TriggeredExecutions, status_code=status.HTTP_202_ACCEPTED)
async def publish_event(request: EventRequest, engine: AgentEngine = Depends(get_engine)) -> TriggeredExecutions:
    executions = await engine.handle_event(
        InboundEvent(
            event_type=request.event_type,
            payload=request.payload,
            agent_bindings=request.agent_bindings,
        )
    )
    return TriggeredExecutions(execution_ids=[e.id for e in executions])


@router.post("/webhooks/{agent_id}", response_model=ExecutionAccepted, status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    agent_id: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    engine: AgentEngine = Depends(get_engine),
) -> ExecutionAccepted:
    execution = await engine.trigger_webhook(agent_id, payload or {}, x_webhook_secret)
    return ExecutionAccepted(execution_id=execution.id, status=execution.status.value)
