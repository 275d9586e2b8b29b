"""Execution submission, status and cancellation endpoints."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from agent_engine.application.api.dependencies import get_engine
from agent_engine.application.api.schema.requests import (
    ExecutionAccepted,
    ExecutionCreate,
    ExecutionDetail,
    ExecutionView,
)
from agent_engine.domain.models.agent_state import ExecutionStatus
from agent_engine.domain.orchestration.core.engine import AgentEngine

router = APIRouter(prefix="/executions", tags=["executions"])


# Two shapes: the accepted handle, or the full result when waiting
@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=None)
async def create_execution(
    request: ExecutionCreate,
    response: Response,
    wait: bool = Query(False),
    engine: AgentEngine = Depends(get_engine),
):
    execution = await engine.execute(request.agent_id, request.input)
    if wait:
        response.status_code = status.HTTP_200_OK
        return await engine.wait_for(execution.id)
    return ExecutionAccepted(execution_id=execution.id, status=execution.status.value)


@router.get("", response_model=List[ExecutionView])
async def list_executions(
    agent_id: Optional[str] = None,
    status_filter: Optional[ExecutionStatus] = Query(None, alias="status"),
    engine: AgentEngine = Depends(get_engine),
) -> List[ExecutionView]:
    executions = await engine.list_executions(agent_id=agent_id, status=status_filter)
    return [ExecutionView.of(execution) for execution in executions]


@router.get("/{execution_id}", response_model=ExecutionDetail)
async def get_execution(execution_id: str, engine: AgentEngine = Depends(get_engine)) -> ExecutionDetail:
    execution = await engine.get_execution(execution_id)
    steps = await engine.get_steps(execution_id)
    return ExecutionDetail(execution=ExecutionView.of(execution), steps=steps)


@router.post("/{execution_id}/cancel", response_model=ExecutionView)
async def cancel_execution(execution_id: str, engine: AgentEngine = Depends(get_engine)) -> ExecutionView:
    return ExecutionView.of(await engine.cancel(execution_id))
