"""Human approval endpoints."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from agent_engine.application.api.dependencies import get_engine
from agent_engine.application.api.schema.requests import ApprovalView, ApproveRequest, DenyRequest
from agent_engine.domain.models.approval import ApprovalResolution, PendingApproval
from agent_engine.domain.orchestration.core.engine import AgentEngine
from agent_engine.infrastructure.security.principal import Principal, get_principal

router = APIRouter(prefix="/approvals", tags=["approvals"])


def to_view(approval: PendingApproval) -> ApprovalView:
    return ApprovalView(
        id=approval.id,
        execution_id=approval.execution_id,
        agent_id=approval.agent_id,
        tool=approval.tool_call.name,
        arguments=approval.tool_call.arguments,
        risk_level=approval.risk.level.value,
        reasons=approval.risk.reasons,
        resolution=approval.resolution.value,
        requested_at=approval.requested_at,
        expires_at=approval.expires_at,
        resolved_by=approval.resolved_by,
        notes=approval.notes,
    )


@router.get("", response_model=List[ApprovalView])
async def list_approvals(
    status: Optional[ApprovalResolution] = Query(None),
    execution_id: Optional[str] = None,
    engine: AgentEngine = Depends(get_engine),
) -> List[ApprovalView]:
    return [to_view(a) for a in await engine.list_approvals(status, execution_id)]


@router.get("/{approval_id}", response_model=ApprovalView)
async def get_approval(approval_id: str, engine: AgentEngine = Depends(get_engine)) -> ApprovalView:
    return to_view(await engine.get_approval(approval_id))


@router.post("/{approval_id}/approve", response_model=ApprovalView)
async def approve(
    approval_id: str,
    request: Optional[ApproveRequest] = None,
    principal: Principal = Depends(get_principal),
    engine: AgentEngine = Depends(get_engine),
) -> ApprovalView:
    notes = request.notes if request else None
    return to_view(await engine.approve(approval_id, principal.user_id, notes))


@router.post("/{approval_id}/deny", response_model=ApprovalView)
async def deny(
    approval_id: str,
    request: DenyRequest,
    principal: Principal = Depends(get_principal),
    engine: AgentEngine = Depends(get_engine),
) -> ApprovalView:
    return to_view(await engine.deny(approval_id, principal.user_id, request.reason))
