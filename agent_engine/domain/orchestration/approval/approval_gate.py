from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

from agent_engine.domain.errors import ApprovalAlreadyResolvedError, ConcurrentModificationError
from agent_engine.domain.events.event_bus import EventBus
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    Execution,
    ExecutionStatus,
    ModelResponse,
    ToolCall,
    utcnow,
)
from agent_engine.domain.models.approval import ApprovalResolution, PendingApproval, RiskAssessment
from agent_engine.infrastructure.persistence.store import EngineStore

logger = structlog.get_logger(__name__)

ResolvedCallback = Callable[[PendingApproval], Awaitable[None]]


class ApprovalGate:
    """Suspends risky tool calls until a human approves or denies them"""

    def __init__(self, store: EngineStore, event_bus: EventBus, on_resolved: Optional[ResolvedCallback] = None):
        self.store = store
        self.event_bus = event_bus
        self.on_resolved = on_resolved

    async def request_approval(
        self,
        agent: AgentConfig,
        execution: Execution,
        tool_call: ToolCall,
        assessment: RiskAssessment,
        response: ModelResponse,
        step_index: int,
        response_cost: float = 0.0,
    ) -> Tuple[PendingApproval, Execution]:
        """Persist the approval and park the execution in awaiting_approval"""

        expires_at = None
        if agent.risk_policy.approval_ttl_seconds:
            expires_at = utcnow() + timedelta(seconds=agent.risk_policy.approval_ttl_seconds)

        approval = await self.store.create_approval(
            PendingApproval(
                execution_id=execution.id,
                agent_id=agent.id,
                tool_call=tool_call,
                response=response,
                step_index=step_index,
                response_cost=response_cost,
                risk=assessment,
                expires_at=expires_at,
            )
        )

        execution.transition(ExecutionStatus.AWAITING_APPROVAL)
        execution.pending_approval_id = approval.id
        try:
            execution = await self.store.update_execution(execution)
        except ConcurrentModificationError:
            await self.store.resolve_approval(
                approval.id, ApprovalResolution.EXPIRED, None, "execution changed before suspension"
            )
            raise

        logger.info(
            "Approval requested",
            approval_id=approval.id,
            execution_id=execution.id,
            tool=tool_call.name,
            risk_level=assessment.level.value,
        )
        await self.event_bus.publish(
            "agent.approval.requested",
            {
                "approvalId": approval.id,
                "executionId": execution.id,
                "agentId": agent.id,
                "tool": tool_call.name,
                "arguments": tool_call.arguments,
                "riskLevel": assessment.level.value,
                "reasons": assessment.reasons,
            },
        )
        return approval, execution

    async def resolve(
        self,
        approval_id: str,
        decision: ApprovalResolution,
        resolver: Optional[str],
        notes: Optional[str] = None,
        resume: bool = True,
    ) -> PendingApproval:
        """Resolve a pending approval exactly once and hand the execution back to a worker"""

        if decision == ApprovalResolution.PENDING:
            raise ValueError("An approval cannot be resolved back to pending")

        approval = await self.store.resolve_approval(approval_id, decision, resolver, notes)

        logger.info(
            "Approval resolved",
            approval_id=approval_id,
            execution_id=approval.execution_id,
            resolution=decision.value,
            resolved_by=resolver,
        )
        await self.event_bus.publish(
            "agent.approval.resolved",
            {
                "approvalId": approval.id,
                "executionId": approval.execution_id,
                "agentId": approval.agent_id,
                "resolution": decision.value,
                "resolvedBy": resolver,
                "notes": notes,
            },
        )

        if resume and self.on_resolved is not None:
            await self.on_resolved(approval)
        return approval

    async def claim(self, approval_id: str) -> Optional[PendingApproval]:
        return await self.store.claim_approval(approval_id)

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[PendingApproval]:
        """Resolve approvals past their TTL as expired"""

        now = now or utcnow()
        expired = []
        for approval in await self.store.list_approvals(resolution=ApprovalResolution.PENDING):
            if not approval.is_overdue(now):
                continue
            try:
                expired.append(
                    await self.resolve(approval.id, ApprovalResolution.EXPIRED, None, "approval expired")
                )
            except ApprovalAlreadyResolvedError:
                continue
        return expired

    async def list(
        self,
        resolution: Optional[ApprovalResolution] = None,
        execution_id: Optional[str] = None,
    ) -> List[PendingApproval]:
        return await self.store.list_approvals(resolution=resolution, execution_id=execution_id)
