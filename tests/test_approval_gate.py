"""
Tests for ApprovalGate
"""

from datetime import timedelta

import pytest

from agent_engine.domain.errors import ApprovalAlreadyResolvedError
from agent_engine.domain.events.event_bus import InMemoryEventBus
from agent_engine.domain.models.agent_state import (
    Execution,
    ExecutionStatus,
    ModelResponse,
    RiskLevel,
    RiskPolicy,
    ToolCall,
    utcnow,
)
from agent_engine.domain.models.approval import ApprovalResolution, RiskAssessment
from agent_engine.domain.orchestration.approval.approval_gate import ApprovalGate

CALL = ToolCall(name="transfer_funds", arguments={"amount": 10, "to_account": "acc-9"})


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def resolved():
    return []


@pytest.fixture
def gate(store, bus, resolved):
    async def on_resolved(approval):
        resolved.append(approval.id)

    return ApprovalGate(store, bus, on_resolved=on_resolved)


async def _running_execution(store, agent):
    execution = await store.create_execution(Execution(agent_id=agent.id))
    execution.transition(ExecutionStatus.RUNNING)
    return await store.update_execution(execution)


class TestApprovalGate:
    """Test ApprovalGate."""

    @pytest.mark.asyncio
    async def test_request_suspends_execution(self, gate, store, bus, make_agent):
        """Requesting approval parks the execution and announces it."""
        agent = make_agent()
        execution = await _running_execution(store, agent)

        approval, suspended = await gate.request_approval(
            agent, execution, CALL, RiskAssessment(level=RiskLevel.HIGH, reasons=["big"]),
            ModelResponse(tool_call=CALL), step_index=0,
        )

        assert suspended.status == ExecutionStatus.AWAITING_APPROVAL
        assert suspended.pending_approval_id == approval.id
        assert approval.is_pending
        assert approval.expires_at is None
        events = bus.published("agent.approval.requested")
        assert len(events) == 1
        assert events[0].payload["tool"] == "transfer_funds"
        assert events[0].payload["riskLevel"] == "high"

    @pytest.mark.asyncio
    async def test_resolve_once_and_resume(self, gate, store, bus, resolved, make_agent):
        """The first decision wins and triggers a resume; the second is rejected."""
        agent = make_agent()
        execution = await _running_execution(store, agent)
        approval, _ = await gate.request_approval(
            agent, execution, CALL, RiskAssessment(level=RiskLevel.HIGH), ModelResponse(tool_call=CALL), 0
        )

        decided = await gate.resolve(approval.id, ApprovalResolution.APPROVED, "alice", "looks fine")

        with pytest.raises(ApprovalAlreadyResolvedError):
            await gate.resolve(approval.id, ApprovalResolution.DENIED, "bob", "no")
        assert decided.resolution == ApprovalResolution.APPROVED
        assert decided.resolved_by == "alice"
        assert resolved == [approval.id]
        assert bus.published("agent.approval.resolved")[0].payload["resolution"] == "approved"

    @pytest.mark.asyncio
    async def test_cannot_resolve_to_pending(self, gate):
        """Pending is not a decision."""
        with pytest.raises(ValueError):
            await gate.resolve("any", ApprovalResolution.PENDING, "alice")

    @pytest.mark.asyncio
    async def test_expire_overdue(self, gate, store, resolved, make_agent):
        """Approvals past their TTL are expired and resumed."""
        agent = make_agent(risk_policy=RiskPolicy(approval_ttl_seconds=60))
        execution = await _running_execution(store, agent)
        approval, _ = await gate.request_approval(
            agent, execution, CALL, RiskAssessment(level=RiskLevel.HIGH), ModelResponse(tool_call=CALL), 0
        )

        assert await gate.expire_overdue(utcnow()) == []
        expired = await gate.expire_overdue(utcnow() + timedelta(seconds=61))

        assert [a.id for a in expired] == [approval.id]
        assert expired[0].resolution == ApprovalResolution.EXPIRED
        assert resolved == [approval.id]
