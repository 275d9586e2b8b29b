"""
End-to-end tests for the ReAct loop, approvals and execution lifecycle
"""

import asyncio

import pytest
from langchain_core.messages import ToolMessage

from agent_engine.domain.errors import (
    ApprovalAlreadyResolvedError,
    FatalProviderError,
    PersistenceError,
    RetryableProviderError,
)
from agent_engine.domain.model.providers import ModelProvider, ProviderReply
from agent_engine.domain.models.agent_state import (
    ExecutionStatus,
    FailureReason,
    MemoryPolicy,
    TokenUsage,
)
from agent_engine.domain.models.approval import ApprovalResolution
from agent_engine.domain.models.memory import MemoryKind, MemoryTier
from agent_engine.domain.orchestration.core.engine import AgentEngine
from agent_engine.domain.orchestration.usage.usage_meter import QuotaPolicy
from agent_engine.infrastructure.persistence.store import InMemoryEngineStore

from tests.conftest import ScriptedProvider, final_reply, tool_reply

TRANSFER = {"amount": 500, "to_account": "acc-9"}


def terminal_events(engine: AgentEngine, execution_id: str):
    return [
        event for event in engine.event_bus.published("agent.execution.*")
        if event.payload["executionId"] == execution_id
    ]


async def run_to_rest(engine: AgentEngine, agent, input=None):
    execution = await engine.submit(agent, input or {"ticket": "T-1"})
    return await engine.wait_for(execution.id, timeout=5)


class SlowProvider(ModelProvider):
    name = "scripted"

    async def generate(self, messages, params, tools) -> ProviderReply:
        await asyncio.sleep(5)
        return ProviderReply(content="too late")


class CancelDuringCallProvider(ScriptedProvider):
    """Requests cancellation of every running execution while the model call is in flight"""

    engine: AgentEngine = None

    async def generate(self, messages, params, tools) -> ProviderReply:
        for execution in await self.engine.store.list_executions(statuses=[ExecutionStatus.RUNNING]):
            await self.engine.cancel(execution.id)
        return await super().generate(messages, params, tools)


class FactWritingProvider(ScriptedProvider):
    """Remembers each fact in turn, then answers; decided per conversation"""

    def __init__(self, facts):
        super().__init__()
        self.facts = facts

    async def generate(self, messages, params, tools) -> ProviderReply:
        self.calls.append(list(messages))
        written = sum(1 for m in messages if isinstance(m, ToolMessage))
        await asyncio.sleep(0)
        if written < len(self.facts):
            return tool_reply("remember_fact", {"content": self.facts[written]}, call_id=f"call_{written}")
        return final_reply("Noted.")


class StepWriteFailingStore(InMemoryEngineStore):
    async def append_step(self, execution_id, step):
        raise PersistenceError("step table unavailable")


class TestReActLoop:
    """Test the reason-act-observe loop."""

    @pytest.mark.asyncio
    async def test_tool_then_answer(self, make_engine, make_agent, tool_log):
        """A tool call followed by an answer completes with both steps recorded."""
        provider = ScriptedProvider([
            tool_reply("lookup_customer", {"customer_id": "42"}),
            final_reply("The customer is Ada."),
        ])
        engine = make_engine(provider)
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.output == "The customer is Ada."
        assert [s.index for s in result.steps] == [0, 1]
        assert result.steps[0].observation.success
        assert result.steps[1].is_final
        assert result.prompt_tokens == 40
        assert result.completion_tokens == 10
        assert tool_log.calls == [{"tool": "lookup_customer", "customer_id": "42"}]
        assert "Ada" in provider.last_prompt_text()

        usage = await engine.store.get_usage(result.execution_id)
        assert usage.model_calls == 2
        assert usage.tool_calls == 1

        events = terminal_events(engine, result.execution_id)
        assert [e.event_type for e in events] == ["agent.execution.completed"]
        assert events[0].payload["output"] == "The customer is Ada."

    @pytest.mark.asyncio
    async def test_step_budget_exhausted(self, make_engine, make_agent):
        """An agent that never answers stops after max_steps with every failure recorded."""
        engine = make_engine(ScriptedProvider(default=tool_reply("flaky_service")))
        agent = await engine.register_agent(make_agent(max_steps=3))

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.FAILED
        assert result.failure_reason == FailureReason.STEP_BUDGET_EXCEEDED
        assert result.step_count == 3
        assert len(result.steps) == 3
        assert all(s.observation.error_type == "execution" for s in result.steps)

    @pytest.mark.asyncio
    async def test_unparseable_responses_are_retried(self, make_engine, make_agent):
        """Two unusable responses followed by an answer complete in one step."""
        spent = TokenUsage(prompt_tokens=20, completion_tokens=5)
        engine = make_engine(ScriptedProvider([
            ProviderReply(content="{not json", usage=spent),
            ProviderReply(content="   ", usage=spent),
            final_reply("Resolved."),
        ]))
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.step_count == 1
        assert result.prompt_tokens == 60
        assert (await engine.store.get_usage(result.execution_id)).model_calls == 3

    @pytest.mark.asyncio
    async def test_fatal_provider_error(self, make_engine, make_agent):
        """Fatal provider errors fail the execution without retries."""
        provider = ScriptedProvider([FatalProviderError("invalid api key", status_code=401)])
        engine = make_engine(provider)
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.FAILED
        assert result.failure_reason == FailureReason.MODEL_ERROR
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, make_engine, make_agent, settings):
        """Exhausted retries report the model as unavailable."""
        provider = ScriptedProvider(default=RetryableProviderError("overloaded", status_code=529))
        engine = make_engine(provider)
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.failure_reason == FailureReason.MODEL_UNAVAILABLE
        assert len(provider.calls) == settings.model_retry_attempts

    @pytest.mark.asyncio
    async def test_hard_stop_quota(self, make_engine, make_agent):
        """A denied reservation fails the execution before the model is called."""
        provider = ScriptedProvider()
        engine = make_engine(provider)
        agent = await engine.register_agent(make_agent())
        engine.usage_meter.configure(agent.quota_key, limit_tokens=100, policy=QuotaPolicy.HARD_STOP)

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.FAILED
        assert result.failure_reason == FailureReason.QUOTA_EXCEEDED
        assert "Quota exhausted" in result.failure_detail
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_execution_timeout(self, settings, registry, make_agent):
        """A model call running past the execution timeout fails it."""
        engine = AgentEngine({"scripted": SlowProvider()}, registry=registry, settings=settings)
        agent = await engine.register_agent(make_agent(timeout_seconds=0.2))

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.FAILED
        assert result.failure_reason == FailureReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_disallowed_tool_is_rejected(self, make_engine, make_agent, tool_log):
        """Tools outside the allow-list, or on the deny list, become rejected observations."""
        engine = make_engine(ScriptedProvider([
            tool_reply("lookup_customer", {"customer_id": "1"}),
            final_reply("Could not look that up."),
        ]))
        agent = await engine.register_agent(make_agent(denied_tools=["lookup_customer"]))

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.steps[0].observation.error_type == "rejected"
        assert tool_log.calls == []
        assert (await engine.store.get_usage(result.execution_id)).tool_calls == 0

    @pytest.mark.asyncio
    async def test_persistence_failure(self, settings, registry, make_agent):
        """Store failures mid-run fail the execution as a persistence error."""
        engine = AgentEngine(
            {"scripted": ScriptedProvider()}, registry=registry, store=StepWriteFailingStore(), settings=settings
        )
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.FAILED
        assert result.failure_reason == FailureReason.PERSISTENCE_ERROR


class TestApprovalFlow:
    """Test suspension on risky tools and resumption."""

    @pytest.mark.asyncio
    async def test_denied_call_is_fed_back(self, make_engine, make_agent, tool_log):
        """A denial reaches the model as an observation and the tool never runs."""
        provider = ScriptedProvider([
            tool_reply("transfer_funds", TRANSFER),
            final_reply("The transfer was not authorized."),
        ])
        engine = make_engine(provider)
        agent = await engine.register_agent(make_agent())

        suspended = await run_to_rest(engine, agent)

        assert suspended.status == ExecutionStatus.AWAITING_APPROVAL
        assert suspended.step_count == 0
        approvals = await engine.list_approvals(ApprovalResolution.PENDING)
        assert [a.id for a in approvals] == [suspended.pending_approval_id]

        await engine.deny(suspended.pending_approval_id, "alice", "not authorized")
        result = await engine.wait_for(suspended.execution_id, timeout=5)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.steps[0].observation.error_type == "denied"
        assert "tool call denied: not authorized" in provider.last_prompt_text()
        assert tool_log.calls == []

    @pytest.mark.asyncio
    async def test_approved_call_runs_exactly_once(self, make_engine, make_agent, tool_log):
        """An approved call executes once, however often a resume is attempted."""
        engine = make_engine(ScriptedProvider([
            tool_reply("transfer_funds", TRANSFER),
            final_reply("Transfer complete."),
        ]))
        agent = await engine.register_agent(make_agent())

        suspended = await run_to_rest(engine, agent)
        approval_id = suspended.pending_approval_id

        await engine.approve(approval_id, "alice")
        result = await engine.wait_for(suspended.execution_id, timeout=5)

        with pytest.raises(ApprovalAlreadyResolvedError):
            await engine.approve(approval_id, "bob")
        assert await engine.recover() == []
        again = await engine.controller.drive(suspended.execution_id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.output == "Transfer complete."
        assert result.steps[0].observation.output == {"transferred": 500, "to": "acc-9"}
        assert again.status == ExecutionStatus.COMPLETED
        assert tool_log.calls == [{"tool": "transfer_funds", "amount": 500, "to_account": "acc-9"}]
        assert (await engine.get_approval(approval_id)).consumed

    @pytest.mark.asyncio
    async def test_approval_time_does_not_count_against_timeout(self, make_engine, make_agent):
        """Time spent waiting for a human is not active time."""
        engine = make_engine(ScriptedProvider([
            tool_reply("transfer_funds", TRANSFER),
            final_reply("Transfer complete."),
        ]))
        agent = await engine.register_agent(make_agent(timeout_seconds=0.5))

        suspended = await run_to_rest(engine, agent)
        await asyncio.sleep(0.6)
        await engine.approve(suspended.pending_approval_id, "alice")
        result = await engine.wait_for(suspended.execution_id, timeout=5)

        assert result.status == ExecutionStatus.COMPLETED


class TestCancellation:
    """Test cancellation and terminal-state exclusivity."""

    @pytest.mark.asyncio
    async def test_cancel_queued(self, make_engine, make_agent):
        """A queued execution is cancelled immediately."""
        engine = make_engine(ScriptedProvider())
        agent = await engine.register_agent(make_agent())
        execution = await engine.controller.create_execution(agent, {})

        cancelled = await engine.cancel(execution.id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert [e.event_type for e in terminal_events(engine, execution.id)] == ["agent.execution.cancelled"]

    @pytest.mark.asyncio
    async def test_cancel_awaiting_approval(self, make_engine, make_agent, tool_log):
        """Cancelling a suspended execution expires its approval."""
        engine = make_engine(ScriptedProvider([tool_reply("transfer_funds", TRANSFER)]))
        agent = await engine.register_agent(make_agent())
        suspended = await run_to_rest(engine, agent)

        cancelled = await engine.cancel(suspended.execution_id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        approval = await engine.get_approval(suspended.pending_approval_id)
        assert approval.resolution == ApprovalResolution.EXPIRED
        with pytest.raises(ApprovalAlreadyResolvedError):
            await engine.approve(approval.id, "alice")
        await engine.drain()
        assert tool_log.calls == []
        assert (await engine.get_execution(suspended.execution_id)).status == ExecutionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_running(self, make_engine, make_agent):
        """A running execution stops cooperatively before its next step."""
        provider = CancelDuringCallProvider(default=tool_reply("lookup_customer", {"customer_id": "1"}))
        engine = make_engine(provider)
        provider.engine = engine
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.step_count == 1

    @pytest.mark.asyncio
    async def test_cancel_during_call_that_needs_approval(self, make_engine, make_agent, tool_log):
        """A cancel requested while the model answers with a risky call wins over the approval."""
        provider = CancelDuringCallProvider(default=tool_reply("transfer_funds", TRANSFER))
        engine = make_engine(provider)
        provider.engine = engine
        agent = await engine.register_agent(make_agent())

        result = await run_to_rest(engine, agent)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.step_count == 0
        assert await engine.list_approvals(execution_id=result.execution_id) == []
        assert tool_log.calls == []
        assert [e.event_type for e in terminal_events(engine, result.execution_id)] == ["agent.execution.cancelled"]

    @pytest.mark.asyncio
    async def test_cancel_flag_honoured_on_resume(self, make_engine, make_agent, tool_log):
        """An approved call is not run when cancellation was requested before the resume."""
        engine = make_engine(ScriptedProvider([tool_reply("transfer_funds", TRANSFER)]))
        agent = await engine.register_agent(make_agent())
        suspended = await run_to_rest(engine, agent)
        await engine.store.request_cancel(suspended.execution_id)

        await engine.approve(suspended.pending_approval_id, "alice")
        await engine.drain()

        assert (await engine.get_execution(suspended.execution_id)).status == ExecutionStatus.CANCELLED
        assert tool_log.calls == []

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, make_engine, make_agent):
        """Once terminal, an execution never changes or announces again."""
        engine = make_engine(ScriptedProvider([final_reply("Done.")]))
        agent = await engine.register_agent(make_agent())
        result = await run_to_rest(engine, agent)

        after_cancel = await engine.cancel(result.execution_id)
        await engine.controller.drive(result.execution_id)

        assert after_cancel.status == ExecutionStatus.COMPLETED
        assert len(terminal_events(engine, result.execution_id)) == 1


class TestRecoveryAndMemory:
    """Test restart recovery and cross-run memory."""

    @pytest.mark.asyncio
    async def test_recover_queued_execution(self, make_engine, make_agent):
        """Queued executions without a worker are picked up on recovery."""
        engine = make_engine(ScriptedProvider([final_reply("Recovered.")]))
        agent = await engine.register_agent(make_agent())
        execution = await engine.controller.create_execution(agent, {})

        recovered = await engine.recover()
        await engine.drain()

        assert recovered == [execution.id]
        assert (await engine.get_result(execution.id)).output == "Recovered."

    @pytest.mark.asyncio
    async def test_second_run_sees_first_runs_memory(self, make_engine, make_agent):
        """Promoted facts and episodes of a finished run feed the next run's context."""
        provider = ScriptedProvider([
            tool_reply("lookup_customer", {"customer_id": "42"}),
            final_reply("Customer 42 is Ada."),
            final_reply("Already known."),
        ])
        engine = make_engine(provider)
        agent = await engine.register_agent(make_agent(memory_policy=MemoryPolicy(promote_facts=True)))

        first = await run_to_rest(engine, agent, {"customer_id": "42"})
        await run_to_rest(engine, agent, {"customer_id": "42"})

        prompt = provider.last_prompt_text()
        assert "customer 42 is named Ada" in prompt
        assert "## Previous Runs" in prompt
        long_term = await engine.store.list_memory(agent.id, MemoryTier.LONG_TERM)
        facts = [e for e in long_term if e.kind == MemoryKind.FACT]
        assert [e.source_execution_id for e in facts] == [first.execution_id]
        assert await engine.store.list_memory(agent.id, MemoryTier.SHORT_TERM) == []


    @pytest.mark.asyncio
    async def test_concurrent_runs_share_facts(self, make_engine, make_agent):
        """Concurrent runs remembering the same facts leave one entry per fact."""
        facts = ["Ada prefers email", "Ada is on the gold plan"]
        engine = make_engine(FactWritingProvider(facts))
        agent = await engine.register_agent(make_agent())

        executions = [await engine.submit(agent, {"run": i}) for i in range(3)]
        results = [await engine.wait_for(e.id, timeout=5) for e in executions]

        assert all(r.status == ExecutionStatus.COMPLETED for r in results)
        assert all(r.step_count == len(facts) + 1 for r in results)
        long_term = await engine.store.list_memory(agent.id, MemoryTier.LONG_TERM)
        assert sorted(e.content for e in long_term) == sorted(facts)
