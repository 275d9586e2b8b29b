from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal
from datetime import datetime
import asyncio
import operator
import time

from langgraph.graph import StateGraph, START, END
import structlog

from agent_engine.domain.context.context_manager import MemoryManager
from agent_engine.domain.errors import (
    ApprovalDenied,
    ConcurrentModificationError,
    PersistenceError,
    ProviderError,
    QuotaExceededError,
    RetryableProviderError,
)
from agent_engine.domain.events.event_bus import EventBus
from agent_engine.domain.model.model_gateway import ModelGateway
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    Execution,
    ExecutionResult,
    ExecutionStatus,
    FailureReason,
    ModelResponse,
    Observation,
    Step,
    StepAction,
    TriggerInfo,
    utcnow,
)
from agent_engine.domain.models.approval import ApprovalResolution, PendingApproval
from agent_engine.domain.models.usage import UsageRecord
from agent_engine.domain.orchestration.approval.approval_gate import ApprovalGate
from agent_engine.domain.orchestration.usage.usage_meter import UsageMeter
from agent_engine.domain.tool.tool_executor import ApprovalRequired, ToolContext, ToolDispatcher
from agent_engine.infrastructure.observability.logging import agent_logger, metrics
from agent_engine.infrastructure.persistence.store import EngineStore

logger = structlog.get_logger(__name__)


class ReActState(TypedDict):
    """State for the reason-act-observe graph"""
    agent: AgentConfig
    execution: Execution
    steps: List[Step]
    usage: UsageRecord
    segment_started: float
    resume_approval: Optional[PendingApproval]
    response: Optional[ModelResponse]
    response_cost: float
    step_started_at: Optional[datetime]
    action: Optional[StepAction]
    observation: Optional[Observation]
    outcome: Optional[Dict[str, Any]]
    route: str
    node_trace: Annotated[List[str], operator.add]


def _outcome(status: ExecutionStatus, reason: Optional[FailureReason] = None,
             detail: Optional[str] = None, output: Optional[str] = None) -> Dict[str, Any]:
    return {"status": status, "reason": reason, "detail": detail, "output": output}


class StepController:
    """Drives one execution through the ReAct loop using LangGraph"""

    def __init__(
        self,
        store: EngineStore,
        gateway: ModelGateway,
        dispatcher: ToolDispatcher,
        memory: MemoryManager,
        approval_gate: ApprovalGate,
        usage_meter: UsageMeter,
        event_bus: EventBus,
    ):
        self.store = store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.memory = memory
        self.approval_gate = approval_gate
        self.usage_meter = usage_meter
        self.event_bus = event_bus
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the ReAct workflow graph"""

        workflow = StateGraph(ReActState)

        workflow.add_node("guard", self.guard_node)
        workflow.add_node("reason", self.reason_node)
        workflow.add_node("act", self.act_node)
        workflow.add_node("approval_resume", self.approval_resume_node)
        workflow.add_node("observe", self.observe_node)
        workflow.add_node("finalize", self.finalize_node)

        # Resumed executions re-enter with the approved or denied call
        workflow.add_conditional_edges(
            START,
            self.route_entry,
            {"guard": "guard", "approval_resume": "approval_resume"},
        )

        workflow.add_conditional_edges(
            "guard", self.route_next, {"continue": "reason", "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "reason", self.route_next, {"continue": "act", "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "act", self.route_next, {"continue": "observe", "suspend": END, "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "approval_resume", self.route_next, {"continue": "observe", "finalize": "finalize"}
        )
        workflow.add_conditional_edges(
            "observe", self.route_next, {"continue": "guard", "finalize": "finalize"}
        )
        workflow.add_edge("finalize", END)

        return workflow.compile()

    def route_entry(self, state: ReActState) -> Literal["guard", "approval_resume"]:
        return "approval_resume" if state.get("resume_approval") else "guard"

    def route_next(self, state: ReActState) -> str:
        return state["route"]

    # Nodes

    async def guard_node(self, state: ReActState) -> Dict[str, Any]:
        """Termination checks before every iteration"""
        agent = state["agent"]
        execution = state["execution"]

        if await self.store.is_cancel_requested(execution.id):
            return self._finish(state, "guard", _outcome(ExecutionStatus.CANCELLED))

        if execution.step_count >= agent.max_steps:
            return self._finish(state, "guard", _outcome(
                ExecutionStatus.FAILED,
                FailureReason.STEP_BUDGET_EXCEEDED,
                f"step budget of {agent.max_steps} exhausted",
            ))

        if self._active_seconds(state) >= agent.timeout_seconds:
            return self._finish(state, "guard", _outcome(
                ExecutionStatus.FAILED,
                FailureReason.TIMEOUT,
                f"execution exceeded {agent.timeout_seconds:g}s",
            ))

        return {"route": "continue", "node_trace": ["guard"]}

    async def reason_node(self, state: ReActState) -> Dict[str, Any]:
        """Assemble context, reserve quota and ask the model for the next action"""
        agent = state["agent"]
        execution = state["execution"]
        usage = state["usage"]

        tool_names = [name for name in agent.allowed_tools if agent.allows_tool(name)]
        window = await self.memory.assemble_context(agent, execution, state["steps"], tool_names)
        if window.summary_usage is not None:
            execution.add_usage(window.summary_usage, window.summary_cost)
            self._add_model_usage(usage, window.summary_usage, window.summary_cost, calls=1)

        estimate = window.estimated_tokens + agent.model.max_tokens
        reservation = await self.usage_meter.reserve(agent.quota_key, estimate)
        if not reservation.allowed:
            remaining = (await self.usage_meter.snapshot(agent.quota_key)).remaining
            error = QuotaExceededError(agent.quota_key, estimate, remaining)
            return self._finish(state, "reason", _outcome(
                ExecutionStatus.FAILED, FailureReason.QUOTA_EXCEEDED, str(error)
            ))

        remaining_time = agent.timeout_seconds - self._active_seconds(state)
        if remaining_time <= 0:
            await self.usage_meter.release(reservation)
            return self._finish(state, "reason", _outcome(
                ExecutionStatus.FAILED, FailureReason.TIMEOUT, f"execution exceeded {agent.timeout_seconds:g}s"
            ))

        step_started_at = utcnow()
        tools = self.dispatcher.registry.describe_for_model(tool_names)
        try:
            response = await asyncio.wait_for(
                self.gateway.complete(window, agent.model, tools),
                timeout=remaining_time,
            )

        except asyncio.TimeoutError:
            await self.usage_meter.release(reservation)
            return self._finish(state, "reason", _outcome(
                ExecutionStatus.FAILED, FailureReason.TIMEOUT,
                f"model call exceeded the remaining {remaining_time:.1f}s of the execution",
            ))

        except ProviderError as e:
            if e.usage is not None and e.usage.total_tokens:
                charge = await self.usage_meter.commit(reservation, e.usage, agent.model.model)
                execution.add_usage(e.usage, charge.cost)
                self._add_model_usage(usage, e.usage, charge.cost, calls=1, overage=charge.overage_tokens,
                                      overage_cost=charge.overage_cost)
            else:
                await self.usage_meter.release(reservation)

            if isinstance(e, RetryableProviderError):
                reason = FailureReason.MODEL_UNAVAILABLE
            else:
                reason = FailureReason.MODEL_ERROR
            return self._finish(state, "reason", _outcome(ExecutionStatus.FAILED, reason, str(e)))

        charge = await self.usage_meter.commit(reservation, response.usage, agent.model.model)
        execution.add_usage(response.usage, charge.cost)
        self._add_model_usage(usage, response.usage, charge.cost, calls=response.attempts,
                              overage=charge.overage_tokens, overage_cost=charge.overage_cost)

        return {
            "execution": execution,
            "usage": usage,
            "response": response,
            "response_cost": charge.cost,
            "step_started_at": step_started_at,
            "route": "continue",
            "node_trace": ["reason"],
        }

    async def act_node(self, state: ReActState) -> Dict[str, Any]:
        """Turn the model response into an action and dispatch it"""
        agent = state["agent"]
        execution = state["execution"]
        response = state["response"]

        if response.is_final:
            return {
                "action": StepAction.final(response.content),
                "observation": None,
                "route": "continue",
                "node_trace": ["act"],
            }

        call = response.tool_call
        action = StepAction.call(call)

        if not agent.allows_tool(call.name):
            logger.info("Tool call rejected by allow-list", execution_id=execution.id, tool=call.name)
            return {
                "action": action,
                "observation": Observation.failure("rejected", f"tool {call.name} is not permitted for this agent"),
                "route": "continue",
                "node_trace": ["act"],
            }

        result = await self.dispatcher.invoke(call, self._tool_context(agent, execution))

        if isinstance(result, ApprovalRequired):
            # A cancel that arrived during the model call must not leave a pending approval behind
            if await self.store.is_cancel_requested(execution.id):
                return self._finish(state, "act", _outcome(ExecutionStatus.CANCELLED))

            self._checkpoint_clock(state)
            await self.store.save_usage(state["usage"])
            _, execution = await self.approval_gate.request_approval(
                agent,
                execution,
                call,
                result.assessment,
                response,
                step_index=execution.step_count,
                response_cost=state["response_cost"],
            )
            agent_logger.log_transition(
                execution.id, ExecutionStatus.RUNNING.value, ExecutionStatus.AWAITING_APPROVAL.value, call.name
            )
            return {"execution": execution, "route": "suspend", "node_trace": ["act"]}

        return {"action": action, "observation": result, "route": "continue", "node_trace": ["act"]}

    async def approval_resume_node(self, state: ReActState) -> Dict[str, Any]:
        """Finish the step that was waiting on a human decision"""
        agent = state["agent"]
        execution = state["execution"]
        approval = state["resume_approval"]
        call = approval.tool_call

        if await self.store.is_cancel_requested(execution.id):
            logger.info("Cancelled before resuming", execution_id=execution.id, approval_id=approval.id)
            return {
                **self._finish(state, "approval_resume", _outcome(ExecutionStatus.CANCELLED)),
                "resume_approval": None,
            }

        if approval.resolution == ApprovalResolution.APPROVED:
            observation = await self.dispatcher.invoke(
                call, self._tool_context(agent, execution), skip_risk_check=True
            )
        elif approval.resolution == ApprovalResolution.DENIED:
            observation = Observation.from_error(ApprovalDenied(call.name, approval.notes or "no reason given"))
        else:
            observation = Observation.from_error(ApprovalDenied(call.name, "approval expired"))

        return {
            "response": approval.response,
            "response_cost": approval.response_cost,
            "step_started_at": approval.requested_at,
            "action": StepAction.call(call),
            "observation": observation,
            "resume_approval": None,
            "route": "continue",
            "node_trace": ["approval_resume"],
        }

    async def observe_node(self, state: ReActState) -> Dict[str, Any]:
        """Record the step and write it back to memory"""
        execution = state["execution"]
        usage = state["usage"]
        response = state["response"]
        action = state["action"]
        observation = state["observation"]

        step = Step(
            index=execution.step_count,
            response=response,
            action=action,
            observation=observation,
            usage=response.usage,
            cost=state["response_cost"],
            started_at=state["step_started_at"] or utcnow(),
            completed_at=utcnow(),
        )
        await self.store.append_step(execution.id, step)
        execution.step_count += 1
        steps = state["steps"] + [step]

        if action.kind == "tool_call" and observation is not None and observation.error_type not in ("rejected", "denied"):
            usage.tool_calls += 1

        agent_logger.log_step(
            execution.id,
            step.index,
            action.kind,
            tool_name=action.tool_call.name if action.tool_call else None,
            tokens=step.usage.total_tokens,
            error_type=observation.error_type if observation else None,
        )
        await self.memory.write_back(execution, step)

        if step.is_final:
            return {
                "steps": steps,
                "execution": execution,
                "outcome": _outcome(ExecutionStatus.COMPLETED, output=action.answer or ""),
                "route": "finalize",
                "node_trace": ["observe"],
            }

        execution = await self.store.update_execution(execution)
        await self.store.save_usage(usage)
        return {
            "steps": steps,
            "execution": execution,
            "response": None,
            "observation": None,
            "route": "continue",
            "node_trace": ["observe"],
        }

    async def finalize_node(self, state: ReActState) -> Dict[str, Any]:
        """Move the execution to its terminal state and publish the outcome"""
        agent = state["agent"]
        execution = state["execution"]
        outcome = state["outcome"]

        self._checkpoint_clock(state)
        previous = execution.status.value
        status = outcome["status"]
        if status == ExecutionStatus.COMPLETED:
            execution.complete(outcome["output"])
        elif status == ExecutionStatus.FAILED:
            execution.fail(outcome["reason"], outcome["detail"])
        else:
            execution.cancel()

        await self.store.save_usage(state["usage"])
        execution = await self.store.update_execution(execution)
        agent_logger.log_transition(
            execution.id, previous, execution.status.value,
            execution.failure_reason.value if execution.failure_reason else None,
        )
        await self.memory.finalize(agent, execution, state["steps"])
        await self.publish_terminal(execution)

        metrics.increment_counter(f"execution.{execution.status.value}")
        if execution.duration_seconds is not None:
            metrics.record_latency("execution", execution.duration_seconds * 1000)

        return {"execution": execution, "route": "end", "node_trace": ["finalize"]}

    # Helpers

    def _finish(self, state: ReActState, node: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
        return {"execution": state["execution"], "outcome": outcome, "route": "finalize", "node_trace": [node]}

    def _active_seconds(self, state: ReActState) -> float:
        return state["execution"].active_seconds + (time.monotonic() - state["segment_started"])

    def _checkpoint_clock(self, state: ReActState) -> None:
        """Fold the current running segment into active_seconds"""
        now = time.monotonic()
        state["execution"].active_seconds += now - state["segment_started"]
        state["segment_started"] = now

    def _tool_context(self, agent: AgentConfig, execution: Execution) -> ToolContext:
        return ToolContext(
            execution_id=execution.id,
            agent_id=agent.id,
            risk_policy=agent.risk_policy,
            memory=self.memory,
        )

    @staticmethod
    def _add_model_usage(usage: UsageRecord, tokens, cost: float, calls: int = 1,
                         overage: int = 0, overage_cost: float = 0.0) -> None:
        usage.prompt_tokens += tokens.prompt_tokens
        usage.completion_tokens += tokens.completion_tokens
        usage.model_calls += calls
        usage.estimated_cost += cost
        usage.overage_tokens += overage
        usage.overage_cost += overage_cost
        usage.billable_overage = usage.billable_overage or overage > 0
        usage.updated_at = utcnow()

    async def publish_terminal(self, execution: Execution) -> None:
        payload: Dict[str, Any] = {
            "executionId": execution.id,
            "agentId": execution.agent_id,
            "status": execution.status.value,
        }
        if execution.output is not None:
            payload["output"] = execution.output
        if execution.failure_reason is not None:
            payload["failureReason"] = execution.failure_reason.value
        await self.event_bus.publish(f"agent.execution.{execution.status.value}", payload)

    # Entry points

    async def create_execution(
        self,
        agent: AgentConfig,
        input: Dict[str, Any],
        trigger: Optional[TriggerInfo] = None,
    ) -> Execution:
        execution = Execution(
            agent_id=agent.id,
            input=input,
            trigger=trigger or TriggerInfo(),
            agent_config=agent,
        )
        execution = await self.store.create_execution(execution)
        logger.info("Execution queued", execution_id=execution.id, agent_id=agent.id)
        return execution

    async def run(
        self,
        agent: AgentConfig,
        input: Dict[str, Any],
        trigger: Optional[TriggerInfo] = None,
    ) -> ExecutionResult:
        """Create an execution and drive it until it terminates or suspends"""
        execution = await self.create_execution(agent, input, trigger)
        return await self.drive(execution.id)

    async def drive(self, execution_id: str) -> ExecutionResult:
        """Claim an execution from the store and run it from where it left off"""
        execution = await self.store.get_execution(execution_id)
        if execution.is_terminal:
            return await self._result(execution_id)

        agent = execution.agent_config or await self.store.get_agent(execution.agent_id)
        structlog.contextvars.bind_contextvars(execution_id=execution.id, agent_id=agent.id)

        try:
            claimed = await self._claim(execution)
            if claimed is None:
                return await self._result(execution_id)
            execution, resume_approval = claimed

            steps = await self.store.list_steps(execution.id)
            execution.step_count = len(steps)
            await self.memory.rehydrate(execution, steps)
            usage = await self.store.get_usage(execution.id) or UsageRecord(
                execution_id=execution.id, agent_id=agent.id, quota_key=agent.quota_key
            )

            state: ReActState = {
                "agent": agent,
                "execution": execution,
                "steps": steps,
                "usage": usage,
                "segment_started": time.monotonic(),
                "resume_approval": resume_approval,
                "response": None,
                "response_cost": 0.0,
                "step_started_at": None,
                "action": None,
                "observation": None,
                "outcome": None,
                "route": "continue",
                "node_trace": [],
            }
            final_state = await self.workflow.ainvoke(
                state, config={"recursion_limit": (agent.max_steps + 2) * 5 + 10}
            )
            logger.debug("Execution segment finished", trace=final_state["node_trace"])

        except PersistenceError as e:
            logger.error("Persistence failure during execution", error=str(e))
            await self._fail_best_effort(execution_id, FailureReason.PERSISTENCE_ERROR, str(e))

        except Exception as e:
            logger.exception("Unexpected engine failure")
            await self._fail_best_effort(execution_id, FailureReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}")

        finally:
            structlog.contextvars.unbind_contextvars("execution_id", "agent_id")

        return await self._result(execution_id)

    async def _claim(self, execution: Execution):
        """Move a queued, orphaned or resumable execution to running.

        Returns None when there is nothing to do or another worker won the race.
        """
        resume_approval = None

        if execution.status == ExecutionStatus.AWAITING_APPROVAL:
            approval = await self.store.get_approval(execution.pending_approval_id)
            if approval.is_pending:
                logger.debug("Approval still pending", approval_id=approval.id)
                return None
            # A consumed approval on an execution still awaiting means an earlier
            # claim crashed before the transition; the transition CAS decides.
            await self.approval_gate.claim(approval.id)
            resume_approval = approval
            execution.pending_approval_id = None

        if execution.status != ExecutionStatus.RUNNING:
            previous = execution.status.value
            execution.transition(ExecutionStatus.RUNNING)
            try:
                execution = await self.store.update_execution(execution)
            except ConcurrentModificationError:
                logger.info("Execution claimed by another worker", execution_id=execution.id)
                return None
            agent_logger.log_transition(execution.id, previous, ExecutionStatus.RUNNING.value)

        return execution, resume_approval

    async def _fail_best_effort(self, execution_id: str, reason: FailureReason, detail: str) -> None:
        try:
            execution = await self.store.get_execution(execution_id)
            if execution.is_terminal:
                return
            if execution.status == ExecutionStatus.QUEUED:
                execution.transition(ExecutionStatus.RUNNING)
            if execution.status == ExecutionStatus.AWAITING_APPROVAL:
                execution.cancel()
            else:
                execution.fail(reason, detail)
            execution = await self.store.update_execution(execution)
            await self.publish_terminal(execution)
        except PersistenceError as e:
            logger.error("Could not record execution failure", execution_id=execution_id, error=str(e))

    async def _result(self, execution_id: str) -> ExecutionResult:
        execution = await self.store.get_execution(execution_id)
        steps = await self.store.list_steps(execution_id)
        return ExecutionResult.from_execution(execution, steps)
