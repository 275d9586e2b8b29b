from typing import Any, Dict, List, Optional, Set
import asyncio

import structlog

from agent_engine.domain.context.context_manager import MemoryManager
from agent_engine.domain.context.context_ranker import MemoryRanker
from agent_engine.domain.errors import ApprovalAlreadyResolvedError, ConcurrentModificationError
from agent_engine.domain.events.event_bus import BusEvent, EventBus, InMemoryEventBus
from agent_engine.domain.model.model_gateway import ModelGateway
from agent_engine.domain.model.providers import ModelProvider
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    Execution,
    ExecutionResult,
    ExecutionStatus,
    Step,
    TriggerInfo,
)
from agent_engine.domain.models.approval import ApprovalResolution, PendingApproval
from agent_engine.domain.orchestration.approval.approval_gate import ApprovalGate
from agent_engine.domain.orchestration.core.step_controller import StepController
from agent_engine.domain.orchestration.trigger.trigger_adapter import InboundEvent, TriggerAdapter
from agent_engine.domain.orchestration.usage.usage_meter import QuotaSource, UsageMeter
from agent_engine.domain.tool.builtin_tools import register_builtin_tools
from agent_engine.domain.tool.risk_classifier import RiskClassifier
from agent_engine.domain.tool.tool_executor import ToolDispatcher
from agent_engine.domain.tool.tool_registry import ToolRegistry
from agent_engine.infrastructure.config.settings import EngineSettings, get_settings
from agent_engine.infrastructure.observability.langfuse_tracing import get_langfuse
from agent_engine.infrastructure.persistence.store import EngineStore, InMemoryEngineStore

logger = structlog.get_logger(__name__)


class AgentEngine:
    """Owns one asyncio worker per execution and exposes the execution and approval operations"""

    def __init__(
        self,
        providers: Dict[str, ModelProvider],
        registry: Optional[ToolRegistry] = None,
        store: Optional[EngineStore] = None,
        event_bus: Optional[EventBus] = None,
        usage_meter: Optional[UsageMeter] = None,
        quota_source: Optional[QuotaSource] = None,
        risk_classifier: Optional[RiskClassifier] = None,
        ranker: Optional[MemoryRanker] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryEngineStore()
        self.event_bus = event_bus or InMemoryEventBus()
        self.usage_meter = usage_meter or UsageMeter(self.settings, quota_source)

        self.registry = registry or ToolRegistry()
        if not self.registry.frozen:
            if self.registry.get("remember_fact") is None:
                register_builtin_tools(self.registry)
            self.registry.freeze()

        self.gateway = ModelGateway(providers, self.settings)
        self.dispatcher = ToolDispatcher(self.registry, risk_classifier, self.settings.tool_timeout_seconds)
        self.memory = MemoryManager(self.store, self.gateway, self.usage_meter, ranker, self.settings)
        self.approval_gate = ApprovalGate(self.store, self.event_bus, on_resolved=self._on_approval_resolved)
        self.controller = StepController(
            self.store,
            self.gateway,
            self.dispatcher,
            self.memory,
            self.approval_gate,
            self.usage_meter,
            self.event_bus,
        )
        self.triggers = TriggerAdapter(self.store, self.submit)

        self.workers: Dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_executions)
        self._background: Set[asyncio.Task] = set()

    # Agents

    async def register_agent(self, agent: AgentConfig) -> AgentConfig:
        await self.store.save_agent(agent)
        logger.info("Agent registered", agent_id=agent.id, name=agent.name)
        return agent

    # Executions

    async def submit(
        self,
        agent: AgentConfig,
        input: Dict[str, Any],
        trigger: Optional[TriggerInfo] = None,
    ) -> Execution:
        """Queue an execution and start its worker"""
        execution = await self.controller.create_execution(agent, input, trigger)
        self.spawn(execution.id)
        return execution

    async def execute(
        self,
        agent_id: str,
        input: Dict[str, Any],
        wait: bool = False,
    ) -> Any:
        """Manual run; returns the execution, or its result when ``wait`` is set"""
        execution = await self.triggers.trigger_manual(agent_id, input)
        if wait:
            return await self.wait_for(execution.id)
        return execution

    def spawn(self, execution_id: str) -> asyncio.Task:
        """Start a worker; if one is still unwinding, the new one runs after it"""
        previous = self.workers.get(execution_id)
        if previous is not None and previous.done():
            previous = None

        worker = asyncio.create_task(
            self._run_worker(execution_id, previous), name=f"execution-{execution_id}"
        )
        self.workers[execution_id] = worker
        worker.add_done_callback(lambda _: self._reap(execution_id, worker))
        return worker

    def _reap(self, execution_id: str, worker: asyncio.Task) -> None:
        if self.workers.get(execution_id) is worker:
            del self.workers[execution_id]

    async def _run_worker(self, execution_id: str, previous: Optional[asyncio.Task] = None) -> ExecutionResult:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        async with self._semaphore:
            return await self.controller.drive(execution_id)

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionResult:
        """Wait for the current worker, then report the execution as stored"""
        worker = self.workers.get(execution_id)
        if worker is not None:
            await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        return await self.get_result(execution_id)

    async def get_execution(self, execution_id: str) -> Execution:
        return await self.store.get_execution(execution_id)

    async def get_steps(self, execution_id: str) -> List[Step]:
        await self.store.get_execution(execution_id)
        return await self.store.list_steps(execution_id)

    async def get_result(self, execution_id: str) -> ExecutionResult:
        execution = await self.store.get_execution(execution_id)
        steps = await self.store.list_steps(execution_id)
        return ExecutionResult.from_execution(execution, steps)

    async def list_executions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        return await self.store.list_executions(agent_id=agent_id, statuses=[status] if status else None)

    async def cancel(self, execution_id: str) -> Execution:
        """Cancel cooperatively when running, directly when queued or awaiting approval"""

        for _ in range(3):
            execution = await self.store.get_execution(execution_id)
            if execution.is_terminal:
                return execution

            if execution.status == ExecutionStatus.RUNNING:
                await self.store.request_cancel(execution_id)
                logger.info("Cancellation requested", execution_id=execution_id)
                return execution

            await self.store.request_cancel(execution_id)
            approval_id = execution.pending_approval_id
            execution.cancel()
            try:
                execution = await self.store.update_execution(execution)
            except ConcurrentModificationError:
                # A worker claimed it meanwhile; the flag stops it at the next guard
                continue

            if approval_id:
                try:
                    await self.approval_gate.resolve(
                        approval_id, ApprovalResolution.EXPIRED, None, "execution cancelled", resume=False
                    )
                except ApprovalAlreadyResolvedError:
                    pass

            await self.memory.finalize(execution.agent_config or await self.store.get_agent(execution.agent_id),
                                       execution, await self.store.list_steps(execution_id))
            await self.controller.publish_terminal(execution)
            logger.info("Execution cancelled", execution_id=execution_id)
            return execution

        return await self.store.get_execution(execution_id)

    # Approvals

    async def list_approvals(
        self,
        resolution: Optional[ApprovalResolution] = None,
        execution_id: Optional[str] = None,
    ) -> List[PendingApproval]:
        return await self.approval_gate.list(resolution, execution_id)

    async def get_approval(self, approval_id: str) -> PendingApproval:
        return await self.store.get_approval(approval_id)

    async def approve(self, approval_id: str, resolver: str, notes: Optional[str] = None) -> PendingApproval:
        return await self.approval_gate.resolve(approval_id, ApprovalResolution.APPROVED, resolver, notes)

    async def deny(self, approval_id: str, resolver: str, reason: Optional[str] = None) -> PendingApproval:
        return await self.approval_gate.resolve(approval_id, ApprovalResolution.DENIED, resolver, reason)

    async def _on_approval_resolved(self, approval: PendingApproval) -> None:
        self.spawn(approval.execution_id)

    # Triggers

    async def handle_event(self, event: InboundEvent) -> List[Execution]:
        return await self.triggers.handle_event(event)

    async def trigger_webhook(self, agent_id: str, payload: Dict[str, Any], secret: Optional[str]) -> Execution:
        return await self.triggers.trigger_webhook(agent_id, payload, secret)

    def subscribe_to_bus(self, pattern: str = "*") -> None:
        """Feed bus events (other than the engine's own) into the trigger adapter"""

        async def forward(event: BusEvent) -> None:
            if event.event_type.startswith("agent."):
                return
            await self.handle_event(InboundEvent(event_type=event.event_type, payload=event.payload))

        self.event_bus.subscribe(pattern, forward)

    # Lifecycle

    async def recover(self) -> List[str]:
        """Restart queued, orphaned running and resolved-but-unresumed executions"""

        recovered = []
        for execution in await self.store.list_executions(
            statuses=[ExecutionStatus.QUEUED, ExecutionStatus.RUNNING, ExecutionStatus.AWAITING_APPROVAL]
        ):
            if execution.id in self.workers:
                continue

            if execution.status == ExecutionStatus.AWAITING_APPROVAL:
                if not execution.pending_approval_id:
                    continue
                approval = await self.store.get_approval(execution.pending_approval_id)
                if approval.is_pending:
                    continue

            self.spawn(execution.id)
            recovered.append(execution.id)

        if recovered:
            logger.info("Recovered executions", count=len(recovered))
        return recovered

    async def start(self) -> None:
        await self.recover()
        self._start_loop(self._schedule_loop(), "schedule-ticker")
        self._start_loop(self._maintenance_loop(), "maintenance")
        logger.info("Agent engine started")

    def _start_loop(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _schedule_loop(self) -> None:
        while True:
            try:
                await self.triggers.tick()
            except Exception:
                logger.exception("Schedule tick failed")
            await asyncio.sleep(self.settings.schedule_tick_seconds)

    async def _maintenance_loop(self) -> None:
        while True:
            try:
                await self.usage_meter.reconcile()
                await self.approval_gate.expire_overdue()
                for agent in await self.store.list_agents():
                    await self.memory.long_term.prune_expired(agent.id)
            except Exception:
                logger.exception("Maintenance pass failed")
            await asyncio.sleep(self.settings.quota_reconcile_interval_seconds)

    async def drain(self) -> None:
        """Wait until no worker is running"""
        while self.workers:
            await asyncio.gather(*list(self.workers.values()), return_exceptions=True)
            # Let done callbacks reap finished workers
            await asyncio.sleep(0)

    async def stop(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.drain()
        client = get_langfuse(self.settings)
        if client is not None:
            client.flush()
        logger.info("Agent engine stopped")
