"""Persistence boundary for agents, executions, steps, memory and approvals.

``InMemoryEngineStore`` hands out copies on every read and write so callers can
never mutate stored state in place; updates to executions and approvals are
compare-and-set on their version or resolution.
"""
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import asyncio

import structlog

from agent_engine.domain.errors import (
    AgentNotFoundError,
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    ConcurrentModificationError,
    DuplicateStepError,
    ExecutionNotFoundError,
    RateLimitExceededError,
)
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    Execution,
    ExecutionStatus,
    Step,
    utcnow,
)
from agent_engine.domain.models.approval import ApprovalResolution, PendingApproval
from agent_engine.domain.models.memory import MemoryEntry, MemoryTier
from agent_engine.domain.models.usage import UsageRecord

logger = structlog.get_logger(__name__)


class EngineStore(ABC):
    """Abstract store used by the engine. Implementations must be safe for concurrent tasks."""

    # Agents
    @abstractmethod
    async def save_agent(self, agent: AgentConfig) -> None: ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> AgentConfig: ...

    @abstractmethod
    async def list_agents(self, active_only: bool = False) -> List[AgentConfig]: ...

    # Executions
    @abstractmethod
    async def create_execution(self, execution: Execution) -> Execution: ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution: ...

    @abstractmethod
    async def update_execution(self, execution: Execution) -> Execution:
        """Persist if the stored version equals ``execution.version``; returns the bumped copy"""

    @abstractmethod
    async def list_executions(
        self,
        agent_id: Optional[str] = None,
        statuses: Optional[List[ExecutionStatus]] = None,
    ) -> List[Execution]: ...

    @abstractmethod
    async def acquire_run_slot(self, agent_id: str, now: datetime, max_per_hour: int, max_per_day: int) -> None:
        """Check the agent's run limits and record a run in one atomic step.

        Raises RateLimitExceededError when either window is full.
        """

    # Steps
    @abstractmethod
    async def append_step(self, execution_id: str, step: Step) -> None: ...

    @abstractmethod
    async def list_steps(self, execution_id: str) -> List[Step]: ...

    # Memory
    @abstractmethod
    async def append_memory(self, entry: MemoryEntry) -> Tuple[MemoryEntry, bool]:
        """Append an entry; an existing entry with the same dedupe key is returned instead"""

    @abstractmethod
    async def list_memory(
        self,
        agent_id: str,
        tier: MemoryTier,
        execution_id: Optional[str] = None,
    ) -> List[MemoryEntry]: ...

    @abstractmethod
    async def delete_memory(self, entry_ids: List[str]) -> int: ...

    # Approvals
    @abstractmethod
    async def create_approval(self, approval: PendingApproval) -> PendingApproval: ...

    @abstractmethod
    async def get_approval(self, approval_id: str) -> PendingApproval: ...

    @abstractmethod
    async def list_approvals(
        self,
        resolution: Optional[ApprovalResolution] = None,
        execution_id: Optional[str] = None,
    ) -> List[PendingApproval]: ...

    @abstractmethod
    async def resolve_approval(
        self,
        approval_id: str,
        resolution: ApprovalResolution,
        resolved_by: Optional[str],
        notes: Optional[str],
    ) -> PendingApproval:
        """Compare-and-set from pending; raises ApprovalAlreadyResolvedError otherwise"""

    @abstractmethod
    async def claim_approval(self, approval_id: str) -> Optional[PendingApproval]:
        """Mark a resolved approval consumed; None if it was already consumed"""

    # Usage
    @abstractmethod
    async def save_usage(self, record: UsageRecord) -> None: ...

    @abstractmethod
    async def get_usage(self, execution_id: str) -> Optional[UsageRecord]: ...

    # Cancellation flags
    @abstractmethod
    async def request_cancel(self, execution_id: str) -> None: ...

    @abstractmethod
    async def is_cancel_requested(self, execution_id: str) -> bool: ...


class InMemoryEngineStore(EngineStore):
    """In-process store guarded by a single asyncio lock"""

    def __init__(self):
        self.agents: Dict[str, AgentConfig] = {}
        self.executions: Dict[str, Execution] = {}
        self.steps: Dict[str, Dict[int, Step]] = defaultdict(dict)
        self.memory: Dict[str, MemoryEntry] = {}
        self.memory_keys: Dict[str, str] = {}
        self.approvals: Dict[str, PendingApproval] = {}
        self.usage: Dict[str, UsageRecord] = {}
        self.cancel_flags: set = set()
        self.run_starts: Dict[str, List[datetime]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def save_agent(self, agent: AgentConfig) -> None:
        async with self._lock:
            self.agents[agent.id] = agent

    async def get_agent(self, agent_id: str) -> AgentConfig:
        async with self._lock:
            agent = self.agents.get(agent_id)
            if agent is None:
                raise AgentNotFoundError(agent_id)
            return agent

    async def list_agents(self, active_only: bool = False) -> List[AgentConfig]:
        async with self._lock:
            agents = list(self.agents.values())
        if active_only:
            agents = [agent for agent in agents if agent.is_active]
        return agents

    async def create_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            stored = execution.model_copy(deep=True)
            self.executions[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution:
        async with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            return execution.model_copy(deep=True)

    async def update_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            current = self.executions.get(execution.id)
            if current is None:
                raise ExecutionNotFoundError(execution.id)
            if current.version != execution.version:
                raise ConcurrentModificationError(
                    "Execution", execution.id, execution.version, current.version
                )

            stored = execution.model_copy(deep=True, update={"version": execution.version + 1})
            self.executions[stored.id] = stored
            return stored.model_copy(deep=True)

    async def list_executions(
        self,
        agent_id: Optional[str] = None,
        statuses: Optional[List[ExecutionStatus]] = None,
    ) -> List[Execution]:
        async with self._lock:
            results = [
                execution.model_copy(deep=True)
                for execution in self.executions.values()
                if (agent_id is None or execution.agent_id == agent_id)
                and (not statuses or execution.status in statuses)
            ]
        return sorted(results, key=lambda e: e.created_at)

    async def acquire_run_slot(self, agent_id: str, now: datetime, max_per_hour: int, max_per_day: int) -> None:
        async with self._lock:
            runs = [at for at in self.run_starts[agent_id] if at > now - timedelta(days=1)]
            self.run_starts[agent_id] = runs
            if sum(1 for at in runs if at > now - timedelta(hours=1)) >= max_per_hour:
                raise RateLimitExceededError(agent_id, "hourly", max_per_hour)
            if len(runs) >= max_per_day:
                raise RateLimitExceededError(agent_id, "daily", max_per_day)
            runs.append(now)

    async def append_step(self, execution_id: str, step: Step) -> None:
        async with self._lock:
            if execution_id not in self.executions:
                raise ExecutionNotFoundError(execution_id)
            if step.index in self.steps[execution_id]:
                raise DuplicateStepError(execution_id, step.index)
            self.steps[execution_id][step.index] = step

    async def list_steps(self, execution_id: str) -> List[Step]:
        async with self._lock:
            steps = self.steps.get(execution_id, {})
            return [steps[index] for index in sorted(steps)]

    async def append_memory(self, entry: MemoryEntry) -> Tuple[MemoryEntry, bool]:
        async with self._lock:
            if entry.dedupe_key:
                existing_id = self.memory_keys.get(entry.dedupe_key)
                if existing_id is not None and existing_id in self.memory:
                    return self.memory[existing_id].model_copy(deep=True), False
                self.memory_keys[entry.dedupe_key] = entry.id

            self.memory[entry.id] = entry.model_copy(deep=True)
            return entry.model_copy(deep=True), True

    async def list_memory(
        self,
        agent_id: str,
        tier: MemoryTier,
        execution_id: Optional[str] = None,
    ) -> List[MemoryEntry]:
        async with self._lock:
            entries = [
                entry.model_copy(deep=True)
                for entry in self.memory.values()
                if entry.agent_id == agent_id
                and entry.tier == tier
                and (execution_id is None or entry.source_execution_id == execution_id)
            ]
        return sorted(entries, key=lambda e: e.created_at)

    async def delete_memory(self, entry_ids: List[str]) -> int:
        removed = 0
        async with self._lock:
            for entry_id in entry_ids:
                entry = self.memory.pop(entry_id, None)
                if entry is None:
                    continue
                removed += 1
                if entry.dedupe_key and self.memory_keys.get(entry.dedupe_key) == entry_id:
                    del self.memory_keys[entry.dedupe_key]
        return removed

    async def create_approval(self, approval: PendingApproval) -> PendingApproval:
        async with self._lock:
            self.approvals[approval.id] = approval.model_copy(deep=True)
            return approval.model_copy(deep=True)

    async def get_approval(self, approval_id: str) -> PendingApproval:
        async with self._lock:
            approval = self.approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            return approval.model_copy(deep=True)

    async def list_approvals(
        self,
        resolution: Optional[ApprovalResolution] = None,
        execution_id: Optional[str] = None,
    ) -> List[PendingApproval]:
        async with self._lock:
            results = [
                approval.model_copy(deep=True)
                for approval in self.approvals.values()
                if (resolution is None or approval.resolution == resolution)
                and (execution_id is None or approval.execution_id == execution_id)
            ]
        return sorted(results, key=lambda a: a.requested_at)

    async def resolve_approval(
        self,
        approval_id: str,
        resolution: ApprovalResolution,
        resolved_by: Optional[str],
        notes: Optional[str],
    ) -> PendingApproval:
        async with self._lock:
            approval = self.approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            if not approval.is_pending:
                raise ApprovalAlreadyResolvedError(approval_id, approval.resolution.value)

            approval.resolution = resolution
            approval.resolved_by = resolved_by
            approval.notes = notes
            approval.resolved_at = utcnow()
            return approval.model_copy(deep=True)

    async def claim_approval(self, approval_id: str) -> Optional[PendingApproval]:
        async with self._lock:
            approval = self.approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            if approval.is_pending or approval.consumed:
                return None
            approval.consumed = True
            return approval.model_copy(deep=True)

    async def save_usage(self, record: UsageRecord) -> None:
        async with self._lock:
            self.usage[record.execution_id] = record.model_copy(deep=True)

    async def get_usage(self, execution_id: str) -> Optional[UsageRecord]:
        async with self._lock:
            record = self.usage.get(execution_id)
            return record.model_copy(deep=True) if record else None

    async def request_cancel(self, execution_id: str) -> None:
        async with self._lock:
            if execution_id not in self.executions:
                raise ExecutionNotFoundError(execution_id)
            self.cancel_flags.add(execution_id)

    async def is_cancel_requested(self, execution_id: str) -> bool:
        async with self._lock:
            return execution_id in self.cancel_flags
