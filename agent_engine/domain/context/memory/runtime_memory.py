from typing import List

from agent_engine.domain.models.agent_state import Execution, Step
from agent_engine.domain.models.memory import MemoryEntry, MemoryKind, MemoryTier
from agent_engine.infrastructure.persistence.store import EngineStore


def step_digest(step: Step, limit: int = 160) -> str:
    """One-line rendering of a step"""
    if step.is_final:
        line = f"step {step.index}: final answer: {step.action.answer or ''}"
    else:
        call = step.action.tool_call
        outcome = step.observation.to_text() if step.observation else "no result"
        line = f"step {step.index}: {call.name}({_short_args(call.arguments)}) -> {outcome}"
    line = " ".join(line.split())
    return line if len(line) <= limit else line[: limit - 3] + "..."


def _short_args(arguments: dict) -> str:
    return ", ".join(f"{key}={value!r}" for key, value in arguments.items())


class RuntimeMemory:
    """Short-term memory: one entry per step of the running execution"""

    def __init__(self, store: EngineStore):
        self.store = store

    async def add_step(self, execution: Execution, step: Step) -> MemoryEntry:
        entry, _ = await self.store.append_memory(
            MemoryEntry(
                agent_id=execution.agent_id,
                tier=MemoryTier.SHORT_TERM,
                kind=MemoryKind.STEP,
                content=step_digest(step),
                source_execution_id=execution.id,
                metadata={"step_index": step.index},
                dedupe_key=f"step:{execution.id}:{step.index}",
            )
        )
        return entry

    async def get_entries(self, execution: Execution) -> List[MemoryEntry]:
        entries = await self.store.list_memory(
            execution.agent_id, MemoryTier.SHORT_TERM, execution_id=execution.id
        )
        return sorted(entries, key=lambda e: e.metadata.get("step_index", 0))

    async def clear_execution(self, execution: Execution) -> int:
        """Discard all short-term entries of an execution"""

        entries = await self.store.list_memory(
            execution.agent_id, MemoryTier.SHORT_TERM, execution_id=execution.id
        )
        return await self.store.delete_memory([entry.id for entry in entries])
