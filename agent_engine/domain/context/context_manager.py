from typing import Any, Dict, List, Optional, Tuple
import json

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from agent_engine.domain.context.context_ranker import MemoryRanker
from agent_engine.domain.context.memory.long_term_memory import EpisodicMemoryStore, LongTermMemoryStore
from agent_engine.domain.context.memory.runtime_memory import RuntimeMemory, step_digest
from agent_engine.domain.errors import ProviderError
from agent_engine.domain.model.providers import estimate_tokens, message_text
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    Execution,
    ExecutionStatus,
    Step,
)
from agent_engine.domain.models.memory import ContextWindow, MemoryEntry, MemoryKind
from agent_engine.infrastructure.config.settings import EngineSettings, get_settings
from agent_engine.infrastructure.persistence.store import EngineStore

logger = structlog.get_logger(__name__)

RESPONSE_GUIDELINES = """## Response Guidelines
- Think step by step before taking action
- Use one tool at a time when you need information or must act
- If native tool calling is unavailable, reply with a JSON object:
  {"reasoning": "...", "action": "use_tool", "tool": "<name>", "input": {...}}
  or {"reasoning": "...", "action": "finish", "answer": "<final answer>"}
- When the goal is met, or cannot be met, give your final answer and stop"""


def build_system_prompt(
    agent: AgentConfig,
    tool_names: List[str],
    memories: List[str],
    episodes: List[str],
    earlier_steps: Optional[str] = None,
) -> str:
    sections = [agent.system_instructions.strip() or f"You are {agent.name}."]

    if agent.goals:
        sections.append("## Your Goals\n" + "\n".join(f"{i}. {goal}" for i, goal in enumerate(agent.goals, 1)))

    sections.append(
        "## Tools Available\n" + (", ".join(tool_names) if tool_names else "No tools are available.")
    )

    if memories:
        sections.append("## Relevant Context from Memory\n" + "\n".join(memories))

    if episodes:
        sections.append("## Previous Runs\n" + "\n".join(episodes))

    if agent.constraints:
        sections.append("## Constraints\n" + "\n".join(f"- {c}" for c in agent.constraints))

    if earlier_steps:
        sections.append("## Earlier Steps of This Run\n" + earlier_steps)

    sections.append(RESPONSE_GUIDELINES)
    return "\n\n".join(sections)


def build_observation(execution: Execution) -> str:
    trigger = execution.trigger
    label = trigger.type.value + (f" ({trigger.event_type})" if trigger.event_type else "")
    data = json.dumps(execution.input, indent=2, default=str)
    return f"## Current Context\n\n**Trigger:** {label}\n\n**Data:**\n{data}\n\nWhat would you like to do?"


def step_messages(step: Step) -> List[BaseMessage]:
    """Render a recorded step as an assistant turn plus its tool result"""
    if step.is_final:
        return [AIMessage(content=step.action.answer or "")]

    call = step.action.tool_call
    observation = step.observation.to_text() if step.observation else ""
    return [
        AIMessage(
            content=step.response.reasoning or step.response.content,
            tool_calls=[{"name": call.name, "args": call.arguments, "id": call.id}],
        ),
        ToolMessage(content=observation, tool_call_id=call.id),
    ]


def estimate_message_tokens(messages: List[BaseMessage]) -> int:
    total = 0
    for message in messages:
        total += estimate_tokens(message_text(message.content))
        tool_calls = getattr(message, "tool_calls", None)
        if tool_calls:
            total += estimate_tokens(json.dumps(tool_calls, default=str))
    return total


class MemoryManager:
    """Assembles context from the three memory tiers and writes back after each step"""

    def __init__(
        self,
        store: EngineStore,
        gateway: Any = None,
        usage_meter: Any = None,
        ranker: Optional[MemoryRanker] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.usage_meter = usage_meter
        self.settings = settings or get_settings()
        self.runtime_memory = RuntimeMemory(store)
        self.long_term = LongTermMemoryStore(store, ranker)
        self.episodic = EpisodicMemoryStore(store)

    async def assemble_context(
        self,
        agent: AgentConfig,
        execution: Execution,
        steps: List[Step],
        tool_names: Optional[List[str]] = None,
    ) -> ContextWindow:
        """Build the prompt for the next model call.

        Mutates the execution's summary fields when a summary is produced;
        the caller persists them.
        """
        policy = agent.memory_policy
        tool_names = tool_names or []
        window = ContextWindow()

        observation = build_observation(execution)
        base_prompt = build_system_prompt(agent, tool_names, [], [])
        budget = max(agent.model.context_window - agent.model.max_tokens, 0)
        remaining = budget - estimate_tokens(base_prompt) - estimate_tokens(observation)

        # Short-term: newest steps first within the budget, emitted chronologically
        included: List[Step] = []
        overflow: List[Step] = []
        if policy.short_term_enabled and steps:
            short_term_budget = max(min(policy.short_term_token_budget, remaining), 0)
            used = 0
            for position in range(len(steps) - 1, -1, -1):
                cost = estimate_message_tokens(step_messages(steps[position]))
                if used + cost > short_term_budget:
                    overflow = steps[: position + 1]
                    break
                used += cost
                included.insert(0, steps[position])
            remaining -= used

        earlier_steps = None
        if overflow:
            earlier_steps = await self._compress_overflow(agent, execution, overflow, window)
            remaining -= estimate_tokens(earlier_steps)

        query = observation + ("\n" + step_digest(steps[-1]) if steps else "")

        memories: List[str] = []
        if policy.long_term_enabled and remaining > 0:
            for entry, _score in await self.long_term.search(agent.id, query, policy.long_term_limit):
                line = f"- [{entry.kind.value}] {entry.content}"
                cost = estimate_tokens(line)
                if cost > remaining:
                    break
                memories.append(line)
                window.long_term_ids.append(entry.id)
                remaining -= cost

        episodes: List[str] = []
        if policy.episodic_enabled and remaining > 0:
            for entry in await self.episodic.recent(agent.id, policy.episodic_limit, exclude_execution=execution.id):
                line = f"- {entry.content}"
                cost = estimate_tokens(line)
                if cost > remaining:
                    break
                episodes.append(line)
                window.episodic_ids.append(entry.id)
                remaining -= cost

        system_prompt = build_system_prompt(agent, tool_names, memories, episodes, earlier_steps)
        window.messages = [SystemMessage(content=system_prompt), HumanMessage(content=observation)]
        for step in included:
            window.messages.extend(step_messages(step))

        window.included_steps = [step.index for step in included]
        window.estimated_tokens = estimate_message_tokens(window.messages)

        logger.debug(
            "Context assembled",
            execution_id=execution.id,
            estimated_tokens=window.estimated_tokens,
            included_steps=len(included),
            overflow_steps=len(overflow),
            memories=len(memories),
            episodes=len(episodes),
        )
        return window

    async def _compress_overflow(
        self,
        agent: AgentConfig,
        execution: Execution,
        overflow: List[Step],
        window: ContextWindow,
    ) -> str:
        """Summarize overflowing steps once per execution; later overflow becomes digests"""

        if not execution.summary_attempted and self.gateway is not None:
            execution.summary_attempted = True
            await self._summarize(agent, execution, overflow, window)

        lines = []
        if execution.summary:
            lines.append(execution.summary)
            window.summary_used = True

        for step in overflow:
            if step.index > execution.summarized_through:
                lines.append(step_digest(step))
                window.digested_steps.append(step.index)

        return "\n".join(lines)

    async def _summarize(
        self,
        agent: AgentConfig,
        execution: Execution,
        overflow: List[Step],
        window: ContextWindow,
    ) -> None:
        text = "\n".join(step_digest(step, limit=600) for step in overflow)
        estimate = estimate_tokens(text) + self.settings.summary_max_tokens

        reservation = None
        if self.usage_meter is not None:
            reservation = await self.usage_meter.reserve(agent.quota_key, estimate)
            if not reservation.allowed:
                logger.info("Summary skipped, quota denied", execution_id=execution.id)
                return

        try:
            summary, usage = await self.gateway.summarize(text, agent.model)
        except ProviderError as e:
            logger.warning("Summary failed, using step digests", execution_id=execution.id, error=str(e))
            if reservation is not None:
                if e.usage is not None and e.usage.total_tokens:
                    charge = await self.usage_meter.commit(reservation, e.usage, agent.model.model)
                    window.summary_usage = e.usage
                    window.summary_cost = charge.cost
                else:
                    await self.usage_meter.release(reservation)
            return

        if reservation is not None:
            charge = await self.usage_meter.commit(reservation, usage, agent.model.model)
            window.summary_cost = charge.cost
        window.summary_usage = usage

        execution.summary = summary
        execution.summarized_through = overflow[-1].index
        logger.info(
            "Earlier steps summarized",
            execution_id=execution.id,
            through_step=execution.summarized_through,
        )

    async def write_back(self, execution: Execution, step: Step) -> None:
        await self.runtime_memory.add_step(execution, step)

    async def rehydrate(self, execution: Execution, steps: List[Step]) -> List[MemoryEntry]:
        """Rebuild short-term memory for a resumed execution from its recorded steps"""

        for step in steps:
            await self.runtime_memory.add_step(execution, step)
        return await self.runtime_memory.get_entries(execution)

    async def remember(
        self,
        agent_id: str,
        content: str,
        kind: MemoryKind = MemoryKind.FACT,
        importance: int = 5,
        tags: Optional[List[str]] = None,
        source_execution_id: Optional[str] = None,
        retention_days: Optional[int] = None,
    ) -> Tuple[MemoryEntry, bool]:
        return await self.long_term.add(
            agent_id=agent_id,
            content=content,
            kind=kind,
            importance=importance,
            tags=tags,
            source_execution_id=source_execution_id,
            retention_days=retention_days,
        )

    async def finalize(self, agent: AgentConfig, execution: Execution, steps: List[Step]) -> Dict[str, Any]:
        """Record the episode, promote facts, discard short-term entries"""

        policy = agent.memory_policy
        result: Dict[str, Any] = {"episode_recorded": False, "promoted": 0, "discarded": 0}

        if policy.episodic_enabled and execution.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
            _, created = await self.episodic.record_episode(
                agent.id, execution.id, self._episode_text(execution), execution.status.value
            )
            result["episode_recorded"] = created

        if policy.promote_facts and policy.long_term_enabled and execution.status == ExecutionStatus.COMPLETED:
            result["promoted"] = await self._promote(agent, execution, steps)

        result["discarded"] = await self.runtime_memory.clear_execution(execution)
        return result

    async def _promote(self, agent: AgentConfig, execution: Execution, steps: List[Step]) -> int:
        promoted = 0
        retention = agent.memory_policy.long_term_retention_days

        for step in steps:
            if step.observation is None:
                continue
            for fact in step.observation.facts:
                _, created = await self.remember(
                    agent.id, fact, MemoryKind.FACT,
                    source_execution_id=execution.id, retention_days=retention,
                )
                promoted += int(created)

        if execution.output:
            _, created = await self.remember(
                agent.id, execution.output, MemoryKind.OUTCOME,
                source_execution_id=execution.id, retention_days=retention,
            )
            promoted += int(created)

        return promoted

    def _episode_text(self, execution: Execution) -> str:
        request = json.dumps(execution.input, default=str)
        if len(request) > 200:
            request = request[:197] + "..."

        if execution.status == ExecutionStatus.COMPLETED:
            outcome = f"completed: {execution.output}"
        else:
            reason = execution.failure_reason.value if execution.failure_reason else "unknown"
            outcome = f"failed ({reason})" + (f": {execution.failure_detail}" if execution.failure_detail else "")

        text = f"{execution.trigger.type.value} run with input {request} {outcome} after {execution.step_count} steps"
        return text if len(text) <= 500 else text[:497] + "..."
