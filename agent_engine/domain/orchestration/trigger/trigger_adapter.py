"""Inbound surface: platform events, schedules, manual runs and webhooks."""
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import fnmatch
import hmac

import structlog
from pydantic import BaseModel, ConfigDict, Field

from agent_engine.domain.errors import (
    AgentInactiveError,
    RateLimitExceededError,
    WebhookAuthError,
)
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    Execution,
    TriggerBinding,
    TriggerInfo,
    TriggerType,
    new_id,
    utcnow,
)
from agent_engine.domain.orchestration.trigger.schedule_parser import ScheduleParser
from agent_engine.infrastructure.persistence.store import EngineStore

logger = structlog.get_logger(__name__)

SubmitFn = Callable[[AgentConfig, Dict[str, Any], TriggerInfo], Awaitable[Execution]]

_MISSING = object()


class InboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(alias="eventType")
    payload: Dict[str, Any] = Field(default_factory=dict)
    agent_bindings: List[str] = Field(default_factory=list, alias="agentBindings")
    event_id: str = Field(default_factory=new_id, alias="eventId")


def get_nested_value(payload: Dict[str, Any], path: str) -> Any:
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "$exists":
        return (actual is not _MISSING) == bool(expected)
    if actual is _MISSING:
        return op in ("$ne", "$nin")
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op in ("$gt", "$gte", "$lt", "$lte"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return {
            "$gt": left > right,
            "$gte": left >= right,
            "$lt": left < right,
            "$lte": left <= right,
        }[op]
    if op == "$contains":
        return isinstance(actual, str) and str(expected) in actual
    if op == "$in":
        return isinstance(expected, list) and actual in expected
    if op == "$nin":
        return isinstance(expected, list) and actual not in expected
    raise ValueError(f"Unsupported filter operator: {op}")


def matches_filters(payload: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Dotted-key equality, or a single ``{"$op": value}`` operator per key"""
    for key, expected in filters.items():
        actual = get_nested_value(payload, key)
        if isinstance(expected, dict) and len(expected) == 1 and next(iter(expected)).startswith("$"):
            op, value = next(iter(expected.items()))
            if not _compare(actual, op, value):
                return False
        elif actual is _MISSING or actual != expected:
            return False
    return True


class TriggerAdapter:
    def __init__(self, store: EngineStore, submit: SubmitFn):
        self.store = store
        self.submit = submit
        self.last_runs: Dict[Tuple[str, int], datetime] = {}

    async def handle_event(self, event: InboundEvent) -> List[Execution]:
        """Enqueue one execution per active agent whose event binding matches"""

        executions = []
        for agent in await self.store.list_agents(active_only=True):
            if event.agent_bindings and agent.id not in event.agent_bindings:
                continue

            try:
                binding = self._matching_binding(agent, event)
            except ValueError as e:
                logger.error("Event filter misconfigured, agent skipped", agent_id=agent.id, error=str(e))
                continue
            if binding is None:
                continue

            trigger = TriggerInfo(type=TriggerType.EVENT, event_type=event.event_type, event_id=event.event_id)
            try:
                executions.append(await self._enqueue(agent, event.payload, trigger))
            except RateLimitExceededError as e:
                logger.warning("Event skipped, agent rate limited", agent_id=agent.id, window=e.window)

        logger.info("Event handled", event_type=event.event_type, matched=len(executions))
        return executions

    def _matching_binding(self, agent: AgentConfig, event: InboundEvent) -> Optional[TriggerBinding]:
        for binding in agent.triggers:
            if not binding.enabled or binding.type != TriggerType.EVENT or not binding.event_pattern:
                continue
            if not fnmatch.fnmatchcase(event.event_type, binding.event_pattern):
                continue
            if matches_filters(event.payload, binding.filters):
                return binding
        return None

    async def trigger_manual(self, agent_id: str, input: Dict[str, Any]) -> Execution:
        agent = await self.store.get_agent(agent_id)
        if not agent.is_active:
            raise AgentInactiveError(agent_id)
        return await self._enqueue(agent, input, TriggerInfo(type=TriggerType.MANUAL))

    async def trigger_webhook(self, agent_id: str, payload: Dict[str, Any], secret: Optional[str]) -> Execution:
        agent = await self.store.get_agent(agent_id)

        bindings = [b for b in agent.triggers if b.type == TriggerType.WEBHOOK and b.enabled]
        if not bindings:
            raise WebhookAuthError(f"Agent {agent_id} has no webhook trigger")

        presented = (secret or "").encode("utf-8")
        if not any(
            b.webhook_secret and hmac.compare_digest(b.webhook_secret.encode("utf-8"), presented)
            for b in bindings
        ):
            logger.warning("Webhook secret rejected", agent_id=agent_id)
            raise WebhookAuthError("Invalid webhook secret")

        if not agent.is_active:
            raise AgentInactiveError(agent_id)
        return await self._enqueue(agent, payload, TriggerInfo(type=TriggerType.WEBHOOK))

    async def tick(self, now: Optional[datetime] = None) -> List[Execution]:
        """Fire schedule bindings that are due.

        The first tick that sees a binding only records a baseline.
        """
        now = now or utcnow()
        executions = []

        for agent in await self.store.list_agents(active_only=True):
            for position, binding in enumerate(agent.triggers):
                if not binding.enabled or binding.type != TriggerType.SCHEDULE or not binding.schedule:
                    continue

                key = (agent.id, position)
                last_run = self.last_runs.get(key)
                if last_run is None:
                    self.last_runs[key] = now
                    continue

                try:
                    due = ScheduleParser.is_due(binding.schedule, last_run, now)
                except ValueError as e:
                    logger.error("Invalid schedule", agent_id=agent.id, schedule=binding.schedule, error=str(e))
                    continue
                if not due:
                    continue

                self.last_runs[key] = now
                trigger = TriggerInfo(type=TriggerType.SCHEDULE, event_type=binding.schedule)
                try:
                    executions.append(
                        await self._enqueue(agent, {"scheduledAt": now.isoformat()}, trigger)
                    )
                except RateLimitExceededError as e:
                    logger.warning("Scheduled run skipped, agent rate limited", agent_id=agent.id, window=e.window)

        return executions

    async def _enqueue(self, agent: AgentConfig, input: Dict[str, Any], trigger: TriggerInfo) -> Execution:
        await self.store.acquire_run_slot(agent.id, utcnow(), agent.max_runs_per_hour, agent.max_runs_per_day)
        return await self.submit(agent, input, trigger)
