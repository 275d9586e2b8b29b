"""
Pytest Configuration and Fixtures
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest

from agent_engine.domain.model.providers import ModelProvider, ProviderReply
from agent_engine.domain.models.agent_state import (
    AgentConfig,
    MemoryPolicy,
    ModelSettings,
    RiskLevel,
    TokenUsage,
)
from agent_engine.domain.orchestration.core.engine import AgentEngine
from agent_engine.domain.tool.tool_registry import ToolRegistry
from agent_engine.infrastructure.config.settings import EngineSettings
from agent_engine.infrastructure.persistence.store import InMemoryEngineStore


ScriptItem = Union[ProviderReply, BaseException]


def tool_reply(name: str, args: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None) -> ProviderReply:
    call = {"name": name, "args": args or {}, "id": call_id or f"call_{name}"}
    return ProviderReply(tool_calls=[call], usage=TokenUsage(prompt_tokens=20, completion_tokens=5))


def final_reply(text: str) -> ProviderReply:
    return ProviderReply(content=text, usage=TokenUsage(prompt_tokens=20, completion_tokens=5))


class ScriptedProvider(ModelProvider):
    """Returns scripted replies in order, then repeats ``default``"""

    def __init__(self, script: Optional[List[ScriptItem]] = None, default: Optional[ScriptItem] = None):
        self.name = "scripted"
        self.script = list(script or [])
        self.default = default
        self.calls: List[List[Any]] = []
        self.params: List[ModelSettings] = []

    async def generate(self, messages, params, tools) -> ProviderReply:
        self.calls.append(list(messages))
        self.params.append(params)
        if self.script:
            item = self.script.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            item = final_reply("done")

        if isinstance(item, BaseException):
            raise item
        return item

    def last_prompt_text(self) -> str:
        return "\n".join(str(m.content) for m in self.calls[-1])


class ToolLog:
    """Records handler invocations"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []


@pytest.fixture
def settings() -> EngineSettings:
    """Settings with instant retries."""
    return EngineSettings(
        retry_backoff_min_seconds=0,
        retry_backoff_max_seconds=0,
        model_retry_attempts=3,
        tool_timeout_seconds=1.0,
        tracing_enabled=False,
    )


@pytest.fixture
def tool_log() -> ToolLog:
    return ToolLog()


@pytest.fixture
def registry(tool_log: ToolLog) -> ToolRegistry:
    """Registry with a lookup, a failing, a slow and a risky tool."""
    registry = ToolRegistry()

    @registry.tool(
        description="Look up a customer record",
        parameters={
            "type": "object",
            "properties": {"customer_id": {"type": "string"}},
            "required": ["customer_id"],
        },
        category="crm",
    )
    def lookup_customer(customer_id: str) -> Dict[str, Any]:
        tool_log.calls.append({"tool": "lookup_customer", "customer_id": customer_id})
        return {"customer_id": customer_id, "name": "Ada", "facts": [f"customer {customer_id} is named Ada"]}

    @registry.tool(description="Always fails")
    async def flaky_service() -> None:
        tool_log.calls.append({"tool": "flaky_service"})
        raise RuntimeError("service unavailable")

    @registry.tool(description="Takes too long", timeout_seconds=0.05)
    async def slow_report() -> str:
        await asyncio.sleep(1)
        return "late"

    @registry.tool(
        description="Move money between accounts",
        parameters={
            "type": "object",
            "properties": {
                "amount": {"type": "number", "minimum": 0},
                "to_account": {"type": "string"},
            },
            "required": ["amount", "to_account"],
            "additionalProperties": False,
        },
        category="payments",
        risk_level=RiskLevel.HIGH,
        side_effect=True,
    )
    async def transfer_funds(amount: float, to_account: str) -> Dict[str, Any]:
        tool_log.calls.append({"tool": "transfer_funds", "amount": amount, "to_account": to_account})
        return {"transferred": amount, "to": to_account}

    return registry


@pytest.fixture
def make_agent():
    def _make(**overrides: Any) -> AgentConfig:
        values: Dict[str, Any] = {
            "name": "support-agent",
            "system_instructions": "You help the support team.",
            "goals": ["Resolve the customer's request"],
            "allowed_tools": ["lookup_customer", "flaky_service", "slow_report", "transfer_funds", "remember_fact"],
            "model": ModelSettings(provider="scripted", model="gpt-4o-mini", max_tokens=256, context_window=16000),
            "memory_policy": MemoryPolicy(),
        }
        values.update(overrides)
        return AgentConfig(**values)

    return _make


@pytest.fixture
def store() -> InMemoryEngineStore:
    return InMemoryEngineStore()


@pytest.fixture
def make_engine(settings: EngineSettings, registry: ToolRegistry, store: InMemoryEngineStore):
    def _make(provider: ScriptedProvider) -> AgentEngine:
        return AgentEngine({"scripted": provider}, registry=registry, store=store, settings=settings)

    return _make
