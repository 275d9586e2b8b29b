from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
import asyncio
import time

import structlog

from agent_engine.domain.errors import ToolExecutionError, ToolValidationError
from agent_engine.domain.models.agent_state import Observation, RiskPolicy, ToolCall
from agent_engine.domain.models.approval import RiskAssessment
from agent_engine.domain.tool.risk_classifier import RiskClassifier, RuleBasedRiskClassifier
from agent_engine.domain.tool.tool_registry import ToolDefinition, ToolRegistry
from agent_engine.domain.tool.tool_validator import ToolParameterValidator
from agent_engine.infrastructure.config.settings import get_settings
from agent_engine.infrastructure.observability.langfuse_tracing import traced, update_observation
from agent_engine.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


@dataclass
class ToolContext:
    """Per-call context handed to handlers that declare ``accepts_context``"""
    execution_id: str
    agent_id: str
    risk_policy: RiskPolicy = field(default_factory=RiskPolicy)
    memory: Any = None
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalRequired:
    """The call is at or above the risk threshold and must wait for a human"""
    tool_call: ToolCall
    assessment: RiskAssessment
    tool: ToolDefinition


class ToolDispatcher:
    """Validates, risk-gates and executes tool calls"""

    def __init__(
        self,
        registry: ToolRegistry,
        risk_classifier: Optional[RiskClassifier] = None,
        default_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.validator = ToolParameterValidator()
        self.risk_classifier = risk_classifier or RuleBasedRiskClassifier()
        self.default_timeout = default_timeout or get_settings().tool_timeout_seconds

    @traced("tool_dispatch")
    async def invoke(
        self,
        call: ToolCall,
        context: ToolContext,
        skip_risk_check: bool = False,
    ) -> Union[Observation, ApprovalRequired]:
        tool = self.registry.get(call.name)
        if tool is None:
            logger.warning("Unknown tool requested", tool=call.name, execution_id=context.execution_id)
            return Observation.failure("unknown_tool", f"unknown tool: {call.name}")

        try:
            self._validate(tool, call, context)
        except ToolValidationError as e:
            return Observation.from_error(e)

        if not skip_risk_check:
            assessment = self.risk_classifier.classify(tool, call)
            threshold = context.risk_policy.threshold_for(tool.name, tool.category)
            if threshold is not None and assessment.level.at_least(threshold):
                logger.info(
                    "Tool call requires approval",
                    tool=call.name,
                    execution_id=context.execution_id,
                    risk_level=assessment.level.value,
                    threshold=threshold.value,
                )
                return ApprovalRequired(tool_call=call, assessment=assessment, tool=tool)

        try:
            return await self._execute(tool, call, context)
        except ToolExecutionError as e:
            return Observation.from_error(e)

    def _validate(self, tool: ToolDefinition, call: ToolCall, context: ToolContext) -> None:
        validation = self.validator.validate_tool_call(tool, call.arguments)
        if not validation.is_valid:
            logger.info(
                "Tool arguments rejected",
                tool=call.name,
                execution_id=context.execution_id,
                errors=validation.errors,
            )
            raise ToolValidationError(tool.name, validation.errors)

    async def _execute(self, tool: ToolDefinition, call: ToolCall, context: ToolContext) -> Observation:
        timeout = tool.timeout_seconds or self.default_timeout
        kwargs = dict(call.arguments)
        if tool.accepts_context:
            kwargs["context"] = context

        start_time = time.monotonic()
        try:
            if tool.is_async:
                result = await asyncio.wait_for(tool.handler(**kwargs), timeout=timeout)
            else:
                result = await asyncio.wait_for(asyncio.to_thread(tool.handler, **kwargs), timeout=timeout)

        except asyncio.TimeoutError:
            duration_ms = (time.monotonic() - start_time) * 1000
            agent_logger.log_tool_execution(
                tool.name, context.execution_id, duration_ms, success=False, error="timeout"
            )
            metrics.increment_counter("tool.timeout", tags={"tool": tool.name})
            raise ToolExecutionError(
                tool.name, f"tool {tool.name} timed out after {timeout:g}s", timed_out=True, duration_ms=duration_ms
            )

        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            agent_logger.log_tool_execution(
                tool.name, context.execution_id, duration_ms, success=False, error=str(e)
            )
            metrics.increment_counter("tool.error", tags={"tool": tool.name})
            raise ToolExecutionError(tool.name, f"{type(e).__name__}: {e}", duration_ms=duration_ms) from e

        duration_ms = (time.monotonic() - start_time) * 1000
        agent_logger.log_tool_execution(tool.name, context.execution_id, duration_ms)
        metrics.record_latency("tool", duration_ms, tags={"tool": tool.name})
        update_observation(input=call.arguments, output=result, metadata={"tool": tool.name})

        facts = []
        if isinstance(result, dict) and isinstance(result.get("facts"), list):
            facts = [str(fact) for fact in result["facts"]]

        return Observation(success=True, output=result, facts=facts, duration_ms=duration_ms)
