from typing import Any, Dict, List, Optional, Tuple
import asyncio
import json
import re
import time

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from agent_engine.domain.errors import (
    FatalProviderError,
    ProviderError,
    ResponseParseError,
    RetryableProviderError,
)
from agent_engine.domain.model.providers import ModelProvider, ProviderReply
from agent_engine.domain.models.agent_state import ModelResponse, ModelSettings, TokenUsage, ToolCall
from agent_engine.domain.models.memory import ContextWindow
from agent_engine.infrastructure.config.settings import EngineSettings, get_settings
from agent_engine.infrastructure.observability.langfuse_tracing import traced, update_observation
from agent_engine.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

FENCED_JSON = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

SUMMARY_PROMPT = (
    "Summarize the following agent steps in a few sentences. Keep tool names, "
    "key results and errors. Do not add new information."
)


class ResponseParser:
    """Normalize provider output into a ModelResponse.

    Native tool calls win. Otherwise a JSON action object
    ``{"action": "use_tool" | "finish", ...}`` is accepted, optionally fenced.
    Anything else that is non-empty prose is a final answer.
    """

    def parse(self, reply: ProviderReply) -> Tuple[Optional[ToolCall], str, Optional[str]]:
        if reply.invalid_tool_calls:
            raise ResponseParseError(
                f"Model produced an invalid tool call: {reply.invalid_tool_calls[0].get('error')}",
                raw_content=reply.content,
            )

        if reply.tool_calls:
            # Only the first call is acted on per step
            native = reply.tool_calls[0]
            name = native.get("name")
            if not name:
                raise ResponseParseError("Tool call without a name", raw_content=reply.content)
            call_kwargs: Dict[str, Any] = {"name": name, "arguments": native.get("args") or {}}
            if native.get("id"):
                call_kwargs["id"] = native["id"]
            return ToolCall(**call_kwargs), reply.content, None

        text = reply.content.strip()
        if not text:
            raise ResponseParseError("Empty model response")

        fenced = FENCED_JSON.match(text)
        candidate = fenced.group(1) if fenced else text
        if not candidate.startswith("{"):
            return None, text, None

        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Malformed JSON action: {e.msg}", raw_content=text) from e

        return self._parse_action(payload, text)

    def _parse_action(self, payload: Dict[str, Any], text: str) -> Tuple[Optional[ToolCall], str, Optional[str]]:
        action = payload.get("action")
        reasoning = payload.get("reasoning")

        if action == "use_tool":
            tool_name = payload.get("tool")
            arguments = payload.get("input", {})
            if not isinstance(tool_name, str) or not tool_name:
                raise ResponseParseError("use_tool action without a tool name", raw_content=text)
            if not isinstance(arguments, dict):
                raise ResponseParseError("use_tool input must be an object", raw_content=text)
            return ToolCall(name=tool_name, arguments=arguments), text, reasoning

        if action == "finish":
            answer = payload.get("answer", payload.get("output", payload.get("input")))
            if answer is None:
                answer = reasoning or ""
            if not isinstance(answer, str):
                answer = json.dumps(answer, default=str)
            if not answer.strip():
                raise ResponseParseError("finish action without an answer", raw_content=text)
            return None, answer, reasoning

        raise ResponseParseError(f"Unknown action: {action!r}", raw_content=text)


class ModelGateway:
    """Uniform completion interface over the configured providers"""

    def __init__(
        self,
        providers: Dict[str, ModelProvider],
        settings: Optional[EngineSettings] = None,
        parser: Optional[ResponseParser] = None,
    ):
        self.providers = providers
        self.settings = settings or get_settings()
        self.parser = parser or ResponseParser()

    def _provider_for(self, params: ModelSettings) -> ModelProvider:
        provider = self.providers.get(params.provider)
        if provider is None:
            raise FatalProviderError(f"No provider configured for {params.provider}", provider=params.provider)
        return provider

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(RetryableProviderError),
            stop=stop_after_attempt(self.settings.model_retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_backoff_min_seconds,
                min=self.settings.retry_backoff_min_seconds,
                max=self.settings.retry_backoff_max_seconds,
            ),
            reraise=True,
        )

    async def _generate(self, provider: ModelProvider, messages, params: ModelSettings, tools) -> ProviderReply:
        try:
            return await asyncio.wait_for(
                provider.generate(messages, params, tools),
                timeout=self.settings.model_call_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RetryableProviderError(
                f"Model call timed out after {self.settings.model_call_timeout_seconds:g}s",
                provider=provider.name,
            ) from e

    @traced("model_completion")
    async def complete(
        self,
        window: ContextWindow,
        params: ModelSettings,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelResponse:
        provider = self._provider_for(params)
        usage = TokenUsage()
        attempts = 0
        start_time = time.monotonic()

        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    reply = await self._generate(provider, window.messages, params, tools or [])
                    usage = usage + reply.usage
                    if attempts > 1:
                        logger.info("Model call succeeded after retry", model=params.model, attempts=attempts)
                    tool_call, content, reasoning = self.parser.parse(reply)

        except ProviderError as e:
            e.usage = usage
            metrics.increment_counter("model.failure", tags={"model": params.model})
            logger.warning(
                "Model call failed",
                model=params.model,
                attempts=attempts,
                retryable=isinstance(e, RetryableProviderError),
                error=str(e),
            )
            raise

        metrics.record_latency("model", (time.monotonic() - start_time) * 1000, tags={"model": params.model})
        update_observation(
            model=params.model,
            usage={"input": usage.prompt_tokens, "output": usage.completion_tokens},
        )

        return ModelResponse(
            content=content,
            tool_call=tool_call,
            usage=usage,
            model=params.model,
            attempts=attempts,
            reasoning=reasoning,
        )

    @traced("model_summarize")
    async def summarize(self, text: str, params: ModelSettings) -> Tuple[str, TokenUsage]:
        """Compress earlier steps into a short summary"""
        params = params.model_copy(update={"max_tokens": min(params.max_tokens, self.settings.summary_max_tokens)})
        provider = self._provider_for(params)
        messages = [SystemMessage(content=SUMMARY_PROMPT), HumanMessage(content=text)]
        usage = TokenUsage()

        try:
            async for attempt in self._retrying():
                with attempt:
                    reply = await self._generate(provider, messages, params, [])
                    usage = usage + reply.usage
                    summary = reply.content.strip()
                    if not summary:
                        raise ResponseParseError("Empty summary")

        except ProviderError as e:
            e.usage = usage
            raise

        return summary, usage
