"""Provider adapters behind the model gateway.

A provider turns a list of LangChain messages into a ``ProviderReply`` and
maps its native failures onto ``RetryableProviderError`` or
``FatalProviderError``.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import asyncio
import math

import httpx
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from pydantic import BaseModel, Field

from agent_engine.domain.errors import FatalProviderError, ProviderError, RetryableProviderError
from agent_engine.domain.models.agent_state import ModelSettings, TokenUsage

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = {408, 409, 429}


class ProviderReply(BaseModel):
    """Raw provider output before action parsing"""
    content: str = ""
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)
    invalid_tool_calls: List[Dict[str, Any]] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: Optional[str] = None


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


def message_text(content: Any) -> str:
    """Flatten string or content-block message content to text"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return "" if content is None else str(content)


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_provider_error(error: BaseException, provider: str) -> ProviderError:
    """Map an arbitrary provider exception onto the retryable/fatal split"""
    if isinstance(error, ProviderError):
        return error

    status = _status_code(error)
    message = f"{type(error).__name__}: {error}"

    if status is not None:
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            return RetryableProviderError(message, status_code=status, provider=provider)
        return FatalProviderError(message, status_code=status, provider=provider)

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError, ConnectionError)):
        return RetryableProviderError(message, provider=provider)

    return FatalProviderError(message, provider=provider)


class ModelProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def generate(
        self,
        messages: List[BaseMessage],
        params: ModelSettings,
        tools: List[Dict[str, Any]],
    ) -> ProviderReply:
        """Run one completion; raise ProviderError subclasses on failure"""


class LangChainChatProvider(ModelProvider):
    """Adapter over any LangChain chat model"""

    def __init__(self, model: BaseChatModel, name: str = "langchain"):
        self.model = model
        self.name = name

    async def generate(
        self,
        messages: List[BaseMessage],
        params: ModelSettings,
        tools: List[Dict[str, Any]],
    ) -> ProviderReply:
        model = self._model_for(params)
        runnable = model.bind_tools(tools) if tools else model
        runnable = runnable.bind(temperature=params.temperature, max_tokens=params.max_tokens)

        try:
            reply = await runnable.ainvoke(messages)
        except Exception as e:
            classified = classify_provider_error(e, self.name)
            logger.warning(
                "Provider call failed",
                provider=self.name,
                model=params.model,
                retryable=isinstance(classified, RetryableProviderError),
                error=str(e),
            )
            raise classified from e

        return self._to_reply(reply, messages, params)

    def _model_for(self, params: ModelSettings) -> BaseChatModel:
        """Point the chat model at the configured model name, when it has one"""
        fields = type(self.model).model_fields
        for field in ("model_name", "model"):
            if field in fields:
                if getattr(self.model, field) == params.model:
                    return self.model
                return self.model.model_copy(update={field: params.model})
        return self.model

    def _to_reply(self, reply: BaseMessage, messages: List[BaseMessage], params: ModelSettings) -> ProviderReply:
        content = message_text(reply.content)

        tool_calls: List[Dict[str, Any]] = []
        invalid_tool_calls: List[Dict[str, Any]] = []
        usage_metadata = None
        if isinstance(reply, AIMessage):
            tool_calls = [dict(call) for call in reply.tool_calls]
            invalid_tool_calls = [dict(call) for call in reply.invalid_tool_calls]
            usage_metadata = reply.usage_metadata

        if usage_metadata:
            usage = TokenUsage(
                prompt_tokens=usage_metadata.get("input_tokens", 0),
                completion_tokens=usage_metadata.get("output_tokens", 0),
            )
        else:
            usage = TokenUsage(
                prompt_tokens=sum(estimate_tokens(message_text(m.content)) for m in messages),
                completion_tokens=estimate_tokens(content),
            )

        return ProviderReply(
            content=content,
            tool_calls=tool_calls,
            invalid_tool_calls=invalid_tool_calls,
            usage=usage,
            model=params.model,
        )
