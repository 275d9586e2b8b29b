"""Langfuse tracing for model calls and tool dispatch.

Tracing is opt-in: with ``tracing_enabled`` unset the decorator returns the
function untouched and langfuse is never imported.
"""
import functools
from typing import Any, Callable, Optional

import structlog

from agent_engine.infrastructure.config.settings import EngineSettings, get_settings

logger = structlog.get_logger(__name__)

_client = None


def get_langfuse(settings: Optional[EngineSettings] = None):
    """Return the shared Langfuse client, creating it on first use"""
    global _client

    settings = settings or get_settings()
    if not settings.tracing_enabled:
        return None

    if _client is None:
        from langfuse import Langfuse

        _client = Langfuse(
            public_key=settings.langfuse_public_key,
            secret_key=settings.langfuse_secret_key,
            host=settings.langfuse_host,
        )
        logger.info("Langfuse tracing enabled", host=settings.langfuse_host)
    return _client


def traced(name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a coroutine in a Langfuse observation when tracing is enabled"""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if not get_settings().tracing_enabled:
            return func

        from langfuse.decorators import observe

        observed = observe(name=name)(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await observed(*args, **kwargs)

        return wrapper

    return decorator


def update_observation(**fields: Any) -> None:
    """Attach metadata to the current observation, if any"""
    if not get_settings().tracing_enabled:
        return

    from langfuse.decorators import langfuse_context

    langfuse_context.update_current_observation(**fields)
