from contextlib import asynccontextmanager
from typing import Dict, Type

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from agent_engine.application.api.route import approvals, executions, triggers
from agent_engine.domain.errors import (
    AgentEngineError,
    AgentInactiveError,
    ApprovalAlreadyResolvedError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitExceededError,
    WebhookAuthError,
)
from agent_engine.domain.orchestration.core.engine import AgentEngine
from agent_engine.infrastructure.config.settings import get_settings
from agent_engine.infrastructure.observability.logging import metrics, setup_logging

logger = structlog.get_logger(__name__)

ERROR_STATUS: Dict[Type[AgentEngineError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ApprovalAlreadyResolvedError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    AgentInactiveError: status.HTTP_409_CONFLICT,
    RateLimitExceededError: status.HTTP_429_TOO_MANY_REQUESTS,
    WebhookAuthError: status.HTTP_401_UNAUTHORIZED,
}


def create_app(engine: AgentEngine, start_engine: bool = True) -> FastAPI:
    """Build the HTTP surface around an engine instance"""

    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format, settings.service_name)
        if start_engine:
            await engine.start()
        yield
        if start_engine:
            await engine.stop()

    app = FastAPI(title="Agent Execution Engine", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(AgentEngineError)
    async def engine_error_handler(request: Request, exc: AgentEngineError) -> JSONResponse:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        for error_type, error_code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                code = error_code
                break

        if code >= 500:
            logger.error("Unhandled engine error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.get("/healthz")
    async def healthz() -> dict:
        return {
            "status": "ok",
            "active_workers": len(engine.workers),
            "metrics": metrics.get_metrics_summary(),
        }

    app.include_router(executions.router)
    app.include_router(approvals.router)
    app.include_router(triggers.router)
    return app
