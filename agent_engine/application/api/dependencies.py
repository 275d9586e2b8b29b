from fastapi import Request

from agent_engine.domain.orchestration.core.engine import AgentEngine


def get_engine(request: Request) -> AgentEngine:
    return request.app.state.engine
