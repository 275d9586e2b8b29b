"""
Tests for environment-driven settings
"""

import pytest

from agent_engine.domain.models.agent_state import AgentConfig, MemoryPolicy
from agent_engine.infrastructure.config.settings import get_settings


@pytest.fixture
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestEngineSettings:
    """Test EngineSettings defaults flowing into agent configuration."""

    def test_environment_sets_agent_defaults(self, monkeypatch, fresh_settings):
        """Budgets and memory limits left unset on an agent come from the environment."""
        monkeypatch.setenv("AGENT_ENGINE_DEFAULT_MAX_STEPS", "4")
        monkeypatch.setenv("AGENT_ENGINE_DEFAULT_TIMEOUT_SECONDS", "30")
        monkeypatch.setenv("AGENT_ENGINE_SHORT_TERM_TOKEN_BUDGET", "900")
        monkeypatch.setenv("AGENT_ENGINE_LONG_TERM_LIMIT", "3")
        monkeypatch.setenv("AGENT_ENGINE_EPISODIC_LIMIT", "2")

        agent = AgentConfig(name="triage")

        assert agent.max_steps == 4
        assert agent.timeout_seconds == 30.0
        assert agent.memory_policy.short_term_token_budget == 900
        assert agent.memory_policy.long_term_limit == 3
        assert agent.memory_policy.episodic_limit == 2

    def test_explicit_values_win(self, monkeypatch, fresh_settings):
        """Values set on the agent are kept as given."""
        monkeypatch.setenv("AGENT_ENGINE_DEFAULT_MAX_STEPS", "4")

        agent = AgentConfig(name="triage", max_steps=12, memory_policy=MemoryPolicy(episodic_limit=1))

        assert agent.max_steps == 12
        assert agent.memory_policy.episodic_limit == 1

    def test_built_in_defaults(self, fresh_settings):
        """Without overrides the shipped defaults apply."""
        settings = get_settings()

        assert AgentConfig(name="triage").max_steps == settings.default_max_steps == 10
