"""
Tests for the trigger adapter and schedule parsing
"""

from datetime import datetime, timedelta, timezone
import asyncio

import pytest
from celery.schedules import crontab, schedule
from pydantic import ValidationError

from agent_engine.domain.errors import AgentInactiveError, RateLimitExceededError, WebhookAuthError
from agent_engine.domain.models.agent_state import Execution, TriggerBinding, TriggerType
from agent_engine.domain.orchestration.trigger.schedule_parser import ScheduleParser
from agent_engine.domain.orchestration.trigger.trigger_adapter import (
    InboundEvent,
    TriggerAdapter,
    matches_filters,
)

ORDER_BINDING = TriggerBinding(
    type=TriggerType.EVENT,
    event_pattern="order.*",
    filters={"order.total": {"$gt": 100}, "order.region": "eu"},
)


@pytest.fixture
def submitted():
    return []


@pytest.fixture
def adapter(store, submitted):
    async def submit(agent, input, trigger):
        execution = await store.create_execution(Execution(agent_id=agent.id, input=input, trigger=trigger))
        submitted.append(execution)
        return execution

    return TriggerAdapter(store, submit)


def _order(total=250, region="eu"):
    return {"order": {"id": "o-1", "total": total, "region": region}}


class TestMatchesFilters:
    """Test matches_filters."""

    @pytest.mark.parametrize(
        "filters,expected",
        [
            ({"order.region": "eu"}, True),
            ({"order.region": "us"}, False),
            ({"order.missing": "x"}, False),
            ({"order.total": {"$gte": 250}}, True),
            ({"order.total": {"$lt": 100}}, False),
            ({"order.region": {"$ne": "us"}}, True),
            ({"order.region": {"$in": ["eu", "uk"]}}, True),
            ({"order.region": {"$nin": ["eu"]}}, False),
            ({"order.id": {"$contains": "o-"}}, True),
            ({"order.coupon": {"$exists": False}}, True),
            ({"order.coupon": {"$ne": "x"}}, True),
        ],
    )
    def test_operators(self, filters, expected):
        """Dotted paths support equality and comparison operators."""
        assert matches_filters(_order(), filters) is expected

    def test_unknown_operator(self):
        """Unsupported operators are configuration errors."""
        with pytest.raises(ValueError):
            matches_filters(_order(), {"order.total": {"$regex": ".*"}})

    def test_binding_rejects_unknown_operator(self):
        """Bindings with an unsupported operator fail validation."""
        with pytest.raises(ValidationError):
            TriggerBinding(type=TriggerType.EVENT, event_pattern="order.*", filters={"order.total": {"$regex": ".*"}})


class TestEventTriggers:
    """Test TriggerAdapter.handle_event."""

    @pytest.mark.asyncio
    async def test_matching_agents_are_enqueued(self, adapter, store, make_agent, submitted):
        """Only active agents with a matching pattern and filters get an execution."""
        matching = make_agent(name="orders", triggers=[ORDER_BINDING])
        other = make_agent(name="billing", triggers=[TriggerBinding(type=TriggerType.EVENT, event_pattern="invoice.*")])
        inactive = make_agent(name="paused", triggers=[ORDER_BINDING], is_active=False)
        for agent in (matching, other, inactive):
            await store.save_agent(agent)

        executions = await adapter.handle_event(InboundEvent(eventType="order.created", payload=_order()))

        assert [e.agent_id for e in executions] == [matching.id]
        assert executions[0].trigger.type == TriggerType.EVENT
        assert executions[0].trigger.event_type == "order.created"
        assert executions[0].input == _order()

    @pytest.mark.asyncio
    async def test_filters_can_reject(self, adapter, store, make_agent):
        """Events failing a filter enqueue nothing."""
        await store.save_agent(make_agent(triggers=[ORDER_BINDING]))

        assert await adapter.handle_event(InboundEvent(eventType="order.created", payload=_order(total=50))) == []

    @pytest.mark.asyncio
    async def test_agent_bindings_restrict_targets(self, adapter, store, make_agent):
        """An explicit binding list limits the candidate agents."""
        first = make_agent(name="a", triggers=[ORDER_BINDING])
        second = make_agent(name="b", triggers=[ORDER_BINDING])
        await store.save_agent(first)
        await store.save_agent(second)

        executions = await adapter.handle_event(
            InboundEvent(eventType="order.created", payload=_order(), agentBindings=[second.id])
        )

        assert [e.agent_id for e in executions] == [second.id]

    @pytest.mark.asyncio
    async def test_misconfigured_agent_does_not_block_others(self, adapter, store, make_agent):
        """A stored binding with a broken filter skips only its own agent."""
        broken = TriggerBinding.model_construct(
            type=TriggerType.EVENT, event_pattern="order.*", filters={"order.total": {"$regex": "x"}}, enabled=True
        )
        bad = make_agent(name="bad", triggers=[broken])
        good = make_agent(name="good", triggers=[ORDER_BINDING])
        await store.save_agent(bad)
        await store.save_agent(good)

        executions = await adapter.handle_event(InboundEvent(eventType="order.created", payload=_order()))

        assert [e.agent_id for e in executions] == [good.id]

    @pytest.mark.asyncio
    async def test_rate_limited_agent_is_skipped(self, adapter, store, make_agent):
        """Agents over their hourly limit are skipped, not failed."""
        agent = make_agent(triggers=[ORDER_BINDING], max_runs_per_hour=1)
        await store.save_agent(agent)

        first = await adapter.handle_event(InboundEvent(eventType="order.created", payload=_order()))
        second = await adapter.handle_event(InboundEvent(eventType="order.updated", payload=_order()))

        assert len(first) == 1
        assert second == []


class TestManualAndWebhookTriggers:
    """Test manual and webhook triggers."""

    @pytest.mark.asyncio
    async def test_manual_run(self, adapter, store, make_agent):
        """Manual runs carry the caller's input."""
        agent = make_agent()
        await store.save_agent(agent)

        execution = await adapter.trigger_manual(agent.id, {"ticket": "T-9"})

        assert execution.trigger.type == TriggerType.MANUAL
        assert execution.input == {"ticket": "T-9"}

    @pytest.mark.asyncio
    async def test_manual_run_of_inactive_agent(self, adapter, store, make_agent):
        """Inactive agents cannot be started."""
        agent = make_agent(is_active=False)
        await store.save_agent(agent)

        with pytest.raises(AgentInactiveError):
            await adapter.trigger_manual(agent.id, {})

    @pytest.mark.asyncio
    async def test_daily_rate_limit(self, adapter, store, make_agent):
        """The daily limit applies across triggers."""
        agent = make_agent(max_runs_per_day=2)
        await store.save_agent(agent)

        await adapter.trigger_manual(agent.id, {})
        await adapter.trigger_manual(agent.id, {})
        with pytest.raises(RateLimitExceededError) as exc_info:
            await adapter.trigger_manual(agent.id, {})
        assert exc_info.value.window == "daily"

    @pytest.mark.asyncio
    async def test_concurrent_runs_respect_limit(self, adapter, store, make_agent):
        """Racing triggers never start more runs than the hourly limit."""
        agent = make_agent(max_runs_per_hour=2)
        await store.save_agent(agent)

        results = await asyncio.gather(
            *[adapter.trigger_manual(agent.id, {}) for _ in range(5)], return_exceptions=True
        )

        assert sum(isinstance(r, Execution) for r in results) == 2
        assert sum(isinstance(r, RateLimitExceededError) for r in results) == 3

    @pytest.mark.asyncio
    async def test_slow_submit_does_not_block_other_agents(self, store, make_agent):
        """One agent's pending submission does not hold up another agent's trigger."""
        release = asyncio.Event()

        async def submit(agent, input, trigger):
            if agent.name == "slow":
                await release.wait()
            return await store.create_execution(Execution(agent_id=agent.id, input=input, trigger=trigger))

        adapter = TriggerAdapter(store, submit)
        slow = make_agent(name="slow")
        fast = make_agent(name="fast")
        await store.save_agent(slow)
        await store.save_agent(fast)

        pending = asyncio.create_task(adapter.trigger_manual(slow.id, {}))
        await asyncio.sleep(0)
        fast_run = await asyncio.wait_for(adapter.trigger_manual(fast.id, {}), timeout=1)

        assert fast_run.agent_id == fast.id
        assert not pending.done()
        release.set()
        assert (await pending).agent_id == slow.id

    @pytest.mark.asyncio
    async def test_webhook_secret(self, adapter, store, make_agent, submitted):
        """Webhooks need a binding and the right shared secret."""
        hooked = make_agent(triggers=[TriggerBinding(type=TriggerType.WEBHOOK, webhook_secret="s3cret")])
        plain = make_agent()
        await store.save_agent(hooked)
        await store.save_agent(plain)

        with pytest.raises(WebhookAuthError):
            await adapter.trigger_webhook(plain.id, {}, "s3cret")
        with pytest.raises(WebhookAuthError):
            await adapter.trigger_webhook(hooked.id, {}, "wrong")
        with pytest.raises(WebhookAuthError):
            await adapter.trigger_webhook(hooked.id, {}, None)
        execution = await adapter.trigger_webhook(hooked.id, {"ref": "abc"}, "s3cret")

        assert execution.trigger.type == TriggerType.WEBHOOK
        assert [e.id for e in submitted] == [execution.id]


class TestScheduleTriggers:
    """Test TriggerAdapter.tick."""

    @pytest.mark.asyncio
    async def test_first_tick_sets_baseline(self, adapter, store, make_agent):
        """A schedule fires only after a full interval since it was first seen."""
        agent = make_agent(triggers=[TriggerBinding(type=TriggerType.SCHEDULE, schedule="@every 30m")])
        await store.save_agent(agent)
        start = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

        assert await adapter.tick(start) == []
        assert await adapter.tick(start + timedelta(minutes=10)) == []
        fired = await adapter.tick(start + timedelta(minutes=31))
        assert await adapter.tick(start + timedelta(minutes=40)) == []

        assert len(fired) == 1
        assert fired[0].trigger.type == TriggerType.SCHEDULE
        assert fired[0].input == {"scheduledAt": (start + timedelta(minutes=31)).isoformat()}

    @pytest.mark.asyncio
    async def test_invalid_schedule_is_skipped(self, adapter, store, make_agent):
        """A broken schedule never fires and does not stop the tick."""
        agent = make_agent(triggers=[TriggerBinding(type=TriggerType.SCHEDULE, schedule="every tuesday")])
        await store.save_agent(agent)
        start = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

        await adapter.tick(start)
        assert await adapter.tick(start + timedelta(days=8)) == []


class TestScheduleParser:
    """Test ScheduleParser."""

    def test_interval(self):
        """@every accepts combined units."""
        parsed = ScheduleParser.parse("@every 1h 30m")

        assert isinstance(parsed, schedule)
        assert parsed.run_every == timedelta(minutes=90)

    def test_shorthand_becomes_crontab(self):
        """Shorthands expand to cron expressions."""
        parsed = ScheduleParser.parse("@daily")

        assert isinstance(parsed, crontab)
        assert parsed.hour == {0}
        assert parsed.minute == {0}

    def test_empty_schedule(self):
        """An empty schedule parses to nothing."""
        assert ScheduleParser.parse("") is None

    @pytest.mark.parametrize("value", ["@reboot", "@every 0m", "@every 5x", "* * *"])
    def test_invalid(self, value):
        """Malformed schedules are rejected."""
        with pytest.raises(ValueError):
            ScheduleParser.parse(value)

    def test_interval_is_due(self):
        """Intervals are due once the period has elapsed."""
        last = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

        assert not ScheduleParser.is_due("@every 15m", last, last + timedelta(minutes=14))
        assert ScheduleParser.is_due("@every 15m", last, last + timedelta(minutes=15, seconds=1))
