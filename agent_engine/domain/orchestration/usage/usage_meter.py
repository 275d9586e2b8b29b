"""Token and cost metering with quota enforcement.

Quota accounts live in a local cache. Reserve/commit/release run under one
asyncio lock so two concurrent executions cannot both pass the quota edge.
Billing state is pulled from a ``QuotaSource`` in the background; the meter
never calls billing on the hot path.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional
import asyncio
import uuid

import structlog

from agent_engine.domain.models.agent_state import TokenUsage, utcnow
from agent_engine.infrastructure.config.settings import EngineSettings, get_settings

logger = structlog.get_logger(__name__)


class QuotaPolicy(str, Enum):
    HARD_STOP = "hard_stop"
    SOFT_OVERAGE = "soft_overage"


@dataclass
class QuotaAccount:
    quota_key: str
    limit_tokens: int
    policy: QuotaPolicy
    period_start: datetime
    period_seconds: int
    used_tokens: int = 0
    reserved_tokens: int = 0
    overage_tokens: int = 0
    cost: float = 0.0

    @property
    def period_end(self) -> datetime:
        return self.period_start + timedelta(seconds=self.period_seconds)

    @property
    def remaining(self) -> int:
        return max(self.limit_tokens - self.used_tokens - self.reserved_tokens, 0)

    def roll_over(self, now: datetime) -> bool:
        if now < self.period_end:
            return False
        elapsed_periods = int((now - self.period_start).total_seconds() // self.period_seconds)
        self.period_start = self.period_start + timedelta(seconds=elapsed_periods * self.period_seconds)
        self.used_tokens = 0
        self.overage_tokens = 0
        self.cost = 0.0
        return True


@dataclass(frozen=True)
class Reservation:
    id: str
    quota_key: str
    tokens: int
    allowed: bool
    overage: bool = False


@dataclass(frozen=True)
class Charge:
    tokens: int
    cost: float
    overage_tokens: int = 0
    overage_cost: float = 0.0


@dataclass
class QuotaSnapshot:
    """Authoritative quota state reported by billing"""
    limit_tokens: int
    used_tokens: int
    policy: Optional[QuotaPolicy] = None
    period_start: Optional[datetime] = None


class QuotaSource(ABC):
    @abstractmethod
    async def fetch(self, quota_key: str) -> Optional[QuotaSnapshot]: ...


class StaticQuotaSource(QuotaSource):
    """Fixed per-key limits; useful for single-tenant deployments and tests"""

    def __init__(self, limits: Optional[Dict[str, QuotaSnapshot]] = None):
        self.limits = limits or {}

    async def fetch(self, quota_key: str) -> Optional[QuotaSnapshot]:
        return self.limits.get(quota_key)


class UsageMeter:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        quota_source: Optional[QuotaSource] = None,
    ):
        self.settings = settings or get_settings()
        self.quota_source = quota_source
        self.accounts: Dict[str, QuotaAccount] = {}
        self.reservations: Dict[str, Reservation] = {}
        self._lock = asyncio.Lock()

    def _account(self, quota_key: str) -> QuotaAccount:
        account = self.accounts.get(quota_key)
        if account is None:
            account = QuotaAccount(
                quota_key=quota_key,
                limit_tokens=self.settings.quota_tokens,
                policy=QuotaPolicy(self.settings.quota_policy),
                period_start=utcnow(),
                period_seconds=self.settings.quota_period_seconds,
            )
            self.accounts[quota_key] = account
        elif account.roll_over(utcnow()):
            logger.info("Quota period rolled over", quota_key=quota_key)
        return account

    def configure(
        self,
        quota_key: str,
        limit_tokens: int,
        policy: Optional[QuotaPolicy] = None,
        used_tokens: int = 0,
    ) -> QuotaAccount:
        """Set an account's limit directly, e.g. when an account is provisioned"""
        account = self._account(quota_key)
        account.limit_tokens = limit_tokens
        account.used_tokens = used_tokens
        if policy is not None:
            account.policy = policy
        return account

    async def reserve(self, quota_key: str, estimated_tokens: int) -> Reservation:
        estimated_tokens = max(int(estimated_tokens), 0)

        async with self._lock:
            account = self._account(quota_key)
            projected = account.used_tokens + account.reserved_tokens + estimated_tokens
            over_limit = projected > account.limit_tokens

            if over_limit and account.policy == QuotaPolicy.HARD_STOP:
                logger.warning(
                    "Quota reservation denied",
                    quota_key=quota_key,
                    requested=estimated_tokens,
                    remaining=account.remaining,
                )
                return Reservation(
                    id=str(uuid.uuid4()), quota_key=quota_key, tokens=0, allowed=False
                )

            reservation = Reservation(
                id=str(uuid.uuid4()),
                quota_key=quota_key,
                tokens=estimated_tokens,
                allowed=True,
                overage=over_limit,
            )
            account.reserved_tokens += estimated_tokens
            self.reservations[reservation.id] = reservation

        if reservation.overage:
            logger.info("Quota overage allowed", quota_key=quota_key, requested=estimated_tokens)
        return reservation

    async def commit(self, reservation: Reservation, usage: TokenUsage, model: str) -> Charge:
        """Convert a reservation into actual usage and price it"""
        price = self.settings.price_for(model)
        cost = (
            usage.prompt_tokens / 1000 * price.prompt_per_1k
            + usage.completion_tokens / 1000 * price.completion_per_1k
        )

        async with self._lock:
            account = self._account(reservation.quota_key)
            if self.reservations.pop(reservation.id, None) is not None:
                account.reserved_tokens = max(account.reserved_tokens - reservation.tokens, 0)

            before = account.used_tokens
            account.used_tokens += usage.total_tokens
            overage_tokens = max(account.used_tokens - max(before, account.limit_tokens), 0)
            if account.policy == QuotaPolicy.HARD_STOP:
                overage_tokens = 0

            overage_cost = 0.0
            if overage_tokens and usage.total_tokens:
                overage_cost = cost * (overage_tokens / usage.total_tokens) * self.settings.overage_multiplier
                account.overage_tokens += overage_tokens

            account.cost += cost + overage_cost

        return Charge(
            tokens=usage.total_tokens,
            cost=cost + overage_cost,
            overage_tokens=overage_tokens,
            overage_cost=overage_cost,
        )

    async def release(self, reservation: Reservation) -> None:
        async with self._lock:
            if self.reservations.pop(reservation.id, None) is None:
                return
            account = self._account(reservation.quota_key)
            account.reserved_tokens = max(account.reserved_tokens - reservation.tokens, 0)

    async def reset(self, quota_key: str) -> None:
        async with self._lock:
            account = self._account(quota_key)
            account.used_tokens = 0
            account.overage_tokens = 0
            account.cost = 0.0
            account.period_start = utcnow()

    async def snapshot(self, quota_key: str) -> QuotaAccount:
        async with self._lock:
            account = self._account(quota_key)
            return QuotaAccount(**account.__dict__)

    async def reconcile(self) -> int:
        """Refresh cached accounts from the quota source"""
        if self.quota_source is None:
            return 0

        async with self._lock:
            quota_keys = list(self.accounts)

        updated = 0
        for quota_key in quota_keys:
            snapshot = await self.quota_source.fetch(quota_key)
            if snapshot is None:
                continue

            async with self._lock:
                account = self._account(quota_key)
                account.limit_tokens = snapshot.limit_tokens
                # Local usage not yet seen by billing is kept
                account.used_tokens = max(account.used_tokens, snapshot.used_tokens)
                if snapshot.policy is not None:
                    account.policy = snapshot.policy
                if snapshot.period_start is not None and snapshot.period_start > account.period_start:
                    account.period_start = snapshot.period_start
                    account.used_tokens = snapshot.used_tokens
            updated += 1

        logger.debug("Quota accounts reconciled", updated=updated)
        return updated
