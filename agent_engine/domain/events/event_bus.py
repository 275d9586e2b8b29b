from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Tuple
import asyncio
import fnmatch

import structlog

from agent_engine.domain.models.agent_state import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class BusEvent:
    event_type: str
    payload: Dict[str, Any]
    published_at: datetime = field(default_factory=utcnow)


EventHandler = Callable[[BusEvent], Awaitable[None]]


class EventBus(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None: ...

    @abstractmethod
    def subscribe(self, pattern: str, handler: EventHandler) -> None: ...


class InMemoryEventBus(EventBus):
    """In-process pub/sub with glob pattern subscriptions"""

    def __init__(self, history_size: int = 1000):
        self.subscriptions: List[Tuple[str, EventHandler]] = []
        self.history: List[BusEvent] = []
        self.history_size = history_size
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self.subscriptions.append((pattern, handler))

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = BusEvent(event_type=event_type, payload=payload)

        async with self._lock:
            self.history.append(event)
            if len(self.history) > self.history_size:
                self.history = self.history[-self.history_size:]

        logger.info("Event published", event_type=event_type)

        for pattern, handler in list(self.subscriptions):
            if not fnmatch.fnmatchcase(event_type, pattern):
                continue
            try:
                await handler(event)
            except Exception:
                # Subscribers never break the publisher
                logger.exception("Event handler failed", event_type=event_type, pattern=pattern)

    def published(self, pattern: str = "*") -> List[BusEvent]:
        return [event for event in self.history if fnmatch.fnmatchcase(event.event_type, pattern)]
