"""
Event Channel — in-process publish/subscribe fan-out.

Each subscriber owns a bounded asyncio queue. publish() never blocks: a
full queue drops its oldest event and the drop is counted.

Limitation: delivery is process-local. Subscribers connected to another
instance of the service do not see these events.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from intent_engine.models.wire import utc_now

logger = logging.getLogger("intent-engine.events")


class ActionEvent(BaseModel):
    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    type: str                               # e.g., "action.completed"
    tenant_id: str
    user_id: str
    action_type: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = {}
    occurred_at: datetime = Field(default_factory=utc_now)


class Subscription:
    def __init__(self, channel: "EventChannel", tenant_id: Optional[str], maxsize: int):
        self.id = f"sub_{uuid4().hex[:12]}"
        self.tenant_id = tenant_id
        self.queue: "asyncio.Queue[ActionEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._channel = channel

    def matches(self, event: ActionEvent) -> bool:
        return self.tenant_id is None or self.tenant_id == event.tenant_id

    def offer(self, event: ActionEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> ActionEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(self, tenant_id: Optional[str] = None) -> Subscription:
        """tenant_id=None receives every tenant's events (internal consumers only)."""
        subscription = Subscription(self, tenant_id, self.queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ActionEvent) -> int:
        """Deliver to every matching subscriber. Returns the delivery count."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
            self.published += 1
        for subscription in targets:
            subscription.offer(event)
        logger.debug("Published %s to %d subscriber(s)", event.type, len(targets))
        return len(targets)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
