"""Rate-limit buckets and circuit-breaker state."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from intent_engine.models.wire import UtcDatetime


class RateLimitBucket(BaseModel):
    """Fixed-window counter. Mutated only by the RateLimiter."""

    tenant_id: str
    user_id: str
    scope: str = "interpret"
    window_start: UtcDatetime
    count: int = 0
    limit: int


class RateLimitDecision(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at: UtcDatetime


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitSnapshot(BaseModel):
    """Point-in-time view of a provider's breaker."""

    name: str
    state: CircuitState
    consecutive_failures: int = 0
    opened_at: Optional[UtcDatetime] = None
    retry_at: Optional[UtcDatetime] = None
