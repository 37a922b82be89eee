"""
Rate Limiter — per-tenant, per-user admission control.

Behavioral Contract:
- Fixed window keyed by (tenant_id, user_id, scope).
- The check-and-increment is atomic per key: two concurrent calls can
  never both observe "under limit" for the last slot.
- A bucket resets once now - window_start >= window.
- Denied calls do not consume quota.
- Buckets whose window has passed are evicted, so idle keys cost nothing.
- Never performs I/O; always cheap enough to run first on every request.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from intent_engine.models.limits import RateLimitBucket, RateLimitDecision
from intent_engine.models.wire import utc_now

logger = logging.getLogger("intent-engine.rate-limiter")

BucketKey = Tuple[str, str, str]


class RateLimiter:
    """In-process fixed-window limiter. One instance is shared by all requests."""

    def __init__(
        self,
        limit: int = 100,
        window_seconds: int = 3600,
        scope_limits: Optional[Dict[str, int]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.scope_limits = scope_limits or {}
        self._clock = clock
        self._buckets: Dict[BucketKey, RateLimitBucket] = {}
        self._last_sweep: Optional[datetime] = None
        self._lock = threading.Lock()

    def limit_for(self, scope: str) -> int:
        return self.scope_limits.get(scope, self.limit)

    def check(
        self, tenant_id: str, user_id: str, scope: str = "interpret"
    ) -> RateLimitDecision:
        """Consume one slot if available and report the remaining quota."""
        key = (tenant_id, user_id, scope)
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            bucket = self._current_bucket(key, now)
            if bucket.count >= bucket.limit:
                decision = self._decision(bucket, allowed=False)
            else:
                bucket.count += 1
                decision = self._decision(bucket, allowed=True)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for tenant=%s user=%s scope=%s",
                tenant_id, user_id, scope,
            )
        return decision

    def peek(
        self, tenant_id: str, user_id: str, scope: str = "interpret"
    ) -> RateLimitDecision:
        """Current quota without consuming a slot."""
        key = (tenant_id, user_id, scope)
        with self._lock:
            bucket = self._current_bucket(key, self._clock())
            return self._decision(bucket, allowed=bucket.count < bucket.limit)

    def get_bucket(
        self, tenant_id: str, user_id: str, scope: str = "interpret"
    ) -> Optional[RateLimitBucket]:
        with self._lock:
            bucket = self._buckets.get((tenant_id, user_id, scope))
            return bucket.model_copy() if bucket else None

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _evict_expired(self, now: datetime) -> None:
        """Drop expired buckets, at most once per window. Caller holds the lock."""
        if self._last_sweep is not None and now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        expired = [
            key for key, bucket in self._buckets.items()
            if now - bucket.window_start >= self.window
        ]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("Evicted %d expired rate-limit buckets", len(expired))

    def _current_bucket(self, key: BucketKey, now: datetime) -> RateLimitBucket:
        """Fetch or roll over the bucket for key. Caller holds the lock."""
        bucket = self._buckets.get(key)
        if bucket is None or now - bucket.window_start >= self.window:
            tenant_id, user_id, scope = key
            bucket = RateLimitBucket(
                tenant_id=tenant_id,
                user_id=user_id,
                scope=scope,
                window_start=now,
                count=0,
                limit=self.limit_for(scope),
            )
            self._buckets[key] = bucket
        return bucket

    def _decision(self, bucket: RateLimitBucket, allowed: bool) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=allowed,
            limit=bucket.limit,
            remaining=max(0, bucket.limit - bucket.count),
            reset_at=bucket.window_start + self.window,
        )
