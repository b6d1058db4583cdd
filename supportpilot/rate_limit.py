"""
Chat quotas: a per-visitor hourly window and per-plan daily message limits.
"""
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

DEFAULT_VISITOR_HOURLY_LIMIT = 100
VISITOR_WINDOW_SECONDS = 60 * 60

PLAN_DAILY_MESSAGE_LIMITS: Dict[str, Optional[int]] = {
    "free": 100,
    "starter": 1_000,
    "pro": 10_000,
    "enterprise": None,
}


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int


class VisitorRateLimiter:
    """
    Fixed-window counter keyed by (org id, visitor id).

    Counters live in a process-local `limits` MemoryStorage, which drops keys
    once their window expires.
    """

    def __init__(
        self,
        limit: int = DEFAULT_VISITOR_HOURLY_LIMIT,
        window_seconds: int = VISITOR_WINDOW_SECONDS,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.item = RateLimitItemPerSecond(limit, window_seconds)
        self.storage = MemoryStorage()
        self.limiter = FixedWindowRateLimiter(self.storage)

    def consume(self, org_id: str, visitor_id: str) -> RateLimitDecision:
        allowed = self.limiter.hit(self.item, org_id, visitor_id)
        stats = self.limiter.get_window_stats(self.item, org_id, visitor_id)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitDecision(allowed=allowed, retry_after_seconds=retry_after)


def plan_daily_limit(plan: str) -> Optional[int]:
    """Daily user-message cap for a plan; None means unlimited. Unknown plans get the free cap."""
    return PLAN_DAILY_MESSAGE_LIMITS.get(plan, PLAN_DAILY_MESSAGE_LIMITS["free"])


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
