"""In-process rate limiting for registration.

Token buckets are driven by the service clock rather than the wall clock, so
refill follows the same logical time as every expiry decision.

One bucket is shared by all callers. Per-process only; for production, also
rate limit at the reverse proxy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass
class TokenBucket:
    """A basic token bucket limiter.

    capacity: max tokens
    refill_rate_per_sec: tokens added per second
    """

    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    @classmethod
    def from_spec(cls, spec: str, now: float) -> "TokenBucket":
        capacity, refill = parse_rate_limit(spec)
        return cls.new(capacity, refill, now)

    def allow(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = max(self.last_ts, now)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


_UNIT_SECONDS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hour": 3600.0, "hours": 3600.0,
}


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse '<count>/<unit>' (e.g. '100/s', '30/m') into (capacity, refill per second).

    The burst capacity is one unit's worth of requests.
    """
    count_str, sep, unit = (spec or "").strip().lower().partition("/")
    if not sep:
        raise ValueError(f"invalid rate limit {spec!r}; expected like '30/m' or '10/s'")
    count = float(count_str)
    if count <= 0:
        raise ValueError("rate must be positive")
    seconds = _UNIT_SECONDS.get(unit.strip())
    if seconds is None:
        raise ValueError(f"unsupported rate unit: {unit}")
    return count, count / seconds
