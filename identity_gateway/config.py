"""Gateway configuration loaded from environment variables.

Env:
- IDG_DB_PATH (default: ":memory:")
- IDG_ANCHOR_RANGE_START (default: 10000)
- IDG_ANCHOR_RANGE_END (default: start + 1000000, exclusive)
- IDG_CAPTCHA_TTL_SECONDS (default: 300)
- IDG_MAX_INFLIGHT_CHALLENGES (default: 500)
- IDG_DUMMY_CAPTCHA (default: off) - every challenge is solved by "a"
- IDG_RATE_LIMIT_REGISTER (default: "100/s"; "off" disables)
- IDG_TEMP_KEY_PRUNE_LIMIT (default: 100)
- IDG_METRICS_ENABLED (default: on)
- IDG_LOG_LEVEL (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("identity_gateway")

DEFAULT_ANCHOR_RANGE_START = 10_000
DEFAULT_ANCHOR_RANGE_SIZE = 1_000_000


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer %s=%r (using %d)", name, raw, default)
        return default


@dataclass(frozen=True)
class GatewayConfig:
    db_path: str = ":memory:"
    anchor_range_start: int = DEFAULT_ANCHOR_RANGE_START
    anchor_range_end: int = DEFAULT_ANCHOR_RANGE_START + DEFAULT_ANCHOR_RANGE_SIZE
    captcha_ttl_seconds: int = 300
    max_inflight_challenges: int = 500
    dummy_captcha: bool = False
    register_rate_limit: Optional[str] = "100/s"
    temp_key_prune_limit: int = 100
    metrics_enabled: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.anchor_range_start < 0:
            raise ValueError("anchor_range_start must be non-negative")
        if self.anchor_range_end < self.anchor_range_start:
            raise ValueError("anchor_range_end must not be below anchor_range_start")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        start = _env_int("IDG_ANCHOR_RANGE_START", DEFAULT_ANCHOR_RANGE_START)
        start = max(0, start)
        end = _env_int("IDG_ANCHOR_RANGE_END", start + DEFAULT_ANCHOR_RANGE_SIZE)
        end = max(start, end)
        # Clamp to sensible bounds
        ttl = max(10, min(_env_int("IDG_CAPTCHA_TTL_SECONDS", cls.captcha_ttl_seconds), 3600))
        inflight = max(1, min(_env_int("IDG_MAX_INFLIGHT_CHALLENGES", cls.max_inflight_challenges), 1_000_000))
        prune_limit = max(1, min(_env_int("IDG_TEMP_KEY_PRUNE_LIMIT", cls.temp_key_prune_limit), 100_000))

        rate = (os.getenv("IDG_RATE_LIMIT_REGISTER", cls.register_rate_limit or "") or "").strip()
        if rate.lower() in ("", "0", "off", "disabled", "false"):
            rate_spec: Optional[str] = None
        else:
            rate_spec = rate

        return cls(
            db_path=(os.getenv("IDG_DB_PATH", "") or "").strip() or ":memory:",
            anchor_range_start=start,
            anchor_range_end=end,
            captcha_ttl_seconds=ttl,
            max_inflight_challenges=inflight,
            dummy_captcha=_env_bool("IDG_DUMMY_CAPTCHA", False),
            register_rate_limit=rate_spec,
            temp_key_prune_limit=prune_limit,
            metrics_enabled=_env_bool("IDG_METRICS_ENABLED", True),
            log_level=(os.getenv("IDG_LOG_LEVEL", "") or "INFO").strip().upper(),
        )


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the server launcher."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
