"""Challenge engine: CAPTCHA-style admission control for anchor creation.

Pending challenges live in memory keyed by their opaque key. Every challenge
allows exactly one attempt: looking up a known key removes it whatever the
outcome. A successful attempt grants the caller an admission pass that the
next registration by that caller consumes.

The caller sees a challenge as its key plus the solution rendered to a PNG
(`png_base64`); the solution itself never leaves the engine.

Lifetimes:
- pending challenge: `ttl_seconds` after creation (default 300)
- admission pass: `ttl_seconds` after the successful attempt
"""

from __future__ import annotations

import base64
import hmac
import io
import logging
import random
import secrets
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict

from PIL import Image, ImageDraw, ImageFont

from .errors import (
    IDG_E_BAD_CHALLENGE,
    IDG_E_TOO_MANY_CHALLENGES,
    identity_error,
)
from .principal import Principal

logger = logging.getLogger("identity_gateway")

# No 0/o or 1/l lookalikes.
CAPTCHA_ALPHABET = "abcdefghijkmnpqrstuvwxyz123456789"
CAPTCHA_LENGTH = 5
DUMMY_SOLUTION = "a"

# Puzzle layout: one glyph per cell, drawn small and scaled up.
CELL_WIDTH = 14
CELL_HEIGHT = 16
CAPTCHA_SCALE = 4
NOISE_DOTS = 150


@dataclass(frozen=True)
class Challenge:
    """Public view of a challenge handed to the caller."""
    challenge_key: str
    expires_at: float
    png_base64: str


def render_captcha(chars: str, noise: bool = True) -> bytes:
    """Render `chars` as a grayscale PNG puzzle.

    Glyphs are black on white, one per `CELL_WIDTH` cell, scaled up by
    `CAPTCHA_SCALE`. Noise is light gray speckle.
    """
    font = ImageFont.load_default()
    image = Image.new("L", (CELL_WIDTH * max(1, len(chars)), CELL_HEIGHT), color=255)
    draw = ImageDraw.Draw(image)
    for i, ch in enumerate(chars):
        draw.text((i * CELL_WIDTH + 3, 2), ch, fill=0, font=font)
    image = image.resize(
        (image.width * CAPTCHA_SCALE, image.height * CAPTCHA_SCALE),
        Image.Resampling.NEAREST,
    )
    if noise:
        rng = random.SystemRandom()
        draw = ImageDraw.Draw(image)
        for _ in range(NOISE_DOTS):
            xy = (rng.randrange(image.width), rng.randrange(image.height))
            draw.point(xy, fill=rng.randrange(160, 231))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


@dataclass(frozen=True)
class ChallengeAttempt:
    key: str
    chars: str


@dataclass(frozen=True)
class _PendingChallenge:
    chars: str
    created_at: float


class ChallengeEngine:
    def __init__(
        self,
        ttl_seconds: int = 300,
        max_inflight: int = 500,
        dummy: bool = False,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_inflight <= 0:
            raise ValueError("max_inflight must be positive")
        self.ttl_seconds = int(ttl_seconds)
        self.max_inflight = int(max_inflight)
        self.dummy = bool(dummy)
        self._lock = threading.Lock()
        # key -> pending challenge, oldest first
        self._pending: "OrderedDict[str, _PendingChallenge]" = OrderedDict()
        # caller -> pass expiry
        self._passes: Dict[Principal, float] = {}

    def _solution(self) -> str:
        if self.dummy:
            return DUMMY_SOLUTION
        return "".join(secrets.choice(CAPTCHA_ALPHABET) for _ in range(CAPTCHA_LENGTH))

    def _purge_pending(self, now: float) -> None:
        while self._pending:
            pending = next(iter(self._pending.values()))
            if pending.created_at + self.ttl_seconds > now:
                break
            self._pending.popitem(last=False)

    def _purge_passes(self, now: float) -> None:
        for caller in [c for c, exp in self._passes.items() if exp <= now]:
            del self._passes[caller]

    def inflight(self) -> int:
        with self._lock:
            return len(self._pending)

    def create_challenge(self, now: float) -> Challenge:
        with self._lock:
            self._purge_pending(now)
            if len(self._pending) >= self.max_inflight:
                raise identity_error(
                    IDG_E_TOO_MANY_CHALLENGES,
                    "too many inflight captchas",
                    retryable=True,
                    http_status=429,
                )
            key = secrets.token_urlsafe(16)
            chars = self._solution()
            self._pending[key] = _PendingChallenge(chars=chars, created_at=now)
        png = render_captcha(chars)
        return Challenge(
            challenge_key=key,
            expires_at=now + self.ttl_seconds,
            png_base64=base64.b64encode(png).decode("ascii"),
        )

    def verify_attempt(self, attempt: ChallengeAttempt, now: float) -> bool:
        """Consume the challenge named by `attempt` and compare its solution."""
        with self._lock:
            self._purge_pending(now)
            pending = self._pending.pop(attempt.key, None)
        if pending is None:
            return False
        if pending.created_at + self.ttl_seconds <= now:
            return False
        return hmac.compare_digest(pending.chars.encode("utf-8"), (attempt.chars or "").encode("utf-8"))

    def check_challenge(self, caller: Principal, attempt: ChallengeAttempt, now: float) -> None:
        """Verify `attempt` and grant `caller` an admission pass.

        Raises IdentityError(IDG_E_BAD_CHALLENGE) when the key is unknown,
        already used, expired, or the characters do not match.
        """
        if not self.verify_attempt(attempt, now):
            logger.info("captcha rejected for %s", caller.to_text())
            raise identity_error(IDG_E_BAD_CHALLENGE, "bad challenge", retryable=True)
        with self._lock:
            self._purge_passes(now)
            self._passes[caller] = now + self.ttl_seconds
        logger.debug("captcha passed for %s", caller.to_text())

    def has_pass(self, caller: Principal, now: float) -> bool:
        with self._lock:
            exp = self._passes.get(caller)
            if exp is None:
                return False
            if exp <= now:
                self._passes.pop(caller, None)
                return False
            return True

    def consume_pass(self, caller: Principal) -> None:
        with self._lock:
            self._passes.pop(caller, None)
