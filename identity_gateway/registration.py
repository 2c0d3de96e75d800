"""
Anchor registration.

Two entry points share one routine:

- `register`: the caller must hold an admission pass from a prior
  successful `check_challenge`. The temp key (explicit, or the caller
  itself) is bound to the new anchor and its device for ten minutes.
- `register_legacy`: the challenge attempt travels with the request and is
  checked inline. A temp key argument is accepted for wire compatibility
  with older clients and ignored.

A full anchor range yields `NoSpace` on both paths without spending the
caller's admission: `register` keeps the pass, `register_legacy` answers
before looking at the inline attempt.

Registration is not idempotent: every success allocates a new anchor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from .anchors import AnchorStore, Device
from .captcha import ChallengeAttempt, ChallengeEngine
from .errors import (
    IDG_E_RATE_LIMITED,
    IDG_E_TEMP_KEY_EQUALS_DEVICE,
    identity_error,
)
from .principal import Principal
from .ratelimit import TokenBucket
from .temp_keys import TempKeyRegistry

logger = logging.getLogger("identity_gateway")


@dataclass(frozen=True)
class Registered:
    anchor: int
    kind: str = "registered"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "anchor": self.anchor}


@dataclass(frozen=True)
class BadChallenge:
    kind: str = "bad_challenge"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class NoSpace:
    """The anchor number range is exhausted."""
    kind: str = "no_space"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind}


RegisterResponse = Union[Registered, BadChallenge, NoSpace]


class RegistrationController:
    def __init__(
        self,
        store: AnchorStore,
        temp_keys: TempKeyRegistry,
        challenges: ChallengeEngine,
        rate_limiter: Optional[TokenBucket] = None,
        on_outcome: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.temp_keys = temp_keys
        self.challenges = challenges
        self.rate_limiter = rate_limiter
        self._on_outcome = on_outcome

    def register(
        self,
        caller: Principal,
        device: Device,
        now: float,
        temp_key: Optional[Principal] = None,
    ) -> RegisterResponse:
        return self._register(caller, device, now, temp_key=temp_key, honor_temp_key=True)

    def register_legacy(
        self,
        caller: Principal,
        device: Device,
        attempt: ChallengeAttempt,
        now: float,
        temp_key_hint: Optional[Principal] = None,
    ) -> RegisterResponse:
        # temp_key_hint is deliberately unused.
        return self._register(caller, device, now, attempt=attempt, honor_temp_key=False)

    def _register(
        self,
        caller: Principal,
        device: Device,
        now: float,
        *,
        temp_key: Optional[Principal] = None,
        attempt: Optional[ChallengeAttempt] = None,
        honor_temp_key: bool,
    ) -> RegisterResponse:
        if self.rate_limiter is not None and not self.rate_limiter.allow(now):
            self._record("rate_limited")
            raise identity_error(
                IDG_E_RATE_LIMITED,
                "rate limit reached, try again later",
                retryable=True,
                http_status=429,
            )

        if attempt is not None:
            # Answer before spending the single-use inline attempt.
            if not self.store.has_space():
                logger.warning("registration rejected: anchor range exhausted")
                self._record("no_space")
                return NoSpace()
            admitted = self.challenges.verify_attempt(attempt, now)
        else:
            admitted = self.challenges.has_pass(caller, now)
        if not admitted:
            logger.info("registration by %s rejected: bad challenge", caller.to_text())
            self._record("bad_challenge")
            return BadChallenge()

        effective_temp_key: Optional[Principal] = None
        if honor_temp_key:
            effective_temp_key = temp_key if temp_key is not None else caller
            # Checked before any state changes; the admission pass survives.
            if effective_temp_key == device.principal():
                self._record("invalid_temp_key")
                raise identity_error(
                    IDG_E_TEMP_KEY_EQUALS_DEVICE,
                    "temp_key and device key must not be equal",
                )

        anchor = self.store.create_anchor(device, now)
        if anchor is None:
            logger.warning("registration rejected: anchor range exhausted")
            self._record("no_space")
            return NoSpace()

        if attempt is None:
            self.challenges.consume_pass(caller)
        if effective_temp_key is not None:
            self.temp_keys.insert(effective_temp_key, anchor, device.pubkey, now)
            logger.info("anchor %d registered with temp key %s", anchor, effective_temp_key.to_text())
        else:
            logger.info("anchor %d registered", anchor)
        self._record("registered")
        return Registered(anchor=anchor)

    def _record(self, outcome: str) -> None:
        if self._on_outcome is not None:
            self._on_outcome(outcome)
