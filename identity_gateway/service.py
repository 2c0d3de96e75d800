"""
Identity service context.

`IdentityService` owns every piece of mutable state (anchor store, temp key
registry, challenge engine) and exposes the public operations. A single
lock serializes operations, so each call's store and registry mutations are
observed by other calls either completely or not at all.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .anchors import AnchorInfo, AnchorStore, Device
from .auth import AuthContext, AuthenticationResolver
from .captcha import Challenge, ChallengeAttempt, ChallengeEngine
from .clock import LocalTimeSource, TimeSource
from .config import GatewayConfig
from .metrics import GatewayMetrics
from .principal import Principal
from .ratelimit import TokenBucket
from .registration import RegisterResponse, RegistrationController
from .temp_keys import TempKeyRegistry

logger = logging.getLogger("identity_gateway")


class IdentityService:
    def __init__(self, config: Optional[GatewayConfig] = None, clock: Optional[TimeSource] = None):
        self.config = config or GatewayConfig()
        self.clock = clock or LocalTimeSource()
        self._lock = threading.RLock()

        self.temp_keys = TempKeyRegistry()
        self.store = AnchorStore(
            db_path=self.config.db_path,
            range_start=self.config.anchor_range_start,
            range_end=self.config.anchor_range_end,
            temp_keys=self.temp_keys,
        )
        self.challenges = ChallengeEngine(
            ttl_seconds=self.config.captcha_ttl_seconds,
            max_inflight=self.config.max_inflight_challenges,
            dummy=self.config.dummy_captcha,
        )
        self.metrics = GatewayMetrics(
            temp_keys_count=self.temp_keys.count,
            anchors_count=self.store.anchor_count,
            inflight_challenges=self.challenges.inflight,
        )
        rate_limiter = None
        if self.config.register_rate_limit:
            rate_limiter = TokenBucket.from_spec(self.config.register_rate_limit, self.clock.now())
        self.registration = RegistrationController(
            store=self.store,
            temp_keys=self.temp_keys,
            challenges=self.challenges,
            rate_limiter=rate_limiter,
            on_outcome=self.metrics.record_registration,
        )
        self.resolver = AuthenticationResolver(self.store, self.temp_keys)

    def _prune(self, now: float) -> None:
        pruned = self.temp_keys.prune_expired(now, limit=self.config.temp_key_prune_limit)
        if pruned:
            logger.debug("pruned %d expired temp key(s)", pruned)

    # ---------------------------
    # Admission control
    # ---------------------------

    def create_challenge(self) -> Challenge:
        with self._lock:
            return self.challenges.create_challenge(self.clock.now())

    def check_challenge(self, caller: Principal, attempt: ChallengeAttempt) -> None:
        with self._lock:
            self.challenges.check_challenge(caller, attempt, self.clock.now())

    # ---------------------------
    # Registration
    # ---------------------------

    def register(self, caller: Principal, device: Device, temp_key: Optional[Principal] = None) -> RegisterResponse:
        with self._lock:
            now = self.clock.now()
            self._prune(now)
            return self.registration.register(caller, device, now, temp_key=temp_key)

    def register_legacy(
        self,
        caller: Principal,
        device: Device,
        attempt: ChallengeAttempt,
        temp_key_hint: Optional[Principal] = None,
    ) -> RegisterResponse:
        with self._lock:
            now = self.clock.now()
            self._prune(now)
            return self.registration.register_legacy(caller, device, attempt, now, temp_key_hint=temp_key_hint)

    # ---------------------------
    # Authenticated anchor management
    # ---------------------------

    def authenticate(self, caller: Principal, anchor: int) -> AuthContext:
        with self._lock:
            return self.resolver.authenticate(caller, anchor, self.clock.now())

    def get_anchor_info(self, caller: Principal, anchor: int) -> AnchorInfo:
        with self._lock:
            self.resolver.authenticate(caller, anchor, self.clock.now())
            return self.store.get_anchor(anchor)

    def add_device(self, caller: Principal, anchor: int, device: Device) -> None:
        with self._lock:
            now = self.clock.now()
            self._prune(now)
            self.resolver.authenticate(caller, anchor, now)
            self.store.add_device(anchor, device)

    def remove_device(self, caller: Principal, anchor: int, pubkey: bytes) -> None:
        with self._lock:
            now = self.clock.now()
            self._prune(now)
            self.resolver.authenticate(caller, anchor, now)
            self.store.remove_device(anchor, pubkey)

    def replace_device(self, caller: Principal, anchor: int, old_pubkey: bytes, new_device: Device) -> None:
        with self._lock:
            now = self.clock.now()
            self._prune(now)
            self.resolver.authenticate(caller, anchor, now)
            self.store.replace_device(anchor, old_pubkey, new_device)

    # ---------------------------
    # Observability
    # ---------------------------

    def temp_keys_count(self) -> int:
        return self.temp_keys.count()

    def metrics_text(self) -> str:
        return self.metrics.render().decode("utf-8")

    def close(self) -> None:
        self.store.close()
