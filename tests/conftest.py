from __future__ import annotations

import pytest

from identity_gateway.anchors import Device
from identity_gateway.captcha import ChallengeAttempt
from identity_gateway.clock import ManualTimeSource
from identity_gateway.config import GatewayConfig
from identity_gateway.principal import Principal
from identity_gateway.registration import Registered
from identity_gateway.service import IdentityService


@pytest.fixture
def clock():
    return ManualTimeSource(start=1_700_000_000.0)


@pytest.fixture
def config():
    return GatewayConfig(dummy_captcha=True, register_rate_limit=None)


@pytest.fixture
def service(config, clock):
    svc = IdentityService(config, clock=clock)
    try:
        yield svc
    finally:
        svc.close()


@pytest.fixture
def solve_captcha(service):
    """Create a challenge and pass it as `caller`."""

    def _solve(caller: Principal) -> None:
        challenge = service.create_challenge()
        service.check_challenge(caller, ChallengeAttempt(key=challenge.challenge_key, chars="a"))

    return _solve


@pytest.fixture
def register_with_temp_key(service, solve_captcha):
    """Register `device` with `temp_key` acting as caller; returns the anchor."""

    def _register(temp_key: Principal, device: Device) -> int:
        solve_captcha(temp_key)
        response = service.register(temp_key, device)
        assert isinstance(response, Registered), response
        return response.anchor

    return _register


@pytest.fixture
def register_anchor_with_device(service):
    """Plain registration through the legacy path; no temp key is bound."""

    def _register(device: Device) -> int:
        challenge = service.create_challenge()
        response = service.register_legacy(
            device.principal(),
            device,
            ChallengeAttempt(key=challenge.challenge_key, chars="a"),
        )
        assert isinstance(response, Registered), response
        return response.anchor

    return _register
