from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from helpers import make_device, make_principal, read_captcha
from identity_gateway.clock import ManualTimeSource
from identity_gateway.config import GatewayConfig
from identity_gateway.errors import IdentityError
from identity_gateway.server import _parse_pubkey, create_app
from identity_gateway.service import IdentityService


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def _device_json(n: int) -> dict:
    return make_device(n).to_dict()


def _solve(client, caller_text: str) -> None:
    r = client.post("/v1/challenge")
    assert r.status_code == 200
    key = r.json()["challenge_key"]
    r = client.post("/v1/challenge/check", json={"key": key, "chars": "a"}, headers={"X-Caller": caller_text})
    assert r.status_code == 200, r.text


def test_register_and_manage_over_http(client, clock):
    temp_key = make_principal(1).to_text()
    _solve(client, temp_key)

    r = client.post("/v1/register", json={"device": _device_json(1)}, headers={"X-Caller": temp_key})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["kind"] == "registered"
    anchor = body["anchor"]

    r = client.get(f"/v1/anchors/{anchor}", headers={"X-Caller": temp_key})
    assert r.status_code == 200
    assert r.json()["devices"][0]["alias"] == "Device 1"

    r = client.put(
        f"/v1/anchors/{anchor}/devices/{make_device(1).pubkey.hex()}",
        json=_device_json(2),
        headers={"X-Caller": temp_key},
    )
    assert r.status_code == 200

    r = client.get(f"/v1/anchors/{anchor}", headers={"X-Caller": temp_key})
    assert r.status_code == 401
    err = r.json()
    assert err["code"] == "IDG_E_UNAUTHENTICATED"
    assert err["message"] == f"{temp_key} could not be authenticated."


def test_register_without_captcha_over_http(client):
    caller = make_principal(3).to_text()
    r = client.post("/v1/register", json={"device": _device_json(3)}, headers={"X-Caller": caller})
    assert r.status_code == 200
    assert r.json() == {"kind": "bad_challenge"}


def test_temp_key_equal_to_device_over_http(client):
    device = make_device(4)
    caller = device.principal().to_text()
    _solve(client, caller)

    r = client.post("/v1/register", json={"device": _device_json(4)}, headers={"X-Caller": caller})
    assert r.status_code == 400
    assert r.json()["code"] == "IDG_E_TEMP_KEY_EQUALS_DEVICE"


def test_legacy_register_over_http(client, service):
    device = make_device(5)
    caller = device.principal().to_text()
    key = client.post("/v1/challenge").json()["challenge_key"]

    r = client.post(
        "/v1/compat/register",
        json={
            "device": _device_json(5),
            "challenge_result": {"key": key, "chars": "a"},
            "temp_key": make_principal(5).to_text(),
        },
        headers={"X-Caller": caller},
    )
    assert r.status_code == 200
    assert r.json()["kind"] == "registered"
    assert service.temp_keys_count() == 0


def test_bad_caller_header(client):
    r = client.get("/v1/anchors/10000")
    assert r.status_code == 400
    assert r.json()["code"] == "IDG_E_BAD_REQUEST"

    r = client.get("/v1/anchors/10000", headers={"X-Caller": "zzzzz-zzzzz"})
    assert r.status_code == 400


def test_unknown_anchor_is_unauthenticated(client):
    r = client.get("/v1/anchors/424242", headers={"X-Caller": make_principal(1).to_text()})
    assert r.status_code == 401


def test_metrics_endpoint_exposes_temp_key_count(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "identity_gateway_temp_keys_count 0.0" in r.text

    for i in range(3):
        caller = make_principal(i).to_text()
        _solve(client, caller)
        client.post("/v1/register", json={"device": _device_json(i)}, headers={"X-Caller": caller})

    r = client.get("/metrics")
    assert "identity_gateway_temp_keys_count 3.0" in r.text
    assert 'identity_gateway_registrations_total{outcome="registered"} 3.0' in r.text


def test_metrics_token(monkeypatch, service):
    monkeypatch.setenv("IDG_METRICS_TOKEN", "s3cret")
    client = TestClient(create_app(service))

    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/metrics", headers={"X-Metrics-Token": "s3cret"}).status_code == 200


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_real_captcha_solved_from_rendered_puzzle():
    service = IdentityService(
        GatewayConfig(dummy_captcha=False, register_rate_limit=None),
        clock=ManualTimeSource(start=1_700_000_000.0),
    )
    try:
        client = TestClient(create_app(service))
        caller = make_principal(11).to_text()

        r = client.post("/v1/challenge")
        assert r.status_code == 200
        body = r.json()
        chars = read_captcha(body["png_base64"])

        r = client.post(
            "/v1/challenge/check",
            json={"key": body["challenge_key"], "chars": chars},
            headers={"X-Caller": caller},
        )
        assert r.status_code == 200, r.text

        r = client.post("/v1/register", json={"device": _device_json(11)}, headers={"X-Caller": caller})
        assert r.json()["kind"] == "registered"
    finally:
        service.close()


def test_real_captcha_rejects_wrong_answer():
    service = IdentityService(GatewayConfig(register_rate_limit=None))
    try:
        client = TestClient(create_app(service))
        body = client.post("/v1/challenge").json()
        wrong = "".join("b" if c != "b" else "c" for c in read_captcha(body["png_base64"]))

        r = client.post(
            "/v1/challenge/check",
            json={"key": body["challenge_key"], "chars": wrong},
            headers={"X-Caller": make_principal(12).to_text()},
        )
        assert r.status_code == 400
        assert r.json()["code"] == "IDG_E_BAD_CHALLENGE"
    finally:
        service.close()


def test_non_hex_device_key_is_bad_request(client):
    caller = make_principal(13).to_text()
    r = client.delete("/v1/anchors/10000/devices/not-hex", headers={"X-Caller": caller})
    assert r.status_code == 400
    assert r.json()["code"] == "IDG_E_BAD_REQUEST"

    with pytest.raises(IdentityError) as ei:
        _parse_pubkey("not-hex")
    assert isinstance(ei.value.__cause__, ValueError)
