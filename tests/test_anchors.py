from __future__ import annotations

import pytest

from helpers import make_device, make_principal
from identity_gateway.anchors import AnchorStore, Device
from identity_gateway.errors import (
    IDG_E_ANCHOR_NOT_FOUND,
    IDG_E_DEVICE_EXISTS,
    IDG_E_DEVICE_NOT_FOUND,
    IdentityError,
)
from identity_gateway.temp_keys import TempKeyRegistry

T0 = 2_000.0


@pytest.fixture
def registry():
    return TempKeyRegistry()


@pytest.fixture
def store(registry):
    s = AnchorStore(range_start=10_000, range_end=10_003, temp_keys=registry)
    try:
        yield s
    finally:
        s.close()


def test_anchor_numbers_are_sequential(store):
    anchors = [store.create_anchor(make_device(i), T0) for i in range(3)]
    assert anchors == [10_000, 10_001, 10_002]
    assert store.anchor_count() == 3


def test_anchor_range_exhaustion(store):
    for i in range(3):
        assert store.create_anchor(make_device(i), T0) is not None
    assert store.has_space() is False
    assert store.create_anchor(make_device(9), T0) is None
    assert store.anchor_count() == 3


def test_get_anchor_returns_devices_in_order(store):
    anchor = store.create_anchor(make_device(1), T0)
    store.add_device(anchor, make_device(2))
    store.add_device(anchor, make_device(3))

    info = store.get_anchor(anchor)
    assert [d.alias for d in info.devices] == ["Device 1", "Device 2", "Device 3"]
    assert info.created_at == T0
    assert info.devices[0] == make_device(1)


def test_duplicate_device_rejected(store):
    anchor = store.create_anchor(make_device(1), T0)
    with pytest.raises(IdentityError) as ei:
        store.add_device(anchor, make_device(1))
    assert ei.value.code == IDG_E_DEVICE_EXISTS
    assert ei.value.http_status == 409


def test_unknown_anchor(store):
    with pytest.raises(IdentityError) as ei:
        store.get_anchor(99_999)
    assert ei.value.code == IDG_E_ANCHOR_NOT_FOUND


def test_remove_unknown_device(store):
    anchor = store.create_anchor(make_device(1), T0)
    with pytest.raises(IdentityError) as ei:
        store.remove_device(anchor, make_device(2).pubkey)
    assert ei.value.code == IDG_E_DEVICE_NOT_FOUND
    assert ei.value.http_status == 404


def test_remove_device_revokes_temp_keys(store, registry):
    device = make_device(1)
    anchor = store.create_anchor(device, T0)
    registry.insert(make_principal(1), anchor, device.pubkey, T0)

    store.remove_device(anchor, device.pubkey)

    assert store.get_devices(anchor) == []
    assert registry.count() == 0


def test_replace_device_keeps_position_and_revokes(store, registry):
    first, second, replacement = make_device(1), make_device(2), make_device(3)
    anchor = store.create_anchor(first, T0)
    store.add_device(anchor, second)
    registry.insert(make_principal(1), anchor, first.pubkey, T0)

    store.replace_device(anchor, first.pubkey, replacement)

    assert [d.alias for d in store.get_devices(anchor)] == ["Device 3", "Device 2"]
    assert registry.resolve(make_principal(1), anchor, T0) is None


def test_replace_with_existing_device_rolls_back(store, registry):
    first, second = make_device(1), make_device(2)
    anchor = store.create_anchor(first, T0)
    store.add_device(anchor, second)
    registry.insert(make_principal(1), anchor, first.pubkey, T0)

    with pytest.raises(IdentityError) as ei:
        store.replace_device(anchor, first.pubkey, second)
    assert ei.value.code == IDG_E_DEVICE_EXISTS

    # Nothing changed: the old device and its temp key are intact.
    assert [d.alias for d in store.get_devices(anchor)] == ["Device 1", "Device 2"]
    assert registry.resolve(make_principal(1), anchor, T0) == first.pubkey


def test_store_persists_to_file(tmp_path):
    db = tmp_path / "anchors.db"
    store = AnchorStore(db_path=str(db), range_start=500, range_end=600)
    anchor = store.create_anchor(make_device(1), T0)
    store.close()

    reopened = AnchorStore(db_path=str(db), range_start=500, range_end=600)
    try:
        assert reopened.get_devices(anchor) == [make_device(1)]
        # The allocation cursor survives restarts.
        assert reopened.create_anchor(make_device(2), T0) == anchor + 1
    finally:
        reopened.close()


def test_device_dict_roundtrip_and_validation():
    device = Device(
        pubkey=b"\x30\x2a" + b"\x00" * 42,
        alias="Laptop",
        credential_id=b"\x09" * 8,
        purpose="recovery",
        key_type="platform",
        protection="protected",
        origin="https://id.example.org",
        metadata={"usage": "recovery_phrase"},
    )
    assert Device.from_dict(device.to_dict()) == device

    with pytest.raises(ValueError):
        Device(pubkey=b"\x01", alias="x", purpose="admin")
    with pytest.raises(ValueError):
        Device(pubkey=b"", alias="x")
