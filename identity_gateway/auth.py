"""Caller authentication for anchor management calls.

A caller is authorized for an anchor when either
  - its principal is the self-authenticating principal of a device
    registered on the anchor, or
  - it holds a live temp key bound to that anchor and to a device that is
    still registered there.

A temp key caller acts with the rights of the bound device; it is not that
device.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .anchors import AnchorStore
from .errors import IDG_E_UNAUTHENTICATED, IdentityError, unauthenticated
from .principal import Principal
from .temp_keys import TempKeyRegistry

logger = logging.getLogger("identity_gateway")

VIA_DEVICE = "device"
VIA_TEMP_KEY = "temp_key"


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity context."""

    anchor: int
    principal: Principal
    via: str
    device_key: Optional[bytes] = None


class AuthenticationResolver:
    def __init__(self, store: AnchorStore, temp_keys: TempKeyRegistry):
        self.store = store
        self.temp_keys = temp_keys

    def authenticate(self, credential: Principal, anchor: int, now: float) -> AuthContext:
        """Authorize `credential` for `anchor` or raise IDG_E_UNAUTHENTICATED.

        An unknown anchor is reported as an authentication failure so that
        callers cannot probe which anchors exist.
        """
        anchor = int(anchor)
        if self.store.anchor_exists(anchor):
            for device in self.store.get_devices(anchor):
                if device.principal() == credential:
                    logger.debug("%s authenticated for anchor %d via device", credential.to_text(), anchor)
                    return AuthContext(anchor=anchor, principal=credential, via=VIA_DEVICE, device_key=device.pubkey)

            device_key = self.temp_keys.resolve(
                credential,
                anchor,
                now,
                device_exists=lambda key: self.store.has_device(anchor, key),
            )
            if device_key is not None:
                logger.debug("%s authenticated for anchor %d via temp key", credential.to_text(), anchor)
                return AuthContext(anchor=anchor, principal=credential, via=VIA_TEMP_KEY, device_key=device_key)

        logger.debug("%s could not be authenticated for anchor %d", credential.to_text(), anchor)
        raise unauthenticated(credential.to_text(), anchor)

    def is_authenticated(self, credential: Principal, anchor: int, now: float) -> bool:
        try:
            self.authenticate(credential, anchor, now)
        except IdentityError as e:
            if e.code == IDG_E_UNAUTHENTICATED:
                return False
            raise
        return True
