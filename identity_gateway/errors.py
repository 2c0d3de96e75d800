"""Stable error taxonomy for the identity gateway.

This module defines machine-readable error codes and a single exception type
used across registration, authentication and the HTTP layer.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Admission control
IDG_E_BAD_CHALLENGE = "IDG_E_BAD_CHALLENGE"
IDG_E_TOO_MANY_CHALLENGES = "IDG_E_TOO_MANY_CHALLENGES"
IDG_E_RATE_LIMITED = "IDG_E_RATE_LIMITED"

# Registration / credential binding
IDG_E_TEMP_KEY_EQUALS_DEVICE = "IDG_E_TEMP_KEY_EQUALS_DEVICE"

# Authentication
IDG_E_UNAUTHENTICATED = "IDG_E_UNAUTHENTICATED"

# Anchor store
IDG_E_ANCHOR_NOT_FOUND = "IDG_E_ANCHOR_NOT_FOUND"
IDG_E_DEVICE_NOT_FOUND = "IDG_E_DEVICE_NOT_FOUND"
IDG_E_DEVICE_EXISTS = "IDG_E_DEVICE_EXISTS"

# Generic
IDG_E_BAD_REQUEST = "IDG_E_BAD_REQUEST"


@dataclass
class IdentityError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        # Keep message readable; details are available via .as_dict()
        return f"{self.code}: {self.message}"


def identity_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> IdentityError:
    return IdentityError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def unauthenticated(principal_text: str, anchor: int) -> IdentityError:
    """Error raised when a caller resolves to neither a device nor a live temp key."""
    return identity_error(
        IDG_E_UNAUTHENTICATED,
        f"{principal_text} could not be authenticated.",
        http_status=401,
        anchor=int(anchor),
    )
