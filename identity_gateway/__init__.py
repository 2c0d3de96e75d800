"""Identity Gateway package.

Anchor registration and authentication with:

- CAPTCHA-gated anchor creation
- Temporary keys bound to (anchor, device) for ten minutes after registration
- Revocation of temp keys when their device is removed or replaced
- Prometheus metrics, including the number of stored temp keys

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from identity_gateway import IdentityService, create_app
    from identity_gateway import Device, Principal
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "IdentityService",
    "create_app",
    "Device",
    "Principal",
    "GatewayConfig",
    "IdentityError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "IdentityService": ("identity_gateway.service", "IdentityService"),
    "create_app": ("identity_gateway.server", "create_app"),
    "Device": ("identity_gateway.anchors", "Device"),
    "Principal": ("identity_gateway.principal", "Principal"),
    "GatewayConfig": ("identity_gateway.config", "GatewayConfig"),
    "IdentityError": ("identity_gateway.errors", "IdentityError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'identity_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
