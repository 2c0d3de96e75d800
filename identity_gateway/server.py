"""
Identity Gateway Server

FastAPI transport for the identity service.

The caller is identified by the textual principal in the `X-Caller` header.
Authenticating that the caller actually holds the principal's key is the job
of the fronting transport (request signatures are verified before a call
reaches this app); this app decides what the principal may do.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .anchors import Device
from .captcha import ChallengeAttempt
from .config import GatewayConfig, setup_logging
from .errors import IDG_E_BAD_REQUEST, IdentityError, identity_error
from .metrics import instrument_fastapi
from .principal import Principal
from .service import IdentityService

logger = logging.getLogger("identity_gateway")


# ---------------------------
# Request/Response Models
# ---------------------------

class DeviceModel(BaseModel):
    pubkey: str  # hex-encoded DER public key
    alias: str
    credential_id: Optional[str] = None  # hex
    purpose: str = "authentication"
    key_type: str = "unknown"
    protection: str = "unprotected"
    origin: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    def to_device(self) -> Device:
        try:
            return Device.from_dict(self.model_dump())
        except ValueError as e:
            raise identity_error(IDG_E_BAD_REQUEST, f"invalid device: {e}") from e


class ChallengeAttemptModel(BaseModel):
    key: str
    chars: str

    def to_attempt(self) -> ChallengeAttempt:
        return ChallengeAttempt(key=self.key, chars=self.chars)


class ChallengeResponse(BaseModel):
    challenge_key: str
    expires_at: float
    png_base64: str


class RegisterRequest(BaseModel):
    device: DeviceModel
    temp_key: Optional[str] = None  # textual principal


class LegacyRegisterRequest(BaseModel):
    """Older clients send the challenge attempt with the registration."""
    device: DeviceModel
    challenge_result: ChallengeAttemptModel
    temp_key: Optional[str] = None  # accepted, ignored


def _parse_principal(text: Optional[str], what: str = "caller") -> Principal:
    if not text:
        raise identity_error(IDG_E_BAD_REQUEST, f"{what} principal required")
    try:
        return Principal.from_text(text)
    except ValueError as e:
        raise identity_error(IDG_E_BAD_REQUEST, f"invalid {what} principal: {e}") from e


def _parse_pubkey(pubkey_hex: str) -> bytes:
    try:
        return bytes.fromhex(pubkey_hex)
    except ValueError as e:
        raise identity_error(IDG_E_BAD_REQUEST, "device pubkey must be hex") from e


def create_app(service: Optional[IdentityService] = None) -> FastAPI:
    """Create FastAPI application with identity endpoints."""
    from . import __version__ as gateway_version

    if service is None:
        service = IdentityService(GatewayConfig.from_env())

    app = FastAPI(
        title="Identity Gateway",
        description="Anchor registration and authentication",
        version=gateway_version,
    )
    app.state.service = service

    @app.exception_handler(IdentityError)
    async def _identity_error_handler(request: Request, exc: IdentityError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    if service.config.metrics_enabled:
        metrics_token = (os.getenv("IDG_METRICS_TOKEN", "") or "").strip()

        def _authorize_metrics(req: Request) -> bool:
            # If a dedicated metrics token is set, require it via:
            #   Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
            if not metrics_token:
                return True
            authz = (req.headers.get("Authorization") or "").strip()
            if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
                return True
            return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

        instrument_fastapi(app, service.metrics, authorize=_authorize_metrics)

    # Plain `def` endpoints run in the threadpool; the service serializes calls itself.

    @app.post("/v1/challenge", response_model=ChallengeResponse)
    def create_challenge():
        challenge = service.create_challenge()
        return ChallengeResponse(
            challenge_key=challenge.challenge_key,
            expires_at=challenge.expires_at,
            png_base64=challenge.png_base64,
        )

    @app.post("/v1/challenge/check")
    def check_challenge(
        attempt: ChallengeAttemptModel,
        x_caller: Optional[str] = Header(None, alias="X-Caller"),
    ):
        service.check_challenge(_parse_principal(x_caller), attempt.to_attempt())
        return {"ok": True}

    @app.post("/v1/register")
    def register(
        request: RegisterRequest,
        x_caller: Optional[str] = Header(None, alias="X-Caller"),
    ) -> Dict[str, Any]:
        caller = _parse_principal(x_caller)
        temp_key = _parse_principal(request.temp_key, "temp_key") if request.temp_key else None
        return service.register(caller, request.device.to_device(), temp_key=temp_key).to_dict()

    @app.post("/v1/compat/register")
    def register_legacy(
        request: LegacyRegisterRequest,
        x_caller: Optional[str] = Header(None, alias="X-Caller"),
    ) -> Dict[str, Any]:
        caller = _parse_principal(x_caller)
        response = service.register_legacy(
            caller,
            request.device.to_device(),
            request.challenge_result.to_attempt(),
        )
        return response.to_dict()

    @app.get("/v1/anchors/{anchor}")
    def get_anchor_info(anchor: int, x_caller: Optional[str] = Header(None, alias="X-Caller")):
        return service.get_anchor_info(_parse_principal(x_caller), anchor).to_dict()

    @app.post("/v1/anchors/{anchor}/devices")
    def add_device(
        anchor: int,
        device: DeviceModel,
        x_caller: Optional[str] = Header(None, alias="X-Caller"),
    ):
        service.add_device(_parse_principal(x_caller), anchor, device.to_device())
        return {"ok": True}

    @app.delete("/v1/anchors/{anchor}/devices/{pubkey_hex}")
    def remove_device(
        anchor: int,
        pubkey_hex: str,
        x_caller: Optional[str] = Header(None, alias="X-Caller"),
    ):
        service.remove_device(_parse_principal(x_caller), anchor, _parse_pubkey(pubkey_hex))
        return {"ok": True}

    @app.put("/v1/anchors/{anchor}/devices/{pubkey_hex}")
    def replace_device(
        anchor: int,
        pubkey_hex: str,
        device: DeviceModel,
        x_caller: Optional[str] = Header(None, alias="X-Caller"),
    ):
        service.replace_device(_parse_principal(x_caller), anchor, _parse_pubkey(pubkey_hex), device.to_device())
        return {"ok": True}

    @app.get("/v1/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": gateway_version,
            "temp_keys": service.temp_keys_count(),
        }

    return app


def main():
    """
    Main entry point for identity-gateway CLI.

    Usage:
        identity-gateway                    # Start on default port 8000
        identity-gateway --port 9000        # Start on custom port
        identity-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Identity Gateway - anchor registration service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    IDG_DB_PATH                 Path to SQLite database (default: in-memory)
    IDG_ANCHOR_RANGE_START      First anchor number handed out
    IDG_ANCHOR_RANGE_END        Anchor numbers stop before this value
    IDG_DUMMY_CAPTCHA           If set (1/true), every captcha is solved by "a"
    IDG_RATE_LIMIT_REGISTER     Registration rate, e.g. 100/s ("off" disables)
    IDG_METRICS_TOKEN           Bearer token required for /metrics
    IDG_LOG_LEVEL               Logging level (default: INFO)
        """
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    args = parser.parse_args()

    config = GatewayConfig.from_env()
    setup_logging(config.log_level)
    if config.dummy_captcha:
        logger.warning("dummy captcha enabled: challenges are not a real admission gate")

    logger.info("Starting Identity Gateway on %s:%d", args.host, args.port)
    uvicorn.run(create_app(IdentityService(config)), host=args.host, port=args.port)
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
