"""Shared builders for principals and devices used across the test suite."""

from __future__ import annotations

import base64
import io

from PIL import Image

from identity_gateway.anchors import Device
from identity_gateway.captcha import CAPTCHA_ALPHABET, CAPTCHA_SCALE, CELL_WIDTH, render_captcha
from identity_gateway.crypto import SessionKeyPair
from identity_gateway.principal import Principal


def make_principal(n: int) -> Principal:
    return Principal.self_authenticating(f"test-principal-{n}".encode("utf-8"))


def make_device(n: int) -> Device:
    return Device(
        pubkey=SessionKeyPair.from_seed(bytes([n + 1]) * 32).der_public_key,
        alias=f"Device {n}",
        credential_id=bytes([n]) * 16,
        key_type="cross_platform",
    )


def _ink(image: Image.Image) -> set:
    return {i for i, v in enumerate(image.tobytes()) if v < 128}


def read_captcha(png_base64: str) -> str:
    """Read a rendered challenge back by matching each cell against clean glyphs."""
    image = Image.open(io.BytesIO(base64.b64decode(png_base64))).convert("L")
    cell = CELL_WIDTH * CAPTCHA_SCALE
    length = image.width // cell
    glyphs = {
        c: Image.open(io.BytesIO(render_captcha(c * length, noise=False))).convert("L")
        for c in CAPTCHA_ALPHABET
    }
    chars = []
    for i in range(length):
        box = (i * cell, 0, (i + 1) * cell, image.height)
        seen = _ink(image.crop(box))
        chars.append(min(CAPTCHA_ALPHABET, key=lambda c: len(seen ^ _ink(glyphs[c].crop(box)))))
    return "".join(chars)
