"""RFC 6238 primitives: secrets, provisioning URIs, QR rendering, code checks."""

from __future__ import annotations

import base64
import io
from datetime import datetime
from typing import Optional

import pyotp
import qrcode

# One 30s step either side of the current one
VALID_WINDOW = 1
CODE_DIGITS = 6


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def qr_data_url(uri: str) -> str:
    """Render ``uri`` as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/png;base64,{encoded}"


def normalize_code(code: Optional[str]) -> str:
    return "".join((code or "").split())


def verify(secret: str, code: Optional[str], *, at: Optional[datetime] = None) -> bool:
    cleaned = normalize_code(code)
    if len(cleaned) != CODE_DIGITS or not cleaned.isdigit():
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(cleaned, for_time=at, valid_window=VALID_WINDOW)
