"""HOTP/TOTP primitives shared by OTP challenges and 2FA enrollment.

Codes follow RFC 4226 dynamic truncation over an HMAC of the 8-byte
big-endian counter; TOTP derives the counter as ``floor(timestamp / step)``
(RFC 6238). Secrets are unpadded base32 so authenticator apps accept them.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

import qrcode

from gatekeep.config import OtpAlgorithm

if TYPE_CHECKING:
    from gatekeep.config import Settings

MIN_SECRET_BYTES = 20

_DIGESTS = {
    OtpAlgorithm.SHA1: hashlib.sha1,
    OtpAlgorithm.SHA256: hashlib.sha256,
    OtpAlgorithm.SHA512: hashlib.sha512,
}


@dataclass(frozen=True)
class TotpParameters:
    step: int = 30
    digits: int = 6
    window: int = 1
    algorithm: OtpAlgorithm = OtpAlgorithm.SHA1

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TotpParameters":
        return cls(
            step=settings.otp_step_seconds,
            digits=settings.otp_digits,
            window=settings.otp_window,
            algorithm=settings.otp_algorithm,
        )


def generate_secret(num_bytes: int = MIN_SECRET_BYTES) -> str:
    """Return a fresh base32 secret drawn from the OS CSPRNG."""
    if num_bytes < MIN_SECRET_BYTES:
        raise ValueError(f"OTP secrets need at least {MIN_SECRET_BYTES} bytes")
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("OTP secret is not valid base32") from exc


def hotp(
    secret: str,
    counter: int,
    *,
    digits: int = 6,
    algorithm: OtpAlgorithm = OtpAlgorithm.SHA1,
) -> str:
    key = _decode_secret(secret)
    digest = hmac.new(
        key, counter.to_bytes(8, "big"), _DIGESTS[OtpAlgorithm(algorithm)]
    ).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def totp(
    secret: str,
    timestamp: float,
    *,
    step: int = 30,
    digits: int = 6,
    algorithm: OtpAlgorithm = OtpAlgorithm.SHA1,
) -> str:
    return hotp(secret, int(timestamp // step), digits=digits, algorithm=algorithm)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    step: int = 30,
    digits: int = 6,
    window: int = 1,
    algorithm: OtpAlgorithm = OtpAlgorithm.SHA1,
) -> bool:
    """Check ``code`` against the current step and ``window`` steps either side."""
    if not isinstance(code, str) or len(code) != digits or not code.isdigit():
        return False
    try:
        if not _decode_secret(secret):
            return False
    except ValueError:
        return False
    counter = int(timestamp // step)
    matched = False
    for offset in range(-window, window + 1):
        if counter + offset < 0:
            continue
        expected = hotp(secret, counter + offset, digits=digits, algorithm=algorithm)
        # Evaluate every candidate so timing does not reveal which step matched
        if hmac.compare_digest(expected, code):
            matched = True
    return matched


def provisioning_uri(
    secret: str,
    account: str,
    issuer: str,
    *,
    digits: int = 6,
    step: int = 30,
    algorithm: OtpAlgorithm = OtpAlgorithm.SHA1,
) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    params = {"secret": secret, "issuer": issuer}
    algorithm = OtpAlgorithm(algorithm)
    if algorithm != OtpAlgorithm.SHA1:
        params["algorithm"] = algorithm.value.upper()
    if digits != 6:
        params["digits"] = str(digits)
    if step != 30:
        params["period"] = str(step)
    return f"otpauth://totp/{label}?{urlencode(params, quote_via=quote)}"


def render_qr_data_url(uri: str) -> str:
    """Render ``uri`` as a PNG QR code wrapped in a data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
