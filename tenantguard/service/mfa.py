"""TOTP (RFC 6238) and recovery-code helpers."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import List, Optional
from urllib.parse import quote, urlencode

from tenantguard.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
RECOVERY_CODE_COUNT = 10


def generate_secret() -> str:
    """Return a base32 secret backed by 20 random bytes (160 bits)."""
    return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")


def otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer})
    return f"otpauth://totp/{label}?{query}"


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
    now: Optional[float] = None,
) -> bool:
    code = (code or "").strip()
    if not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, current + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def normalize_recovery_code(code: str) -> str:
    return (code or "").strip().upper()
