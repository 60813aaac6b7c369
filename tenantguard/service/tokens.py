from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import InvalidTokenError, TokenExpiredError
from tenantguard.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
MFA = "mfa"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def token_digest(token: str) -> str:
    """SHA-256 hex digest used to key blacklist entries."""
    return hashlib.sha256(token.encode()).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues and verifies HS256 JWTs.

    Access and MFA step tokens are signed with ``jwt_secret``; refresh tokens
    with ``jwt_refresh_secret``. The two secrets differ, so a token of one kind
    never verifies as the other.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.settings = settings
        self._clock = clock

    @property
    def access_secret(self) -> str:
        return self.settings.jwt_secret

    @property
    def refresh_secret(self) -> str:
        return self.settings.jwt_refresh_secret

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _claims(self, user: User, typ: str, now: datetime, expires_at: datetime) -> dict:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "typ": typ,
        }

    def issue_token_pair(self, user: User, *, session_id: str) -> TokenPair:
        now = self._clock()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(days=self.settings.refresh_token_ttl_days)
        access_payload = {
            **self._claims(user, ACCESS, now, access_exp),
            "role": user.role.value,
            "tenant_id": user.tenant_id,
            "tgen": user.token_generation,
            "sid": session_id,
        }
        refresh_payload = {
            **self._claims(user, REFRESH, now, refresh_exp),
            "tgen": user.token_generation,
            "sid": session_id,
        }
        return TokenPair(
            access_token=self._encode(access_payload, self.access_secret),
            refresh_token=self._encode(refresh_payload, self.refresh_secret),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue_mfa_token(self, user: User) -> str:
        now = self._clock()
        expires_at = now + timedelta(minutes=self.settings.mfa_token_ttl_minutes)
        payload = {**self._claims(user, MFA, now, expires_at), "mfa_step": True}
        return self._encode(payload, self.access_secret)

    def verify(
        self, token: str, secret: str, *, verify_exp: bool = True
    ) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Invalid token")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid token")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("Invalid token")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token")
        if verify_exp and exp_ts <= self._clock().timestamp():
            raise TokenExpiredError("Token has expired")
        return payload

    def verify_access(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        return self.verify(token, self.access_secret, verify_exp=verify_exp)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        claims = self.verify(token, self.refresh_secret)
        if claims.get("typ") != REFRESH:
            raise InvalidTokenError("Invalid token")
        return claims

    def verify_mfa(self, token: str) -> dict[str, Any]:
        claims = self.verify(token, self.access_secret)
        if claims.get("mfa_step") is not True:
            raise InvalidTokenError("Invalid session")
        return claims

    @staticmethod
    def expires_at(claims: dict[str, Any]) -> Optional[datetime]:
        exp = claims.get("exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)


__all__ = ["TokenPair", "TokenService", "token_digest", "ACCESS", "REFRESH", "MFA"]
