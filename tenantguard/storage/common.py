"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from tenantguard.storage.errors import StorageError

# Fields an update_user call may touch; everything else has a dedicated method
USER_PROFILE_FIELDS = frozenset(
    {"name", "email", "phone_number", "role", "tenant_id", "is_active"}
)


def check_profile_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - USER_PROFILE_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str]) -> Fernet:
    """Fernet cipher for TOTP secrets at rest, keyed from MFA_ENCRYPTION_KEY or JWT_SECRET."""
    material = key_material or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
    if not material:
        raise RuntimeError(
            "MFA encryption key material missing; set MFA_ENCRYPTION_KEY or JWT_SECRET"
        )
    return Fernet(_derive_cipher_key(material))


def encrypt_mfa_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if secret is None:
        return None
    return cipher.encrypt(secret.encode()).decode()


def decrypt_mfa_secret(cipher: Fernet, token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    try:
        return cipher.decrypt(token.encode()).decode()
    except InvalidToken as exc:
        raise StorageError(
            "unable to decrypt MFA secret; encryption key changed?",
            operation="decrypt_mfa_secret",
        ) from exc
