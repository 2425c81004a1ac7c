"""
Security Utilities
Token encryption at rest, signed OAuth state and session JWT verification
"""

import base64
import hashlib
import logging
import secrets
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import JWTError
from jose import jwt as jose_jwt

from . import config

logger = logging.getLogger(__name__)

OAUTH_STATE_SALT = "calendar-oauth-state"


class TokenDecryptionError(Exception):
    """Raised when a stored provider token cannot be decrypted"""

    pass


# ============================================================================
# TOKEN ENCRYPTION
# ============================================================================


def _get_cipher_suite() -> Fernet:
    key = config.TOKEN_ENCRYPTION_KEY
    if key:
        return Fernet(key.encode() if isinstance(key, str) else key)
    # Derive a valid 32-byte urlsafe key from SECRET_KEY
    derived = base64.urlsafe_b64encode(hashlib.sha256(config.SECRET_KEY.encode()).digest())
    return Fernet(derived)


def encrypt_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return _get_cipher_suite().encrypt(value.encode()).decode()


def decrypt_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return _get_cipher_suite().decrypt(value.encode()).decode()
    except InvalidToken as e:
        logger.error("❌ Failed to decrypt stored token - encryption key changed?")
        raise TokenDecryptionError("Stored token could not be decrypted") from e


# ============================================================================
# OAUTH STATE
# ============================================================================


def generate_secure_token(length: int = 32) -> str:
    """Generate a cryptographically secure random token"""
    return secrets.token_urlsafe(length)


def create_oauth_state(user_id: str) -> str:
    """
    Create a signed, timestamped OAuth state parameter bound to a user.
    The signing timestamp is embedded by itsdangerous and checked on verify.
    """
    if not config.OAUTH_STATE_SECRET:
        raise RuntimeError("OAuth state secret is not configured")

    serializer = URLSafeTimedSerializer(config.OAUTH_STATE_SECRET)
    return serializer.dumps({"userId": user_id, "nonce": secrets.token_hex(16)}, salt=OAUTH_STATE_SALT)


def verify_oauth_state(state: str, max_age: Optional[int] = None) -> Optional[dict[str, Any]]:
    """
    Verify and decode a signed OAuth state parameter

    Returns:
        Decoded payload if valid, None if tampered, expired or malformed
    """
    if not config.OAUTH_STATE_SECRET:
        logger.error("❌ OAuth state secret is not configured")
        return None

    if max_age is None:
        max_age = config.OAUTH_STATE_MAX_AGE_SECONDS

    serializer = URLSafeTimedSerializer(config.OAUTH_STATE_SECRET)
    try:
        payload = serializer.loads(state, salt=OAUTH_STATE_SALT, max_age=max_age)
    except SignatureExpired:
        logger.warning("OAuth state expired")
        return None
    except BadSignature:
        logger.warning("Invalid OAuth state signature")
        return None

    if not isinstance(payload, dict) or not isinstance(payload.get("userId"), str) or not payload["userId"]:
        logger.warning("Invalid OAuth state: missing userId")
        return None

    return payload


# ============================================================================
# SESSION JWT
# ============================================================================


def verify_session_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a session JWT issued by the auth service

    Returns:
        Decoded claims if valid, None if invalid or expired
    """
    if not config.SUPABASE_JWT_SECRET:
        logger.error("❌ SUPABASE_JWT_SECRET not configured")
        return None

    try:
        return jose_jwt.decode(
            token,
            config.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=config.SUPABASE_JWT_AUDIENCE,
        )
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None
