"""
shared/utils/security.py
JWT creation/verification, password hashing, access codes and one-time codes.
"""

import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from twilio.request_validator import RequestValidator

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ── JWT ───────────────────────────────────────────────────────

REQUIRED_CLAIMS = ("sub", "role", "jti", "exp")


def create_access_token(user_id: int, role: str, username: str) -> tuple[str, str]:
    """Signed access token for an admin user. Returns (token, jti)."""
    issued = datetime.now(timezone.utc)
    jti = uuid.uuid4().hex
    claims = {
        "sub": str(user_id),
        "role": role,
        "username": username,
        "jti": jti,
        "typ": "access",
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Claims of a valid access token; JWTError for anything else."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("typ") != "access" or any(name not in claims for name in REQUIRED_CLAIMS):
        raise JWTError("Not an access token")
    return claims


def get_token_remaining_ttl(claims: dict) -> int:
    """Seconds left before `exp`; sizes the deny-list entry on logout."""
    return max(0, int(claims.get("exp", 0) - datetime.now(timezone.utc).timestamp()))


# ── Passwords ─────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Malformed stored hash
        return False


def generate_temporary_password(length: int = 16) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


# ── Access codes & one-time codes ─────────────────────────────

def generate_access_code() -> str:
    """
    Opaque URL-safe bearer token embedded in shareable congregation links.
    16 characters, comfortably above the public lookup minimum of 10.
    """
    return secrets.token_urlsafe(12)


def generate_numeric_code(digits: int) -> str:
    """Zero-padded random numeric code, e.g. 4 digits for email verification."""
    return str(secrets.randbelow(10 ** digits)).zfill(digits)


# ── Twilio Webhook Signature ──────────────────────────────────

def verify_twilio_signature(url: str, params: dict, signature: str) -> bool:
    """
    Validate X-Twilio-Signature on inbound SMS webhooks.
    Skipped (always valid) when Twilio is not configured.
    """
    if not settings.TWILIO_AUTH_TOKEN:
        return True
    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
    return validator.validate(url, params, signature or "")
