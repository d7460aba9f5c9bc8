"""
One-time codes and tokens for signup verification, login MFA and password
resets.

Codes are six digits and are stored hashed with the password context.
Reset links carry a long random token; only its sha256 is stored, so it can
be looked up directly.
"""

import hashlib
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from models import utcnow

SIGNUP_CODE_TTL = timedelta(minutes=15)
MFA_CODE_TTL = timedelta(minutes=10)
RESET_TOKEN_TTL = timedelta(minutes=15)
MAX_ATTEMPTS = 5

_CODE_RE = re.compile(r"\d{6}")


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def generate_token() -> str:
    return secrets.token_hex(32)


def is_code(value: str) -> bool:
    return bool(_CODE_RE.fullmatch(value or ""))


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def expires_after(ttl: timedelta) -> datetime:
    return utcnow() + ttl


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    # SQLite hands datetimes back without a zone; they were written as UTC.
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return (now or utcnow()) > expires_at


def mask_email(email: str) -> str:
    """'olive@example.com' -> 'ol***@example.com'"""
    name, _, domain = (email or "").partition("@")
    if not domain:
        return ""
    return f"{name[:2]}***@{domain}"
