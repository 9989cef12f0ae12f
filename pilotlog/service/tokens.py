"""One-time bearer tokens (account approval, password reset, email verification).

Tokens are 32 random bytes, hex encoded. Only their SHA-256 digest is stored;
a fast digest is enough because the secret is already high entropy. Passwords
use :mod:`pilotlog.service.passwords` instead.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from pilotlog.storage.models import utcnow

TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_hash: str
    expires_at: datetime


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    return secrets.token_hex(nbytes)


def hash_token(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def verify_token(candidate: str, digest: str) -> bool:
    """Check ``candidate`` against a stored digest in constant time.

    Malformed or empty input simply fails.
    """
    if not candidate or not digest or not isinstance(digest, str):
        return False
    try:
        expected = hash_token(candidate)
    except (AttributeError, UnicodeEncodeError):
        return False
    return hmac.compare_digest(expected, digest.lower())


def token_expiry(
    *,
    days: int = 0,
    hours: int = 0,
    minutes: int = 0,
    now: Optional[datetime] = None,
) -> datetime:
    return (now or utcnow()) + timedelta(days=days, hours=hours, minutes=minutes)


def is_token_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    return expires_at <= (now or utcnow())


def issue_token(ttl: timedelta, *, now: Optional[datetime] = None) -> IssuedToken:
    token = generate_token()
    return IssuedToken(
        token=token,
        token_hash=hash_token(token),
        expires_at=(now or utcnow()) + ttl,
    )
