from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISABLED = "disabled"


class TokenPurpose(str, Enum):
    """What a one-time token authorizes when it is redeemed."""

    APPROVAL = "approval"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.PENDING
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            # 160 bits, hex encoded; opaque to the client
            id=secrets.token_hex(20),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )


@dataclass
class AuthToken:
    """A stored one-time token. Only the digest of the secret is kept."""

    id: str
    user_id: str
    purpose: TokenPurpose
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        purpose: TokenPurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> "AuthToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=TokenPurpose(purpose),
            token_hash=token_hash,
            expires_at=expires_at,
        )


@dataclass
class AuditEvent:
    id: str
    action: str
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
