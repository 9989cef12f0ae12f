from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from pilotlog.logging import get_logger
from pilotlog.storage.errors import ConstraintViolation
from pilotlog.storage.models import (
    AuditEvent,
    AuthToken,
    Session,
    TokenPurpose,
    User,
    UserRole,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Records are copied on the way in and out so callers never hold a live
    reference to stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[str, AuthToken] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.PENDING,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                phone=phone,
                role=UserRole(role),
                status=UserStatus(status),
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(
        self, status: Optional[UserStatus] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if status is None or u.status == UserStatus(status)
            ]
        return sorted(results, key=lambda u: u.created_at)[:limit]

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            return replace(user)

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = utcnow()
            return replace(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.expires_at = expires_at
            return True

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    # one-time tokens
    def create_token(self, token: AuthToken) -> AuthToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if any(t.token_hash == token.token_hash for t in self.tokens.values()):
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self.tokens[token.id] = replace(token)
            return replace(token)

    def find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[AuthToken]:
        with self._data_lock:
            purpose = TokenPurpose(purpose)
            token = next(
                (
                    t
                    for t in self.tokens.values()
                    if t.purpose == purpose and t.token_hash == token_hash
                ),
                None,
            )
            return replace(token) if token else None

    def mark_token_used(self, token_id: str) -> bool:
        """Flag a token as consumed; ``False`` when it was already used or is gone."""
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.used_at is not None:
                return False
            token.used_at = utcnow()
            return True

    def delete_user_tokens(self, user_id: str, purpose: TokenPurpose) -> int:
        with self._data_lock:
            purpose = TokenPurpose(purpose)
            stale = [
                tid
                for tid, t in self.tokens.items()
                if t.user_id == user_id and t.purpose == purpose
            ]
            for tid in stale:
                self.tokens.pop(tid, None)
            return len(stale)

    # audit
    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=dict(metadata) if metadata else None,
        )
        with self._data_lock:
            self.audit_events.append(event)
        return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """Newest first; ``user_id`` and ``action`` narrow the result when given."""
        with self._data_lock:
            results = [
                e
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
        # ties keep insertion order reversed so the latest write comes first
        results = sorted(reversed(results), key=lambda e: e.created_at, reverse=True)
        return [replace(e) for e in results[offset : offset + limit]]
