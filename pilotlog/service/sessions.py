from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from pilotlog.logging import get_logger
from pilotlog.storage.errors import StorageError
from pilotlog.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def find_session_by_id(self, session_id: str) -> Optional[Session]: ...

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> bool: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass(frozen=True)
class SessionCookie:
    """A Set-Cookie instruction for the session cookie.

    HttpOnly, SameSite=Lax and Path=/ are fixed; only Secure can be relaxed,
    and only through ``ALLOW_INSECURE_COOKIES``.
    """

    name: str
    value: str
    expires: datetime
    max_age: int
    secure: bool

    @property
    def is_blank(self) -> bool:
        return self.value == ""

    def apply(self, response: Any) -> None:
        """Write the cookie, replacing any Set-Cookie already queued for it."""
        prefix = f"{self.name}=".encode("latin-1")
        response.raw_headers[:] = [
            (key, value)
            for key, value in response.raw_headers
            if not (key == b"set-cookie" and value.startswith(prefix))
        ]
        response.set_cookie(
            self.name,
            self.value,
            httponly=True,
            secure=self.secure,
            samesite="lax",
            expires=self.expires,
            max_age=self.max_age,
            path="/",
        )


@dataclass(frozen=True)
class SessionValidation:
    session: Optional[Session] = None
    user: Optional[User] = None
    # expiry was extended; the cookie must be rewritten
    fresh: bool = False
    # the presented cookie is dead; the cookie must be blanked
    clear_cookie: bool = False

    @property
    def ok(self) -> bool:
        return self.session is not None and self.user is not None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SessionManager:
    """Issue, validate, refresh and invalidate cookie-borne sessions.

    A session is refreshed (sliding expiry) when it is validated with less
    than half of its lifetime left. Invalidated or expired sessions never
    validate again.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_minutes: int = 30 * 24 * 60,
        cookie_name: str = "auth_session",
        secure: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self.cookie_name = cookie_name
        self.secure = secure
        self._clock = clock
        if not secure:
            logger.warning("session_cookie_insecure", cookie_name=cookie_name)

    async def create_session(
        self,
        user_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
            user_agent=user_agent,
            ip_addr=ip_addr,
            now=self._clock(),
        )
        self.store.insert_session(session)
        logger.info("session_created", user_id=user_id)
        return session

    async def validate_session(self, session_id: Optional[str]) -> SessionValidation:
        """Resolve a cookie value into a live session and its user.

        Storage failures on the lookup propagate as :class:`StorageError`.
        Only the sliding-expiry write is best effort.
        """
        if not session_id:
            return SessionValidation()

        session = self.store.find_session_by_id(session_id)
        if session is None:
            return SessionValidation(clear_cookie=True)

        now = self._clock()
        expires_at = _as_utc(session.expires_at)
        if expires_at <= now:
            self._discard(session.id)
            logger.info("session_expired", user_id=session.user_id)
            return SessionValidation(clear_cookie=True)

        user = self.store.get_user(session.user_id)
        if user is None:
            self._discard(session.id)
            logger.warning("session_user_missing", user_id=session.user_id)
            return SessionValidation(clear_cookie=True)

        fresh = False
        if expires_at - now < self.ttl / 2:
            new_expiry = now + self.ttl
            try:
                if self.store.update_session_expiry(session.id, new_expiry):
                    session.expires_at = new_expiry
                    fresh = True
                    logger.info("session_refreshed", user_id=user.id)
            except StorageError as exc:
                logger.warning(
                    "session_refresh_failed", user_id=user.id, error=str(exc)
                )
        return SessionValidation(session=session, user=user, fresh=fresh)

    async def invalidate_session(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.store.delete_session(session_id)

    async def invalidate_user_sessions(self, user_id: str) -> int:
        revoked = self.store.delete_user_sessions(user_id)
        logger.info("user_sessions_invalidated", user_id=user_id, count=revoked)
        return revoked

    def _discard(self, session_id: str) -> None:
        try:
            self.store.delete_session(session_id)
        except StorageError as exc:
            logger.warning("session_discard_failed", error=str(exc))

    # cookies
    def session_cookie(self, session: Session) -> SessionCookie:
        expires_at = _as_utc(session.expires_at)
        max_age = max(0, int((expires_at - self._clock()).total_seconds()))
        return SessionCookie(
            name=self.cookie_name,
            value=session.id,
            expires=expires_at,
            max_age=max_age,
            secure=self.secure,
        )

    def blank_session_cookie(self) -> SessionCookie:
        return SessionCookie(
            name=self.cookie_name,
            value="",
            expires=datetime(1970, 1, 1, tzinfo=timezone.utc),
            max_age=0,
            secure=self.secure,
        )

    def cookie_for(self, validation: SessionValidation) -> Optional[SessionCookie]:
        """The cookie to send back after a validation, if any."""
        if validation.clear_cookie:
            return self.blank_session_cookie()
        if validation.fresh and validation.session is not None:
            return self.session_cookie(validation.session)
        return None
