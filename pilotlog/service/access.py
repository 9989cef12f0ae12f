from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pilotlog.logging import get_logger
from pilotlog.service.errors import AuthenticationError, ForbiddenError, ServerError
from pilotlog.service.sessions import SessionManager, SessionValidation
from pilotlog.storage.errors import StorageError
from pilotlog.storage.models import Session, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    user: User
    session: Session
    fresh: bool = False

    @property
    def user_id(self) -> str:
        return self.user.id


class AccessGuard:
    """Resolves the cookie-borne session and enforces who may proceed.

    A user whose status is not ``active`` is treated exactly like a request
    with no session, and the session is dropped.
    """

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def resolve(self, session_id: Optional[str]) -> SessionValidation:
        try:
            return await self.sessions.validate_session(session_id)
        except StorageError as exc:
            logger.error("session_lookup_failed", error=str(exc))
            raise ServerError("Unable to verify session.") from exc

    async def require_user(self, session_id: Optional[str]) -> AuthenticatedUser:
        validation = await self.resolve(session_id)
        return await self.authorize(validation)

    async def authorize(self, validation: SessionValidation) -> AuthenticatedUser:
        if not validation.ok:
            raise AuthenticationError(
                "Sign in required.", clear_cookie=validation.clear_cookie
            )
        user, session = validation.user, validation.session
        if not user.is_active:
            logger.warning("inactive_user_session", user_id=user.id, status=user.status.value)
            try:
                await self.sessions.invalidate_session(session.id)
            except StorageError as exc:
                logger.error("session_invalidate_failed", user_id=user.id, error=str(exc))
                raise ServerError("Unable to verify session.") from exc
            raise AuthenticationError("Sign in required.", clear_cookie=True)
        return AuthenticatedUser(user=user, session=session, fresh=validation.fresh)

    async def require_admin(self, session_id: Optional[str]) -> AuthenticatedUser:
        principal = await self.require_user(session_id)
        self.ensure_admin(principal)
        return principal

    @staticmethod
    def ensure_admin(principal: AuthenticatedUser) -> None:
        if not principal.user.is_admin:
            logger.warning("admin_required", user_id=principal.user_id)
            raise ForbiddenError("Administrator access required.")
