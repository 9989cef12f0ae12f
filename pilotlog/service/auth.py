from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from pilotlog.config import Settings
from pilotlog.logging import get_logger
from pilotlog.service.errors import (
    AccountStateError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from pilotlog.service.notifications import TokenNotifier
from pilotlog.service.passwords import (
    MIN_PASSWORD_LENGTH,
    PASSWORD_ALGO,
    hash_password,
    needs_rehash,
    verify_password,
)
from pilotlog.service.rate_limit import (
    MemoryRateLimitBackend,
    RateLimitBackend,
    RateLimitDecision,
    RateLimiter,
)
from pilotlog.service.sessions import SessionManager, SessionStore
from pilotlog.service.tokens import hash_token, is_token_expired, issue_token, verify_token
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

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "If the email exists, a reset link will be sent."
VERIFICATION_REQUESTED_MESSAGE = "If the email exists, a verification link will be sent."
INVALID_TOKEN_MESSAGE = "Token invalid or expired."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials."


class AuthStore(SessionStore, Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.PENDING,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, status: Optional[UserStatus] = None, limit: int = 100) -> List[User]: ...

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_token(self, token: AuthToken) -> AuthToken: ...

    def find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[AuthToken]: ...

    def mark_token_used(self, token_id: str) -> bool: ...

    def delete_user_tokens(self, user_id: str, purpose: TokenPurpose) -> int: ...

    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEvent: ...


@dataclass(frozen=True)
class RequestContext:
    """Client details carried into rate-limit keys and audit records."""

    ip_addr: str = "unknown"
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class Registration:
    user: User
    verification_token: str
    approval_token: str


@dataclass(frozen=True)
class LoginResult:
    user: User
    session: Session


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Account flows built on the session manager, rate limiters and token hasher."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        sessions: Optional[SessionManager] = None,
        rate_limit_backend: Optional[RateLimitBackend] = None,
        notifier: Optional[TokenNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.sessions = sessions or SessionManager(
            store,
            ttl_minutes=settings.session_ttl_minutes,
            cookie_name=settings.session_cookie_name,
            secure=settings.cookie_secure,
            clock=clock,
        )
        backend = rate_limit_backend or MemoryRateLimitBackend()
        window = settings.rate_limit_window_seconds
        self.login_limiter = RateLimiter(
            backend,
            name="login",
            label="login attempts",
            limit=settings.login_rate_limit,
            window_seconds=window,
            clock=clock,
        )
        self.password_reset_limiter = RateLimiter(
            backend,
            name="password-reset",
            label="reset requests",
            limit=settings.password_reset_rate_limit,
            window_seconds=window,
            clock=clock,
        )
        self.registration_limiter = RateLimiter(
            backend,
            name="register",
            label="registration attempts",
            limit=settings.registration_rate_limit,
            window_seconds=window,
            clock=clock,
        )
        self.resend_verification_limiter = RateLimiter(
            backend,
            name="resend-verification",
            label="verification emails",
            limit=settings.resend_verification_rate_limit,
            window_seconds=window,
            clock=clock,
        )
        self.notifier = notifier or TokenNotifier(
            settings.app_base_url, capture=settings.test_mode
        )
        self._dummy_hash: Optional[str] = None

    # helpers
    def _raise_rate_limited(self, limiter: RateLimiter, decision: RateLimitDecision) -> None:
        now = self._clock()
        raise RateLimitedError(
            limiter.retry_message(decision, now),
            retry_after=decision.retry_after_seconds(now),
        )

    @staticmethod
    def _pair_keys(ctx: RequestContext, email: str) -> list[str]:
        return [f"ip:{ctx.ip_addr}", f"email:{email}"]

    @staticmethod
    def _check_password_length(password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )

    def _audit(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Record an audit event; failures are logged and never fail the flow."""
        payload = dict(metadata or {})
        if ctx is not None:
            payload.setdefault("ip_address", ctx.ip_addr)
            if ctx.user_agent:
                payload.setdefault("user_agent", ctx.user_agent)
        try:
            self.store.record_audit_event(
                action,
                user_id=user_id,
                entity_type="User" if user_id else None,
                entity_id=user_id,
                metadata=payload or None,
            )
        except Exception as exc:
            logger.warning("audit_event_failed", action=action, error=str(exc))

    def _issue(self, user: User, purpose: TokenPurpose, ttl: timedelta) -> str:
        issued = issue_token(ttl, now=self._clock())
        self.store.create_token(
            AuthToken.new(user.id, purpose, issued.token_hash, issued.expires_at)
        )
        return issued.token

    def _redeem(self, token: str, purpose: TokenPurpose) -> AuthToken:
        """Look up and consume a one-time token; every failure looks the same."""
        if not token or not token.strip():
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        token = token.strip()
        record = self.store.find_token(purpose, hash_token(token))
        if (
            record is None
            or not verify_token(token, record.token_hash)
            or record.used_at is not None
            or is_token_expired(record.expires_at, self._clock())
        ):
            logger.info("token_rejected", purpose=purpose.value)
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        if not self.store.mark_token_used(record.id):
            # lost a race with a concurrent redemption
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        return record

    def _verify_user_password(self, user: Optional[User], password: str) -> bool:
        record = self.store.get_password_record(user.id) if user else None
        if not record:
            # Burn comparable work so unknown accounts are not distinguishable by timing
            if self._dummy_hash is None:
                self._dummy_hash, _ = hash_password("pilotlog-dummy-password")
            verify_password(self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        return verify_password(stored_hash, password)

    def _set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # registration and approval
    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        ctx: RequestContext = RequestContext(),
    ) -> Registration:
        email = normalize_email(email)
        decision = await self.registration_limiter.consume_many(self._pair_keys(ctx, email))
        if not decision.allowed:
            self._raise_rate_limited(self.registration_limiter, decision)
        self._check_password_length(password)

        try:
            user = self.store.create_user(email, name=name, phone=phone)
        except ConstraintViolation:
            raise ConflictError("Account already exists.")
        self._set_password(user.id, password)

        verification_token = self._issue(
            user,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        approval_token = self._issue(
            user,
            TokenPurpose.APPROVAL,
            timedelta(days=self.settings.approval_token_ttl_days),
        )
        self.notifier.send(TokenPurpose.EMAIL_VERIFICATION, user.email, verification_token)
        if self.settings.approver_email:
            self.notifier.send(
                TokenPurpose.APPROVAL, self.settings.approver_email, approval_token
            )
        else:
            logger.warning("approver_email_unset", user_id=user.id)
        self._audit("AUTH_REGISTERED", user_id=user.id, ctx=ctx)
        logger.info("user_registered", user_id=user.id)
        return Registration(
            user=user,
            verification_token=verification_token,
            approval_token=approval_token,
        )

    async def approve_account(self, token: str) -> User:
        record = self._redeem(token, TokenPurpose.APPROVAL)
        user = self.store.get_user(record.user_id)
        if user is None:
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        if user.status == UserStatus.DISABLED:
            raise ForbiddenError("Account disabled.")
        if user.status == UserStatus.PENDING:
            user = self.store.update_user_status(user.id, UserStatus.ACTIVE) or user
        self._audit("ADMIN_APPROVE_TOKEN", user_id=user.id)
        logger.info("account_approved", user_id=user.id)
        return user

    # login / logout
    async def login(
        self,
        email: str,
        password: str,
        *,
        ctx: RequestContext = RequestContext(),
    ) -> LoginResult:
        """Check credentials and open a session.

        The attempt is counted before credentials are looked at, so once the
        window is exhausted even a correct password is refused.
        """
        email = normalize_email(email)
        key = f"{ctx.ip_addr}:{email}"
        decision = await self.login_limiter.consume_attempt(key)
        if not decision.allowed:
            logger.warning("login_rate_limited", ip_addr=ctx.ip_addr)
            self._raise_rate_limited(self.login_limiter, decision)

        user = self.store.get_user_by_email(email)
        if not self._verify_user_password(user, password):
            logger.info("login_failed", ip_addr=ctx.ip_addr)
            self._audit(
                "AUTH_LOGIN_FAILED",
                user_id=user.id if user else None,
                ctx=ctx,
            )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if user.status == UserStatus.PENDING:
            raise AccountStateError("Account pending approval.", account_status="pending")
        if user.status == UserStatus.DISABLED:
            raise AccountStateError("Account disabled.", account_status="disabled")

        await self.login_limiter.reset(key)
        record = self.store.get_password_record(user.id)
        if record and needs_rehash(record[0]):
            self._set_password(user.id, password)

        session = await self.sessions.create_session(
            user.id, ip_addr=ctx.ip_addr, user_agent=ctx.user_agent
        )
        self._audit("AUTH_LOGIN", user_id=user.id, ctx=ctx)
        return LoginResult(user=user, session=session)

    async def logout(
        self,
        session_id: Optional[str],
        *,
        user_id: Optional[str] = None,
        ctx: RequestContext = RequestContext(),
    ) -> None:
        await self.sessions.invalidate_session(session_id)
        self._audit("AUTH_LOGOUT", user_id=user_id, ctx=ctx)

    # password reset
    async def request_password_reset(
        self, email: str, *, ctx: RequestContext = RequestContext()
    ) -> str:
        """Issue a reset link when the account exists and is active.

        The reply is identical whether or not a link was issued.
        """
        email = normalize_email(email)
        decision = await self.password_reset_limiter.consume_many(
            self._pair_keys(ctx, email)
        )
        if not decision.allowed:
            self._raise_rate_limited(self.password_reset_limiter, decision)

        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            return RESET_REQUESTED_MESSAGE

        self.store.delete_user_tokens(user.id, TokenPurpose.PASSWORD_RESET)
        token = self._issue(
            user,
            TokenPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.notifier.send(TokenPurpose.PASSWORD_RESET, user.email, token)
        self._audit("AUTH_PASSWORD_RESET_REQUESTED", user_id=user.id, ctx=ctx)
        return RESET_REQUESTED_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> User:
        self._check_password_length(new_password)
        record = self._redeem(token, TokenPurpose.PASSWORD_RESET)
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        self._set_password(user.id, new_password)
        await self.sessions.invalidate_user_sessions(user.id)
        self._audit("AUTH_PASSWORD_RESET", user_id=user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return user

    # email verification
    async def verify_email(self, token: str) -> User:
        record = self._redeem(token, TokenPurpose.EMAIL_VERIFICATION)
        user = self.store.mark_email_verified(record.user_id)
        if user is None:
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        self._audit("AUTH_EMAIL_VERIFIED", user_id=user.id)
        return user

    async def resend_verification(
        self, email: str, *, ctx: RequestContext = RequestContext()
    ) -> str:
        """Send a fresh verification link to a pending, unverified account.

        Rate-limited and unknown addresses get the same reply as success.
        """
        email = normalize_email(email)
        if not email:
            return VERIFICATION_REQUESTED_MESSAGE
        decision = await self.resend_verification_limiter.consume_many(
            self._pair_keys(ctx, email)
        )
        if not decision.allowed:
            return VERIFICATION_REQUESTED_MESSAGE

        user = self.store.get_user_by_email(email)
        if user is None or user.status != UserStatus.PENDING or user.email_verified:
            return VERIFICATION_REQUESTED_MESSAGE

        token = self._issue(
            user,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        self.notifier.send(TokenPurpose.EMAIL_VERIFICATION, user.email, token)
        self._audit(
            "AUTH_EMAIL_VERIFICATION_SENT",
            user_id=user.id,
            ctx=ctx,
            metadata={"resend": True},
        )
        return VERIFICATION_REQUESTED_MESSAGE

    # profile
    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        *,
        ctx: RequestContext = RequestContext(),
    ) -> None:
        """Replace the password and sign the user out everywhere."""
        if not user.is_active:
            raise AuthenticationError("Sign in required.")
        if not self._verify_user_password(user, current_password):
            raise ValidationError("Current password is incorrect.")
        self._check_password_length(new_password)
        self._set_password(user.id, new_password)
        await self.sessions.invalidate_user_sessions(user.id)
        self._audit("AUTH_PASSWORD_CHANGED", user_id=user.id, ctx=ctx)

    # admin
    async def set_user_status(
        self, user_id: str, status: UserStatus, *, actor_id: Optional[str] = None
    ) -> User:
        user = self.store.update_user_status(user_id, UserStatus(status))
        if user is None:
            raise NotFoundError("User not found.")
        if user.status != UserStatus.ACTIVE:
            await self.sessions.invalidate_user_sessions(user.id)
        self._audit(
            "ADMIN_USER_STATUS",
            user_id=user.id,
            metadata={"status": user.status.value, "actor_id": actor_id},
        )
        return user

    async def list_pending_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(status=UserStatus.PENDING, limit=limit)
