"""Tests for account flows: registration, approval, login, reset, verification."""

from datetime import timedelta

import pytest

from pilotlog.service.auth import (
    INVALID_CREDENTIALS_MESSAGE,
    INVALID_TOKEN_MESSAGE,
    RESET_REQUESTED_MESSAGE,
    VERIFICATION_REQUESTED_MESSAGE,
    RequestContext,
)
from pilotlog.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from pilotlog.storage.models import TokenPurpose, UserStatus

PASSWORD = "clear-skies-2024"
CTX = RequestContext(ip_addr="203.0.113.7", user_agent="pytest")


async def _register_active(auth_service, email="pilot@example.com", password=PASSWORD):
    registration = await auth_service.register(email, password, ctx=CTX)
    await auth_service.approve_account(registration.approval_token)
    return registration


def _actions(memory_store):
    return [event.action for event in memory_store.audit_events]


class TestRegistration:
    async def test_register_creates_pending_user(self, auth_service, memory_store):
        registration = await auth_service.register(
            " Pilot@Example.com ", PASSWORD, name="Amelia", ctx=CTX
        )
        user = registration.user
        assert user.email == "pilot@example.com"
        assert user.status == UserStatus.PENDING
        assert memory_store.get_password_record(user.id)[1] == "argon2id"
        assert "AUTH_REGISTERED" in _actions(memory_store)

    async def test_register_sends_links(self, auth_service):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        notifier = auth_service.notifier
        [verify] = notifier.sent_to("pilot@example.com", TokenPurpose.EMAIL_VERIFICATION)
        [approve] = notifier.sent_to("approver@example.com", TokenPurpose.APPROVAL)
        assert verify.token == registration.verification_token
        assert approve.url.startswith("https://logbook.example.com/v1/auth/approve?token=")

    async def test_tokens_are_stored_hashed(self, auth_service, memory_store):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        stored = {t.token_hash for t in memory_store.tokens.values()}
        assert registration.approval_token not in stored
        assert registration.verification_token not in stored

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        with pytest.raises(ConflictError):
            await auth_service.register(
                "PILOT@example.com", PASSWORD, ctx=RequestContext(ip_addr="198.51.100.1")
            )

    async def test_short_password_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("pilot@example.com", "short", ctx=CTX)

    async def test_registration_is_rate_limited_per_ip(self, auth_service):
        for i in range(3):
            await auth_service.register(f"pilot{i}@example.com", PASSWORD, ctx=CTX)
        with pytest.raises(RateLimitedError) as exc_info:
            await auth_service.register("pilot9@example.com", PASSWORD, ctx=CTX)
        assert exc_info.value.message == (
            "Too many registration attempts. Try again in 15 minutes."
        )
        assert exc_info.value.retry_after == 900


class TestApproval:
    async def test_approval_activates_account(self, auth_service, memory_store):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        user = await auth_service.approve_account(registration.approval_token)
        assert user.status == UserStatus.ACTIVE
        assert "ADMIN_APPROVE_TOKEN" in _actions(memory_store)

    async def test_approval_token_is_single_use(self, auth_service):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        await auth_service.approve_account(registration.approval_token)
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.approve_account(registration.approval_token)
        assert exc_info.value.message == INVALID_TOKEN_MESSAGE

    async def test_approval_token_expires_after_seven_days(self, auth_service, clock):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        clock.advance(days=7)
        with pytest.raises(ValidationError):
            await auth_service.approve_account(registration.approval_token)

    async def test_token_purposes_do_not_cross(self, auth_service):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        with pytest.raises(ValidationError):
            await auth_service.approve_account(registration.verification_token)

    async def test_disabled_account_cannot_be_approved(self, auth_service, memory_store):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        memory_store.update_user_status(registration.user.id, UserStatus.DISABLED)
        with pytest.raises(ForbiddenError):
            await auth_service.approve_account(registration.approval_token)


class TestLogin:
    async def test_login_opens_session(self, auth_service, memory_store):
        registration = await _register_active(auth_service)
        result = await auth_service.login("Pilot@Example.com", PASSWORD, ctx=CTX)
        assert result.user.id == registration.user.id
        assert memory_store.find_session_by_id(result.session.id) is not None
        assert result.session.ip_addr == CTX.ip_addr
        assert "AUTH_LOGIN" in _actions(memory_store)

    async def test_wrong_password_is_generic(self, auth_service, memory_store):
        await _register_active(auth_service)
        with pytest.raises(AuthenticationError) as wrong_pw:
            await auth_service.login("pilot@example.com", "not-the-password", ctx=CTX)
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD, ctx=CTX)
        assert wrong_pw.value.message == unknown.value.message == INVALID_CREDENTIALS_MESSAGE
        assert "AUTH_LOGIN_FAILED" in _actions(memory_store)

    async def test_pending_account_is_refused(self, auth_service):
        await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        with pytest.raises(ForbiddenError) as exc_info:
            await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        assert exc_info.value.message == "Account pending approval."

    async def test_disabled_account_is_refused(self, auth_service, memory_store):
        registration = await _register_active(auth_service)
        await auth_service.set_user_status(registration.user.id, UserStatus.DISABLED)
        with pytest.raises(ForbiddenError) as exc_info:
            await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        assert exc_info.value.message == "Account disabled."

    async def test_fifth_attempt_succeeds_sixth_is_rejected(self, auth_service):
        await _register_active(auth_service)
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                await auth_service.login("pilot@example.com", "wrong-password", ctx=CTX)

        await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)

        # success resets the window
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("pilot@example.com", "wrong-password", ctx=CTX)
        with pytest.raises(RateLimitedError) as exc_info:
            await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        assert exc_info.value.message == "Too many login attempts. Try again in 15 minutes."

    async def test_lockout_lifts_after_window(self, auth_service, clock):
        await _register_active(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("pilot@example.com", "wrong-password", ctx=CTX)
        with pytest.raises(RateLimitedError):
            await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)

        clock.advance(minutes=10)
        with pytest.raises(RateLimitedError) as exc_info:
            await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        assert "5 minutes" in exc_info.value.message

        clock.advance(minutes=5)
        result = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        assert result.session is not None

    async def test_lockout_is_per_ip_and_email(self, auth_service):
        await _register_active(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("pilot@example.com", "wrong-password", ctx=CTX)
        other_ip = RequestContext(ip_addr="198.51.100.20")
        assert await auth_service.login("pilot@example.com", PASSWORD, ctx=other_ip)

    async def test_logout_invalidates_session(self, auth_service, memory_store):
        await _register_active(auth_service)
        result = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        await auth_service.logout(result.session.id, user_id=result.user.id, ctx=CTX)
        assert memory_store.find_session_by_id(result.session.id) is None
        await auth_service.logout(result.session.id, ctx=CTX)
        assert "AUTH_LOGOUT" in _actions(memory_store)


class TestPasswordReset:
    async def test_reset_flow_revokes_sessions(self, auth_service, memory_store):
        await _register_active(auth_service)
        login = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)

        message = await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        assert message == RESET_REQUESTED_MESSAGE
        [link] = auth_service.notifier.sent_to("pilot@example.com", TokenPurpose.PASSWORD_RESET)

        await auth_service.reset_password(link.token, "new-clear-skies-2025")
        assert memory_store.find_session_by_id(login.session.id) is None
        with pytest.raises(AuthenticationError):
            await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        assert await auth_service.login("pilot@example.com", "new-clear-skies-2025", ctx=CTX)

    async def test_unknown_email_gets_same_reply(self, auth_service):
        message = await auth_service.request_password_reset("ghost@example.com", ctx=CTX)
        assert message == RESET_REQUESTED_MESSAGE
        assert auth_service.notifier.sent_to("ghost@example.com") == []

    async def test_pending_account_gets_no_link(self, auth_service):
        await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        assert auth_service.notifier.sent_to("pilot@example.com", TokenPurpose.PASSWORD_RESET) == []

    async def test_new_request_supersedes_old_link(self, auth_service):
        await _register_active(auth_service)
        await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        first, second = auth_service.notifier.sent_to(
            "pilot@example.com", TokenPurpose.PASSWORD_RESET
        )
        with pytest.raises(ValidationError):
            await auth_service.reset_password(first.token, "new-clear-skies-2025")
        await auth_service.reset_password(second.token, "new-clear-skies-2025")

    async def test_reset_token_expires_after_an_hour(self, auth_service, clock):
        await _register_active(auth_service)
        await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        [link] = auth_service.notifier.sent_to("pilot@example.com", TokenPurpose.PASSWORD_RESET)
        clock.advance(minutes=60)
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.reset_password(link.token, "new-clear-skies-2025")
        assert exc_info.value.message == INVALID_TOKEN_MESSAGE

    async def test_reset_requests_are_rate_limited(self, auth_service):
        for _ in range(3):
            await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        with pytest.raises(RateLimitedError) as exc_info:
            await auth_service.request_password_reset("pilot@example.com", ctx=CTX)
        assert exc_info.value.message.startswith("Too many reset requests.")


class TestEmailVerification:
    async def test_verify_email_marks_verified(self, auth_service, memory_store):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        user = await auth_service.verify_email(registration.verification_token)
        assert user.email_verified is True
        assert user.status == UserStatus.PENDING
        assert "AUTH_EMAIL_VERIFIED" in _actions(memory_store)

    async def test_verification_token_expires_after_a_day(self, auth_service, clock):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        clock.advance(hours=24)
        with pytest.raises(ValidationError):
            await auth_service.verify_email(registration.verification_token)

    async def test_resend_issues_new_link(self, auth_service):
        await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        message = await auth_service.resend_verification("pilot@example.com", ctx=CTX)
        assert message == VERIFICATION_REQUESTED_MESSAGE
        links = auth_service.notifier.sent_to("pilot@example.com", TokenPurpose.EMAIL_VERIFICATION)
        assert len(links) == 2

    async def test_resend_when_limited_looks_the_same(self, auth_service):
        await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        for _ in range(5):
            message = await auth_service.resend_verification("pilot@example.com", ctx=CTX)
            assert message == VERIFICATION_REQUESTED_MESSAGE
        links = auth_service.notifier.sent_to("pilot@example.com", TokenPurpose.EMAIL_VERIFICATION)
        assert len(links) == 1 + 3

    async def test_resend_skips_verified_accounts(self, auth_service):
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        await auth_service.verify_email(registration.verification_token)
        await auth_service.resend_verification("pilot@example.com", ctx=CTX)
        links = auth_service.notifier.sent_to("pilot@example.com", TokenPurpose.EMAIL_VERIFICATION)
        assert len(links) == 1


class TestChangePassword:
    async def test_change_password_signs_out_everywhere(self, auth_service, memory_store):
        await _register_active(auth_service)
        first = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        second = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)

        await auth_service.change_password(first.user, PASSWORD, "new-clear-skies-2025", ctx=CTX)
        assert memory_store.find_session_by_id(first.session.id) is None
        assert memory_store.find_session_by_id(second.session.id) is None
        assert "AUTH_PASSWORD_CHANGED" in _actions(memory_store)

    async def test_wrong_current_password(self, auth_service):
        await _register_active(auth_service)
        login = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.change_password(
                login.user, "not-my-password", "new-clear-skies-2025", ctx=CTX
            )
        assert exc_info.value.message == "Current password is incorrect."


class TestAdminStatus:
    async def test_disabling_revokes_sessions(self, auth_service, memory_store):
        registration = await _register_active(auth_service)
        login = await auth_service.login("pilot@example.com", PASSWORD, ctx=CTX)
        user = await auth_service.set_user_status(
            registration.user.id, UserStatus.DISABLED, actor_id="admin-1"
        )
        assert user.status == UserStatus.DISABLED
        assert memory_store.find_session_by_id(login.session.id) is None

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.set_user_status("missing", UserStatus.ACTIVE)

    async def test_pending_list(self, auth_service):
        await auth_service.register("a@example.com", PASSWORD, ctx=CTX)
        await _register_active(auth_service, email="b@example.com")
        pending = await auth_service.list_pending_users()
        assert [u.email for u in pending] == ["a@example.com"]

    async def test_audit_failure_does_not_break_flow(self, auth_service, memory_store):
        def boom(*args, **kwargs):
            raise RuntimeError("audit table unavailable")

        memory_store.record_audit_event = boom
        registration = await auth_service.register("pilot@example.com", PASSWORD, ctx=CTX)
        assert registration.user.status == UserStatus.PENDING


def test_token_ttls_follow_settings(settings):
    assert timedelta(days=settings.approval_token_ttl_days) == timedelta(days=7)
    assert timedelta(minutes=settings.password_reset_ttl_minutes) == timedelta(hours=1)
    assert timedelta(hours=settings.email_verification_ttl_hours) == timedelta(days=1)
