"""Unit tests for the auth service flows.

Tests for:
- Registration and uniqueness
- Password login
- OTP login (phone and email)
- Refresh and logout
- Forgot/reset password
- Email verification
- Role changes, deactivation and cleanup
- Error mapping for failing collaborators
"""

import asyncio
import time
from datetime import timedelta

import pytest

from studyauth.service.auth import AccessTokenCredential, RefreshTokenCredential
from studyauth.service.errors import (
    AccountDisabledError,
    EmailExistsError,
    ExpiredTokenError,
    InternalError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    OperationTimeoutError,
    OTPAlreadyConsumedError,
    OTPExhaustedError,
    OTPExpiredError,
    OTPMismatchError,
    PhoneExistsError,
    ServiceUnavailableError,
    TokenAlreadyInvalidatedError,
    UsernameExistsError,
    ValidationError,
)
from studyauth.service.runtime import Runtime
from studyauth.service.tokens import TokenKind

PASSWORD = "Correct7Horse"
PHONE = "+919876543210"


async def _register(auth, email="alice@example.com", username="alice", **kwargs):
    return await auth.register(email=email, username=username, password=PASSWORD, **kwargs)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestRegistration:
    async def test_register_normalizes_and_hashes(self, auth):
        user = await auth.register(
            email="  Alice@Example.COM ", username="Alice", password=PASSWORD
        )
        assert user.email == "alice@example.com"
        assert user.username == "alice"
        assert user.role == "student"
        assert user.is_active is True
        assert user.password_hash and PASSWORD not in user.password_hash
        assert "password_hash" not in user.public_profile()

    async def test_duplicate_email(self, auth):
        await _register(auth)
        with pytest.raises(EmailExistsError):
            await _register(auth, email="ALICE@example.com", username="alice2")

    async def test_duplicate_username(self, auth):
        await _register(auth)
        with pytest.raises(UsernameExistsError):
            await _register(auth, email="other@example.com", username="ALICE")

    async def test_duplicate_phone(self, auth):
        await _register(auth, phone=PHONE)
        with pytest.raises(PhoneExistsError):
            await _register(auth, email="b@example.com", username="bob", phone=PHONE)

    async def test_invalid_input_writes_nothing(self, auth, memory_store):
        with pytest.raises(ValidationError):
            await auth.register(email="alice@example.com", username="alice", password="short")
        with pytest.raises(ValidationError):
            await auth.register(email="not-an-email", username="alice", password=PASSWORD)
        assert memory_store.users == {}

    async def test_unknown_role_rejected(self, auth):
        with pytest.raises(ValidationError):
            await _register(auth, role="overlord")

    async def test_requires_verification_when_configured(self, settings, memory_store, notifier):
        settings = settings.model_copy(update={"require_email_verification": True})
        auth = Runtime(settings, store=memory_store, notifier=notifier).auth
        user = await _register(auth)
        assert user.is_active is False

        with pytest.raises(AccountDisabledError):
            await auth.login(PASSWORD, email="alice@example.com")

        await auth.request_email_verification("alice@example.com")
        code = notifier.last_code("alice@example.com")
        result = await auth.verify_otp(
            code, email="alice@example.com", purpose="email_verification"
        )
        assert result.user.is_active is True
        assert result.user.email_verified is True
        assert result.tokens is None

        login = await auth.login(PASSWORD, email="alice@example.com")
        assert login.tokens.access.token


class TestPasswordLogin:
    async def test_login_by_email_or_username(self, auth, memory_store):
        user = await _register(auth)

        by_email = await auth.login(PASSWORD, email="ALICE@example.com", ip_addr="10.0.0.1")
        by_username = await auth.login(PASSWORD, username="alice")

        assert by_email.user.id == by_username.user.id == user.id
        assert by_email.tokens.access.kind == TokenKind.ACCESS
        assert by_email.tokens.refresh.kind == TokenKind.REFRESH
        session = memory_store.get_session(by_email.session_id)
        assert session.ip_addr == "10.0.0.1"
        assert set(session.token_ids()) == {
            by_email.tokens.access.token_id,
            by_email.tokens.refresh.token_id,
        }
        assert memory_store.get_user(user.id).last_login_at is not None

    async def test_wrong_password_and_unknown_user_look_alike(self, auth):
        await _register(auth)

        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login("Wrong7Password", email="alice@example.com")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login(PASSWORD, email="nobody@example.com")

        assert wrong.value.message == unknown.value.message
        assert wrong.value.error_code == unknown.value.error_code == "invalid_credentials"

    async def test_exactly_one_identifier(self, auth):
        with pytest.raises(ValidationError):
            await auth.login(PASSWORD)
        with pytest.raises(ValidationError):
            await auth.login(PASSWORD, email="alice@example.com", username="alice")

    async def test_deactivated_account(self, auth):
        user = await _register(auth)
        await auth.deactivate_user(user.id)

        with pytest.raises(AccountDisabledError):
            await auth.login(PASSWORD, email="alice@example.com")

    async def test_otp_only_account_cannot_password_login(self, auth, notifier):
        await auth.request_otp(phone=PHONE)
        result = await auth.verify_otp(notifier.last_code(PHONE), phone=PHONE)
        assert result.user.password_hash is None

        with pytest.raises(InvalidCredentialsError):
            await auth.login(PASSWORD, username=result.user.username)

    async def test_session_write_failure_still_logs_in(self, auth, memory_store, monkeypatch):
        await _register(auth)

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(memory_store, "create_session", broken)
        result = await auth.login(PASSWORD, email="alice@example.com")

        assert result.session_id is None
        assert result.tokens.access.token


class TestOTPLogin:
    async def test_phone_login_creates_account(self, auth, notifier):
        dispatch = await auth.request_otp(phone=PHONE)
        assert dispatch.channel == "phone"
        assert PHONE not in dispatch.destination
        message = notifier.sent_to(PHONE)[-1]
        assert message["channel"] == "sms"

        result = await auth.verify_otp(notifier.last_code(PHONE), phone=PHONE)

        assert result.created is True
        assert result.user.phone == PHONE
        assert result.tokens.access.token
        assert result.session_id

    async def test_second_login_reuses_account(self, auth, notifier):
        await auth.request_otp(phone=PHONE)
        first = await auth.verify_otp(notifier.last_code(PHONE), phone=PHONE)
        await auth.request_otp(phone=PHONE)
        second = await auth.verify_otp(notifier.last_code(PHONE), phone=PHONE)

        assert second.created is False
        assert second.user.id == first.user.id

    async def test_email_login_marks_verified(self, auth, notifier):
        user = await _register(auth)
        assert user.email_verified is False

        await auth.request_otp(email="alice@example.com")
        assert notifier.sent_to("alice@example.com")[-1]["channel"] == "email"
        result = await auth.verify_otp(
            notifier.last_code("alice@example.com"), email="alice@example.com"
        )

        assert result.user.id == user.id
        assert result.user.email_verified is True

    async def test_wrong_code_reports_remaining_attempts(self, auth, notifier, settings):
        await auth.request_otp(phone=PHONE)
        code = notifier.last_code(PHONE)

        with pytest.raises(OTPMismatchError) as excinfo:
            await auth.verify_otp(_wrong(code), phone=PHONE)
        assert excinfo.value.detail["attempts_remaining"] == settings.otp_max_attempts - 1

    async def test_exhausted_then_reissue(self, auth, notifier, settings):
        await auth.request_otp(phone=PHONE)
        code = notifier.last_code(PHONE)
        for _ in range(settings.otp_max_attempts):
            with pytest.raises(OTPMismatchError):
                await auth.verify_otp(_wrong(code), phone=PHONE)

        with pytest.raises(OTPExhaustedError) as excinfo:
            await auth.verify_otp(code, phone=PHONE)
        assert excinfo.value.status_code == 429

        await auth.request_otp(phone=PHONE)
        result = await auth.verify_otp(notifier.last_code(PHONE), phone=PHONE)
        assert result.tokens is not None

    async def test_code_is_single_use(self, auth, notifier):
        await auth.request_otp(phone=PHONE)
        code = notifier.last_code(PHONE)
        await auth.verify_otp(code, phone=PHONE)

        with pytest.raises(OTPAlreadyConsumedError):
            await auth.verify_otp(code, phone=PHONE)

    async def test_no_challenge_reads_as_expired(self, auth):
        with pytest.raises(OTPExpiredError):
            await auth.verify_otp("123456", phone=PHONE)

    async def test_stale_challenge_id(self, auth, notifier):
        first = await auth.request_otp(phone=PHONE)
        await auth.request_otp(phone=PHONE)

        with pytest.raises(OTPExpiredError):
            await auth.verify_otp(
                notifier.last_code(PHONE), phone=PHONE, challenge_id=first.challenge_id
            )

    async def test_malformed_code_does_not_spend_attempt(self, auth, notifier, memory_store):
        await auth.request_otp(phone=PHONE)
        with pytest.raises(ValidationError):
            await auth.verify_otp("12ab", phone=PHONE)
        assert memory_store.get_otp_challenge(PHONE, "login").attempt_count == 0

    async def test_concurrent_verification_single_winner(self, auth, notifier):
        await auth.request_otp(phone=PHONE)
        code = notifier.last_code(PHONE)

        results = await asyncio.gather(
            *(auth.verify_otp(code, phone=PHONE) for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, OTPAlreadyConsumedError) for e in losers)

    async def test_unknown_destination_without_auto_register(
        self, settings, memory_store, notifier
    ):
        settings = settings.model_copy(update={"otp_login_auto_register": False})
        auth = Runtime(settings, store=memory_store, notifier=notifier).auth

        dispatch = await auth.request_otp(phone=PHONE)

        assert dispatch.challenge_id
        assert notifier.sent_to(PHONE) == []

    async def test_bare_number_uses_configured_country_code(
        self, settings, memory_store, notifier
    ):
        settings = settings.model_copy(update={"default_phone_country_code": "91"})
        auth = Runtime(settings, store=memory_store, notifier=notifier).auth

        await auth.request_otp(phone="98765 43210")
        result = await auth.verify_otp(notifier.last_code(PHONE), phone="9876543210")
        assert result.user.phone == PHONE

    async def test_bare_number_without_country_code_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.request_otp(phone="9876543210")

    async def test_reset_purpose_not_redeemable_here(self, auth):
        with pytest.raises(ValidationError):
            await auth.verify_otp("123456", phone=PHONE, purpose="password_reset")


class TestRefresh:
    async def test_refresh_issues_access_token(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        result = await auth.refresh(login.tokens.refresh.token)

        assert result.access.kind == TokenKind.ACCESS
        assert result.access.token_id != login.tokens.access.token_id
        context = await auth.authenticate(result.access.token)
        assert context.user_id == login.user.id

    async def test_access_token_cannot_refresh(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.tokens.access.token)

    async def test_expired_refresh_token(self, auth):
        user = await _register(auth)
        past = auth.codec.issue(
            user, TokenKind.REFRESH, now=user.created_at - timedelta(days=30)
        )

        with pytest.raises(ExpiredTokenError):
            await auth.refresh(past.token)

    async def test_empty_token(self, auth):
        with pytest.raises(ValidationError):
            await auth.refresh("")

    async def test_refresh_picks_up_role_change(self, auth):
        user = await _register(auth)
        await auth.set_user_role(user.id, "instructor")
        time.sleep(0.002)
        login = await auth.login(PASSWORD, email="alice@example.com")

        result = await auth.refresh(login.tokens.refresh.token)
        context = await auth.authenticate(result.access.token)
        assert context.role == "instructor"


class TestLogout:
    async def test_refresh_logout_is_one_shot(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")
        credential = RefreshTokenCredential(login.tokens.refresh.token)

        result = await auth.logout(credential)
        assert result.revoked is True
        assert result.sessions_ended == 1

        with pytest.raises(TokenAlreadyInvalidatedError):
            await auth.logout(credential)
        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.tokens.refresh.token)

    async def test_access_logout_revokes_sibling_refresh(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        await auth.logout(AccessTokenCredential(login.tokens.access.token))

        with pytest.raises(InvalidTokenError):
            await auth.authenticate(login.tokens.access.token)
        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.tokens.refresh.token)

    async def test_access_logout_is_one_shot(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")
        credential = AccessTokenCredential(login.tokens.access.token)

        assert (await auth.logout(credential)).revoked is True
        with pytest.raises(TokenAlreadyInvalidatedError) as excinfo:
            await auth.logout(credential)
        assert excinfo.value.status_code == 401

    async def test_other_sessions_survive(self, auth):
        await _register(auth)
        phone_login = await auth.login(PASSWORD, email="alice@example.com")
        laptop_login = await auth.login(PASSWORD, username="alice")

        await auth.logout(RefreshTokenCredential(phone_login.tokens.refresh.token))

        refreshed = await auth.refresh(laptop_login.tokens.refresh.token)
        assert refreshed.access.token

    async def test_credential_kind_must_match(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        with pytest.raises(InvalidTokenError):
            await auth.logout(RefreshTokenCredential(login.tokens.access.token))

    async def test_expired_token_logs_out_without_entry(self, auth, memory_store):
        user = await _register(auth)
        old = auth.codec.issue(user, TokenKind.REFRESH, now=user.created_at - timedelta(days=30))

        result = await auth.logout(RefreshTokenCredential(old.token))

        assert result.revoked is False
        assert old.token_id not in memory_store.revoked_tokens

    async def test_forged_token_rejected(self, auth):
        with pytest.raises(InvalidTokenError):
            await auth.logout(RefreshTokenCredential("a.b.c"))

    async def test_unsupported_credential(self, auth):
        with pytest.raises(ValidationError):
            await auth.logout("raw-token-string")


class TestPasswordReset:
    async def test_reset_flow_revokes_everything(self, auth, notifier):
        await _register(auth, phone=PHONE)
        login = await auth.login(PASSWORD, email="alice@example.com")
        time.sleep(0.002)

        await auth.forgot_password(phone=PHONE)
        code = notifier.last_code(PHONE)
        result = await auth.reset_password(code, "Brand9NewPass", phone=PHONE)
        time.sleep(0.002)

        assert result.sessions_revoked == 1
        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.tokens.refresh.token)
        with pytest.raises(InvalidCredentialsError):
            await auth.login(PASSWORD, email="alice@example.com")
        fresh = await auth.login("Brand9NewPass", email="alice@example.com")
        assert (await auth.authenticate(fresh.tokens.access.token)).user_id == login.user.id

        notice = notifier.sent_to(PHONE)[-1]
        assert "password" in notice["body"].lower()

    async def test_tokens_without_session_record_are_revoked(self, auth, notifier, monkeypatch, memory_store):
        await _register(auth)

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        with monkeypatch.context() as patch:
            patch.setattr(memory_store, "create_session", broken)
            login = await auth.login(PASSWORD, email="alice@example.com")
        assert login.session_id is None
        time.sleep(0.002)

        await auth.forgot_password(email="alice@example.com")
        await auth.reset_password(
            notifier.last_code("alice@example.com"), "Brand9NewPass", email="alice@example.com"
        )

        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.tokens.refresh.token)

    async def test_account_removed_mid_reset(self, auth, notifier, memory_store, monkeypatch):
        await _register(auth)
        await auth.forgot_password(email="alice@example.com")
        code = notifier.last_code("alice@example.com")
        monkeypatch.setattr(memory_store, "update_user_password", lambda *args: None)

        with pytest.raises(InvalidCredentialsError):
            await auth.reset_password(code, "Brand9NewPass", email="alice@example.com")

    async def test_unknown_destination_gets_same_answer(self, auth, notifier):
        await _register(auth)

        known = await auth.forgot_password(email="alice@example.com")
        unknown = await auth.forgot_password(email="ghost@example.com")

        assert set(known.as_dict()) == set(unknown.as_dict())
        assert known.purpose == unknown.purpose == "password_reset"
        assert notifier.sent_to("ghost@example.com") == []
        assert len(notifier.sent_to("alice@example.com")) == 1

    async def test_weak_password_keeps_code_usable(self, auth, notifier):
        await _register(auth)
        await auth.forgot_password(email="alice@example.com")
        code = notifier.last_code("alice@example.com")

        with pytest.raises(ValidationError):
            await auth.reset_password(code, "weak", email="alice@example.com")
        await auth.reset_password(code, "Brand9NewPass", email="alice@example.com")

    async def test_confirmation_must_match(self, auth, notifier):
        await _register(auth)
        await auth.forgot_password(email="alice@example.com")

        with pytest.raises(ValidationError):
            await auth.reset_password(
                notifier.last_code("alice@example.com"),
                "Brand9NewPass",
                email="alice@example.com",
                confirm_password="Brand9NewPas",
            )

    async def test_login_code_cannot_reset(self, auth, notifier):
        await _register(auth)
        await auth.request_otp(email="alice@example.com")

        with pytest.raises(OTPExpiredError):
            await auth.reset_password(
                notifier.last_code("alice@example.com"), "Brand9NewPass", email="alice@example.com"
            )

    async def test_request_otp_with_reset_purpose(self, auth, notifier):
        await _register(auth)
        dispatch = await auth.request_otp(email="alice@example.com", purpose="password_reset")
        assert dispatch.purpose == "password_reset"
        assert len(notifier.sent_to("alice@example.com")) == 1


class TestAccountManagement:
    async def test_authenticate(self, auth):
        await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        context = await auth.authenticate(login.tokens.access.token)

        assert context.user_id == login.user.id
        assert context.token_id == login.tokens.access.token_id
        assert context.user.username == "alice"

    async def test_list_sessions(self, auth):
        user = await _register(auth)
        await auth.login(PASSWORD, email="alice@example.com", device_info="phone")
        await auth.login(PASSWORD, email="alice@example.com", device_info="laptop")

        sessions = await auth.list_sessions(user.id)
        assert {s.device_info for s in sessions} == {"phone", "laptop"}

    async def test_role_change_revokes_tokens(self, auth):
        user = await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        updated = await auth.set_user_role(user.id, "admin")

        assert updated.role == "admin"
        with pytest.raises(InvalidTokenError):
            await auth.authenticate(login.tokens.access.token)

    async def test_role_change_unknown_user(self, auth):
        with pytest.raises(NotFoundError):
            await auth.set_user_role("missing", "admin")
        with pytest.raises(ValidationError):
            await auth.set_user_role("missing", "wizard")

    async def test_deactivate_blocks_refresh(self, auth):
        user = await _register(auth)
        login = await auth.login(PASSWORD, email="alice@example.com")

        await auth.deactivate_user(user.id)

        with pytest.raises((InvalidTokenError, AccountDisabledError)):
            await auth.refresh(login.tokens.refresh.token)

    async def test_cleanup_expired(self, auth, memory_store):
        user = await _register(auth)
        memory_store.revoke_token("old", user.created_at - timedelta(seconds=1))

        counts = await auth.cleanup_expired()

        assert counts["revoked_tokens"] == 1


class TestCollaboratorFailures:
    async def test_undelivered_code(self, auth, notifier):
        notifier.fail = True
        with pytest.raises(ServiceUnavailableError):
            await auth.request_otp(phone=PHONE)

    async def test_unconfigured_providers_fail_outside_test_mode(self, settings, memory_store):
        settings = settings.model_copy(
            update={"test_mode": False, "allow_redis_fallback_dev": True}
        )
        auth = Runtime(settings, store=memory_store).auth

        with pytest.raises(ServiceUnavailableError):
            await auth.request_otp(phone=PHONE)
        with pytest.raises(ServiceUnavailableError):
            await auth.request_otp(email="alice@example.com")

    async def test_notification_dev_mode_logs_instead(self, settings, memory_store):
        settings = settings.model_copy(
            update={
                "test_mode": False,
                "allow_redis_fallback_dev": True,
                "notification_dev_mode": True,
            }
        )
        auth = Runtime(settings, store=memory_store).auth

        dispatch = await auth.request_otp(phone=PHONE)
        assert dispatch.channel == "phone"

    async def test_slow_provider_times_out(self, settings, memory_store, notifier):
        settings = settings.model_copy(update={"notification_timeout_seconds": 0.05})
        auth = Runtime(settings, store=memory_store, notifier=notifier).auth
        notifier.delay = 0.5

        with pytest.raises(OperationTimeoutError):
            await auth.request_otp(phone=PHONE)

    async def test_reset_notice_failure_is_not_fatal(self, auth, notifier):
        await _register(auth)
        await auth.forgot_password(email="alice@example.com")
        code = notifier.last_code("alice@example.com")
        notifier.fail = True

        result = await auth.reset_password(code, "Brand9NewPass", email="alice@example.com")
        assert result.user.email == "alice@example.com"

    async def test_unexpected_error_becomes_internal(self, auth, memory_store, monkeypatch):
        def broken(*args, **kwargs):
            raise KeyError("corrupt row")

        monkeypatch.setattr(memory_store, "find_user_by_email_or_username", broken)
        with pytest.raises(InternalError) as excinfo:
            await auth.login(PASSWORD, email="alice@example.com")
        assert "corrupt" not in excinfo.value.message

    async def test_unwritable_store_is_unavailable(self, auth, memory_store, tmp_path, monkeypatch):
        monkeypatch.setattr(memory_store, "_state_path", lambda: tmp_path)

        with pytest.raises(ServiceUnavailableError):
            await _register(auth)

    async def test_hasher_failure_is_unavailable(self, auth, monkeypatch):
        def broken(plaintext):
            raise MemoryError("argon2 could not allocate")

        monkeypatch.setattr(auth.hasher, "hash", broken)
        with pytest.raises(ServiceUnavailableError):
            await _register(auth)
