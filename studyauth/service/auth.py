from __future__ import annotations

import asyncio
import functools
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar, Union

from studyauth.config import Settings
from studyauth.logging import get_logger, mask_destination
from studyauth.service.errors import (
    AccountDisabledError,
    EmailExistsError,
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
    ServiceError,
    ServiceUnavailableError,
    TokenAlreadyInvalidatedError,
    UsernameExistsError,
    ValidationError,
)
from studyauth.service.notifications import (
    DeliveryResult,
    NotificationSender,
    render_otp_message,
    render_password_changed_notice,
)
from studyauth.service.otp import OTPStore, OTPVerification
from studyauth.service.passwords import PasswordHasher
from studyauth.service.sessions import SessionRegistry, run_bounded
from studyauth.service.tokens import IssuedToken, TokenClaims, TokenCodec, TokenKind
from studyauth.service.validation import (
    normalize_email,
    normalize_otp_code,
    normalize_username,
    resolve_destination,
    validate_password,
)
from studyauth.storage.errors import ConstraintViolation
from studyauth.storage.models import OTPChannel, OTPOutcome, OTPPurpose, Role, Session, User

logger = get_logger(__name__)

T = TypeVar("T")

# Verified against when the account does not exist so both paths cost one hash
_TIMING_PASSWORD = "timing-equalizer-0"


class CredentialStore(Protocol):
    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = Role.STUDENT.value,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def find_user_by_email_or_username(
        self, *, email: Optional[str] = None, username: Optional[str] = None
    ) -> Optional[User]: ...

    def update_user_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str, *, activate: bool = False) -> Optional[User]: ...

    def update_last_login(self, user_id: str, at: datetime) -> None: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def purge_expired(self, *, now: Optional[datetime] = None) -> Dict[str, int]: ...


@dataclass(frozen=True)
class RefreshTokenCredential:
    token: str


@dataclass(frozen=True)
class AccessTokenCredential:
    token: str


# What a client presents to log out; the variant decides how the token is verified
LogoutCredential = Union[RefreshTokenCredential, AccessTokenCredential]


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access.token,
            "refresh_token": self.refresh.token,
            "token_type": self.token_type,
            "expires_in": self.access.expires_in,
            "refresh_expires_in": self.refresh.expires_in,
        }


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session_id: Optional[str] = None


@dataclass
class RefreshResult:
    user: User
    access: IssuedToken


@dataclass
class OTPDispatch:
    channel: str
    destination: str
    purpose: str
    challenge_id: str
    expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "channel": self.channel,
            "destination": self.destination,
            "purpose": self.purpose,
            "challenge_id": self.challenge_id,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class OTPVerificationResult:
    purpose: str
    user: User
    tokens: Optional[TokenPair] = None
    session_id: Optional[str] = None
    created: bool = False


@dataclass
class LogoutResult:
    token_id: str
    revoked: bool
    sessions_ended: int = 0


@dataclass
class PasswordResetResult:
    user: User
    sessions_revoked: int = 0


@dataclass
class AuthContext:
    user_id: str
    role: str
    token_id: str
    expires_at: datetime
    user: Optional[User] = field(default=None, repr=False)


def _boundary(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Let typed service errors through; anything else becomes InternalError."""

    @functools.wraps(fn)
    async def wrapper(self: "AuthService", *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(self, *args, **kwargs)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "auth_unexpected_error", operation=fn.__name__, error_type=type(exc).__name__
            )
            raise InternalError("internal error") from exc

    return wrapper


class AuthService:
    """Registration, login, OTP, refresh, logout and password reset flows.

    Every collaborator is injected; nothing here reaches for module state.
    Store calls are bounded by ``store_timeout_seconds``, hashing by
    ``hash_timeout_seconds`` and deliveries by ``notification_timeout_seconds``.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        sessions: SessionRegistry,
        otp: OTPStore,
        hasher: PasswordHasher,
        notifier: NotificationSender,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.otp = otp
        self.hasher = hasher
        self.notifier = notifier
        self.settings = settings
        self._timing_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(self, fn: Callable[..., T], *args: Any, operation: str, **kwargs: Any) -> T:
        return await run_bounded(
            fn, *args, timeout=self.settings.store_timeout_seconds, operation=operation, **kwargs
        )

    # password hashing
    async def _run_hasher(self, fn: Callable[..., T], *args: Any, operation: str) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.settings.hash_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error("password_hash_timeout", operation=operation)
            raise OperationTimeoutError("password hashing timed out")
        except Exception as exc:
            logger.error(
                "password_hash_failed", operation=operation, error_type=type(exc).__name__
            )
            raise ServiceUnavailableError("password hashing unavailable") from exc

    async def _hash_password(self, password: str) -> str:
        return await self._run_hasher(self.hasher.hash, password, operation="hash")

    async def _verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            # Same work as a real check, and never a match
            if self._timing_hash is None:
                self._timing_hash = await self._hash_password(_TIMING_PASSWORD)
            await self._run_hasher(
                self.hasher.verify, password, self._timing_hash, operation="verify"
            )
            return False
        return await self._run_hasher(
            self.hasher.verify, password, password_hash, operation="verify"
        )

    # notifications
    async def _deliver(
        self, channel: str, destination: str, subject: str, body: str
    ) -> DeliveryResult:
        if channel == OTPChannel.EMAIL.value:
            pending = self.notifier.send_email(destination, subject, body)
        else:
            pending = self.notifier.send_sms(destination, body)
        try:
            return await asyncio.wait_for(
                pending, timeout=self.settings.notification_timeout_seconds
            )
        except (asyncio.TimeoutError, TimeoutError):
            logger.error(
                "notification_timeout", channel=channel, to=mask_destination(destination)
            )
            raise OperationTimeoutError("notification delivery timed out")
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "notification_failed",
                channel=channel,
                to=mask_destination(destination),
                error_type=type(exc).__name__,
            )
            raise ServiceUnavailableError("notification provider unavailable") from exc

    async def _dispatch_otp(
        self, channel: OTPChannel, destination: str, purpose: OTPPurpose, *, deliver: bool
    ) -> OTPDispatch:
        """Issue a challenge and send its code.

        With ``deliver=False`` the challenge is still issued so the response is
        indistinguishable, but nothing leaves the service.
        """
        issued = await self.otp.issue(channel.value, destination, purpose.value)
        if deliver:
            subject, body = render_otp_message(
                purpose.value,
                issued.code,
                self.settings.otp_ttl_seconds,
                app_name=self.settings.app_name,
            )
            result = await self._deliver(channel.value, destination, subject, body)
            if not result.delivered:
                raise ServiceUnavailableError(
                    "could not deliver the code", detail={"channel": channel.value}
                )
            logger.info(
                "otp_sent",
                purpose=purpose.value,
                channel=channel.value,
                provider=result.provider,
                message_id=result.message_id,
            )
        else:
            logger.info("otp_not_sent_unknown_destination", purpose=purpose.value, channel=channel.value)
        return OTPDispatch(
            channel=channel.value,
            destination=mask_destination(destination),
            purpose=purpose.value,
            challenge_id=issued.challenge_id,
            expires_at=issued.expires_at,
        )

    def _raise_for_otp(self, verification: OTPVerification) -> None:
        outcome = verification.outcome
        if outcome == OTPOutcome.SUCCESS:
            return
        if outcome in (OTPOutcome.NOT_FOUND, OTPOutcome.SUPERSEDED, OTPOutcome.EXPIRED):
            raise OTPExpiredError("The code is invalid or has expired")
        if outcome == OTPOutcome.MISMATCH:
            challenge = verification.challenge
            remaining = (
                max(0, challenge.max_attempts - challenge.attempt_count) if challenge else 0
            )
            raise OTPMismatchError(
                "The code is incorrect", detail={"attempts_remaining": remaining}
            )
        if outcome == OTPOutcome.EXHAUSTED:
            raise OTPExhaustedError("Too many incorrect attempts; request a new code")
        if outcome == OTPOutcome.ALREADY_CONSUMED:
            raise OTPAlreadyConsumedError("The code has already been used")
        raise InternalError(f"unhandled OTP outcome {outcome}")

    def _resolve(
        self, email: Optional[str], phone: Optional[str]
    ) -> tuple[OTPChannel, str]:
        return resolve_destination(
            email=email,
            phone=phone,
            default_country_code=self.settings.default_phone_country_code,
        )

    async def _user_for_destination(self, channel: OTPChannel, destination: str) -> Optional[User]:
        if channel == OTPChannel.EMAIL:
            return await self._call(
                self.store.get_user_by_email, destination, operation="get_user_by_email"
            )
        return await self._call(
            self.store.get_user_by_phone, destination, operation="get_user_by_phone"
        )

    async def _start_session(
        self, user: User, *, device_info: Optional[str], ip_addr: Optional[str]
    ) -> AuthResult:
        now = self._now()
        access = self.codec.issue(user, TokenKind.ACCESS, now=now)
        refresh = self.codec.issue(user, TokenKind.REFRESH, now=now)
        session_id = await self.sessions.create_session(
            user.id,
            access.token_id,
            refresh.expires_at,
            refresh_token_id=refresh.token_id,
            device_info=device_info,
            ip_addr=ip_addr,
        )
        try:
            await self._call(
                self.store.update_last_login, user.id, now, operation="update_last_login"
            )
        except ServiceError as exc:
            logger.warning("last_login_update_failed", user_id=user.id, error=exc.message)
        return AuthResult(
            user=user, tokens=TokenPair(access=access, refresh=refresh), session_id=session_id
        )

    # flows
    @_boundary
    async def register(
        self,
        *,
        email: str,
        username: str,
        password: str,
        phone: Optional[str] = None,
        role: Union[Role, str] = Role.STUDENT,
    ) -> User:
        """Create an account. Nothing is written unless every field is valid."""
        email_norm = normalize_email(email)
        username_norm = normalize_username(username)
        validate_password(password, min_length=self.settings.password_min_length)
        phone_norm = None
        if phone:
            _, phone_norm = resolve_destination(
                phone=phone, default_country_code=self.settings.default_phone_country_code
            )
        try:
            role_value = Role(role).value
        except ValueError:
            raise ValidationError("unknown role", detail={"field": "role"})

        if await self._call(self.store.get_user_by_email, email_norm, operation="get_user_by_email"):
            raise EmailExistsError("email already registered")
        if await self._call(
            self.store.get_user_by_username, username_norm, operation="get_user_by_username"
        ):
            raise UsernameExistsError("username already taken")
        if phone_norm and await self._call(
            self.store.get_user_by_phone, phone_norm, operation="get_user_by_phone"
        ):
            raise PhoneExistsError("phone number already registered")

        password_hash = await self._hash_password(password)
        try:
            user = await self._call(
                self.store.create_user,
                username_norm,
                email=email_norm,
                phone=phone_norm,
                password_hash=password_hash,
                role=role_value,
                is_active=not self.settings.require_email_verification,
                operation="create_user",
            )
        except ConstraintViolation as exc:
            # A concurrent registration won the race between check and insert
            if exc.field == "email":
                raise EmailExistsError("email already registered")
            if exc.field == "phone":
                raise PhoneExistsError("phone number already registered")
            raise UsernameExistsError("username already taken")
        logger.info("user_registered", user_id=user.id, role=user.role)
        return user

    @_boundary
    async def login(
        self,
        password: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        if bool(email) == bool(username):
            raise ValidationError(
                "provide exactly one of email or username",
                detail={"fields": ["email", "username"]},
            )
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required", detail={"field": "password"})
        lookup = (
            {"email": normalize_email(email)}
            if email
            else {"username": normalize_username(username)}
        )
        user = await self._call(
            self.store.find_user_by_email_or_username, operation="find_user", **lookup
        )
        matched = await self._verify_password(password, user.password_hash if user else None)
        if not user or not matched:
            logger.warning("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError("Invalid credentials")
        if not user.is_active:
            logger.warning("login_failed", reason="account_disabled", user_id=user.id)
            raise AccountDisabledError("Account is disabled")
        result = await self._start_session(user, device_info=device_info, ip_addr=ip_addr)
        logger.info("login_succeeded", user_id=user.id, method="password")
        return result

    @_boundary
    async def request_otp(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        purpose: Union[OTPPurpose, str] = OTPPurpose.LOGIN,
    ) -> OTPDispatch:
        try:
            purpose = OTPPurpose(purpose)
        except ValueError:
            raise ValidationError("unknown purpose", detail={"field": "purpose"})
        if purpose == OTPPurpose.PASSWORD_RESET:
            return await self.forgot_password(email=email, phone=phone)
        if purpose == OTPPurpose.EMAIL_VERIFICATION:
            if not email or phone:
                raise ValidationError(
                    "email verification needs an email address", detail={"field": "email"}
                )
            return await self.request_email_verification(email)
        channel, destination = self._resolve(email, phone)
        deliver = True
        if not self.settings.otp_login_auto_register:
            deliver = await self._user_for_destination(channel, destination) is not None
        return await self._dispatch_otp(channel, destination, purpose, deliver=deliver)

    async def _otp_login_user(self, channel: OTPChannel, destination: str) -> tuple[User, bool]:
        user = await self._user_for_destination(channel, destination)
        if user:
            return user, False
        if not self.settings.otp_login_auto_register:
            raise InvalidCredentialsError("No account is registered for this destination")
        for _ in range(3):
            username = f"user_{secrets.token_hex(4)}"
            try:
                user = await self._call(
                    self.store.create_user,
                    username,
                    email=destination if channel == OTPChannel.EMAIL else None,
                    phone=destination if channel == OTPChannel.PHONE else None,
                    email_verified=channel == OTPChannel.EMAIL,
                    operation="create_user",
                )
            except ConstraintViolation as exc:
                if exc.field == "username":
                    continue
                # Registered concurrently under the same destination
                existing = await self._user_for_destination(channel, destination)
                if existing:
                    return existing, False
                raise ServiceUnavailableError("could not create account") from exc
            logger.info("user_registered", user_id=user.id, method="otp", channel=channel.value)
            return user, True
        raise ServiceUnavailableError("could not allocate a username")

    @_boundary
    async def verify_otp(
        self,
        code: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        purpose: Union[OTPPurpose, str] = OTPPurpose.LOGIN,
        challenge_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> OTPVerificationResult:
        """Check a code and finish its flow.

        Login returns a fresh token pair, creating the account on first use
        when ``otp_login_auto_register`` is on. Email verification marks the
        address verified. Password reset codes go through ``reset_password``.
        """
        try:
            purpose = OTPPurpose(purpose)
        except ValueError:
            raise ValidationError("unknown purpose", detail={"field": "purpose"})
        if purpose == OTPPurpose.PASSWORD_RESET:
            raise ValidationError(
                "password reset codes are redeemed by resetting the password",
                detail={"field": "purpose"},
            )
        channel, destination = self._resolve(email, phone)
        if purpose == OTPPurpose.EMAIL_VERIFICATION and channel != OTPChannel.EMAIL:
            raise ValidationError(
                "email verification needs an email address", detail={"field": "email"}
            )
        code = normalize_otp_code(code, length=self.settings.otp_code_length)
        verification = await self.otp.verify(
            destination, purpose.value, code, challenge_id=challenge_id
        )
        self._raise_for_otp(verification)

        if purpose == OTPPurpose.EMAIL_VERIFICATION:
            user = await self._user_for_destination(channel, destination)
            if not user:
                raise InvalidCredentialsError("No account is registered for this destination")
            user = await self._call(
                self.store.mark_email_verified,
                user.id,
                activate=self.settings.require_email_verification,
                operation="mark_email_verified",
            )
            logger.info("email_verified", user_id=user.id)
            return OTPVerificationResult(purpose=purpose.value, user=user)

        user, created = await self._otp_login_user(channel, destination)
        if not user.is_active:
            logger.warning("login_failed", reason="account_disabled", user_id=user.id)
            raise AccountDisabledError("Account is disabled")
        if channel == OTPChannel.EMAIL and not user.email_verified:
            user = await self._call(
                self.store.mark_email_verified, user.id, operation="mark_email_verified"
            )
        result = await self._start_session(user, device_info=device_info, ip_addr=ip_addr)
        logger.info("login_succeeded", user_id=user.id, method="otp", channel=channel.value)
        return OTPVerificationResult(
            purpose=purpose.value,
            user=user,
            tokens=result.tokens,
            session_id=result.session_id,
            created=created,
        )

    async def _verified_claims(self, token: str, kind: TokenKind, **kwargs: Any) -> TokenClaims:
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("token is required", detail={"field": "token"})
        return self.codec.verify(token.strip(), kind, **kwargs)

    @_boundary
    async def refresh(self, refresh_token: str) -> RefreshResult:
        """New access token for a valid, unrevoked refresh token. No rotation."""
        claims = await self._verified_claims(refresh_token, TokenKind.REFRESH)
        if await self.sessions.is_claims_revoked(claims):
            raise InvalidTokenError("Token has been revoked", detail={"reason": "revoked"})
        user = await self._call(self.store.get_user, claims.user_id, operation="get_user")
        if not user:
            raise InvalidTokenError("Invalid token")
        if not user.is_active:
            raise AccountDisabledError("Account is disabled")
        access = self.codec.issue(user, TokenKind.ACCESS)
        logger.info("token_refreshed", user_id=user.id)
        return RefreshResult(user=user, access=access)

    @_boundary
    async def logout(self, credential: LogoutCredential) -> LogoutResult:
        """Revoke the presented token and, when recorded, the rest of its session.

        A second logout with the same token raises TokenAlreadyInvalidatedError.
        An expired token needs no entry in the revocation set.
        """
        if isinstance(credential, RefreshTokenCredential):
            kind = TokenKind.REFRESH
        elif isinstance(credential, AccessTokenCredential):
            kind = TokenKind.ACCESS
        else:
            raise ValidationError("unsupported logout credential")
        claims = await self._verified_claims(credential.token, kind, allow_expired=True)
        if await self.sessions.is_claims_revoked(claims):
            raise TokenAlreadyInvalidatedError("Token has already been invalidated")
        if claims.is_expired(self._now()):
            logger.info("logout_expired_token", user_id=claims.user_id, kind=kind.value)
            return LogoutResult(token_id=claims.token_id, revoked=False)
        added = await self.sessions.revoke(
            claims.token_id, claims.expires_at, user_id=claims.user_id
        )
        if not added:
            raise TokenAlreadyInvalidatedError("Token has already been invalidated")

        ended = 0
        try:
            session = await self.sessions.session_for_token(claims.token_id)
            if session:
                await self.sessions.end_session(session)
                ended = 1
        except ServiceError as exc:
            # The presented token is revoked; the sibling is cleaned up best-effort
            logger.warning("logout_session_cleanup_failed", user_id=claims.user_id, error=exc.message)
        logger.info("logout", user_id=claims.user_id, kind=kind.value)
        return LogoutResult(token_id=claims.token_id, revoked=True, sessions_ended=ended)

    @_boundary
    async def forgot_password(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> OTPDispatch:
        """Start a reset. The answer is the same whether or not an account exists."""
        channel, destination = self._resolve(email, phone)
        user = await self._user_for_destination(channel, destination)
        logger.info("password_reset_requested", channel=channel.value, known=user is not None)
        return await self._dispatch_otp(
            channel, destination, OTPPurpose.PASSWORD_RESET, deliver=user is not None
        )

    @_boundary
    async def reset_password(
        self,
        code: str,
        new_password: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        confirm_password: Optional[str] = None,
        challenge_id: Optional[str] = None,
    ) -> PasswordResetResult:
        """Redeem a reset code, set the new password and revoke every session."""
        channel, destination = self._resolve(email, phone)
        code = normalize_otp_code(code, length=self.settings.otp_code_length)
        validate_password(new_password, min_length=self.settings.password_min_length)
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError("passwords do not match", detail={"field": "confirm_password"})

        verification = await self.otp.verify(
            destination, OTPPurpose.PASSWORD_RESET.value, code, challenge_id=challenge_id
        )
        self._raise_for_otp(verification)
        user = await self._user_for_destination(channel, destination)
        if not user:
            raise InvalidCredentialsError("No account is registered for this destination")

        password_hash = await self._hash_password(new_password)
        user = await self._call(
            self.store.update_user_password, user.id, password_hash, operation="update_password"
        )
        if not user:
            raise InvalidCredentialsError("No account is registered for this destination")
        revoked = await self.sessions.revoke_all_for_user(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

        subject, body = render_password_changed_notice(app_name=self.settings.app_name)
        try:
            await self._deliver(channel.value, destination, subject, body)
        except ServiceError as exc:
            logger.warning("password_notice_failed", user_id=user.id, error=exc.message)
        return PasswordResetResult(user=user, sessions_revoked=revoked)

    @_boundary
    async def request_email_verification(self, email: str) -> OTPDispatch:
        destination = normalize_email(email)
        user = await self._user_for_destination(OTPChannel.EMAIL, destination)
        deliver = user is not None and not user.email_verified
        return await self._dispatch_otp(
            OTPChannel.EMAIL, destination, OTPPurpose.EMAIL_VERIFICATION, deliver=deliver
        )

    @_boundary
    async def authenticate(self, access_token: str) -> AuthContext:
        """Resolve a bearer access token to its caller."""
        claims = await self._verified_claims(access_token, TokenKind.ACCESS)
        if await self.sessions.is_claims_revoked(claims):
            raise InvalidTokenError("Token has been revoked", detail={"reason": "revoked"})
        user = await self._call(self.store.get_user, claims.user_id, operation="get_user")
        if not user:
            raise InvalidTokenError("Invalid token")
        if not user.is_active:
            raise AccountDisabledError("Account is disabled")
        return AuthContext(
            user_id=user.id,
            role=claims.role,
            token_id=claims.token_id,
            expires_at=claims.expires_at,
            user=user,
        )

    @_boundary
    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_sessions(user_id)

    @_boundary
    async def set_user_role(self, user_id: str, role: Union[Role, str]) -> User:
        """Change a role. Outstanding tokens carry the old role, so they are revoked."""
        try:
            role_value = Role(role).value
        except ValueError:
            raise ValidationError("unknown role", detail={"field": "role"})
        user = await self._call(
            self.store.update_user_role, user_id, role_value, operation="update_user_role"
        )
        if not user:
            raise NotFoundError("user not found")
        await self.sessions.revoke_all_for_user(user.id)
        logger.info("user_role_changed", user_id=user.id, role=role_value)
        return user

    @_boundary
    async def deactivate_user(self, user_id: str) -> User:
        user = await self._call(
            self.store.set_user_active, user_id, False, operation="set_user_active"
        )
        if not user:
            raise NotFoundError("user not found")
        await self.sessions.revoke_all_for_user(user.id)
        logger.info("user_deactivated", user_id=user.id)
        return user

    @_boundary
    async def cleanup_expired(self) -> Dict[str, int]:
        """Drop expired sessions, revocation entries and OTP challenges."""
        counts = await self._call(self.store.purge_expired, operation="purge_expired")
        if any(counts.values()):
            logger.info("auth_state_purged", **counts)
        return counts
