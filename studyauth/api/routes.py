from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from studyauth.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    OTPDispatchResponse,
    OTPRequest,
    OTPVerifyRequest,
    PasswordResetRequest,
    RegisterRequest,
    RoleChangeRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from studyauth.logging import get_logger
from studyauth.service.auth import (
    AccessTokenCredential,
    AuthContext,
    AuthResult,
    LogoutCredential,
    OTPDispatch,
    RefreshTokenCredential,
)
from studyauth.service.errors import AuthenticationError, ForbiddenError, ValidationError
from studyauth.service.runtime import Runtime
from studyauth.service.tokens import extract_bearer
from studyauth.storage.models import Role, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_principal(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return await runtime.auth.authenticate(token)


async def get_admin_user(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    if principal.role not in (Role.ADMIN.value, Role.SUPER_ADMIN.value):
        raise ForbiddenError("admin access required")
    return principal


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_info(request: Request, provided: Optional[str]) -> Optional[str]:
    return provided or request.headers.get("user-agent")


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.public_profile())


def _auth_response(result: AuthResult, *, created: bool = False) -> AuthResponse:
    return AuthResponse(
        user=_user_response(result.user),
        tokens=TokenResponse(**result.tokens.as_dict()),
        session_id=result.session_id,
        created=created,
    )


def _dispatch_response(dispatch: OTPDispatch) -> OTPDispatchResponse:
    return OTPDispatchResponse(**dispatch.as_dict())


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at.isoformat(),
        expires_at=session.expires_at.isoformat(),
        device_info=session.device_info,
        ip_addr=session.ip_addr,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.auth.register(
        email=body.email,
        username=body.username,
        password=body.password,
        phone=body.phone,
    )
    return Envelope(
        status="ok",
        data={
            "user": _user_response(user),
            "verification_required": not user.is_active,
        },
    )


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.login(
        body.password,
        email=body.email,
        username=body.username,
        device_info=_device_info(request, body.device_info),
        ip_addr=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/otp/request", response_model=Envelope, status_code=202)
async def request_otp(body: OTPRequest, runtime: Runtime = Depends(get_runtime)):
    dispatch = await runtime.auth.request_otp(
        email=body.email, phone=body.phone, purpose=body.purpose
    )
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/otp/verify", response_model=Envelope)
async def verify_otp(
    body: OTPVerifyRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.verify_otp(
        body.code,
        email=body.email,
        phone=body.phone,
        purpose=body.purpose,
        challenge_id=body.challenge_id,
        device_info=_device_info(request, body.device_info),
        ip_addr=_client_ip(request),
    )
    if result.tokens is None:
        return Envelope(
            status="ok", data={"purpose": result.purpose, "user": _user_response(result.user)}
        )
    data = AuthResponse(
        user=_user_response(result.user),
        tokens=TokenResponse(**result.tokens.as_dict()),
        session_id=result.session_id,
        created=result.created,
    )
    return Envelope(status="ok", data=data)


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=result.access.token, expires_in=result.access.expires_in
        ),
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Log out with either a refresh token in the body or a bearer access token."""
    refresh_token = body.refresh_token if body else None
    access_token = extract_bearer(authorization)
    if bool(refresh_token) == bool(access_token):
        raise ValidationError(
            "provide exactly one of a refresh token or a bearer access token",
            detail={"fields": ["refresh_token", "authorization"]},
        )
    credential: LogoutCredential = (
        RefreshTokenCredential(refresh_token)
        if refresh_token
        else AccessTokenCredential(access_token)
    )
    result = await runtime.auth.logout(credential)
    return Envelope(
        status="ok", data={"revoked": result.revoked, "sessions_ended": result.sessions_ended}
    )


@router.post("/password/forgot", response_model=Envelope, status_code=202)
async def forgot_password(
    body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)
):
    dispatch = await runtime.auth.forgot_password(email=body.email, phone=body.phone)
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/password/reset", response_model=Envelope)
async def reset_password(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.reset_password(
        body.code,
        body.new_password,
        email=body.email,
        phone=body.phone,
        confirm_password=body.confirm_password,
        challenge_id=body.challenge_id,
    )
    return Envelope(
        status="ok",
        data={"password_reset": True, "sessions_revoked": result.sessions_revoked},
    )


@router.post("/email/verification", response_model=Envelope, status_code=202)
async def request_email_verification(
    body: EmailVerificationRequest, runtime: Runtime = Depends(get_runtime)
):
    dispatch = await runtime.auth.request_email_verification(body.email)
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(status="ok", data=_user_response(principal.user))


@router.get("/sessions", response_model=Envelope)
async def list_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[_session_response(s) for s in sessions]),
    )


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: RoleChangeRequest,
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change a user's role. The user's outstanding tokens are revoked."""
    user = await runtime.auth.set_user_role(user_id, body.role)
    logger.info("admin_role_change", admin_id=principal.user_id, user_id=user.id, role=user.role)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str,
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.deactivate_user(user_id)
    logger.info("admin_deactivate_user", admin_id=principal.user_id, user_id=user.id)
    return Envelope(status="ok", data=_user_response(user))
