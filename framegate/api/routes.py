from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from framegate.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionInfo,
    SessionListResponse,
    SessionStateResponse,
    TokenPairResponse,
    UserResponse,
    VerifyEmailRequest,
)
from framegate.logging import get_logger
from framegate.service.auth import AuthContext, AuthResult
from framegate.service.errors import ForbiddenError, NotFoundError
from framegate.service.runtime import Runtime, get_runtime
from framegate.service.tokens import extract_bearer
from framegate.storage.common import parse_ip_address
from framegate.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# same reply whether or not the account exists
_FORGOT_PASSWORD_MESSAGE = "if an account exists for that address, a reset link has been sent"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def client_ip(request: Request) -> str:
    raw = request.client.host if request.client else None
    return parse_ip_address(raw) or "unknown"


def _access_token_from(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    return extract_bearer(authorization) or cookie_token


async def get_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    token = _access_token_from(authorization, access_cookie)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return await get_runtime().auth.authenticate(token)


def require_role(*roles: Role):
    """Dependency factory: the caller must hold one of ``roles``."""
    allowed = frozenset(roles)

    async def _guard(principal: AuthContext = Depends(get_user)) -> AuthContext:
        if principal.role not in allowed:
            logger.warning(
                "role_denied",
                user_id=principal.user_id,
                role=principal.role.value,
                required=sorted(role.value for role in allowed),
            )
            raise ForbiddenError(
                "insufficient permissions",
                detail={"required_roles": sorted(role.value for role in allowed)},
            )
        return principal

    return _guard


async def _enforce_auth_limit(runtime: Runtime, request: Request, response: Response) -> None:
    decision = await runtime.rate_limiter.check_auth(client_ip(request))
    decision.apply_headers(response)
    decision.raise_if_blocked("too many authentication requests; try again later")


def _apply_auth_cookies(response: Response, runtime: Runtime, result: AuthResult) -> None:
    settings = runtime.settings
    common = dict(
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        domain=settings.cookie_domain,
        path="/",
    )
    response.set_cookie(
        ACCESS_COOKIE, result.access_token, max_age=runtime.tokens.access_ttl_seconds, **common
    )
    response.set_cookie(
        REFRESH_COOKIE, result.refresh_token, max_age=runtime.tokens.refresh_ttl_seconds, **common
    )


def _clear_auth_cookies(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.secure_cookies,
            httponly=True,
            samesite="strict",
        )


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        session_id=result.session_id,
        refresh_expires_at=result.refresh_expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    A verification email is sent in the background.

    Raises:
        400: password does not meet the policy
        409: email already registered
        429: auth rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_auth_limit(runtime, request, response)
    result = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        business_name=body.business_name,
        user_agent=request.headers.get("user-agent"),
        ip_addr=client_ip(request),
    )
    _apply_auth_cookies(response, runtime, result)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for a token pair.

    Raises:
        401: unknown email or wrong password (same message for both)
        403: account deactivated
        423: account locked; ``details.lock_until`` says until when
        429: auth or credential-failure limit exceeded
    """
    runtime = get_runtime()
    await _enforce_auth_limit(runtime, request, response)
    result = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=client_ip(request),
    )
    _apply_auth_cookies(response, runtime, result)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error("token_invalid", "refresh token required", status_code=401)
    result = await runtime.auth.refresh(
        token,
        user_agent=request.headers.get("user-agent"),
        ip_addr=client_ip(request),
    )
    _apply_auth_cookies(response, runtime, result)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            session_id=result.session_id,
            refresh_expires_at=result.refresh_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if token:
        record = runtime.sessions.get_refresh_token(token)
        if record is not None and record.user_id != principal.user_id:
            raise _http_error("forbidden", "cannot revoke another user's session", status_code=403)
    await runtime.auth.logout(token)
    _clear_auth_cookies(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    _clear_auth_cookies(response, runtime)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_auth_limit(runtime, request, response)
    decision = await runtime.rate_limiter.check_password_reset(client_ip(request))
    decision.raise_if_blocked("too many password reset requests; try again later")
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_FORGOT_PASSWORD_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_auth_limit(runtime, request, response)
    await runtime.auth.reset_password(body.token, body.new_password)
    _clear_auth_cookies(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="password has been reset"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_auth_limit(runtime, request, response)
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    decision = await runtime.rate_limiter.check_verification(principal.user_id)
    decision.raise_if_blocked("too many verification emails; try again later")
    await runtime.auth.resend_verification(principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="verification email sent"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password and sign out every device, this one included."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_auth_cookies(response, runtime)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    response: Response,
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    token = _access_token_from(authorization, access_cookie)
    if token and runtime.tokens.is_expiring_soon(token):
        response.headers["X-Token-Expiring"] = "true"
    return Envelope(status="ok", data=UserResponse.from_user(principal.user))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_state(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    runtime = get_runtime()
    state = await runtime.auth.session_state(
        _access_token_from(authorization, access_cookie),
        x_refresh_token or refresh_cookie,
    )
    return Envelope(status="ok", data=SessionStateResponse(state=state.value))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    records = await runtime.auth.list_sessions(principal.user_id)
    items = [SessionInfo.from_record(record, principal.session_id) for record in records]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data=MessageResponse(message="session revoked"))


@router.delete("/auth/users/{user_id}", response_model=Envelope, tags=["admin"])
async def delete_user(user_id: str, principal: AuthContext = Depends(require_role(Role.ADMIN))):
    """Delete an account and revoke its sessions. Admins only."""
    if user_id == principal.user_id:
        raise _http_error("conflict", "administrators cannot delete their own account", status_code=409)
    runtime = get_runtime()
    if not await runtime.auth.delete_user(user_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})
    return Envelope(status="ok", data=MessageResponse(message="user deleted"))
