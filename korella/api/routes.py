from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from korella.api.schemas import (
    AuthResponse,
    DeactivateRequest,
    EmailVerificationRequest,
    Envelope,
    FeatureAccessResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    RegisterRequest,
    ResendVerificationRequest,
    SubscriptionResponse,
    UserResponse,
)
from korella.logging import get_logger
from korella.service.auth import AuthContext
from korella.service.errors import OAuthError
from korella.service.runtime import Runtime
from korella.service.tier_gate import TierRequirement
from korella.service.tokens import IssuedToken, TokenService
from korella.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

OAUTH_BINDING_COOKIE = "korella_oauth_binding"
_OAUTH_COOKIE_PATH = "/v1/auth/oauth"


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


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("SERVICE_UNAVAILABLE", "service is starting", status_code=503)
    return runtime


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the caller from the Authorization header or the session cookie."""

    runtime = get_runtime(request)
    if authorization:
        token = TokenService.extract_bearer(authorization)
    else:
        token = request.cookies.get(runtime.settings.session_cookie_name)
        if not token:
            # Raises the MISSING token error
            token = TokenService.extract_bearer(None)
    return await runtime.auth.authenticate(token)


def require_tier(required: TierRequirement, *, allow_expired_trial: bool = False):
    """Dependency factory gating a route on the caller's stored subscription tier."""

    async def _dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> User:
        runtime = get_runtime(request)
        return runtime.auth.gate.authorize(
            ctx.user.id, required, allow_expired_trial=allow_expired_trial
        )

    return _dependency


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> None:
    """Raise RATE_LIMITED when the bucket is empty; otherwise stamp the headers."""

    result = await runtime.auth.limiter.enforce(key, limit, window_seconds)
    if response is not None:
        for name, value in result.headers().items():
            response.headers[name] = value


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        email_verified=user.email_verified,
        account_status=user.account_status.value,
        subscription_tier=user.subscription_tier.value,
        trial_expires_at=user.trial_expires_at,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _apply_session_cookie(response: Response, runtime: Runtime, issued: IssuedToken) -> None:
    expires_at = issued.claims.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        runtime.settings.session_cookie_name,
        issued.token,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        runtime.settings.session_cookie_name,
        path="/",
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
    )


def _auth_envelope(user: User, issued: IssuedToken) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(user),
            access_token=issued.token,
            expires_at=issued.claims.expires_at,
            extended=issued.claims.extended,
        ),
    )


# -- registration and verification -------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a pending account and mail a verification link.

    Raises:
        400: If the password fails the strength policy
        409: If the email belongs to an existing, pending or deleted account
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await runtime.auth.register(
        body.email,
        body.password,
        body.full_name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data={
            "user": _user_to_response(user),
            "message": "Registration successful. Please check your email to verify your account.",
        },
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime(request)
    user = await runtime.auth.verify_email(
        body.token, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(
        status="ok",
        data={"user": _user_to_response(user), "message": "Email verified successfully"},
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, request: Request):
    runtime = get_runtime(request)
    message = await runtime.auth.resend_verification(
        body.email, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


# -- sessions ------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    ``remember_me`` selects the extended session lifetime. The token is
    returned in the body and set as an HttpOnly cookie.

    Raises:
        401: If credentials are invalid
        403: If the account is unverified, deactivated or suspended
        423: If the account is locked
        429: If rate limit exceeded for this client and email
    """
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    user, issued = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _apply_session_cookie(response, runtime, issued)
    return _auth_envelope(user, issued)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    await runtime.auth.logout(
        ctx, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=_user_to_response(ctx.user))


# -- passwords -----------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime(request)
    message = await runtime.auth.request_password_reset(
        body.email, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    # Same answer whether or not the account exists
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime(request)
    await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="Password reset successfully. Please login with your new password."
        ),
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Change the caller's password.

    Other sessions are signed out; the caller receives a fresh token.
    """
    runtime = get_runtime(request)
    issued = await runtime.auth.change_password(
        ctx,
        body.current_password,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _apply_session_cookie(response, runtime, issued)
    return _auth_envelope(ctx.user, issued)


@router.post("/auth/password-strength", response_model=Envelope, tags=["auth"])
async def password_strength(body: PasswordStrengthRequest, request: Request):
    runtime = get_runtime(request)
    report = runtime.auth.password_strength(body.password)
    return Envelope(
        status="ok",
        data=PasswordStrengthResponse(
            ok=report.ok,
            violations=[v.value for v in report.violations],
            messages=report.messages,
        ),
    )


# -- oauth ---------------------------------------------------------------------


@router.get("/auth/oauth/{provider}", tags=["auth"])
async def oauth_start(
    request: Request,
    provider: str = Path(..., max_length=32, description="OAuth provider (google, microsoft)"),
):
    """Redirect the browser to the provider's consent screen.

    A random binding value is set as an HttpOnly cookie; the callback must
    present it together with the state.
    """
    runtime = get_runtime(request)
    federation = runtime.auth.oauth
    try:
        await _enforce_rate_limit(runtime, f"oauth:start:{_client_ip(request)}", 20, 60)
        start = await runtime.auth.begin_oauth(provider)
    except OAuthError as exc:
        return RedirectResponse(federation.login_redirect_url(exc.error_code), status_code=302)
    redirect = RedirectResponse(start.authorization_url, status_code=302)
    redirect.set_cookie(
        OAUTH_BINDING_COOKIE,
        start.binding,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        max_age=runtime.settings.oauth_state_ttl_minutes * 60,
        path=_OAUTH_COOKIE_PATH,
    )
    return redirect


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=128),
):
    """Finish the provider round trip and land on the dashboard.

    Failures redirect to the login page with a stable ``error`` code.
    """
    runtime = get_runtime(request)
    federation = runtime.auth.oauth
    try:
        user, issued = await runtime.auth.complete_oauth(
            provider,
            code=code,
            state=state,
            binding=request.cookies.get(OAUTH_BINDING_COOKIE),
            error=error,
            ip_address=_client_ip(request),
            user_agent=_user_agent(request),
        )
    except OAuthError as exc:
        logger.warning("oauth_callback_failed", provider=provider, code=exc.error_code)
        redirect = RedirectResponse(federation.login_redirect_url(exc.error_code), status_code=302)
    except Exception as exc:
        logger.exception(
            "oauth_callback_error", provider=provider, error_type=type(exc).__name__
        )
        redirect = RedirectResponse(
            federation.login_redirect_url(OAuthError.UNKNOWN_ERROR), status_code=302
        )
    else:
        logger.info("oauth_callback_succeeded", provider=provider, user_id=user.id)
        redirect = RedirectResponse(federation.dashboard_url(), status_code=302)
        _apply_session_cookie(redirect, runtime, issued)
    redirect.delete_cookie(OAUTH_BINDING_COOKIE, path=_OAUTH_COOKIE_PATH)
    return redirect


@router.delete("/auth/oauth/{provider}", response_model=Envelope, tags=["auth"])
async def oauth_unlink(
    request: Request,
    provider: str = Path(..., max_length=32),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    runtime.auth.unlink_oauth(
        ctx, provider, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=f"Unlinked {provider}"))


# -- account and subscription --------------------------------------------------


@router.post("/account/deactivate", response_model=Envelope, tags=["account"])
async def deactivate_account(
    body: DeactivateRequest,
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    user = await runtime.auth.deactivate_self(
        ctx,
        body.password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/subscription", response_model=Envelope, tags=["subscription"])
async def get_subscription(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime(request)
    status = runtime.auth.subscription_status(ctx)
    return Envelope(
        status="ok",
        data=SubscriptionResponse(
            tier=status.tier.value,
            is_trial=status.is_trial,
            is_trial_expired=status.is_trial_expired,
            trial_days_remaining=status.trial_days_remaining,
            trial_expires_at=status.trial_expires_at,
        ),
    )


@router.get("/features/{feature}/access", response_model=Envelope, tags=["subscription"])
async def get_feature_access(
    request: Request,
    feature: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    access = runtime.auth.gate.feature_access(ctx.user.id, feature)
    return Envelope(status="ok", data=FeatureAccessResponse(**access))
