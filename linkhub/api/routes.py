from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response

from linkhub.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    EmailChangeRequest,
    EntitlementResponse,
    Envelope,
    FeatureCheckResponse,
    LoginChallengeResponse,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    RefreshRequest,
    SignupRequest,
    TwoFactorRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UsernameChangeRequest,
    UserResponse,
)
from linkhub.config import Settings
from linkhub.logging import get_logger
from linkhub.service.auth import AuthContext, AuthTokens, LoginResult
from linkhub.service.entitlements import Feature, has_feature
from linkhub.service.errors import NotFoundError, RateLimitedError, ValidationError
from linkhub.service.rate_limit import RateLimitDecision
from linkhub.service.runtime import get_runtime
from linkhub.service.two_factor import TwoFactorSetup, TwoFactorStatus
from linkhub.storage.models import TwoFactorMethod, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.retry_after or decision.window_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime,
    scope: str,
    identifier: str,
    limit: int,
    window_seconds: int = 60,
    *,
    response: Optional[Response] = None,
    client_ip: Optional[str] = None,
) -> RateLimitInfo:
    """Count the request against ``scope`` and raise 429 once it is over the limit."""
    decision = await runtime.auth.rate_limiter.check(
        scope, identifier, limit=limit, window_seconds=window_seconds, client_ip=client_ip
    )
    info = RateLimitInfo.from_decision(decision)
    if response is not None:
        info.apply_headers(response)
    if not decision.allowed:
        raise RateLimitedError(retry_after=decision.retry_after)
    return info


def _principal(runtime, authorization: Optional[str], access_cookie: Optional[str]) -> AuthContext:
    return runtime.auth.authenticate(authorization or access_cookie)


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    return _principal(get_runtime(), authorization, access_token)


def _apply_auth_cookies(response: Response, tokens: AuthTokens, settings: Settings) -> None:
    if not settings.auth_cookies_enabled:
        return
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=True, httponly=True, samesite="strict")


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        role=user.role.value,
        permissions=sorted(p.value for p in user.permissions),
        companies=[{"company_id": m.company_id, "role": m.role.value} for m in user.companies],
        created_at=user.created_at,
    )


def _auth_response(user: User, tokens: AuthTokens) -> AuthResponse:
    return AuthResponse(
        user=_user_response(user),
        access_token=tokens.access_token,
        access_expires_at=tokens.access_expires_at,
        refresh_token=tokens.refresh_token,
        refresh_expires_at=tokens.refresh_expires_at,
        token_type=tokens.token_type,
    )


def _login_envelope(result: LoginResult, response: Response, settings: Settings) -> Envelope:
    if result.challenge is not None:
        challenge = result.challenge
        methods = (
            [TwoFactorMethod.TOTP.value, TwoFactorMethod.EMAIL.value]
            if challenge.method == TwoFactorMethod.BOTH
            else [challenge.method.value]
        )
        return Envelope(
            status="ok",
            data=LoginChallengeResponse(
                session_id=challenge.session_id,
                methods=methods,
                expires_at=challenge.expires_at,
                email_sent=challenge.email_sent,
            ),
        )
    _apply_auth_cookies(response, result.tokens, settings)
    return Envelope(status="ok", data=_auth_response(result.user, result.tokens))


def _setup_response(setup: TwoFactorSetup) -> TwoFactorSetupResponse:
    return TwoFactorSetupResponse(
        method=setup.method.value,
        backup_codes=list(setup.backup_codes),
        secret=setup.secret,
        provisioning_uri=setup.provisioning_uri,
        session_id=setup.session_id,
        email_sent=setup.email_sent,
    )


def _status_response(status: TwoFactorStatus) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(
        totp_enabled=status.totp_enabled,
        email_enabled=status.email_enabled,
        totp_pending=status.totp_pending,
        backup_codes_remaining=status.backup_codes_remaining,
        methods=list(status.methods),
    )


def _require(value: Optional[str], field: str) -> str:
    if not value:
        raise ValidationError(f"{field} is required", detail={"field": field})
    return value


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create a new account on the free tier and sign it in.

    Raises:
        400: If the email, username or password is malformed
        403: If signup is disabled in settings
        409: If the email or username is already taken
        429: If this client is creating accounts too quickly
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        "signup",
        ip,
        runtime.settings.signup_rate_limit_per_minute,
        response=response,
        client_ip=ip,
    )
    result = await runtime.auth.signup(
        body.email, body.username, body.password, client_ip=ip
    )
    _apply_auth_cookies(response, result.tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result.user, result.tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials and either issue tokens or start a two-factor challenge.

    Raises:
        401: If credentials are invalid
        429: If this client is over the login or failed-login limit
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        "login",
        ip,
        runtime.settings.login_rate_limit_per_minute,
        response=response,
        client_ip=ip,
    )
    result = await runtime.auth.login(body.email, body.password, client_ip=ip)
    return _login_envelope(result, response, runtime.settings)


@router.post("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor(
    body: TwoFactorRequest,
    request: Request,
    response: Response,
    action: str = Query(..., pattern="^(verify|resend|setup|enable|disable|regenerate)$"),
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
):
    """Two-factor actions.

    ``verify`` and ``resend`` work on a login challenge and need no access
    token; ``setup``, ``enable``, ``disable`` and ``regenerate`` act on the
    signed-in account.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        "2fa",
        ip,
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
        client_ip=ip,
    )

    if action == "verify":
        result = await runtime.auth.verify_two_factor(
            _require(body.session_id, "session_id"), _require(body.code, "code"), client_ip=ip
        )
        return _login_envelope(result, response, runtime.settings)

    if action == "resend":
        challenge = await runtime.auth.resend_two_factor(
            _require(body.session_id, "session_id"), client_ip=ip
        )
        return Envelope(
            status="ok",
            data={
                "session_id": challenge.session_id,
                "email_sent": challenge.email_sent,
                "expires_at": challenge.expires_at.isoformat(),
            },
        )

    principal = _principal(runtime, authorization, access_token)
    if action == "setup":
        method = TwoFactorMethod(_require(body.method, "method"))
        setup = await runtime.auth.setup_two_factor(principal.user_id, method, client_ip=ip)
        return Envelope(status="ok", data=_setup_response(setup))

    if action == "enable":
        method = TwoFactorMethod(_require(body.method, "method"))
        status = await runtime.auth.enable_two_factor(
            principal.user_id,
            method,
            _require(body.code, "code"),
            session_id=body.session_id,
            client_ip=ip,
        )
        return Envelope(status="ok", data=_status_response(status))

    if action == "disable":
        revoked = await runtime.auth.disable_two_factor(
            principal.user_id, _require(body.password, "password"), client_ip=ip
        )
        return Envelope(status="ok", data={"disabled": True, "sessions_revoked": revoked})

    codes = await runtime.auth.regenerate_backup_codes(
        principal.user_id, _require(body.password, "password"), client_ip=ip
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=list(codes)))


@router.get("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    status = await runtime.auth.two_factor_status(principal.user_id)
    return Envelope(status="ok", data=_status_response(status))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate a refresh token; the old one stops working immediately.

    The token is read from the body first, then from the refresh cookie.
    """
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_token
    result = await runtime.auth.refresh(token, client_ip=_client_ip(request))
    _apply_auth_cookies(response, result.tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result.user, result.tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_token
    await runtime.auth.logout(token, client_ip=_client_ip(request))
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    """Change the password; every other session is signed out."""
    runtime = get_runtime()
    tokens = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        client_ip=_client_ip(request),
    )
    user = runtime.repository.get_user(principal.user_id)
    _apply_auth_cookies(response, tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/email", response_model=Envelope, tags=["auth"])
async def change_email(
    body: EmailChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    user = await runtime.auth.change_email(
        principal.user_id, body.email, body.password, client_ip=_client_ip(request)
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/username", response_model=Envelope, tags=["auth"])
async def change_username(
    body: UsernameChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    user = await runtime.auth.change_username(
        principal.user_id, body.username, client_ip=_client_ip(request)
    )
    return Envelope(status="ok", data=_user_response(user))


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(response: Response, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "read",
        principal.user_id,
        runtime.settings.read_rate_limit_per_minute,
        response=response,
    )
    user = runtime.repository.get_user(principal.user_id)
    if user is None:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_response(user))


@router.get("/entitlements", response_model=Envelope, tags=["account"])
async def entitlements(response: Response, principal: AuthContext = Depends(get_principal)):
    """Effective tier, features and limits, resolved from the current subscription."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "read",
        principal.user_id,
        runtime.settings.read_rate_limit_per_minute,
        response=response,
    )
    entitlement = runtime.auth.get_entitlement(principal.user_id)
    table = runtime.auth.subscriptions.table
    capabilities = table.for_tier(entitlement.effective_tier)
    return Envelope(
        status="ok",
        data=EntitlementResponse(
            effective_tier=entitlement.effective_tier.value,
            raw_tier=entitlement.raw_tier.value,
            status=entitlement.status.value,
            has_access=entitlement.has_access,
            access_until=entitlement.access_until,
            reason=entitlement.reason.value,
            features=sorted(f.value for f in capabilities.features),
            limits={name.value: value for name, value in capabilities.limits.items()},
            table_version=table.version,
        ),
    )


@router.get("/entitlements/features/{feature}", response_model=Envelope, tags=["account"])
async def feature_check(
    response: Response,
    feature: Feature = Path(...),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "read",
        principal.user_id,
        runtime.settings.read_rate_limit_per_minute,
        response=response,
    )
    entitlement = runtime.auth.get_entitlement(principal.user_id)
    table = runtime.auth.subscriptions.table
    required = table.minimum_tier_for(feature)
    return Envelope(
        status="ok",
        data=FeatureCheckResponse(
            feature=feature.value,
            allowed=has_feature(entitlement.effective_tier, feature, table),
            effective_tier=entitlement.effective_tier.value,
            required_tier=required.value if required else None,
        ),
    )
