from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from tenantgate.api.schemas import (
    ClaimsResponse,
    Envelope,
    LoginResponse,
    OTPLoginRequest,
    PasswordLoginRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RevokeAllRequest,
    RevokeRequest,
    SendOTPRequest,
    UserResponse,
)
from tenantgate.logging import get_logger
from tenantgate.service.auth import LoginResult
from tenantgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    TokenMalformedError,
)
from tenantgate.service.runtime import get_runtime
from tenantgate.service.tokens import TokenClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _extract_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token", error_code="TOKEN_INVALID")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenMalformedError()
    return token.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_extract_bearer(authorization))


def _set_refresh_cookie(response: Response, refresh_token: str, max_age: int) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=max_age,
        path="/v1/auth",
    )


def _login_envelope(response: Response, result: LoginResult) -> Envelope:
    _set_refresh_cookie(
        response, result.refresh_token, get_runtime().settings.refresh_token_ttl_seconds
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            token_type=result.token_type,
            user_id=result.user_id,
            tenant_id=result.tenant_id,
            unit_id=result.unit_id,
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account within a tenant.

    Raises:
        400: If the password fails the password policy
        409: If the email (per tenant) or phone is already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.register_user(
        body.email,
        body.password,
        body.tenant_id,
        body.unit_id,
        phone=body.phone,
    )
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            email=user.email,
            tenant_id=user.tenant_id,
            unit_id=user.unit_id,
            phone=user.phone,
            status=user.status,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: PasswordLoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is inactive or suspended
        429: If the account is locked or the identifier is throttled
    """
    runtime = get_runtime()
    result = await runtime.auth.login_with_password(
        body.email,
        body.password,
        body.tenant_id,
        body.unit_id,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return _login_envelope(response, result)


@router.post("/auth/otp/send", response_model=Envelope, status_code=202, tags=["auth"])
async def send_otp(body: SendOTPRequest):
    """Send a one-time passcode to a phone over WhatsApp.

    The response is the same whether or not an account uses the phone.
    """
    runtime = get_runtime()
    await runtime.auth.send_otp(body.phone)
    return Envelope(
        status="ok",
        data={"message": "code sent", "expires_in": runtime.settings.otp_ttl_seconds},
    )


@router.post("/auth/otp/login", response_model=Envelope, tags=["auth"])
async def otp_login(
    body: OTPLoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    result = await runtime.auth.login_with_otp(
        body.phone,
        body.code,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return _login_envelope(response, result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    user_agent: Optional[str] = Header(None),
):
    """Exchange a refresh token (body or cookie) for a new access token."""
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise TokenMalformedError("missing refresh token")
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        token, ip_addr=_client_ip(request), user_agent=user_agent
    )
    if result.refresh_token != token:
        _set_refresh_cookie(response, result.refresh_token, runtime.settings.refresh_token_ttl_seconds)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            token_type=result.token_type,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise TokenMalformedError("missing refresh token")
    await get_runtime().auth.logout(token)
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth", secure=True, samesite="lax")
    return Envelope(status="ok", data={"message": "refresh token revoked"})


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke(body: RevokeRequest, claims: TokenClaims = Depends(get_claims)):
    """Revoke one of the caller's refresh tokens by jti."""
    runtime = get_runtime()
    try:
        record = runtime.ledger.get(body.jti)
    except NotFoundError:
        record = None
    if record is None or record.user_id != claims.sub:
        # Other users' jtis are reported as missing
        raise NotFoundError("refresh token not found")
    revoked = await runtime.auth.revoke(body.jti, body.reason)
    return Envelope(status="ok", data={"jti": body.jti, "revoked": True, "changed": revoked})


@router.post("/auth/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all(body: RevokeAllRequest, claims: TokenClaims = Depends(get_claims)):
    """Revoke every refresh token of the calling user."""
    if body.user_id != claims.sub:
        raise ForbiddenError("cannot revoke another user's tokens")
    count = await get_runtime().auth.revoke_all(body.user_id, body.reason)
    return Envelope(status="ok", data={"user_id": body.user_id, "revoked": count})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: TokenClaims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            sub=claims.sub or "",
            tenant_id=claims.tenant_id or "",
            unit_id=claims.unit_id,
            jti=claims.jti,
            iat=claims.iat,
            exp=claims.exp,
            iss=claims.iss,
            aud=claims.aud,
        ),
    )
