from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Optional, TypeVar

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.credentials import INACTIVE_STATUSES, CredentialStore
from tenantgate.service.errors import (
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    ServiceError,
    ServiceUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    UserNotActiveError,
)
from tenantgate.service.keys import KeyHandle, KeyManager
from tenantgate.service.ledger import RefreshTokenLedger
from tenantgate.service.otp import OTPManager
from tenantgate.service.tokens import REFRESH, MintedToken, TokenClaims, TokenService
from tenantgate.storage.errors import BackendUnavailable
from tenantgate.storage.models import Clock, RefreshTokenRecord, User, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# Statuses whose existing refresh tokens are revoked on transition
_REVOKING_STATUSES = ("suspended", "inactive")


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user_id: str
    tenant_id: str
    unit_id: Optional[str] = None
    token_type: str = "Bearer"


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class CleanupReport:
    refresh_tokens: int = 0
    otp_challenges: int = 0


class AuthOrchestrator:
    """Composes credentials, OTP, tokens, ledger and keys into login flows.

    Every public coroutine runs under ``request_timeout_seconds``. Typed
    :class:`ServiceError` subclasses pass through untouched; storage or
    cache outages and deadline overruns become
    :class:`ServiceUnavailableError` and anything else is logged and
    reported as :class:`ServerError`.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        otp: OTPManager,
        tokens: TokenService,
        ledger: RefreshTokenLedger,
        keys: KeyManager,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self.credentials = credentials
        self.otp = otp
        self.tokens = tokens
        self.ledger = ledger
        self.keys = keys
        self.settings = settings
        self._clock = clock

    async def _guarded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.request_timeout_seconds)
        except ServiceError:
            raise
        except asyncio.TimeoutError as exc:
            logger.error(
                "operation_timeout",
                operation=operation,
                timeout_seconds=self.settings.request_timeout_seconds,
            )
            raise ServiceUnavailableError("request timed out") from exc
        except BackendUnavailable as exc:
            logger.error("backend_unavailable", operation=operation, backend=exc.backend)
            raise ServiceUnavailableError(f"{exc.backend} unavailable") from exc
        except Exception as exc:
            logger.exception("operation_failed", operation=operation, error_type=type(exc).__name__)
            raise ServerError("internal server error") from exc

    def _start_session(
        self,
        user: User,
        *,
        login_method: str,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        access = self.tokens.mint_access(user)
        refresh = self._record_refresh(
            user,
            device_info={"login_method": login_method},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            tenant_id=user.tenant_id,
            unit_id=user.unit_id,
            login_method=login_method,
        )
        return LoginResult(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_in,
            user_id=user.id,
            tenant_id=user.tenant_id,
            unit_id=user.unit_id,
        )

    def _admit_otp_subject(
        self, phone: str, *, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> LoginResult:
        user = self.credentials.admit_by_phone(phone, ip_addr=ip_addr, user_agent=user_agent)
        return self._start_session(user, login_method="otp", ip_addr=ip_addr, user_agent=user_agent)

    def _record_refresh(
        self,
        user: User,
        *,
        device_info: Optional[dict],
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> MintedToken:
        refresh = self.tokens.mint_refresh()
        self.ledger.create(
            RefreshTokenRecord(
                jti=refresh.jti,
                user_id=user.id,
                token_fingerprint=self.ledger.fingerprint(refresh.token),
                expires_at=refresh.claims.expires_at,
                tenant_id=user.tenant_id,
                unit_id=user.unit_id,
                device_info=device_info,
                ip_addr=ip_addr,
                user_agent=user_agent,
                created_at=self._clock(),
            )
        )
        return refresh

    async def login_with_password(
        self,
        email: str,
        password: str,
        tenant_id: str,
        unit_id: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        async def _run() -> LoginResult:
            user = await self.credentials.verify(
                email, password, tenant_id, ip_addr=ip_addr, user_agent=user_agent
            )
            if unit_id is not None and unit_id != user.unit_id:
                logger.warning("login_unit_mismatch", user_id=user.id, tenant_id=tenant_id)
                raise InvalidCredentialsError()
            return await asyncio.to_thread(
                self._start_session,
                user,
                login_method="password",
                ip_addr=ip_addr,
                user_agent=user_agent,
            )

        return await self._guarded("login_with_password", _run())

    async def send_otp(self, phone: str) -> None:
        await self._guarded("send_otp", self.otp.issue(phone))

    async def login_with_otp(
        self,
        phone: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        async def _run() -> LoginResult:
            subject = await self.otp.verify(phone, code)
            return await asyncio.to_thread(
                self._admit_otp_subject, subject.phone, ip_addr=ip_addr, user_agent=user_agent
            )

        return await self._guarded("login_with_otp", _run())

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshResult:
        return await self._guarded(
            "refresh",
            asyncio.to_thread(
                self._refresh, refresh_token, ip_addr=ip_addr, user_agent=user_agent
            ),
        )

    def _refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> RefreshResult:
        # The ledger's expiry is authoritative for refresh tokens
        claims = self.tokens.validate(refresh_token, token_type=REFRESH, verify_exp=False)
        try:
            record = self.ledger.get(claims.jti)
        except NotFoundError as exc:
            raise TokenInvalidError() from exc
        if record.revoked:
            logger.warning("refresh_token_reuse", jti=record.jti, user_id=record.user_id)
            raise TokenRevokedError()
        if record.expires_at <= self._clock():
            raise TokenExpiredError()
        if not self.ledger.matches(record, refresh_token):
            logger.warning("refresh_fingerprint_mismatch", jti=record.jti)
            raise TokenInvalidError()
        try:
            user = self.credentials.get_user(record.user_id)
        except NotFoundError as exc:
            raise TokenInvalidError() from exc
        if user.status in INACTIVE_STATUSES or user.is_locked(self._clock()):
            raise UserNotActiveError()

        access = self.tokens.mint_access(user)
        next_refresh = refresh_token
        if self.settings.refresh_token_rotation:
            if not self.ledger.revoke(record.jti, "rotated"):
                # A concurrent refresh already rotated this token
                raise TokenRevokedError()
            next_refresh = self._record_refresh(
                user,
                device_info=record.device_info,
                ip_addr=ip_addr or record.ip_addr,
                user_agent=user_agent or record.user_agent,
            ).token
        logger.info(
            "token_refreshed",
            user_id=user.id,
            jti=record.jti,
            rotated=self.settings.refresh_token_rotation,
        )
        return RefreshResult(
            access_token=access.token,
            refresh_token=next_refresh,
            expires_in=access.expires_in,
        )

    async def logout(self, refresh_token: str) -> None:
        def _run() -> None:
            claims = self.tokens.validate(refresh_token, token_type=REFRESH, verify_exp=False)
            try:
                self.ledger.revoke(claims.jti, "logout")
            except NotFoundError as exc:
                raise TokenInvalidError() from exc

        await self._guarded("logout", asyncio.to_thread(_run))

    async def revoke(self, jti: str, reason: str = "revoked") -> bool:
        return await self._guarded("revoke", asyncio.to_thread(self.ledger.revoke, jti, reason))

    async def revoke_all(self, user_id: str, reason: str = "revoke_all") -> int:
        return await self._guarded(
            "revoke_all", asyncio.to_thread(self.ledger.revoke_all, user_id, reason)
        )

    async def authenticate(self, access_token: str) -> TokenClaims:
        async def _run() -> TokenClaims:
            return self.tokens.validate(access_token)

        return await self._guarded("authenticate", _run())

    async def register_user(
        self,
        email: str,
        password: str,
        tenant_id: str,
        unit_id: Optional[str] = None,
        *,
        phone: Optional[str] = None,
        status: str = "active",
    ) -> User:
        return await self._guarded(
            "register_user",
            asyncio.to_thread(
                self.credentials.register,
                email,
                password,
                tenant_id=tenant_id,
                unit_id=unit_id,
                phone=phone,
                status=status,
            ),
        )

    async def reset_password(self, user_id: str, new_password: str) -> int:
        """Store a new password and revoke every refresh token of the user."""

        def _run() -> int:
            self.credentials.set_password(user_id, new_password)
            return self.ledger.revoke_all(user_id, "password_reset")

        return await self._guarded("reset_password", asyncio.to_thread(_run))

    async def update_user_status(self, user_id: str, status: str) -> User:
        async def _run() -> User:
            user = await self.credentials.update_status(user_id, status)
            if status in _REVOKING_STATUSES:
                await asyncio.to_thread(self.ledger.revoke_all, user_id, f"user_{status}")
            return user

        return await self._guarded("update_user_status", _run())

    def jwks(self) -> dict:
        return self.keys.jwks()

    def openid_configuration(self, base_url: str) -> dict:
        base = base_url.rstrip("/")
        return {
            "issuer": self.settings.jwt_issuer,
            "jwks_uri": f"{base}/.well-known/jwks.json",
            "token_endpoint": f"{base}/v1/auth/login",
            "response_types_supported": ["token"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "claims_supported": [
                "sub",
                "tenant_id",
                "unit_id",
                "jti",
                "iat",
                "exp",
                "iss",
                "aud",
            ],
        }

    async def rotate_signing_key(self) -> KeyHandle:
        # Key generation is CPU-bound (or a remote call); keep it off the loop
        return await self._guarded("rotate_signing_key", asyncio.to_thread(self.keys.rotate))

    async def cleanup(self) -> CleanupReport:
        def _run() -> CleanupReport:
            return CleanupReport(
                refresh_tokens=self.ledger.cleanup_expired(),
                otp_challenges=self.otp.cleanup_expired(),
            )

        return await self._guarded("cleanup", asyncio.to_thread(_run))
