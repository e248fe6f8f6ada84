from __future__ import annotations

import binascii
import json
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
    UnknownKeyError,
)
from tenantgate.service.keys import KeyManager, b64url_decode, b64url_encode
from tenantgate.storage.models import Clock, User, utcnow

logger = get_logger(__name__)

ALGORITHM = "RS256"
ACCESS = "access"
REFRESH = "refresh"

_COMMON_CLAIMS = ("jti", "iat", "exp", "iss", "aud", "token_type")
_SUBJECT_CLAIMS = ("sub", "tenant_id")


@dataclass(frozen=True)
class TokenClaims:
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
    token_type: str
    sub: Optional[str] = None
    tenant_id: Optional[str] = None
    unit_id: Optional[str] = None
    kid: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("kid")
        if self.token_type == REFRESH:
            for name in ("sub", "tenant_id", "unit_id"):
                payload.pop(name)
        return payload

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class MintedToken:
    token: str
    claims: TokenClaims

    @property
    def jti(self) -> str:
        return self.claims.jti

    @property
    def expires_in(self) -> int:
        return self.claims.exp - self.claims.iat


class TokenService:
    """Mints and validates RS256 bearer and refresh tokens.

    Tokens are compact JWS strings signed through the :class:`KeyManager`;
    the ``kid`` header always names the key that produced the signature so
    tokens minted before a rotation keep validating while that key is
    retained.
    """

    def __init__(self, keys: KeyManager, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.keys = keys
        self.settings = settings
        self._clock = clock

    def _timestamp(self, moment: datetime) -> int:
        return int(moment.timestamp())

    def _encode(self, claims: TokenClaims) -> MintedToken:
        handle = self.keys.current_key()
        header = {"alg": ALGORITHM, "typ": "JWT", "kid": handle.kid}
        header_enc = b64url_encode(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = b64url_encode(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.keys.sign(signing_input.encode(), kid=handle.kid)
        return MintedToken(
            token=f"{signing_input}.{b64url_encode(signature)}",
            claims=replace(claims, kid=handle.kid),
        )

    def mint_access(self, user: User) -> MintedToken:
        now = self._clock()
        claims = TokenClaims(
            sub=user.id,
            tenant_id=user.tenant_id,
            unit_id=user.unit_id,
            jti=str(uuid.uuid4()),
            iat=self._timestamp(now),
            exp=self._timestamp(now + timedelta(seconds=self.settings.access_token_ttl_seconds)),
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
            token_type=ACCESS,
        )
        return self._encode(claims)

    def mint_refresh(self) -> MintedToken:
        now = self._clock()
        claims = TokenClaims(
            jti=str(uuid.uuid4()),
            iat=self._timestamp(now),
            exp=self._timestamp(now + timedelta(seconds=self.settings.refresh_token_ttl_seconds)),
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
            token_type=REFRESH,
        )
        return self._encode(claims)

    def _decode_segment_json(self, segment: str) -> dict:
        try:
            decoded = json.loads(b64url_decode(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise TokenMalformedError() from exc
        if not isinstance(decoded, dict):
            raise TokenMalformedError()
        return decoded

    def validate(
        self,
        token: str,
        *,
        token_type: str = ACCESS,
        verify_exp: bool = True,
    ) -> TokenClaims:
        """Verify signature, then issuer, audience, type and expiry.

        Raises :class:`TokenMalformedError` for structural problems,
        :class:`TokenInvalidError` (or :class:`UnknownKeyError`) when the
        token cannot be trusted and :class:`TokenExpiredError` once
        ``exp <= now - leeway``. Refresh validation passes
        ``verify_exp=False`` because the ledger's expiry is authoritative.
        """
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3 or not all(parts):
            raise TokenMalformedError()
        header_b64, payload_b64, signature_b64 = parts

        header = self._decode_segment_json(header_b64)
        if header.get("alg") != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError()
        kid = header.get("kid")
        handle = self.keys.verification_key(kid) if isinstance(kid, str) else None
        if handle is None:
            logger.warning("jwt_unknown_kid", kid=kid)
            raise UnknownKeyError()
        try:
            signature = b64url_decode(signature_b64)
        except (binascii.Error, ValueError) as exc:
            raise TokenMalformedError() from exc
        if not handle.verify(signature, f"{header_b64}.{payload_b64}".encode()):
            logger.warning("jwt_signature_invalid", kid=kid)
            raise TokenInvalidError()

        payload = self._decode_segment_json(payload_b64)
        if any(payload.get(name) in (None, "") for name in _COMMON_CLAIMS):
            raise TokenMalformedError()
        try:
            iat = int(payload["iat"])
            exp = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise TokenMalformedError() from exc
        if payload["iss"] != self.settings.jwt_issuer:
            raise TokenInvalidError()
        if payload["aud"] != self.settings.jwt_audience:
            raise TokenInvalidError()
        if payload["token_type"] != token_type:
            raise TokenInvalidError()
        if token_type == ACCESS and any(payload.get(name) in (None, "") for name in _SUBJECT_CLAIMS):
            raise TokenMalformedError()
        if verify_exp:
            now_ts = self._clock().timestamp()
            if exp <= now_ts - self.settings.token_leeway_seconds:
                raise TokenExpiredError()

        return TokenClaims(
            sub=payload.get("sub"),
            tenant_id=payload.get("tenant_id"),
            unit_id=payload.get("unit_id"),
            jti=str(payload["jti"]),
            iat=iat,
            exp=exp,
            iss=payload["iss"],
            aud=payload["aud"],
            token_type=payload["token_type"],
            kid=kid,
        )
