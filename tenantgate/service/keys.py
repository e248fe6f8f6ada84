from __future__ import annotations

import base64
import hashlib
import json
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from tenantgate.logging import get_logger
from tenantgate.service.errors import ServiceUnavailableError
from tenantgate.storage.models import Clock, utcnow

logger = get_logger(__name__)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(segment: str) -> bytes:
    padding_chars = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding_chars)


def _int_to_b64url(value: int) -> str:
    length = max(1, (value.bit_length() + 7) // 8)
    return b64url_encode(value.to_bytes(length, "big"))


def jwk_thumbprint(public_key: rsa.RSAPublicKey) -> str:
    """RFC 7638 thumbprint of an RSA public key, used as its kid.

    Every process holding the same key material derives the same kid.
    """
    numbers = public_key.public_numbers()
    members = {"e": _int_to_b64url(numbers.e), "kty": "RSA", "n": _int_to_b64url(numbers.n)}
    canonical = json.dumps(members, separators=(",", ":"), sort_keys=True)
    return b64url_encode(hashlib.sha256(canonical.encode("ascii")).digest())


class KeyBackendError(Exception):
    """The signing backend rejected a request or could not be reached."""


@dataclass(frozen=True)
class KeyHandle:
    """Backend-neutral view of one signing key."""

    kid: str
    key_ref: str
    public_key: rsa.RSAPublicKey
    created_at: datetime
    retired_at: Optional[datetime] = None

    @property
    def is_current(self) -> bool:
        return self.retired_at is None

    def jwk(self) -> dict:
        numbers = self.public_key.public_numbers()
        return {
            "kty": "RSA",
            "kid": self.kid,
            "use": "sig",
            "alg": "RS256",
            "n": _int_to_b64url(numbers.n),
            "e": _int_to_b64url(numbers.e),
        }

    def verify(self, signature: bytes, data: bytes) -> bool:
        try:
            self.public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True


class KeyBackend(Protocol):
    """Capability interface implemented by every signing backend.

    Backends address keys by an opaque ``key_ref``; the kid published to
    validators is derived from the public key by :class:`KeyManager`.
    """

    name: str

    def generate_key(self) -> Tuple[str, rsa.RSAPublicKey]: ...

    def load_key(self, key_ref: str) -> rsa.RSAPublicKey: ...

    def sign(self, key_ref: str, data: bytes) -> bytes: ...

    def discard_key(self, key_ref: str) -> None: ...


class SoftwareKeyBackend:
    """RSA keys generated and held in process memory.

    Intended for development and tests. An optional PEM seed becomes the
    first key so a restarted process, or a second instance given the same
    file, keeps signing with the same material under the same kid.
    """

    name = "software"

    def __init__(self, key_size: int = 2048, *, private_key_pem: Optional[bytes] = None) -> None:
        self.key_size = key_size
        self._keys: Dict[str, rsa.RSAPrivateKey] = {}
        self._seed: Optional[rsa.RSAPrivateKey] = None
        if private_key_pem:
            loaded = serialization.load_pem_private_key(private_key_pem, password=None)
            if not isinstance(loaded, rsa.RSAPrivateKey):
                raise ValueError("signing key seed must be an RSA private key")
            self._seed = loaded

    def generate_key(self) -> Tuple[str, rsa.RSAPublicKey]:
        if self._seed is not None:
            private_key, self._seed = self._seed, None
        else:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        public_key = private_key.public_key()
        key_ref = jwk_thumbprint(public_key)
        self._keys[key_ref] = private_key
        return key_ref, public_key

    def load_key(self, key_ref: str) -> rsa.RSAPublicKey:
        private_key = self._keys.get(key_ref)
        if private_key is None:
            raise KeyBackendError(f"unknown key {key_ref}")
        return private_key.public_key()

    def sign(self, key_ref: str, data: bytes) -> bytes:
        private_key = self._keys.get(key_ref)
        if private_key is None:
            raise KeyBackendError(f"unknown key {key_ref}")
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def discard_key(self, key_ref: str) -> None:
        self._keys.pop(key_ref, None)


def _parse_public_pem(body: dict) -> rsa.RSAPublicKey:
    pem = body.get("public_key_pem")
    if not pem:
        raise KeyBackendError("hsm returned no public key")
    public_key = serialization.load_pem_public_key(pem.encode())
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise KeyBackendError("hsm returned a non-RSA key")
    return public_key


class RemoteHSMBackend:
    """Hardware-backed signing through an HSM gateway's HTTP API.

    Private key material never leaves the HSM; the gateway generates keys,
    returns public halves as PEM and signs messages with RSASSA-PKCS1-v1_5
    over SHA-256. Instances sharing one gateway attach to the same key with
    :meth:`load_key`.
    """

    name = "hsm"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        key_size: int = 2048,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.key_size = key_size
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers=headers,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "hsm_request_rejected",
                method=method,
                path=path,
                status_code=exc.response.status_code,
            )
            raise KeyBackendError(f"hsm rejected {method} {path}") from exc
        except httpx.HTTPError as exc:
            logger.error("hsm_request_failed", method=method, path=path, error_type=type(exc).__name__)
            raise KeyBackendError(f"hsm unreachable for {method} {path}") from exc
        if not response.content:
            return {}
        return response.json()

    def generate_key(self) -> Tuple[str, rsa.RSAPublicKey]:
        key_ref = f"tenantgate-{secrets.token_hex(8)}"
        body = self._request(
            "POST",
            "/keys",
            json={"key_id": key_ref, "key_type": "RSA", "key_size": self.key_size, "usage": "sign"},
        )
        return key_ref, _parse_public_pem(body)

    def load_key(self, key_ref: str) -> rsa.RSAPublicKey:
        return _parse_public_pem(self._request("GET", f"/keys/{key_ref}"))

    def sign(self, key_ref: str, data: bytes) -> bytes:
        body = self._request(
            "POST",
            f"/keys/{key_ref}/sign",
            json={"algorithm": "RS256", "message": b64url_encode(data)},
        )
        signature = body.get("signature")
        if not signature:
            raise KeyBackendError("hsm returned no signature")
        return b64url_decode(signature)

    def discard_key(self, key_ref: str) -> None:
        self._request("DELETE", f"/keys/{key_ref}")

    def close(self) -> None:
        self._client.close()


class KeyManager:
    """Owns the ring of signing keys: one current key plus retired keys still trusted.

    The ring is an immutable tuple swapped on rotation, so validations read
    a consistent snapshot without taking a lock. Retired keys stay
    verifiable for ``retention_seconds`` and only the newest
    ``max_retained_keys`` keys (current included) are kept.

    With ``initial_key_ref`` the first key is an existing backend key
    (shared by every instance) rather than a new one; that key is never
    deleted from the backend when it is pruned.
    """

    def __init__(
        self,
        backend: KeyBackend,
        *,
        retention_seconds: int,
        max_retained_keys: int = 3,
        initial_key_ref: Optional[str] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.backend = backend
        self._attached_ref = initial_key_ref
        self.retention = timedelta(seconds=retention_seconds)
        self.max_retained_keys = max(1, max_retained_keys)
        self._clock = clock
        self._rotate_lock = threading.Lock()
        self._ring: Tuple[KeyHandle, ...] = (self._generate(initial_key_ref),)
        logger.info("signing_key_initialized", backend=backend.name, kid=self._ring[0].kid)

    def _generate(self, key_ref: Optional[str] = None) -> KeyHandle:
        now = self._clock()
        try:
            if key_ref:
                public_key = self.backend.load_key(key_ref)
            else:
                key_ref, public_key = self.backend.generate_key()
        except KeyBackendError as exc:
            raise ServiceUnavailableError("signing backend unavailable", error_code="HSM_FAILED") from exc
        return KeyHandle(
            kid=jwk_thumbprint(public_key), key_ref=key_ref, public_key=public_key, created_at=now
        )

    def current_key(self) -> KeyHandle:
        return self._ring[0]

    def retained_keys(self) -> List[KeyHandle]:
        now = self._clock()
        return [handle for handle in self._ring if self._is_trusted(handle, now)]

    def _is_trusted(self, handle: KeyHandle, now: datetime) -> bool:
        return handle.retired_at is None or handle.retired_at + self.retention > now

    def verification_key(self, kid: str) -> Optional[KeyHandle]:
        now = self._clock()
        for handle in self._ring:
            if handle.kid == kid:
                return handle if self._is_trusted(handle, now) else None
        return None

    def sign(self, data: bytes, *, kid: Optional[str] = None) -> bytes:
        """Sign ``data`` with the current key, or with a specific retained key."""
        handle = self._ring[0] if kid is None else self.verification_key(kid)
        if handle is None:
            raise ServiceUnavailableError("signing key not available", error_code="HSM_FAILED")
        try:
            signature = self.backend.sign(handle.key_ref, data)
        except KeyBackendError as exc:
            logger.error("signing_failed", kid=handle.kid, backend=self.backend.name)
            raise ServiceUnavailableError("signing backend unavailable", error_code="HSM_FAILED") from exc
        return signature

    def rotate(self) -> KeyHandle:
        """Make a freshly generated key current and retire the previous one."""
        with self._rotate_lock:
            new_handle = self._generate()
            now = new_handle.created_at
            retired = [
                replace(handle, retired_at=now) if handle.retired_at is None else handle
                for handle in self._ring
            ]
            candidates = [new_handle] + retired
            kept = [h for h in candidates if self._is_trusted(h, now)][: self.max_retained_keys]
            dropped = [h for h in candidates if h not in kept]
            self._ring = tuple(kept)
        for handle in dropped:
            if handle.key_ref == self._attached_ref:
                continue
            try:
                self.backend.discard_key(handle.key_ref)
            except KeyBackendError:
                # The key is already out of the ring; a stale backend copy is harmless
                logger.warning("signing_key_discard_failed", kid=handle.kid)
        logger.info(
            "signing_key_rotated",
            kid=new_handle.kid,
            retained=[h.kid for h in kept],
            dropped=[h.kid for h in dropped],
        )
        return new_handle

    def jwks(self) -> dict:
        """Key discovery document listing every key a validator should trust."""
        return {"keys": [handle.jwk() for handle in self.retained_keys()]}
