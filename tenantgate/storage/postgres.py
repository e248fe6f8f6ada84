from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantgate.logging import get_logger
from tenantgate.storage.errors import BackendUnavailable, ConstraintViolation
from tenantgate.storage.models import (
    LoginAttempt,
    OTPChallenge,
    RefreshTokenRecord,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        unit_id TEXT,
        phone TEXT UNIQUE,
        password_hash TEXT,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'suspended', 'locked')),
        failed_logins INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        identifier_type TEXT NOT NULL,
        attempt_type TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        error_reason TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        tenant_id TEXT,
        user_id UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_identifier_idx ON login_attempt (identifier, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id UUID PRIMARY KEY,
        phone TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        purpose TEXT NOT NULL DEFAULT 'login',
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_challenge_lookup_idx ON otp_challenge (phone, purpose, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        jti TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES auth_user (id),
        tenant_id TEXT,
        unit_id TEXT,
        token_fingerprint TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_reason TEXT,
        revoked_at TIMESTAMPTZ,
        device_info JSONB,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id) WHERE revoked = FALSE",
)

_REQUIRED_TABLES = ("auth_user", "login_attempt", "otp_challenge", "refresh_token")


class PostgresStore:
    """Postgres-backed relational store for users, audit rows, OTP challenges and refresh records.

    All state transitions that must be at-most-once are single conditional
    ``UPDATE ... WHERE ... RETURNING`` statements, so concurrent service
    instances cannot both win a race.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise BackendUnavailable("postgres", "database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row["tenant_id"],
            unit_id=row.get("unit_id"),
            phone=row.get("phone"),
            password_hash=row.get("password_hash"),
            status=row.get("status", "active"),
            failed_logins=row.get("failed_logins", 0) or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_attempt(row: Dict[str, Any]) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            identifier=row["identifier"],
            identifier_type=row["identifier_type"],
            attempt_type=row["attempt_type"],
            success=bool(row["success"]),
            error_reason=row.get("error_reason"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            tenant_id=row.get("tenant_id"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_challenge(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=str(row["id"]),
            phone=row["phone"],
            code_hash=row["code_hash"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            used_at=row.get("used_at"),
            attempts=row.get("attempts", 0) or 0,
            max_attempts=row.get("max_attempts", 3),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshTokenRecord:
        device_info = row.get("device_info")
        if isinstance(device_info, str):
            device_info = json.loads(device_info)
        return RefreshTokenRecord(
            id=str(row["id"]),
            jti=row["jti"],
            user_id=str(row["user_id"]),
            tenant_id=row.get("tenant_id"),
            unit_id=row.get("unit_id"),
            token_fingerprint=row["token_fingerprint"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
            revoked_reason=row.get("revoked_reason"),
            revoked_at=row.get("revoked_at"),
            device_info=device_info,
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        unit_id: Optional[str] = None,
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        status: str = "active",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_user (id, email, tenant_id, unit_id, phone, password_hash, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email.lower(), tenant_id, unit_id, phone, password_hash, status),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "phone" if "phone" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE email = %s AND tenant_id = %s",
                (email.lower(), tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_user WHERE phone = %s", (phone,)).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user SET password_hash = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, now or utcnow(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_status(
        self, user_id: str, status: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET status = %(status)s,
                    failed_logins = CASE WHEN %(status)s = 'locked' THEN failed_logins ELSE 0 END,
                    locked_until = CASE WHEN %(status)s = 'locked' THEN locked_until ELSE NULL END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {"status": status, "now": now or utcnow(), "user_id": user_id},
            ).fetchone()
        return self._row_to_user(row) if row else None

    def _insert_attempt(self, conn: psycopg.Connection, attempt: LoginAttempt) -> None:
        conn.execute(
            """
            INSERT INTO login_attempt (
                id, identifier, identifier_type, attempt_type, success, error_reason,
                ip_addr, user_agent, tenant_id, user_id, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                attempt.id,
                attempt.identifier,
                attempt.identifier_type,
                attempt.attempt_type,
                attempt.success,
                attempt.error_reason,
                attempt.ip_addr,
                attempt.user_agent,
                attempt.tenant_id,
                attempt.user_id,
                attempt.created_at,
            ),
        )

    def record_failed_login(
        self,
        user_id: str,
        attempt: LoginAttempt,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        """Increment the failure counter, lock at the threshold and append the audit row.

        Both statements share one transaction; a cancelled request leaves
        neither a counted failure without its audit row nor the reverse.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET failed_logins = (CASE WHEN status = 'locked' AND locked_until <= %(now)s
                                          THEN 0 ELSE failed_logins END) + 1,
                    status = CASE
                        WHEN (CASE WHEN status = 'locked' AND locked_until <= %(now)s
                                   THEN 0 ELSE failed_logins END) + 1 >= %(threshold)s THEN 'locked'
                        WHEN status = 'locked' AND locked_until <= %(now)s THEN 'active'
                        ELSE status END,
                    locked_until = CASE
                        WHEN (CASE WHEN status = 'locked' AND locked_until <= %(now)s
                                   THEN 0 ELSE failed_logins END) + 1 >= %(threshold)s THEN %(lock_until)s
                        WHEN status = 'locked' AND locked_until <= %(now)s THEN NULL
                        ELSE locked_until END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "threshold": threshold,
                    "lock_until": lock_until,
                    "now": now,
                    "user_id": user_id,
                },
            ).fetchone()
            if not row:
                return None
            self._insert_attempt(conn, attempt)
        return self._row_to_user(row)

    def record_successful_login(
        self, user_id: str, attempt: LoginAttempt, *, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET status = CASE WHEN status = 'locked' THEN 'active' ELSE status END,
                    failed_logins = 0,
                    locked_until = NULL,
                    last_login_at = %(now)s,
                    last_login_ip = %(ip)s,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {"now": now, "ip": attempt.ip_addr, "user_id": user_id},
            ).fetchone()
            if not row:
                return None
            self._insert_attempt(conn, attempt)
        return self._row_to_user(row)

    def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            self._insert_attempt(conn, attempt)

    def list_login_attempts(
        self,
        identifier: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[LoginAttempt]:
        query = "SELECT * FROM login_attempt WHERE identifier = %s"
        params: list[Any] = [identifier]
        if since is not None:
            query += " AND created_at >= %s"
            params.append(since)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    # one-time passcodes
    def create_otp_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_challenge (
                    id, phone, code_hash, purpose, expires_at, used, attempts, max_attempts, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.phone,
                    challenge.code_hash,
                    challenge.purpose,
                    challenge.expires_at,
                    challenge.used,
                    challenge.attempts,
                    challenge.max_attempts,
                    challenge.created_at,
                ),
            )
        return challenge

    def list_otp_challenges(self, phone: str, purpose: str, *, limit: int) -> List[OTPChallenge]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM otp_challenge
                WHERE phone = %s AND purpose = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (phone, purpose, limit),
            ).fetchall()
        return [self._row_to_challenge(row) for row in rows]

    def increment_otp_attempts(self, challenge_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET attempts = attempts + 1
                WHERE id = %s AND used = FALSE AND attempts < max_attempts
                RETURNING attempts
                """,
                (challenge_id,),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def consume_otp_challenge(self, challenge_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET used = TRUE, used_at = %(now)s
                WHERE id = %(id)s
                  AND used = FALSE
                  AND expires_at > %(now)s
                  AND attempts < max_attempts
                RETURNING id
                """,
                {"now": now, "id": challenge_id},
            ).fetchone()
        return row is not None

    def delete_otp_challenge(self, challenge_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM otp_challenge WHERE id = %s", (challenge_id,))

    def delete_expired_otp_challenges(self, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_challenge WHERE used = TRUE OR expires_at <= %s",
                (now,),
            )
            return result.rowcount

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, jti, user_id, tenant_id, unit_id, token_fingerprint, expires_at,
                        revoked, device_info, ip_addr, user_agent, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.jti,
                        record.user_id,
                        record.tenant_id,
                        record.unit_id,
                        record.token_fingerprint,
                        record.expires_at,
                        record.revoked,
                        json.dumps(record.device_info) if record.device_info else None,
                        record.ip_addr,
                        record.user_agent,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token jti exists", {"field": "jti"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})
        return record

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM refresh_token WHERE jti = %s", (jti,)).fetchone()
        return self._row_to_refresh(row) if row else None

    def revoke_refresh_token(self, jti: str, reason: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE jti = %s AND revoked = FALSE
                RETURNING jti
                """,
                (reason, now, jti),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE user_id = %s AND revoked = FALSE
                """,
                (reason, now, user_id),
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount
