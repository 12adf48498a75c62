from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from studyauth.logging import get_logger
from studyauth.storage.errors import ConstraintViolation, StorageUnavailable
from studyauth.storage.models import (
    OTPChallenge,
    OTPOutcome,
    Role,
    Session,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        password_hash TEXT,
        role TEXT NOT NULL DEFAULT 'student',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CONSTRAINT app_user_username_key UNIQUE (username),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_phone_key UNIQUE (phone)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        access_token_id TEXT NOT NULL,
        refresh_token_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        device_info TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        token_id TEXT PRIMARY KEY,
        user_id TEXT,
        revoked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_token_revocation (
        user_id TEXT PRIMARY KEY,
        revoked_before TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        destination TEXT NOT NULL,
        purpose TEXT NOT NULL,
        id TEXT NOT NULL,
        channel TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        consumed_at TIMESTAMPTZ,
        PRIMARY KEY (destination, purpose)
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store, revocation set and OTP table."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables when missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> str:
        name = getattr(exc.diag, "constraint_name", None) or ""
        for field in ("email", "username", "phone"):
            if field in name:
                return field
        return "unknown"

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            phone=row.get("phone"),
            password_hash=row.get("password_hash"),
            role=row.get("role") or Role.STUDENT.value,
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            email_verified_at=row.get("email_verified_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token_id=row["access_token_id"],
            refresh_token_id=row.get("refresh_token_id"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=row["id"],
            channel=row["channel"],
            destination=row["destination"],
            purpose=row["purpose"],
            code_hash=row["code_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempt_count=row.get("attempt_count", 0),
            max_attempts=row["max_attempts"],
            consumed=row.get("consumed", False),
            consumed_at=row.get("consumed_at"),
        )

    # users
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
    ) -> User:
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            phone=phone,
            password_hash=password_hash,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
            email_verified_at=now if email_verified else None,
            created_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, username, email, phone, password_hash, role, is_active,
                        email_verified, email_verified_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.phone,
                        user.password_hash,
                        user.role,
                        user.is_active,
                        user.email_verified,
                        user.email_verified_at,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def _fetch_user(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._fetch_user("phone", phone)

    def find_user_by_email_or_username(
        self, *, email: Optional[str] = None, username: Optional[str] = None
    ) -> Optional[User]:
        if email:
            return self.get_user_by_email(email)
        if username:
            return self.get_user_by_username(username)
        return None

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, "password_hash = %s", (password_hash,))

    def mark_email_verified(self, user_id: str, *, activate: bool = False) -> Optional[User]:
        if activate:
            return self._update_user(
                user_id,
                "email_verified = TRUE, email_verified_at = now(), is_active = TRUE",
                (),
            )
        return self._update_user(
            user_id, "email_verified = TRUE, email_verified_at = now()", ()
        )

    def update_last_login(self, user_id: str, at: datetime) -> None:
        self._update_user(user_id, "last_login_at = %s", (at,))

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (role,))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    # sessions
    def create_session(
        self,
        user_id: str,
        access_token_id: str,
        expires_at: datetime,
        *,
        refresh_token_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            access_token_id,
            expires_at,
            refresh_token_id=refresh_token_id,
            device_info=device_info,
            ip_addr=ip_addr,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, access_token_id, refresh_token_id,
                        created_at, expires_at, device_info, ip_addr
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.access_token_id,
                        sess.refresh_token_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.device_info,
                        sess.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE access_token_id = %s OR refresh_token_id = %s
                LIMIT 1
                """,
                (token_id, token_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(self, user_id: str, *, now: Optional[datetime] = None) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s RETURNING *", (user_id,)
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # revocation
    def revoke_token(
        self, token_id: str, expires_at: datetime, *, user_id: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO revoked_token (token_id, user_id, revoked_at, expires_at)
                VALUES (%s, %s, now(), %s)
                ON CONFLICT (token_id) DO UPDATE
                    SET revoked_at = now(), expires_at = EXCLUDED.expires_at
                    WHERE revoked_token.expires_at <= now()
                """,
                (token_id, user_id, expires_at),
            )
            return cur.rowcount == 1

    def is_token_revoked(self, token_id: str, *, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_token WHERE token_id = %s AND expires_at > %s",
                (token_id, now or utcnow()),
            ).fetchone()
        return row is not None

    def set_user_revocation(
        self, user_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_token_revocation (user_id, revoked_before, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                    SET revoked_before = GREATEST(user_token_revocation.revoked_before, EXCLUDED.revoked_before),
                        expires_at = GREATEST(user_token_revocation.expires_at, EXCLUDED.expires_at)
                """,
                (user_id, revoked_before, expires_at),
            )

    def get_user_revocation(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT revoked_before FROM user_token_revocation
                WHERE user_id = %s AND expires_at > %s
                """,
                (user_id, now or utcnow()),
            ).fetchone()
        return row["revoked_before"] if row else None

    # one-time passcodes
    def put_otp_challenge(self, challenge: OTPChallenge) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_challenge (
                    destination, purpose, id, channel, code_hash, created_at,
                    expires_at, attempt_count, max_attempts, consumed, consumed_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s, FALSE, NULL)
                ON CONFLICT (destination, purpose) DO UPDATE
                    SET id = EXCLUDED.id,
                        channel = EXCLUDED.channel,
                        code_hash = EXCLUDED.code_hash,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at,
                        attempt_count = 0,
                        max_attempts = EXCLUDED.max_attempts,
                        consumed = FALSE,
                        consumed_at = NULL
                """,
                (
                    challenge.destination,
                    challenge.purpose,
                    challenge.id,
                    challenge.channel,
                    challenge.code_hash,
                    challenge.created_at,
                    challenge.expires_at,
                    challenge.max_attempts,
                ),
            )

    def get_otp_challenge(self, destination: str, purpose: str) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE destination = %s AND purpose = %s",
                (destination, purpose),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def check_otp_challenge(
        self,
        destination: str,
        purpose: str,
        code_hash: str,
        *,
        now: Optional[datetime] = None,
        challenge_id: Optional[str] = None,
    ) -> tuple[OTPOutcome, Optional[OTPChallenge]]:
        now = now or utcnow()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    SELECT * FROM otp_challenge
                    WHERE destination = %s AND purpose = %s
                    FOR UPDATE
                    """,
                    (destination, purpose),
                ).fetchone()
                if not row:
                    return OTPOutcome.NOT_FOUND, None
                challenge = self._challenge_from_row(row)
                outcome = challenge.evaluate(code_hash, now=now, challenge_id=challenge_id)
                conn.execute(
                    """
                    UPDATE otp_challenge
                    SET attempt_count = %s, consumed = %s, consumed_at = %s
                    WHERE destination = %s AND purpose = %s AND id = %s
                    """,
                    (
                        challenge.attempt_count,
                        challenge.consumed,
                        challenge.consumed_at,
                        destination,
                        purpose,
                        challenge.id,
                    ),
                )
        return outcome, challenge

    def purge_expired(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        counts: Dict[str, int] = {}
        with self._connect() as conn:
            for key, table in (
                ("sessions", "auth_session"),
                ("revoked_tokens", "revoked_token"),
                ("user_revocations", "user_token_revocation"),
                ("otp_challenges", "otp_challenge"),
            ):
                cur = conn.execute(f"DELETE FROM {table} WHERE expires_at <= %s", (now,))
                counts[key] = cur.rowcount
        return counts
