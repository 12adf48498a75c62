from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class OTPChannel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class OTPPurpose(str, Enum):
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


class OTPOutcome(str, Enum):
    """Result of a single verification attempt against an OTP challenge."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    EXHAUSTED = "exhausted"
    ALREADY_CONSUMED = "already_consumed"


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    role: str = Role.STUDENT.value
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def public_profile(self) -> dict:
        """Serializable view that never includes the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "email_verified": self.email_verified,
            "email_verified_at": self.email_verified_at.isoformat()
            if self.email_verified_at
            else None,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """Audit record of one issued credential pair."""

    id: str
    user_id: str
    access_token_id: str
    created_at: datetime
    expires_at: datetime
    refresh_token_id: Optional[str] = None
    device_info: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token_id: str,
        expires_at: datetime,
        *,
        refresh_token_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token_id=access_token_id,
            refresh_token_id=refresh_token_id,
            created_at=utcnow(),
            expires_at=expires_at,
            device_info=device_info,
            ip_addr=ip_addr,
        )

    def token_ids(self) -> list[str]:
        return [tid for tid in (self.access_token_id, self.refresh_token_id) if tid]


@dataclass
class RevokedTokenEntry:
    token_id: str
    revoked_at: datetime
    expires_at: datetime
    user_id: Optional[str] = None


@dataclass
class UserRevocation:
    """Tokens of ``user_id`` issued before ``revoked_before`` are no longer honored."""

    user_id: str
    revoked_before: datetime
    expires_at: datetime


@dataclass
class OTPChallenge:
    id: str
    channel: str
    destination: str
    purpose: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    max_attempts: int = 5
    consumed: bool = False
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        channel: str,
        destination: str,
        purpose: str,
        code_hash: str,
        *,
        ttl_seconds: int,
        max_attempts: int,
    ) -> "OTPChallenge":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            channel=channel,
            destination=destination,
            purpose=purpose,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            max_attempts=max_attempts,
        )

    def evaluate(
        self,
        code_hash: str,
        *,
        now: datetime,
        challenge_id: Optional[str] = None,
    ) -> OTPOutcome:
        """Apply one verification attempt, mutating counters and the consumed flag.

        Backends call this while holding their per-key lock or transaction, then
        persist the mutated challenge.
        """
        if challenge_id and challenge_id != self.id:
            return OTPOutcome.SUPERSEDED
        if self.consumed:
            # Attempt exhaustion consumes without a consumed_at stamp
            if self.consumed_at is None:
                return OTPOutcome.EXHAUSTED
            return OTPOutcome.ALREADY_CONSUMED
        if now >= self.expires_at:
            return OTPOutcome.EXPIRED
        if self.attempt_count >= self.max_attempts:
            self.consumed = True
            return OTPOutcome.EXHAUSTED
        if not hmac.compare_digest(self.code_hash, code_hash):
            self.attempt_count += 1
            return OTPOutcome.MISMATCH
        self.consumed = True
        self.consumed_at = now
        return OTPOutcome.SUCCESS
