from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from studyauth.logging import get_logger
from studyauth.service.errors import ExpiredTokenError, InvalidTokenError
from studyauth.storage.models import User

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return max(0, int((self.expires_at - self.issued_at).total_seconds()))


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str
    token_id: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class TokenCodec:
    """Signs and verifies HS256 access/refresh tokens.

    Stateless: output depends only on the configured secret, issuer,
    audience, lifetimes and the input. Revocation is not checked here.
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway

    def ttl_for(self, kind: TokenKind) -> timedelta:
        return self.access_ttl if kind == TokenKind.ACCESS else self.refresh_ttl

    def issue(
        self, user: User, kind: TokenKind, *, now: Optional[datetime] = None
    ) -> IssuedToken:
        issued_at = now or datetime.now(timezone.utc)
        expires_at = issued_at + self.ttl_for(kind)
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "role": user.role,
            "jti": token_id,
            "token_type": kind.value,
            # Sub-second precision so revoke-all watermarks can order tokens
            "iat": round(issued_at.timestamp(), 6),
            "exp": round(expires_at.timestamp(), 6),
        }
        return IssuedToken(
            token=self._encode(payload),
            token_id=token_id,
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def verify(
        self,
        token: str,
        expected_kind: TokenKind,
        *,
        now: Optional[datetime] = None,
        allow_expired: bool = False,
    ) -> TokenClaims:
        """Return the claims of a valid token.

        Raises InvalidTokenError for a bad shape, signature, issuer, audience
        or kind, and ExpiredTokenError once ``exp`` has passed (unless
        ``allow_expired``).
        """
        payload = self._decode(token)
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token")
        if payload.get("token_type") != expected_kind.value:
            raise InvalidTokenError("Invalid token")
        user_id = payload.get("sub")
        token_id = payload.get("jti")
        if not isinstance(user_id, str) or not isinstance(token_id, str):
            raise InvalidTokenError("Invalid token")
        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError):
            raise InvalidTokenError("Invalid token")
        claims = TokenClaims(
            user_id=user_id,
            role=str(payload.get("role", "")),
            token_id=token_id,
            kind=expected_kind,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        current = now or datetime.now(timezone.utc)
        if not allow_expired and current >= expires_at + self.leeway:
            raise ExpiredTokenError("Token has expired")
        return claims

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        # Pin the algorithm to block alg confusion
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("Invalid token")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("Invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_payload_decode_failed")
            raise InvalidTokenError("Invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")
        return payload


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
