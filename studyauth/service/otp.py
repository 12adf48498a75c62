from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from studyauth.logging import get_logger
from studyauth.service.sessions import await_bounded, run_bounded
from studyauth.storage.models import OTPChallenge, OTPOutcome
from studyauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class ChallengeStore(Protocol):
    def put_otp_challenge(self, challenge: OTPChallenge) -> None: ...

    def get_otp_challenge(self, destination: str, purpose: str) -> Optional[OTPChallenge]: ...

    def check_otp_challenge(
        self,
        destination: str,
        purpose: str,
        code_hash: str,
        *,
        now: Optional[datetime] = None,
        challenge_id: Optional[str] = None,
    ) -> tuple[OTPOutcome, Optional[OTPChallenge]]: ...


@dataclass(frozen=True)
class IssuedOTP:
    code: str
    challenge_id: str
    expires_at: datetime


@dataclass(frozen=True)
class OTPVerification:
    outcome: OTPOutcome
    challenge: Optional[OTPChallenge] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OTPOutcome.SUCCESS

    @property
    def attempt_count(self) -> int:
        return self.challenge.attempt_count if self.challenge else 0


class OTPStore:
    """Issues and checks single-use numeric codes keyed by (destination, purpose).

    Only an HMAC of each code is stored. Issuing replaces whatever challenge
    the key held, so the newest code is the only one that can succeed.
    """

    def __init__(
        self,
        store: ChallengeStore,
        cache: Optional[RedisCache] = None,
        *,
        hash_secret: str,
        code_length: int = 6,
        ttl_seconds: int = 300,
        max_attempts: int = 5,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self._hash_key = hash_secret.encode()
        self.code_length = code_length
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.timeout = timeout

    def generate_code(self, length: Optional[int] = None) -> str:
        """Uniform over the whole digit space, leading zeros included."""
        digits = length or self.code_length
        return str(secrets.randbelow(10**digits)).zfill(digits)

    def hash_code(self, destination: str, purpose: str, code: str) -> str:
        message = f"{purpose}:{destination}:{code}".encode()
        return hmac.new(self._hash_key, message, hashlib.sha256).hexdigest()

    async def issue(
        self,
        channel: str,
        destination: str,
        purpose: str,
        *,
        code_length: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> IssuedOTP:
        code = self.generate_code(code_length)
        challenge = OTPChallenge.new(
            channel,
            destination,
            purpose,
            self.hash_code(destination, purpose, code),
            ttl_seconds=ttl_seconds or self.ttl_seconds,
            max_attempts=max_attempts or self.max_attempts,
        )
        if self.cache:
            await await_bounded(
                self.cache.put_otp_challenge(challenge),
                timeout=self.timeout,
                operation="put_otp_challenge",
            )
        else:
            await run_bounded(
                self.store.put_otp_challenge,
                challenge,
                timeout=self.timeout,
                operation="put_otp_challenge",
            )
        logger.info("otp_issued", purpose=purpose, channel=channel, challenge_id=challenge.id)
        return IssuedOTP(code=code, challenge_id=challenge.id, expires_at=challenge.expires_at)

    async def verify(
        self,
        destination: str,
        purpose: str,
        submitted_code: str,
        *,
        challenge_id: Optional[str] = None,
    ) -> OTPVerification:
        code_hash = self.hash_code(destination, purpose, submitted_code.strip())
        if self.cache:
            outcome, challenge = await await_bounded(
                self.cache.check_otp_challenge(
                    destination, purpose, code_hash, challenge_id=challenge_id
                ),
                timeout=self.timeout,
                operation="check_otp_challenge",
            )
        else:
            outcome, challenge = await run_bounded(
                self.store.check_otp_challenge,
                destination,
                purpose,
                code_hash,
                challenge_id=challenge_id,
                timeout=self.timeout,
                operation="check_otp_challenge",
            )
        if outcome != OTPOutcome.SUCCESS:
            logger.warning(
                "otp_verification_failed",
                purpose=purpose,
                outcome=outcome.value,
                attempts=challenge.attempt_count if challenge else None,
            )
        return OTPVerification(outcome=outcome, challenge=challenge)
