from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from studyauth.storage.models import OTPChallenge, OTPOutcome, utcnow


class RedisCache:
    """Shared revocation set and OTP challenge table for multi-instance deployments."""

    # Keep the later watermark when two instances revoke concurrently
    _RAISE_WATERMARK_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if (not current) or tonumber(current) < tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
  return 1
end
return 0
"""

    _MAX_WATCH_RETRIES = 10

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _otp_key(destination: str, purpose: str) -> str:
        return f"auth:otp:{purpose}:{destination}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # revocation
    async def revoke_token(
        self, token_id: str, expires_at: datetime, *, user_id: Optional[str] = None
    ) -> bool:
        """SET NX so a token id is revoked at most once; returns True for the first caller."""
        added = await self.client.set(
            f"auth:revoked:{token_id}",
            user_id or "1",
            ex=self._ttl_seconds(expires_at),
            nx=True,
        )
        return bool(added)

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(await self.client.exists(f"auth:revoked:{token_id}"))

    async def set_user_revocation(
        self, user_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None:
        await self.client.eval(
            self._RAISE_WATERMARK_SCRIPT,
            1,
            f"auth:user_revoked_before:{user_id}",
            repr(revoked_before.timestamp()),
            self._ttl_seconds(expires_at),
        )

    async def get_user_revocation(self, user_id: str) -> Optional[datetime]:
        raw = await self.client.get(f"auth:user_revoked_before:{user_id}")
        if raw is None:
            return None
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)

    # one-time passcodes
    @staticmethod
    def _dump_challenge(challenge: OTPChallenge) -> str:
        return json.dumps(
            {
                "id": challenge.id,
                "channel": challenge.channel,
                "destination": challenge.destination,
                "purpose": challenge.purpose,
                "code_hash": challenge.code_hash,
                "created_at": challenge.created_at.isoformat(),
                "expires_at": challenge.expires_at.isoformat(),
                "attempt_count": challenge.attempt_count,
                "max_attempts": challenge.max_attempts,
                "consumed": challenge.consumed,
                "consumed_at": challenge.consumed_at.isoformat()
                if challenge.consumed_at
                else None,
            }
        )

    @staticmethod
    def _load_challenge(raw: str) -> OTPChallenge:
        data = json.loads(raw)
        consumed_at = data.get("consumed_at")
        return OTPChallenge(
            id=data["id"],
            channel=data["channel"],
            destination=data["destination"],
            purpose=data["purpose"],
            code_hash=data["code_hash"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            max_attempts=int(data["max_attempts"]),
            consumed=bool(data.get("consumed")),
            consumed_at=datetime.fromisoformat(consumed_at) if consumed_at else None,
        )

    async def put_otp_challenge(self, challenge: OTPChallenge) -> None:
        await self.client.set(
            self._otp_key(challenge.destination, challenge.purpose),
            self._dump_challenge(challenge),
            ex=self._ttl_seconds(challenge.expires_at),
        )

    async def get_otp_challenge(self, destination: str, purpose: str) -> Optional[OTPChallenge]:
        raw = await self.client.get(self._otp_key(destination, purpose))
        return self._load_challenge(raw) if raw else None

    async def check_otp_challenge(
        self,
        destination: str,
        purpose: str,
        code_hash: str,
        *,
        now: Optional[datetime] = None,
        challenge_id: Optional[str] = None,
    ) -> tuple[OTPOutcome, Optional[OTPChallenge]]:
        """Optimistic check-and-set: WATCH the key, evaluate, write back in MULTI."""
        now = now or utcnow()
        key = self._otp_key(destination, purpose)
        for _ in range(self._MAX_WATCH_RETRIES):
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if not raw:
                        await pipe.unwatch()
                        return OTPOutcome.NOT_FOUND, None
                    challenge = self._load_challenge(raw)
                    outcome = challenge.evaluate(
                        code_hash, now=now, challenge_id=challenge_id
                    )
                    pipe.multi()
                    pipe.set(
                        key,
                        self._dump_challenge(challenge),
                        ex=self._ttl_seconds(challenge.expires_at),
                    )
                    await pipe.execute()
                    return outcome, challenge
                except WatchError:
                    continue
        raise RedisError("otp challenge contention did not settle")
