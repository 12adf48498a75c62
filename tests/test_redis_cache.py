"""RedisCache against an in-process stand-in for the redis.asyncio client."""

import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from studyauth.service.errors import ServiceUnavailableError
from studyauth.service.otp import OTPStore
from studyauth.service.sessions import SessionRegistry
from studyauth.storage.models import OTPChallenge, OTPOutcome, utcnow
from studyauth.storage.redis_cache import RedisCache


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.watched = {}
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def watch(self, key):
        self.watched[key] = self.client.versions.get(key, 0)

    async def unwatch(self):
        self.watched = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return self.client.data.get(key)

    def multi(self):
        self.queued = []

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))
        return self

    async def execute(self):
        await asyncio.sleep(0)
        for key, version in self.watched.items():
            if self.client.versions.get(key, 0) != version:
                raise WatchError("watched key changed")
        for key, value, ex in self.queued:
            await self.client.set(key, value, ex=ex)
        return [True] * len(self.queued)


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.versions = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        self.versions[key] = self.versions.get(key, 0) + 1
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def exists(self, key):
        self._check()
        return 1 if key in self.data else 0

    async def eval(self, script, numkeys, key, value, ttl):
        self._check()
        current = self.data.get(key)
        if current is None or float(current) < float(value):
            await self.set(key, value, ex=ttl)
            return 1
        return 0

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    instance = RedisCache.__new__(RedisCache)
    instance.redis_url = "redis://fake"
    instance.client = fake_redis
    return instance


class TestRevocationSet:
    async def test_first_revoke_wins(self, cache, fake_redis):
        expires = utcnow() + timedelta(minutes=10)

        assert await cache.revoke_token("t1", expires, user_id="u1") is True
        assert await cache.revoke_token("t1", expires, user_id="u1") is False
        assert await cache.is_token_revoked("t1") is True
        assert await cache.is_token_revoked("t2") is False
        assert 590 <= fake_redis.ttls["auth:revoked:t1"] <= 600

    async def test_past_expiry_clamped(self, cache, fake_redis):
        await cache.revoke_token("t1", utcnow() - timedelta(minutes=1))
        assert fake_redis.ttls["auth:revoked:t1"] == 1

    async def test_watermark_keeps_latest(self, cache):
        now = utcnow()
        later = now + timedelta(seconds=30)
        await cache.set_user_revocation("u1", later, now + timedelta(days=1))
        await cache.set_user_revocation("u1", now, now + timedelta(days=1))

        stored = await cache.get_user_revocation("u1")
        assert abs((stored - later).total_seconds()) < 0.001
        assert await cache.get_user_revocation("u2") is None

    async def test_registries_share_state(self, cache, memory_store):
        # Two service instances pointed at the same Redis
        first = SessionRegistry(memory_store, cache, refresh_ttl=timedelta(days=1))
        second = SessionRegistry(memory_store, cache, refresh_ttl=timedelta(days=1))
        expires = utcnow() + timedelta(minutes=5)

        assert await first.revoke("t1", expires) is True
        assert await second.revoke("t1", expires) is False
        assert await second.is_revoked("t1") is True
        assert memory_store.revoked_tokens == {}

    async def test_outage_maps_to_unavailable(self, cache, fake_redis, memory_store):
        registry = SessionRegistry(memory_store, cache, refresh_ttl=timedelta(days=1))
        fake_redis.down = True

        with pytest.raises(ServiceUnavailableError):
            await registry.is_revoked("t1")


class TestOTPChallenges:
    def _challenge(self):
        return OTPChallenge.new(
            "email", "dana@example.com", "login", "hash-1", ttl_seconds=300, max_attempts=2
        )

    async def test_round_trip_keeps_fields(self, cache):
        challenge = self._challenge()
        await cache.put_otp_challenge(challenge)

        loaded = await cache.get_otp_challenge("dana@example.com", "login")
        assert loaded.id == challenge.id
        assert loaded.expires_at == challenge.expires_at
        assert loaded.max_attempts == 2
        assert await cache.get_otp_challenge("dana@example.com", "password_reset") is None

    async def test_check_persists_attempts(self, cache):
        await cache.put_otp_challenge(self._challenge())

        outcome, challenge = await cache.check_otp_challenge("dana@example.com", "login", "wrong")
        assert outcome == OTPOutcome.MISMATCH
        assert challenge.attempt_count == 1
        stored = await cache.get_otp_challenge("dana@example.com", "login")
        assert stored.attempt_count == 1

        outcome, _ = await cache.check_otp_challenge("dana@example.com", "login", "hash-1")
        assert outcome == OTPOutcome.SUCCESS
        outcome, _ = await cache.check_otp_challenge("dana@example.com", "login", "hash-1")
        assert outcome == OTPOutcome.ALREADY_CONSUMED

    async def test_missing_challenge(self, cache):
        outcome, challenge = await cache.check_otp_challenge("x@example.com", "login", "h")
        assert outcome == OTPOutcome.NOT_FOUND
        assert challenge is None

    async def test_concurrent_checks_single_success(self, cache, memory_store):
        otp = OTPStore(memory_store, cache, hash_secret="secret")
        issued = await otp.issue("email", "dana@example.com", "login")

        results = await asyncio.gather(
            *(otp.verify("dana@example.com", "login", issued.code) for _ in range(5))
        )

        outcomes = [r.outcome for r in results]
        assert outcomes.count(OTPOutcome.SUCCESS) == 1
        assert outcomes.count(OTPOutcome.ALREADY_CONSUMED) == 4
        assert memory_store.otp_challenges == {}
