from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

from redis.exceptions import RedisError

from studyauth.logging import get_logger
from studyauth.service.errors import OperationTimeoutError, ServiceUnavailableError
from studyauth.service.tokens import TokenClaims
from studyauth.storage.errors import StorageUnavailable
from studyauth.storage.models import Session
from studyauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        access_token_id: str,
        expires_at: datetime,
        *,
        refresh_token_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session: ...

    def find_session_by_token_id(self, token_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str, *, now: Optional[datetime] = None) -> List[Session]: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_token(
        self, token_id: str, expires_at: datetime, *, user_id: Optional[str] = None
    ) -> bool: ...

    def is_token_revoked(self, token_id: str, *, now: Optional[datetime] = None) -> bool: ...

    def set_user_revocation(
        self, user_id: str, revoked_before: datetime, expires_at: datetime
    ) -> None: ...

    def get_user_revocation(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[datetime]: ...


async def run_bounded(
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call on a worker thread with a deadline.

    Connectivity failures become ServiceUnavailableError and an exceeded
    deadline becomes OperationTimeoutError. Other exceptions propagate.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise OperationTimeoutError(f"{operation} timed out")
    except StorageUnavailable as exc:
        raise ServiceUnavailableError("credential store unavailable") from exc


async def await_bounded(coro: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a cache coroutine with a deadline, mapping Redis failures."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("cache_call_timeout", operation=operation, timeout=timeout)
        raise OperationTimeoutError(f"{operation} timed out")
    except RedisError as exc:
        logger.error("cache_call_failed", operation=operation, error=str(exc))
        raise ServiceUnavailableError("revocation store unavailable") from exc


class SessionRegistry:
    """Session audit records plus the token revocation set.

    Session rows always live in the credential store. The revocation set and
    the per-user revoke-all watermark live in Redis when a cache is given
    (shared across instances), otherwise in the credential store.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[RedisCache] = None,
        *,
        refresh_ttl: timedelta,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.refresh_ttl = refresh_ttl
        self.timeout = timeout

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create_session(
        self,
        user_id: str,
        access_token_id: str,
        expires_at: datetime,
        *,
        refresh_token_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Optional[str]:
        """Record a session; returns its id, or None when the write failed.

        Sessions are an audit aid, so no failure here is raised to the caller.
        """
        try:
            session = await run_bounded(
                self.store.create_session,
                user_id,
                access_token_id,
                expires_at,
                refresh_token_id=refresh_token_id,
                device_info=device_info,
                ip_addr=ip_addr,
                timeout=self.timeout,
                operation="create_session",
            )
        except Exception as exc:
            logger.warning(
                "session_record_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return session.id

    async def revoke(
        self, token_id: str, expires_at: datetime, *, user_id: Optional[str] = None
    ) -> bool:
        """Add ``token_id`` to the revocation set until ``expires_at``.

        Idempotent. Returns True only for the call that actually added it.
        """
        if self.cache:
            added = await await_bounded(
                self.cache.revoke_token(token_id, expires_at, user_id=user_id),
                timeout=self.timeout,
                operation="revoke_token",
            )
        else:
            added = await run_bounded(
                self.store.revoke_token,
                token_id,
                expires_at,
                user_id=user_id,
                timeout=self.timeout,
                operation="revoke_token",
            )
        if added:
            logger.info("token_revoked", user_id=user_id)
        return added

    async def is_revoked(self, token_id: str) -> bool:
        if self.cache:
            return await await_bounded(
                self.cache.is_token_revoked(token_id),
                timeout=self.timeout,
                operation="is_token_revoked",
            )
        return await run_bounded(
            self.store.is_token_revoked,
            token_id,
            timeout=self.timeout,
            operation="is_token_revoked",
        )

    async def _revoked_before(self, user_id: str) -> Optional[datetime]:
        if self.cache:
            return await await_bounded(
                self.cache.get_user_revocation(user_id),
                timeout=self.timeout,
                operation="get_user_revocation",
            )
        return await run_bounded(
            self.store.get_user_revocation,
            user_id,
            timeout=self.timeout,
            operation="get_user_revocation",
        )

    async def is_claims_revoked(self, claims: TokenClaims) -> bool:
        """True when the token id was revoked or a revoke-all covers its issue time."""
        if await self.is_revoked(claims.token_id):
            return True
        watermark = await self._revoked_before(claims.user_id)
        return watermark is not None and claims.issued_at < watermark

    async def session_for_token(self, token_id: str) -> Optional[Session]:
        return await run_bounded(
            self.store.find_session_by_token_id,
            token_id,
            timeout=self.timeout,
            operation="find_session",
        )

    async def end_session(self, session: Session) -> None:
        """Revoke every token of ``session`` and drop its record."""
        for token_id in session.token_ids():
            await self.revoke(token_id, session.expires_at, user_id=session.user_id)
        await run_bounded(
            self.store.delete_session,
            session.id,
            timeout=self.timeout,
            operation="delete_session",
        )

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await run_bounded(
            self.store.list_user_sessions,
            user_id,
            timeout=self.timeout,
            operation="list_sessions",
        )

    async def revoke_all_for_user(self, user_id: str) -> int:
        """Invalidate every token issued to ``user_id`` up to now.

        The watermark covers tokens whose session record was never written;
        recorded sessions are additionally revoked by id and deleted.
        Returns the number of session records removed.
        """
        now = self._now()
        expires_at = now + self.refresh_ttl
        if self.cache:
            await await_bounded(
                self.cache.set_user_revocation(user_id, now, expires_at),
                timeout=self.timeout,
                operation="set_user_revocation",
            )
        else:
            await run_bounded(
                self.store.set_user_revocation,
                user_id,
                now,
                expires_at,
                timeout=self.timeout,
                operation="set_user_revocation",
            )
        removed = await run_bounded(
            self.store.delete_user_sessions,
            user_id,
            timeout=self.timeout,
            operation="delete_user_sessions",
        )
        for session in removed:
            for token_id in session.token_ids():
                await self.revoke(token_id, session.expires_at, user_id=user_id)
        logger.info("user_sessions_revoked", user_id=user_id, sessions=len(removed))
        return len(removed)
