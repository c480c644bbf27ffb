"""Async distributed token semaphore backed by Redis.

AIOSemaphore runs the same protocol as Semaphore over ``redis.asyncio`` and
uses the same keys, so sync and async clients can share one semaphore.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Literal, TypeVar, cast

from pottery import ContextTimer
from redis.exceptions import RedisError, WatchError

from .exceptions import InconsistentStateError, SemaphoreError
from .keys import (
    API_VERSION,
    CREATE_GUARD_TTL,
    DEFAULT_DELIMITER,
    DEFAULT_NAMESPACE,
    SemaphoreKeys,
    decode,
    decode_token,
    parse_float,
    parse_resource_count,
    unique_token,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis as AIORedis
    from redis.asyncio.client import Pipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AIOSemaphore:
    """Async distributed Redis-powered token semaphore.

    Usage:
        >>> import asyncio
        >>> from redis.asyncio import Redis
        >>> async def main():
        ...     sem = AIOSemaphore('my-resource', resource_count=3, redis=Redis())
        ...     token = await sem.lock(timeout=5)
        ...     if token:
        ...         try:
        ...             # Critical section with limited concurrency
        ...             pass
        ...         finally:
        ...             await sem.unlock()
        >>> asyncio.run(main())

        >>> # Or use as async context manager
        >>> async with sem as token:
        ...     pass

    Takes the same arguments as Semaphore, with an async Redis client. Give
    every task its own instance; the held-token stack is not shared safely.
    """

    _SWEEP_TTL = 10  # seconds the stale sweep may hold its mutex

    def __init__(
        self,
        name: str,
        *,
        resource_count: int = 1,
        stale_client_timeout: float | None = None,
        expiration: int | None = None,
        use_local_time: bool = False,
        redis: AIORedis | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        namespace_delimiter: str = DEFAULT_DELIMITER,
    ) -> None:
        if resource_count < 0:
            raise ValueError("Semaphore resource_count must be non-negative")
        if stale_client_timeout is not None and stale_client_timeout <= 0:
            raise ValueError("stale_client_timeout must be positive")
        if expiration is not None and expiration <= 0:
            raise ValueError("expiration must be positive")

        self._name = name
        self._resource_count = resource_count
        self._stale_client_timeout = stale_client_timeout
        self._expiration = expiration
        self._use_local_time = use_local_time
        self._keys = SemaphoreKeys.for_name(
            name, namespace=namespace, delimiter=namespace_delimiter
        )
        self._tokens: list[str] = []

        if redis is None:
            from redis.asyncio import Redis as AIORedisClient

            redis = AIORedisClient()
        self._redis = redis

    @property
    def name(self) -> str:
        return self._name

    @property
    def resource_count(self) -> int:
        return self._resource_count

    @property
    def keys(self) -> SemaphoreKeys:
        return self._keys

    @property
    def tokens(self) -> list[str]:
        """Tokens held by this instance, most recently acquired last."""
        return list(self._tokens)

    async def exists(self) -> bool:
        """Return True if the pool has been created in Redis."""
        return bool(await self._redis.exists(self._keys.exists))

    async def ensure_initialized(self) -> None:
        """Create the pool in Redis unless some client already did.

        Raises:
            InconsistentStateError: If the stored pool was created with a
                different resource count or protocol version
            ProtocolViolationError: If the existence marker is unreadable
        """
        while True:
            created = await self._redis.set(
                self._keys.exists,
                self._resource_count,
                nx=True,
                ex=CREATE_GUARD_TTL,
            )
            if created:
                await self._create()
                return

            marker = await self._redis.get(self._keys.exists)
            if marker is not None:
                break

        found = parse_resource_count(self._keys.exists, marker)
        if found != self._resource_count:
            raise InconsistentStateError(
                self._keys.exists, str(self._resource_count), str(found)
            )

        version = await self._redis.get(self._keys.version)
        if version is None:
            logger.info("Backfilling protocol version of semaphore %r", self._name)
            await self._redis.set(self._keys.version, API_VERSION)
        elif decode(version) != API_VERSION:
            raise InconsistentStateError(
                self._keys.version, API_VERSION, decode(version)
            )

    async def _create(self) -> None:
        logger.debug(
            "Creating semaphore %r with %d tokens", self._name, self._resource_count
        )
        async with self._redis.pipeline() as pipe:
            pipe.delete(self._keys.grabbed, self._keys.available)
            if self._resource_count:
                pipe.rpush(self._keys.available, *range(self._resource_count))
            pipe.set(self._keys.version, API_VERSION)
            pipe.persist(self._keys.exists)
            self._set_expiration(pipe)
            await pipe.execute()

    def _set_expiration(self, pipe: Pipeline) -> None:
        if self._expiration is not None:
            for key in self._keys.managed:
                pipe.expire(key, self._expiration)

    async def available_count(self) -> int:
        """Return the number of tokens left, the resource count if never created."""
        if not await self.exists():
            return self._resource_count
        return await self._redis.llen(self._keys.available)

    async def lock(
        self,
        timeout: float | None = None,
        action: Callable[[str], Awaitable[T]] | None = None,
    ) -> str | T | Literal[False]:
        """Acquire a token from the semaphore.

        Args:
            timeout: None to wait forever, a positive number of seconds to
                wait at most, zero or less to return at once
            action: Coroutine function called with the token, which is
                released again once the action returns or raises

        Returns:
            The token, or the action's result if an action was given, or
            False if no token could be acquired in time
        """
        await self.ensure_initialized()
        if self._stale_client_timeout is not None:
            await self.release_stale_locks()

        if timeout is None or timeout > 0:
            popped = await self._redis.blpop(
                [self._keys.available], timeout=timeout or 0
            )
            raw_token = popped[1] if popped else None
        else:
            raw_token = await self._redis.lpop(self._keys.available)

        if raw_token is None:
            logger.debug("No token of semaphore %r available", self._name)
            return False

        token = decode_token(self._keys.available, raw_token)
        self._tokens.append(token)
        acquired_at = await self.current_time()
        async with self._redis.pipeline() as pipe:
            pipe.hset(self._keys.grabbed, token, acquired_at)
            self._set_expiration(pipe)
            await pipe.execute()

        if action is None:
            return token

        try:
            return await action(token)
        finally:
            if token in self._tokens:
                self._tokens.remove(token)
            await self.signal(token)

    wait = lock

    async def unlock(self) -> str | Literal[False]:
        """Release the most recently acquired token, False if none is held."""
        if not self._tokens:
            logger.debug("Nothing to release for semaphore %r", self._name)
            return False
        token = self._tokens.pop()
        await self.signal(token)
        return token

    async def locked(self, token: str | None = None) -> bool:
        """Return True if ``token`` is grabbed by anyone.

        Without a token, return True if any token held by this instance is
        still grabbed.
        """
        if token is not None:
            return bool(await self._redis.hexists(self._keys.grabbed, token))
        for held in self._tokens:
            if await self.locked(held):
                return True
        return False

    async def signal(self, token: str | None = None) -> str:
        """Put ``token`` back into the pool, or add a new unique one."""
        if token is None:
            token = unique_token(await self.all_tokens())

        async with self._redis.pipeline() as pipe:
            self._push_back(pipe, token)
            await pipe.execute()
        return token

    def _push_back(self, pipe: Pipeline, token: str) -> None:
        pipe.hdel(self._keys.grabbed, token)
        pipe.lrem(self._keys.available, 0, token)
        pipe.lpush(self._keys.available, token)
        self._set_expiration(pipe)

    async def all_tokens(self) -> list[str]:
        """Return available and grabbed tokens from one atomic snapshot."""
        async with self._redis.pipeline() as pipe:
            pipe.lrange(self._keys.available, 0, -1)
            pipe.hkeys(self._keys.grabbed)
            available, grabbed = await pipe.execute()
        return [decode(token) for token in (*available, *grabbed)]

    async def delete(self) -> None:
        """Remove every key of this semaphore from Redis."""
        await self._redis.delete(*self._keys.all)
        self._tokens.clear()

    async def release_stale_locks(self) -> int:
        """Hand back tokens whose holders exceeded ``stale_client_timeout``.

        Returns:
            The number of tokens put back into the pool
        """
        if self._stale_client_timeout is None:
            return 0

        released = 0
        async with self._expiring_mutex(
            self._keys.release_locks, self._SWEEP_TTL
        ) as owned:
            if not owned:
                return 0

            with ContextTimer() as timer:
                now = await self.current_time()
                grabbed = await self._redis.hgetall(self._keys.grabbed)
                for raw_token, raw_acquired_at in grabbed.items():
                    token = decode_token(self._keys.grabbed, raw_token)
                    acquired_at = parse_float(self._keys.grabbed, raw_acquired_at)
                    if acquired_at + self._stale_client_timeout >= now:
                        continue
                    if await self._reclaim(token, raw_acquired_at):
                        logger.info(
                            "Released stale token %r of semaphore %r grabbed at %f",
                            token,
                            self._name,
                            acquired_at,
                        )
                        released += 1

                elapsed = timer.elapsed() / 1000
                if elapsed > self._SWEEP_TTL:
                    logger.warning(
                        "Stale sweep of semaphore %r took %.1fs, longer than its "
                        "%ds mutex",
                        self._name,
                        elapsed,
                        self._SWEEP_TTL,
                    )
        return released

    async def _reclaim(self, token: str, raw_acquired_at: str | bytes) -> bool:
        """Push back ``token`` if it is still grabbed with ``raw_acquired_at``."""
        async with self._redis.pipeline() as pipe:
            try:
                await pipe.watch(self._keys.grabbed)
                if await pipe.hget(self._keys.grabbed, token) != raw_acquired_at:
                    return False
                pipe.multi()
                self._push_back(pipe, token)
                await pipe.execute()
            except WatchError:
                logger.debug(
                    "Token %r of semaphore %r changed while reclaiming",
                    token,
                    self._name,
                )
                return False
        return True

    @contextlib.asynccontextmanager
    async def _expiring_mutex(
        self, key: str, expires_in: float
    ) -> AsyncIterator[bool]:
        """Async counterpart of Semaphore._expiring_mutex."""
        now = await self.current_time()
        my_expiry = now + expires_in + 1

        owned = bool(await self._redis.set(key, my_expiry, nx=True))
        if not owned:
            current = await self._redis.get(key)
            if current is not None:
                other_expiry = parse_float(key, current)
                if other_expiry < now:
                    previous = await self._redis.getset(key, my_expiry)
                    owned = (
                        previous is not None
                        and parse_float(key, previous) == other_expiry
                    )

        if not owned:
            logger.debug("Mutex %r is held by another client", key)
            yield False
            return

        try:
            yield True
        finally:
            if my_expiry > await self.current_time() - 1:
                await self._redis.delete(key)

    async def current_time(self) -> float:
        """Return seconds since the epoch, from Redis until TIME first fails."""
        if not self._use_local_time:
            try:
                seconds, microseconds = await self._redis.time()
                return seconds + microseconds / 1_000_000
            except RedisError as error:
                logger.warning(
                    "Redis TIME failed (%s), semaphore %r falls back to local time",
                    error,
                    self._name,
                )
                self._use_local_time = True
        return time.time()

    async def acquire(self, *, blocking: bool = True, timeout: float = -1) -> bool:
        """Acquire a token, ``asyncio.Semaphore`` style.

        Args:
            blocking: If True, block until a token is available
            timeout: Maximum time to wait in seconds (-1 for no timeout)

        Returns:
            True if a token was acquired, False otherwise
        """
        if not blocking:
            return await self.lock(0) is not False
        return await self.lock(None if timeout == -1 else timeout) is not False

    async def release(self) -> None:
        """Release the most recently acquired token.

        Raises:
            SemaphoreError: If this instance holds no token
        """
        if await self.unlock() is False:
            raise SemaphoreError(f"Semaphore {self._name!r} released too many times")

    async def __aenter__(self) -> str:
        """Enter async context manager, acquiring a token."""
        return cast(str, await self.lock())

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager, releasing the token."""
        await self.unlock()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"name={self._name!r} "
            f"resources={self._resource_count} "
            f"held={len(self._tokens)}>"
        )
