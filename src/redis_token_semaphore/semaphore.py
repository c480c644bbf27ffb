"""Distributed token semaphore backed by Redis.

This module implements a counting semaphore whose permits are tokens kept in
a Redis list. Holders are tracked in a Redis hash with the time they took
their token, which lets any client hand tokens of crashed holders back to
the pool.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Callable, Iterator
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
    from redis import Redis
    from redis.client import Pipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Semaphore:
    """Distributed Redis-powered token semaphore.

    Each of the ``resource_count`` slots is a token in a Redis list. Acquiring
    pops a token (blocking with BLPOP if none is left) and records it as
    grabbed; releasing pushes it back. Instances sharing a name and a Redis
    server share the pool, whatever process or host they live in.

    Usage:
        >>> from redis import Redis
        >>> sem = Semaphore('my-resource', resource_count=3, redis=Redis())
        >>> token = sem.lock(timeout=5)
        >>> if token:
        ...     try:
        ...         # Critical section with limited concurrency
        ...         pass
        ...     finally:
        ...         sem.unlock()

        >>> # Or hand the critical section to lock()
        >>> sem.lock(timeout=5, action=lambda token: do_work(token))

        >>> # Or use as context manager
        >>> with sem as token:
        ...     pass

    Args:
        name: A string that identifies this semaphore
        resource_count: Number of tokens in the pool (default: 1)
        stale_client_timeout: Seconds after which a grabbed token is
            considered abandoned and handed back by the stale sweep. None
            (the default) disables the sweep in lock().
        expiration: Seconds of inactivity after which Redis drops the pool
        use_local_time: Use this host's clock instead of Redis TIME
        redis: Redis client, a default ``Redis()`` if omitted
        namespace: Key prefix (default: 'SEMAPHORE')
        namespace_delimiter: Separator between key parts (default: '::')

    A single instance keeps the tokens it holds in a local stack and is not
    safe to share between threads; give every thread its own instance.
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
        redis: Redis | None = None,
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
            from redis import Redis as RedisClient

            redis = RedisClient()
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

    def exists(self) -> bool:
        """Return True if the pool has been created in Redis."""
        return bool(self._redis.exists(self._keys.exists))

    def ensure_initialized(self) -> None:
        """Create the pool in Redis unless some client already did.

        Raises:
            InconsistentStateError: If the stored pool was created with a
                different resource count or protocol version
            ProtocolViolationError: If the existence marker is unreadable
        """
        while True:
            created = self._redis.set(
                self._keys.exists,
                self._resource_count,
                nx=True,
                ex=CREATE_GUARD_TTL,
            )
            if created:
                self._create()
                return

            marker = self._redis.get(self._keys.exists)
            if marker is not None:
                break
            # The marker lapsed between SET NX and GET; try creating again.

        found = parse_resource_count(self._keys.exists, marker)
        if found != self._resource_count:
            raise InconsistentStateError(
                self._keys.exists, str(self._resource_count), str(found)
            )

        version = self._redis.get(self._keys.version)
        if version is None:
            # Pools created before the version key existed.
            logger.info("Backfilling protocol version of semaphore %r", self._name)
            self._redis.set(self._keys.version, API_VERSION)
        elif decode(version) != API_VERSION:
            raise InconsistentStateError(
                self._keys.version, API_VERSION, decode(version)
            )

    def _create(self) -> None:
        logger.debug(
            "Creating semaphore %r with %d tokens", self._name, self._resource_count
        )
        with self._redis.pipeline() as pipe:
            pipe.delete(self._keys.grabbed, self._keys.available)
            if self._resource_count:
                pipe.rpush(self._keys.available, *range(self._resource_count))
            pipe.set(self._keys.version, API_VERSION)
            pipe.persist(self._keys.exists)
            self._set_expiration(pipe)
            pipe.execute()

    def _set_expiration(self, pipe: Pipeline) -> None:
        if self._expiration is not None:
            for key in self._keys.managed:
                pipe.expire(key, self._expiration)

    def available_count(self) -> int:
        """Return the number of tokens left in the pool.

        A semaphore that was never created reports its full resource count.
        """
        if not self.exists():
            return self._resource_count
        return self._redis.llen(self._keys.available)

    def lock(
        self,
        timeout: float | None = None,
        action: Callable[[str], T] | None = None,
    ) -> str | T | Literal[False]:
        """Acquire a token from the semaphore.

        Args:
            timeout: None to wait forever, a positive number of seconds to
                wait at most, zero or less to return at once
            action: Called with the token, which is released again once the
                action returns or raises

        Returns:
            The token, or the action's result if an action was given, or
            False if no token could be acquired in time
        """
        self.ensure_initialized()
        if self._stale_client_timeout is not None:
            self.release_stale_locks()

        if timeout is None or timeout > 0:
            popped = self._redis.blpop([self._keys.available], timeout=timeout or 0)
            raw_token = popped[1] if popped else None
        else:
            raw_token = self._redis.lpop(self._keys.available)

        if raw_token is None:
            logger.debug("No token of semaphore %r available", self._name)
            return False

        token = decode_token(self._keys.available, raw_token)
        self._tokens.append(token)
        acquired_at = self.current_time()
        with self._redis.pipeline() as pipe:
            pipe.hset(self._keys.grabbed, token, acquired_at)
            self._set_expiration(pipe)
            pipe.execute()

        if action is None:
            return token

        try:
            return action(token)
        finally:
            if token in self._tokens:
                self._tokens.remove(token)
            self.signal(token)

    wait = lock

    def unlock(self) -> str | Literal[False]:
        """Release the most recently acquired token.

        Returns:
            The released token, or False if this instance holds none
        """
        if not self._tokens:
            logger.debug("Nothing to release for semaphore %r", self._name)
            return False
        token = self._tokens.pop()
        self.signal(token)
        return token

    def locked(self, token: str | None = None) -> bool:
        """Return True if ``token`` is grabbed by anyone.

        Without a token, return True if any token held by this instance is
        still grabbed, i.e. has not been handed back by a stale sweep.
        """
        if token is not None:
            return bool(self._redis.hexists(self._keys.grabbed, token))
        return any(self.locked(held) for held in self._tokens)

    def signal(self, token: str | None = None) -> str:
        """Put ``token`` back into the pool and return it.

        Without a token a new unique one is made up, which permanently adds
        a slot to the pool.
        """
        if token is None:
            token = unique_token(self.all_tokens())

        with self._redis.pipeline() as pipe:
            self._push_back(pipe, token)
            pipe.execute()
        return token

    def _push_back(self, pipe: Pipeline, token: str) -> None:
        pipe.hdel(self._keys.grabbed, token)
        # A sweep racing the holder's own release must not duplicate it.
        pipe.lrem(self._keys.available, 0, token)
        pipe.lpush(self._keys.available, token)
        self._set_expiration(pipe)

    def all_tokens(self) -> list[str]:
        """Return available and grabbed tokens from one atomic snapshot."""
        with self._redis.pipeline() as pipe:
            pipe.lrange(self._keys.available, 0, -1)
            pipe.hkeys(self._keys.grabbed)
            available, grabbed = pipe.execute()
        return [decode(token) for token in (*available, *grabbed)]

    def delete(self) -> None:
        """Remove every key of this semaphore from Redis."""
        self._redis.delete(*self._keys.all)
        self._tokens.clear()

    def release_stale_locks(self) -> int:
        """Hand back tokens whose holders exceeded ``stale_client_timeout``.

        Only one client sweeps at a time; the others return immediately.

        Returns:
            The number of tokens put back into the pool
        """
        if self._stale_client_timeout is None:
            return 0

        released = 0
        with self._expiring_mutex(self._keys.release_locks, self._SWEEP_TTL) as owned:
            if not owned:
                return 0

            with ContextTimer() as timer:
                now = self.current_time()
                grabbed = self._redis.hgetall(self._keys.grabbed)
                for raw_token, raw_acquired_at in grabbed.items():
                    token = decode_token(self._keys.grabbed, raw_token)
                    acquired_at = parse_float(self._keys.grabbed, raw_acquired_at)
                    if acquired_at + self._stale_client_timeout >= now:
                        continue
                    if self._reclaim(token, raw_acquired_at):
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

    def _reclaim(self, token: str, raw_acquired_at: str | bytes) -> bool:
        """Push back ``token`` if it is still grabbed with ``raw_acquired_at``.

        A holder may release the token, and another client grab it again,
        after the sweep read GRABBED; such a token is left alone.
        """
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(self._keys.grabbed)
                if pipe.hget(self._keys.grabbed, token) != raw_acquired_at:
                    return False
                pipe.multi()
                self._push_back(pipe, token)
                pipe.execute()
            except WatchError:
                logger.debug(
                    "Token %r of semaphore %r changed while reclaiming",
                    token,
                    self._name,
                )
                return False
        return True

    @contextlib.contextmanager
    def _expiring_mutex(self, key: str, expires_in: float) -> Iterator[bool]:
        """Hold a Redis mutex that lapses on its own after ``expires_in``.

        Yields True if this client got the mutex. The value of the key is the
        holder's expiry time; an expired holder is taken over with GETSET,
        which only succeeds for the first client to swap out the value it
        saw expire.
        """
        now = self.current_time()
        my_expiry = now + expires_in + 1

        owned = bool(self._redis.set(key, my_expiry, nx=True))
        if not owned:
            current = self._redis.get(key)
            if current is not None:
                other_expiry = parse_float(key, current)
                if other_expiry < now:
                    previous = self._redis.getset(key, my_expiry)
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
            # Someone may have taken over once our expiry passed.
            if my_expiry > self.current_time() - 1:
                self._redis.delete(key)

    def current_time(self) -> float:
        """Return seconds since the epoch, from Redis when possible.

        Redis TIME keeps timestamps of clients on different hosts comparable.
        If it fails once, this instance uses the local clock from then on.
        """
        if not self._use_local_time:
            try:
                seconds, microseconds = self._redis.time()
                return seconds + microseconds / 1_000_000
            except RedisError as error:
                logger.warning(
                    "Redis TIME failed (%s), semaphore %r falls back to local time",
                    error,
                    self._name,
                )
                self._use_local_time = True
        return time.time()

    def acquire(self, *, blocking: bool = True, timeout: float = -1) -> bool:
        """Acquire a token, ``threading.Semaphore`` style.

        Args:
            blocking: If True, block until a token is available
            timeout: Maximum time to wait in seconds (-1 for no timeout)

        Returns:
            True if a token was acquired, False otherwise
        """
        if not blocking:
            return self.lock(0) is not False
        return self.lock(None if timeout == -1 else timeout) is not False

    def release(self) -> None:
        """Release the most recently acquired token.

        Raises:
            SemaphoreError: If this instance holds no token
        """
        if self.unlock() is False:
            raise SemaphoreError(f"Semaphore {self._name!r} released too many times")

    def __enter__(self) -> str:
        """Enter context manager, acquiring a token."""
        return cast(str, self.lock())

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager, releasing the token."""
        self.unlock()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"name={self._name!r} "
            f"available={self.available_count()}/{self._resource_count} "
            f"held={len(self._tokens)}>"
        )
