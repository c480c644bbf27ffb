"""Distributed token semaphore using Redis as the only coordination medium.

Any number of processes, on any number of hosts, share ``resource_count``
slots of a named semaphore. Each slot is a token in a Redis list; holders
are recorded with the time they took their token so that tokens of crashed
holders can be handed back by any client.

Example usage (sync):

    >>> from redis import Redis
    >>> from redis_token_semaphore import Semaphore
    >>>
    >>> sem = Semaphore('my-resource', resource_count=3, redis=Redis())
    >>>
    >>> with sem as token:
    ...     # Critical section with limited concurrency (max 3)
    ...     pass

Example usage (async):

    >>> import asyncio
    >>> from redis.asyncio import Redis
    >>> from redis_token_semaphore import AIOSemaphore
    >>>
    >>> async def main():
    ...     sem = AIOSemaphore('my-resource', resource_count=3, redis=Redis())
    ...     async with sem as token:
    ...         # Critical section with limited concurrency
    ...         pass
    >>> asyncio.run(main())
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .aiosemaphore import AIOSemaphore
from .exceptions import InconsistentStateError, ProtocolViolationError, SemaphoreError
from .keys import API_VERSION, SemaphoreKeys
from .semaphore import Semaphore

__all__: Final[tuple[str, ...]] = (
    "API_VERSION",
    "AIOSemaphore",
    "InconsistentStateError",
    "ProtocolViolationError",
    "Semaphore",
    "SemaphoreError",
    "SemaphoreKeys",
)

try:
    __version__ = version("redis-token-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
