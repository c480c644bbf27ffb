"""Key naming and token helpers shared by Semaphore and AIOSemaphore.

Both semaphore classes read and write the same keys in the same format, so a
sync and an async client can coordinate on one semaphore:

- ``<ns>::<name>::AVAILABLE`` list of available tokens
- ``<ns>::<name>::GRABBED`` hash of held token -> acquisition timestamp
- ``<ns>::<name>::EXISTS`` existence marker holding the resource count
- ``<ns>::<name>::VERSION`` protocol version
- ``<ns>::<name>::release_locks`` expiring mutex guarding the stale sweep
"""

from __future__ import annotations

import uuid
from collections.abc import Collection
from dataclasses import dataclass
from typing import Final

from .exceptions import ProtocolViolationError

API_VERSION: Final[str] = "1"
DEFAULT_NAMESPACE: Final[str] = "SEMAPHORE"
DEFAULT_DELIMITER: Final[str] = "::"

# How long a half-created pool keeps its existence marker.
CREATE_GUARD_TTL: Final[int] = 10


@dataclass(frozen=True)
class SemaphoreKeys:
    """Redis keys used by one named semaphore."""

    available: str
    grabbed: str
    exists: str
    version: str
    release_locks: str

    @classmethod
    def for_name(
        cls,
        name: str,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        delimiter: str = DEFAULT_DELIMITER,
    ) -> SemaphoreKeys:
        def key(suffix: str) -> str:
            return delimiter.join((namespace, name, suffix))

        return cls(
            available=key("AVAILABLE"),
            grabbed=key("GRABBED"),
            exists=key("EXISTS"),
            version=key("VERSION"),
            release_locks=key("release_locks"),
        )

    @property
    def managed(self) -> tuple[str, ...]:
        """Keys that hold the pool itself and share its expiration."""
        return (self.available, self.grabbed, self.exists, self.version)

    @property
    def all(self) -> tuple[str, ...]:
        return (*self.managed, self.release_locks)


def decode(value: str | bytes) -> str:
    """Return a Redis reply as text, whatever ``decode_responses`` is set to."""
    if isinstance(value, bytes):
        return value.decode()
    return value


def decode_token(key: str, value: str | bytes) -> str:
    token = decode(value)
    if not token:
        raise ProtocolViolationError(key, value, "tokens must be non-empty")
    return token


def parse_float(key: str, value: str | bytes) -> float:
    """Parse a timestamp or expiry stored by a semaphore client."""
    try:
        return float(decode(value))
    except ValueError:
        raise ProtocolViolationError(key, value, "expected a timestamp") from None


def parse_resource_count(key: str, value: str | bytes) -> int:
    try:
        return int(decode(value))
    except ValueError:
        raise ProtocolViolationError(
            key, value, "expected a resource count"
        ) from None


def random_token() -> str:
    return uuid.uuid4().hex


def unique_token(existing: Collection[str]) -> str:
    """Return a random token that is not in ``existing``."""
    token = random_token()
    while token in existing:
        token = random_token()
    return token
