"""Exceptions for redis-token-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class InconsistentStateError(SemaphoreError):
    """Raised when the semaphore stored in Redis does not match this instance.

    Two processes disagreeing about the shape of a semaphore (its resource
    count or protocol version) would silently corrupt its capacity, so this
    is never tolerated.
    """

    def __init__(self, key: str, expected: str, found: str) -> None:
        self.key = key
        self.expected = expected
        self.found = found
        super().__init__(
            f"Semaphore state at '{key}' does not match: "
            f"expected={expected!r}, found={found!r}"
        )


class ProtocolViolationError(SemaphoreError, ValueError):
    """Raised when a value read from Redis is not something this client wrote.

    Usually means an incompatible client is sharing the same keys.
    """

    def __init__(self, key: str, value: object, reason: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Unexpected value {value!r} at '{key}': {reason}")
