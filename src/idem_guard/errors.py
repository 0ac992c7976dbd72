"""Exception taxonomy for the idempotency engine."""

from __future__ import annotations


class IdempotencyError(Exception):
    """Base class for every error raised by idem-guard."""


class ValidationError(IdempotencyError):
    """Request input cannot be processed. Not retryable."""


class InvalidKeyError(ValidationError):
    """Caller-supplied idempotency key is empty or malformed."""


class AlreadyExistsError(IdempotencyError):
    """A record with this key was created concurrently."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Idempotency record already exists: {key}")
        self.key = key


class ConcurrentModificationError(IdempotencyError):
    """A versioned write lost against another writer."""

    def __init__(self, key: str, expected_version: int) -> None:
        super().__init__(
            f"Concurrent modification of {key} (expected version {expected_version})",
        )
        self.key = key
        self.expected_version = expected_version


class StoreUnavailableError(IdempotencyError):
    """The durable store could not serve a request."""


class WorkExecutionError(IdempotencyError):
    """The caller's work function raised.

    The original exception is kept as ``__cause__`` and in ``original``.
    """

    def __init__(
        self,
        message: str,
        *,
        key: str,
        correlation_id: str,
        retryable: bool,
        original: BaseException,
    ) -> None:
        super().__init__(message)
        self.key = key
        self.correlation_id = correlation_id
        self.retryable = retryable
        self.original = original

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (key={self.key}, correlation_id={self.correlation_id})"
