"""Domain models for idempotency records, policy and execution results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

from idem_guard.errors import ValidationError

T = TypeVar("T")

DIRECT_EXECUTION_KEY = "DIRECT_EXECUTION"


class TargetKind(str, Enum):
    """What kind of operation a key protects."""

    JOB = "JOB"
    API_ENDPOINT = "API_ENDPOINT"


class RecordState(str, Enum):
    """Durable idempotency record lifecycle states."""

    STARTED = "STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class KeyStrategy(str, Enum):
    """How the key for a target is obtained."""

    AUTO = "AUTO"
    CLIENT_PROVIDED = "CLIENT_PROVIDED"


class ResultStatus(str, Enum):
    """Outcome reported to the caller of ``IdempotencyEngine.execute``."""

    SUCCESS = "SUCCESS"
    CACHED_RESULT = "CACHED_RESULT"
    IN_PROGRESS = "IN_PROGRESS"
    FAILED = "FAILED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    EXPIRED = "EXPIRED"


RUNNING_STATES = frozenset({RecordState.STARTED, RecordState.IN_PROGRESS})

ALLOWED_TRANSITIONS: dict[RecordState | None, frozenset[RecordState]] = {
    None: frozenset({RecordState.STARTED}),
    RecordState.STARTED: frozenset(
        {RecordState.IN_PROGRESS, RecordState.FAILED, RecordState.EXPIRED},
    ),
    RecordState.IN_PROGRESS: frozenset(
        {
            RecordState.IN_PROGRESS,
            RecordState.COMPLETED,
            RecordState.FAILED,
            RecordState.EXPIRED,
        },
    ),
    RecordState.FAILED: frozenset({RecordState.IN_PROGRESS, RecordState.EXPIRED}),
    RecordState.COMPLETED: frozenset({RecordState.EXPIRED}),
    RecordState.EXPIRED: frozenset({RecordState.STARTED}),
}


def is_allowed_transition(old: RecordState | None, new: RecordState) -> bool:
    """Return whether ``old -> new`` is a legal state machine edge."""

    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


@dataclass(slots=True)
class RequestContext:
    """Who triggered an operation and from where, recorded on audit rows."""

    actor: str = "SYSTEM"
    session_id: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    trace_id: str | None = None
    business_context: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_system(cls, operation: str, *, actor: str = "SYSTEM") -> RequestContext:
        return cls(actor=actor, client_ip="localhost", business_context=operation)

    def to_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "session_id": self.session_id,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "trace_id": self.trace_id,
            "business_context": self.business_context,
        }
        details = {name: value for name, value in details.items() if value is not None}
        if self.attributes:
            details["attributes"] = dict(self.attributes)
        return details


@dataclass(slots=True)
class IdempotencyRequest:
    """Input describing one unit of work to run at most once."""

    source_system: str
    target_kind: TargetKind
    target_name: str
    transaction_ref: str | None = None
    content_hash: str | None = None
    request_hash: str | None = None
    file_path: str | None = None
    parameters: dict[str, Any] | None = None
    payload: str | None = None
    client_provided_key: str | None = None
    ttl_override_seconds: int | None = None
    max_retries_override: int | None = None
    context: RequestContext | None = None

    def validate(self) -> None:
        """Raise ``ValidationError`` when identifiers or overrides are unusable."""

        if not self.source_system or not self.source_system.strip():
            raise ValidationError("Source system is required.")
        if not self.target_name or not self.target_name.strip():
            raise ValidationError("Target name is required.")
        try:
            self.target_kind = TargetKind(self.target_kind)
        except ValueError as error:
            raise ValidationError(f"Unsupported target kind: {self.target_kind!r}") from error
        if self.ttl_override_seconds is not None and self.ttl_override_seconds <= 0:
            raise ValidationError("TTL override must be a positive number of seconds.")
        if self.max_retries_override is not None and self.max_retries_override < 0:
            raise ValidationError("Max retries override cannot be negative.")

    def has_client_key(self) -> bool:
        return self.client_provided_key is not None

    def has_payload(self) -> bool:
        return self.payload is not None and bool(self.payload.strip())

    def has_parameters(self) -> bool:
        return bool(self.parameters)

    def serialized_parameters(self) -> str:
        return json.dumps(self.parameters or {}, sort_keys=True, ensure_ascii=False, default=str)

    def summary(self) -> str:
        kind = getattr(self.target_kind, "value", self.target_kind)
        return (
            f"{self.source_system}/{kind}/{self.target_name}"
            f" tx={self.transaction_ref or '-'}"
        )


@dataclass(slots=True)
class IdempotencyRecord:
    """Durable per-key execution state. Owned by the engine."""

    key: str
    target_kind: TargetKind
    target_name: str
    source_system: str
    correlation_id: str
    state: RecordState
    created_at: datetime
    expires_at: datetime
    max_retries: int
    retry_count: int = 0
    transaction_ref: str | None = None
    content_hash: str | None = None
    request_hash: str | None = None
    request_payload: str | None = None
    response_payload: str | None = None
    error_detail: str | None = None
    completed_at: datetime | None = None
    last_accessed_at: datetime | None = None
    attempt_started_at: datetime | None = None
    processing_node: str | None = None
    created_by: str = "SYSTEM"
    version: int = 1

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_stale(self, now: datetime, stale_timeout: timedelta) -> bool:
        """An unfinished attempt whose owner has not finished within the timeout."""

        if self.state not in RUNNING_STATES:
            return False
        started = self.attempt_started_at or self.created_at
        return now - started >= stale_timeout

    def can_retry(self) -> bool:
        return self.state == RecordState.FAILED and self.retry_count < self.max_retries

    def summary(self) -> str:
        return (
            f"key={self.key} state={self.state.value} retries={self.retry_count}/"
            f"{self.max_retries} version={self.version}"
        )


@dataclass(slots=True, frozen=True)
class IdempotencyConfig:
    """Effective policy for one target pattern."""

    config_id: str
    target_kind: TargetKind
    target_pattern: str
    enabled: bool = True
    ttl_seconds: int = 86_400
    max_retries: int = 3
    key_strategy: KeyStrategy = KeyStrategy.AUTO
    store_request_payload: bool = True
    store_response_payload: bool = True
    encryption_required: bool = False
    description: str | None = None
    updated_by: str = "SYSTEM"
    version: int = 1

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)

    def summary(self) -> str:
        return (
            f"config_id={self.config_id} kind={self.target_kind.value} "
            f"pattern={self.target_pattern} enabled={self.enabled} "
            f"ttl={self.ttl_seconds}s max_retries={self.max_retries}"
        )


@dataclass(slots=True)
class AuditEntry:
    """One state transition (or access event) for a key."""

    key: str
    old_state: RecordState | None
    new_state: RecordState
    reason: str
    actor: str
    timestamp: datetime
    correlation_id: str | None = None
    client_context: dict[str, Any] = field(default_factory=dict)
    audit_id: int | None = None


@dataclass(slots=True)
class KeyComponents:
    """Parsed parts of an auto-generated key."""

    raw_key: str
    target_kind: str | None = None
    target_name: str | None = None
    date_component: str | None = None
    content_hash: str | None = None


@dataclass(slots=True)
class IdempotencyResult(Generic[T]):
    """What ``execute`` hands back to the caller."""

    status: ResultStatus
    key: str
    correlation_id: str
    data: T | None = None
    from_cache: bool = False
    duration_ms: int = 0
    retry_count: int | None = None
    error_message: str | None = None
    error_detail: str | None = None
    error: BaseException | None = None

    @property
    def is_success(self) -> bool:
        return self.status in {ResultStatus.SUCCESS, ResultStatus.CACHED_RESULT}


@dataclass(slots=True)
class StateStatistics:
    """Record counts grouped by state."""

    by_state: dict[str, int]
    total: int
    stale_in_progress: int
    expired_pending_cleanup: int


@dataclass(slots=True)
class ConfigSummary:
    """Counts over persisted configuration rows."""

    total: int
    enabled: int
    by_kind: dict[str, int]

    @property
    def disabled(self) -> int:
        return self.total - self.enabled
