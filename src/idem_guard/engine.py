"""At-most-once execution of keyed units of work."""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

from idem_guard.audit import AuditTrail
from idem_guard.config import EngineSettings
from idem_guard.errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    StoreUnavailableError,
    ValidationError,
    WorkExecutionError,
)
from idem_guard.keys import KeyGenerator
from idem_guard.metrics import MetricsCollector
from idem_guard.models import (
    DIRECT_EXECUTION_KEY,
    RUNNING_STATES,
    IdempotencyConfig,
    IdempotencyRecord,
    IdempotencyRequest,
    IdempotencyResult,
    KeyStrategy,
    RecordState,
    ResultStatus,
    is_allowed_transition,
)
from idem_guard.policy import ConfigResolver
from idem_guard.storage.base import StateStore
from idem_guard.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENCRYPTED_PREFIX = "enc:"
MAX_ERROR_DETAIL_CHARS = 4_000


class PayloadCipher(Protocol):
    """Encrypts payload text for configs that require encryption at rest."""

    def encrypt(self, plaintext: str) -> str:
        raise NotImplementedError

    def decrypt(self, ciphertext: str) -> str:
        raise NotImplementedError


class CasOutcome(str, Enum):
    """Result of a bounded compare-and-swap bookkeeping write."""

    SUCCEEDED = "succeeded"
    SUPERSEDED = "superseded"
    LOST_RACE_EXHAUSTED = "lost_race_exhausted"
    GONE = "gone"
    STORE_FAILED = "store_failed"


@dataclass(slots=True)
class _Call(Generic[T]):
    request: IdempotencyRequest
    config: IdempotencyConfig
    key: str
    correlation_id: str
    work_fn: Callable[[], T]
    decode: Callable[[Any], T] | None
    raise_errors: bool
    started: float

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class IdempotencyEngine:
    """Runs ``work_fn`` at most once per key within the key's validity window.

    All cross-caller coordination goes through the store: atomic create on the
    key and compare-and-swap on ``version``. Callers that lose a race re-read
    the record and branch on what they find.
    """

    def __init__(
        self,
        store: StateStore,
        resolver: ConfigResolver,
        *,
        audit: AuditTrail | None = None,
        metrics: MetricsCollector | None = None,
        key_generator: KeyGenerator | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        cipher: PayloadCipher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._audit = audit
        self._settings = settings or EngineSettings()
        self._metrics = (metrics or MetricsCollector()) if self._settings.collect_metrics else None
        self._keys = key_generator or KeyGenerator(clock=clock)
        self._clock = clock
        self._cipher = cipher
        self._sleep = sleep
        self._stale_timeout = timedelta(seconds=self._settings.stale_timeout_seconds)

    @property
    def metrics(self) -> MetricsCollector | None:
        return self._metrics

    def execute(
        self,
        request: IdempotencyRequest,
        work_fn: Callable[[], T],
        *,
        decode: Callable[[Any], T] | None = None,
        raise_errors: bool = True,
    ) -> IdempotencyResult[T]:
        """Run ``work_fn`` under the request's idempotency key.

        ``decode`` turns a stored JSON value back into the caller's type on cache
        hits. With ``raise_errors=False`` a failing ``work_fn`` yields a FAILED
        result instead of ``WorkExecutionError``.
        """

        started = time.perf_counter()
        request.validate()
        config = self._resolver.resolve(request.target_kind, request.target_name)
        correlation_id = self._keys.generate_correlation_id()
        if not config.enabled:
            return self._execute_direct(
                _Call(
                    request=request,
                    config=config,
                    key=DIRECT_EXECUTION_KEY,
                    correlation_id=correlation_id,
                    work_fn=work_fn,
                    decode=decode,
                    raise_errors=raise_errors,
                    started=started,
                ),
            )
        if config.key_strategy == KeyStrategy.CLIENT_PROVIDED and not request.has_client_key():
            raise ValidationError(
                f"Target {request.target_name} requires a client-provided idempotency key.",
            )

        call = _Call(
            request=request,
            config=config,
            key=self._keys.generate_key(request),
            correlation_id=correlation_id,
            work_fn=work_fn,
            decode=decode,
            raise_errors=raise_errors,
            started=started,
        )
        return self._acquire_and_run(call)

    def _acquire_and_run(self, call: _Call[T]) -> IdempotencyResult[T]:
        for attempt in range(1, self._settings.max_acquire_attempts + 1):
            record = self._store.lookup(call.key)
            if record is None:
                result = self._create_and_run(call)
            else:
                result = self._branch(call, record)
            if result is not None:
                return result
            logger.debug(
                "Lost race on %s (attempt %d/%d); re-reading",
                call.key,
                attempt,
                self._settings.max_acquire_attempts,
            )

        logger.warning(
            "Gave up acquiring %s after %d contended attempts; reporting in progress",
            call.key,
            self._settings.max_acquire_attempts,
        )
        self._count("duplicate", call)
        return IdempotencyResult(
            status=ResultStatus.IN_PROGRESS,
            key=call.key,
            correlation_id=call.correlation_id,
            duration_ms=call.elapsed_ms(),
            error_message="Operation is contended by concurrent callers",
        )

    def _create_and_run(self, call: _Call[T]) -> IdempotencyResult[T] | None:
        try:
            created = self._store.create_new(self._fresh_record(call))
        except AlreadyExistsError:
            logger.debug("Record %s created concurrently", call.key)
            return None
        self._transition(call, None, RecordState.STARTED, "idempotency key created")
        return self._run(call, created, reason="first attempt started")

    def _branch(self, call: _Call[T], record: IdempotencyRecord) -> IdempotencyResult[T] | None:
        now = self._clock()
        if record.state in RUNNING_STATES:
            if record.is_stale(now, self._stale_timeout):
                return self._recover_stale(call, record)
            return self._duplicate(call, record)
        if record.is_expired(now) or record.state == RecordState.EXPIRED:
            return self._expire_and_renew(call, record)
        if record.state == RecordState.COMPLETED:
            return self._cached(call, record)
        if record.can_retry():
            return self._run(call, record, reason="retry after failure")
        return self._max_retries_exceeded(call, record)

    def _duplicate(self, call: _Call[T], record: IdempotencyRecord) -> IdempotencyResult[T]:
        logger.debug("Duplicate request for running key %s", call.key)
        self._access(call, record, "duplicate request while in progress")
        self._count("duplicate", call)
        return IdempotencyResult(
            status=ResultStatus.IN_PROGRESS,
            key=call.key,
            correlation_id=record.correlation_id,
            duration_ms=call.elapsed_ms(),
            retry_count=record.retry_count,
            error_message="Operation is already in progress",
        )

    def _cached(self, call: _Call[T], record: IdempotencyRecord) -> IdempotencyResult[T]:
        try:
            self._store.touch_last_accessed(call.key)
        except StoreUnavailableError:
            logger.warning("Could not refresh last access time for %s", call.key, exc_info=True)
        data = self._decode_response(call, record)
        self._access(call, record, "cached result returned")
        duration_ms = call.elapsed_ms()
        self._count("cached", call, duration_ms=duration_ms)
        return IdempotencyResult(
            status=ResultStatus.CACHED_RESULT,
            key=call.key,
            correlation_id=record.correlation_id,
            data=data,
            from_cache=True,
            duration_ms=duration_ms,
            retry_count=record.retry_count,
        )

    def _max_retries_exceeded(
        self,
        call: _Call[T],
        record: IdempotencyRecord,
    ) -> IdempotencyResult[T]:
        self._access(call, record, "max retries exceeded")
        self._count("max_retries", call)
        return IdempotencyResult(
            status=ResultStatus.MAX_RETRIES_EXCEEDED,
            key=call.key,
            correlation_id=record.correlation_id,
            duration_ms=call.elapsed_ms(),
            retry_count=record.retry_count,
            error_message=f"Maximum retries ({record.max_retries}) exceeded for {call.key}",
            error_detail=record.error_detail,
        )

    def _recover_stale(
        self,
        call: _Call[T],
        record: IdempotencyRecord,
    ) -> IdempotencyResult[T] | None:
        retry_count = record.retry_count + 1
        logger.warning(
            "Recovering stale %s attempt for %s (owner %s, correlation %s)",
            record.state.value,
            call.key,
            record.processing_node or "unknown",
            record.correlation_id,
        )
        if retry_count < record.max_retries:
            return self._run(
                call,
                record,
                reason="stale attempt recovered",
                retry_count=retry_count,
                recovered=True,
            )

        detail = (
            f"Attempt {record.correlation_id} abandoned after {self._stale_timeout}; "
            f"retries exhausted ({retry_count}/{record.max_retries})"
        )
        failed = replace(
            record,
            state=RecordState.FAILED,
            retry_count=retry_count,
            error_detail=detail,
        )
        if not self._store.conditional_update(failed, record.version):
            return None
        self._transition(call, record.state, RecordState.FAILED, "stale attempt abandoned")
        self._count("max_retries", call)
        return IdempotencyResult(
            status=ResultStatus.MAX_RETRIES_EXCEEDED,
            key=call.key,
            correlation_id=record.correlation_id,
            duration_ms=call.elapsed_ms(),
            retry_count=retry_count,
            error_message=f"Maximum retries ({record.max_retries}) exceeded for {call.key}",
            error_detail=detail,
        )

    def _expire_and_renew(
        self,
        call: _Call[T],
        record: IdempotencyRecord,
    ) -> IdempotencyResult[T] | None:
        expired = record
        if record.state != RecordState.EXPIRED:
            expired = replace(record, state=RecordState.EXPIRED)
            if not self._store.conditional_update(expired, record.version):
                return None
            expired.version = record.version + 1
            self._transition(call, record.state, RecordState.EXPIRED, "ttl elapsed")
            self._count("expired", call)

        if not self._settings.renew_expired_keys:
            return IdempotencyResult(
                status=ResultStatus.EXPIRED,
                key=call.key,
                correlation_id=record.correlation_id,
                duration_ms=call.elapsed_ms(),
                retry_count=record.retry_count,
                error_message=f"Idempotency key {call.key} has expired",
                error_detail=record.error_detail,
            )

        renewed = replace(self._fresh_record(call), version=expired.version)
        if not self._store.conditional_update(renewed, expired.version):
            return None
        renewed.version = expired.version + 1
        self._transition(call, RecordState.EXPIRED, RecordState.STARTED, "expired key renewed")
        return self._run(call, renewed, reason="first attempt after renewal")

    def _run(
        self,
        call: _Call[T],
        record: IdempotencyRecord,
        *,
        reason: str,
        retry_count: int | None = None,
        recovered: bool = False,
    ) -> IdempotencyResult[T] | None:
        running = replace(
            record,
            state=RecordState.IN_PROGRESS,
            correlation_id=call.correlation_id,
            attempt_started_at=self._clock(),
            retry_count=record.retry_count if retry_count is None else retry_count,
            processing_node=self._settings.processing_node,
        )
        if not self._store.conditional_update(running, record.version):
            return None
        running.version = record.version + 1
        self._transition(call, record.state, RecordState.IN_PROGRESS, reason)
        if recovered:
            self._count("stale_recovered", call)
        self._count("in_progress", call)

        try:
            data = call.work_fn()
        except Exception as error:  # noqa: BLE001
            return self._on_failure(call, running, error)
        return self._on_success(call, running, data)

    def _on_success(
        self,
        call: _Call[T],
        running: IdempotencyRecord,
        data: T,
    ) -> IdempotencyResult[T]:
        response_payload = self._encode_response(call, data)
        completed_at = self._clock()
        outcome = self._write_with_retry(
            running,
            lambda current: replace(
                current,
                state=RecordState.COMPLETED,
                response_payload=response_payload,
                completed_at=completed_at,
                error_detail=None,
            ),
            abandon=lambda current: current.state == RecordState.COMPLETED,
        )
        if outcome == CasOutcome.SUCCEEDED:
            self._transition(call, RecordState.IN_PROGRESS, RecordState.COMPLETED, "work completed")
        else:
            logger.error(
                "Work for %s succeeded but completion was not recorded (%s); "
                "returning the result anyway",
                call.key,
                outcome.value,
            )
        duration_ms = call.elapsed_ms()
        self._count("success", call, duration_ms=duration_ms)
        return IdempotencyResult(
            status=ResultStatus.SUCCESS,
            key=call.key,
            correlation_id=call.correlation_id,
            data=data,
            duration_ms=duration_ms,
            retry_count=running.retry_count,
        )

    def _on_failure(
        self,
        call: _Call[T],
        running: IdempotencyRecord,
        error: Exception,
    ) -> IdempotencyResult[T]:
        detail = _error_detail(error)
        retry_count = running.retry_count + 1
        outcome = self._write_with_retry(
            running,
            lambda current: replace(
                current,
                state=RecordState.FAILED,
                retry_count=retry_count,
                error_detail=detail,
            ),
            abandon=lambda current: (
                current.state == RecordState.COMPLETED
                or current.correlation_id != call.correlation_id
            ),
        )
        if outcome == CasOutcome.SUCCEEDED:
            self._transition(
                call,
                RecordState.IN_PROGRESS,
                RecordState.FAILED,
                f"work failed: {type(error).__name__}",
            )
        else:
            logger.error(
                "Work for %s failed and the failure was not recorded (%s)",
                call.key,
                outcome.value,
            )
        duration_ms = call.elapsed_ms()
        self._count("failure", call, duration_ms=duration_ms, error_type=type(error).__name__)
        retryable = retry_count < running.max_retries
        logger.debug(
            "Work for %s failed (retry %d/%d): %s",
            call.key,
            retry_count,
            running.max_retries,
            error,
        )
        return self._failure_result(call, error, detail, retryable, retry_count, duration_ms)

    def _execute_direct(self, call: _Call[T]) -> IdempotencyResult[T]:
        logger.debug(
            "Idempotency disabled for %s by %s; executing directly",
            call.request.summary(),
            call.config.config_id,
        )
        try:
            data = call.work_fn()
        except Exception as error:  # noqa: BLE001
            duration_ms = call.elapsed_ms()
            self._count("failure", call, duration_ms=duration_ms, error_type=type(error).__name__)
            return self._failure_result(call, error, _error_detail(error), True, None, duration_ms)
        duration_ms = call.elapsed_ms()
        self._count("success", call, duration_ms=duration_ms)
        return IdempotencyResult(
            status=ResultStatus.SUCCESS,
            key=DIRECT_EXECUTION_KEY,
            correlation_id=call.correlation_id,
            data=data,
            duration_ms=duration_ms,
        )

    def _failure_result(  # noqa: PLR0913
        self,
        call: _Call[T],
        error: Exception,
        detail: str,
        retryable: bool,
        retry_count: int | None,
        duration_ms: int,
    ) -> IdempotencyResult[T]:
        if call.raise_errors:
            raise WorkExecutionError(
                f"Work for {call.request.target_name} failed: {error}",
                key=call.key,
                correlation_id=call.correlation_id,
                retryable=retryable,
                original=error,
            ) from error
        return IdempotencyResult(
            status=ResultStatus.FAILED,
            key=call.key,
            correlation_id=call.correlation_id,
            duration_ms=duration_ms,
            retry_count=retry_count,
            error_message=str(error),
            error_detail=detail,
            error=error,
        )

    def _write_with_retry(
        self,
        record: IdempotencyRecord,
        apply: Callable[[IdempotencyRecord], IdempotencyRecord],
        *,
        abandon: Callable[[IdempotencyRecord], bool],
    ) -> CasOutcome:
        """Bounded re-read-and-reapply loop for post-work bookkeeping."""

        attempts = self._settings.completion_retry_attempts
        delay = self._settings.completion_retry_backoff_seconds
        current = record
        for attempt in range(1, attempts + 1):
            try:
                if self._store.conditional_update(apply(current), current.version):
                    return CasOutcome.SUCCEEDED
                conflict = ConcurrentModificationError(record.key, current.version)
                logger.warning("%s, attempt %d/%d", conflict, attempt, attempts)
                if attempt == attempts:
                    break
                self._sleep(delay)
                delay *= self._settings.completion_retry_backoff_multiplier
                refreshed = self._store.lookup(record.key)
            except StoreUnavailableError:
                logger.exception("Store failure while recording outcome for %s", record.key)
                return CasOutcome.STORE_FAILED
            if refreshed is None:
                return CasOutcome.GONE
            if abandon(refreshed):
                return CasOutcome.SUPERSEDED
            current = refreshed
        return CasOutcome.LOST_RACE_EXHAUSTED

    def _fresh_record(self, call: _Call[T]) -> IdempotencyRecord:
        request = call.request
        now = self._clock()
        ttl_seconds = request.ttl_override_seconds or call.config.ttl_seconds
        max_retries = (
            request.max_retries_override
            if request.max_retries_override is not None
            else call.config.max_retries
        )
        return IdempotencyRecord(
            key=call.key,
            target_kind=request.target_kind,
            target_name=request.target_name,
            source_system=request.source_system,
            correlation_id=call.correlation_id,
            state=RecordState.STARTED,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            max_retries=max_retries,
            transaction_ref=request.transaction_ref,
            content_hash=request.content_hash,
            request_hash=request.request_hash,
            request_payload=self._encode_request(call),
            processing_node=self._settings.processing_node,
            created_by=request.context.actor if request.context is not None else "SYSTEM",
        )

    def _encode_request(self, call: _Call[T]) -> str | None:
        if not call.config.store_request_payload:
            return None
        request = call.request
        if request.has_payload():
            text = request.payload or ""
        elif request.has_parameters():
            text = request.serialized_parameters()
        else:
            return None
        return self._protect(call, text, "request")

    def _encode_response(self, call: _Call[T], data: T) -> str | None:
        if not call.config.store_response_payload or data is None:
            return None
        try:
            text = json.dumps(data, ensure_ascii=False, sort_keys=True, default=_json_default)
        except (TypeError, ValueError):
            logger.warning("Response for %s is not serializable; not stored", call.key)
            return None
        return self._protect(call, text, "response")

    def _protect(self, call: _Call[T], text: str, label: str) -> str | None:
        size = len(text.encode("utf-8"))
        if size > self._settings.max_payload_bytes:
            logger.warning(
                "Dropping %s payload for %s: %d bytes exceeds limit %d",
                label,
                call.key,
                size,
                self._settings.max_payload_bytes,
            )
            return None
        if not call.config.encryption_required:
            return text
        if self._cipher is None:
            logger.warning(
                "Config %s requires encryption but no cipher is configured; %s payload not stored",
                call.config.config_id,
                label,
            )
            return None
        try:
            return ENCRYPTED_PREFIX + self._cipher.encrypt(text)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Encrypting %s payload for %s failed; payload not stored",
                label,
                call.key,
            )
            return None

    def _decode_response(self, call: _Call[T], record: IdempotencyRecord) -> T | None:
        text = record.response_payload
        if text is None:
            return None
        try:
            if text.startswith(ENCRYPTED_PREFIX):
                if self._cipher is None:
                    logger.warning(
                        "Stored response for %s is encrypted and no cipher is set",
                        call.key,
                    )
                    return None
                text = self._cipher.decrypt(text[len(ENCRYPTED_PREFIX) :])
            value = json.loads(text)
        except Exception as error:  # noqa: BLE001
            raise StoreUnavailableError(
                f"Stored response for {call.key} cannot be read: {type(error).__name__}: {error}",
            ) from error
        if call.decode is not None:
            return call.decode(value)
        return value

    def _transition(
        self,
        call: _Call[T],
        old_state: RecordState | None,
        new_state: RecordState,
        reason: str,
    ) -> None:
        if not is_allowed_transition(old_state, new_state):
            logger.error(
                "Illegal state transition for %s: %s -> %s (%s)",
                call.key,
                old_state.value if old_state is not None else "NONE",
                new_state.value,
                reason,
            )
        if self._audit is None:
            return
        self._audit.record_transition(
            call.key,
            old_state,
            new_state,
            reason,
            correlation_id=call.correlation_id,
            context=call.request.context,
        )

    def _access(self, call: _Call[T], record: IdempotencyRecord, reason: str) -> None:
        if self._audit is None:
            return
        self._audit.record_access(
            call.key,
            record.state,
            reason,
            correlation_id=call.correlation_id,
            context=call.request.context,
        )

    def _count(
        self,
        outcome: str,
        call: _Call[T],
        *,
        duration_ms: int | None = None,
        error_type: str | None = None,
    ) -> None:
        if self._metrics is None:
            return
        request = call.request
        kwargs: dict[str, Any] = {"source_system": request.source_system}
        if duration_ms is not None:
            kwargs["duration_ms"] = duration_ms
        if error_type is not None:
            kwargs["error_type"] = error_type
        getattr(self._metrics, f"record_{outcome}")(
            request.target_kind,
            request.target_name,
            **kwargs,
        )


def _error_detail(error: BaseException) -> str:
    detail = f"{type(error).__name__}: {error}"
    if len(detail) > MAX_ERROR_DETAIL_CHARS:
        return detail[: MAX_ERROR_DETAIL_CHARS - 3] + "..."
    return detail


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set | frozenset):
        return sorted(value, key=str)
    if isinstance(value, Enum):
        return value.value
    return str(value)
