"""SQLite-backed repository for idempotency records, audit rows and policy."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from idem_guard.errors import AlreadyExistsError, StoreUnavailableError
from idem_guard.models import (
    AuditEntry,
    IdempotencyConfig,
    IdempotencyRecord,
    KeyStrategy,
    RecordState,
    TargetKind,
)
from idem_guard.storage.alembic_runner import upgrade_head
from idem_guard.storage.common import (
    build_sqlite_engine,
    optional_db,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from idem_guard.storage.sqlmodel_models import (
    IdempotencyAuditRow,
    IdempotencyConfigRow,
    IdempotencyKeyRow,
)

_RUNNING_STATE_VALUES = (RecordState.STARTED.value, RecordState.IN_PROGRESS.value)


class SqlIdempotencyRepository:
    """State store, audit sink and config source backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def lookup(self, key: str) -> IdempotencyRecord | None:
        with _store_errors("lookup"), Session(self.engine) as session:
            row = session.exec(
                select(IdempotencyKeyRow).where(IdempotencyKeyRow.key == key),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def create_new(self, record: IdempotencyRecord) -> IdempotencyRecord:
        with _store_errors("create"), Session(self.engine) as session:
            row = IdempotencyKeyRow(key=record.key, **_row_values(record))
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise AlreadyExistsError(record.key) from error
            session.refresh(row)
            return _to_record(row)

    def conditional_update(self, record: IdempotencyRecord, expected_version: int) -> bool:
        values = _row_values(record)
        values["version"] = expected_version + 1
        with _store_errors("conditional update"), Session(self.engine) as session:
            result = session.exec(
                sa_update(IdempotencyKeyRow)
                .where(
                    col(IdempotencyKeyRow.key) == record.key,
                    col(IdempotencyKeyRow.version) == expected_version,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def touch_last_accessed(self, key: str) -> None:
        now = to_db_datetime(utc_now())
        with _store_errors("touch"), Session(self.engine) as session:
            session.exec(
                sa_update(IdempotencyKeyRow)
                .where(col(IdempotencyKeyRow.key) == key)
                .values(
                    last_accessed_at=now,
                    version=IdempotencyKeyRow.version + 1,
                ),
            )
            session.commit()

    def append_audit(self, entry: AuditEntry) -> None:
        with _store_errors("audit append"), Session(self.engine) as session:
            session.add(
                IdempotencyAuditRow(
                    key=entry.key,
                    old_state=entry.old_state.value if entry.old_state is not None else None,
                    new_state=entry.new_state.value,
                    reason=entry.reason,
                    actor=entry.actor,
                    correlation_id=entry.correlation_id,
                    client_context_json=json.dumps(
                        entry.client_context,
                        ensure_ascii=False,
                        sort_keys=True,
                        default=str,
                    )
                    if entry.client_context
                    else None,
                    created_at=to_db_datetime(entry.timestamp),
                ),
            )
            session.commit()

    def list_audit(self, key: str) -> list[AuditEntry]:
        with _store_errors("audit read"), Session(self.engine) as session:
            rows = session.exec(
                select(IdempotencyAuditRow)
                .where(IdempotencyAuditRow.key == key)
                .order_by(col(IdempotencyAuditRow.created_at).asc(), col(IdempotencyAuditRow.id)),
            ).all()
        return [_to_audit(row) for row in rows]

    def list_configs(self, target_kind: TargetKind | None = None) -> list[IdempotencyConfig]:
        with _store_errors("config read"), Session(self.engine) as session:
            statement = select(IdempotencyConfigRow).order_by(
                col(IdempotencyConfigRow.config_id),
            )
            if target_kind is not None:
                statement = statement.where(
                    IdempotencyConfigRow.target_kind == TargetKind(target_kind).value,
                )
            rows = session.exec(statement).all()
        return [_to_config(row) for row in rows]

    def get_config(self, config_id: str) -> IdempotencyConfig | None:
        with _store_errors("config read"), Session(self.engine) as session:
            row = session.exec(
                select(IdempotencyConfigRow).where(IdempotencyConfigRow.config_id == config_id),
            ).one_or_none()
            return _to_config(row) if row is not None else None

    def save_config(self, config: IdempotencyConfig) -> IdempotencyConfig:
        now = utc_now()
        with _store_errors("config write"), Session(self.engine) as session:
            row = session.exec(
                select(IdempotencyConfigRow).where(
                    IdempotencyConfigRow.config_id == config.config_id,
                ),
            ).one_or_none()
            if row is None:
                row = IdempotencyConfigRow(
                    config_id=config.config_id,
                    target_kind=config.target_kind.value,
                    target_pattern=config.target_pattern,
                    created_at=now,
                    updated_at=now,
                    version=1,
                )
            else:
                row.version += 1
                row.updated_at = now
            row.target_kind = config.target_kind.value
            row.target_pattern = config.target_pattern
            row.enabled = config.enabled
            row.ttl_seconds = config.ttl_seconds
            row.max_retries = config.max_retries
            row.key_strategy = config.key_strategy.value
            row.store_request_payload = config.store_request_payload
            row.store_response_payload = config.store_response_payload
            row.encryption_required = config.encryption_required
            row.description = config.description
            row.updated_by = config.updated_by
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_config(row)

    def list_records(self, *, state: str | None = None, limit: int = 50) -> list[IdempotencyRecord]:
        with _store_errors("record listing"), Session(self.engine) as session:
            statement = (
                select(IdempotencyKeyRow)
                .order_by(col(IdempotencyKeyRow.created_at).desc())
                .limit(limit)
            )
            if state is not None:
                statement = statement.where(
                    IdempotencyKeyRow.state == RecordState(state).value,
                )
            rows = session.exec(statement).all()
        return [_to_record(row) for row in rows]

    def list_stale_in_progress(self, *, started_before: datetime) -> list[IdempotencyRecord]:
        cutoff = to_db_datetime(started_before)
        with _store_errors("stale listing"), Session(self.engine) as session:
            rows = session.exec(
                select(IdempotencyKeyRow)
                .where(
                    col(IdempotencyKeyRow.state).in_(_RUNNING_STATE_VALUES),
                    func.coalesce(
                        IdempotencyKeyRow.attempt_started_at,
                        IdempotencyKeyRow.created_at,
                    )
                    <= cutoff,
                )
                .order_by(col(IdempotencyKeyRow.created_at).asc()),
            ).all()
        return [_to_record(row) for row in rows]

    def count_by_state(self) -> dict[str, int]:
        with _store_errors("state statistics"), Session(self.engine) as session:
            rows = session.exec(
                select(IdempotencyKeyRow.state, func.count()).group_by(IdempotencyKeyRow.state),
            ).all()
        return {str(state): int(count) for state, count in rows}

    def count_expired(self, *, now: datetime) -> int:
        with _store_errors("expiry statistics"), Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(IdempotencyKeyRow)
                .where(
                    col(IdempotencyKeyRow.expires_at) < to_db_datetime(now),
                    col(IdempotencyKeyRow.state).not_in(_RUNNING_STATE_VALUES),
                ),
            ).one()
        return int(count)

    def purge_expired(self, *, now: datetime) -> int:
        with _store_errors("expired purge"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(IdempotencyKeyRow).where(
                    col(IdempotencyKeyRow.expires_at) < to_db_datetime(now),
                    col(IdempotencyKeyRow.state).not_in(_RUNNING_STATE_VALUES),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def purge_audit(self, *, older_than: datetime) -> int:
        with _store_errors("audit purge"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(IdempotencyAuditRow).where(
                    col(IdempotencyAuditRow.created_at) < to_db_datetime(older_than),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as error:
        raise StoreUnavailableError(f"Idempotency store {operation} failed: {error}") from error


def _row_values(record: IdempotencyRecord) -> dict[str, Any]:
    return {
        "target_kind": record.target_kind.value,
        "target_name": record.target_name,
        "source_system": record.source_system,
        "correlation_id": record.correlation_id,
        "transaction_ref": record.transaction_ref,
        "content_hash": record.content_hash,
        "request_hash": record.request_hash,
        "state": record.state.value,
        "request_payload": record.request_payload,
        "response_payload": record.response_payload,
        "error_detail": record.error_detail,
        "created_at": to_db_datetime(record.created_at),
        "completed_at": optional_db(record.completed_at),
        "last_accessed_at": optional_db(record.last_accessed_at),
        "attempt_started_at": optional_db(record.attempt_started_at),
        "expires_at": to_db_datetime(record.expires_at),
        "retry_count": record.retry_count,
        "max_retries": record.max_retries,
        "processing_node": record.processing_node,
        "created_by": record.created_by,
        "version": record.version,
    }


def _to_record(row: IdempotencyKeyRow) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row.key,
        target_kind=TargetKind(row.target_kind),
        target_name=row.target_name,
        source_system=row.source_system,
        correlation_id=row.correlation_id,
        state=RecordState(row.state),
        created_at=to_utc_aware_datetime(row.created_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        max_retries=row.max_retries,
        retry_count=row.retry_count,
        transaction_ref=row.transaction_ref,
        content_hash=row.content_hash,
        request_hash=row.request_hash,
        request_payload=row.request_payload,
        response_payload=row.response_payload,
        error_detail=row.error_detail,
        completed_at=optional_utc(row.completed_at),
        last_accessed_at=optional_utc(row.last_accessed_at),
        attempt_started_at=optional_utc(row.attempt_started_at),
        processing_node=row.processing_node,
        created_by=row.created_by,
        version=row.version,
    )


def _to_audit(row: IdempotencyAuditRow) -> AuditEntry:
    client_context: dict[str, Any] = {}
    if row.client_context_json:
        parsed = json.loads(row.client_context_json)
        if isinstance(parsed, dict):
            client_context = parsed
    return AuditEntry(
        audit_id=row.id,
        key=row.key,
        old_state=RecordState(row.old_state) if row.old_state is not None else None,
        new_state=RecordState(row.new_state),
        reason=row.reason,
        actor=row.actor,
        correlation_id=row.correlation_id,
        client_context=client_context,
        timestamp=to_utc_aware_datetime(row.created_at),
    )


def _to_config(row: IdempotencyConfigRow) -> IdempotencyConfig:
    return IdempotencyConfig(
        config_id=row.config_id,
        target_kind=TargetKind(row.target_kind),
        target_pattern=row.target_pattern,
        enabled=row.enabled,
        ttl_seconds=row.ttl_seconds,
        max_retries=row.max_retries,
        key_strategy=KeyStrategy(row.key_strategy),
        store_request_payload=row.store_request_payload,
        store_response_payload=row.store_response_payload,
        encryption_required=row.encryption_required,
        description=row.description,
        updated_by=row.updated_by,
        version=row.version,
    )
