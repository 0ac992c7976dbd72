"""Lock-guarded in-process implementation of the store contracts.

Suitable for tests and single-process embedding. State is lost on restart.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from idem_guard.errors import AlreadyExistsError
from idem_guard.models import (
    RUNNING_STATES,
    AuditEntry,
    IdempotencyConfig,
    IdempotencyRecord,
    RecordState,
    TargetKind,
)
from idem_guard.storage.common import utc_now


class InMemoryRepository:
    """Implements ``StateStore``, ``AuditSink``, ``ConfigWriter`` and ``MaintenanceStore``."""

    def __init__(self) -> None:
        self._records: dict[str, IdempotencyRecord] = {}
        self._audit: list[AuditEntry] = []
        self._configs: dict[str, IdempotencyConfig] = {}
        self._lock = threading.Lock()
        self._next_audit_id = 1

    def lookup(self, key: str) -> IdempotencyRecord | None:
        with self._lock:
            stored = self._records.get(key)
            return replace(stored) if stored is not None else None

    def create_new(self, record: IdempotencyRecord) -> IdempotencyRecord:
        with self._lock:
            if record.key in self._records:
                raise AlreadyExistsError(record.key)
            stored = replace(record, version=1)
            self._records[record.key] = stored
            return replace(stored)

    def conditional_update(self, record: IdempotencyRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._records.get(record.key)
            if current is None or current.version != expected_version:
                return False
            self._records[record.key] = replace(record, version=expected_version + 1)
            return True

    def touch_last_accessed(self, key: str) -> None:
        with self._lock:
            current = self._records.get(key)
            if current is None:
                return
            current.last_accessed_at = utc_now()
            current.version += 1

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(replace(entry, audit_id=self._next_audit_id))
            self._next_audit_id += 1

    def list_audit(self, key: str) -> list[AuditEntry]:
        with self._lock:
            return [replace(entry) for entry in self._audit if entry.key == key]

    def list_configs(self, target_kind: TargetKind | None = None) -> list[IdempotencyConfig]:
        with self._lock:
            configs = sorted(self._configs.values(), key=lambda config: config.config_id)
        if target_kind is None:
            return configs
        kind = TargetKind(target_kind)
        return [config for config in configs if config.target_kind == kind]

    def get_config(self, config_id: str) -> IdempotencyConfig | None:
        with self._lock:
            return self._configs.get(config_id)

    def save_config(self, config: IdempotencyConfig) -> IdempotencyConfig:
        with self._lock:
            existing = self._configs.get(config.config_id)
            version = existing.version + 1 if existing is not None else 1
            stored = replace(config, version=version)
            self._configs[config.config_id] = stored
            return stored

    def list_records(self, *, state: str | None = None, limit: int = 50) -> list[IdempotencyRecord]:
        with self._lock:
            records = [replace(record) for record in self._records.values()]
        if state is not None:
            wanted = RecordState(state)
            records = [record for record in records if record.state == wanted]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[:limit]

    def list_stale_in_progress(self, *, started_before: datetime) -> list[IdempotencyRecord]:
        with self._lock:
            records = [
                replace(record)
                for record in self._records.values()
                if record.state in RUNNING_STATES
                and (record.attempt_started_at or record.created_at) <= started_before
            ]
        records.sort(key=lambda record: record.created_at)
        return records

    def count_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for record in self._records.values():
                counts[record.state.value] = counts.get(record.state.value, 0) + 1
        return counts

    def count_expired(self, *, now: datetime) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if _purgeable(record, now))

    def purge_expired(self, *, now: datetime) -> int:
        with self._lock:
            doomed = [key for key, record in self._records.items() if _purgeable(record, now)]
            for key in doomed:
                del self._records[key]
        return len(doomed)

    def purge_audit(self, *, older_than: datetime) -> int:
        with self._lock:
            kept = [entry for entry in self._audit if entry.timestamp >= older_than]
            removed = len(self._audit) - len(kept)
            self._audit = kept
        return removed


def _purgeable(record: IdempotencyRecord, now: datetime) -> bool:
    return record.expires_at < now and record.state not in RUNNING_STATES
