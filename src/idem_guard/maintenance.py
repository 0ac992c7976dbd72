"""Operator-facing queries and cleanup over stored idempotency records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from idem_guard.keys import extract_components
from idem_guard.models import AuditEntry, IdempotencyRecord, KeyComponents, StateStatistics
from idem_guard.storage.base import AuditSink, MaintenanceStore, StateStore
from idem_guard.storage.common import utc_now

logger = logging.getLogger(__name__)


class MaintainedStore(StateStore, AuditSink, MaintenanceStore, Protocol):
    """Store that supports lookups, audit reads and maintenance queries."""


@dataclass(slots=True)
class KeyInspection:
    """A record together with its audit history."""

    key: str
    record: IdempotencyRecord | None
    history: list[AuditEntry]
    components: KeyComponents | None


@dataclass(slots=True)
class CleanupReport:
    expired_records_deleted: int
    audit_rows_deleted: int


class KeyMaintenance:
    def __init__(
        self,
        store: MaintainedStore,
        *,
        stale_timeout_seconds: int,
        audit_retention_days: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._stale_timeout = timedelta(seconds=stale_timeout_seconds)
        self._audit_retention = timedelta(days=audit_retention_days)
        self._clock = clock

    def inspect(self, key: str) -> KeyInspection:
        return KeyInspection(
            key=key,
            record=self._store.lookup(key),
            history=self._store.list_audit(key),
            components=extract_components(key),
        )

    def list_records(self, *, state: str | None = None, limit: int = 50) -> list[IdempotencyRecord]:
        return self._store.list_records(state=state, limit=limit)

    def list_stale(self) -> list[IdempotencyRecord]:
        """Running records whose owner has not finished within the stale timeout."""

        return self._store.list_stale_in_progress(
            started_before=self._clock() - self._stale_timeout,
        )

    def statistics(self) -> StateStatistics:
        now = self._clock()
        by_state = dict(sorted(self._store.count_by_state().items()))
        return StateStatistics(
            by_state=by_state,
            total=sum(by_state.values()),
            stale_in_progress=len(
                self._store.list_stale_in_progress(started_before=now - self._stale_timeout),
            ),
            expired_pending_cleanup=self._store.count_expired(now=now),
        )

    def cleanup(self, *, purge_audit: bool = True) -> CleanupReport:
        """Delete expired non-running records and audit rows past retention."""

        now = self._clock()
        expired = self._store.purge_expired(now=now)
        audit_rows = 0
        if purge_audit:
            audit_rows = self._store.purge_audit(older_than=now - self._audit_retention)
        logger.info(
            "Idempotency cleanup removed %d expired records and %d audit rows",
            expired,
            audit_rows,
        )
        return CleanupReport(expired_records_deleted=expired, audit_rows_deleted=audit_rows)
