"""Store contracts consumed by the engine, the audit trail and the config resolver."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from idem_guard.models import AuditEntry, IdempotencyConfig, IdempotencyRecord, TargetKind


class StateStore(Protocol):
    """Durable repository of idempotency records.

    Implementations are the single point of cross-call coordination: ``create_new``
    must be atomic on ``key`` and ``conditional_update`` must compare-and-swap on
    ``version``. Infrastructure failures are raised as ``StoreUnavailableError``.
    """

    def lookup(self, key: str) -> IdempotencyRecord | None:
        """Return the record stored under ``key``, if any."""
        raise NotImplementedError

    def create_new(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """Insert ``record``; raise ``AlreadyExistsError`` if the key is taken."""
        raise NotImplementedError

    def conditional_update(self, record: IdempotencyRecord, expected_version: int) -> bool:
        """Write ``record`` if the stored version still equals ``expected_version``.

        On success the stored version becomes ``expected_version + 1``.
        """
        raise NotImplementedError

    def touch_last_accessed(self, key: str) -> None:
        """Refresh ``last_accessed_at``. Best effort."""
        raise NotImplementedError


class AuditSink(Protocol):
    """Append-only storage for audit entries."""

    def append_audit(self, entry: AuditEntry) -> None:
        """Persist one entry."""
        raise NotImplementedError

    def list_audit(self, key: str) -> list[AuditEntry]:
        """Entries for ``key`` in append order."""
        raise NotImplementedError


class ConfigSource(Protocol):
    """Read side of externally administered policy rows."""

    def list_configs(self, target_kind: TargetKind | None = None) -> list[IdempotencyConfig]:
        """All rows, optionally restricted to one kind."""
        raise NotImplementedError

    def get_config(self, config_id: str) -> IdempotencyConfig | None:
        """Row by id."""
        raise NotImplementedError


class ConfigWriter(ConfigSource, Protocol):
    """Write side used by administrators."""

    def save_config(self, config: IdempotencyConfig) -> IdempotencyConfig:
        """Insert or replace a row; returns the stored row."""
        raise NotImplementedError


class MaintenanceStore(Protocol):
    """Operator queries and cleanup."""

    def list_records(
        self,
        *,
        state: str | None = None,
        limit: int = 50,
    ) -> list[IdempotencyRecord]:
        """Most recent records first."""
        raise NotImplementedError

    def list_stale_in_progress(self, *, started_before: datetime) -> list[IdempotencyRecord]:
        """Running records whose current attempt began before the cutoff."""
        raise NotImplementedError

    def count_by_state(self) -> dict[str, int]:
        """Record counts per state."""
        raise NotImplementedError

    def count_expired(self, *, now: datetime) -> int:
        """Non-running records past ``expires_at``."""
        raise NotImplementedError

    def purge_expired(self, *, now: datetime) -> int:
        """Delete non-running records past ``expires_at``; returns the count."""
        raise NotImplementedError

    def purge_audit(self, *, older_than: datetime) -> int:
        """Delete audit rows older than the cutoff; returns the count."""
        raise NotImplementedError
