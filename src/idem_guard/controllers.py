"""Controllers for idem-guard CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from idem_guard.bootstrap import build_maintenance
from idem_guard.config import Settings
from idem_guard.metrics import render_state_lines
from idem_guard.models import (
    AuditEntry,
    IdempotencyConfig,
    IdempotencyRecord,
    KeyStrategy,
    TargetKind,
)
from idem_guard.policy import ConfigAdmin, ConfigResolver
from idem_guard.storage.repository import SqlIdempotencyRepository


@dataclass(slots=True)
class KeyInspectCommand:
    """CLI inputs for key inspection."""

    db_path: Path | None
    key: str


@dataclass(slots=True)
class KeyListCommand:
    """CLI inputs for record listing."""

    db_path: Path | None
    state: str | None
    limit: int


@dataclass(slots=True)
class KeyGcCommand:
    """CLI inputs for expired-record and audit cleanup."""

    db_path: Path | None
    keep_audit: bool


@dataclass(slots=True)
class ConfigResolveCommand:
    db_path: Path | None
    target_kind: str
    target_name: str


@dataclass(slots=True)
class ConfigSetCommand:
    """CLI inputs for creating or replacing a policy row."""

    db_path: Path | None
    config_id: str
    target_kind: str
    target_pattern: str
    ttl_seconds: int
    max_retries: int
    key_strategy: str
    store_request_payload: bool
    store_response_payload: bool
    encryption_required: bool
    enabled: bool
    description: str | None


@dataclass(slots=True)
class ConfigToggleCommand:
    db_path: Path | None
    config_id: str
    enabled: bool


class IdemGuardCliController:
    """Coordinates key and policy command execution."""

    def inspect_key(self, command: KeyInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            inspection = build_maintenance(settings, repository).inspect(command.key)

        if inspection.record is None:
            lines = [f"Key not found: {command.key}"]
        else:
            lines = _record_detail_lines(inspection.record)
        components = inspection.components
        if components is not None and components.date_component is not None:
            lines.append(
                "Key components: "
                f"kind={components.target_kind} name={components.target_name} "
                f"date={components.date_component} hash={components.content_hash or '-'}",
            )
        if inspection.history:
            lines.append(f"Audit history ({len(inspection.history)} entries):")
            lines.extend(_audit_line(entry) for entry in inspection.history)
        else:
            lines.append("Audit history: none")
        return lines

    def list_keys(self, command: KeyListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            records = build_maintenance(settings, repository).list_records(
                state=command.state,
                limit=command.limit,
            )
        if not records:
            return ["No idempotency records found."]
        return [_record_line(record) for record in records]

    def list_stale(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            records = build_maintenance(settings, repository).list_stale()
        if not records:
            return [
                f"No stale records (timeout={settings.engine.stale_timeout_seconds}s).",
            ]
        return [
            f"Stale records (timeout={settings.engine.stale_timeout_seconds}s): {len(records)}",
            *(_record_line(record) for record in records),
        ]

    def gc(self, command: KeyGcCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            report = build_maintenance(settings, repository).cleanup(
                purge_audit=not command.keep_audit,
            )
        return [
            "Idempotency cleanup completed: "
            f"expired_records_deleted={report.expired_records_deleted} "
            f"audit_rows_deleted={report.audit_rows_deleted} "
            f"audit_retention_days={settings.audit.retention_days}",
        ]

    def stats(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            statistics = build_maintenance(settings, repository).statistics()
            summary = ConfigAdmin(repository).summary()
        return [
            *render_state_lines(
                by_state=statistics.by_state,
                stale=statistics.stale_in_progress,
                expired=statistics.expired_pending_cleanup,
            ),
            (
                f"Configs: total={summary.total} enabled={summary.enabled} "
                f"disabled={summary.disabled} "
                + " ".join(f"{kind}={count}" for kind, count in summary.by_kind.items())
            ).rstrip(),
        ]

    def list_configs(self, db_path: Path | None, target_kind: str | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            configs = repository.list_configs(
                TargetKind(target_kind) if target_kind is not None else None,
            )
        if not configs:
            return ["No idempotency configs stored; built-in fallback applies."]
        return [_config_line(config) for config in configs]

    def resolve_config(self, command: ConfigResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            config = ConfigResolver(repository).resolve(
                TargetKind(command.target_kind),
                command.target_name,
            )
        return [
            f"Effective policy for {command.target_kind} {command.target_name}:",
            _config_line(config),
        ]

    def set_config(self, command: ConfigSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stored = ConfigAdmin(repository).save_config(
                IdempotencyConfig(
                    config_id=command.config_id,
                    target_kind=TargetKind(command.target_kind),
                    target_pattern=command.target_pattern,
                    enabled=command.enabled,
                    ttl_seconds=command.ttl_seconds,
                    max_retries=command.max_retries,
                    key_strategy=KeyStrategy(command.key_strategy),
                    store_request_payload=command.store_request_payload,
                    store_response_payload=command.store_response_payload,
                    encryption_required=command.encryption_required,
                    description=command.description,
                    updated_by=settings.actor.actor_id,
                ),
            )
        return [f"Saved: {_config_line(stored)}"]

    def toggle_config(self, command: ConfigToggleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stored = ConfigAdmin(repository).set_enabled(
                command.config_id,
                command.enabled,
                actor=settings.actor.actor_id,
            )
        return [f"{'Enabled' if stored.enabled else 'Disabled'}: {_config_line(stored)}"]

    def seed_defaults(self, db_path: Path | None, *, overwrite: bool) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
        with _repository(settings) as repository:
            seeded = ConfigAdmin(repository).seed_defaults(
                settings.policy,
                overwrite=overwrite,
                actor=settings.actor.actor_id,
            )
        if not seeded:
            return ["Default configs already present; nothing seeded."]
        return [f"Seeded: {_config_line(config)}" for config in seeded]


@contextmanager
def _repository(settings: Settings) -> Iterator[SqlIdempotencyRepository]:
    repository = SqlIdempotencyRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


def _record_line(record: IdempotencyRecord) -> str:
    return (
        f"{record.key} state={record.state.value} "
        f"retries={record.retry_count}/{record.max_retries} "
        f"created={record.created_at.isoformat()} expires={record.expires_at.isoformat()} "
        f"node={record.processing_node or '-'}"
    )


def _record_detail_lines(record: IdempotencyRecord) -> list[str]:
    return [
        f"Key: {record.key}",
        f"State: {record.state.value} (version {record.version})",
        f"Target: {record.target_kind.value} {record.target_name} source={record.source_system}",
        f"Correlation id: {record.correlation_id}",
        f"Retries: {record.retry_count}/{record.max_retries}",
        f"Created: {record.created_at.isoformat()} by {record.created_by}",
        f"Expires: {record.expires_at.isoformat()}",
        f"Attempt started: {_fmt_time(record.attempt_started_at)}",
        f"Completed: {_fmt_time(record.completed_at)}",
        f"Last accessed: {_fmt_time(record.last_accessed_at)}",
        f"Processing node: {record.processing_node or '-'}",
        f"Error: {record.error_detail or '-'}",
    ]


def _audit_line(entry: AuditEntry) -> str:
    old_state = entry.old_state.value if entry.old_state is not None else "-"
    return (
        f"  {entry.timestamp.isoformat()} {old_state} -> {entry.new_state.value} "
        f"reason={entry.reason!r} actor={entry.actor} "
        f"correlation_id={entry.correlation_id or '-'}"
    )


def _config_line(config: IdempotencyConfig) -> str:
    return (
        f"{config.summary()} strategy={config.key_strategy.value} "
        f"store_request={config.store_request_payload} "
        f"store_response={config.store_response_payload} "
        f"encryption={config.encryption_required}"
    )


def _fmt_time(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
