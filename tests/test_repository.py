from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy import inspect, text

from conftest import START, job_config
from idem_guard.errors import AlreadyExistsError
from idem_guard.models import (
    AuditEntry,
    IdempotencyRecord,
    RecordState,
    TargetKind,
)
from idem_guard.storage.repository import SqlIdempotencyRepository

pytestmark = [
    allure.epic("Idempotent Execution"),
    allure.feature("Durable State Store"),
]


def _record(key: str = "JOB:NIGHTLY:20261018:abc", **overrides) -> IdempotencyRecord:
    values = {
        "key": key,
        "target_kind": TargetKind.JOB,
        "target_name": "nightly-settlement",
        "source_system": "LEDGER",
        "correlation_id": "IDEM_20261018_093000_deadbeef",
        "state": RecordState.STARTED,
        "created_at": START,
        "expires_at": START + timedelta(hours=1),
        "max_retries": 3,
        "processing_node": "node-a",
    }
    values.update(overrides)
    return IdempotencyRecord(**values)


def test_schema_is_migrated_to_head(sql_repository: SqlIdempotencyRepository) -> None:
    tables = set(inspect(sql_repository.engine).get_table_names())
    assert {"idempotency_keys", "idempotency_audit", "idempotency_configs"} <= tables

    with sql_repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
    assert version == "20261018_0001"


def test_create_and_lookup_round_trip(sql_repository: SqlIdempotencyRepository) -> None:
    created = sql_repository.create_new(
        _record(request_payload='{"amount": 10}', attempt_started_at=START),
    )

    loaded = sql_repository.lookup(created.key)

    assert loaded is not None
    assert loaded.version == 1
    assert loaded.state == RecordState.STARTED
    assert loaded.created_at == START
    assert loaded.created_at.tzinfo is not None
    assert loaded.expires_at == START + timedelta(hours=1)
    assert loaded.attempt_started_at == START
    assert loaded.request_payload == '{"amount": 10}'
    assert loaded.completed_at is None
    assert sql_repository.lookup("missing") is None


def test_create_rejects_existing_key(sql_repository: SqlIdempotencyRepository) -> None:
    sql_repository.create_new(_record())

    with pytest.raises(AlreadyExistsError) as error:
        sql_repository.create_new(_record(correlation_id="IDEM_other"))

    assert error.value.key == "JOB:NIGHTLY:20261018:abc"
    stored = sql_repository.lookup("JOB:NIGHTLY:20261018:abc")
    assert stored is not None
    assert stored.correlation_id == "IDEM_20261018_093000_deadbeef"


def test_conditional_update_compares_version(sql_repository: SqlIdempotencyRepository) -> None:
    created = sql_repository.create_new(_record())

    moved = replace(created, state=RecordState.IN_PROGRESS, attempt_started_at=START)
    assert sql_repository.conditional_update(moved, expected_version=1)
    assert not sql_repository.conditional_update(
        replace(created, state=RecordState.FAILED),
        expected_version=1,
    )

    stored = sql_repository.lookup(created.key)
    assert stored is not None
    assert stored.state == RecordState.IN_PROGRESS
    assert stored.version == 2


def test_conditional_update_has_single_winner(sql_repository: SqlIdempotencyRepository) -> None:
    created = sql_repository.create_new(_record())
    barrier = threading.Barrier(8)
    outcomes: list[bool] = []
    lock = threading.Lock()

    def _contend(node: str) -> None:
        candidate = replace(created, state=RecordState.IN_PROGRESS, processing_node=node)
        barrier.wait(timeout=5)
        won = sql_repository.conditional_update(candidate, expected_version=created.version)
        with lock:
            outcomes.append(won)

    threads = [threading.Thread(target=_contend, args=(f"node-{i}",)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert outcomes.count(True) == 1
    stored = sql_repository.lookup(created.key)
    assert stored is not None
    assert stored.version == 2


def test_touch_last_accessed_bumps_version(sql_repository: SqlIdempotencyRepository) -> None:
    created = sql_repository.create_new(_record(state=RecordState.COMPLETED))

    sql_repository.touch_last_accessed(created.key)

    stored = sql_repository.lookup(created.key)
    assert stored is not None
    assert stored.last_accessed_at is not None
    assert stored.version == 2


def test_audit_entries_keep_order_and_context(sql_repository: SqlIdempotencyRepository) -> None:
    key = "JOB:NIGHTLY:20261018:abc"
    for minute, (old, new) in enumerate(
        [
            (None, RecordState.STARTED),
            (RecordState.STARTED, RecordState.IN_PROGRESS),
            (RecordState.IN_PROGRESS, RecordState.COMPLETED),
        ],
    ):
        sql_repository.append_audit(
            AuditEntry(
                key=key,
                old_state=old,
                new_state=new,
                reason=f"step {minute}",
                actor="batch-runner",
                timestamp=START + timedelta(minutes=minute),
                correlation_id="IDEM_1",
                client_context={"client_ip": "10.0.0.5"} if minute == 0 else {},
            ),
        )

    history = sql_repository.list_audit(key)

    assert [entry.new_state for entry in history] == [
        RecordState.STARTED,
        RecordState.IN_PROGRESS,
        RecordState.COMPLETED,
    ]
    assert history[0].old_state is None
    assert history[0].client_context == {"client_ip": "10.0.0.5"}
    assert history[1].client_context == {}
    assert all(entry.audit_id is not None for entry in history)
    assert sql_repository.list_audit("other") == []


def test_config_upsert_bumps_version(sql_repository: SqlIdempotencyRepository) -> None:
    first = sql_repository.save_config(job_config(ttl_seconds=60))
    second = sql_repository.save_config(job_config(ttl_seconds=120, description="longer"))

    assert first.version == 1
    assert second.version == 2
    assert second.ttl_seconds == 120
    stored = sql_repository.get_config("NIGHTLY")
    assert stored == second
    assert sql_repository.get_config("MISSING") is None


def test_list_configs_filters_by_kind(sql_repository: SqlIdempotencyRepository) -> None:
    sql_repository.save_config(job_config("B_JOB"))
    sql_repository.save_config(job_config("A_JOB"))
    sql_repository.save_config(
        job_config("API", pattern="/api/*", target_kind=TargetKind.API_ENDPOINT),
    )

    assert [config.config_id for config in sql_repository.list_configs()] == [
        "API",
        "A_JOB",
        "B_JOB",
    ]
    assert [config.config_id for config in sql_repository.list_configs(TargetKind.JOB)] == [
        "A_JOB",
        "B_JOB",
    ]


def test_maintenance_queries(sql_repository: SqlIdempotencyRepository) -> None:
    now = START + timedelta(hours=3)
    sql_repository.create_new(_record("done-expired", state=RecordState.COMPLETED))
    sql_repository.create_new(
        _record(
            "done-fresh",
            state=RecordState.COMPLETED,
            created_at=START + timedelta(hours=2),
            expires_at=now + timedelta(hours=1),
        ),
    )
    sql_repository.create_new(
        _record(
            "running-stale",
            state=RecordState.IN_PROGRESS,
            created_at=START + timedelta(minutes=1),
            attempt_started_at=START + timedelta(minutes=1),
        ),
    )
    sql_repository.create_new(
        _record(
            "running-fresh",
            state=RecordState.IN_PROGRESS,
            created_at=START + timedelta(minutes=2),
            attempt_started_at=now - timedelta(minutes=5),
            expires_at=now + timedelta(hours=1),
        ),
    )

    assert sql_repository.count_by_state() == {"COMPLETED": 2, "IN_PROGRESS": 2}
    assert [record.key for record in sql_repository.list_records(state="COMPLETED")] == [
        "done-fresh",
        "done-expired",
    ]
    assert len(sql_repository.list_records(limit=1)) == 1

    stale = sql_repository.list_stale_in_progress(started_before=now - timedelta(minutes=30))
    assert [record.key for record in stale] == ["running-stale"]

    assert sql_repository.count_expired(now=now) == 1
    assert sql_repository.purge_expired(now=now) == 1
    assert sql_repository.lookup("done-expired") is None
    assert sql_repository.lookup("running-stale") is not None


def test_purge_audit_removes_rows_before_cutoff(
    sql_repository: SqlIdempotencyRepository,
) -> None:
    for days_ago in (100, 10):
        sql_repository.append_audit(
            AuditEntry(
                key="k",
                old_state=None,
                new_state=RecordState.STARTED,
                reason="created",
                actor="SYSTEM",
                timestamp=datetime(2026, 10, 18, tzinfo=UTC) - timedelta(days=days_ago),
            ),
        )

    removed = sql_repository.purge_audit(older_than=datetime(2026, 7, 20, tzinfo=UTC))

    assert removed == 1
    assert len(sql_repository.list_audit("k")) == 1
