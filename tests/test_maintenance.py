from __future__ import annotations

import allure

from conftest import FakeClock, job_config, job_request, make_engine
from idem_guard.maintenance import KeyMaintenance
from idem_guard.models import RecordState, ResultStatus
from idem_guard.storage.repository import SqlIdempotencyRepository

pytestmark = [
    allure.epic("Idempotent Execution"),
    allure.feature("Operator Maintenance"),
]


def _crash() -> str:
    raise KeyboardInterrupt


def test_statistics_inspection_and_cleanup(
    sql_repository: SqlIdempotencyRepository,
    clock: FakeClock,
) -> None:
    sql_repository.save_config(job_config(ttl_seconds=600))
    engine = make_engine(sql_repository, clock=clock, stale_timeout_seconds=60)
    maintenance = KeyMaintenance(
        sql_repository,
        stale_timeout_seconds=60,
        audit_retention_days=1,
        clock=clock,
    )

    done = engine.execute(job_request(transaction_ref="A"), lambda: "ok")
    try:
        engine.execute(job_request(transaction_ref="B"), _crash)
    except KeyboardInterrupt:
        pass

    stats = maintenance.statistics()
    assert stats.by_state == {"COMPLETED": 1, "IN_PROGRESS": 1}
    assert stats.total == 2
    assert stats.stale_in_progress == 0
    assert stats.expired_pending_cleanup == 0

    clock.advance(seconds=601)
    stats = maintenance.statistics()
    assert stats.stale_in_progress == 1
    assert stats.expired_pending_cleanup == 1
    assert [record.state for record in maintenance.list_stale()] == [RecordState.IN_PROGRESS]

    inspection = maintenance.inspect(done.key)
    assert inspection.record is not None
    assert inspection.record.state == RecordState.COMPLETED
    assert [entry.new_state for entry in inspection.history] == [
        RecordState.STARTED,
        RecordState.IN_PROGRESS,
        RecordState.COMPLETED,
    ]
    assert inspection.components is not None
    assert inspection.components.target_name == "NIGHTLY-SETTLEMENT"

    clock.advance(days=2)
    report = maintenance.cleanup()
    assert report.expired_records_deleted == 1
    assert report.audit_rows_deleted == 5
    assert sql_repository.lookup(done.key) is None
    assert [record.state for record in maintenance.list_records()] == [RecordState.IN_PROGRESS]

    recovered = engine.execute(job_request(transaction_ref="B"), lambda: "second")
    assert recovered.status == ResultStatus.SUCCESS


def test_cleanup_can_keep_audit(sql_repository: SqlIdempotencyRepository, clock: FakeClock) -> None:
    engine = make_engine(sql_repository, clock=clock)
    maintenance = KeyMaintenance(
        sql_repository,
        stale_timeout_seconds=60,
        audit_retention_days=1,
        clock=clock,
    )
    result = engine.execute(job_request(ttl_override_seconds=60), lambda: "ok")
    clock.advance(days=3)

    report = maintenance.cleanup(purge_audit=False)

    assert report.expired_records_deleted == 1
    assert report.audit_rows_deleted == 0
    assert len(maintenance.inspect(result.key).history) == 3
