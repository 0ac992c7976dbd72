"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from idem_guard.audit import AuditTrail
from idem_guard.config import EngineSettings
from idem_guard.engine import IdempotencyEngine, PayloadCipher
from idem_guard.keys import KeyGenerator
from idem_guard.metrics import MetricsCollector
from idem_guard.models import IdempotencyConfig, IdempotencyRequest, KeyStrategy, TargetKind
from idem_guard.policy import ConfigCache, ConfigResolver
from idem_guard.storage.inmemory import InMemoryRepository
from idem_guard.storage.repository import SqlIdempotencyRepository

START = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def memory_repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture()
def sql_repository(tmp_path: Path) -> Iterator[SqlIdempotencyRepository]:
    repository = SqlIdempotencyRepository(tmp_path / "idem.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def make_engine(
    repository,
    *,
    clock: FakeClock,
    metrics: MetricsCollector | None = None,
    cipher: PayloadCipher | None = None,
    **engine_overrides,
) -> IdempotencyEngine:
    settings = replace(
        EngineSettings(
            completion_retry_backoff_seconds=0.0,
            processing_node="test-node",
        ),
        **engine_overrides,
    )
    return IdempotencyEngine(
        repository,
        ConfigResolver(repository, cache=ConfigCache(clock=clock)),
        audit=AuditTrail(repository, clock=clock),
        metrics=metrics or MetricsCollector(),
        key_generator=KeyGenerator(clock=clock),
        settings=settings,
        clock=clock,
        cipher=cipher,
        sleep=lambda _: None,
    )


def job_config(
    config_id: str = "NIGHTLY",
    *,
    pattern: str = "nightly-*",
    **overrides,
) -> IdempotencyConfig:
    values = {
        "config_id": config_id,
        "target_kind": TargetKind.JOB,
        "target_pattern": pattern,
        "enabled": True,
        "ttl_seconds": 3_600,
        "max_retries": 3,
        "key_strategy": KeyStrategy.AUTO,
    }
    values.update(overrides)
    return IdempotencyConfig(**values)


def job_request(**overrides) -> IdempotencyRequest:
    values = {
        "source_system": "LEDGER",
        "target_kind": TargetKind.JOB,
        "target_name": "nightly-settlement",
        "transaction_ref": "TX-1001",
    }
    values.update(overrides)
    return IdempotencyRequest(**values)
