from __future__ import annotations

import allure
import pytest

from conftest import FakeClock, job_config
from idem_guard.config import PolicySettings
from idem_guard.errors import ValidationError
from idem_guard.models import IdempotencyConfig, KeyStrategy, TargetKind
from idem_guard.policy import ConfigAdmin, ConfigCache, ConfigResolver, fallback_config
from idem_guard.storage.inmemory import InMemoryRepository

pytestmark = [
    allure.epic("Idempotent Execution"),
    allure.feature("Policy Resolution"),
]


def test_fallback_is_used_when_nothing_is_persisted() -> None:
    resolver = ConfigResolver(InMemoryRepository())

    config = resolver.resolve(TargetKind.JOB, "anything")

    assert config == fallback_config(TargetKind.JOB)
    assert config.ttl_seconds == 24 * 3_600
    assert config.max_retries == 3
    assert config.key_strategy == KeyStrategy.AUTO
    assert config.enabled


def test_default_row_is_used_when_no_pattern_matches() -> None:
    repository = InMemoryRepository()
    ConfigAdmin(repository).seed_defaults(PolicySettings())
    repository.save_config(job_config(pattern="nightly-*"))
    resolver = ConfigResolver(repository)

    assert resolver.resolve(TargetKind.JOB, "weekly-report").config_id == "DEFAULT_JOB"
    api = resolver.resolve(TargetKind.API_ENDPOINT, "/api/orders")
    assert api.config_id == "DEFAULT_API_ENDPOINT"
    assert api.ttl_seconds == 3_600
    assert api.max_retries == 1


def test_exact_pattern_beats_wildcards() -> None:
    repository = InMemoryRepository()
    repository.save_config(job_config("WILD", pattern="nightly-*"))
    repository.save_config(job_config("EXACT", pattern="nightly-settlement"))

    config = ConfigResolver(repository).resolve(TargetKind.JOB, "nightly-settlement")

    assert config.config_id == "EXACT"


def test_most_specific_wildcard_wins_and_ties_go_to_lowest_id() -> None:
    repository = InMemoryRepository()
    repository.save_config(job_config("BROAD", pattern="*"))
    repository.save_config(job_config("NARROW_B", pattern="nightly-set*"))
    repository.save_config(job_config("NARROW_A", pattern="nightly-?et*"))
    repository.save_config(job_config("MEDIUM", pattern="nightly-*"))

    config = ConfigResolver(repository).resolve(TargetKind.JOB, "nightly-settlement")

    assert config.config_id == "NARROW_B"

    repository.save_config(job_config("AAA", pattern="nightly-set*"))
    tie = ConfigResolver(repository).resolve(TargetKind.JOB, "nightly-settlement")
    assert tie.config_id == "AAA"


def test_disabled_row_still_matches() -> None:
    repository = InMemoryRepository()
    repository.save_config(job_config("OFF", pattern="nightly-*", enabled=False))

    config = ConfigResolver(repository).resolve(TargetKind.JOB, "nightly-settlement")

    assert config.config_id == "OFF"
    assert not config.enabled


def test_rows_of_other_kind_are_ignored() -> None:
    repository = InMemoryRepository()
    repository.save_config(
        IdempotencyConfig(
            config_id="API",
            target_kind=TargetKind.API_ENDPOINT,
            target_pattern="*",
        ),
    )

    config = ConfigResolver(repository).resolve(TargetKind.JOB, "nightly-settlement")

    assert config.config_id == "FALLBACK_JOB"


def test_cache_serves_until_invalidated() -> None:
    repository = InMemoryRepository()
    repository.save_config(job_config(ttl_seconds=60))
    cache = ConfigCache()
    resolver = ConfigResolver(repository, cache=cache)

    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").ttl_seconds == 60
    repository.save_config(job_config(ttl_seconds=120))
    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").ttl_seconds == 60

    cache.invalidate(TargetKind.JOB)
    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").ttl_seconds == 120


def test_cache_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    repository = InMemoryRepository()
    repository.save_config(job_config(ttl_seconds=60))
    resolver = ConfigResolver(repository, cache=ConfigCache(ttl_seconds=30, clock=clock))

    resolver.resolve(TargetKind.JOB, "nightly-settlement")
    repository.save_config(job_config(ttl_seconds=120))
    clock.advance(seconds=29)
    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").ttl_seconds == 60
    clock.advance(seconds=1)
    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").ttl_seconds == 120


def test_disabled_cache_always_reads_store() -> None:
    repository = InMemoryRepository()
    cache = ConfigCache(enabled=False)
    resolver = ConfigResolver(repository, cache=cache)

    resolver.resolve(TargetKind.JOB, "nightly-settlement")
    repository.save_config(job_config())

    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").config_id == "NIGHTLY"
    assert len(cache) == 0


def test_admin_writes_invalidate_shared_cache() -> None:
    repository = InMemoryRepository()
    cache = ConfigCache()
    resolver = ConfigResolver(repository, cache=cache)
    admin = ConfigAdmin(repository, cache=cache)
    admin.save_config(job_config())

    assert resolver.resolve(TargetKind.JOB, "nightly-settlement").enabled
    admin.set_enabled("NIGHTLY", False, actor="ops")

    disabled = resolver.resolve(TargetKind.JOB, "nightly-settlement")
    assert not disabled.enabled
    assert disabled.updated_by == "ops"
    assert disabled.version == 2


def test_admin_rejects_invalid_rows() -> None:
    admin = ConfigAdmin(InMemoryRepository())
    broken = job_config(config_id=" ", pattern="", ttl_seconds=0, max_retries=-1)

    problems = admin.validate_config(broken)

    assert problems == [
        "config_id is required",
        "target_pattern is required",
        "ttl_seconds must be > 0",
        "max_retries must be >= 0",
    ]
    with pytest.raises(ValidationError, match="ttl_seconds must be > 0"):
        admin.save_config(broken)


def test_admin_enable_unknown_config_fails() -> None:
    with pytest.raises(ValidationError, match="Unknown idempotency config"):
        ConfigAdmin(InMemoryRepository()).set_enabled("MISSING", True)


def test_seed_defaults_is_idempotent_unless_overwriting() -> None:
    repository = InMemoryRepository()
    admin = ConfigAdmin(repository)

    seeded = admin.seed_defaults(PolicySettings())
    assert [config.config_id for config in seeded] == ["DEFAULT_JOB", "DEFAULT_API_ENDPOINT"]
    assert admin.seed_defaults(PolicySettings()) == []

    overwritten = admin.seed_defaults(PolicySettings(), overwrite=True)
    assert [config.version for config in overwritten] == [2, 2]

    summary = admin.summary()
    assert summary.total == 2
    assert summary.enabled == 2
    assert summary.disabled == 0
    assert summary.by_kind == {"API_ENDPOINT": 1, "JOB": 1}
