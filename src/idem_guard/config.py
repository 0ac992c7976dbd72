"""Runtime configuration for the idempotency engine and its store."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = ".idem_guard.db"


@dataclass(slots=True)
class EngineSettings:
    """Execution-path tunables."""

    stale_timeout_seconds: int = 1_800
    completion_retry_attempts: int = 3
    completion_retry_backoff_seconds: float = 0.05
    completion_retry_backoff_multiplier: float = 2.0
    max_acquire_attempts: int = 5
    max_payload_bytes: int = 1_048_576
    renew_expired_keys: bool = True
    collect_metrics: bool = True
    processing_node: str = field(default_factory=socket.gethostname)


@dataclass(slots=True)
class KindPolicy:
    """Default policy persisted for one target kind."""

    ttl_hours: int
    max_retries: int
    target_pattern: str = "*"
    store_request_payload: bool = True
    store_response_payload: bool = True
    encryption_required: bool = False


@dataclass(slots=True)
class PolicySettings:
    """Per-kind defaults. HTTP keys live shorter and retry less than batch reruns."""

    job: KindPolicy = field(default_factory=lambda: KindPolicy(ttl_hours=24, max_retries=3))
    api_endpoint: KindPolicy = field(
        default_factory=lambda: KindPolicy(ttl_hours=1, max_retries=1, target_pattern="/api/*"),
    )


@dataclass(slots=True)
class CacheSettings:
    """Resolved-config cache settings."""

    enabled: bool = True
    ttl_seconds: int = 3_600


@dataclass(slots=True)
class AuditSettings:
    """Audit trail settings."""

    enabled: bool = True
    retention_days: int = 90


@dataclass(slots=True)
class ActorSettings:
    """Identity written to audit rows when a request carries no context."""

    actor_id: str = "SYSTEM"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    actor: ActorSettings = field(default_factory=ActorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("IDEM_GUARD_DB_PATH", DEFAULT_DB_PATH)),
            sqlite_busy_timeout_ms=int(os.getenv("IDEM_GUARD_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                stale_timeout_seconds=int(
                    os.getenv("IDEM_GUARD_STALE_TIMEOUT_SECONDS", "1800"),
                ),
                completion_retry_attempts=int(
                    os.getenv("IDEM_GUARD_COMPLETION_RETRY_ATTEMPTS", "3"),
                ),
                completion_retry_backoff_seconds=float(
                    os.getenv("IDEM_GUARD_COMPLETION_RETRY_BACKOFF_SECONDS", "0.05"),
                ),
                completion_retry_backoff_multiplier=float(
                    os.getenv("IDEM_GUARD_COMPLETION_RETRY_BACKOFF_MULTIPLIER", "2.0"),
                ),
                max_acquire_attempts=int(os.getenv("IDEM_GUARD_MAX_ACQUIRE_ATTEMPTS", "5")),
                max_payload_bytes=int(os.getenv("IDEM_GUARD_MAX_PAYLOAD_BYTES", "1048576")),
                renew_expired_keys=_env_bool("IDEM_GUARD_RENEW_EXPIRED_KEYS", default=True),
                collect_metrics=_env_bool("IDEM_GUARD_COLLECT_METRICS", default=True),
                processing_node=os.getenv("IDEM_GUARD_PROCESSING_NODE", socket.gethostname()),
            ),
            policy=PolicySettings(
                job=KindPolicy(
                    ttl_hours=int(os.getenv("IDEM_GUARD_JOB_TTL_HOURS", "24")),
                    max_retries=int(os.getenv("IDEM_GUARD_JOB_MAX_RETRIES", "3")),
                ),
                api_endpoint=KindPolicy(
                    ttl_hours=int(os.getenv("IDEM_GUARD_API_TTL_HOURS", "1")),
                    max_retries=int(os.getenv("IDEM_GUARD_API_MAX_RETRIES", "1")),
                    target_pattern=os.getenv("IDEM_GUARD_API_TARGET_PATTERN", "/api/*"),
                ),
            ),
            cache=CacheSettings(
                enabled=_env_bool("IDEM_GUARD_CONFIG_CACHE_ENABLED", default=True),
                ttl_seconds=int(os.getenv("IDEM_GUARD_CONFIG_CACHE_TTL_SECONDS", "3600")),
            ),
            audit=AuditSettings(
                enabled=_env_bool("IDEM_GUARD_AUDIT_ENABLED", default=True),
                retention_days=int(os.getenv("IDEM_GUARD_AUDIT_RETENTION_DAYS", "90")),
            ),
            actor=ActorSettings(actor_id=os.getenv("IDEM_GUARD_ACTOR_ID", "SYSTEM")),
        )

    def validate(self) -> None:
        """Raise configuration error if any tunable is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("IDEM_GUARD_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.engine.stale_timeout_seconds <= 0:
            raise ValueError("IDEM_GUARD_STALE_TIMEOUT_SECONDS must be > 0.")
        if self.engine.completion_retry_attempts < 1:
            raise ValueError("IDEM_GUARD_COMPLETION_RETRY_ATTEMPTS must be >= 1.")
        if self.engine.completion_retry_backoff_seconds < 0:
            raise ValueError("IDEM_GUARD_COMPLETION_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.engine.completion_retry_backoff_multiplier < 1.0:
            raise ValueError("IDEM_GUARD_COMPLETION_RETRY_BACKOFF_MULTIPLIER must be >= 1.0.")
        if self.engine.max_acquire_attempts < 1:
            raise ValueError("IDEM_GUARD_MAX_ACQUIRE_ATTEMPTS must be >= 1.")
        if self.engine.max_payload_bytes <= 0:
            raise ValueError("IDEM_GUARD_MAX_PAYLOAD_BYTES must be > 0.")
        for name, policy in (("JOB", self.policy.job), ("API", self.policy.api_endpoint)):
            if policy.ttl_hours < 1:
                raise ValueError(f"IDEM_GUARD_{name}_TTL_HOURS must be >= 1.")
            if policy.max_retries < 0:
                raise ValueError(f"IDEM_GUARD_{name}_MAX_RETRIES must be >= 0.")
        if self.cache.ttl_seconds < 0:
            raise ValueError("IDEM_GUARD_CONFIG_CACHE_TTL_SECONDS must be >= 0.")
        if self.audit.retention_days < 1:
            raise ValueError("IDEM_GUARD_AUDIT_RETENTION_DAYS must be >= 1.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
