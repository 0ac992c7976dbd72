"""Policy resolution for targets and administration of persisted policy rows."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from fnmatch import fnmatchcase

from idem_guard.config import KindPolicy, PolicySettings
from idem_guard.errors import ValidationError
from idem_guard.models import ConfigSummary, IdempotencyConfig, KeyStrategy, TargetKind
from idem_guard.storage.base import ConfigSource, ConfigWriter
from idem_guard.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_IDS: dict[TargetKind, str] = {
    TargetKind.JOB: "DEFAULT_JOB",
    TargetKind.API_ENDPOINT: "DEFAULT_API_ENDPOINT",
}
_WILDCARD_CHARS = frozenset("*?[]")

_FALLBACK_CONFIGS: dict[TargetKind, IdempotencyConfig] = {
    kind: IdempotencyConfig(
        config_id=f"FALLBACK_{kind.value}",
        target_kind=kind,
        target_pattern="*",
        enabled=True,
        ttl_seconds=24 * 3_600,
        max_retries=3,
        key_strategy=KeyStrategy.AUTO,
        store_request_payload=True,
        store_response_payload=True,
        encryption_required=False,
        description="Synthesized fallback used when no default row is persisted",
    )
    for kind in TargetKind
}


def fallback_config(target_kind: TargetKind) -> IdempotencyConfig:
    """Process-stable policy used when nothing is persisted for a kind."""

    return _FALLBACK_CONFIGS[TargetKind(target_kind)]


class ConfigCache:
    """Resolved-policy cache keyed by ``(kind, target name)``.

    ``ttl_seconds == 0`` keeps entries until ``invalidate``/``clear``.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        ttl_seconds: int = 3_600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._enabled = enabled
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[TargetKind, str], tuple[IdempotencyConfig, datetime]] = {}

    def get(self, target_kind: TargetKind, target_name: str) -> IdempotencyConfig | None:
        if not self._enabled:
            return None
        with self._lock:
            entry = self._entries.get((target_kind, target_name))
            if entry is None:
                return None
            config, cached_at = entry
            if self._ttl is not None and self._clock() - cached_at >= self._ttl:
                del self._entries[(target_kind, target_name)]
                return None
            return config

    def put(self, target_kind: TargetKind, target_name: str, config: IdempotencyConfig) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._entries[(target_kind, target_name)] = (config, self._clock())

    def invalidate(self, target_kind: TargetKind | None = None) -> None:
        """Drop cached entries for one kind, or all of them."""

        with self._lock:
            if target_kind is None:
                self._entries.clear()
                return
            for cache_key in [key for key in self._entries if key[0] == target_kind]:
                del self._entries[cache_key]

    def clear(self) -> None:
        self.invalidate()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ConfigResolver:
    """Finds the effective policy for a target by best pattern match."""

    def __init__(self, source: ConfigSource, *, cache: ConfigCache | None = None) -> None:
        self._source = source
        self._cache = cache or ConfigCache()

    @property
    def cache(self) -> ConfigCache:
        return self._cache

    def resolve(self, target_kind: TargetKind, target_name: str) -> IdempotencyConfig:
        kind = TargetKind(target_kind)
        cached = self._cache.get(kind, target_name)
        if cached is not None:
            return cached

        configs = self._source.list_configs(kind)
        config = best_match(configs, target_name)
        if config is None:
            default_id = DEFAULT_CONFIG_IDS[kind]
            config = next((row for row in configs if row.config_id == default_id), None)
        if config is None:
            logger.debug("No persisted policy for %s %s; using fallback", kind.value, target_name)
            config = fallback_config(kind)
        else:
            logger.debug(
                "Resolved policy %s for %s %s",
                config.config_id,
                kind.value,
                target_name,
            )
        self._cache.put(kind, target_name, config)
        return config


def best_match(configs: list[IdempotencyConfig], target_name: str) -> IdempotencyConfig | None:
    """Most specific non-default row whose pattern matches ``target_name``.

    Exact patterns win; among wildcards the one with the most literal
    characters wins; ties go to the lowest config id. Disabled rows take part.
    """

    default_ids = set(DEFAULT_CONFIG_IDS.values())
    candidates = [
        config
        for config in configs
        if config.config_id not in default_ids and fnmatchcase(target_name, config.target_pattern)
    ]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda config: (
            config.target_pattern != target_name,
            -_literal_length(config.target_pattern),
            config.config_id,
        ),
    )


def _literal_length(pattern: str) -> int:
    return sum(1 for char in pattern if char not in _WILDCARD_CHARS)


class ConfigAdmin:
    """Administrative writes over persisted policy. Every write invalidates the cache."""

    def __init__(self, writer: ConfigWriter, *, cache: ConfigCache | None = None) -> None:
        self._writer = writer
        self._cache = cache

    def validate_config(self, config: IdempotencyConfig) -> list[str]:
        """Return human-readable problems; empty when the row is usable."""

        problems: list[str] = []
        if not config.config_id or not config.config_id.strip():
            problems.append("config_id is required")
        if not config.target_pattern or not config.target_pattern.strip():
            problems.append("target_pattern is required")
        if config.ttl_seconds <= 0:
            problems.append("ttl_seconds must be > 0")
        if config.max_retries < 0:
            problems.append("max_retries must be >= 0")
        try:
            TargetKind(config.target_kind)
        except ValueError:
            problems.append(f"unsupported target_kind {config.target_kind!r}")
        try:
            KeyStrategy(config.key_strategy)
        except ValueError:
            problems.append(f"unsupported key_strategy {config.key_strategy!r}")
        return problems

    def save_config(self, config: IdempotencyConfig) -> IdempotencyConfig:
        problems = self.validate_config(config)
        if problems:
            raise ValidationError(f"Invalid config {config.config_id!r}: " + "; ".join(problems))
        stored = self._writer.save_config(config)
        self._invalidate(stored.target_kind)
        logger.info("Saved idempotency config %s", stored.summary())
        return stored

    def set_enabled(
        self,
        config_id: str,
        enabled: bool,
        *,
        actor: str = "SYSTEM",
    ) -> IdempotencyConfig:
        existing = self._writer.get_config(config_id)
        if existing is None:
            raise ValidationError(f"Unknown idempotency config: {config_id}")
        stored = self._writer.save_config(replace(existing, enabled=enabled, updated_by=actor))
        self._invalidate(stored.target_kind)
        logger.info("%s idempotency config %s", "Enabled" if enabled else "Disabled", config_id)
        return stored

    def seed_defaults(
        self,
        policy: PolicySettings,
        *,
        overwrite: bool = False,
        actor: str = "SYSTEM",
    ) -> list[IdempotencyConfig]:
        """Persist the per-kind default rows; existing rows are kept unless ``overwrite``."""

        seeded: list[IdempotencyConfig] = []
        for kind, kind_policy in (
            (TargetKind.JOB, policy.job),
            (TargetKind.API_ENDPOINT, policy.api_endpoint),
        ):
            config_id = DEFAULT_CONFIG_IDS[kind]
            if not overwrite and self._writer.get_config(config_id) is not None:
                logger.debug("Default config %s already present", config_id)
                continue
            seeded.append(
                self.save_config(_default_row(kind, config_id, kind_policy, actor=actor)),
            )
        return seeded

    def summary(self) -> ConfigSummary:
        configs = self._writer.list_configs()
        by_kind: dict[str, int] = {}
        for config in configs:
            by_kind[config.target_kind.value] = by_kind.get(config.target_kind.value, 0) + 1
        return ConfigSummary(
            total=len(configs),
            enabled=sum(1 for config in configs if config.enabled),
            by_kind=dict(sorted(by_kind.items())),
        )

    def _invalidate(self, target_kind: TargetKind) -> None:
        if self._cache is not None:
            self._cache.invalidate(target_kind)


def _default_row(
    kind: TargetKind,
    config_id: str,
    kind_policy: KindPolicy,
    *,
    actor: str,
) -> IdempotencyConfig:
    return IdempotencyConfig(
        config_id=config_id,
        target_kind=kind,
        target_pattern=kind_policy.target_pattern,
        enabled=True,
        ttl_seconds=kind_policy.ttl_hours * 3_600,
        max_retries=kind_policy.max_retries,
        key_strategy=KeyStrategy.AUTO,
        store_request_payload=kind_policy.store_request_payload,
        store_response_payload=kind_policy.store_response_payload,
        encryption_required=kind_policy.encryption_required,
        description=f"Default policy for {kind.value} targets",
        updated_by=actor,
    )
