"""Wire the engine and its collaborators from settings."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from idem_guard.audit import AuditTrail
from idem_guard.config import Settings
from idem_guard.engine import IdempotencyEngine, PayloadCipher
from idem_guard.keys import KeyGenerator
from idem_guard.maintenance import KeyMaintenance, MaintainedStore
from idem_guard.metrics import MetricsCollector
from idem_guard.policy import ConfigCache, ConfigResolver
from idem_guard.storage.base import ConfigWriter
from idem_guard.storage.common import utc_now


def build_config_cache(
    settings: Settings,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> ConfigCache:
    return ConfigCache(
        enabled=settings.cache.enabled,
        ttl_seconds=settings.cache.ttl_seconds,
        clock=clock,
    )


def build_engine(
    settings: Settings,
    store: MaintainedStore,
    config_source: ConfigWriter,
    *,
    cache: ConfigCache | None = None,
    metrics: MetricsCollector | None = None,
    cipher: PayloadCipher | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> IdempotencyEngine:
    """Engine over ``store`` with audit, metrics and policy configured from ``settings``.

    Pass the same ``cache`` to ``ConfigAdmin`` so admin writes are seen
    by the resolver immediately.
    """

    return IdempotencyEngine(
        store,
        ConfigResolver(config_source, cache=cache or build_config_cache(settings, clock=clock)),
        audit=AuditTrail(
            store,
            enabled=settings.audit.enabled,
            clock=clock,
            default_actor=settings.actor.actor_id,
        ),
        metrics=metrics,
        key_generator=KeyGenerator(clock=clock),
        settings=settings.engine,
        clock=clock,
        cipher=cipher,
    )


def build_maintenance(
    settings: Settings,
    store: MaintainedStore,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> KeyMaintenance:
    return KeyMaintenance(
        store,
        stale_timeout_seconds=settings.engine.stale_timeout_seconds,
        audit_retention_days=settings.audit.retention_days,
        clock=clock,
    )
