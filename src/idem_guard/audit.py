"""Append-only audit trail of record state transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from idem_guard.models import AuditEntry, RecordState, RequestContext
from idem_guard.storage.base import AuditSink
from idem_guard.storage.common import utc_now

logger = logging.getLogger(__name__)


class AuditTrail:
    """Writes one entry per transition. Write failures never reach the caller."""

    def __init__(
        self,
        sink: AuditSink,
        *,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
        default_actor: str = "SYSTEM",
    ) -> None:
        self._sink = sink
        self._enabled = enabled
        self._clock = clock
        self._default_actor = default_actor

    @property
    def enabled(self) -> bool:
        return self._enabled

    def append(self, entry: AuditEntry) -> None:
        if not self._enabled:
            return
        try:
            self._sink.append_audit(entry)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to append audit entry for %s (%s -> %s)",
                entry.key,
                entry.old_state.value if entry.old_state is not None else "-",
                entry.new_state.value,
            )

    def record_transition(
        self,
        key: str,
        old_state: RecordState | None,
        new_state: RecordState,
        reason: str,
        *,
        correlation_id: str | None = None,
        context: RequestContext | None = None,
    ) -> None:
        """Build and append an entry stamped with the current time."""

        actor = context.actor if context is not None and context.actor else self._default_actor
        self.append(
            AuditEntry(
                key=key,
                old_state=old_state,
                new_state=new_state,
                reason=reason,
                actor=actor,
                timestamp=self._clock(),
                correlation_id=correlation_id,
                client_context=context.to_details() if context is not None else {},
            ),
        )

    def record_access(
        self,
        key: str,
        state: RecordState,
        reason: str,
        *,
        correlation_id: str | None = None,
        context: RequestContext | None = None,
    ) -> None:
        """Access event: the state did not change, so before and after match."""

        self.record_transition(
            key,
            state,
            state,
            reason,
            correlation_id=correlation_id,
            context=context,
        )

    def history(self, key: str) -> list[AuditEntry]:
        return self._sink.list_audit(key)
