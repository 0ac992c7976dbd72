"""SQLModel ORM tables for idempotency storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class IdempotencyKeyRow(SQLModel, table=True):
    __tablename__ = "idempotency_keys"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_idempotency_keys_state_expires", "state", "expires_at"),
        Index("ix_idempotency_keys_target", "target_kind", "target_name"),
    )

    key: str = Field(primary_key=True, max_length=128)
    target_kind: str
    target_name: str
    source_system: str
    correlation_id: str = Field(index=True)
    transaction_ref: str | None = None
    content_hash: str | None = None
    request_hash: str | None = None
    state: str = Field(index=True)
    request_payload: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    response_payload: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_detail: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_accessed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    attempt_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    retry_count: int = 0
    max_retries: int = 3
    processing_node: str | None = None
    created_by: str = "SYSTEM"
    version: int = 1


class IdempotencyAuditRow(SQLModel, table=True):
    __tablename__ = "idempotency_audit"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_idempotency_audit_key_created", "key", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    key: str
    old_state: str | None = None
    new_state: str
    reason: str
    actor: str
    correlation_id: str | None = None
    client_context_json: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IdempotencyConfigRow(SQLModel, table=True):
    __tablename__ = "idempotency_configs"  # type: ignore[bad-override]

    config_id: str = Field(primary_key=True)
    target_kind: str = Field(index=True)
    target_pattern: str
    enabled: bool = True
    ttl_seconds: int = 86_400
    max_retries: int = 3
    key_strategy: str = "AUTO"
    store_request_payload: bool = True
    store_response_payload: bool = True
    encryption_required: bool = False
    description: str | None = None
    updated_by: str = "SYSTEM"
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    version: int = 1
