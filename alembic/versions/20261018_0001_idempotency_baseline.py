"""Idempotency keys, audit trail and per-target configuration."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("target_kind", sa.String(), nullable=False),
        sa.Column("target_name", sa.String(), nullable=False),
        sa.Column("source_system", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("transaction_ref", sa.String(), nullable=True),
        sa.Column("content_hash", sa.String(), nullable=True),
        sa.Column("request_hash", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("request_payload", sa.Text(), nullable=True),
        sa.Column("response_payload", sa.Text(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("processing_node", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False, server_default="SYSTEM"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_idempotency_keys_state", "idempotency_keys", ["state"])
    op.create_index("ix_idempotency_keys_correlation_id", "idempotency_keys", ["correlation_id"])
    op.create_index(
        "ix_idempotency_keys_state_expires",
        "idempotency_keys",
        ["state", "expires_at"],
    )
    op.create_index(
        "ix_idempotency_keys_target",
        "idempotency_keys",
        ["target_kind", "target_name"],
    )

    op.create_table(
        "idempotency_audit",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("old_state", sa.String(), nullable=True),
        sa.Column("new_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("client_context_json", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_idempotency_audit_key_created",
        "idempotency_audit",
        ["key", "created_at"],
    )

    op.create_table(
        "idempotency_configs",
        sa.Column("config_id", sa.String(), nullable=False),
        sa.Column("target_kind", sa.String(), nullable=False),
        sa.Column("target_pattern", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ttl_seconds", sa.Integer(), nullable=False, server_default="86400"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("key_strategy", sa.String(), nullable=False, server_default="AUTO"),
        sa.Column(
            "store_request_payload",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column(
            "store_response_payload",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column(
            "encryption_required",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=False, server_default="SYSTEM"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("config_id"),
    )
    op.create_index("ix_idempotency_configs_target_kind", "idempotency_configs", ["target_kind"])


def downgrade() -> None:
    op.drop_index("ix_idempotency_configs_target_kind", table_name="idempotency_configs")
    op.drop_table("idempotency_configs")
    op.drop_index("ix_idempotency_audit_key_created", table_name="idempotency_audit")
    op.drop_table("idempotency_audit")
    op.drop_index("ix_idempotency_keys_target", table_name="idempotency_keys")
    op.drop_index("ix_idempotency_keys_state_expires", table_name="idempotency_keys")
    op.drop_index("ix_idempotency_keys_correlation_id", table_name="idempotency_keys")
    op.drop_index("ix_idempotency_keys_state", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
