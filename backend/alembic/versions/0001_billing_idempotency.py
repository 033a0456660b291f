"""billing idempotency and checkout session tables

Revision ID: 0001_billing_idempotency
Revises:
Create Date: 2026-02-21 09:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_billing_idempotency"
down_revision = None
branch_labels = None
depends_on = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
PENDING_CHECKOUT_PREDICATE = sa.text("action = 'checkout' AND status = 'pending'")


def upgrade() -> None:
    op.create_table(
        "billable_entities",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(length=32), nullable=False, server_default="workspace"),
        sa.Column("display_name", sa.String(length=191), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "billing_request_idempotency",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column(
            "billable_entity_id",
            ID_TYPE,
            sa.ForeignKey("billable_entities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("client_idempotency_key", sa.String(length=191), nullable=False),
        sa.Column("request_fingerprint_hash", sa.String(length=64), nullable=False),
        sa.Column("normalized_request_json", sa.JSON(), nullable=False),
        sa.Column("operation_key", sa.String(length=64), nullable=False),
        sa.Column("provider_request_params_json", sa.JSON(), nullable=True),
        sa.Column("provider_request_hash", sa.String(length=64), nullable=True),
        sa.Column("provider_request_schema_version", sa.String(length=120), nullable=True),
        sa.Column("provider_sdk_name", sa.String(length=64), nullable=True),
        sa.Column("provider_sdk_version", sa.String(length=32), nullable=True),
        sa.Column("provider_api_version", sa.String(length=32), nullable=True),
        sa.Column("provider_request_frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="stripe"),
        sa.Column("provider_idempotency_key", sa.String(length=191), nullable=False),
        sa.Column("provider_idempotency_replay_deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_checkout_session_expires_at_upper_bound", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_session_id", sa.String(length=191), nullable=True),
        sa.Column("response_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("pending_lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(length=120), nullable=True),
        sa.Column("lease_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("recovery_attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_recovery_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_code", sa.String(length=96), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "billable_entity_id",
            "action",
            "client_idempotency_key",
            name="uq_billing_request_idempotency_entity_action_client_key",
        ),
        sa.UniqueConstraint("action", "operation_key", name="uq_billing_request_idempotency_action_operation_key"),
        sa.UniqueConstraint(
            "provider",
            "provider_idempotency_key",
            name="uq_billing_request_idempotency_provider_idempotency_key",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'expired')",
            name="ck_billing_request_idempotency_status",
        ),
    )
    op.create_index(
        "uq_billing_request_idempotency_active_checkout",
        "billing_request_idempotency",
        ["billable_entity_id"],
        unique=True,
        postgresql_where=PENDING_CHECKOUT_PREDICATE,
        sqlite_where=PENDING_CHECKOUT_PREDICATE,
    )
    op.create_index(
        "ix_billing_request_idempotency_entity_action_created",
        "billing_request_idempotency",
        ["billable_entity_id", "action", "created_at"],
    )
    op.create_index(
        "ix_billing_request_idempotency_status_lease",
        "billing_request_idempotency",
        ["status", "pending_lease_expires_at"],
    )
    op.create_index(
        "ix_billing_request_idempotency_replay_deadline",
        "billing_request_idempotency",
        ["provider_idempotency_replay_deadline_at"],
    )

    op.create_table(
        "billing_checkout_sessions",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column(
            "billable_entity_id",
            ID_TYPE,
            sa.ForeignKey("billable_entities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_checkout_session_id", sa.String(length=191), nullable=True),
        sa.Column(
            "idempotency_row_id",
            ID_TYPE,
            sa.ForeignKey("billing_request_idempotency.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("operation_key", sa.String(length=64), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=191), nullable=True),
        sa.Column("provider_subscription_id", sa.String(length=191), nullable=True),
        sa.Column("status", sa.String(length=48), nullable=False),
        sa.Column("checkout_url", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_provider_event_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_provider_event_id", sa.String(length=191), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "provider", "provider_checkout_session_id", name="uq_billing_checkout_sessions_provider_session"
        ),
        sa.UniqueConstraint("provider", "operation_key", name="uq_billing_checkout_sessions_provider_operation_key"),
        sa.UniqueConstraint("idempotency_row_id", name="uq_billing_checkout_sessions_idempotency_row_id"),
        sa.CheckConstraint(
            "status IN ('open', 'completed_pending_subscription', 'recovery_verification_pending', "
            "'completed_reconciled', 'expired', 'abandoned')",
            name="ck_billing_checkout_sessions_status",
        ),
    )
    op.create_index(
        "ix_billing_checkout_sessions_entity_status",
        "billing_checkout_sessions",
        ["billable_entity_id", "status"],
    )

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("runner_id", sa.String(length=128), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=128), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_billing_checkout_sessions_entity_status", table_name="billing_checkout_sessions")
    op.drop_table("billing_checkout_sessions")
    op.drop_index("ix_billing_request_idempotency_replay_deadline", table_name="billing_request_idempotency")
    op.drop_index("ix_billing_request_idempotency_status_lease", table_name="billing_request_idempotency")
    op.drop_index(
        "ix_billing_request_idempotency_entity_action_created", table_name="billing_request_idempotency"
    )
    op.drop_index("uq_billing_request_idempotency_active_checkout", table_name="billing_request_idempotency")
    op.drop_table("billing_request_idempotency")
    op.drop_table("billable_entities")
