from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.domain.billing import statuses
from app.domain.billing.constants import BILLING_DEFAULT_PROVIDER
from app.infra.db import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")

_PENDING_CHECKOUT_PREDICATE = text("action = 'checkout' AND status = 'pending'")


class BillableEntity(Base):
    __tablename__ = "billable_entities"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, default="workspace")
    display_name: Mapped[str | None] = mapped_column(String(191))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class BillingRequestIdempotency(Base):
    __tablename__ = "billing_request_idempotency"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    billable_entity_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("billable_entities.id", ondelete="RESTRICT"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    client_idempotency_key: Mapped[str] = mapped_column(String(191), nullable=False)
    request_fingerprint_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    normalized_request_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    operation_key: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_request_params_json: Mapped[dict | None] = mapped_column(JSON)
    provider_request_hash: Mapped[str | None] = mapped_column(String(64))
    provider_request_schema_version: Mapped[str | None] = mapped_column(String(120))
    provider_sdk_name: Mapped[str | None] = mapped_column(String(64))
    provider_sdk_version: Mapped[str | None] = mapped_column(String(32))
    provider_api_version: Mapped[str | None] = mapped_column(String(32))
    provider_request_frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default=BILLING_DEFAULT_PROVIDER)
    provider_idempotency_key: Mapped[str] = mapped_column(String(191), nullable=False)
    provider_idempotency_replay_deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider_checkout_session_expires_at_upper_bound: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    provider_session_id: Mapped[str | None] = mapped_column(String(191))
    response_json: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.PENDING)
    pending_lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pending_last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lease_owner: Mapped[str | None] = mapped_column(String(120))
    lease_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    recovery_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_recovery_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_code: Mapped[str | None] = mapped_column(String(96))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "billable_entity_id",
            "action",
            "client_idempotency_key",
            name="uq_billing_request_idempotency_entity_action_client_key",
        ),
        UniqueConstraint("action", "operation_key", name="uq_billing_request_idempotency_action_operation_key"),
        UniqueConstraint(
            "provider",
            "provider_idempotency_key",
            name="uq_billing_request_idempotency_provider_idempotency_key",
        ),
        Index(
            "uq_billing_request_idempotency_active_checkout",
            "billable_entity_id",
            unique=True,
            postgresql_where=_PENDING_CHECKOUT_PREDICATE,
            sqlite_where=_PENDING_CHECKOUT_PREDICATE,
        ),
        Index("ix_billing_request_idempotency_entity_action_created", "billable_entity_id", "action", "created_at"),
        Index("ix_billing_request_idempotency_status_lease", "status", "pending_lease_expires_at"),
        Index("ix_billing_request_idempotency_replay_deadline", "provider_idempotency_replay_deadline_at"),
    )


class BillingCheckoutSession(Base):
    __tablename__ = "billing_checkout_sessions"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    billable_entity_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("billable_entities.id", ondelete="RESTRICT"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_checkout_session_id: Mapped[str | None] = mapped_column(String(191))
    idempotency_row_id: Mapped[int | None] = mapped_column(
        ID_TYPE, ForeignKey("billing_request_idempotency.id", ondelete="SET NULL")
    )
    operation_key: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_customer_id: Mapped[str | None] = mapped_column(String(191))
    provider_subscription_id: Mapped[str | None] = mapped_column(String(191))
    status: Mapped[str] = mapped_column(String(48), nullable=False)
    checkout_url: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_provider_event_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_provider_event_id: Mapped[str | None] = mapped_column(String(191))
    metadata_json: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_checkout_session_id", name="uq_billing_checkout_sessions_provider_session"
        ),
        UniqueConstraint("provider", "operation_key", name="uq_billing_checkout_sessions_provider_operation_key"),
        UniqueConstraint("idempotency_row_id", name="uq_billing_checkout_sessions_idempotency_row_id"),
        Index("ix_billing_checkout_sessions_entity_status", "billable_entity_id", "status"),
    )
