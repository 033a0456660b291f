from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing import statuses
from app.domain.billing.constants import (
    CHECKOUT_SESSION_EXPIRES_AT_GRACE_SECONDS,
    CHECKOUT_SESSION_TRANSITION_INVALID,
)
from app.domain.billing.db_models import BillingCheckoutSession
from app.domain.billing.repository import BillingRepository
from app.domain.errors import BillingError

logger = logging.getLogger(__name__)

ONE_OFF_FLOW = "one_off"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def pick_later_date(left: datetime | None, right: datetime | None) -> datetime | None:
    left_utc = _ensure_utc(left)
    right_utc = _ensure_utc(right)
    if left_utc is None:
        return right_utc
    if right_utc is None:
        return left_utc
    return left_utc if left_utc >= right_utc else right_utc


def _is_one_off_flow(checkout_session: BillingCheckoutSession) -> bool:
    metadata = checkout_session.metadata_json if isinstance(checkout_session.metadata_json, dict) else {}
    flow = (
        metadata.get("checkout_flow")
        or metadata.get("checkoutFlow")
        or metadata.get("checkout_type")
        or metadata.get("checkoutType")
    )
    return str(flow or "").strip().lower() == ONE_OFF_FLOW


class CheckoutSessionService:
    """Every checkout-session status write goes through the transition table here."""

    def __init__(
        self,
        repository: BillingRepository,
        *,
        checkout_session_grace_seconds: int | None = CHECKOUT_SESSION_EXPIRES_AT_GRACE_SECONDS,
    ) -> None:
        self.repository = repository
        self.grace_seconds = max(0, int(checkout_session_grace_seconds or 0))

    def _is_open_blocking(self, checkout_session: BillingCheckoutSession, now: datetime) -> bool:
        if checkout_session.status != statuses.OPEN:
            return False
        expires_at = _ensure_utc(checkout_session.expires_at)
        if expires_at is None:
            return True
        return expires_at > now - timedelta(seconds=self.grace_seconds)

    @staticmethod
    def _is_recovery_hold_blocking(checkout_session: BillingCheckoutSession, now: datetime) -> bool:
        if checkout_session.status != statuses.RECOVERY_VERIFICATION_PENDING:
            return False
        expires_at = _ensure_utc(checkout_session.expires_at)
        if expires_at is None:
            return True
        return expires_at > now

    @staticmethod
    def assert_transition_allowed(checkout_session: BillingCheckoutSession | None, next_status: str) -> None:
        if checkout_session is None:
            raise BillingError(detail="Checkout session not found.", status=404)
        if checkout_session.status == next_status:
            return
        if not statuses.can_transition_checkout_status(checkout_session.status, next_status):
            raise BillingError(
                detail=f"Checkout session transition {checkout_session.status} -> {next_status} is not allowed.",
                status=409,
                code=CHECKOUT_SESSION_TRANSITION_INVALID,
            )

    async def _transition(
        self,
        session: AsyncSession,
        checkout_session: BillingCheckoutSession,
        next_status: str,
        values: dict[str, Any],
    ) -> BillingCheckoutSession:
        if statuses.is_checkout_terminal_status(checkout_session.status):
            # Terminal sessions are never regressed; late events are no-ops.
            return checkout_session
        self.assert_transition_allowed(checkout_session, next_status)
        updated = await self.repository.update_checkout_session_by_id(
            session, checkout_session.id, {**values, "status": next_status}
        )
        assert updated is not None
        logger.info(
            "billing_checkout_session_transition",
            extra={
                "extra": {
                    "checkout_session_id": updated.id,
                    "operation_key": updated.operation_key,
                    "status": next_status,
                }
            },
        )
        return updated

    async def _find(
        self,
        session: AsyncSession,
        *,
        provider: str,
        operation_key: str | None,
        provider_checkout_session_id: str | None,
    ) -> BillingCheckoutSession | None:
        if provider_checkout_session_id:
            return await self.repository.find_checkout_session_by_provider_session_id(
                session,
                provider=provider,
                provider_checkout_session_id=provider_checkout_session_id,
                for_update=True,
            )
        if operation_key:
            return await self.repository.find_checkout_session_by_operation_key(
                session, provider=provider, operation_key=operation_key, for_update=True
            )
        return None

    async def cleanup_expired_blocking_sessions(
        self, session: AsyncSession, *, billable_entity_id: int, now: datetime | None = None
    ) -> list[BillingCheckoutSession]:
        now = _ensure_utc(now) or _now()
        checkout_sessions = await self.repository.lock_checkout_sessions_for_entity(session, billable_entity_id)
        for checkout_session in checkout_sessions:
            expires_at = _ensure_utc(checkout_session.expires_at)
            if expires_at is None:
                continue
            if checkout_session.status == statuses.OPEN and expires_at <= now - timedelta(
                seconds=self.grace_seconds
            ):
                await self._transition(session, checkout_session, statuses.CHECKOUT_EXPIRED, {})
            elif checkout_session.status == statuses.RECOVERY_VERIFICATION_PENDING and expires_at <= now:
                await self._transition(session, checkout_session, statuses.ABANDONED, {})
        return checkout_sessions

    async def get_blocking_checkout_session(
        self,
        session: AsyncSession,
        *,
        billable_entity_id: int,
        now: datetime | None = None,
        cleanup_expired: bool = False,
    ) -> BillingCheckoutSession | None:
        now = _ensure_utc(now) or _now()
        if cleanup_expired:
            checkout_sessions = await self.cleanup_expired_blocking_sessions(
                session, billable_entity_id=billable_entity_id, now=now
            )
        else:
            checkout_sessions = await self.repository.list_checkout_sessions_for_entity(session, billable_entity_id)

        for checkout_session in checkout_sessions:
            if _is_one_off_flow(checkout_session):
                continue
            if checkout_session.status == statuses.COMPLETED_PENDING_SUBSCRIPTION:
                return checkout_session
            if self._is_open_blocking(checkout_session, now):
                return checkout_session
            if self._is_recovery_hold_blocking(checkout_session, now):
                return checkout_session
        return None

    async def upsert_blocking_checkout_session(
        self, session: AsyncSession, values: dict[str, Any]
    ) -> BillingCheckoutSession:
        next_status = str(values.get("status") or "").strip()
        if not statuses.is_blocking_checkout_status(next_status):
            raise BillingError(detail="Blocking checkout session upsert requires a blocking status.", status=500)

        existing = await self.repository.find_checkout_session_by_operation_key(
            session, provider=values["provider"], operation_key=values["operation_key"], for_update=True
        )
        if existing is not None:
            if statuses.is_checkout_terminal_status(existing.status):
                return existing
            self.assert_transition_allowed(existing, next_status)
        return await self.repository.upsert_checkout_session_by_operation_key(session, values)

    async def mark_completed_pending_subscription(
        self,
        session: AsyncSession,
        *,
        billable_entity_id: int,
        provider: str,
        operation_key: str | None = None,
        provider_checkout_session_id: str | None = None,
        provider_customer_id: str | None = None,
        provider_subscription_id: str | None = None,
        provider_event_created_at: datetime | None = None,
        provider_event_id: str | None = None,
    ) -> BillingCheckoutSession:
        existing = await self._find(
            session,
            provider=provider,
            operation_key=operation_key,
            provider_checkout_session_id=provider_checkout_session_id,
        )
        if existing is not None:
            return await self._transition(
                session,
                existing,
                statuses.COMPLETED_PENDING_SUBSCRIPTION,
                {
                    "provider_checkout_session_id": provider_checkout_session_id
                    or existing.provider_checkout_session_id,
                    "provider_customer_id": provider_customer_id or existing.provider_customer_id,
                    "provider_subscription_id": provider_subscription_id or existing.provider_subscription_id,
                    "completed_at": provider_event_created_at or existing.completed_at,
                    "last_provider_event_created_at": provider_event_created_at
                    or existing.last_provider_event_created_at,
                    "last_provider_event_id": provider_event_id or existing.last_provider_event_id,
                },
            )
        if not operation_key:
            raise BillingError(detail="Checkout session correlation requires an operation key.", status=409)
        return await self.repository.upsert_checkout_session_by_operation_key(
            session,
            {
                "billable_entity_id": billable_entity_id,
                "provider": provider,
                "operation_key": operation_key,
                "provider_checkout_session_id": provider_checkout_session_id,
                "provider_customer_id": provider_customer_id,
                "provider_subscription_id": provider_subscription_id,
                "status": statuses.COMPLETED_PENDING_SUBSCRIPTION,
                "completed_at": provider_event_created_at,
                "last_provider_event_created_at": provider_event_created_at,
                "last_provider_event_id": provider_event_id,
            },
        )

    async def mark_reconciled(
        self,
        session: AsyncSession,
        *,
        provider: str,
        operation_key: str | None = None,
        provider_checkout_session_id: str | None = None,
        provider_subscription_id: str | None = None,
        provider_event_created_at: datetime | None = None,
        provider_event_id: str | None = None,
    ) -> BillingCheckoutSession | None:
        existing = await self._find(
            session,
            provider=provider,
            operation_key=operation_key,
            provider_checkout_session_id=provider_checkout_session_id,
        )
        if existing is None:
            return None
        return await self._transition(
            session,
            existing,
            statuses.COMPLETED_RECONCILED,
            {
                "provider_subscription_id": provider_subscription_id or existing.provider_subscription_id,
                "last_provider_event_created_at": provider_event_created_at
                or existing.last_provider_event_created_at,
                "last_provider_event_id": provider_event_id or existing.last_provider_event_id,
            },
        )

    async def mark_recovery_verification_pending(
        self,
        session: AsyncSession,
        *,
        billable_entity_id: int,
        provider: str,
        operation_key: str,
        idempotency_row_id: int | None,
        hold_expires_at: datetime,
        now: datetime | None = None,
        metadata: dict | None = None,
    ) -> BillingCheckoutSession | None:
        """Create or extend a recovery-verification hold for ``operation_key``.

        Returns ``None`` when a correlated session already exists in any other
        status: the provider object is known, so no provisional hold is needed.
        An existing hold keeps the later of its own and the requested expiry.
        """
        now = _ensure_utc(now) or _now()
        existing = await self.repository.find_checkout_session_by_operation_key(
            session, provider=provider, operation_key=operation_key, for_update=True
        )
        if existing is not None:
            if existing.status != statuses.RECOVERY_VERIFICATION_PENDING:
                return None
            return await self.repository.update_checkout_session_by_id(
                session,
                existing.id,
                {
                    "expires_at": pick_later_date(existing.expires_at, hold_expires_at),
                    "last_provider_event_created_at": now,
                },
            )
        return await self.repository.upsert_checkout_session_by_operation_key(
            session,
            {
                "billable_entity_id": billable_entity_id,
                "provider": provider,
                "operation_key": operation_key,
                "provider_checkout_session_id": None,
                "idempotency_row_id": idempotency_row_id,
                "status": statuses.RECOVERY_VERIFICATION_PENDING,
                "expires_at": hold_expires_at,
                "last_provider_event_created_at": now,
                "metadata_json": metadata,
            },
        )

    async def mark_expired_or_abandoned(
        self,
        session: AsyncSession,
        *,
        provider: str,
        next_status: str,
        operation_key: str | None = None,
        provider_checkout_session_id: str | None = None,
        provider_event_created_at: datetime | None = None,
        provider_event_id: str | None = None,
    ) -> BillingCheckoutSession | None:
        if next_status not in {statuses.CHECKOUT_EXPIRED, statuses.ABANDONED}:
            raise BillingError(detail="Checkout session can only be expired or abandoned here.", status=500)
        existing = await self._find(
            session,
            provider=provider,
            operation_key=operation_key,
            provider_checkout_session_id=provider_checkout_session_id,
        )
        if existing is None:
            return None
        return await self._transition(
            session,
            existing,
            next_status,
            {
                "last_provider_event_created_at": provider_event_created_at
                or existing.last_provider_event_created_at,
                "last_provider_event_id": provider_event_id or existing.last_provider_event_id,
            },
        )
