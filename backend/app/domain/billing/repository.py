from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.billing import statuses
from app.domain.billing.db_models import BillableEntity, BillingCheckoutSession, BillingRequestIdempotency

MAX_PENDING_SCAN_LIMIT = 500


class DuplicateIdempotencyKeyError(Exception):
    """An idempotency insert lost a race against a unique constraint."""


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return bind.dialect.name if bind is not None else ""


class BillingRepository:
    """Transactional store for idempotency and checkout-session rows.

    Every method takes the ``AsyncSession`` to run in; ``transaction`` opens one
    (or joins a caller-supplied session) so lock scope matches the caller's
    transaction. ``for_update`` maps to ``SELECT ... FOR UPDATE`` on dialects
    that support row locks and is ignored elsewhere.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self, session: AsyncSession | None = None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_factory() as new_session:
            async with new_session.begin():
                yield new_session

    # idempotency rows

    async def find_idempotency_by_natural_key(
        self,
        session: AsyncSession,
        *,
        billable_entity_id: int,
        action: str,
        client_idempotency_key: str,
        for_update: bool = False,
    ) -> BillingRequestIdempotency | None:
        stmt = select(BillingRequestIdempotency).where(
            BillingRequestIdempotency.billable_entity_id == billable_entity_id,
            BillingRequestIdempotency.action == action,
            BillingRequestIdempotency.client_idempotency_key == client_idempotency_key,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_idempotency_by_id(
        self, session: AsyncSession, row_id: int, *, for_update: bool = False
    ) -> BillingRequestIdempotency | None:
        stmt = select(BillingRequestIdempotency).where(BillingRequestIdempotency.id == row_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_pending_checkout_for_entity(
        self, session: AsyncSession, billable_entity_id: int, *, for_update: bool = False
    ) -> BillingRequestIdempotency | None:
        stmt = (
            select(BillingRequestIdempotency)
            .where(
                BillingRequestIdempotency.billable_entity_id == billable_entity_id,
                BillingRequestIdempotency.action == "checkout",
                BillingRequestIdempotency.status == statuses.PENDING,
            )
            .order_by(BillingRequestIdempotency.id)
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def insert_idempotency(self, session: AsyncSession, values: dict[str, Any]) -> BillingRequestIdempotency:
        dialect = _dialect_name(session)
        if dialect in {"postgresql", "sqlite"}:
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = (
                insert_fn(BillingRequestIdempotency)
                .values(**values)
                .on_conflict_do_nothing()
                .returning(BillingRequestIdempotency.id)
            )
            inserted_id = (await session.execute(stmt)).scalar_one_or_none()
            if inserted_id is None:
                raise DuplicateIdempotencyKeyError(values.get("client_idempotency_key"))
        else:
            try:
                async with session.begin_nested():
                    result = await session.execute(
                        BillingRequestIdempotency.__table__.insert()
                        .values(**values)
                        .returning(BillingRequestIdempotency.id)
                    )
                    inserted_id = result.scalar_one()
            except IntegrityError as exc:
                raise DuplicateIdempotencyKeyError(values.get("client_idempotency_key")) from exc
        row = await self.find_idempotency_by_id(session, inserted_id)
        assert row is not None
        return row

    async def update_idempotency_by_id(
        self,
        session: AsyncSession,
        row_id: int,
        values: dict[str, Any],
        *,
        expected_lease_version: int | None = None,
    ) -> BillingRequestIdempotency | None:
        """Apply ``values`` to a pending row and bump its lease version.

        Returns ``None`` when no row matched: the row is missing, already
        terminal, or (when ``expected_lease_version`` is given) fenced by a
        newer lease. Terminal rows are never updated.
        """
        stmt = (
            update(BillingRequestIdempotency)
            .where(
                BillingRequestIdempotency.id == row_id,
                BillingRequestIdempotency.status == statuses.PENDING,
            )
            .values(**values, lease_version=BillingRequestIdempotency.lease_version + 1)
            .execution_options(synchronize_session=False)
        )
        if expected_lease_version is not None:
            stmt = stmt.where(BillingRequestIdempotency.lease_version == int(expected_lease_version))
        result = await session.execute(stmt)
        if result.rowcount == 0:
            return None
        return await self.find_idempotency_by_id(session, row_id)

    async def list_pending_idempotency_rows(
        self,
        session: AsyncSession,
        *,
        action: str | None = None,
        stale_before: datetime | None = None,
        limit: int = 100,
    ) -> list[BillingRequestIdempotency]:
        stmt = select(BillingRequestIdempotency).where(BillingRequestIdempotency.status == statuses.PENDING)
        if action:
            stmt = stmt.where(BillingRequestIdempotency.action == action)
        if stale_before is not None:
            stmt = stmt.where(BillingRequestIdempotency.pending_lease_expires_at <= stale_before)
        bounded_limit = max(1, min(MAX_PENDING_SCAN_LIMIT, int(limit or 100)))
        stmt = stmt.order_by(
            BillingRequestIdempotency.pending_lease_expires_at, BillingRequestIdempotency.id
        ).limit(bounded_limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # billable entities

    async def find_billable_entity(
        self, session: AsyncSession, billable_entity_id: int, *, for_update: bool = False
    ) -> BillableEntity | None:
        stmt = select(BillableEntity).where(BillableEntity.id == billable_entity_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    # checkout sessions

    async def list_checkout_sessions_for_entity(
        self, session: AsyncSession, billable_entity_id: int, *, for_update: bool = False
    ) -> list[BillingCheckoutSession]:
        stmt = (
            select(BillingCheckoutSession)
            .where(BillingCheckoutSession.billable_entity_id == billable_entity_id)
            .order_by(BillingCheckoutSession.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def lock_checkout_sessions_for_entity(
        self, session: AsyncSession, billable_entity_id: int
    ) -> list[BillingCheckoutSession]:
        return await self.list_checkout_sessions_for_entity(session, billable_entity_id, for_update=True)

    async def find_checkout_session_by_operation_key(
        self, session: AsyncSession, *, provider: str, operation_key: str, for_update: bool = False
    ) -> BillingCheckoutSession | None:
        stmt = select(BillingCheckoutSession).where(
            BillingCheckoutSession.provider == provider,
            BillingCheckoutSession.operation_key == operation_key,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_checkout_session_by_provider_session_id(
        self,
        session: AsyncSession,
        *,
        provider: str,
        provider_checkout_session_id: str,
        for_update: bool = False,
    ) -> BillingCheckoutSession | None:
        stmt = select(BillingCheckoutSession).where(
            BillingCheckoutSession.provider == provider,
            BillingCheckoutSession.provider_checkout_session_id == provider_checkout_session_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def update_checkout_session_by_id(
        self, session: AsyncSession, checkout_session_id: int, values: dict[str, Any]
    ) -> BillingCheckoutSession | None:
        checkout_session = await session.get(BillingCheckoutSession, checkout_session_id)
        if checkout_session is None:
            return None
        for key, value in values.items():
            setattr(checkout_session, key, value)
        await session.flush()
        return checkout_session

    async def upsert_checkout_session_by_operation_key(
        self, session: AsyncSession, values: dict[str, Any]
    ) -> BillingCheckoutSession:
        existing = await self.find_checkout_session_by_operation_key(
            session,
            provider=values["provider"],
            operation_key=values["operation_key"],
            for_update=True,
        )
        if existing is not None:
            for key, value in values.items():
                if key in {"provider", "operation_key"}:
                    continue
                setattr(existing, key, value)
            await session.flush()
            return existing
        checkout_session = BillingCheckoutSession(**values)
        session.add(checkout_session)
        await session.flush()
        return checkout_session
