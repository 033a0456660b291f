from datetime import timedelta

import pytest

from app.domain.billing import statuses
from app.domain.billing.checkout_sessions import CheckoutSessionService, pick_later_date
from app.domain.billing.constants import CHECKOUT_SESSION_TRANSITION_INVALID
from app.domain.errors import BillingError
from conftest import NOW

pytestmark = pytest.mark.anyio


@pytest.fixture
def checkout_sessions(repository):
    return CheckoutSessionService(repository, checkout_session_grace_seconds=90)


async def _open_session(checkout_sessions, repository, *, operation_key="op-1", expires_at=None, flow=None):
    async with repository.transaction() as session:
        return await checkout_sessions.upsert_blocking_checkout_session(
            session,
            {
                "billable_entity_id": 41,
                "provider": "stripe",
                "operation_key": operation_key,
                "provider_checkout_session_id": f"cs_{operation_key}",
                "status": statuses.OPEN,
                "checkout_url": f"https://checkout.stripe.test/{operation_key}",
                "expires_at": expires_at or NOW + timedelta(hours=1),
                "metadata_json": {"checkout_flow": flow} if flow else None,
            },
        )


async def _blocking(checkout_sessions, repository, now, *, cleanup_expired=False):
    async with repository.transaction() as session:
        return await checkout_sessions.get_blocking_checkout_session(
            session, billable_entity_id=41, now=now, cleanup_expired=cleanup_expired
        )


def test_pick_later_date():
    assert pick_later_date(None, None) is None
    assert pick_later_date(NOW, None) == NOW
    assert pick_later_date(None, NOW) == NOW
    assert pick_later_date(NOW, NOW + timedelta(seconds=1)) == NOW + timedelta(seconds=1)
    assert pick_later_date(NOW.replace(tzinfo=None), NOW - timedelta(days=1)) == NOW


async def test_open_session_blocks_until_grace_elapses(checkout_sessions, repository):
    opened = await _open_session(checkout_sessions, repository)

    blocking = await _blocking(checkout_sessions, repository, NOW + timedelta(hours=1, seconds=60))
    assert blocking.id == opened.id

    assert await _blocking(checkout_sessions, repository, NOW + timedelta(hours=1, seconds=90)) is None


async def test_cleanup_marks_open_session_expired(checkout_sessions, repository):
    opened = await _open_session(checkout_sessions, repository)

    blocking = await _blocking(
        checkout_sessions, repository, NOW + timedelta(hours=2), cleanup_expired=True
    )

    assert blocking is None
    async with repository.transaction() as session:
        [stored] = await repository.list_checkout_sessions_for_entity(session, 41)
    assert stored.id == opened.id
    assert stored.status == statuses.CHECKOUT_EXPIRED


async def test_one_off_sessions_never_block(checkout_sessions, repository):
    await _open_session(checkout_sessions, repository, flow="one_off")
    assert await _blocking(checkout_sessions, repository, NOW) is None


async def test_recovery_hold_blocks_then_is_abandoned(checkout_sessions, repository):
    async with repository.transaction() as session:
        hold = await checkout_sessions.mark_recovery_verification_pending(
            session,
            billable_entity_id=41,
            provider="stripe",
            operation_key="op-hold",
            idempotency_row_id=None,
            hold_expires_at=NOW + timedelta(minutes=10),
            now=NOW,
        )
    assert hold.status == statuses.RECOVERY_VERIFICATION_PENDING

    blocking = await _blocking(checkout_sessions, repository, NOW + timedelta(minutes=9))
    assert blocking.id == hold.id

    assert await _blocking(checkout_sessions, repository, NOW + timedelta(minutes=10), cleanup_expired=True) is None
    async with repository.transaction() as session:
        [stored] = await repository.list_checkout_sessions_for_entity(session, 41)
    assert stored.status == statuses.ABANDONED


async def test_hold_is_not_created_over_a_known_session(checkout_sessions, repository):
    await _open_session(checkout_sessions, repository, operation_key="op-known")
    async with repository.transaction() as session:
        hold = await checkout_sessions.mark_recovery_verification_pending(
            session,
            billable_entity_id=41,
            provider="stripe",
            operation_key="op-known",
            idempotency_row_id=None,
            hold_expires_at=NOW + timedelta(days=1),
            now=NOW,
        )
    assert hold is None


async def test_hold_keeps_later_expiry(checkout_sessions, repository):
    later = NOW + timedelta(hours=3)
    for expires_at in (later, NOW + timedelta(hours=1)):
        async with repository.transaction() as session:
            hold = await checkout_sessions.mark_recovery_verification_pending(
                session,
                billable_entity_id=41,
                provider="stripe",
                operation_key="op-hold",
                idempotency_row_id=None,
                hold_expires_at=expires_at,
                now=NOW,
            )
    assert hold.expires_at.replace(tzinfo=None) == later.replace(tzinfo=None)


async def test_completion_and_reconciliation(checkout_sessions, repository):
    opened = await _open_session(checkout_sessions, repository)

    async with repository.transaction() as session:
        completed = await checkout_sessions.mark_completed_pending_subscription(
            session,
            billable_entity_id=41,
            provider="stripe",
            provider_checkout_session_id=opened.provider_checkout_session_id,
            provider_customer_id="cus_1",
            provider_event_created_at=NOW,
            provider_event_id="evt_1",
        )
    assert completed.status == statuses.COMPLETED_PENDING_SUBSCRIPTION
    assert completed.provider_customer_id == "cus_1"
    assert (await _blocking(checkout_sessions, repository, NOW + timedelta(days=3))).id == opened.id

    async with repository.transaction() as session:
        reconciled = await checkout_sessions.mark_reconciled(
            session, provider="stripe", operation_key="op-1", provider_subscription_id="sub_1"
        )
    assert reconciled.status == statuses.COMPLETED_RECONCILED
    assert reconciled.provider_subscription_id == "sub_1"

    async with repository.transaction() as session:
        late = await checkout_sessions.mark_expired_or_abandoned(
            session, provider="stripe", next_status=statuses.CHECKOUT_EXPIRED, operation_key="op-1"
        )
    assert late.status == statuses.COMPLETED_RECONCILED


async def test_completion_without_existing_session_requires_operation_key(checkout_sessions, repository):
    async with repository.transaction() as session:
        with pytest.raises(BillingError) as exc_info:
            await checkout_sessions.mark_completed_pending_subscription(
                session, billable_entity_id=41, provider="stripe", provider_checkout_session_id="cs_unknown"
            )
    assert exc_info.value.status == 409

    async with repository.transaction() as session:
        created = await checkout_sessions.mark_completed_pending_subscription(
            session, billable_entity_id=41, provider="stripe", operation_key="op-webhook-first"
        )
    assert created.status == statuses.COMPLETED_PENDING_SUBSCRIPTION


async def test_illegal_regression_is_rejected(checkout_sessions, repository):
    await _open_session(checkout_sessions, repository)
    async with repository.transaction() as session:
        await checkout_sessions.mark_completed_pending_subscription(
            session, billable_entity_id=41, provider="stripe", operation_key="op-1"
        )

    with pytest.raises(BillingError) as exc_info:
        await _open_session(checkout_sessions, repository)
    assert exc_info.value.status == 409
    assert exc_info.value.code == CHECKOUT_SESSION_TRANSITION_INVALID


async def test_blocking_upsert_requires_blocking_status(checkout_sessions, repository):
    async with repository.transaction() as session:
        with pytest.raises(BillingError) as exc_info:
            await checkout_sessions.upsert_blocking_checkout_session(
                session,
                {"billable_entity_id": 41, "provider": "stripe", "operation_key": "op", "status": "abandoned"},
            )
    assert exc_info.value.status == 500


async def test_expire_or_abandon_validates_target(checkout_sessions, repository):
    async with repository.transaction() as session:
        with pytest.raises(BillingError):
            await checkout_sessions.mark_expired_or_abandoned(
                session, provider="stripe", next_status=statuses.OPEN, operation_key="op-1"
            )
        missing = await checkout_sessions.mark_expired_or_abandoned(
            session, provider="stripe", next_status=statuses.ABANDONED, operation_key="op-missing"
        )
    assert missing is None


def test_assert_transition_allowed():
    with pytest.raises(BillingError) as missing:
        CheckoutSessionService.assert_transition_allowed(None, statuses.OPEN)
    assert missing.value.status == 404
