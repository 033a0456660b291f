from datetime import timedelta

import pytest

from app.domain.billing import statuses
from app.domain.billing.constants import (
    CHECKOUT_CONFIGURATION_INVALID,
    CHECKOUT_PROVIDER_ERROR,
    CHECKOUT_RECOVERY_VERIFICATION_PENDING,
    CHECKOUT_RECOVERY_WINDOW_ELAPSED,
    CHECKOUT_REPLAY_PROVENANCE_MISMATCH,
    CHECKOUT_SESSION_OPEN,
    GUARDRAIL_PROVIDER_ERROR_NOT_NORMALIZED,
    GUARDRAIL_PROVIDER_REQUEST_HASH_MISMATCH,
    GUARDRAIL_RECOVERY_VERIFICATION_PENDING,
    REQUEST_IN_PROGRESS,
)
from app.domain.billing.operations import ProviderOperationRunner
from app.domain.billing.provider_errors import BillingProviderError
from app.domain.billing.providers import (
    SdkProvenance,
    build_checkout_session_params,
    build_portal_session_params,
)
from app.domain.errors import BillingError
from conftest import NOW

pytestmark = pytest.mark.anyio

SESSION_EXPIRES_AT = NOW + timedelta(hours=24)


class FakeProviderAdapter:
    provider = "stripe"

    def __init__(self, *outcomes, sdk_version="14.25.0", api_version="2025-01-27.acacia"):
        self.outcomes = list(outcomes)
        self.sdk_version = sdk_version
        self.api_version = api_version
        self.calls = []
        self.on_call = None

    def sdk_provenance(self):
        return SdkProvenance(sdk_name="stripe-python", sdk_version=self.sdk_version, api_version=self.api_version)

    async def execute(self, action, params, *, idempotency_key):
        self.calls.append((action, params, idempotency_key))
        if self.on_call is not None:
            await self.on_call()
        outcome = self.outcomes.pop(0) if self.outcomes else checkout_response(len(self.calls))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def checkout_response(index=1):
    return {
        "id": f"cs_test_{index}",
        "url": f"https://checkout.stripe.test/cs_test_{index}",
        "status": "open",
        "expires_at": int(SESSION_EXPIRES_AT.timestamp()),
    }


def transient_error():
    return BillingProviderError(
        "connection reset", provider="stripe", operation="checkout_session_create", category="transient_network"
    )


def checkout_params(price_id="price_pro"):
    def _build(row, now):
        return build_checkout_session_params(
            billable_entity_id=row.billable_entity_id,
            operation_key=row.operation_key,
            idempotency_row_id=row.id,
            success_url="https://app.test/billing/success",
            cancel_url="https://app.test/billing/cancel",
            expires_at=now + timedelta(hours=24),
            price_id=price_id,
        )

    return _build


@pytest.fixture
def adapter():
    return FakeProviderAdapter()


@pytest.fixture
def runner(idempotency_service, adapter):
    return ProviderOperationRunner(idempotency_service, adapter, lease_owner="worker-1")


async def _checkout(runner, *, key="idem-abc", entity=41, now=NOW, build_params=None):
    return await runner.run(
        action="checkout",
        billable_entity_id=entity,
        client_idempotency_key=key,
        normalized_request={"plan": "pro", "interval": "month"},
        build_params=build_params or checkout_params(),
        now=now,
    )


async def _only_row(repository, entity=41):
    async with repository.transaction() as session:
        return await repository.find_idempotency_by_natural_key(
            session, billable_entity_id=entity, action="checkout", client_idempotency_key="idem-abc"
        )


async def _checkout_sessions(repository, entity=41):
    async with repository.transaction() as session:
        return await repository.list_checkout_sessions_for_entity(session, entity)


async def test_successful_checkout_is_replayed_without_second_call(runner, adapter, repository):
    first = await _checkout(runner)
    second = await _checkout(runner, now=NOW + timedelta(minutes=1))

    assert first["id"] == "cs_test_1"
    assert first["action"] == "checkout"
    assert second == first
    assert len(adapter.calls) == 1

    row = await _only_row(repository)
    assert row.status == statuses.SUCCEEDED
    assert row.provider_session_id == "cs_test_1"
    assert adapter.calls[0][2] == row.provider_idempotency_key
    assert adapter.calls[0][1] == row.provider_request_params_json

    [checkout_session] = await _checkout_sessions(repository)
    assert checkout_session.status == statuses.OPEN
    assert checkout_session.provider_checkout_session_id == "cs_test_1"
    assert checkout_session.idempotency_row_id == row.id


async def test_deterministic_rejection_fails_row(runner, adapter, repository, guardrails):
    adapter.outcomes.append(
        BillingProviderError(
            "No such price", provider="stripe", operation="checkout_session_create", category="invalid_request"
        )
    )

    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner)

    assert exc_info.value.status == 502
    assert exc_info.value.code == CHECKOUT_PROVIDER_ERROR
    assert guardrails.codes == ["BILLING_CHECKOUT_PROVIDER_ERROR"]
    row = await _only_row(repository)
    assert row.status == statuses.FAILED
    assert row.failure_code == CHECKOUT_PROVIDER_ERROR

    with pytest.raises(BillingError) as replay:
        await _checkout(runner, now=NOW + timedelta(hours=1))
    assert replay.value.status == 502
    assert len(adapter.calls) == 1


async def test_indeterminate_outcome_stays_pending_then_recovers(runner, adapter, repository, guardrails):
    adapter.outcomes.append(transient_error())

    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner)
    assert exc_info.value.code == REQUEST_IN_PROGRESS
    assert guardrails.codes == ["BILLING_CHECKOUT_INDETERMINATE_PROVIDER_OUTCOME"]
    pending = await _only_row(repository)
    assert pending.status == statuses.PENDING

    with pytest.raises(BillingError) as busy:
        await _checkout(runner, now=NOW + timedelta(seconds=30))
    assert busy.value.code == REQUEST_IN_PROGRESS
    assert len(adapter.calls) == 1

    recovered = await _checkout(runner, now=NOW + timedelta(minutes=3))

    assert recovered["id"] == "cs_test_2"
    assert len(adapter.calls) == 2
    assert adapter.calls[1][1] == adapter.calls[0][1]
    assert adapter.calls[1][2] == adapter.calls[0][2]
    row = await _only_row(repository)
    assert row.status == statuses.SUCCEEDED
    assert row.recovery_attempt_count == 1
    assert row.lease_owner is None


async def test_unclassified_error_propagates_and_keeps_row_pending(runner, adapter, repository, guardrails):
    adapter.outcomes.append(ValueError("boom"))

    with pytest.raises(ValueError):
        await _checkout(runner)

    assert guardrails.codes == [GUARDRAIL_PROVIDER_ERROR_NOT_NORMALIZED]
    row = await _only_row(repository)
    assert row.status == statuses.PENDING


async def test_failure_before_provider_call_fails_row(runner, adapter, repository):
    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner, build_params=checkout_params(price_id=None))

    assert exc_info.value.code == CHECKOUT_CONFIGURATION_INVALID
    assert adapter.calls == []
    row = await _only_row(repository)
    assert row.status == statuses.FAILED
    assert row.provider_request_hash is None


async def test_open_session_blocks_other_checkout(runner, adapter, repository):
    await _checkout(runner)

    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner, key="idem-second", now=NOW + timedelta(minutes=5))

    assert exc_info.value.status == 409
    assert exc_info.value.code == CHECKOUT_SESSION_OPEN
    assert len(adapter.calls) == 1


async def test_elapsed_replay_window_expires_row_and_holds_entity(runner, adapter, repository):
    adapter.outcomes.append(transient_error())
    with pytest.raises(BillingError):
        await _checkout(runner)

    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner, now=NOW + timedelta(hours=24))

    assert exc_info.value.code == CHECKOUT_RECOVERY_WINDOW_ELAPSED
    row = await _only_row(repository)
    assert row.status == statuses.EXPIRED
    [hold] = await _checkout_sessions(repository)
    assert hold.status == statuses.RECOVERY_VERIFICATION_PENDING
    assert hold.expires_at.replace(tzinfo=None) == (SESSION_EXPIRES_AT + timedelta(seconds=90)).replace(
        tzinfo=None
    )

    with pytest.raises(BillingError) as blocked:
        await _checkout(runner, key="idem-second", now=NOW + timedelta(hours=24, seconds=30))
    assert blocked.value.code == CHECKOUT_RECOVERY_VERIFICATION_PENDING
    assert len(adapter.calls) == 1


async def test_sdk_upgrade_blocks_replay(runner, adapter, repository, guardrails):
    adapter.outcomes.append(transient_error())
    with pytest.raises(BillingError):
        await _checkout(runner)
    adapter.sdk_version = "15.0.0"

    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner, now=NOW + timedelta(minutes=3))

    assert exc_info.value.code == CHECKOUT_REPLAY_PROVENANCE_MISMATCH
    assert len(adapter.calls) == 1
    assert "BILLING_CHECKOUT_REPLAY_PROVENANCE_MISMATCH" in guardrails.codes
    assert GUARDRAIL_RECOVERY_VERIFICATION_PENDING in guardrails.codes
    row = await _only_row(repository)
    assert row.status == statuses.FAILED
    assert row.failure_code == CHECKOUT_REPLAY_PROVENANCE_MISMATCH
    [hold] = await _checkout_sessions(repository)
    assert hold.status == statuses.RECOVERY_VERIFICATION_PENDING
    assert hold.expires_at.replace(tzinfo=None) == (SESSION_EXPIRES_AT + timedelta(seconds=90)).replace(
        tzinfo=None
    )


async def _overwrite_row(repository, **values):
    async with repository.transaction() as session:
        row = await repository.find_idempotency_by_natural_key(
            session, billable_entity_id=41, action="checkout", client_idempotency_key="idem-abc"
        )
        for field, value in values.items():
            setattr(row, field, value)


async def test_changed_frozen_request_fails_closed_and_replays_same_error(runner, adapter, repository, guardrails):
    adapter.outcomes.append(transient_error())
    with pytest.raises(BillingError):
        await _checkout(runner)
    await _overwrite_row(repository, provider_request_hash="0" * 64)

    with pytest.raises(BillingError) as first:
        await _checkout(runner, now=NOW + timedelta(minutes=3))
    with pytest.raises(BillingError) as replay:
        await _checkout(runner, now=NOW + timedelta(minutes=4))

    assert first.value.code == CHECKOUT_CONFIGURATION_INVALID
    assert first.value.status == 409
    assert replay.value.to_dict() == first.value.to_dict()
    assert GUARDRAIL_PROVIDER_REQUEST_HASH_MISMATCH in guardrails.codes
    assert len(adapter.calls) == 1
    row = await _only_row(repository)
    assert row.status == statuses.FAILED
    assert row.failure_code == CHECKOUT_CONFIGURATION_INVALID
    assert row.lease_owner is None
    assert await _checkout_sessions(repository) == []


@pytest.mark.parametrize(
    "field",
    [
        "provider_idempotency_replay_deadline_at",
        "provider_checkout_session_expires_at_upper_bound",
        "provider_request_params_json",
    ],
)
async def test_missing_recovery_metadata_fails_row(runner, adapter, repository, field):
    adapter.outcomes.append(transient_error())
    with pytest.raises(BillingError):
        await _checkout(runner)
    await _overwrite_row(repository, **{field: None})

    with pytest.raises(BillingError) as first:
        await _checkout(runner, now=NOW + timedelta(minutes=3))

    assert first.value.code == CHECKOUT_CONFIGURATION_INVALID
    assert first.value.status == 409
    assert len(adapter.calls) == 1
    row = await _only_row(repository)
    assert row.status == statuses.FAILED
    assert row.failure_code == CHECKOUT_CONFIGURATION_INVALID

    with pytest.raises(BillingError) as replay:
        await _checkout(runner, now=NOW + timedelta(minutes=10))
    assert replay.value.to_dict() == first.value.to_dict()
    assert len(adapter.calls) == 1


async def test_stale_owner_cannot_finalize_after_takeover(runner, adapter, repository, idempotency_service):
    async def _takeover():
        row = await _only_row(repository)
        await idempotency_service.recover_pending_request(
            idempotency_row_id=row.id, lease_owner="worker-2", now=NOW + timedelta(minutes=10)
        )

    adapter.on_call = _takeover

    with pytest.raises(BillingError) as exc_info:
        await _checkout(runner)

    assert exc_info.value.code == REQUEST_IN_PROGRESS
    row = await _only_row(repository)
    assert row.status == statuses.PENDING
    assert row.response_json is None
    assert row.lease_owner == "worker-2"
    assert await _checkout_sessions(repository) == []


async def test_portal_session_creates_no_checkout_session(runner, adapter, repository):
    adapter.outcomes.append({"id": "bps_1", "url": "https://billing.stripe.test/p/session/bps_1"})

    response = await runner.run(
        action="portal",
        billable_entity_id=41,
        client_idempotency_key="idem-portal",
        normalized_request={"return_url": "https://app.test/settings"},
        build_params=lambda row, now: build_portal_session_params(
            customer_id="cus_1", return_url="https://app.test/settings"
        ),
        now=NOW,
    )

    assert response == {
        "action": "portal",
        "id": "bps_1",
        "url": "https://billing.stripe.test/p/session/bps_1",
        "status": None,
        "expires_at": None,
    }
    assert adapter.calls[0][0] == "portal"
    assert await _checkout_sessions(repository) == []
