from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from app.domain.billing import statuses
from app.domain.billing.canonical_json import canonical_hash, request_fingerprint
from app.domain.billing.constants import (
    ACTION_CHECKOUT,
    CHECKOUT_COMPLETION_PENDING,
    CHECKOUT_CONFIGURATION_INVALID,
    CHECKOUT_IN_PROGRESS,
    CHECKOUT_RECOVERY_VERIFICATION_PENDING,
    CHECKOUT_RECOVERY_WINDOW_ELAPSED,
    CHECKOUT_REPLAY_PROVENANCE_MISMATCH,
    CHECKOUT_SESSION_OPEN,
    GUARDRAIL_RECOVERY_VERIFICATION_PENDING,
    LEASE_FENCED,
    PROVIDER_IDEMPOTENCY_REPLAY_WINDOW_SECONDS,
    PROVIDER_REQUEST_HASH_MISMATCH,
    PROVIDER_REQUEST_SCHEMA_VERSIONS,
    REQUEST_IN_PROGRESS,
    status_from_failure_code,
)
from app.domain.billing.db_models import BillingRequestIdempotency
from app.domain.billing.outcome_policy import (
    IN_PROGRESS,
    MARK_FAILED,
    record_provider_outcome,
    resolve_provider_error_outcome,
)
from app.domain.billing.providers import PROVIDER_OPERATIONS, StripeBillingProviderAdapter
from app.domain.billing.service import (
    CHECKOUT_IN_PROGRESS_OTHER_KEY,
    CLAIMED,
    IN_PROGRESS_SAME_KEY,
    LEASE_ACTIVE,
    NOT_PENDING,
    RECOVER_PENDING,
    REPLAY_SUCCEEDED,
    BillingIdempotencyService,
)
from app.domain.errors import BillingError

logger = logging.getLogger(__name__)

BuildParams = Callable[[BillingRequestIdempotency, datetime], dict[str, Any]]

_BLOCKING_FAILURE_CODES = {
    statuses.OPEN: CHECKOUT_SESSION_OPEN,
    statuses.COMPLETED_PENDING_SUBSCRIPTION: CHECKOUT_COMPLETION_PENDING,
    statuses.RECOVERY_VERIFICATION_PENDING: CHECKOUT_RECOVERY_VERIFICATION_PENDING,
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _epoch_to_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds < 1:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _request_in_progress(detail: str = "Billing request is already in progress.") -> BillingError:
    return BillingError(detail=detail, status=409, code=REQUEST_IN_PROGRESS)


def _terminal_error(row: BillingRequestIdempotency) -> BillingError:
    code = row.failure_code or CHECKOUT_CONFIGURATION_INVALID
    return BillingError(
        detail=row.failure_reason or "Billing request previously failed.",
        status=status_from_failure_code(code),
        code=code,
    )


def build_provider_response(action: str, provider_response: dict[str, Any]) -> dict[str, Any]:
    """Client-facing snapshot of a provider object; replays return it verbatim."""
    return {
        "action": action,
        "id": provider_response.get("id"),
        "url": provider_response.get("url"),
        "status": provider_response.get("status"),
        "expires_at": provider_response.get("expires_at"),
    }


class ProviderOperationRunner:
    """Run one provider write under the claim, freeze, call, finalize protocol.

    The provider call happens outside any database transaction. Every write
    after the claim carries the lease version last returned by the store, so a
    request whose lease was taken over by a recoverer stops at its next write.
    """

    def __init__(
        self,
        idempotency_service: BillingIdempotencyService,
        adapter: StripeBillingProviderAdapter,
        *,
        replay_window_seconds: int = PROVIDER_IDEMPOTENCY_REPLAY_WINDOW_SECONDS,
        lease_owner: str | None = None,
    ) -> None:
        self.service = idempotency_service
        self.adapter = adapter
        self.replay_window_seconds = int(replay_window_seconds)
        self.lease_owner = lease_owner

    @property
    def repository(self):
        return self.service.repository

    async def run(
        self,
        *,
        action: str,
        billable_entity_id: int,
        client_idempotency_key: str | None,
        normalized_request: dict[str, Any],
        build_params: BuildParams,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or _now()
        claim = await self.service.claim_or_replay(
            action=action,
            billable_entity_id=billable_entity_id,
            client_idempotency_key=client_idempotency_key,
            request_fingerprint_hash=request_fingerprint(normalized_request),
            normalized_request_json=normalized_request,
            provider=self.adapter.provider,
            now=now,
        )
        row = claim.row
        if claim.type == REPLAY_SUCCEEDED:
            return row.response_json
        if claim.type == IN_PROGRESS_SAME_KEY:
            raise _request_in_progress()
        if claim.type == CHECKOUT_IN_PROGRESS_OTHER_KEY:
            raise BillingError(
                detail="Another checkout is already in progress for this billable entity.",
                status=409,
                code=CHECKOUT_IN_PROGRESS,
            )
        if claim.type == CLAIMED:
            return await self._execute_claimed(row, row.lease_version, build_params, now)
        if claim.type == RECOVER_PENDING:
            return await self._recover(row, build_params, now)
        raise _terminal_error(row)

    # claimed path

    async def _fail_before_provider(
        self, row: BillingRequestIdempotency, lease_version: int, error: Exception
    ) -> BillingError:
        code = getattr(error, "code", None) if isinstance(error, BillingError) else None
        code = code or CHECKOUT_CONFIGURATION_INVALID
        detail = error.detail if isinstance(error, BillingError) else "Billing request configuration is invalid."
        try:
            await self.service.mark_failed(
                idempotency_row_id=row.id,
                failure_code=code,
                failure_reason=detail,
                lease_version=lease_version,
            )
        except BillingError as exc:
            if exc.code == LEASE_FENCED:
                return _request_in_progress()
            raise
        return BillingError(detail=detail, status=status_from_failure_code(code), code=code)

    async def _assert_no_blocking_checkout(self, row: BillingRequestIdempotency, now: datetime) -> None:
        async with self.repository.transaction() as session:
            blocking = await self.service.checkout_sessions.get_blocking_checkout_session(
                session, billable_entity_id=row.billable_entity_id, now=now, cleanup_expired=True
            )
        if blocking is None or blocking.operation_key == row.operation_key:
            return
        code = _BLOCKING_FAILURE_CODES.get(blocking.status, CHECKOUT_IN_PROGRESS)
        raise BillingError(detail="A blocking checkout session already exists.", status=409, code=code)

    async def _execute_claimed(
        self,
        row: BillingRequestIdempotency,
        lease_version: int,
        build_params: BuildParams,
        now: datetime,
    ) -> dict[str, Any]:
        try:
            if row.action == ACTION_CHECKOUT:
                await self._assert_no_blocking_checkout(row, now)
            params = build_params(row, now)
            session_upper_bound = None
            if row.action == ACTION_CHECKOUT:
                session_upper_bound = _epoch_to_datetime(params.get("expires_at"))
                if session_upper_bound is None:
                    raise BillingError(
                        detail="Frozen checkout params missing required expires_at.",
                        status=409,
                        code=CHECKOUT_CONFIGURATION_INVALID,
                    )
            frozen = await self.service.freeze_provider_request(
                idempotency_row_id=row.id,
                lease_version=lease_version,
                params=params,
                sdk_provenance=self.adapter.sdk_provenance(),
                schema_version=PROVIDER_REQUEST_SCHEMA_VERSIONS[row.action],
                replay_window_seconds=self.replay_window_seconds,
                session_expires_at_upper_bound=session_upper_bound,
                now=now,
            )
        except BillingError as exc:
            if exc.code == LEASE_FENCED:
                raise _request_in_progress() from exc
            raise await self._fail_before_provider(row, lease_version, exc) from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise await self._fail_before_provider(row, lease_version, exc) from exc

        return await self._call_provider(frozen, frozen.lease_version, frozen.provider_request_params_json, now)

    async def _call_provider(
        self,
        row: BillingRequestIdempotency,
        lease_version: int,
        params: dict[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        operation = PROVIDER_OPERATIONS[row.action][0]
        context = {"operation_key": row.operation_key, "idempotency_row_id": row.id, "operation": operation}
        try:
            provider_response = await self.adapter.execute(
                row.action, params, idempotency_key=row.provider_idempotency_key
            )
        except Exception as exc:  # noqa: BLE001
            outcome = resolve_provider_error_outcome(operation=operation, error=exc)
            record_provider_outcome(outcome, context, recorder=self.service.guardrails)
            if outcome.action == MARK_FAILED:
                try:
                    await self.service.mark_failed(
                        idempotency_row_id=row.id,
                        failure_code=outcome.failure_code,
                        failure_reason=str(exc),
                        lease_version=lease_version,
                    )
                except BillingError as mark_exc:
                    if mark_exc.code == LEASE_FENCED:
                        raise _request_in_progress() from exc
                    raise
                raise BillingError(
                    detail="Billing provider rejected the request.",
                    status=status_from_failure_code(outcome.failure_code),
                    code=outcome.failure_code,
                ) from exc
            if outcome.action == IN_PROGRESS:
                raise _request_in_progress(
                    "Billing provider outcome is not yet known; retry with the same Idempotency-Key."
                ) from exc
            raise

        response_json = build_provider_response(row.action, provider_response)
        try:
            async with self.repository.transaction() as session:
                if row.action == ACTION_CHECKOUT:
                    await self.service.checkout_sessions.upsert_blocking_checkout_session(
                        session,
                        {
                            "billable_entity_id": row.billable_entity_id,
                            "provider": row.provider,
                            "operation_key": row.operation_key,
                            "provider_checkout_session_id": provider_response.get("id"),
                            "idempotency_row_id": row.id,
                            "status": statuses.OPEN,
                            "checkout_url": provider_response.get("url"),
                            "expires_at": _epoch_to_datetime(provider_response.get("expires_at"))
                            or _epoch_to_datetime(params.get("expires_at")),
                        },
                    )
                succeeded = await self.service.mark_succeeded(
                    idempotency_row_id=row.id,
                    response_json=response_json,
                    provider_session_id=provider_response.get("id"),
                    lease_version=lease_version,
                    session=session,
                )
        except BillingError as exc:
            if exc.code == LEASE_FENCED:
                raise _request_in_progress() from exc
            raise
        return succeeded.response_json

    # recovery path

    async def _recovery_failure(
        self, row: BillingRequestIdempotency, now: datetime
    ) -> tuple[str, str, str, datetime | None] | None:
        """Return ``(status, failure_code, failure_reason, hold_expires_at)`` when replay is unsafe."""
        missing = _missing_recovery_state(row)
        if missing is not None:
            return statuses.FAILED, CHECKOUT_CONFIGURATION_INVALID, missing, None

        grace = timedelta(seconds=self.service.checkout_grace_seconds)
        upper_bound = row.provider_checkout_session_expires_at_upper_bound
        deadline = row.provider_idempotency_replay_deadline_at
        try:
            self.service.assert_provider_replay_window_open(idempotency_row=row, now=now)
        except BillingError as exc:
            if exc.code != CHECKOUT_RECOVERY_WINDOW_ELAPSED:
                raise
            return (
                statuses.EXPIRED,
                CHECKOUT_RECOVERY_WINDOW_ELAPSED,
                "Provider idempotency replay window elapsed before recovery.",
                _later(upper_bound, None, grace),
            )

        provenance = self.adapter.sdk_provenance()
        try:
            self.service.assert_replay_provenance_compatible(
                idempotency_row=row,
                runtime_provider_sdk_version=provenance.sdk_version,
                runtime_provider_api_version=provenance.api_version,
            )
        except BillingError as exc:
            if exc.code != CHECKOUT_REPLAY_PROVENANCE_MISMATCH:
                raise
            return (
                statuses.FAILED,
                CHECKOUT_REPLAY_PROVENANCE_MISMATCH,
                "Provider SDK or API version changed since the request was frozen.",
                _later(upper_bound, deadline, grace),
            )

        try:
            await self.service.assert_provider_request_hash_stable(
                idempotency_row_id=row.id,
                candidate_provider_request_hash=canonical_hash(row.provider_request_params_json),
            )
        except BillingError as exc:
            if exc.code != PROVIDER_REQUEST_HASH_MISMATCH:
                raise
            return (
                statuses.FAILED,
                CHECKOUT_CONFIGURATION_INVALID,
                "Frozen provider request no longer matches its hash.",
                None,
            )
        return None

    async def _resolve_recovery_failure(
        self,
        row: BillingRequestIdempotency,
        lease_version: int,
        *,
        status: str,
        failure_code: str,
        failure_reason: str,
        hold_expires_at: datetime | None,
        now: datetime,
    ) -> BillingRequestIdempotency:
        hold_created = False
        async with self.repository.transaction() as session:
            if row.action == ACTION_CHECKOUT and hold_expires_at is not None and now < hold_expires_at:
                await self.service.checkout_sessions.mark_recovery_verification_pending(
                    session,
                    billable_entity_id=row.billable_entity_id,
                    provider=row.provider,
                    operation_key=row.operation_key,
                    idempotency_row_id=row.id,
                    hold_expires_at=hold_expires_at,
                    now=now,
                )
                hold_created = True
            mark = self.service.mark_expired if status == statuses.EXPIRED else self.service.mark_failed
            finalized = await mark(
                idempotency_row_id=row.id,
                failure_code=failure_code,
                failure_reason=failure_reason,
                lease_version=lease_version,
                session=session,
            )
        if hold_created:
            self.service.guardrails.record(
                GUARDRAIL_RECOVERY_VERIFICATION_PENDING,
                {
                    "operation_key": row.operation_key,
                    "billable_entity_id": row.billable_entity_id,
                    "hold_expires_at": hold_expires_at.isoformat(),
                },
            )
        return finalized

    async def _recover(
        self, row: BillingRequestIdempotency, build_params: BuildParams, now: datetime
    ) -> dict[str, Any]:
        recovery = await self.service.recover_pending_request(
            idempotency_row_id=row.id, lease_owner=self.lease_owner, now=now
        )
        if recovery.type == NOT_PENDING:
            if recovery.row.status == statuses.SUCCEEDED:
                return recovery.row.response_json
            raise _terminal_error(recovery.row)
        if recovery.type == LEASE_ACTIVE:
            raise _request_in_progress()

        row = recovery.row
        lease_version = recovery.expected_lease_version
        if not row.provider_request_hash:
            # The previous owner died before freezing; nothing reached the provider.
            return await self._execute_claimed(row, lease_version, build_params, now)

        failure = await self._recovery_failure(row, now)
        if failure is not None:
            status, failure_code, failure_reason, hold_expires_at = failure
            try:
                finalized = await self._resolve_recovery_failure(
                    row,
                    lease_version,
                    status=status,
                    failure_code=failure_code,
                    failure_reason=failure_reason,
                    hold_expires_at=hold_expires_at,
                    now=now,
                )
            except BillingError as exc:
                if exc.code == LEASE_FENCED:
                    raise _request_in_progress() from exc
                raise
            # Same shape a later replay of this key will see.
            raise _terminal_error(finalized)

        logger.info(
            "billing_provider_replay",
            extra={"extra": {"idempotency_row_id": row.id, "operation_key": row.operation_key}},
        )
        return await self._call_provider(row, lease_version, row.provider_request_params_json, now)


def _missing_recovery_state(row: BillingRequestIdempotency) -> str | None:
    if row.provider_idempotency_replay_deadline_at is None:
        return "Provider replay deadline is missing for pending recovery."
    if row.action == ACTION_CHECKOUT and row.provider_checkout_session_expires_at_upper_bound is None:
        return "Checkout session expiry upper bound is missing for pending recovery."
    if not isinstance(row.provider_request_params_json, dict) or not row.provider_request_params_json:
        return "Frozen provider request params are missing for pending recovery."
    return None


def _later(first: datetime | None, second: datetime | None, grace: timedelta) -> datetime | None:
    candidates = [value for value in (first, second) if value is not None]
    if not candidates:
        return None
    latest = max(
        value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc) for value in candidates
    )
    return latest + grace
