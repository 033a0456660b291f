from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing import statuses
from app.domain.billing.canonical_json import canonical_hash, hmac_sha256_hex
from app.domain.billing.checkout_sessions import CheckoutSessionService
from app.domain.billing.constants import (
    ACTION_CHECKOUT,
    BILLING_ACTIONS,
    BILLING_DEFAULT_PROVIDER,
    CHECKOUT_CONFIGURATION_INVALID,
    CHECKOUT_PENDING_LEASE_SECONDS,
    CHECKOUT_RECOVERY_WINDOW_ELAPSED,
    CHECKOUT_REPLAY_PROVENANCE_MISMATCH,
    CHECKOUT_SESSION_EXPIRES_AT_GRACE_SECONDS,
    GUARDRAIL_LEASE_FENCED,
    GUARDRAIL_PROVIDER_REQUEST_HASH_MISMATCH,
    GUARDRAIL_REPLAY_PROVENANCE_MISMATCH,
    GUARDRAIL_SDK_API_BASELINE_DRIFT,
    IDEMPOTENCY_CONFLICT,
    LEASE_FENCED,
    MIN_PENDING_LEASE_SECONDS,
    PROVIDER_REQUEST_HASH_MISMATCH,
    normalize_action,
)
from app.domain.billing.db_models import BillingRequestIdempotency
from app.domain.billing.guardrails import GuardrailRecorder, default_guardrail_recorder
from app.domain.billing.providers import SdkProvenance
from app.domain.billing.repository import BillingRepository, DuplicateIdempotencyKeyError
from app.domain.errors import BillingError
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

CLAIMED = "claimed"
REPLAY_SUCCEEDED = "replay_succeeded"
REPLAY_TERMINAL = "replay_terminal"
IN_PROGRESS_SAME_KEY = "in_progress_same_key"
CHECKOUT_IN_PROGRESS_OTHER_KEY = "checkout_in_progress_other_key"
RECOVER_PENDING = "recover_pending"

NOT_PENDING = "not_pending"
LEASE_ACTIVE = "lease_active"
RECOVERY_LEASED = "recovery_leased"

_MAJOR_VERSION_RE = re.compile(r"^(\d+)")

_RELEASE_LEASE = {
    "pending_lease_expires_at": None,
    "pending_last_heartbeat_at": None,
    "lease_owner": None,
}


@dataclass(frozen=True)
class ClaimResult:
    type: str
    row: BillingRequestIdempotency


@dataclass(frozen=True)
class RecoveryResult:
    type: str
    row: BillingRequestIdempotency
    expected_lease_version: int | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_major_version(version: str | None) -> int | None:
    match = _MAJOR_VERSION_RE.match(str(version or "").strip())
    if not match:
        return None
    return int(match.group(1))


def is_lease_expired(row: BillingRequestIdempotency, now: datetime) -> bool:
    expires_at = _ensure_utc(row.pending_lease_expires_at)
    if expires_at is None:
        return True
    return expires_at <= _ensure_utc(now)


def _not_found() -> BillingError:
    return BillingError(detail="Billing idempotency request not found.", status=404)


def _lease_fenced() -> BillingError:
    return BillingError(detail="Billing idempotency lease has changed.", status=409, code=LEASE_FENCED)


def _correlation(row: BillingRequestIdempotency | None) -> dict[str, Any]:
    if row is None:
        return {}
    return {"operation_key": row.operation_key, "billable_entity_id": row.billable_entity_id}


class BillingIdempotencyService:
    """Claim, replay, recover and finalize provider writes keyed by client idempotency keys.

    The lease on an idempotency row is data (expiry timestamp plus a version
    that grows on every mutation). Every finalizing write is a conditional
    update on the version the caller last saw, so a crashed owner and its
    recoverer can never both finalize the same row.
    """

    def __init__(
        self,
        repository: BillingRepository,
        *,
        operation_key_secret: str,
        provider_idempotency_key_secret: str,
        pending_lease_seconds: int | None = CHECKOUT_PENDING_LEASE_SECONDS,
        checkout_session_grace_seconds: int | None = CHECKOUT_SESSION_EXPIRES_AT_GRACE_SECONDS,
        guardrails: GuardrailRecorder | None = None,
        checkout_sessions: CheckoutSessionService | None = None,
    ) -> None:
        if repository is None:
            raise ValueError("repository is required")
        if not str(operation_key_secret or "").strip():
            raise ValueError("operation_key_secret is required")
        if not str(provider_idempotency_key_secret or "").strip():
            raise ValueError("provider_idempotency_key_secret is required")
        if operation_key_secret.strip() == provider_idempotency_key_secret.strip():
            raise ValueError("operation_key_secret and provider_idempotency_key_secret must differ")

        self.repository = repository
        self._operation_key_secret = operation_key_secret
        self._provider_idempotency_key_secret = provider_idempotency_key_secret
        self.lease_seconds = max(
            MIN_PENDING_LEASE_SECONDS, int(pending_lease_seconds or CHECKOUT_PENDING_LEASE_SECONDS)
        )
        self.checkout_grace_seconds = max(
            0, int(checkout_session_grace_seconds or CHECKOUT_SESSION_EXPIRES_AT_GRACE_SECONDS)
        )
        self.guardrails = guardrails or default_guardrail_recorder
        self.checkout_sessions = checkout_sessions or CheckoutSessionService(
            repository, checkout_session_grace_seconds=self.checkout_grace_seconds
        )

    # key derivation

    def build_operation_key(self, *, action: str, billable_entity_id: int, client_idempotency_key: str) -> str:
        payload = f"{normalize_action(action)}|{int(billable_entity_id)}|{str(client_idempotency_key or '').strip()}"
        return hmac_sha256_hex(self._operation_key_secret, payload)

    def build_provider_idempotency_key(self, *, provider: str | None, action: str, operation_key: str) -> str:
        resolved_provider = str(provider or BILLING_DEFAULT_PROVIDER).strip()
        payload = f"{resolved_provider}|{normalize_action(action)}|{str(operation_key or '').strip()}"
        return hmac_sha256_hex(self._provider_idempotency_key_secret, payload)

    # claim / replay

    @staticmethod
    def _assert_fingerprint_match(row: BillingRequestIdempotency, request_fingerprint_hash: str) -> None:
        if str(row.request_fingerprint_hash or "") == str(request_fingerprint_hash or ""):
            return
        raise BillingError(
            detail="Idempotency key already used with a different request payload.",
            status=409,
            code=IDEMPOTENCY_CONFLICT,
        )

    def _resolve_existing(
        self, row: BillingRequestIdempotency, request_fingerprint_hash: str, now: datetime
    ) -> ClaimResult:
        self._assert_fingerprint_match(row, request_fingerprint_hash)
        if row.status == statuses.SUCCEEDED:
            return ClaimResult(REPLAY_SUCCEEDED, row)
        if row.status in {statuses.FAILED, statuses.EXPIRED}:
            return ClaimResult(REPLAY_TERMINAL, row)
        if not is_lease_expired(row, now):
            return ClaimResult(IN_PROGRESS_SAME_KEY, row)
        return ClaimResult(RECOVER_PENDING, row)

    async def _claim_in_transaction(
        self,
        session: AsyncSession,
        *,
        action: str,
        billable_entity_id: int,
        client_key: str,
        request_fingerprint_hash: str,
        normalized_request_json: Any,
        provider: str,
        now: datetime,
    ) -> ClaimResult:
        natural_key = {
            "billable_entity_id": billable_entity_id,
            "action": action,
            "client_idempotency_key": client_key,
        }
        existing = await self.repository.find_idempotency_by_natural_key(session, **natural_key, for_update=True)
        if existing is not None:
            return self._resolve_existing(existing, request_fingerprint_hash, now)

        if action == ACTION_CHECKOUT:
            pending_checkout = await self.repository.find_pending_checkout_for_entity(
                session, billable_entity_id, for_update=True
            )
            if pending_checkout is not None and pending_checkout.client_idempotency_key != client_key:
                return ClaimResult(CHECKOUT_IN_PROGRESS_OTHER_KEY, pending_checkout)

        operation_key = self.build_operation_key(
            action=action, billable_entity_id=billable_entity_id, client_idempotency_key=client_key
        )
        provider_idempotency_key = self.build_provider_idempotency_key(
            provider=provider, action=action, operation_key=operation_key
        )
        try:
            inserted = await self.repository.insert_idempotency(
                session,
                {
                    **natural_key,
                    "request_fingerprint_hash": request_fingerprint_hash,
                    "normalized_request_json": normalized_request_json if normalized_request_json is not None else {},
                    "operation_key": operation_key,
                    "provider": provider,
                    "provider_idempotency_key": provider_idempotency_key,
                    "status": statuses.PENDING,
                    "pending_lease_expires_at": now + timedelta(seconds=self.lease_seconds),
                    "pending_last_heartbeat_at": now,
                    "lease_version": 1,
                    "recovery_attempt_count": 0,
                },
            )
        except DuplicateIdempotencyKeyError:
            duplicate = await self.repository.find_idempotency_by_natural_key(
                session, **natural_key, for_update=True
            )
            if duplicate is not None:
                return self._resolve_existing(duplicate, request_fingerprint_hash, now)
            if action == ACTION_CHECKOUT:
                checkout_duplicate = await self.repository.find_pending_checkout_for_entity(
                    session, billable_entity_id, for_update=True
                )
                if checkout_duplicate is not None:
                    return ClaimResult(CHECKOUT_IN_PROGRESS_OTHER_KEY, checkout_duplicate)
            raise
        return ClaimResult(CLAIMED, inserted)

    async def claim_or_replay(
        self,
        *,
        action: str,
        billable_entity_id: int,
        client_idempotency_key: str | None,
        request_fingerprint_hash: str,
        normalized_request_json: Any,
        provider: str | None = None,
        now: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> ClaimResult:
        normalized_action = normalize_action(action)
        if normalized_action not in BILLING_ACTIONS:
            raise BillingError(detail="Unsupported billing idempotency action.", status=400)
        client_key = str(client_idempotency_key or "").strip()
        if not client_key:
            raise BillingError(detail="Idempotency-Key header is required.", status=400)
        now = _ensure_utc(now) or _now()
        resolved_provider = str(provider or BILLING_DEFAULT_PROVIDER).strip().lower()

        async with self.repository.transaction(session) as tx:
            result = await self._claim_in_transaction(
                tx,
                action=normalized_action,
                billable_entity_id=int(billable_entity_id),
                client_key=client_key,
                request_fingerprint_hash=request_fingerprint_hash,
                normalized_request_json=normalized_request_json,
                provider=resolved_provider,
                now=now,
            )

        metrics.record_idempotency_claim(normalized_action, result.type)
        logger.info(
            "billing_idempotency_claim",
            extra={
                "extra": {
                    "action": normalized_action,
                    "result": result.type,
                    "idempotency_row_id": result.row.id,
                    **_correlation(result.row),
                }
            },
        )
        return result

    # recovery

    async def recover_pending_request(
        self,
        *,
        idempotency_row_id: int,
        lease_owner: str | None = None,
        now: datetime | None = None,
    ) -> RecoveryResult:
        now = _ensure_utc(now) or _now()
        async with self.repository.transaction() as session:
            row = await self.repository.find_idempotency_by_id(session, idempotency_row_id, for_update=True)
            if row is None:
                raise _not_found()
            if row.status != statuses.PENDING:
                return RecoveryResult(NOT_PENDING, row)
            if not is_lease_expired(row, now):
                return RecoveryResult(LEASE_ACTIVE, row)

            updated = await self.repository.update_idempotency_by_id(
                session,
                row.id,
                {
                    "pending_lease_expires_at": now + timedelta(seconds=self.lease_seconds),
                    "pending_last_heartbeat_at": now,
                    "lease_owner": str(lease_owner or "").strip() or None,
                    "recovery_attempt_count": int(row.recovery_attempt_count or 0) + 1,
                    "last_recovery_attempt_at": now,
                },
                expected_lease_version=row.lease_version,
            )
            if updated is None:
                raise _lease_fenced()

        logger.info(
            "billing_idempotency_recovery_leased",
            extra={
                "extra": {
                    "idempotency_row_id": updated.id,
                    "lease_version": updated.lease_version,
                    "recovery_attempt_count": updated.recovery_attempt_count,
                    **_correlation(updated),
                }
            },
        )
        return RecoveryResult(RECOVERY_LEASED, updated, expected_lease_version=updated.lease_version)

    async def heartbeat(
        self, *, idempotency_row_id: int, lease_version: int, now: datetime | None = None
    ) -> int:
        """Renew the pending lease; returns the lease version to use for the next mutation."""
        now = _ensure_utc(now) or _now()
        async with self.repository.transaction() as session:
            updated = await self.repository.update_idempotency_by_id(
                session,
                idempotency_row_id,
                {
                    "pending_lease_expires_at": now + timedelta(seconds=self.lease_seconds),
                    "pending_last_heartbeat_at": now,
                },
                expected_lease_version=lease_version,
            )
            if updated is None:
                await self._raise_fenced(session, idempotency_row_id)
        return updated.lease_version

    # provider request freezing and replay guards

    async def freeze_provider_request(
        self,
        *,
        idempotency_row_id: int,
        lease_version: int | None,
        params: dict,
        sdk_provenance: SdkProvenance,
        schema_version: str,
        replay_window_seconds: int,
        session_expires_at_upper_bound: datetime | None = None,
        now: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> BillingRequestIdempotency:
        """Persist the provider request body and provenance exactly once.

        Re-freezing an identical body is a no-op; a different body under the
        same provider idempotency key fails closed.
        """
        now = _ensure_utc(now) or _now()
        provider_request_hash = canonical_hash(params)
        async with self.repository.transaction(session) as tx:
            row = await self.repository.find_idempotency_by_id(tx, idempotency_row_id, for_update=True)
            if row is None:
                raise _not_found()
            if lease_version is not None and int(row.lease_version) != int(lease_version):
                self.guardrails.record(GUARDRAIL_LEASE_FENCED, _correlation(row))
                raise _lease_fenced()
            if row.provider_request_hash:
                if row.provider_request_hash == provider_request_hash:
                    return row
                self.guardrails.record(GUARDRAIL_PROVIDER_REQUEST_HASH_MISMATCH, _correlation(row))
                raise BillingError(
                    detail="Provider request hash mismatch.", status=409, code=PROVIDER_REQUEST_HASH_MISMATCH
                )
            updated = await self.repository.update_idempotency_by_id(
                tx,
                row.id,
                {
                    "provider_request_params_json": params,
                    "provider_request_hash": provider_request_hash,
                    "provider_request_schema_version": schema_version,
                    "provider_sdk_name": sdk_provenance.sdk_name,
                    "provider_sdk_version": sdk_provenance.sdk_version,
                    "provider_api_version": sdk_provenance.api_version,
                    "provider_request_frozen_at": now,
                    "provider_idempotency_replay_deadline_at": now + timedelta(seconds=replay_window_seconds),
                    "provider_checkout_session_expires_at_upper_bound": session_expires_at_upper_bound,
                },
                expected_lease_version=row.lease_version,
            )
            if updated is None:
                await self._raise_fenced(tx, row.id)
        return updated

    async def _raise_fenced(self, session: AsyncSession, idempotency_row_id: int) -> None:
        existing = await self.repository.find_idempotency_by_id(session, idempotency_row_id)
        if existing is None:
            raise _not_found()
        self.guardrails.record(GUARDRAIL_LEASE_FENCED, _correlation(existing))
        raise _lease_fenced()

    async def assert_lease_version(
        self, *, idempotency_row_id: int, lease_version: int, session: AsyncSession | None = None
    ) -> BillingRequestIdempotency:
        async with self.repository.transaction(session) as tx:
            row = await self.repository.find_idempotency_by_id(tx, idempotency_row_id)
        if row is None:
            raise _not_found()
        if int(row.lease_version) != int(lease_version):
            self.guardrails.record(GUARDRAIL_LEASE_FENCED, _correlation(row))
            raise _lease_fenced()
        return row

    async def assert_provider_request_hash_stable(
        self, *, idempotency_row_id: int, candidate_provider_request_hash: str | None
    ) -> BillingRequestIdempotency:
        async with self.repository.transaction() as session:
            row = await self.repository.find_idempotency_by_id(session, idempotency_row_id)
        if row is None:
            raise _not_found()
        if not row.provider_request_hash:
            raise BillingError(detail="Provider request hash is missing from idempotency state.", status=500)
        if row.provider_request_hash != str(candidate_provider_request_hash or ""):
            self.guardrails.record(GUARDRAIL_PROVIDER_REQUEST_HASH_MISMATCH, _correlation(row))
            raise BillingError(
                detail="Provider request hash mismatch.", status=409, code=PROVIDER_REQUEST_HASH_MISMATCH
            )
        return row

    def assert_provider_replay_window_open(
        self, *, idempotency_row: BillingRequestIdempotency, now: datetime | None = None
    ) -> None:
        now = _ensure_utc(now) or _now()
        deadline = _ensure_utc(idempotency_row.provider_idempotency_replay_deadline_at)
        if deadline is None:
            raise BillingError(detail="Provider replay deadline missing from idempotency state.", status=500)
        if deadline <= now:
            raise BillingError(
                detail="Checkout recovery replay window elapsed.",
                status=409,
                code=CHECKOUT_RECOVERY_WINDOW_ELAPSED,
            )

    def _raise_provenance_mismatch(self, row: BillingRequestIdempotency) -> None:
        context = _correlation(row)
        self.guardrails.record(GUARDRAIL_SDK_API_BASELINE_DRIFT, {**context, "measure": "count", "value": 1})
        self.guardrails.record(GUARDRAIL_REPLAY_PROVENANCE_MISMATCH, context)
        raise BillingError(
            detail="Checkout replay provenance mismatch.",
            status=409,
            code=CHECKOUT_REPLAY_PROVENANCE_MISMATCH,
        )

    def assert_replay_provenance_compatible(
        self,
        *,
        idempotency_row: BillingRequestIdempotency,
        runtime_provider_sdk_version: str | None,
        runtime_provider_api_version: str | None,
    ) -> None:
        persisted_api_version = str(idempotency_row.provider_api_version or "").strip()
        runtime_api_version = str(runtime_provider_api_version or "").strip()
        if not persisted_api_version or not runtime_api_version or persisted_api_version != runtime_api_version:
            self._raise_provenance_mismatch(idempotency_row)

        persisted_major = parse_major_version(idempotency_row.provider_sdk_version)
        runtime_major = parse_major_version(runtime_provider_sdk_version)
        if persisted_major is None or runtime_major is None or persisted_major != runtime_major:
            self._raise_provenance_mismatch(idempotency_row)

    # finalization

    async def _finalize(
        self,
        *,
        idempotency_row_id: int,
        values: dict[str, Any],
        lease_version: int | None,
        session: AsyncSession | None,
    ) -> BillingRequestIdempotency:
        async with self.repository.transaction(session) as tx:
            updated = await self.repository.update_idempotency_by_id(
                tx,
                idempotency_row_id,
                {**values, **_RELEASE_LEASE},
                expected_lease_version=lease_version,
            )
            if updated is not None:
                logger.info(
                    "billing_idempotency_finalized",
                    extra={
                        "extra": {
                            "idempotency_row_id": updated.id,
                            "status": updated.status,
                            "failure_code": updated.failure_code,
                            **_correlation(updated),
                        }
                    },
                )
                return updated
            if lease_version is not None:
                await self._raise_fenced(tx, idempotency_row_id)
            existing = await self.repository.find_idempotency_by_id(tx, idempotency_row_id)
        if existing is None:
            raise _not_found()
        logger.info(
            "billing_idempotency_already_terminal",
            extra={"extra": {"idempotency_row_id": existing.id, "status": existing.status}},
        )
        return existing

    async def mark_succeeded(
        self,
        *,
        idempotency_row_id: int,
        response_json: Any,
        provider_session_id: str | None = None,
        lease_version: int | None = None,
        session: AsyncSession | None = None,
    ) -> BillingRequestIdempotency:
        return await self._finalize(
            idempotency_row_id=idempotency_row_id,
            values={
                "status": statuses.SUCCEEDED,
                "response_json": response_json,
                "provider_session_id": provider_session_id,
            },
            lease_version=lease_version,
            session=session,
        )

    async def mark_failed(
        self,
        *,
        idempotency_row_id: int,
        failure_code: str,
        failure_reason: str | None = None,
        lease_version: int | None = None,
        session: AsyncSession | None = None,
    ) -> BillingRequestIdempotency:
        return await self._finalize(
            idempotency_row_id=idempotency_row_id,
            values={"status": statuses.FAILED, "failure_code": failure_code, "failure_reason": failure_reason},
            lease_version=lease_version,
            session=session,
        )

    async def mark_expired(
        self,
        *,
        idempotency_row_id: int,
        failure_code: str,
        failure_reason: str | None = None,
        lease_version: int | None = None,
        session: AsyncSession | None = None,
    ) -> BillingRequestIdempotency:
        return await self._finalize(
            idempotency_row_id=idempotency_row_id,
            values={"status": statuses.EXPIRED, "failure_code": failure_code, "failure_reason": failure_reason},
            lease_version=lease_version,
            session=session,
        )

    # stale sweep

    async def _lock_pending_row_aggregate(
        self, session: AsyncSession, *, billable_entity_id: int, idempotency_row_id: int
    ) -> BillingRequestIdempotency | None:
        await self.repository.find_billable_entity(session, billable_entity_id, for_update=True)
        locked = await self.repository.find_idempotency_by_id(session, idempotency_row_id, for_update=True)
        await self.repository.lock_checkout_sessions_for_entity(session, billable_entity_id)
        return locked

    async def _expire_stale_row(self, pending_row_id: int, billable_entity_id: int, now: datetime) -> bool:
        async with self.repository.transaction() as session:
            row = await self._lock_pending_row_aggregate(
                session, billable_entity_id=billable_entity_id, idempotency_row_id=pending_row_id
            )
            if row is None or row.status != statuses.PENDING:
                return False
            if str(row.provider_session_id or "").strip():
                return False

            replay_deadline = _ensure_utc(row.provider_idempotency_replay_deadline_at)
            session_upper_bound = _ensure_utc(row.provider_checkout_session_expires_at_upper_bound)
            operation_key = str(row.operation_key or "").strip()
            if replay_deadline is None or session_upper_bound is None or not operation_key:
                await self.repository.update_idempotency_by_id(
                    session,
                    row.id,
                    {
                        "status": statuses.FAILED,
                        "failure_code": CHECKOUT_CONFIGURATION_INVALID,
                        "failure_reason": "Pending checkout recovery metadata is invalid during stale-request cleanup.",
                        **_RELEASE_LEASE,
                    },
                )
                return True

            if now < replay_deadline:
                return False

            hold_risk_until = session_upper_bound + timedelta(seconds=self.checkout_grace_seconds)
            if now < hold_risk_until:
                await self.checkout_sessions.mark_recovery_verification_pending(
                    session,
                    billable_entity_id=row.billable_entity_id,
                    provider=str(row.provider or BILLING_DEFAULT_PROVIDER).strip().lower(),
                    operation_key=operation_key,
                    idempotency_row_id=row.id,
                    hold_expires_at=hold_risk_until,
                    now=now,
                )

            await self.repository.update_idempotency_by_id(
                session,
                row.id,
                {
                    "status": statuses.EXPIRED,
                    "failure_code": CHECKOUT_RECOVERY_WINDOW_ELAPSED,
                    "failure_reason": "Pending checkout idempotency exceeded replay deadline during stale-request cleanup.",
                    **_RELEASE_LEASE,
                },
            )
            return True

    async def expire_stale_pending_requests(
        self,
        *,
        older_than_seconds: int | None = None,
        limit: int = 200,
        now: datetime | None = None,
    ) -> dict[str, int]:
        now = _ensure_utc(now) or _now()
        stale_window = max(1, int(older_than_seconds or self.lease_seconds))
        stale_before = now - timedelta(seconds=stale_window)

        async with self.repository.transaction() as session:
            pending_rows = await self.repository.list_pending_idempotency_rows(
                session, action=ACTION_CHECKOUT, stale_before=stale_before, limit=limit
            )
            candidates = [(row.id, row.billable_entity_id) for row in pending_rows]

        updated_rows = 0
        for row_id, billable_entity_id in candidates:
            if await self._expire_stale_row(row_id, billable_entity_id, now):
                updated_rows += 1

        metrics.record_stale_resolved(updated_rows)
        if updated_rows:
            logger.info(
                "billing_idempotency_stale_resolved",
                extra={"extra": {"scanned": len(candidates), "updated_rows": updated_rows}},
            )
        return {"scanned": len(candidates), "updated_rows": updated_rows}
