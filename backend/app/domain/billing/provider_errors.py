"""Normalized error shape every billing provider adapter must raise.

The outcome policy only trusts errors in this shape; anything else is
classified through best-effort heuristics and flagged as not normalized.
"""
from __future__ import annotations

from typing import Any

INVALID_REQUEST = "invalid_request"
RATE_LIMITED = "rate_limited"
TRANSIENT_NETWORK = "transient_network"
TRANSIENT_PROVIDER = "transient_provider"
AUTH = "auth"
PERMISSION = "permission"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
UNKNOWN = "unknown"

PROVIDER_ERROR_CATEGORIES = frozenset(
    {
        INVALID_REQUEST,
        RATE_LIMITED,
        TRANSIENT_NETWORK,
        TRANSIENT_PROVIDER,
        AUTH,
        PERMISSION,
        NOT_FOUND,
        CONFLICT,
        UNKNOWN,
    }
)

RETRYABLE_PROVIDER_ERROR_CATEGORIES = frozenset({RATE_LIMITED, TRANSIENT_NETWORK, TRANSIENT_PROVIDER})


def _to_nullable_string(value: Any) -> str | None:
    normalized = str(value or "").strip()
    return normalized or None


def _to_nullable_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if parsed < 100:
        return None
    return parsed


def normalize_provider_error_category(category: Any) -> str:
    normalized = str(category or "").strip().lower()
    if normalized in PROVIDER_ERROR_CATEGORIES:
        return normalized
    return UNKNOWN


def _resolve_retryable(retryable: Any, category: str) -> bool:
    if isinstance(retryable, bool):
        return retryable
    return category in RETRYABLE_PROVIDER_ERROR_CATEGORIES


class BillingProviderError(Exception):
    code = "BILLING_PROVIDER_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        provider: str | None = None,
        operation: str | None = None,
        category: str | None = None,
        retryable: bool | None = None,
        http_status: int | None = None,
        provider_code: str | None = None,
        provider_request_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = str(message or "Billing provider operation failed.")
        super().__init__(self.message)
        self.provider = str(provider or "").strip().lower()
        self.operation = str(operation or "").strip().lower() or "unknown"
        self.category = normalize_provider_error_category(category)
        self.retryable = _resolve_retryable(retryable, self.category)
        self.http_status = _to_nullable_status(http_status)
        self.provider_code = _to_nullable_string(provider_code)
        self.provider_request_id = _to_nullable_string(provider_request_id)
        self.details = details if isinstance(details, dict) else None

    def __repr__(self) -> str:
        return (
            f"BillingProviderError(provider={self.provider!r}, operation={self.operation!r}, "
            f"category={self.category!r}, retryable={self.retryable!r}, http_status={self.http_status!r})"
        )


def is_billing_provider_error(error: object) -> bool:
    return isinstance(error, BillingProviderError)


def create_billing_provider_error(
    message: str | None = None, *, cause: BaseException | None = None, **options: Any
) -> BillingProviderError:
    error = BillingProviderError(message, **options)
    if cause is not None:
        error.__cause__ = cause
    return error
