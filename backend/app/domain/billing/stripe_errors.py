from __future__ import annotations

from typing import Any

from app.domain.billing import provider_errors
from app.domain.billing.constants import BILLING_PROVIDER_STRIPE
from app.domain.billing.provider_errors import BillingProviderError, create_billing_provider_error
from app.domain.errors import BillingError

_TRANSPORT_EXCEPTIONS = (TimeoutError, ConnectionError)


def _normalized(value: Any) -> str:
    return str(value or "").strip().lower()


def _status_code(error: BaseException, fallback: int | None = None) -> int | None:
    for candidate in (
        getattr(error, "http_status", None),
        getattr(error, "status_code", None),
        getattr(error, "status", None),
        fallback,
    ):
        if candidate is None or isinstance(candidate, bool):
            continue
        try:
            parsed = int(candidate)
        except (TypeError, ValueError):
            continue
        if parsed >= 100:
            return parsed
    return None


def _json_error_body(error: BaseException) -> dict:
    body = getattr(error, "json_body", None)
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def _provider_code(error: BaseException) -> str | None:
    body = _json_error_body(error)
    for candidate in (getattr(error, "code", None), body.get("code"), body.get("type"), type(error).__name__):
        normalized = str(candidate or "").strip()
        if normalized:
            return normalized
    return None


def _provider_request_id(error: BaseException) -> str | None:
    candidates = [getattr(error, "request_id", None)]
    headers = getattr(error, "headers", None)
    if isinstance(headers, dict):
        candidates.append(headers.get("request-id"))
    for candidate in candidates:
        normalized = str(candidate or "").strip()
        if normalized:
            return normalized
    return None


def _resolve_category(*, status_code: int, code: str, class_name: str, message: str, transport: bool) -> str:
    markers = f"{code} {class_name}"
    if status_code == 429 or "ratelimit" in markers:
        return provider_errors.RATE_LIMITED
    if status_code >= 500:
        return provider_errors.TRANSIENT_PROVIDER
    if status_code == 401 or "authentication" in markers:
        return provider_errors.AUTH
    if status_code == 403 or "permission" in markers:
        return provider_errors.PERMISSION
    if status_code == 404 or "notfound" in markers:
        return provider_errors.NOT_FOUND
    if status_code == 409 or "conflict" in markers:
        return provider_errors.CONFLICT
    if (
        transport
        or "apiconnection" in markers
        or "connectionerror" in markers
        or "econn" in markers
        or "etimedout" in markers
        or "timeout" in message
        or "network" in message
        or "connection" in message
    ):
        return provider_errors.TRANSIENT_NETWORK
    if "apierror" in markers:
        return provider_errors.TRANSIENT_PROVIDER
    if 400 <= status_code < 500:
        return provider_errors.INVALID_REQUEST
    if "invalidrequest" in markers or "invalid_request" in markers:
        return provider_errors.INVALID_REQUEST
    return provider_errors.UNKNOWN


def map_stripe_provider_error(
    error: BaseException,
    *,
    operation: str = "unknown",
    fallback_status_code: int | None = None,
) -> BaseException:
    """Translate a Stripe SDK or transport failure into the provider error contract.

    Errors that are already normalized, and local ``BillingError`` failures, are
    returned untouched so callers can always ``raise map_stripe_provider_error(exc)``.
    """
    if isinstance(error, (BillingError, BillingProviderError)):
        return error

    message = str(getattr(error, "user_message", None) or error or "Stripe API request failed.")
    provider_code = _provider_code(error)
    status_code = _status_code(error, fallback_status_code)
    category = _resolve_category(
        status_code=status_code or 0,
        code=_normalized(provider_code).replace("_", ""),
        class_name=type(error).__name__.lower(),
        message=_normalized(message),
        transport=isinstance(error, _TRANSPORT_EXCEPTIONS),
    )
    body = _json_error_body(error)
    return create_billing_provider_error(
        message,
        cause=error,
        provider=BILLING_PROVIDER_STRIPE,
        operation=operation,
        category=category,
        http_status=status_code,
        provider_code=provider_code,
        provider_request_id=_provider_request_id(error),
        details=body or None,
    )
