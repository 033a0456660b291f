from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from app.domain.billing import provider_errors
from app.domain.billing.constants import (
    CHECKOUT_PROVIDER_ERROR,
    GUARDRAIL_PROVIDER_ERROR_NOT_NORMALIZED,
    REQUEST_IN_PROGRESS,
)
from app.domain.billing.guardrails import GuardrailRecorder, default_guardrail_recorder
from app.domain.billing.provider_errors import is_billing_provider_error
from app.infra.metrics import metrics

MARK_FAILED = "mark_failed"
IN_PROGRESS = "in_progress"
RETHROW = "rethrow"

FAMILY_CHECKOUT = "checkout"
FAMILY_PORTAL = "portal"
FAMILY_PAYMENT_LINK = "payment_link"
FAMILY_UNKNOWN = "unknown"

_FAMILY_PREFIXES = (
    ("checkout", FAMILY_CHECKOUT),
    ("portal", FAMILY_PORTAL),
    ("payment_link", FAMILY_PAYMENT_LINK),
)

# (deterministic guardrail, indeterminate guardrail) per operation family.
PROVIDER_OPERATION_GUARDRAILS = MappingProxyType(
    {
        FAMILY_CHECKOUT: ("BILLING_CHECKOUT_PROVIDER_ERROR", "BILLING_CHECKOUT_INDETERMINATE_PROVIDER_OUTCOME"),
        FAMILY_PORTAL: ("BILLING_PORTAL_PROVIDER_ERROR", "BILLING_PORTAL_INDETERMINATE_PROVIDER_OUTCOME"),
        FAMILY_PAYMENT_LINK: (
            "BILLING_PAYMENT_LINK_PROVIDER_ERROR",
            "BILLING_PAYMENT_LINK_INDETERMINATE_PROVIDER_OUTCOME",
        ),
        FAMILY_UNKNOWN: (None, None),
    }
)

DETERMINISTIC_CATEGORIES = frozenset(
    {
        provider_errors.INVALID_REQUEST,
        provider_errors.AUTH,
        provider_errors.PERMISSION,
        provider_errors.NOT_FOUND,
        provider_errors.CONFLICT,
    }
)
INDETERMINATE_CATEGORIES = frozenset(
    {
        provider_errors.TRANSIENT_NETWORK,
        provider_errors.TRANSIENT_PROVIDER,
        provider_errors.RATE_LIMITED,
    }
)

INVALID_REQUEST_CODES = frozenset(
    {"invalid_request_error", "invalidrequesterror", "invalid_request", "invalidrequest"}
)
TRANSPORT_ERROR_CODES = frozenset(
    {
        "econnreset",
        "ecconnreset",
        "etimedout",
        "econnaborted",
        "econnrefused",
        "ehostunreach",
        "eai_again",
        "enotfound",
        "api_connection_error",
        "apiconnectionerror",
        "api_error",
        "apierror",
        "service_unavailable",
        "temporarily_unavailable",
        "request_timeout",
        "gateway_timeout",
    }
)
TRANSPORT_MESSAGE_MARKERS = ("timeout", "network", "connection", "temporarily unavailable")


@dataclass(frozen=True)
class ProviderOutcome:
    action: str
    failure_code: str | None
    guardrail_code: str | None
    non_normalized_guardrail_code: str | None
    normalized: bool
    deterministic: bool
    indeterminate: bool
    operation_family: str


def resolve_provider_operation_family(operation: str | None) -> str:
    normalized = str(operation or "").strip().lower()
    if not normalized:
        return FAMILY_UNKNOWN
    for prefix, family in _FAMILY_PREFIXES:
        if normalized.startswith(prefix):
            return family
    return FAMILY_UNKNOWN


def _status_code(error: Any) -> int:
    for attribute in ("status_code", "http_status", "status"):
        value = getattr(error, attribute, None)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return 0


def _error_code(error: Any) -> str:
    return str(getattr(error, "code", None) or "").strip().lower()


def _error_message(error: Any) -> str:
    return str(getattr(error, "message", None) or error or "").strip().lower()


def is_provider_error_normalized(error: Any) -> bool:
    return is_billing_provider_error(error)


def is_deterministic_provider_rejection(error: Any) -> bool:
    if is_billing_provider_error(error):
        if error.category in DETERMINISTIC_CATEGORIES:
            return True
        return error.retryable is False

    status_code = _status_code(error)
    if 400 <= status_code < 500 and status_code != 429:
        return True

    code = _error_code(error)
    if not code:
        return False
    return code in INVALID_REQUEST_CODES or "invalidrequest" in code


def is_indeterminate_provider_outcome(error: Any) -> bool:
    if is_billing_provider_error(error):
        if error.category in INDETERMINATE_CATEGORIES:
            return True
        return error.retryable is True

    status_code = _status_code(error)
    if status_code == 429 or status_code >= 500:
        return True

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    code = _error_code(error)
    if code in TRANSPORT_ERROR_CODES or code.endswith(("apiconnectionerror", "apierror")):
        return True

    message = _error_message(error)
    return any(marker in message for marker in TRANSPORT_MESSAGE_MARKERS)


def resolve_provider_error_outcome(
    *,
    operation: str | None,
    error: Any,
    deterministic_failure_code: str = CHECKOUT_PROVIDER_ERROR,
    in_progress_failure_code: str = REQUEST_IN_PROGRESS,
) -> ProviderOutcome:
    """Decide whether a provider failure may be finalized, must stay pending, or propagates.

    Deterministic rejections are checked first, then indeterminate outcomes;
    anything else is ``rethrow`` because the policy refuses to guess.
    """
    family = resolve_provider_operation_family(operation)
    deterministic_guardrail, indeterminate_guardrail = PROVIDER_OPERATION_GUARDRAILS[family]
    normalized = is_provider_error_normalized(error)
    deterministic = is_deterministic_provider_rejection(error)
    indeterminate = is_indeterminate_provider_outcome(error)
    non_normalized_guardrail = None if normalized else GUARDRAIL_PROVIDER_ERROR_NOT_NORMALIZED

    if deterministic:
        action, failure_code, guardrail = MARK_FAILED, deterministic_failure_code, deterministic_guardrail
    elif indeterminate:
        action, failure_code, guardrail = IN_PROGRESS, in_progress_failure_code, indeterminate_guardrail
    else:
        action, failure_code, guardrail = RETHROW, None, None

    return ProviderOutcome(
        action=action,
        failure_code=failure_code,
        guardrail_code=guardrail,
        non_normalized_guardrail_code=non_normalized_guardrail,
        normalized=normalized,
        deterministic=deterministic,
        indeterminate=indeterminate,
        operation_family=family,
    )


def record_provider_outcome(
    outcome: ProviderOutcome,
    context: dict[str, Any] | None = None,
    *,
    recorder: GuardrailRecorder | None = None,
) -> None:
    sink = recorder or default_guardrail_recorder
    if outcome.non_normalized_guardrail_code:
        sink.record(outcome.non_normalized_guardrail_code, context)
    if outcome.guardrail_code:
        sink.record(outcome.guardrail_code, context)
    metrics.record_provider_outcome(outcome.operation_family, outcome.action)
