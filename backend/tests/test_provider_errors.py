import pytest

from app.domain.billing import provider_errors
from app.domain.billing.provider_errors import BillingProviderError, create_billing_provider_error
from app.domain.billing.stripe_errors import map_stripe_provider_error
from app.domain.errors import BillingError


class FakeStripeError(Exception):
    def __init__(self, message, *, http_status=None, code=None, json_body=None, request_id=None, headers=None):
        super().__init__(message)
        self.user_message = message
        self.http_status = http_status
        self.code = code
        self.json_body = json_body
        self.request_id = request_id
        self.headers = headers


class RateLimitError(FakeStripeError):
    pass


class APIConnectionError(FakeStripeError):
    pass


class InvalidRequestError(FakeStripeError):
    pass


def test_provider_error_normalizes_fields():
    error = BillingProviderError(
        "boom",
        provider=" Stripe ",
        category="NOT-A-CATEGORY",
        http_status=42,
        provider_code="  ",
        details=["not", "a", "dict"],
    )
    assert error.code == "BILLING_PROVIDER_ERROR"
    assert error.provider == "stripe"
    assert error.operation == "unknown"
    assert error.category == provider_errors.UNKNOWN
    assert error.retryable is False
    assert error.http_status is None
    assert error.provider_code is None
    assert error.details is None


@pytest.mark.parametrize(
    "category,retryable",
    [
        (provider_errors.RATE_LIMITED, True),
        (provider_errors.TRANSIENT_NETWORK, True),
        (provider_errors.TRANSIENT_PROVIDER, True),
        (provider_errors.INVALID_REQUEST, False),
        (provider_errors.CONFLICT, False),
    ],
)
def test_retryable_defaults_follow_category(category, retryable):
    assert BillingProviderError("x", category=category).retryable is retryable


def test_explicit_retryable_wins():
    assert BillingProviderError("x", category=provider_errors.RATE_LIMITED, retryable=False).retryable is False


def test_create_keeps_cause():
    cause = RuntimeError("root")
    error = create_billing_provider_error("wrapped", cause=cause, category="auth")
    assert error.__cause__ is cause
    assert error.category == provider_errors.AUTH


def test_map_passes_through_contract_and_local_errors():
    normalized = BillingProviderError("x")
    local = BillingError(detail="local", status=409, code="checkout_configuration_invalid")
    assert map_stripe_provider_error(normalized) is normalized
    assert map_stripe_provider_error(local) is local


def test_map_rate_limit():
    error = map_stripe_provider_error(
        RateLimitError("Too many requests", http_status=429, request_id="req_123"),
        operation="checkout_session_create",
    )
    assert error.category == provider_errors.RATE_LIMITED
    assert error.retryable is True
    assert error.http_status == 429
    assert error.provider == "stripe"
    assert error.operation == "checkout_session_create"
    assert error.provider_request_id == "req_123"


def test_map_invalid_request_uses_json_body():
    error = map_stripe_provider_error(
        InvalidRequestError(
            "No such price",
            http_status=400,
            json_body={"error": {"code": "resource_missing", "type": "invalid_request_error"}},
        )
    )
    assert error.category == provider_errors.INVALID_REQUEST
    assert error.retryable is False
    assert error.details == {"code": "resource_missing", "type": "invalid_request_error"}


def test_map_connection_failures_are_transient_network():
    assert map_stripe_provider_error(APIConnectionError("reset")).category == provider_errors.TRANSIENT_NETWORK
    assert map_stripe_provider_error(TimeoutError()).category == provider_errors.TRANSIENT_NETWORK


def test_map_server_errors_are_transient_provider():
    error = map_stripe_provider_error(FakeStripeError("oops", http_status=503))
    assert error.category == provider_errors.TRANSIENT_PROVIDER


@pytest.mark.parametrize(
    "status,category",
    [
        (401, provider_errors.AUTH),
        (403, provider_errors.PERMISSION),
        (404, provider_errors.NOT_FOUND),
        (409, provider_errors.CONFLICT),
    ],
)
def test_map_status_categories(status, category):
    assert map_stripe_provider_error(FakeStripeError("x", http_status=status)).category == category


def test_map_request_id_from_headers():
    error = map_stripe_provider_error(FakeStripeError("x", http_status=400, headers={"request-id": "req_h"}))
    assert error.provider_request_id == "req_h"
