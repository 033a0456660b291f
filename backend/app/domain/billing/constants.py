from types import MappingProxyType

BILLING_PROVIDER_STRIPE = "stripe"
BILLING_DEFAULT_PROVIDER = BILLING_PROVIDER_STRIPE

ACTION_CHECKOUT = "checkout"
ACTION_PORTAL = "portal"
ACTION_PAYMENT_LINK = "payment_link"

BILLING_ACTIONS = frozenset({ACTION_CHECKOUT, ACTION_PORTAL, ACTION_PAYMENT_LINK})

REQUEST_IN_PROGRESS = "request_in_progress"
CHECKOUT_IN_PROGRESS = "checkout_in_progress"
CHECKOUT_SESSION_OPEN = "checkout_session_open"
CHECKOUT_COMPLETION_PENDING = "checkout_completion_pending"
CHECKOUT_RECOVERY_VERIFICATION_PENDING = "checkout_recovery_verification_pending"
CHECKOUT_PLAN_NOT_FOUND = "checkout_plan_not_found"
CHECKOUT_CONFIGURATION_INVALID = "checkout_configuration_invalid"
SUBSCRIPTION_EXISTS_USE_PORTAL = "subscription_exists_use_portal"
PORTAL_SUBSCRIPTION_REQUIRED = "portal_subscription_required"
CHECKOUT_RECOVERY_WINDOW_ELAPSED = "checkout_recovery_window_elapsed"
CHECKOUT_REPLAY_PROVENANCE_MISMATCH = "checkout_replay_provenance_mismatch"
CHECKOUT_PROVIDER_ERROR = "checkout_provider_error"
IDEMPOTENCY_CONFLICT = "idempotency_conflict"

BILLING_FAILURE_CODES = frozenset(
    {
        REQUEST_IN_PROGRESS,
        CHECKOUT_IN_PROGRESS,
        CHECKOUT_SESSION_OPEN,
        CHECKOUT_COMPLETION_PENDING,
        CHECKOUT_RECOVERY_VERIFICATION_PENDING,
        CHECKOUT_PLAN_NOT_FOUND,
        CHECKOUT_CONFIGURATION_INVALID,
        SUBSCRIPTION_EXISTS_USE_PORTAL,
        PORTAL_SUBSCRIPTION_REQUIRED,
        CHECKOUT_RECOVERY_WINDOW_ELAPSED,
        CHECKOUT_REPLAY_PROVENANCE_MISMATCH,
        CHECKOUT_PROVIDER_ERROR,
        IDEMPOTENCY_CONFLICT,
    }
)

LEASE_FENCED = "BILLING_LEASE_FENCED"
PROVIDER_REQUEST_HASH_MISMATCH = "BILLING_PROVIDER_REQUEST_HASH_MISMATCH"
CHECKOUT_SESSION_TRANSITION_INVALID = "CHECKOUT_SESSION_TRANSITION_INVALID"

# Guardrail signal names emitted to logs and metrics.
GUARDRAIL_LEASE_FENCED = "BILLING_IDEMPOTENCY_LEASE_FENCED"
GUARDRAIL_PROVIDER_REQUEST_HASH_MISMATCH = "BILLING_PROVIDER_REQUEST_HASH_MISMATCH"
GUARDRAIL_SDK_API_BASELINE_DRIFT = "BILLING_STRIPE_SDK_API_BASELINE_DRIFT"
GUARDRAIL_REPLAY_PROVENANCE_MISMATCH = "BILLING_CHECKOUT_REPLAY_PROVENANCE_MISMATCH"
GUARDRAIL_PROVIDER_ERROR_NOT_NORMALIZED = "BILLING_PROVIDER_ERROR_NOT_NORMALIZED"
GUARDRAIL_RECOVERY_VERIFICATION_PENDING = "BILLING_CHECKOUT_RECOVERY_VERIFICATION_PENDING"

PROVIDER_IDEMPOTENCY_REPLAY_WINDOW_SECONDS = 23 * 60 * 60
CHECKOUT_PROVIDER_EXPIRES_SECONDS = 24 * 60 * 60
CHECKOUT_SESSION_EXPIRES_AT_GRACE_SECONDS = 90
CHECKOUT_PENDING_LEASE_SECONDS = 120
MIN_PENDING_LEASE_SECONDS = 10

PROVIDER_REQUEST_SCHEMA_VERSIONS = MappingProxyType(
    {
        ACTION_CHECKOUT: "stripe_checkout_session_create_params_v1",
        ACTION_PORTAL: "stripe_billing_portal_session_create_params_v1",
        ACTION_PAYMENT_LINK: "stripe_payment_link_create_params_v1",
    }
)
PROVIDER_SDK_NAME = "stripe-python"


def normalize_action(value: object) -> str:
    return str(value or "").strip()


def status_from_failure_code(failure_code: str | None) -> int:
    code = str(failure_code or "").strip()
    if not code:
        return 409
    if code == CHECKOUT_PROVIDER_ERROR:
        return 502
    if code == CHECKOUT_PLAN_NOT_FOUND:
        return 404
    return 409
