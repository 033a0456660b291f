from types import MappingProxyType

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
EXPIRED = "expired"

IDEMPOTENCY_STATUSES = frozenset({PENDING, SUCCEEDED, FAILED, EXPIRED})
IDEMPOTENCY_TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED, EXPIRED})

OPEN = "open"
COMPLETED_PENDING_SUBSCRIPTION = "completed_pending_subscription"
RECOVERY_VERIFICATION_PENDING = "recovery_verification_pending"
COMPLETED_RECONCILED = "completed_reconciled"
CHECKOUT_EXPIRED = "expired"
ABANDONED = "abandoned"

CHECKOUT_SESSION_STATUSES = frozenset(
    {
        OPEN,
        COMPLETED_PENDING_SUBSCRIPTION,
        RECOVERY_VERIFICATION_PENDING,
        COMPLETED_RECONCILED,
        CHECKOUT_EXPIRED,
        ABANDONED,
    }
)

CHECKOUT_BLOCKING_STATUSES = frozenset({OPEN, COMPLETED_PENDING_SUBSCRIPTION, RECOVERY_VERIFICATION_PENDING})
CHECKOUT_TERMINAL_STATUSES = frozenset({COMPLETED_RECONCILED, CHECKOUT_EXPIRED, ABANDONED})

CHECKOUT_STATUS_TRANSITIONS = MappingProxyType(
    {
        OPEN: frozenset({COMPLETED_PENDING_SUBSCRIPTION, CHECKOUT_EXPIRED, ABANDONED}),
        COMPLETED_PENDING_SUBSCRIPTION: frozenset({COMPLETED_RECONCILED, ABANDONED}),
        RECOVERY_VERIFICATION_PENDING: frozenset(
            {OPEN, COMPLETED_PENDING_SUBSCRIPTION, COMPLETED_RECONCILED, CHECKOUT_EXPIRED, ABANDONED}
        ),
        COMPLETED_RECONCILED: frozenset(),
        CHECKOUT_EXPIRED: frozenset(),
        ABANDONED: frozenset(),
    }
)


def _normalize(value: object) -> str:
    return str(value or "").strip()


def is_idempotency_terminal_status(status: str | None) -> bool:
    return _normalize(status) in IDEMPOTENCY_TERMINAL_STATUSES


def is_blocking_checkout_status(status: str | None) -> bool:
    return _normalize(status) in CHECKOUT_BLOCKING_STATUSES


def is_checkout_terminal_status(status: str | None) -> bool:
    return _normalize(status) in CHECKOUT_TERMINAL_STATUSES


def can_transition_checkout_status(current_status: str | None, next_status: str | None) -> bool:
    current = _normalize(current_status)
    nxt = _normalize(next_status)
    if not current or not nxt:
        return False
    if current == nxt:
        return True
    allowed = CHECKOUT_STATUS_TRANSITIONS.get(current)
    if allowed is None:
        return False
    return nxt in allowed
