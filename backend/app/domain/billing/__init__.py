from app.domain.billing.db_models import BillableEntity, BillingCheckoutSession, BillingRequestIdempotency

__all__ = [
    "BillableEntity",
    "BillingCheckoutSession",
    "BillingRequestIdempotency",
]
