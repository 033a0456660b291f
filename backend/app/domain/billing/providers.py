from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.domain.billing.constants import (
    ACTION_CHECKOUT,
    ACTION_PAYMENT_LINK,
    ACTION_PORTAL,
    CHECKOUT_CONFIGURATION_INVALID,
    PORTAL_SUBSCRIPTION_REQUIRED,
    PROVIDER_SDK_NAME,
)
from app.domain.billing.stripe_errors import map_stripe_provider_error
from app.domain.errors import BillingError
from app.infra.stripe_client import StripeClient, call_stripe_client_method

logger = logging.getLogger(__name__)

CHECKOUT_FLOW_SUBSCRIPTION = "subscription"
CHECKOUT_FLOW_ONE_OFF = "one_off"

PROVIDER_OPERATIONS = {
    ACTION_CHECKOUT: ("checkout_session_create", "create_checkout_session"),
    ACTION_PORTAL: ("portal_session_create", "create_billing_portal_session"),
    ACTION_PAYMENT_LINK: ("payment_link_create", "create_payment_link"),
}


@dataclass(frozen=True)
class SdkProvenance:
    sdk_name: str
    sdk_version: str
    api_version: str


def _configuration_invalid(detail: str) -> BillingError:
    return BillingError(detail=detail, status=409, code=CHECKOUT_CONFIGURATION_INVALID)


def provider_response_to_dict(response: Any) -> dict[str, Any]:
    if response is None:
        return {}
    if isinstance(response, dict):
        return dict(response)
    to_dict = getattr(response, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(response)


def build_checkout_session_params(
    *,
    billable_entity_id: int,
    operation_key: str,
    idempotency_row_id: int,
    success_url: str,
    cancel_url: str,
    expires_at: datetime,
    checkout_flow: str = CHECKOUT_FLOW_SUBSCRIPTION,
    price_id: str | None = None,
    one_off: dict[str, Any] | None = None,
    customer_id: str | None = None,
) -> dict[str, Any]:
    metadata = {
        "operation_key": str(operation_key or ""),
        "billable_entity_id": str(billable_entity_id),
        "idempotency_row_id": str(idempotency_row_id),
        "checkout_flow": checkout_flow,
    }
    params: dict[str, Any] = {
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "client_reference_id": str(billable_entity_id),
        "expires_at": int(expires_at.timestamp()),
    }
    if checkout_flow == CHECKOUT_FLOW_ONE_OFF:
        if not one_off or not one_off.get("name") or int(one_off.get("amount_minor") or 0) < 1:
            raise _configuration_invalid("One-off checkout payload is invalid.")
        params["mode"] = "payment"
        params["line_items"] = [
            {
                "quantity": int(one_off.get("quantity") or 1),
                "price_data": {
                    "currency": str(one_off.get("currency") or "usd").lower(),
                    "product_data": {"name": str(one_off["name"])},
                    "unit_amount": int(one_off["amount_minor"]),
                },
            }
        ]
        params["invoice_creation"] = {"enabled": True, "invoice_data": {"metadata": metadata}}
    else:
        if not str(price_id or "").strip():
            raise _configuration_invalid("Billing pricing configuration is invalid.")
        params["mode"] = "subscription"
        params["line_items"] = [{"price": str(price_id).strip(), "quantity": 1}]
        params["subscription_data"] = {"metadata": metadata}

    if customer_id:
        params["customer"] = str(customer_id)
    elif checkout_flow == CHECKOUT_FLOW_ONE_OFF:
        params["customer_creation"] = "always"
    return params


def build_portal_session_params(*, customer_id: str | None, return_url: str) -> dict[str, Any]:
    if not str(customer_id or "").strip():
        raise BillingError(
            detail="Billing portal requires a provider customer.", status=409, code=PORTAL_SUBSCRIPTION_REQUIRED
        )
    return {"customer": str(customer_id).strip(), "return_url": return_url}


def build_payment_link_params(
    *,
    billable_entity_id: int,
    operation_key: str,
    price_id: str | None,
    quantity: int = 1,
) -> dict[str, Any]:
    if not str(price_id or "").strip():
        raise _configuration_invalid("Payment link price is invalid.")
    return {
        "line_items": [{"price": str(price_id).strip(), "quantity": max(1, int(quantity))}],
        "metadata": {"operation_key": str(operation_key), "billable_entity_id": str(billable_entity_id)},
    }


class StripeBillingProviderAdapter:
    """Calls Stripe and guarantees that only provider-contract errors escape."""

    provider = "stripe"

    def __init__(self, client: StripeClient | None = None) -> None:
        self.client = client or StripeClient()

    def sdk_provenance(self) -> SdkProvenance:
        return SdkProvenance(
            sdk_name=PROVIDER_SDK_NAME,
            sdk_version=self.client.sdk_version(),
            api_version=self.client.resolved_api_version(),
        )

    async def execute(self, action: str, params: dict[str, Any], *, idempotency_key: str) -> dict[str, Any]:
        if action not in PROVIDER_OPERATIONS:
            raise BillingError(detail=f"Unsupported provider action {action!r}.", status=400)
        operation, method_name = PROVIDER_OPERATIONS[action]
        try:
            response = await call_stripe_client_method(
                self.client, method_name, params, idempotency_key=idempotency_key
            )
        except Exception as exc:  # noqa: BLE001
            mapped = map_stripe_provider_error(exc, operation=operation)
            logger.warning(
                "billing_provider_call_failed",
                extra={
                    "extra": {
                        "operation": operation,
                        "category": getattr(mapped, "category", None),
                        "provider_request_id": getattr(mapped, "provider_request_id", None),
                    }
                },
            )
            if mapped is exc:
                raise
            raise mapped from exc
        return provider_response_to_dict(response)

    async def create_checkout_session(self, params: dict[str, Any], *, idempotency_key: str) -> dict[str, Any]:
        return await self.execute(ACTION_CHECKOUT, params, idempotency_key=idempotency_key)

    async def create_billing_portal_session(
        self, params: dict[str, Any], *, idempotency_key: str
    ) -> dict[str, Any]:
        return await self.execute(ACTION_PORTAL, params, idempotency_key=idempotency_key)

    async def create_payment_link(self, params: dict[str, Any], *, idempotency_key: str) -> dict[str, Any]:
        return await self.execute(ACTION_PAYMENT_LINK, params, idempotency_key=idempotency_key)
