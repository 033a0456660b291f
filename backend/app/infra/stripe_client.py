from __future__ import annotations

import inspect
from importlib import metadata
from typing import Any, Callable

import anyio

from app.settings import settings


MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "cancel_",
    "expire_",
    "update_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "list_",
)


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None = None,
        api_version: str | None = None,
        request_timeout_seconds: float | None = None,
        stripe_sdk: Any | None = None,
    ) -> None:
        """Initialize Stripe client credentials.

        ``settings`` is the canonical configuration source for this deployment.
        Passing ``None`` means "fall back to global settings". Runtime
        operations still fail fast with ``ValueError`` when a key is not
        configured.
        """
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.api_version = api_version or settings.stripe_api_version
        self.request_timeout_seconds = max(
            0.01, float(request_timeout_seconds or settings.stripe_request_timeout_seconds)
        )

    def sdk_version(self) -> str:
        version = getattr(self.stripe, "VERSION", None)
        if version:
            return str(version)
        try:
            return metadata.version("stripe")
        except metadata.PackageNotFoundError:
            return ""

    def resolved_api_version(self) -> str:
        return str(self.api_version or getattr(self.stripe, "api_version", None) or "")

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key
        request_kwargs = dict(kwargs)
        if self.api_version:
            request_kwargs.setdefault("stripe_version", self.api_version)

        def _sync_call() -> Any:
            return fn(*args, **request_kwargs)

        with anyio.fail_after(self.request_timeout_seconds):
            return await anyio.to_thread.run_sync(_sync_call, abandon_on_cancel=True)

    async def create_checkout_session(self, params: dict[str, Any], *, idempotency_key: str) -> Any:
        return await self._call(self.stripe.checkout.Session.create, **params, idempotency_key=idempotency_key)

    async def create_billing_portal_session(self, params: dict[str, Any], *, idempotency_key: str) -> Any:
        return await self._call(
            self.stripe.billing_portal.Session.create, **params, idempotency_key=idempotency_key
        )

    async def create_payment_link(self, params: dict[str, Any], *, idempotency_key: str) -> Any:
        return await self._call(self.stripe.PaymentLink.create, **params, idempotency_key=idempotency_key)


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
