from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.billing.checkout_sessions import CheckoutSessionService
from app.domain.billing.operations import ProviderOperationRunner
from app.domain.billing.providers import StripeBillingProviderAdapter
from app.domain.billing.repository import BillingRepository
from app.domain.billing.service import BillingIdempotencyService
from app.infra.metrics import Metrics, configure_metrics
from app.infra.stripe_client import StripeClient


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    repository: BillingRepository
    idempotency: BillingIdempotencyService
    checkout_sessions: CheckoutSessionService
    stripe_client: StripeClient
    provider_adapter: StripeBillingProviderAdapter
    operation_runner: ProviderOperationRunner
    metrics: Metrics


def build_idempotency_service(
    app_settings, session_factory: async_sessionmaker[AsyncSession]
) -> BillingIdempotencyService:
    repository = BillingRepository(session_factory)
    return BillingIdempotencyService(
        repository,
        operation_key_secret=app_settings.billing_operation_key_secret,
        provider_idempotency_key_secret=app_settings.billing_provider_idempotency_key_secret,
        pending_lease_seconds=app_settings.billing_pending_lease_seconds,
        checkout_session_grace_seconds=app_settings.billing_checkout_session_grace_seconds,
    )


def build_app_services(
    app_settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    metrics: Metrics | None = None,
    stripe_client: StripeClient | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    idempotency = build_idempotency_service(app_settings, session_factory)
    client = stripe_client or StripeClient(
        secret_key=app_settings.stripe_secret_key,
        api_version=app_settings.stripe_api_version,
        request_timeout_seconds=app_settings.stripe_request_timeout_seconds,
    )
    adapter = StripeBillingProviderAdapter(client)
    return AppServices(
        repository=idempotency.repository,
        idempotency=idempotency,
        checkout_sessions=idempotency.checkout_sessions,
        stripe_client=client,
        provider_adapter=adapter,
        operation_runner=ProviderOperationRunner(
            idempotency,
            adapter,
            replay_window_seconds=app_settings.billing_provider_replay_window_seconds,
            lease_owner=app_settings.billing_lease_owner,
        ),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
