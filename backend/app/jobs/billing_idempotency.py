import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.billing.service import BillingIdempotencyService
from app.services import build_idempotency_service
from app.settings import settings

logger = logging.getLogger(__name__)

JOB_NAME = "billing-idempotency-sweep"


async def run_stale_pending_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    service: BillingIdempotencyService | None = None,
    older_than_seconds: int | None = None,
    limit: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Resolve pending checkout requests whose provider replay window has closed."""
    idempotency_service = service or build_idempotency_service(settings, session_factory)
    result = await idempotency_service.expire_stale_pending_requests(
        older_than_seconds=older_than_seconds or settings.billing_stale_sweep_older_than_seconds,
        limit=limit or settings.billing_stale_sweep_batch_size,
        now=now,
    )
    if result.get("updated_rows"):
        logger.info("billing_stale_sweep_updated", extra={"extra": {"job": JOB_NAME, **result}})
    return result
