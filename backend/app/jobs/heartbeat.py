import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.ops.db_models import JobHeartbeat
from app.infra.metrics import metrics


async def _load_or_create(session: AsyncSession, name: str, now: datetime) -> JobHeartbeat:
    record = await session.get(JobHeartbeat, name)
    if record is None:
        record = JobHeartbeat(name=name, last_heartbeat=now, consecutive_failures=0, updated_at=now)
        session.add(record)
    return record


async def record_job_result(
    session_factory: async_sessionmaker, job: str, *, success: bool, error_reason: str | None = None
) -> None:
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await _load_or_create(session, job, now)
        record.last_heartbeat = now
        if success:
            record.last_success_at = now
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = error_reason or record.last_error
            record.last_error_at = now
        await session.commit()
    if success:
        metrics.record_job_success(job, now.timestamp())
    else:
        metrics.record_job_error(job, error_reason or "unknown")


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = "jobs-runner", *, runner_id: str | None = None
) -> None:
    """Mark the runner loop itself alive; the row is keyed by ``name`` next to the job rows."""
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await _load_or_create(session, name, now)
        record.runner_id = (runner_id or "").strip() or socket.gethostname()
        record.last_heartbeat = now
        record.last_success_at = now
        record.consecutive_failures = 0
        record.last_error = None
        record.last_error_at = None
        await session.commit()
    metrics.record_job_heartbeat(name, now.timestamp())
