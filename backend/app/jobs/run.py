import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.infra.db import get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics
from app.jobs import billing_idempotency
from app.jobs.heartbeat import record_heartbeat, record_job_result
from app.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[async_sessionmaker], Awaitable[dict[str, int]]]

DEFAULT_JOBS = [billing_idempotency.JOB_NAME]


def _job_runner(name: str, *, limit: int | None = None) -> JobRunner:
    if name == billing_idempotency.JOB_NAME:
        return lambda session_factory: billing_idempotency.run_stale_pending_sweep(session_factory, limit=limit)
    raise ValueError(f"unknown_job:{name}")


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> None:
    update_log_context(job=name)
    try:
        result = await runner(session_factory)
    except Exception as exc:  # noqa: BLE001
        logger.warning("job_failed", extra={"extra": {"reason": type(exc).__name__}})
        await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
    else:
        logger.info("job_complete", extra={"extra": result})
        await record_job_result(session_factory, name, success=True)
    finally:
        clear_log_context()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run scheduled billing jobs")
    parser.add_argument("--job", action="append", dest="jobs", help="Job name to run (repeatable)")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--limit", type=int, default=None, help="Maximum rows handled per job run")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    jobs = [(name, _job_runner(name, limit=args.limit)) for name in args.jobs or DEFAULT_JOBS]

    while True:
        for name, runner in jobs:
            await _run_job(name, session_factory, runner)
        await record_heartbeat(session_factory)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
