import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quota_ledger.infra.db import dispose_engine, get_session_factory
from quota_ledger.infra.logging import clear_log_context, configure_logging, update_log_context
from quota_ledger.infra.metrics import configure_metrics, metrics
from quota_ledger.jobs import storage_quota
from quota_ledger.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[AsyncSession], Awaitable[dict[str, int]]]

DEFAULT_JOBS = ["storage-quota-sweep"]


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        metrics.record_job_success(name, datetime.now(tz=timezone.utc).timestamp())
        return result
    finally:
        clear_log_context()


def _job_runner(name: str, *, fix: bool | None = None) -> JobRunner:
    if name == "storage-quota-sweep":
        return lambda session: storage_quota.run_storage_quota_sweep(session)
    if name == "storage-quota-reconcile":
        return lambda session: storage_quota.run_storage_quota_reconciliation(session, fix=fix)
    raise ValueError(f"unknown_job:{name}")


async def run_jobs_once(
    session_factory: async_sessionmaker,
    job_names: list[str],
    *,
    fix: bool | None = None,
) -> dict[str, str]:
    outcomes: dict[str, str] = {}
    for name in job_names:
        runner = _job_runner(name, fix=fix)
        try:
            await _run_job(name, session_factory, runner)
            outcomes[name] = "ok"
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            metrics.record_job_error(name, type(exc).__name__)
            outcomes[name] = "error"
    return outcomes


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run storage quota maintenance jobs")
    parser.add_argument(
        "--job",
        action="append",
        dest="jobs",
        choices=["storage-quota-sweep", "storage-quota-reconcile"],
        help="Job name to run (repeatable)",
    )
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    parser.add_argument(
        "--fix",
        action="store_true",
        default=None,
        help="Let reconciliation overwrite drifted usage counters",
    )
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    job_names = args.jobs or DEFAULT_JOBS

    try:
        while True:
            await run_jobs_once(session_factory, job_names, fix=args.fix)
            if args.once:
                break
            await asyncio.sleep(args.interval)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
