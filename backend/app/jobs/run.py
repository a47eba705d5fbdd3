import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.domain.outbox.service import OutboxAdapters
from app.infra.db import get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics
from app.jobs import guides, outbox
from app.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("outbox-delivery", "ephemeral-guide-archive")


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: Callable[[object], Awaitable[dict[str, int]]],
) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        return result
    finally:
        clear_log_context()


def _job_runner(name: str, adapters: OutboxAdapters) -> Callable:
    if name == "outbox-delivery":
        return lambda session: outbox.run_outbox_delivery(session, adapters)
    if name == "ephemeral-guide-archive":
        return lambda session: guides.run_ephemeral_guide_archive(session, settings.default_org_id)
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run command center background jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    adapters = OutboxAdapters()

    job_names = args.jobs or list(JOB_NAMES)
    runners = [_job_runner(name, adapters) for name in job_names]

    while True:
        for name, runner in zip(job_names, runners):
            try:
                await _run_job(name, session_factory, runner)
            except Exception as exc:  # noqa: BLE001
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
