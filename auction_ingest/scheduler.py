import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from auction_ingest.config import Settings
from auction_ingest.pipeline import PipelineRunner


logger = logging.getLogger(__name__)


def _run_scheduled_refresh(settings: Settings, session_factory: sessionmaker[Session]) -> None:
    runner = PipelineRunner(settings, session_factory)
    try:
        result = runner.refresh()
    finally:
        runner.close()

    extra = {
        "run_id": result.run_id,
        "status": result.status,
        "rows_stored": result.rows_stored,
        "sources_failed": result.sources_failed,
    }
    if result.status != "succeeded":
        logger.error("scheduled refresh did not succeed: %s", result.error, extra=extra)
        return
    logger.info("scheduled refresh completed", extra=extra)


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_scheduled_refresh,
        "interval",
        args=[settings, session_factory],
        minutes=settings.refresh_interval_minutes,
        id="refresh_sources",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info("scheduler started", extra={"refresh_interval_minutes": settings.refresh_interval_minutes})

    if run_now:
        _run_scheduled_refresh(settings, session_factory)

    scheduler.start()
