"""Standalone reading worker: polls PENDING readings without serving HTTP.

    python run_worker.py
"""

import asyncio
import logging
import signal

from main import build_fallback_llm, build_llm, build_pipeline, configure_logging
from tarot_engine.core.database import build_engine, build_session_factory, init_db
from tarot_engine.core.settings import Settings
from tarot_engine.services.achievements import AchievementNotifier, build_achievement_sink
from tarot_engine.services.card_picker import SqlCardCatalog
from tarot_engine.services.progress import ProgressBroker
from tarot_engine.services.worker import ReadingProcessor, WorkerPool

logger = logging.getLogger("tarot_engine.worker")


async def run(settings: Settings) -> None:
    engine = build_engine(settings.database_url)
    if settings.db_auto_create:
        init_db(engine)
    session_factory = build_session_factory(engine)

    llm = build_llm(settings)
    fallback_llm = build_fallback_llm(settings)
    pipeline = build_pipeline(settings, llm, SqlCardCatalog(session_factory), fallback_llm=fallback_llm)
    achievements = AchievementNotifier(build_achievement_sink(settings))
    pool = WorkerPool(
        session_factory,
        pipeline,
        concurrency=settings.worker_concurrency,
        stalled_interval_s=settings.worker_stalled_interval_s,
        max_stalled_count=settings.worker_max_stalled_count,
        max_attempts=settings.worker_max_attempts,
        retry_delay_s=settings.worker_retry_delay_s,
        # progress has no subscribers in this process; clients poll the status endpoint
        broker=ProgressBroker(),
        achievements=achievements,
        locale=settings.default_locale,
    )
    processor = ReadingProcessor(
        session_factory,
        pool,
        batch_size=settings.worker_batch_size,
        poll_interval_s=settings.worker_poll_interval_s,
        stuck_after_s=settings.worker_stuck_after_s,
        failed_retention_days=settings.failed_retention_days,
        cleanup_interval_s=settings.cleanup_interval_s,
        locale=settings.default_locale,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    async with pool:
        poller = asyncio.create_task(processor.run_forever())
        logger.info("worker.process_started concurrency=%s", settings.worker_concurrency)
        await stop.wait()
        logger.info("worker.process_stopping")
        poller.cancel()
        await asyncio.gather(poller, return_exceptions=True)

    await achievements.aclose()
    for generator in (llm, fallback_llm):
        if generator is not None and hasattr(generator, "aclose"):
            await generator.aclose()
    engine.dispose()


def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
