import asyncio
import logging
import sys

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tarot_engine.api.endpoints import readings
from tarot_engine.core.auth import enforce_basic_auth_for_request
from tarot_engine.core.database import build_engine, build_session_factory, init_db
from tarot_engine.core.errors import LLMDisabledError
from tarot_engine.core.settings import Settings
from tarot_engine.services.achievements import AchievementNotifier, build_achievement_sink
from tarot_engine.services.card_picker import SqlCardCatalog
from tarot_engine.services.llm.client import get_fallback_llm_client, get_llm_client
from tarot_engine.services.pipeline import CardCatalog, GenerationPipeline, TextGenerator
from tarot_engine.services.progress import ProgressBroker
from tarot_engine.services.worker import ReadingProcessor, WorkerPool

if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    except AttributeError:
        pass

logger = logging.getLogger("tarot_engine")

# cron endpoints authenticate with their own bearer secret
_BASIC_AUTH_EXEMPT = {"/health", "/api/readings/process", "/api/readings/stats"}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def build_pipeline(
    settings: Settings,
    llm: TextGenerator | None,
    catalog: CardCatalog,
    *,
    fallback_llm: TextGenerator | None = None,
) -> GenerationPipeline:
    return GenerationPipeline(
        llm,
        catalog,
        fallback_llm=fallback_llm,
        generation_timeout_s=settings.generation_timeout_s,
        analysis_timeout_s=settings.analysis_timeout_s,
        max_attempts=settings.generation_max_attempts,
        question_min_length=settings.question_min_length,
        question_max_length=settings.question_max_length,
        locale=settings.default_locale,
    )


def build_llm(settings: Settings) -> TextGenerator | None:
    if not settings.llm_configured:
        logger.warning("llm.not_configured readings will fail until LLM_API_KEY and LLM_MODEL are set")
        return None
    try:
        return get_llm_client(settings)
    except LLMDisabledError:
        logger.exception("llm.init_failed")
        return None


def build_fallback_llm(settings: Settings) -> TextGenerator | None:
    generator = get_fallback_llm_client(settings)
    if generator is not None:
        logger.info("llm.fallback_configured model=%s", settings.fallback_llm_model)
    return generator


def create_app(
    settings: Settings | None = None,
    *,
    llm: TextGenerator | None = None,
    fallback_llm: TextGenerator | None = None,
    catalog: CardCatalog | None = None,
) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(title="Tarot Reading Engine API")

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.broker = ProgressBroker()
    app.state.processor = None

    origins = settings.resolved_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.on_event("startup")
    async def startup() -> None:
        configure_logging(settings.log_level)
        if settings.basic_auth_enabled and (settings.basic_auth_username is None or settings.basic_auth_password is None):
            raise RuntimeError("Basic Auth is enabled but BASIC_AUTH_USERNAME/BASIC_AUTH_PASSWORD are not set")
        if settings.db_auto_create:
            init_db(engine)

        generator = llm if llm is not None else build_llm(settings)
        app.state.llm = generator
        backup = fallback_llm if fallback_llm is not None else build_fallback_llm(settings)
        app.state.fallback_llm = backup
        pipeline = build_pipeline(
            settings, generator, catalog or SqlCardCatalog(session_factory), fallback_llm=backup
        )
        app.state.achievements = AchievementNotifier(build_achievement_sink(settings))
        pool = WorkerPool(
            session_factory,
            pipeline,
            concurrency=settings.worker_concurrency,
            stalled_interval_s=settings.worker_stalled_interval_s,
            max_stalled_count=settings.worker_max_stalled_count,
            max_attempts=settings.worker_max_attempts,
            retry_delay_s=settings.worker_retry_delay_s,
            broker=app.state.broker,
            achievements=app.state.achievements,
            locale=settings.default_locale,
        )
        await pool.start()
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
        app.state.processor = processor
        app.state.poller = asyncio.create_task(processor.run_forever()) if settings.worker_enabled else None
        logger.info("app.started environment=%s worker_enabled=%s", settings.environment, settings.worker_enabled)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        poller = getattr(app.state, "poller", None)
        if poller is not None:
            poller.cancel()
            await asyncio.gather(poller, return_exceptions=True)
        processor = app.state.processor
        if processor is not None:
            await processor.pool.stop()
        achievements = getattr(app.state, "achievements", None)
        if achievements is not None:
            await achievements.aclose()
        for name, injected in (("llm", llm), ("fallback_llm", fallback_llm)):
            generator = getattr(app.state, name, None)
            if generator is not None and injected is None and hasattr(generator, "aclose"):
                await generator.aclose()
        engine.dispose()

    @app.middleware("http")
    async def basic_auth_middleware(request: Request, call_next):
        if request.url.path in _BASIC_AUTH_EXEMPT:
            return await call_next(request)

        if request.method == "OPTIONS":
            return await call_next(request)

        try:
            enforce_basic_auth_for_request(request, settings)
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail},
                headers=exc.headers,
            )

        return await call_next(request)

    app.include_router(readings.router, prefix="/api", tags=["readings"])

    @app.get("/health")
    async def health_check():
        processor = app.state.processor
        return {
            "status": "healthy",
            "worker": bool(processor is not None and processor.pool.running),
            "llm": app.state.settings.llm_configured or llm is not None,
        }

    return app


app = create_app()
