import asyncio
import contextlib
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger

from cottmv.gateway.api.v1 import routers as v1_routers
from cottmv.gateway.config import Settings, get_settings
from cottmv.gateway.db import close_db, prepare_database
from cottmv.gateway.exceptions import APIError
from cottmv.gateway.logging_config import RequestContextMiddleware, api_error_handler, unhandled_exception_handler
from cottmv.gateway.metrics import init_metrics_db, start_metrics_writer, stop_metrics_writer
from cottmv.gateway.ocr import OCRContext, OCRExtractor
from cottmv.gateway.transcode.coordinator import TranscodeCoordinator
from cottmv.gateway.transcode.eviction import CacheEvictor
from cottmv.gateway.transcode.index import CacheIndex
from cottmv.gateway.transcode.runner import FFmpegRunner, TranscodeRunner


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.dependency_overrides[get_settings]()
    assert isinstance(settings, Settings)

    if settings.metrics_db_path is not None:
        init_metrics_db(settings.metrics_db_path)
        await start_metrics_writer()

    await prepare_database(settings)

    runner: TranscodeRunner = getattr(app.state, "runner", None) or FFmpegRunner(
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        probe_timeout=settings.probe_timeout_seconds,
        kill_grace=settings.kill_grace_seconds,
    )
    if isinstance(runner, FFmpegRunner) and not await runner.check_installed():
        logger.warning(f"ffmpeg not found at {settings.ffmpeg_path!r}, transcoding will fail")

    cache_index = CacheIndex(settings.resolved_cache_index_path)
    await cache_index.open()
    await cache_index.reclaim_orphans(now=time.time(), max_age=settings.transcode_timeout_seconds)

    coordinator = TranscodeCoordinator(
        index=cache_index,
        runner=runner,
        cache_dir=settings.cache_dir,
        ttl_seconds=settings.cache_ttl_seconds,
        job_timeout_seconds=settings.transcode_timeout_seconds,
        max_concurrent=settings.max_concurrent_transcodes,
        abandon_policy=settings.abandon_policy,
    )
    evictor = CacheEvictor(
        index=cache_index,
        cache_dir=settings.cache_dir,
        is_active=coordinator.is_active,
        stray_file_age=settings.transcode_timeout_seconds,
    )

    app.state.runner = runner
    app.state.cache_index = cache_index
    app.state.coordinator = coordinator
    app.state.evictor = evictor
    app.state.ocr = OCRExtractor(
        OCRContext(
            command=settings.ocr_command,
            language=settings.ocr_language,
            timeout=settings.ocr_timeout_seconds,
            max_text_length=settings.ocr_max_text_length,
        ),
        max_concurrent=settings.ocr_max_concurrent,
    )

    cleanup_task = asyncio.create_task(
        evictor.run_periodic(
            settings.cleanup_interval_seconds, settings.cache_max_size_bytes, settings.cache_ttl_seconds
        )
    )

    yield

    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    await coordinator.shutdown()
    await cache_index.close()
    await close_db()
    await stop_metrics_writer()


def create_app(
    settings: Settings | None = None,
) -> FastAPI:
    if settings is None:
        settings = Settings()  # type: ignore

    app = FastAPI(
        title="CottMV Gateway",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for r in v1_routers:
        app.include_router(r)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
