"""Entry point for the enrichment pipeline FastAPI application."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from app.config import AppConfig, load_config
from app.db import init_db
from app.logging import configure_logging, get_logger
from app.logging_events import log_event
from app.middleware import install_middleware
from app.orchestrator.bootstrap import PipelineRuntime, build_pipeline_service
from app.routers import pipeline_router

logger = get_logger(__name__)
_LIVE_HEALTH_PATH = "/live"

RuntimeFactory = Callable[[AppConfig], PipelineRuntime]


def _attach_runtime(app: FastAPI, runtime: PipelineRuntime) -> None:
    app.state.pipeline_runtime = runtime
    app.state.pipeline_service = runtime.service


def create_app(
    config: AppConfig | None = None,
    *,
    runtime: PipelineRuntime | None = None,
    runtime_factory: RuntimeFactory = build_pipeline_service,
) -> FastAPI:
    """Build the application; ``runtime`` skips the default wiring (used by tests)."""

    app_config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(app_config.logging.level, app_config.logging.log_file)
        init_db()
        active = getattr(app.state, "pipeline_runtime", None)
        if active is None:
            active = runtime_factory(app_config)
            _attach_runtime(app, active)
        active.service.ensure_workers()
        watchdog_started = False
        if app_config.watchdog_enabled:
            watchdog_started = await active.watchdog.start()
        log_event(
            logger,
            "app.startup",
            component="main",
            status="ok",
            watchdog=watchdog_started,
            catalog_sync=active.catalog_sync is not None,
        )
        try:
            yield
        finally:
            await active.watchdog.stop()
            await active.service.shutdown(wait=True)
            log_event(logger, "app.shutdown", component="main", status="ok")

    app = FastAPI(title="Navimuse Pipeline", version="1.0.0", lifespan=lifespan)
    app.state.config_snapshot = app_config
    app.state.start_time = datetime.now(UTC)
    if runtime is not None:
        _attach_runtime(app, runtime)

    install_middleware(app)
    app.include_router(pipeline_router)

    @app.get(_LIVE_HEALTH_PATH, include_in_schema=False)
    async def live_probe() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


__all__ = ["app", "create_app"]
