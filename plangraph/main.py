from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .dependencies import Runtime

logger = get_logger(name=__name__)


def create_app(settings: Settings | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level, json_output=settings.observability.json_logs)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        active = runtime or Runtime.from_settings(settings)
        async with active.lifecycle():
            app.state.runtime = active
            try:
                yield
            finally:
                app.state.runtime = None
        logger.info("runtime_stopped")

    app = FastAPI(title="PlanGraph", version="0.1.0", lifespan=app_lifespan)
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.environment}

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
