from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.config import get_settings
from .core.logging import configure_logging, get_logger
from .dependencies import get_coordinator_singleton
from .orchestration.runner import CoordinationRunner

settings = get_settings()
configure_logging(settings.observability.log_level)
logger = get_logger(name=__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    runner: CoordinationRunner | None = None
    if settings.runner.enabled:
        runner = CoordinationRunner.from_settings(get_coordinator_singleton(settings), settings)
        await runner.start()
        app.state.coordination_runner = runner
    try:
        yield
    finally:
        if runner is not None:
            await runner.stop()


app = FastAPI(title="Campaign Mesh", version="0.1.0", lifespan=app_lifespan)
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/", tags=["health"])
async def root() -> dict[str, str]:
    return {"message": "Campaign mesh running"}


if settings.observability.prometheus_enabled:

    @app.get("/metrics", tags=["observability"])
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
