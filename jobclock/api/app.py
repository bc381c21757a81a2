from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from jobclock.api.routes.admin import router as admin_router
from jobclock.api.routes.health import router as health_router
from jobclock.api.routes.jobs import router as jobs_router
from jobclock.api.routes.webhooks import router as webhooks_router
from jobclock.core.config import get_settings
from jobclock.core.logging import configure_logging
from jobclock.db.init_db import initialize_database


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")
    return app
