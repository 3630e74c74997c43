from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .config import get_settings
from .db import SessionLocal, init_db
from .logging_setup import setup_logging
from .routers import api_admin, api_gateway
from .sweep import configure_sweep_job
from .version import APP_VERSION


settings = get_settings()

setup_logging(level=settings.logging.level, log_dir=settings.logging.dir, file_enabled=settings.logging.file_enabled)
logger = logging.getLogger("taskbridge")


app = FastAPI(title=settings.app.name, version=APP_VERSION)

app.include_router(api_gateway.router, prefix="/api", tags=["gateway"])
app.include_router(api_admin.router, prefix="/api/admin", tags=["admin"])


scheduler: BackgroundScheduler | None = None


@app.on_event("startup")
def on_startup() -> None:
    global scheduler

    init_db()

    scheduler = BackgroundScheduler(timezone=settings.app.timezone)
    try:
        configure_sweep_job(scheduler, settings, session_factory=SessionLocal)
    except Exception:
        logger.exception("Failed to configure the recurrence sweep job")

    app.state.scheduler = scheduler
    app.state.configure_sweep_job = lambda: configure_sweep_job(scheduler, settings, session_factory=SessionLocal)
    scheduler.start()
    logger.info("%s %s started", settings.app.name, APP_VERSION)


@app.on_event("shutdown")
def on_shutdown() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"status": "ok", "version": APP_VERSION}
