# /app/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.utils.logging import setup_logging
from app.utils.alerting import alerting_service
from app.services.whatsapp_service import whatsapp_service
from app.services.notification_service import notification_service
from app.config.settings import settings
from app.jobs.wait_resumer import schedule_wait_resumes

# This file manages the application's lifespan: logging, database indexes and
# (with the in-memory session store) the wait resume job on startup, closing
# HTTP clients and the Mongo connection on shutdown.

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info(f"Flow runtime starting up (session backend: {settings.session_backend})...")

    if settings.session_backend == "mongo":
        from app.services.db_service import db_service
        await db_service.create_indexes()

    app.state.wait_scheduler = None
    if settings.session_backend == "memory":
        # sessions only exist in this process, so the wait job has to run here too
        scheduler = AsyncIOScheduler(timezone=settings.timezone)
        schedule_wait_resumes(scheduler)
        scheduler.start()
        app.state.wait_scheduler = scheduler

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    if app.state.wait_scheduler is not None:
        app.state.wait_scheduler.shutdown(wait=False)

    await whatsapp_service.cleanup()
    await notification_service.cleanup()
    await alerting_service.cleanup()
    if settings.session_backend == "mongo":
        from app.services.db_service import db_service
        db_service.client.close()
