# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.config.settings import settings
from app.jobs.wait_resumer import schedule_wait_resumes

# Configure basic logging for this service
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s')
logger = logging.getLogger("SchedulerService")

async def main() -> bool:
    # the in-memory store lives inside the web process, which runs its own wait job
    if settings.session_backend != "mongo":
        logger.error(
            f"Standalone scheduler needs a shared session store; SESSION_BACKEND is '{settings.session_backend}'. "
            "Waits are resumed by the web process instead."
        )
        return False

    scheduler = AsyncIOScheduler(timezone=settings.timezone)
    schedule_wait_resumes(scheduler)

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
    return True

if __name__ == "__main__":
    asyncio.run(main())
