# /app/jobs/wait_resumer.py

"""
Wait Resume Job.

Finds sessions parked at a wait step whose resume time has passed and hands
each one to the runtime. Resuming is idempotent, so overlapping runs of this
job (or several scheduler processes) cannot advance a session twice: the
second attempt sees the session has moved on and is dropped as stale.
"""

from datetime import datetime, timezone
from typing import Dict, Optional
import logging

from app.config.settings import settings
from app.services.flow_runtime import flow_runtime
from app.services.session_store import session_store

logger = logging.getLogger(__name__)

WAIT_RESUME_JOB_ID = "wait_resume_job"


async def resume_due_waits(now: Optional[datetime] = None, runtime=None, store=None) -> Dict[str, int]:
    """
    Resume every due wait.

    Args:
        now: Reference time; defaults to the current UTC time

    Returns:
        Count of resume outcomes by status, e.g. {"resumed": 2, "stale": 1}
    """
    now = now or datetime.now(timezone.utc)
    runtime = runtime or flow_runtime
    store = store or session_store

    due = await store.due_waits(now)
    summary: Dict[str, int] = {}

    for session in due:
        try:
            outcome = await runtime.resume_wait(session.session_id, now)
            status = outcome["status"]
        except Exception as e:
            logger.error(f"Failed to resume session {session.session_id}: {e}", exc_info=True)
            status = "error"
        summary[status] = summary.get(status, 0) + 1

    if due:
        logger.info(f"Wait resume job processed {len(due)} sessions: {summary}")
    return summary


def schedule_wait_resumes(scheduler) -> None:
    """Register the wait resume job on an APScheduler scheduler."""
    scheduler.add_job(
        resume_due_waits,
        'interval',
        seconds=settings.wait_poll_seconds,
        id=WAIT_RESUME_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: resume_due_waits (every {settings.wait_poll_seconds} seconds).")
