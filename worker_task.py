import redis
from rq import Queue, get_current_job
import time
import uuid
import logging
from datetime import timedelta
from typing import Dict, Optional

import httpx

from config import Settings
from database import RecordStore, create_db_engine, create_session_factory
from job_store import JobStore
from security import API_KEY_NAME

logger = logging.getLogger(__name__)

POLLER_QUEUE = "stage-poller"
POLLER_FUNCTION = "stage-poller"
POLLER_JOB_PREFIX = "stage-poll"


def poll_pending_stages(settings: Optional[Settings] = None,
                        transport: Optional[httpx.BaseTransport] = None) -> Dict[str, int]:
    """Re-dispatch stage triggers that were recorded but never claimed"""
    settings = settings or Settings()
    summary = {"dispatched": 0, "failed": 0, "abandoned": 0, "skipped": 0}

    if not settings.functions_base_url:
        logger.warning("FUNCTIONS_BASE_URL is not set; skipping stage poll")
        return summary

    start_time = time.time()
    engine = create_db_engine(settings.database_url)
    jobs = JobStore(RecordStore(create_session_factory(engine)))
    base_url = settings.functions_base_url.rstrip("/")
    headers = {"Content-Type": "application/json", API_KEY_NAME: settings.api_key}

    try:
        due = jobs.due_stages(settings.stage_dispatch_grace_seconds)
        if due:
            logger.info(f"Found {len(due)} job(s) with an unclaimed stage")

        # Generous timeout: the stage answers only after its own time budget
        with httpx.Client(timeout=settings.time_budget_seconds + 30, transport=transport) as client:
            for job in due:
                job_id = job["id"]
                stage = job["next_stage"]
                attempts = job.get("next_stage_attempts") or 0

                if attempts >= settings.stage_dispatch_max_attempts:
                    jobs.clear_next_stage(job_id)
                    jobs.log(job_id, POLLER_FUNCTION, "error",
                             f"Gave up dispatching {stage} after {attempts} attempts")
                    logger.error(f"Job {job_id}: gave up dispatching {stage}")
                    summary["abandoned"] += 1
                    continue

                if not jobs.record_dispatch_attempt(job_id, stage, job.get("next_stage_attempts")):
                    logger.info(f"Job {job_id}: {stage} was claimed elsewhere, skipping")
                    summary["skipped"] += 1
                    continue

                payload = job.get("next_stage_payload") or {"project_id": job.get("project_id"), "job_id": job_id}
                try:
                    response = client.post(f"{base_url}/{stage}", json=payload, headers=headers)
                    logger.info(f"Job {job_id}: re-dispatched {stage} (attempt {attempts + 1}) -> {response.status_code}")
                    jobs.log(job_id, POLLER_FUNCTION, "info",
                             f"Re-dispatched {stage}", {"attempt": attempts + 1, "status_code": response.status_code})
                    summary["dispatched"] += 1
                except httpx.HTTPError as e:
                    logger.error(f"Job {job_id}: failed to re-dispatch {stage}: {e}")
                    summary["failed"] += 1

        logger.info(f"Stage poll completed in {time.time() - start_time:.2f}s: {summary}")
        return summary

    finally:
        engine.dispose()


def poller_pending(queue: Queue) -> bool:
    """True when a poll is already scheduled or waiting on ``queue``."""
    job_ids = list(queue.scheduled_job_registry.get_job_ids()) + list(queue.get_job_ids())
    return any(job_id.startswith(POLLER_JOB_PREFIX) for job_id in job_ids)


def schedule_poller(queue: Queue, interval_seconds: int):
    """Enqueue the next poll after ``interval_seconds`` (needs a worker running with the scheduler).

    Returns None without enqueueing when a poll is already pending, so there
    is at most one poll chain per queue however many workers seed it.
    """
    if poller_pending(queue):
        logger.info("Stage poll already pending; not scheduling another")
        return None
    return queue.enqueue_in(timedelta(seconds=interval_seconds), run_poller,
                            job_id=f"{POLLER_JOB_PREFIX}-{uuid.uuid4().hex}")


def run_poller() -> Dict[str, int]:
    """RQ entry point: poll once, then schedule the next poll"""
    settings = Settings()
    try:
        return poll_pending_stages(settings)
    finally:
        job = get_current_job()
        if job is not None:
            queue = Queue(job.origin, connection=job.connection)
        else:
            queue = Queue(POLLER_QUEUE, connection=redis.from_url(settings.redis_url))
        schedule_poller(queue, settings.poll_interval_seconds)
