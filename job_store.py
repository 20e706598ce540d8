import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from database import NOT_NULL, RecordStore, utcnow

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.PARTIAL, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PARTIAL: {JobStatus.PROCESSING, JobStatus.PARTIAL, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

LOG_LEVELS = ("info", "warn", "error")


def can_transition(current: str, target: str) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def is_terminal(status: str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


class JobStore:
    """
    Tracks job status, the resumable cursor and the execution log.

    Writes are best-effort: persistence failures are logged and reported
    through the return value, never raised to the stage.
    """

    def __init__(self, records: RecordStore):
        self.records = records

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.records.select_one("jobs", {"id": job_id})

    def create_job(self, project_id: Optional[str], job_type: str = "audit",
                   config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        job = self.records.insert("jobs", {
            "project_id": project_id,
            "type": job_type,
            "status": JobStatus.QUEUED.value,
            "config": config or {},
        })
        logger.info(f"Job {job['id']} created ({job_type}) for project {project_id}")
        return job

    def create_or_get_job(self, job_id: str, project_id: Optional[str] = None,
                          job_type: str = "audit", config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fetch a job, initializing it as queued if it does not exist yet."""
        job = self.get_job(job_id)
        if job:
            return job
        self.records.upsert("jobs", {
            "id": job_id,
            "project_id": project_id,
            "type": job_type,
            "status": JobStatus.QUEUED.value,
            "config": config or {},
        }, conflict_key=["id"])
        logger.info(f"Job {job_id} initialized ({job_type})")
        return self.get_job(job_id)

    def update_status(self, job_id: str, status: str, error_message: Optional[str] = None) -> bool:
        """Move a job to ``status``; returns False when rejected or not persisted."""
        try:
            status = JobStatus(status)
            job = self.get_job(job_id)
            if not job:
                logger.warning(f"Job {job_id} not found for status update")
                return False

            if not can_transition(job["status"], status):
                logger.warning(f"Job {job_id}: rejected transition {job['status']} -> {status.value}")
                return False

            patch: Dict[str, Any] = {"status": status.value}
            now = utcnow()
            if status == JobStatus.PROCESSING and not error_message and not job.get("started_at"):
                patch["started_at"] = now
            if status in TERMINAL_STATUSES and not error_message and not job.get("completed_at"):
                patch["completed_at"] = now
            if error_message:
                patch["error_message"] = error_message

            # Guarded on the status we read so a concurrent writer cannot be overwritten
            updated = self.records.update("jobs", patch, {"id": job_id, "status": job["status"]})
            if not updated:
                logger.warning(f"Job {job_id}: status changed concurrently, {status.value} not applied")
                return False
            logger.info(f"Job {job_id} status updated to {status.value}")
            return True

        except Exception as e:
            logger.error(f"Status update error for job {job_id}: {e}")
            return False

    def reset(self, job_id: str) -> bool:
        """Put a job back to queued so it can be run again from scratch."""
        try:
            updated = self.records.update("jobs", {
                "status": JobStatus.QUEUED.value,
                "started_at": None,
                "completed_at": None,
                "error_message": None,
                "next_stage": None,
                "next_stage_payload": None,
                "next_stage_at": None,
                "next_stage_attempts": 0,
            }, {"id": job_id})
            if not updated:
                return False
            self.records.delete("job_state", {"job_id": job_id})
            logger.info(f"Job {job_id} reset to queued")
            return True
        except Exception as e:
            logger.error(f"Reset error for job {job_id}: {e}")
            return False

    def get_state(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.records.select_one("job_state", {"job_id": job_id})

    def checkpoint(self, job_id: str, cursor: Any, progress: Any = None) -> bool:
        try:
            self.records.upsert("job_state", {
                "job_id": job_id,
                "cursor": cursor,
                "batch_progress": progress,
                "updated_at": utcnow(),
            }, conflict_key=["job_id"])
            return True
        except Exception as e:
            logger.error(f"State update error for job {job_id}: {e}")
            return False

    def log(self, job_id: str, function_name: str, level: str, message: str,
            meta: Optional[Dict[str, Any]] = None) -> None:
        if level not in LOG_LEVELS:
            level = "info"
        try:
            self.records.insert("execution_logs", {
                "job_id": job_id,
                "function_name": function_name,
                "level": level,
                "message": message,
                "meta": meta or {},
            })
        except Exception as e:
            logger.error(f"Logging error for job {job_id}: {e}")

    def get_logs(self, job_id: str) -> List[Dict[str, Any]]:
        return self.records.select("execution_logs", {"job_id": job_id}, order_by="id")

    def set_next_stage(self, job_id: str, stage: str, payload: Dict[str, Any]) -> bool:
        try:
            self.records.update("jobs", {
                "next_stage": stage,
                "next_stage_payload": payload,
                "next_stage_at": utcnow(),
                "next_stage_attempts": 0,
            }, {"id": job_id})
            return True
        except Exception as e:
            logger.error(f"Could not record next stage {stage} for job {job_id}: {e}")
            return False

    def claim_stage(self, job_id: str, stage: str) -> bool:
        """Clear the pointer if it names ``stage``; True when something was claimed."""
        try:
            return bool(self.records.update("jobs", {
                "next_stage": None,
                "next_stage_payload": None,
                "next_stage_at": None,
                "next_stage_attempts": 0,
            }, {"id": job_id, "next_stage": stage}))
        except Exception as e:
            logger.error(f"Could not claim stage {stage} for job {job_id}: {e}")
            return False

    def clear_next_stage(self, job_id: str) -> None:
        self.records.update("jobs", {
            "next_stage": None,
            "next_stage_payload": None,
            "next_stage_at": None,
        }, {"id": job_id})

    def due_stages(self, grace_seconds: int) -> List[Dict[str, Any]]:
        """Jobs whose next stage was recorded more than ``grace_seconds`` ago."""
        cutoff = utcnow() - timedelta(seconds=grace_seconds)
        jobs = self.records.select("jobs", {"next_stage": NOT_NULL}, order_by="next_stage_at")
        return [job for job in jobs if job.get("next_stage_at") and job["next_stage_at"] <= cutoff]

    def record_dispatch_attempt(self, job_id: str, stage: str, seen_attempts: Optional[int]) -> bool:
        """Count one more dispatch, only if the pointer still matches what the caller read.

        False means another poller (or the stage itself) got there first.
        """
        return bool(self.records.update("jobs", {
            "next_stage_attempts": (seen_attempts or 0) + 1,
            "next_stage_at": utcnow(),
        }, {"id": job_id, "next_stage": stage, "next_stage_attempts": seen_attempts}))
