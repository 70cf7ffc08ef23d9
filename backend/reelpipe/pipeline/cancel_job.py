from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import InvalidJobStateError, JobNotFoundError
from ..logger import logger
from ..models import Job, JobStatus
from ..services.job_store import JobStore

CANCELLED_MESSAGE = "Cancelled by user"


def is_cancelled(job: Optional[Job]) -> bool:
    return bool(job) and job.status == JobStatus.FAILED and job.error_message == CANCELLED_MESSAGE


async def cancel_job(db: AsyncSession, job_id: str) -> Dict[str, Any]:
    """
    Fail an active job and its pending/processing steps with the cancellation
    sentinel. Completed or failed jobs are rejected and left untouched.
    """
    store = JobStore(db)
    job = await store.get_job(job_id)
    if not job:
        raise JobNotFoundError(job_id)
    if job.status in JobStatus.TERMINAL:
        raise InvalidJobStateError(job_id, job.status, "pending or processing")

    cancelled_at = await store.cancel(job_id, CANCELLED_MESSAGE)
    if cancelled_at is None:
        # Finished between the read and the guarded update.
        job = await store.get_job(job_id)
        raise InvalidJobStateError(job_id, job.status if job else "missing", "pending or processing")

    logger.info(f"Job {job_id} cancelled by user", extra={"job_id": job_id})
    return {
        "success": True,
        "message": "Job cancelled successfully",
        "job_id": job_id,
        "cancelled_at": cancelled_at.isoformat(),
    }
