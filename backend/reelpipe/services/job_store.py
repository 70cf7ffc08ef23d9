"""
Single access point for `jobs` / `job_steps` rows.

Every status change goes through a guarded UPDATE that is committed right away,
so concurrent invocations (driver, pollers, cancellation) always act on the most
recently persisted state:

- a job in a terminal state is never rewritten;
- job progress never decreases;
- a terminal step never goes back to pending/processing;
- `output_data` is merged, never replaced.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..logger import logger
from ..models import Job, JobStep, JobStatus, StepStatus, new_id, utcnow


class JobStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ----- reads -----

    async def get_job(self, job_id: str) -> Optional[Job]:
        res = await self.db.execute(
            select(Job).filter(Job.id == job_id).execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def list_steps(self, job_id: str) -> List[JobStep]:
        res = await self.db.execute(
            select(JobStep)
            .filter(JobStep.job_id == job_id)
            .order_by(JobStep.step_order, JobStep.step_name)
            .execution_options(populate_existing=True)
        )
        return list(res.scalars().all())

    async def get_step(self, step_id: str) -> Optional[JobStep]:
        res = await self.db.execute(
            select(JobStep).filter(JobStep.id == step_id).execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def find_step(self, job_id: str, step_name: str) -> Optional[JobStep]:
        res = await self.db.execute(
            select(JobStep)
            .filter(JobStep.job_id == job_id, JobStep.step_name == step_name)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    # ----- writes -----

    async def create_step(self, job_id: str, step_name: str, step_order: int) -> str:
        """
        Create a pending step, or return the id of the existing (job_id, step_name) row.
        """
        existing = await self.find_step(job_id, step_name)
        if existing:
            return existing.id

        step = JobStep(
            id=new_id(),
            job_id=job_id,
            step_name=step_name,
            step_order=step_order,
            status=StepStatus.PENDING,
        )
        self.db.add(step)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another invocation inserted the same step first.
            await self.db.rollback()
            existing = await self.find_step(job_id, step_name)
            if existing is None:
                raise
            return existing.id
        return step.id

    async def transition_step(
        self,
        step_id: str,
        status: str,
        *,
        error: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        expected_status: Optional[str] = None,
    ) -> bool:
        """
        Move a step to `status`. Returns False when the guard rejected the write
        (step missing, already terminal, or not in `expected_status`).
        """
        step = await self.get_step(step_id)
        if step is None:
            logger.warning(f"Step not found: {step_id}")
            return False
        if expected_status is not None and step.status != expected_status:
            return False
        if step.status in StepStatus.TERMINAL:
            logger.warning(
                f"Refusing to move terminal step {step.step_name} from {step.status} to {status}",
                extra={"job_id": step.job_id, "step": step.step_name},
            )
            return False

        values: Dict[str, Any] = {"status": status}
        now = utcnow()
        if status == StepStatus.PROCESSING and step.status != StepStatus.PROCESSING:
            values["started_at"] = now
        if status in StepStatus.TERMINAL:
            values["completed_at"] = now
        if error is not None:
            values["error_message"] = error
        if output is not None:
            values["output_data"] = {**(step.output_data or {}), **output}

        res = await self.db.execute(
            update(JobStep)
            .where(JobStep.id == step_id, JobStep.status == step.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return res.rowcount == 1

    async def merge_step_output(self, step_id: str, output: Dict[str, Any]) -> bool:
        """Merge keys into a non-terminal step's output_data without changing its status."""
        step = await self.get_step(step_id)
        if step is None or step.status in StepStatus.TERMINAL:
            return False
        res = await self.db.execute(
            update(JobStep)
            .where(JobStep.id == step_id, JobStep.status == step.status)
            .values(output_data={**(step.output_data or {}), **output})
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return res.rowcount == 1

    async def transition_job(
        self,
        job_id: str,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        *,
        error: Optional[str] = None,
        output_url: Optional[str] = None,
    ) -> bool:
        """
        Update a non-terminal job. Progress only moves forward; a terminal job is
        left untouched and False is returned.
        """
        values: Dict[str, Any] = {"updated_at": utcnow()}
        if status is not None:
            values["status"] = status
        if progress is not None:
            progress = max(0, min(100, int(progress)))
            values["progress"] = case((Job.progress > progress, Job.progress), else_=progress)
        if error is not None:
            values["error_message"] = error
        if output_url is not None:
            values["output_url"] = output_url

        res = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.notin_(JobStatus.TERMINAL))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if res.rowcount != 1:
            logger.info(
                f"Job {job_id} not updated (missing or terminal)",
                extra={"job_id": job_id, "requested_status": status},
            )
            return False
        return True

    async def fail_job(self, job_id: str, message: str, failed_step_id: Optional[str] = None) -> bool:
        """
        Fail a job together with the step that broke and every other step still
        processing, so nothing is left spinning in the UI.
        """
        if failed_step_id:
            await self.transition_step(failed_step_id, StepStatus.FAILED, error=message)
        await self.fail_in_flight_steps(job_id, message)
        return await self.transition_job(job_id, JobStatus.FAILED, error=message)

    async def fail_in_flight_steps(
        self, job_id: str, message: str, statuses: tuple = (StepStatus.PROCESSING,)
    ) -> int:
        res = await self.db.execute(
            update(JobStep)
            .where(JobStep.job_id == job_id, JobStep.status.in_(statuses))
            .values(status=StepStatus.FAILED, error_message=message, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return res.rowcount or 0

    async def cancel(self, job_id: str, message: str) -> Optional[datetime]:
        """
        Fail an active job and all of its pending/processing steps in one transaction.
        Returns the cancellation time, or None when the job was already terminal.
        """
        now = utcnow()
        res = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(JobStatus.ACTIVE))
            .values(status=JobStatus.FAILED, error_message=message, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await self.db.rollback()
            return None
        await self.db.execute(
            update(JobStep)
            .where(JobStep.job_id == job_id, JobStep.status.in_(StepStatus.ACTIVE))
            .values(status=StepStatus.FAILED, error_message=message, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return now
