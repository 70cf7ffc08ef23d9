"""
Job status poller: one call = one tick.

Clients call this on a fixed interval. Each call reads the latest persisted state,
makes at most one round trip to the render provider to move the merge forward,
and returns the full job snapshot the dashboard renders.
"""
from __future__ import annotations

import asyncio
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import JobNotFoundError
from ..inference.render_provider import (
    MERGE_COMPLETED,
    MERGE_FAILED,
    MERGE_PROCESSING,
    ProviderHealth,
    RenderProviderClient,
)
from ..logger import logger
from ..models import Job, JobStatus, JobStep, StepStatus, utcnow
from ..services import merge_state
from ..services.job_store import JobStore
from ..services.pipelines import MERGE, PROGRESS_MERGE_STARTED, PUBLISHING, render_progress
from ..services.storage import BlobStorage
from .cancel_job import is_cancelled


class RenderUnavailable(Exception):
    """The provider could not be asked about the render this tick."""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def format_step_log(step: JobStep) -> Dict[str, Any]:
    duration_ms = None
    if step.started_at and step.completed_at:
        duration_ms = int((step.completed_at - step.started_at).total_seconds() * 1000)

    if step.status == StepStatus.PENDING:
        message = f"{step.step_name}: waiting to start"
    elif step.status == StepStatus.PROCESSING:
        message = f"{step.step_name}: running..."
    elif step.status == StepStatus.COMPLETED:
        message = f"{step.step_name}: completed"
        if duration_ms is not None:
            message += f" ({duration_ms / 1000:.1f}s)"
    elif step.status == StepStatus.FAILED:
        message = f"{step.step_name}: failed: {step.error_message or 'unknown error'}"
    else:
        message = step.step_name

    return {
        "step": step.step_name,
        "status": step.status,
        "message": message,
        "duration_ms": duration_ms,
        "started_at": _iso(step.started_at),
        "completed_at": _iso(step.completed_at),
        "output_data": step.output_data,
        "error": step.error_message or None,
    }


def build_snapshot(
    job: Job, steps: List[JobStep], is_stuck: bool = False, stuck_warning: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "job_id": job.id,
        "type": job.type,
        "status": job.status,
        "progress": job.progress,
        "output_url": job.output_url,
        "error_message": job.error_message,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "logs": [format_step_log(s) for s in steps],
        "is_stuck": is_stuck,
        "stuck_warning": stuck_warning,
        "is_complete": job.status == JobStatus.COMPLETED,
        "is_failed": job.status == JobStatus.FAILED,
        "is_cancelled": is_cancelled(job),
        "can_cancel": job.status in JobStatus.ACTIVE,
    }


def describe_health(health: ProviderHealth) -> str:
    if health.healthy:
        return f"Render provider is reachable ({health.response_time_ms} ms); the step may still be running or its worker stopped."
    if health.is_sleeping:
        return "Render provider is sleeping or starting up; it will be woken on the next merge attempt."
    return f"Render provider looks down: {health.error or 'no response'}."


class JobStatusPoller:
    def __init__(
        self,
        db: AsyncSession,
        render: RenderProviderClient,
        storage: BlobStorage,
        stuck_threshold_seconds: Optional[int] = None,
        max_consecutive_failures: Optional[int] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = JobStore(db)
        self.render = render
        self.storage = storage
        self.stuck_threshold_seconds = stuck_threshold_seconds or settings.STUCK_THRESHOLD_SECONDS
        self.max_consecutive_failures = max_consecutive_failures or settings.MAX_CONSECUTIVE_POLL_FAILURES
        self.now = now

    async def poll(self, job_id: str) -> Dict[str, Any]:
        job = await self.store.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        if job.status not in JobStatus.TERMINAL:
            merge_step = await self.store.find_step(job_id, MERGE)
            if merge_step is not None:
                try:
                    await self._advance_merge(job, merge_step)
                except Exception as e:
                    logger.error(
                        f"Merge tick crashed for job {job_id}: {e}",
                        extra={"job_id": job_id, "traceback": traceback.format_exc()},
                    )
                    await self.store.fail_job(
                        job_id, f"Internal error while rendering the video ({type(e).__name__})", merge_step.id
                    )
            job = await self.store.get_job(job_id)

        steps = await self.store.list_steps(job_id)
        is_stuck, warning = await self._detect_stuck(job, steps)
        return build_snapshot(job, steps, is_stuck, warning)

    async def _advance_merge(self, job: Job, step: JobStep) -> None:
        state = merge_state.decode(step.output_data)
        if step.status == StepStatus.PENDING and isinstance(state, merge_state.Ready):
            await self._start_merge(job, step, state)
        elif step.status == StepStatus.PROCESSING and isinstance(state, merge_state.Started) and not job.output_url:
            await self._check_merge(job, step, state)

    async def _start_merge(self, job: Job, step: JobStep, state: merge_state.Ready) -> None:
        # Only the caller that flips pending -> processing talks to the provider.
        claimed = await self.store.transition_step(
            step.id, StepStatus.PROCESSING, expected_status=StepStatus.PENDING
        )
        if not claimed:
            logger.info(f"Merge for job {job.id} already claimed by another tick", extra={"job_id": job.id})
            return

        result = await asyncio.to_thread(
            self.render.start_merge, state.images, state.videos, state.audio_url, state.output_format
        )
        if result.status == MERGE_FAILED:
            await self.store.fail_job(job.id, f"Merge failed to start: {result.error}", failed_step_id=step.id)
            return
        if result.status == MERGE_COMPLETED and result.output_url:
            await self._finalize(job, step, result.output_url, state.output_format)
            return
        if not result.job_id:
            await self.store.fail_job(job.id, "Render provider did not return a job id", failed_step_id=step.id)
            return

        await self.store.merge_step_output(step.id, merge_state.encode(merge_state.Started(result.job_id)))
        await self.store.transition_job(job.id, progress=PROGRESS_MERGE_STARTED)
        logger.info(
            f"Render started for job {job.id}",
            extra={"job_id": job.id, "provider_job_id": result.job_id},
        )

    async def _check_merge(self, job: Job, step: JobStep, state: merge_state.Started) -> None:
        try:
            result = await asyncio.to_thread(self.render.check_status, state.provider_job_id)
            if result.status == MERGE_FAILED and result.retryable:
                raise RenderUnavailable(result.error or "render status unavailable")

            if result.status == MERGE_PROCESSING:
                await self.store.transition_job(job.id, progress=max(job.progress or 0, render_progress(result.progress)))
                await self.store.merge_step_output(
                    step.id, {"consecutive_failures": 0, "provider_progress": result.progress}
                )
                return

            if result.status == MERGE_FAILED:
                await self.store.fail_job(job.id, result.error or "Render failed", failed_step_id=step.id)
                return

            output_format = str((step.output_data or {}).get("output_format") or "mp4")
            await self._finalize(job, step, result.output_url, output_format)
        except Exception as e:
            failures = state.consecutive_failures + 1
            logger.warning(
                f"Render poll failed for job {job.id} ({failures}/{self.max_consecutive_failures}): {e}",
                extra={"job_id": job.id, "provider_job_id": state.provider_job_id, "failures": failures},
            )
            if failures >= self.max_consecutive_failures:
                await self.store.fail_job(
                    job.id,
                    f"Render status check failed {failures} times in a row: {e}",
                    failed_step_id=step.id,
                )
                return
            await self.store.merge_step_output(
                step.id, {"consecutive_failures": failures, "last_poll_error": str(e)[:300]}
            )

    async def _finalize(self, job: Job, step: JobStep, provider_url: str, output_format: str = "mp4") -> None:
        """Copy the rendered file into our own storage and complete the job."""
        body = await asyncio.to_thread(self.storage.get, provider_url)
        final_url = await asyncio.to_thread(
            self.storage.put,
            settings.STORAGE_OUTPUT_BUCKET,
            f"{job.id}/final.{output_format}",
            body,
            f"video/{output_format}",
        )
        await self.store.transition_step(
            step.id,
            StepStatus.COMPLETED,
            output={**merge_state.encode(merge_state.Done(final_url)), "provider_output_url": provider_url},
        )
        if not await self.store.transition_job(job.id, JobStatus.COMPLETED, 100, output_url=final_url):
            logger.info(f"Job {job.id} was finished elsewhere; rendered file left unused", extra={"job_id": job.id})
            return

        publishing = await self.store.find_step(job.id, PUBLISHING)
        if publishing is not None and publishing.status != StepStatus.COMPLETED:
            await self.store.transition_step(publishing.id, StepStatus.COMPLETED, output={"video_url": final_url})
        logger.info(f"Job {job.id} completed", extra={"job_id": job.id, "output_url": final_url})

    async def _detect_stuck(self, job: Job, steps: List[JobStep]) -> Tuple[bool, Optional[str]]:
        """Advisory only: flags a step processing for too long and asks the provider why."""
        if job.status in JobStatus.TERMINAL:
            return False, None
        now = self.now()
        for step in steps:
            if step.status != StepStatus.PROCESSING or not step.started_at:
                continue
            elapsed = (now - step.started_at).total_seconds()
            if elapsed <= self.stuck_threshold_seconds:
                continue
            health = await asyncio.to_thread(self.render.health_check)
            minutes = int(elapsed // 60)
            warning = (
                f'Step "{step.step_name}" has been processing for {minutes} min. {describe_health(health)}'
            )
            logger.warning(warning, extra={"job_id": job.id, "step": step.step_name, "provider": health.to_dict()})
            return True, warning
        return False, None
