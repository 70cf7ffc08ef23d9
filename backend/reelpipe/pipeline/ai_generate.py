"""
One-shot pipeline driver, run once per submitted job.

It walks the job type's step plan in order (script -> voice -> images for
`ai_generate`), then stages the merge inputs on the merge step and returns.
Starting and polling the render is left to the job-status poller, because a
render can outlive this invocation.
"""
from __future__ import annotations

import asyncio
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import JobNotFoundError, ReelPipeBaseException
from ..inference.speech import voice_id_for
from ..logger import logger
from ..models import Job, JobStatus, JobType, StepStatus
from ..services import merge_state
from ..services.job_store import JobStore
from ..services.pipelines import (
    IMAGE_GENERATION,
    MERGE,
    PROGRESS_IMAGES_START,
    PROGRESS_SCRIPT_DONE,
    PROGRESS_STARTED,
    PROGRESS_VOICE_DONE,
    SCRIPT_GENERATION,
    VOICE_GENERATION,
    PipelineDefinition,
    image_progress,
    pipeline_for,
)
from .context import EngineServices


class JobNoLongerActive(Exception):
    """The job was cancelled or finished by someone else while we were working."""


class StepFailed(Exception):
    """An expected, unrecoverable failure of the current step."""


StepHandler = Callable[[Job, Dict[str, Any]], Awaitable[Tuple[Dict[str, Any], Optional[int]]]]


def clamp_scene_count(value: Any, maximum: Optional[int] = None) -> int:
    maximum = maximum or settings.MAX_SCENE_COUNT
    try:
        count = int(value)
    except (TypeError, ValueError):
        count = 3
    return max(1, min(count, maximum))


class PipelineDriver:
    def __init__(self, db: AsyncSession, services: EngineServices, batch_size: Optional[int] = None):
        self.store = JobStore(db)
        self.services = services
        self.batch_size = max(1, batch_size or settings.IMAGE_BATCH_SIZE)
        self._handlers: Dict[str, StepHandler] = {
            SCRIPT_GENERATION: self._generate_script,
            VOICE_GENERATION: self._generate_voice,
            IMAGE_GENERATION: self._generate_images,
        }

    async def run(self, job_id: str) -> Dict[str, Any]:
        """
        Drive `job_id` up to the merge hand-off. Unexpected errors end here and
        fail the job with a generic message.
        """
        try:
            return await self._run(job_id)
        except JobNoLongerActive as e:
            logger.info(f"Job {job_id} stopped: {e}", extra={"job_id": job_id})
            job = await self.store.get_job(job_id)
            return {"job_id": job_id, "status": job.status if job else None}
        except JobNotFoundError:
            raise
        except Exception as e:
            logger.error(
                f"Pipeline crashed for job {job_id}: {e}",
                extra={"job_id": job_id, "error": str(e), "traceback": traceback.format_exc()},
            )
            message = f"Internal error while generating the video ({type(e).__name__})"
            await self.store.fail_job(job_id, message)
            return {"job_id": job_id, "status": JobStatus.FAILED, "error": message}

    async def _run(self, job_id: str) -> Dict[str, Any]:
        job = await self.store.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        if job.status in JobStatus.TERMINAL:
            logger.info(f"Job {job_id} already {job.status}, nothing to do", extra={"job_id": job_id})
            return {"job_id": job_id, "status": job.status}

        try:
            definition = pipeline_for(job.type)
        except ValueError as e:
            await self.store.fail_job(job_id, str(e))
            return {"job_id": job_id, "status": JobStatus.FAILED, "error": str(e)}

        step_ids = {}
        for name in definition.steps:
            step_ids[name] = await self.store.create_step(job_id, name, definition.step_order(name))
        logger.info(f"Steps ready for job {job_id}", extra={"job_id": job_id, "steps": list(definition.steps)})

        if not await self.store.transition_job(job_id, JobStatus.PROCESSING, PROGRESS_STARTED):
            raise JobNoLongerActive("job is terminal before start")

        outputs: Dict[str, Any] = {}
        for name in definition.generation_steps():
            error = await self._run_step(job, name, step_ids[name], outputs)
            if error:
                return {"job_id": job_id, "status": JobStatus.FAILED, "error": error}

        return await self._stage_merge(job, definition, step_ids[MERGE], outputs)

    async def _ensure_active(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if not job or job.status in JobStatus.TERMINAL:
            raise JobNoLongerActive(job.error_message if job else "job disappeared")
        return job

    async def _run_step(self, job: Job, name: str, step_id: str, outputs: Dict[str, Any]) -> Optional[str]:
        step = await self.store.get_step(step_id)
        if step and step.status == StepStatus.COMPLETED:
            # Re-invocation: reuse what an earlier run produced.
            outputs.update(step.output_data or {})
            logger.info(f"Step {name} already completed, reusing output", extra={"job_id": job.id, "step": name})
            return None

        await self._ensure_active(job.id)
        if not await self.store.transition_step(step_id, StepStatus.PROCESSING):
            await self._ensure_active(job.id)
            raise JobNoLongerActive(f"step {name} is no longer runnable")

        logger.info(f"Step {name} started", extra={"job_id": job.id, "step": name})
        try:
            output, checkpoint = await self._handlers[name](job, outputs)
        except (StepFailed, ReelPipeBaseException) as e:
            message = getattr(e, "message", None) or str(e)
            logger.error(f"Step {name} failed for job {job.id}: {message}", extra={"job_id": job.id, "step": name})
            await self.store.fail_job(job.id, message, failed_step_id=step_id)
            return message

        await self.store.transition_step(step_id, StepStatus.COMPLETED, output=output)
        outputs.update(output)
        if checkpoint is not None:
            await self.store.transition_job(job.id, progress=checkpoint)
        logger.info(f"Step {name} completed", extra={"job_id": job.id, "step": name})
        return None

    # ----- steps -----

    async def _generate_script(self, job: Job, outputs: Dict[str, Any]):
        data = job.input_data or {}
        script = await asyncio.to_thread(
            self.services.text.generate_voiceover_script,
            str(data.get("title") or ""),
            str(data.get("description") or ""),
            int(data.get("duration") or 60),
        )
        return {"script": script}, PROGRESS_SCRIPT_DONE

    async def _generate_voice(self, job: Job, outputs: Dict[str, Any]):
        script = outputs.get("script")
        if not script:
            raise StepFailed("Voice generation needs a script")
        voice_id = voice_id_for((job.input_data or {}).get("voice_type"))
        audio = await asyncio.to_thread(self.services.speech.synthesize, script, voice_id)
        if not audio:
            raise StepFailed("Voice generation returned no audio")
        audio_url = await asyncio.to_thread(
            self.services.storage.put, settings.STORAGE_TEMP_BUCKET, f"{job.id}/audio.mp3", audio, "audio/mpeg"
        )
        return {"audio_url": audio_url, "voice_id": voice_id}, PROGRESS_VOICE_DONE

    async def _render_image(self, job_id: str, index: int, prompt: str) -> str:
        body = await self.services.images.generate(prompt)
        return await asyncio.to_thread(
            self.services.storage.put, settings.STORAGE_TEMP_BUCKET, f"{job_id}/image_{index}.jpg", body, "image/jpeg"
        )

    async def _generate_images(self, job: Job, outputs: Dict[str, Any]):
        script = outputs.get("script")
        if not script:
            raise StepFailed("Image generation needs a script")
        count = clamp_scene_count((job.input_data or {}).get("scene_count"))
        prompts = await asyncio.to_thread(self.services.text.generate_image_prompts, script, count)
        if not prompts:
            raise StepFailed("No image prompts were generated")
        await self.store.transition_job(job.id, progress=PROGRESS_IMAGES_START)

        urls: Dict[int, str] = {}
        failed: List[int] = []
        for start in range(0, len(prompts), self.batch_size):
            await self._ensure_active(job.id)
            batch = list(enumerate(prompts[start:start + self.batch_size], start=start))
            results = await asyncio.gather(
                *(self._render_image(job.id, index, prompt) for index, prompt in batch),
                return_exceptions=True,
            )
            for (index, _prompt), result in zip(batch, results):
                if isinstance(result, BaseException):
                    failed.append(index)
                    logger.warning(
                        f"Image {index + 1}/{len(prompts)} failed: {result}",
                        extra={"job_id": job.id, "slot": index},
                    )
                else:
                    urls[index] = result
            done = min(start + self.batch_size, len(prompts))
            await self.store.transition_job(job.id, progress=image_progress(done, len(prompts)))

        if not urls:
            raise StepFailed(f"All {len(prompts)} image generations failed")

        image_urls = [urls[i] for i in sorted(urls)]
        logger.info(
            f"Images generated for job {job.id}: {len(image_urls)}/{len(prompts)}",
            extra={"job_id": job.id, "generated": len(image_urls), "requested": len(prompts)},
        )
        output = {
            "image_urls": image_urls,
            "generated": len(image_urls),
            "requested": len(prompts),
            "failed_slots": sorted(failed),
        }
        return output, None

    # ----- merge hand-off -----

    def _merge_inputs(self, job: Job, outputs: Dict[str, Any]) -> merge_state.Ready:
        if job.type == JobType.MERGE:
            data = job.input_data or {}
            images = [u for u in (data.get("images") or []) if isinstance(u, str) and u]
            videos = [u for u in (data.get("videos") or []) if isinstance(u, str) and u]
            audio_url = data.get("audio") or data.get("audio_url") or ""
            output_format = str(data.get("output_format") or "mp4")
        else:
            images = list(outputs.get("image_urls") or [])
            videos = []
            audio_url = outputs.get("audio_url") or ""
            output_format = "mp4"
        if not audio_url:
            raise StepFailed("Merge needs an audio URL")
        if not images and not videos:
            raise StepFailed("Merge needs at least one image or video")
        return merge_state.Ready(images=images, videos=videos, audio_url=audio_url, output_format=output_format)

    async def _stage_merge(
        self, job: Job, definition: PipelineDefinition, merge_step_id: str, outputs: Dict[str, Any]
    ) -> Dict[str, Any]:
        await self._ensure_active(job.id)
        step = await self.store.get_step(merge_step_id)
        if step is None or step.status != StepStatus.PENDING or not isinstance(
            merge_state.decode(step.output_data), merge_state.Unstaged
        ):
            logger.info(f"Merge for job {job.id} already staged or running", extra={"job_id": job.id})
            return {"job_id": job.id, "status": JobStatus.PROCESSING, "stage": "merge_staged"}

        try:
            ready = self._merge_inputs(job, outputs)
        except StepFailed as e:
            await self.store.fail_job(job.id, str(e), failed_step_id=merge_step_id)
            return {"job_id": job.id, "status": JobStatus.FAILED, "error": str(e)}

        if not await self.store.merge_step_output(merge_step_id, merge_state.encode(ready)):
            await self._ensure_active(job.id)
        await self.store.transition_job(job.id, progress=definition.staged_progress)
        logger.info(
            f"Merge staged for job {job.id}",
            extra={"job_id": job.id, "images": len(ready.images), "videos": len(ready.videos)},
        )
        return {"job_id": job.id, "status": JobStatus.PROCESSING, "stage": "merge_staged"}
