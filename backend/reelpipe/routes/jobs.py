"""
Job routes: submission, status ticks, cancellation, provider health
"""
import asyncio

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_db
from ..exceptions import RequestValidationError
from ..inference.render_provider import RenderProviderClient
from ..logger import logger
from ..models import Job, JobStatus, JobType, new_id
from ..pipeline.ai_generate import clamp_scene_count
from ..pipeline.cancel_job import cancel_job
from ..pipeline.job_status import JobStatusPoller
from ..schemas import (
    AiGenerateRequest,
    CancelJobRequest,
    CancelJobResponse,
    JobCreatedResponse,
    JobSnapshot,
    MergeMediaRequest,
    ProviderHealthResponse,
)
from ..services.rate_limit import RateLimiter
from ..services.storage import BlobStorage
from ..tasks import ai_generate_task

router = APIRouter(tags=["Jobs"])


def get_render_client() -> RenderProviderClient:
    return RenderProviderClient()


def get_storage() -> BlobStorage:
    return BlobStorage()


def requester_key(request: Request) -> str:
    explicit = request.headers.get("X-Requester-Id")
    if explicit:
        return explicit.strip()[:200]
    return request.client.host if request.client else "anonymous"


def enqueue_pipeline(job_id: str) -> None:
    try:
        ai_generate_task.apply_async(args=(job_id,), queue="pipeline")
    except Exception:
        ai_generate_task.delay(job_id)


async def _create_job(db: AsyncSession, job_type: str, input_data: dict, callback_url=None) -> Job:
    job = Job(
        id=new_id(),
        type=job_type,
        status=JobStatus.PENDING,
        progress=0,
        callback_url=callback_url,
        input_data=input_data,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    logger.info(f"Job created: {job.id}", extra={"job_id": job.id, "job_type": job_type})

    enqueue_pipeline(job.id)
    return job


@router.post("/jobs", response_model=JobCreatedResponse, status_code=201)
async def create_ai_generate_job(
    payload: AiGenerateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Submit a text-to-video job"""
    await RateLimiter(db).hit(requester_key(request))

    input_data = {
        "title": payload.title.strip(),
        "description": payload.description.strip(),
        "voice_type": payload.voice_type,
        "scene_count": clamp_scene_count(payload.scene_count),
        "duration": payload.duration,
    }
    job = await _create_job(db, JobType.AI_GENERATE, input_data, payload.callback_url)
    return JobCreatedResponse(job_id=job.id, status=job.status, type=job.type)


@router.post("/merge-media", response_model=JobCreatedResponse, status_code=201)
async def create_merge_job(
    payload: MergeMediaRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Submit a merge of caller-supplied images/videos with an audio track"""
    images = [u.strip() for u in payload.images if u and u.strip()]
    videos = [u.strip() for u in payload.videos if u and u.strip()]
    if not images and not videos:
        raise RequestValidationError("At least one image or video URL is required")

    await RateLimiter(db).hit(requester_key(request))

    input_data = {
        "images": images,
        "videos": videos,
        "audio": payload.audio.strip(),
        "output_format": payload.output_format,
    }
    job = await _create_job(db, JobType.MERGE, input_data, payload.callback_url)
    return JobCreatedResponse(job_id=job.id, status=job.status, type=job.type)


@router.get("/job-status/{job_id}", response_model=JobSnapshot)
async def get_job_status(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    render: RenderProviderClient = Depends(get_render_client),
    storage: BlobStorage = Depends(get_storage),
):
    """One poll tick: advance the merge if needed and return the job snapshot"""
    return await JobStatusPoller(db, render, storage).poll(job_id)


@router.post("/cancel-job", response_model=CancelJobResponse)
async def cancel(payload: CancelJobRequest, db: AsyncSession = Depends(get_db)):
    job_id = payload.resolved_id()
    if not job_id:
        raise RequestValidationError("job_id is required")
    return await cancel_job(db, job_id)


@router.get("/provider/health", response_model=ProviderHealthResponse)
async def provider_health(render: RenderProviderClient = Depends(get_render_client)):
    health = await asyncio.to_thread(render.health_check)
    return health.to_dict()
