import pytest

from conftest import add_job, add_step
from reelpipe.exceptions import InvalidJobStateError, JobNotFoundError
from reelpipe.models import JobStatus, StepStatus
from reelpipe.pipeline.cancel_job import CANCELLED_MESSAGE, cancel_job, is_cancelled
from reelpipe.services.job_store import JobStore


@pytest.mark.asyncio
async def test_cancel_processing_job(db):
    job = await add_job(db, status=JobStatus.PROCESSING, progress=40)
    done = await add_step(db, job.id, "script_generation", 1, status=StepStatus.COMPLETED)
    running = await add_step(db, job.id, "image_generation", 3, status=StepStatus.PROCESSING)
    waiting = await add_step(db, job.id, "merge", 4)

    response = await cancel_job(db, job.id)

    assert response["success"] is True
    assert response["message"] == "Job cancelled successfully"
    assert response["job_id"] == job.id
    assert response["cancelled_at"]

    store = JobStore(db)
    job = await store.get_job(job.id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == CANCELLED_MESSAGE
    assert is_cancelled(job)
    assert (await store.get_step(done.id)).status == StepStatus.COMPLETED
    for step_id in (running.id, waiting.id):
        step = await store.get_step(step_id)
        assert step.status == StepStatus.FAILED
        assert step.error_message == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_cancel_completed_job_is_rejected(db):
    job = await add_job(db, status=JobStatus.COMPLETED, progress=100, output_url="https://cdn.test/final.mp4")

    with pytest.raises(InvalidJobStateError) as info:
        await cancel_job(db, job.id)

    assert info.value.status_code == 400
    assert info.value.current_state == JobStatus.COMPLETED
    job = await JobStore(db).get_job(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.output_url == "https://cdn.test/final.mp4"


@pytest.mark.asyncio
async def test_cancel_unknown_job(db):
    with pytest.raises(JobNotFoundError):
        await cancel_job(db, "missing")


@pytest.mark.asyncio
async def test_ordinary_failure_is_not_a_cancellation(db):
    job = await add_job(db, status=JobStatus.FAILED, error_message="All 3 image generations failed")
    assert not is_cancelled(job)
