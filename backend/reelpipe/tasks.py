import asyncio
import traceback

from .workers import celery_app
from .db import AsyncSessionLocal, engine
from .exceptions import JobNotFoundError
from .logger import logger
from .pipeline.ai_generate import PipelineDriver
from .pipeline.context import build_services


@celery_app.task(bind=True, acks_late=True, max_retries=0)
def ai_generate_task(self, job_id: str):
    """
    Celery task that drives one job up to the merge hand-off.
    The render itself is advanced by status polls.
    """
    async def _run():
        logger.info(f"Starting pipeline for job: {job_id}", extra={"job_id": job_id})
        try:
            async with AsyncSessionLocal() as db:
                driver = PipelineDriver(db, build_services())
                result = await driver.run(job_id)
                logger.info(f"Pipeline finished for job: {job_id}", extra={"job_id": job_id, "result": result})
                return result
        except JobNotFoundError:
            logger.error(f"Job not found in database: {job_id}", extra={"job_id": job_id})
            return {"job_id": job_id, "status": None, "error": "job not found"}
        except Exception as e:
            logger.error(
                f"Pipeline task crashed for job {job_id}: {e}",
                extra={"job_id": job_id, "traceback": traceback.format_exc()},
            )
            raise
        finally:
            # Each task gets its own event loop; pooled connections must not outlive it.
            await engine.dispose()

    return asyncio.run(_run())
