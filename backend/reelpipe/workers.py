from celery import Celery
from .config import settings

def _route_task(name, args, kwargs, options, task=None):
    """
    Route tasks to dedicated queues.

    Call sites use `.delay(...)` as a fallback when `.apply_async(..., queue=...)`
    fails. This router keeps both paths on the same queue.
    """
    if name == "reelpipe.tasks.ai_generate_task":
        return {"queue": "pipeline"}
    return None

celery_app = Celery(
    "reelpipe",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["reelpipe.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_transport_options={"visibility_timeout": 3600},
    task_routes=(_route_task,),
)
