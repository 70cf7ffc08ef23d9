from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..models import JobType

SCRIPT_GENERATION = "script_generation"
VOICE_GENERATION = "voice_generation"
IMAGE_GENERATION = "image_generation"
MERGE = "merge"
PUBLISHING = "publishing"

# Job progress checkpoints.
PROGRESS_STARTED = 5
PROGRESS_SCRIPT_DONE = 15
PROGRESS_VOICE_DONE = 35
PROGRESS_IMAGES_START = 40
PROGRESS_IMAGES_END = 70
PROGRESS_MERGE_STAGED = 72
PROGRESS_MERGE_STARTED = 78
PROGRESS_RENDER_FLOOR = 75
PROGRESS_RENDER_CEILING = 89


@dataclass(frozen=True)
class PipelineDefinition:
    """Fixed, ordered step plan for one job type."""

    job_type: str
    steps: Tuple[str, ...]
    staged_progress: int

    def step_order(self, step_name: str) -> int:
        return self.steps.index(step_name) + 1

    def generation_steps(self) -> List[str]:
        """Steps the driver runs itself, before handing the merge to the poller."""
        return list(self.steps[: self.steps.index(MERGE)])


PIPELINES: Dict[str, PipelineDefinition] = {
    JobType.AI_GENERATE: PipelineDefinition(
        job_type=JobType.AI_GENERATE,
        steps=(SCRIPT_GENERATION, VOICE_GENERATION, IMAGE_GENERATION, MERGE, PUBLISHING),
        staged_progress=PROGRESS_MERGE_STAGED,
    ),
    JobType.MERGE: PipelineDefinition(
        job_type=JobType.MERGE,
        steps=(MERGE, PUBLISHING),
        staged_progress=10,
    ),
}


def pipeline_for(job_type: Optional[str]) -> PipelineDefinition:
    try:
        return PIPELINES[job_type]
    except KeyError:
        raise ValueError(f"Unknown job type: {job_type}")


def render_progress(provider_progress: int) -> int:
    """Map provider progress 0-100 onto the job's render band."""
    provider_progress = max(0, min(100, int(provider_progress)))
    span = PROGRESS_RENDER_CEILING - PROGRESS_RENDER_FLOOR
    return PROGRESS_RENDER_FLOOR + round(span * provider_progress / 100)


def image_progress(done: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_IMAGES_START
    span = PROGRESS_IMAGES_END - PROGRESS_IMAGES_START
    return PROGRESS_IMAGES_START + int(span * done / total)
