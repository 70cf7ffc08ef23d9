from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


STAGE_READY = "ready"
STAGE_STARTED = "started"
STAGE_DONE = "done"

PROVIDER_NAME = "ffmpeg-space"


@dataclass(frozen=True)
class Unstaged:
    """Merge inputs have not been handed off yet."""


@dataclass(frozen=True)
class Ready:
    images: List[str]
    audio_url: str
    videos: List[str] = field(default_factory=list)
    output_format: str = "mp4"


@dataclass(frozen=True)
class Started:
    provider_job_id: str
    consecutive_failures: int = 0


@dataclass(frozen=True)
class Done:
    output_url: str


MergeStageState = Union[Unstaged, Ready, Started, Done]


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


def decode(output_data: Optional[Dict[str, Any]]) -> MergeStageState:
    """
    Read the merge step's persisted continuation state.

    Rows written before the explicit `stage` key existed are recognised by their
    flags: `provider_job_id` means started, `ready_for_merge` means ready.
    Anything unusable decodes to `Unstaged`.
    """
    data = output_data if isinstance(output_data, dict) else {}
    stage = data.get("stage")

    output_url = data.get("output_url")
    if stage == STAGE_DONE and isinstance(output_url, str) and output_url:
        return Done(output_url=output_url)

    provider_job_id = data.get("provider_job_id")
    if stage in (STAGE_STARTED, None, "queued") and isinstance(provider_job_id, str) and provider_job_id:
        try:
            failures = max(0, int(data.get("consecutive_failures") or 0))
        except (TypeError, ValueError):
            failures = 0
        return Started(provider_job_id=provider_job_id, consecutive_failures=failures)

    if stage in (STAGE_READY, None) and data.get("ready_for_merge"):
        images = _str_list(data.get("images") or data.get("image_urls"))
        videos = _str_list(data.get("videos"))
        audio_url = data.get("audio_url") or data.get("audio")
        if isinstance(audio_url, str) and audio_url and (images or videos):
            return Ready(
                images=images,
                videos=videos,
                audio_url=audio_url,
                output_format=str(data.get("output_format") or "mp4"),
            )

    return Unstaged()


def encode(state: MergeStageState) -> Dict[str, Any]:
    """
    Serialize a state into the keys merged into `output_data`.

    Keys of the other variants are reset explicitly so a merge-update never
    leaves a stale flag behind.
    """
    if isinstance(state, Ready):
        return {
            "stage": STAGE_READY,
            "ready_for_merge": True,
            "images": list(state.images),
            "videos": list(state.videos),
            "audio_url": state.audio_url,
            "output_format": state.output_format,
        }
    if isinstance(state, Started):
        return {
            "stage": STAGE_STARTED,
            "ready_for_merge": False,
            "provider": PROVIDER_NAME,
            "provider_job_id": state.provider_job_id,
            "consecutive_failures": state.consecutive_failures,
        }
    if isinstance(state, Done):
        return {
            "stage": STAGE_DONE,
            "ready_for_merge": False,
            "output_url": state.output_url,
        }
    return {"ready_for_merge": False}
