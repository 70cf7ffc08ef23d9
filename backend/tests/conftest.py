import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_ENDPOINT_URL", "http://storage.test")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("STORAGE_PUBLIC_BASE_URL", "https://cdn.test")

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reelpipe.exceptions import ImageGenerationFailed
from reelpipe.inference.render_provider import MergeResult, ProviderHealth
from reelpipe.models import Base, Job, JobStatus, JobStep, new_id
from reelpipe.pipeline.context import EngineServices
from reelpipe.services.storage import public_url


@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    async with session_factory() as session:
        yield session
    await engine.dispose()


async def add_job(db, job_type="ai_generate", status=JobStatus.PENDING, progress=0, input_data=None, **kw) -> Job:
    job = Job(id=new_id(), type=job_type, status=status, progress=progress, input_data=input_data or {}, **kw)
    db.add(job)
    await db.commit()
    return job


async def add_step(db, job_id, name, order, status=JobStatus.PENDING, output_data=None, **kw) -> JobStep:
    step = JobStep(
        id=new_id(), job_id=job_id, step_name=name, step_order=order, status=status, output_data=output_data, **kw
    )
    db.add(step)
    await db.commit()
    return step


class DummyText:
    def __init__(self, prompts: Optional[List[str]] = None, script: str = "A short story about the sea."):
        self.script = script
        self.prompts = prompts
        self.calls: List[str] = []

    def generate_voiceover_script(self, title, description, duration):
        self.calls.append("script")
        return self.script

    def generate_image_prompts(self, script, count):
        self.calls.append("prompts")
        if self.prompts is not None:
            return self.prompts[:count]
        return [f"scene {i + 1}" for i in range(count)]


class DummySpeech:
    def __init__(self, audio: bytes = b"\xff" * 2048):
        self.audio = audio
        self.calls = 0

    def synthesize(self, text, voice_id):
        self.calls += 1
        return self.audio


class DummyImages:
    """Fails for every prompt listed in `fail`."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.prompts: List[str] = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        if prompt in self.fail:
            raise ImageGenerationFailed(prompt, ["attempt 1: HTTP 500"])
        return b"\x89PNG" + b"\x00" * 5000


class DummyStorage:
    def __init__(self, download: bytes = b"video-bytes"):
        self.objects: Dict[str, bytes] = {}
        self.download = download
        self.downloads: List[str] = []

    def put(self, bucket, key, body, content_type):
        self.objects[f"{bucket}/{key}"] = body
        return public_url(bucket, key)

    def get(self, url):
        self.downloads.append(url)
        return self.download


class DummyRender:
    def __init__(
        self,
        start: Optional[MergeResult] = None,
        statuses: Optional[List[Any]] = None,
        health: Optional[ProviderHealth] = None,
    ):
        self.start = start or MergeResult("processing", job_id="abc")
        self.statuses = list(statuses or [])
        self.health = health or ProviderHealth(True, False, 200, 12)
        self.start_calls: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.health_calls = 0

    def start_merge(self, images, videos, audio_url, output_format="mp4"):
        self.start_calls.append(
            {"images": images, "videos": videos, "audio_url": audio_url, "output_format": output_format}
        )
        return self.start

    def check_status(self, job_id):
        self.status_calls.append(job_id)
        result = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(result, Exception):
            raise result
        return result

    def health_check(self):
        self.health_calls += 1
        return self.health


@pytest.fixture
def services():
    return EngineServices(
        text=DummyText(),
        speech=DummySpeech(),
        images=DummyImages(),
        storage=DummyStorage(),
        render=DummyRender(),
    )
