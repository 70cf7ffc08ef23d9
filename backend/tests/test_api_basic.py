"""
Route tests for the job API
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import DummyRender, DummyStorage, add_job
from reelpipe.config import settings
from reelpipe.db import get_db
from reelpipe.inference.render_provider import ProviderHealth
from reelpipe.main import app
from reelpipe.models import JobStatus
from reelpipe.routes import jobs
from reelpipe.services.job_store import JobStore


@pytest_asyncio.fixture
async def client(db, monkeypatch):
    enqueued = []
    monkeypatch.setattr(jobs, "enqueue_pipeline", enqueued.append)

    async def _get_db():
        yield db

    render = DummyRender(health=ProviderHealth(False, True, 503, 25, "Provider is sleeping or starting up (HTTP 503)"))
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[jobs.get_render_client] = lambda: render
    app.dependency_overrides[jobs.get_storage] = lambda: DummyStorage()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        c.enqueued = enqueued
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_submit_ai_generate_job(client):
    response = await client.post("/jobs", json={"title": "Sea", "description": "waves", "scene_count": 99})
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["type"] == "ai_generate"
    assert client.enqueued == [data["job_id"]]

    status = await client.get(f"/job-status/{data['job_id']}")
    assert status.status_code == 200
    assert status.json()["logs"] == []
    assert status.json()["can_cancel"] is True


@pytest.mark.asyncio
async def test_merge_media_requires_some_media(client):
    response = await client.post("/merge-media", json={"images": [], "videos": [], "audio": "https://cdn.test/a.mp3"})
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert client.enqueued == []


@pytest.mark.asyncio
async def test_submissions_are_rate_limited(client, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_MAX_REQUESTS", 2)
    headers = {"X-Requester-Id": "chat-42"}
    payload = {"images": ["https://cdn.test/1.jpg"], "audio": "https://cdn.test/a.mp3"}

    for _ in range(2):
        assert (await client.post("/merge-media", json=payload, headers=headers)).status_code == 201
    response = await client.post("/merge-media", json=payload, headers=headers)

    assert response.status_code == 429
    assert response.json()["error"] == "RATE_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_unknown_job_status_is_404(client):
    response = await client.get("/job-status/nope")
    assert response.status_code == 404
    assert response.json()["error"] == "JOB_NOT_FOUND"


@pytest.mark.asyncio
async def test_cancel_accepts_camel_case_id(client, db):
    job = await add_job(db, status=JobStatus.PROCESSING)

    response = await client.post("/cancel-job", json={"jobId": job.id})
    assert response.status_code == 200
    assert response.json()["success"] is True

    again = await client.post("/cancel-job", json={"job_id": job.id})
    assert again.status_code == 400
    assert again.json()["error"] == "INVALID_JOB_STATE"


@pytest.mark.asyncio
async def test_cancel_without_id(client):
    response = await client.post("/cancel-job", json={})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_provider_health(client):
    response = await client.get("/provider/health")
    assert response.status_code == 200
    data = response.json()
    assert data["healthy"] is False
    assert data["is_sleeping"] is True
    assert data["status"] == 503


@pytest.mark.asyncio
async def test_merge_job_keeps_callback_url(client, db):
    payload = {
        "images": ["https://cdn.test/1.jpg"],
        "audio": "https://cdn.test/a.mp3",
        "callback_url": "https://caller.test/hook",
    }
    response = await client.post("/merge-media", json=payload)
    assert response.status_code == 201

    job = await JobStore(db).get_job(response.json()["job_id"])
    assert job.callback_url == "https://caller.test/hook"
    assert job.input_data["images"] == ["https://cdn.test/1.jpg"]
    assert not hasattr(job, "source_url")
