"""Tests for the HTTP API and its error mapping."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from media_transcoder.api import create_app
from media_transcoder.controller import JobController
from media_transcoder.queue import SQLiteQueue

from conftest import SOURCE_KEY


@pytest_asyncio.fixture(loop_scope="function")
async def client(store, db_path, storage, presets):
    queue = SQLiteQueue(db_path)
    app = create_app(JobController(store, queue, storage, presets))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    queue.close()


@pytest.mark.asyncio(loop_scope="function")
async def test_create_job_returns_202(client: AsyncClient):
    response = await client.post(
        "/jobs",
        json={
            "mediaRef": SOURCE_KEY,
            "outputs": [{"preset": "720p_h264", "bitrate": "4M"}, {"container": "webm"}],
            "webhookUrl": "https://example.com/hook",
        },
    )
    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "queued"
    assert data["progress"] == 0
    assert data["mediaRef"] == SOURCE_KEY
    assert data["webhookUrl"] == "https://example.com/hook"
    assert data["outputs"][0]["bitrate"] == "4M"
    assert data["outputs"][0]["video_codec"] == "libx264"
    assert data["outputs"][1]["id"] == "webm_1"


@pytest.mark.asyncio(loop_scope="function")
async def test_get_job(client: AsyncClient):
    created = (await client.post("/jobs", json={"mediaRef": SOURCE_KEY})).json()

    response = await client.get(f"/jobs/{created['id']}")
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == created["id"]
    assert data["generatedOutputs"] == []
    assert data["error"] is None
    assert data["createdAt"]


@pytest.mark.asyncio(loop_scope="function")
async def test_get_unknown_job_returns_404(client: AsyncClient):
    response = await client.get("/jobs/does-not-exist")
    assert response.status_code == 404


@pytest.mark.asyncio(loop_scope="function")
@pytest.mark.parametrize(
    "body,status,code",
    [
        ({"mediaRef": "uploads/missing.mp4"}, 404, "SourceNotFound"),
        ({"mediaRef": SOURCE_KEY, "outputs": [{"format": "avi"}]}, 400, "InvalidInput"),
        ({"mediaRef": SOURCE_KEY, "webhookUrl": "ftp://x"}, 400, "InvalidInput"),
    ],
)
async def test_submission_errors(client: AsyncClient, body, status, code):
    response = await client.post("/jobs", json=body)
    assert response.status_code == status
    assert response.json()["detail"]["code"] == code


@pytest.mark.asyncio(loop_scope="function")
async def test_unsupported_media_type(client: AsyncClient, storage):
    (storage.root / "uploads" / "notes.txt").write_text("hello")

    response = await client.post("/jobs", json={"mediaRef": "uploads/notes.txt"})
    assert response.status_code == 415
    assert response.json()["detail"]["code"] == "SourceTypeUnsupported"


@pytest.mark.asyncio(loop_scope="function")
async def test_missing_media_ref_is_422(client: AsyncClient):
    response = await client.post("/jobs", json={})
    assert response.status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_list_jobs(client: AsyncClient):
    await client.post("/jobs", json={"mediaRef": SOURCE_KEY})
    await client.post("/jobs", json={"mediaRef": SOURCE_KEY, "outputs": [{"preset": "720p_vp9"}]})

    response = await client.get("/jobs", params={"mediaRef": SOURCE_KEY, "status": "queued"})
    assert response.status_code == 200
    assert len(response.json()) == 2

    response = await client.get("/jobs", params={"mediaRef": SOURCE_KEY, "limit": 1})
    assert len(response.json()) == 1

    response = await client.get("/jobs", params={"status": "bogus"})
    assert response.status_code == 400


@pytest.mark.asyncio(loop_scope="function")
async def test_presets(client: AsyncClient):
    response = await client.get("/presets")
    assert response.status_code == 200
    assert "720p_vp9" in {p["id"] for p in response.json()}
