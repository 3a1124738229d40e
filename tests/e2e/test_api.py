import asyncio
import json

import pytest

from tests.conftest import make_image_bytes


async def _wait_for_status(client, job_id: str, status: str, timeout: float = 5.0) -> dict:
    async def _poll():
        while True:
            response = await client.get(f"/api/v1/jobs/{job_id}")
            data = response.json()
            if data["status"] == status:
                return data
            await asyncio.sleep(0.05)
    return await asyncio.wait_for(_poll(), timeout=timeout)


async def _upload(client, content: bytes = None, content_type="image/png", file_name="product.png", **data):
    content = make_image_bytes() if content is None else content
    return await client.post(
        "/api/v1/upload",
        files={"file": (file_name, content, content_type)},
        data=data,
    )


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_reports_dependencies(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["checks"] == {"database": True, "queue": True}
    assert data["ai_analysis"] is False
    assert data["queue_pending"] == 0


@pytest.mark.asyncio
async def test_upload_is_accepted_and_processed(client):
    response = await _upload(client, run_ai_analysis="false")

    assert response.status_code == 202
    accepted = response.json()
    assert accepted["status"] == "QUEUED"
    assert accepted["status_label"] == "Queued"
    assert accepted["queue_status"] == "queued"
    assert accepted["queue_job_id"] == f"image-{accepted['job_id']}"

    job = await _wait_for_status(client, accepted["job_id"], "COMPLETED")
    assert set(job["versions"]) == {"MASTER_4K", "GRID", "PDP", "THUMBNAIL"}
    assert job["attempts"] == 1
    assert job["error"] is None
    assert job["run_ai_analysis"] is False

    thumbnail_url = job["versions"]["THUMBNAIL"]["url"]
    served = await client.get(thumbnail_url)
    assert served.status_code == 200


@pytest.mark.asyncio
async def test_upload_with_brand_context(client):
    brand = json.dumps({"name": "Acme", "vertical": "fashion", "tone": "premium", "background": "#f5f5f5"})

    response = await _upload(client, brand_context=brand)

    assert response.status_code == 202
    job = await _wait_for_status(client, response.json()["job_id"], "COMPLETED")
    assert job["brand_context"]["tone"] == "premium"


@pytest.mark.asyncio
async def test_upload_rejects_invalid_brand_context(client):
    response = await _upload(client, brand_context="{not json")

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_CONTEXT"


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_type(client):
    response = await _upload(client, content=b"%PDF-1.4", content_type="application/pdf", file_name="doc.pdf")

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILE_TYPE"


@pytest.mark.asyncio
async def test_upload_rejects_empty_file(client):
    response = await _upload(client, content=b"")

    assert response.status_code == 400
    assert response.json()["code"] == "EMPTY_FILE"


@pytest.mark.asyncio
async def test_corrupt_image_fails_job(client):
    response = await _upload(client, content=b"\x89PNG not really", run_ai_analysis="false")

    job = await _wait_for_status(client, response.json()["job_id"], "FAILED")
    assert job["status_label"] == "Failed"
    assert job["error"]["code"] == "IMAGE_INFO_ERROR"


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    response = await client.get("/api/v1/jobs/does-not-exist")

    assert response.status_code == 404
    assert response.json()["code"] == "JOB_NOT_FOUND"


@pytest.mark.asyncio
async def test_list_jobs_with_stats(client):
    first = (await _upload(client, file_name="first.png", run_ai_analysis="false")).json()
    second = (await _upload(client, file_name="second.png", run_ai_analysis="false")).json()
    await _wait_for_status(client, first["job_id"], "COMPLETED")
    await _wait_for_status(client, second["job_id"], "COMPLETED")

    response = await client.get("/api/v1/jobs", params={"page_size": 1})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert len(data["jobs"]) == 1
    assert data["jobs"][0]["id"] == second["job_id"]
    assert data["stats"]["completed_jobs"] == 2

    filtered = (await client.get("/api/v1/jobs", params={"file_name": "FIRST"})).json()
    assert [j["id"] for j in filtered["jobs"]] == [first["job_id"]]

    by_status = (await client.get("/api/v1/jobs", params={"status": "FAILED"})).json()
    assert by_status["total"] == 0


@pytest.mark.asyncio
async def test_stats_endpoint(client):
    response = await client.get("/api/v1/jobs/stats")

    assert response.status_code == 200
    assert response.json()["total_jobs"] == 0


@pytest.mark.asyncio
async def test_invalid_status_filter_is_422(client):
    response = await client.get("/api/v1/jobs", params={"status": "DONE"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    response = await client.get("/api/v1/metrics")

    assert response.status_code == 200
    assert "image_jobs_total" in response.text
