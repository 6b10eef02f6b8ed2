"""Tests for the REST surface."""
import base64

import pytest
from httpx import AsyncClient, ASGITransport

from muse_runner.core import runs
from muse_runner.fastapi_app import app

RUN_BODY = {
    "positive": "a lighthouse",
    "negative": "",
    "ckpt_name": "model.safetensors",
    "width": 1024,
    "height": 1024,
    "loras": [{"name": "detail.safetensors", "weight": 0.5}],
    "ksampler": {"steps": 20, "seed": 7},
}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_create_run(fake_comfy):
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json=RUN_BODY)

    assert response.status_code == 201
    run = response.json()["run"]
    assert run["status"] == "queued"
    assert run["prompt_id"] == "prompt-1"
    assert run["request_json"]["ksampler"] == {"steps": 20, "seed": 7}
    assert fake_comfy.submitted[0]["3"]["inputs"]["seed"] == 7


@pytest.mark.asyncio
async def test_create_run_rejects_out_of_range_size(fake_comfy):
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json={**RUN_BODY, "width": 32})

    assert response.status_code == 422
    assert fake_comfy.submitted == []


@pytest.mark.asyncio
async def test_refine_without_init_image_returns_400(fake_comfy):
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json={**RUN_BODY, "mode": "refine"})

    assert response.status_code == 400
    assert response.json()["detail"] == "initImage is required for image2i"
    assert runs.get_store().list() == []


@pytest.mark.asyncio
async def test_init_image_selects_refine(fake_comfy):
    image = "data:image/png;base64," + base64.b64encode(b"png").decode()
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json={**RUN_BODY, "init_image": image})

    assert response.status_code == 201
    run = response.json()["run"]
    assert run["request_json"]["mode"] == "refine"
    assert run["request_json"]["init_image"].startswith("init_images/")


@pytest.mark.asyncio
async def test_invalid_base64_returns_400(fake_comfy):
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json={**RUN_BODY, "init_image": "abc"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_submission_timeout_returns_504(fake_comfy):
    fake_comfy.fail("submit_prompt", "timeout")
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json=RUN_BODY)

    assert response.status_code == 504
    assert response.json()["detail"] == "timeout"
    [run] = runs.get_store().list()
    assert run.status.value == "failed"


@pytest.mark.asyncio
async def test_rejected_prompt_returns_502(fake_comfy):
    fake_comfy.prompt_response = {"error": {"message": "invalid prompt"}}
    async with _client() as client:
        response = await client.post("/api/comfy/runs", json=RUN_BODY)

    assert response.status_code == 502
    assert response.json()["detail"] == "invalid prompt"


@pytest.mark.asyncio
async def test_run_lifecycle(fake_comfy):
    async with _client() as client:
        created = (await client.post("/api/comfy/runs", json=RUN_BODY)).json()["run"]
        run_id = created["id"]

        fake_comfy.history = {
            "prompt-1": {
                "outputs": {"9": {"images": [{"filename": "out.png", "subfolder": "", "type": "output"}]}},
                "status": {"status_str": "success"},
            }
        }
        refreshed = await client.post(f"/api/comfy/runs/{run_id}/refresh")
        fetched = await client.get(f"/api/comfy/runs/{run_id}")
        listed = await client.get("/api/comfy/runs")
        deleted = await client.delete(f"/api/comfy/runs/{run_id}")
        missing = await client.get(f"/api/comfy/runs/{run_id}")

    assert refreshed.status_code == 200
    assert refreshed.json()["run"]["status"] == "succeeded"
    assert refreshed.json()["outputs"][0]["filename"] == "out.png"
    assert fetched.json()["run"]["status"] == "succeeded"
    assert [run["id"] for run in listed.json()["runs"]] == [run_id]
    assert deleted.json() == {"deleted": True}
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_refresh_unknown_run_returns_404(fake_comfy):
    async with _client() as client:
        response = await client.post("/api/comfy/runs/unknown/refresh")

    assert response.status_code == 404
    assert response.json()["detail"] == "Run not found"


@pytest.mark.asyncio
async def test_refresh_upstream_failure_returns_502(fake_comfy):
    async with _client() as client:
        run_id = (await client.post("/api/comfy/runs", json=RUN_BODY)).json()["run"]["id"]
        fake_comfy.fail("get_history", "upstream_error")
        response = await client.post(f"/api/comfy/runs/{run_id}/refresh")

    assert response.status_code == 502
    assert runs.get_store().get(run_id).error_message == "upstream_error"


@pytest.mark.asyncio
async def test_recipe_run(fake_comfy):
    body = {
        "recipe": {"id": "recipe-1", "prompt_blocks": {"positive": "a fox"}, "variables": {}},
        "loras": [{"lora_name": "fox.safetensors", "weight": 0.8}],
    }
    async with _client() as client:
        response = await client.post("/api/comfy/recipe-runs", json=body)
        listed = await client.get("/api/comfy/runs", params={"recipe_id": "recipe-1"})

    assert response.status_code == 201
    run = response.json()["run"]
    assert run["recipe_id"] == "recipe-1"
    assert fake_comfy.submitted[0]["91"]["inputs"]["positive"] == "a fox"
    assert fake_comfy.submitted[0]["92"]["inputs"]["lora_name_1"] == "fox.safetensors"
    assert len(listed.json()["runs"]) == 1


@pytest.mark.asyncio
async def test_recipe_run_refine_without_image_returns_400(fake_comfy):
    body = {"recipe": {"id": "recipe-2", "variables": {"mode": "i2i"}}}
    async with _client() as client:
        response = await client.post("/api/comfy/recipe-runs", json=body)

    assert response.status_code == 400
    assert runs.get_store().list() == []


@pytest.mark.asyncio
async def test_queue_passthrough(fake_comfy):
    fake_comfy.queue = {"queue_running": [], "queue_pending": [[1, "p", {}, {}, []]]}
    async with _client() as client:
        response = await client.get("/api/comfy/queue")

    assert response.status_code == 200
    assert response.json() == {"queue": fake_comfy.queue}


@pytest.mark.asyncio
async def test_view_proxies_image(fake_comfy):
    async with _client() as client:
        response = await client.get("/api/comfy/view", params={"filename": "out.png", "type": "output"})

    assert response.status_code == 200
    assert response.content == b"\x89PNG"
    assert response.headers["content-type"] == "image/png"


@pytest.mark.asyncio
@pytest.mark.parametrize("filename", ["", "../secret.png", "a/b.png", "a\\b.png"])
async def test_view_rejects_bad_filenames(fake_comfy, filename):
    async with _client() as client:
        response = await client.get("/api/comfy/view", params={"filename": filename})

    assert response.status_code == 400
    assert "view" not in fake_comfy.calls


@pytest.mark.asyncio
async def test_options_unavailable_returns_502(fake_comfy):
    for node_class in ("Efficient Loader", "LoRA Stacker", "ControlNetLoader", "ControlNetPreprocessorSelector"):
        fake_comfy.fail(f"get_object_info:{node_class}", "timeout")
    async with _client() as client:
        response = await client.get("/api/comfy/options")

    assert response.status_code == 502
    assert response.json()["detail"] == "options_unavailable"
