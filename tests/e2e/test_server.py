"""Tests for FastAPI server — REST surface over the orchestrator."""

import json

import httpx
import pytest
from conftest import FINAL_PROMPT, INITIAL_PROMPT, THINKING_POINTS

from promptgen.errors import RemoteCallError
from promptgen.models import Running
from promptgen.orchestrator import PipelineOrchestrator
from promptgen.run_manager import run_manager
from promptgen.server import fastapi_app, get_orchestrator


@pytest.fixture
def client(orchestrator):
    """Create an async test client for the FastAPI app with a fake stage client."""
    fastapi_app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = httpx.ASGITransport(app=fastapi_app)
    yield httpx.AsyncClient(transport=transport, base_url="http://testserver")
    fastapi_app.dependency_overrides.clear()
    run_manager._runs.clear()


async def _create(c, description="写一个情感分析助手", language="zh") -> str:
    resp = await c.post("/runs", json={"description": description, "language": language})
    assert resp.status_code == 201
    return resp.json()["run_id"]


async def _wait_for_background(run_id: str) -> None:
    task = run_manager.get_run(run_id).task
    assert task is not None
    await task


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        async with client as c:
            resp = await c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestRunsEndpoint:
    @pytest.mark.asyncio
    async def test_create_run(self, client):
        async with client as c:
            resp = await c.post("/runs", json={"description": "写一个情感分析助手"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["language"] == "zh"
        assert data["status"] == "idle"
        assert data["completed_stage_ids"] == []
        assert [s["stage_id"] for s in data["stages"]] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_create_run_requires_description(self, client):
        async with client as c:
            resp = await c.post("/runs", json={"language": "en"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_list_runs(self, client):
        async with client as c:
            first = await _create(c, "a")
            second = await _create(c, "b")
            resp = await c.get("/runs")
        assert resp.status_code == 200
        data = resp.json()
        assert [r["run_id"] for r in data] == [first, second]
        assert "stages" not in data[0]

    @pytest.mark.asyncio
    async def test_get_run_not_found(self, client):
        async with client as c:
            resp = await c.get("/runs/nonexistent-id")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_run(self, client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.delete(f"/runs/{run_id}")
            assert resp.status_code == 204
            resp = await c.get(f"/runs/{run_id}")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_restart_replaces_description(self, client):
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1")
            resp = await c.post(f"/runs/{run_id}/restart", json={"description": "new", "language": "en"})
        data = resp.json()
        assert data["description"] == "new"
        assert data["language"] == "en"
        assert data["completed_stage_ids"] == []

    @pytest.mark.asyncio
    async def test_reset(self, client):
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1")
            resp = await c.post(f"/runs/{run_id}/reset")
        data = resp.json()
        assert data["completed_stage_ids"] == []
        assert data["stages"][0]["output"] == []
        assert data["description"] == "写一个情感分析助手"


class TestStageEndpoints:
    @pytest.mark.asyncio
    async def test_run_single_stage(self, client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/stages/1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["run"]["stages"][0]["output"] == THINKING_POINTS
        assert data["run"]["completed_stage_ids"] == [1]
        assert data["run"]["active_stage_id"] == 1

    @pytest.mark.asyncio
    async def test_missing_input_is_400(self, client, fake_client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/stages/2")
        assert resp.status_code == 400
        assert "thinking points" in resp.json()["detail"]
        fake_client.system_prompt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_stage_is_400(self, client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/stages/7")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_busy_run_is_409(self, client):
        async with client as c:
            run_id = await _create(c)
            run_manager.get_run(run_id).run.state = Running(stage_id=1)
            resp = await c.post(f"/runs/{run_id}/stages/1")
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_remote_failure_is_reported_in_body(self, client, fake_client):
        fake_client.thinking_points.side_effect = RemoteCallError("service down")
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/stages/1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is False
        assert data["run"]["last_error"] == "service down"

    @pytest.mark.asyncio
    async def test_cascade_from_stage_2(self, client):
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1")
            resp = await c.post(f"/runs/{run_id}/stages/2", params={"cascade": "true"})
        data = resp.json()
        assert data["ok"] is True
        assert data["run"]["completed_stage_ids"] == [1, 2, 3, 4]
        assert data["run"]["stages"][3]["output"] == FINAL_PROMPT

    @pytest.mark.asyncio
    async def test_edit_stage(self, client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.put(f"/runs/{run_id}/stages/2", json={"output": "hand written"})
            assert resp.json()["stages"][1]["output"] == "hand written"
            resp = await c.put(f"/runs/{run_id}/stages/2", json={"output": ["wrong", "shape"]})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_list_items(self, client):
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1/items")
            resp = await c.put(f"/runs/{run_id}/stages/1/items/0", json={"value": "my point"})
            assert resp.json()["stages"][0]["output"] == ["my point"]
            resp = await c.put(f"/runs/{run_id}/stages/1/items/5", json={"value": "x"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_toggle_and_text(self, client):
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1")
            resp = await c.post(f"/runs/{run_id}/stages/1/toggle")
            assert resp.json()["active_stage_id"] == 0
            resp = await c.get(f"/runs/{run_id}/stages/1/text")
        assert resp.json() == {"stage_id": 1, "text": "\n".join(THINKING_POINTS)}


class TestBackgroundEndpoints:
    @pytest.mark.asyncio
    async def test_automate(self, client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/automate")
            assert resp.status_code == 202
            assert resp.json() == {"run_id": run_id, "status": "RUNNING"}
            await _wait_for_background(run_id)
            resp = await c.get(f"/runs/{run_id}")
        data = resp.json()
        assert data["completed_stage_ids"] == [1, 2, 3, 4]
        assert data["stages"][1]["output"] == INITIAL_PROMPT
        assert data["progress_message"] is None
        assert data["last_error"] is None

    @pytest.mark.asyncio
    async def test_automate_with_blank_description(self, client):
        async with client as c:
            run_id = await _create(c, description="  ")
            resp = await c.post(f"/runs/{run_id}/automate")
        assert resp.status_code == 400
        assert run_manager.get_run(run_id).task is None

    @pytest.mark.asyncio
    async def test_stream(self, client, fake_client):
        fake_client.stream_chunks = [
            json.dumps({"code": 200, "data": "draft"}) + "\n",
            json.dumps({"code": 200, "data": FINAL_PROMPT}) + "\n",
        ]
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/stream")
            assert resp.status_code == 202
            await _wait_for_background(run_id)
            resp = await c.get(f"/runs/{run_id}")
        data = resp.json()
        assert data["stream_result"] == FINAL_PROMPT
        assert data["stages"][3]["output"] == FINAL_PROMPT


class TestSaveEndpoint:
    @pytest.mark.asyncio
    async def test_save_after_generation(self, client, repository):
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1", params={"cascade": "true"})
            resp = await c.post(f"/runs/{run_id}/save")
        assert resp.status_code == 200
        assert resp.json()["title"] == "提示词_写一个情感分析助手"
        assert len(repository.records) == 1

    @pytest.mark.asyncio
    async def test_save_without_final_prompt(self, client):
        async with client as c:
            run_id = await _create(c)
            resp = await c.post(f"/runs/{run_id}/save")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_save_failure_is_502(self, client, fake_client):
        class FailingRepository:
            async def save(self, record):
                raise RemoteCallError("store unavailable")

        failing = PipelineOrchestrator(fake_client, FailingRepository())
        fastapi_app.dependency_overrides[get_orchestrator] = lambda: failing
        async with client as c:
            run_id = await _create(c)
            await c.post(f"/runs/{run_id}/stages/1", params={"cascade": "true"})
            resp = await c.post(f"/runs/{run_id}/save")
        assert resp.status_code == 502
        assert resp.json()["detail"] == "store unavailable"
