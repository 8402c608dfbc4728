"""Tests for the HTTP surface."""

import json

import pytest
from aiohttp import test_utils

from freeforge.core.models import GenerationRequest
from freeforge.generation.service import GenerationService
from freeforge.generation.supervisor import RetrySupervisor
from freeforge.server import create_app
from tests.helpers import RecordingHandler, ScriptedUpstream, TODO_PLAN, make_config, make_orchestrator

TODO_MESSAGES = [{"role": "user", "content": "Build a todo app"}]


def make_app(upstream=None, config=None):
    config = config or make_config()
    orchestrator, _, _ = make_orchestrator(config, RecordingHandler(upstream or ScriptedUpstream(plan=TODO_PLAN)))
    return create_app(GenerationService(config, orchestrator=orchestrator))


def sse_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestValidation:
    """Malformed requests are rejected before any pipeline runs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path, payload", [
        ("/api/gen-ai-code", {"messages": []}),
        ("/api/gen-ai-code", {"currentFilePaths": ["/App.js"]}),
        ("/api/ai-chat", {"prompt": "not a list"}),
        ("/api/enhance-prompt", {"prompt": "   "}),
        ("/api/enhance-prompt", {}),
    ])
    async def test_bad_payloads(self, path, payload):
        async with test_utils.TestClient(test_utils.TestServer(make_app())) as client:
            response = await client.post(path, json=payload)
            assert response.status == 400
            assert "error" in await response.json()

    @pytest.mark.asyncio
    async def test_body_must_be_a_json_object(self):
        async with test_utils.TestClient(test_utils.TestServer(make_app())) as client:
            response = await client.post("/api/gen-ai-code", data="not json",
                                         headers={"Content-Type": "application/json"})
            assert response.status == 400

            response = await client.post("/api/gen-ai-code", json=["a", "list"])
            assert response.status == 400


class TestStreams:
    """Event streams framed as server-sent events."""

    @pytest.mark.asyncio
    async def test_generate_streams_phases_then_final(self):
        async with test_utils.TestClient(test_utils.TestServer(make_app())) as client:
            response = await client.post("/api/gen-ai-code", json={
                "messages": TODO_MESSAGES, "currentFilePaths": [], "includeSupabase": False,
            })
            assert response.status == 200
            assert response.headers["Content-Type"].startswith("text/event-stream")
            assert response.headers["Cache-Control"] == "no-cache"
            events = sse_events(await response.text())

        assert events[0]["phase"] == "planning"
        assert events[-1]["done"] is True
        assert set(events[-1]["final"]["files"]) == {
            "/App.js", "/index.css", "/components/TodoList.js", "/components/TodoItem.js",
        }
        generating = [e for e in events if e.get("phase") == "generating"]
        assert [e["progress"] for e in generating] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_chat_accepts_prompt_as_transcript(self):
        async with test_utils.TestClient(test_utils.TestServer(make_app())) as client:
            response = await client.post("/api/ai-chat", json={"prompt": TODO_MESSAGES})
            events = sse_events(await response.text())

        assert [e["chunk"] for e in events if "chunk" in e] == ["On it!", " Building your app now."]
        assert events[-1] == {"result": "On it! Building your app now.", "done": True}

    @pytest.mark.asyncio
    async def test_enhance(self):
        async with test_utils.TestClient(test_utils.TestServer(make_app())) as client:
            response = await client.post("/api/enhance-prompt", json={"prompt": "todo app"})
            events = sse_events(await response.text())

        assert events[-1]["done"] is True
        assert events[-1]["enhancedPrompt"].startswith("A bright, friendly to-do app")


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_snapshot(self):
        async with test_utils.TestClient(test_utils.TestServer(make_app())) as client:
            response = await client.get("/api/health")
            data = await response.json()

        assert data["status"] == "ok"
        assert [c["key"] for c in data["credentials"]] == ["#1", "#2"]
        assert "key-one" not in json.dumps(data)

    @pytest.mark.asyncio
    async def test_health_without_credentials(self):
        async with test_utils.TestClient(test_utils.TestServer(make_app(config=make_config(keys=())))) as client:
            data = await (await client.get("/api/health")).json()

        assert data["status"] == "unconfigured"


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_supervisor_against_the_server(self):
        async with test_utils.TestServer(make_app()) as server:
            supervisor = RetrySupervisor.from_config(make_config(), endpoint=str(server.make_url("/api/gen-ai-code")))
            artifact = await supervisor.generate(GenerationRequest.create(TODO_MESSAGES))

        assert supervisor.attempts == 1
        assert artifact.project_title == "Todo App"
        assert artifact.placeholder_paths == []
