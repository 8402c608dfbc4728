"""Tests for the generation service: pipeline retries, chat and prompt enhancement."""

import json

import httpx
import pytest

from freeforge.core.errors import ErrorCategory, GenerationFailedError
from freeforge.core.models import GenerationRequest
from freeforge.generation import prompts
from freeforge.generation.events import ChunkEvent, ErrorEvent, FinalEvent, PhaseEvent, ResultEvent, encode_sse
from freeforge.generation.service import GenerationService
from tests.helpers import FAST_MODELS, RecordingHandler, ScriptedUpstream, TODO_PLAN, completion, make_config, make_orchestrator

LEGACY_PROJECT = json.dumps({
    "projectTitle": "Legacy Todo",
    "explanation": "Single pass",
    "files": {"/App.js": {"code": "export default function App() { return null; }"}},
})


def make_service(upstream, config=None):
    config = config or make_config()
    handler = RecordingHandler(upstream)
    orchestrator, _, _ = make_orchestrator(config, handler)
    return GenerationService(config, orchestrator=orchestrator), handler


def todo_request():
    return GenerationRequest.create([{"role": "user", "content": "Build a todo app"}])


class TestOpenStream:
    """Server-side pipeline runs exposed as event streams."""

    @pytest.mark.asyncio
    async def test_todo_app_ends_with_final_event(self):
        service, _ = make_service(ScriptedUpstream(plan=TODO_PLAN))

        events = await service.open_stream(todo_request()).collect()

        final = events[-1]
        assert isinstance(final, FinalEvent)
        assert encode_sse(final).startswith(b'data: {"final": ')
        assert final.to_dict()["done"] is True
        files = final.artifact.files
        assert set(files) == {"/App.js", "/index.css", "/components/TodoList.js", "/components/TodoItem.js"}
        assert all(isinstance(e, (PhaseEvent, FinalEvent)) for e in events)

    @pytest.mark.asyncio
    async def test_failure_is_reported_with_a_sanitized_message(self):
        service, handler = make_service(lambda call: httpx.Response(429, text="Rate limit exceeded: sk-or-secret"))

        events = await service.open_stream(todo_request()).collect()

        error = events[-1]
        assert isinstance(error, ErrorEvent)
        assert error.message == ErrorCategory.BUSY.message
        assert "sk-or-secret" not in error.message
        assert sum(1 for c in handler.calls if c["stream"]) >= 3

    @pytest.mark.asyncio
    async def test_server_errors_on_every_combo_are_reported_as_retryable(self):
        service, _ = make_service(lambda call: httpx.Response(503, text="Service Unavailable"))

        events = await service.open_stream(todo_request()).collect()

        error = events[-1]
        assert isinstance(error, ErrorEvent)
        assert error.message == ErrorCategory.UPSTREAM.message
        assert "503" in error.raw_detail

    @pytest.mark.asyncio
    async def test_chunks_are_forwarded_on_the_first_attempt_only(self):
        upstream = ScriptedUpstream(plan=TODO_PLAN, fail_all_files=True,
                                    legacy_texts=["not json at all", LEGACY_PROJECT])
        service, _ = make_service(upstream)

        events = await service.open_stream(todo_request()).collect()

        assert isinstance(events[-1], FinalEvent)
        assert events[-1].artifact.project_title == "Legacy Todo"
        assert "".join(e.text for e in events if isinstance(e, ChunkEvent)) == "not json at all"
        assert upstream.legacy_calls == 2

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_without_retrying(self):
        service, handler = make_service(ScriptedUpstream(plan=TODO_PLAN), make_config(keys=()))

        events = await service.open_stream(todo_request()).collect()

        assert events[-1].message == ErrorCategory.MISCONFIGURATION.message
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_generate_returns_artifact(self):
        service, _ = make_service(ScriptedUpstream(plan=TODO_PLAN))
        seen = []

        artifact = await service.generate(todo_request(), on_event=seen.append)

        assert artifact.project_title == "Todo App"
        assert isinstance(seen[-1], FinalEvent)

    @pytest.mark.asyncio
    async def test_generate_raises_on_error_event(self):
        service, _ = make_service(lambda call: httpx.Response(503, text="Service Unavailable"))

        with pytest.raises(GenerationFailedError) as exc_info:
            await service.generate(todo_request())

        assert exc_info.value.message in {category.message for category in ErrorCategory}


class TestChat:

    @pytest.mark.asyncio
    async def test_chat_stream(self):
        service, handler = make_service(ScriptedUpstream())

        events = await service.chat_stream([{"role": "user", "content": "todo app"},
                                            {"role": "ai", "content": "Sure"}]).collect()

        assert [e.text for e in events if isinstance(e, ChunkEvent)] == ["On it!", " Building your app now."]
        assert events[-1] == ResultEvent("On it! Building your app now.")
        call = handler.calls[0]
        assert call["model"] in FAST_MODELS
        assert call["messages"][0] == {"role": "system", "content": prompts.CHAT_PROMPT}
        assert call["messages"][2] == {"role": "assistant", "content": "Sure"}

    @pytest.mark.asyncio
    async def test_chat_failure(self):
        service, _ = make_service(lambda call: httpx.Response(429))

        events = await service.chat_stream([{"role": "user", "content": "hi"}]).collect()

        assert events == [ErrorEvent(ErrorCategory.BUSY.message, events[-1].raw_detail)]


class TestEnhance:

    @pytest.mark.asyncio
    async def test_enhance_prompt(self):
        service, handler = make_service(lambda call: completion("<think>hmm</think>\nA polished todo app."))

        assert await service.enhance_prompt("todo app") == "A polished todo app."
        user = handler.calls[0]["messages"][1]["content"]
        assert user.startswith(prompts.ENHANCE_PROMPT_RULES)
        assert user.endswith("Original prompt: todo app")

    @pytest.mark.asyncio
    async def test_enhance_rejects_blank_prompt(self):
        service, _ = make_service(ScriptedUpstream())
        with pytest.raises(ValueError):
            await service.enhance_prompt("   ")

    @pytest.mark.asyncio
    async def test_enhance_stream(self):
        service, _ = make_service(ScriptedUpstream())

        events = await service.enhance_stream("todo app").collect()

        assert isinstance(events[0], ChunkEvent)
        assert events[-1].key == "enhancedPrompt"
        assert events[-1].to_dict()["enhancedPrompt"] == events[0].text
