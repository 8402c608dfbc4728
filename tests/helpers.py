"""Shared builders for the FreeForge test suite."""

import asyncio
import json
from typing import Callable, Dict, List, Optional

import httpx

from freeforge.core.config import Config
from freeforge.core.health import HealthTracker
from freeforge.generation.fallback import FallbackOrchestrator
from freeforge.generation.transport import CompletionTransport

FAST_MODELS = ["fast/model-a:free", "fast/model-b:free"]
CODE_MODELS = ["code/model-a:free", "code/model-b:free"]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_config(keys=("key-one", "key-two")) -> Config:
    """Config with two keys, two models per roster and every delay at zero."""
    config = Config()
    config.api.api_keys = list(keys)
    config.api.base_url = "https://llm.test/api/v1/chat/completions"
    config.api.fast_models = list(FAST_MODELS)
    config.api.code_models = list(CODE_MODELS)
    config.fallback.attempt_delay = 0
    config.generation.plan_retry_delay = 0
    config.generation.file_retry_base_delay = 0
    config.generation.file_delay = 0
    config.stream.pipeline_retry_delay = 0
    config.stream.ping_interval = 30
    config.client.backoff_delays = [0]
    config.client.inactivity_timeout = 5
    config.client.total_timeout = 20
    return config


def completion(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


def sse_body(deltas: List[str], done: bool = True) -> bytes:
    lines = [": OPENROUTER PROCESSING", ""]
    for delta in deltas:
        lines.append("data: " + json.dumps({"choices": [{"delta": {"content": delta}}]}))
        lines.append("")
    if done:
        lines.append("data: [DONE]")
        lines.append("")
    return ("\n".join(lines) + "\n").encode("utf-8")


def sse_response(deltas: List[str], done: bool = True) -> httpx.Response:
    return httpx.Response(200, content=sse_body(deltas, done), headers={"Content-Type": "text/event-stream"})


class SlowStream(httpx.AsyncByteStream):
    """Response body that waits before producing (or never produces) bytes."""

    def __init__(self, delay: float, chunks: Optional[List[bytes]] = None):
        self.delay = delay
        self.chunks = chunks or []

    async def __aiter__(self):
        await asyncio.sleep(self.delay)
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        pass


class RecordingHandler:
    """httpx.MockTransport handler that records each request and delegates to ``respond``."""

    def __init__(self, respond: Callable[[Dict], httpx.Response]):
        self.respond = respond
        self.calls: List[Dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        call = {
            "model": body["model"],
            "key": request.headers["Authorization"][len("Bearer "):],
            "stream": body.get("stream", False),
            "messages": body["messages"],
            "max_tokens": body.get("max_tokens"),
        }
        self.calls.append(call)
        return self.respond(call)

    @property
    def combos(self):
        return [(c["key"], c["model"]) for c in self.calls]


def make_orchestrator(config: Config, handler, clock=None):
    """Orchestrator wired to an httpx.MockTransport; returns (orchestrator, health, transport)."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = CompletionTransport(config, client=client)
    health = HealthTracker.from_config(config, clock=clock) if clock else HealthTracker.from_config(config)
    orchestrator = FallbackOrchestrator.from_config(config, transport=transport, health=health)
    return orchestrator, health, transport


class StallingStream(httpx.AsyncByteStream):
    """Response body that sends some bytes, then goes silent."""

    def __init__(self, chunks: List[bytes], stall: float = 3600):
        self.chunks = chunks
        self.stall = stall

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        await asyncio.sleep(self.stall)

    async def aclose(self):
        pass


FILE_CODE = "export default function Component() {{\n  return <div>{path}</div>;\n}}\n"


class ScriptedUpstream:
    """Answers planning, per-file, legacy, chat and enhance calls like a cooperative model."""

    def __init__(self, plan: Optional[Dict] = None, plan_text: Optional[str] = None,
                 failing_files=(), legacy_texts: Optional[List[str]] = None, fail_all_files: bool = False):
        self.plan = plan
        self.plan_text = plan_text
        self.failing_files = set(failing_files)
        self.fail_all_files = fail_all_files
        self.legacy_texts = list(legacy_texts or [])
        self.legacy_calls = 0

    def __call__(self, call: Dict) -> httpx.Response:
        system = call["messages"][0]["content"]
        user = call["messages"][-1]["content"]

        if "REMINDER" in system:
            self.legacy_calls += 1
            if not self.legacy_texts:
                return httpx.Response(500, text="upstream exploded")
            text = self.legacy_texts[min(self.legacy_calls, len(self.legacy_texts)) - 1]
            return sse_response([text[i:i + 40] for i in range(0, len(text), 40)])
        if call["stream"]:
            return sse_response(["On it!", " Building your app now."])
        if "project planner" in system:
            if self.plan_text is not None:
                return completion(self.plan_text)
            return completion("```json\n" + json.dumps(self.plan) + "\n```")
        if "GENERATE FILE:" in user:
            path = user.split("GENERATE FILE:", 1)[1].split("\n", 1)[0].strip()
            if self.fail_all_files or path in self.failing_files:
                return httpx.Response(500, text="upstream exploded")
            return completion("Here you go:\n```jsx\n" + FILE_CODE.format(path=path) + "```")
        return completion("A bright, friendly to-do app with a clean list view and smooth animations.")


TODO_PLAN = {
    "projectTitle": "Todo App",
    "explanation": "A single page todo list. State lives in React hooks.",
    "files": [
        {"path": "src/App.js", "description": "Entry component"},
        {"path": "/components/TodoList.js", "description": "Renders the list of todos"},
        {"path": "/components/TodoItem.js", "description": "One todo row with a checkbox"},
    ],
}
