"""Tests for the plan-then-generate pipeline."""

import json

import pytest

from freeforge.core.errors import ConfigurationError, ErrorCategory, GenerationError
from freeforge.core.models import GenerationOptions, GenerationRequest
from freeforge.generation import prompts
from freeforge.generation.events import ChunkEvent, Phase, PhaseEvent
from freeforge.generation.phased_generator import PLACEHOLDER_MARKER, PhasedGenerator, placeholder_code
from tests.helpers import RecordingHandler, ScriptedUpstream, TODO_PLAN, make_config, make_orchestrator

TODO_PATHS = ["/App.js", "/index.css", "/components/TodoList.js", "/components/TodoItem.js"]


def make_generator(upstream, config=None):
    config = config or make_config()
    handler = RecordingHandler(upstream)
    orchestrator, _, _ = make_orchestrator(config, handler)
    return PhasedGenerator(orchestrator, config), handler


def todo_request():
    return GenerationRequest.create([{"role": "user", "content": "Build a todo app"}])


def phases(events):
    return [e.phase for e in events if isinstance(e, PhaseEvent)]


class TestParsePlan:
    """Validation of planning responses."""

    @pytest.fixture
    def generator(self):
        return make_generator(ScriptedUpstream(plan=TODO_PLAN))[0]

    def test_adds_required_files(self, generator):
        plan = generator.parse_plan(json.dumps(TODO_PLAN))
        assert plan.paths == TODO_PATHS
        assert plan.project_title == "Todo App"
        assert not plan.is_default

    def test_file_map_and_bare_list_shapes(self, generator):
        mapped = generator.parse_plan(json.dumps({"files": {"/App.js": {"description": "Entry"}, "/index.css": "Styles"}}))
        assert mapped.paths == ["/App.js", "/index.css"]

        bare = generator.parse_plan(json.dumps([{"path": "/App.js", "description": "Entry"}]))
        assert bare.paths == ["/App.js", "/index.css"]

    def test_truncated_bare_list(self, generator):
        plan = generator.parse_plan('[{"path": "/components/Header.js", "description": "Header"}')
        assert plan.paths == ["/App.js", "/index.css", "/components/Header.js"]

    def test_invalid_entries_are_dropped(self, generator):
        raw = json.dumps({"files": [
            {"path": "/a.js", "description": "A"},
            {"path": "./src/a.js", "description": "duplicate after normalization"},
            {"path": "", "description": "no path"},
            {"path": "/b.js"},
            "not an object",
        ]})
        assert generator.parse_plan(raw).paths == ["/App.js", "/index.css", "/a.js"]

    def test_unusable_responses(self, generator):
        assert generator.parse_plan("I'm sorry, I can't do that.") is None
        assert generator.parse_plan(json.dumps({"files": []})) is None
        assert generator.parse_plan(json.dumps({"projectTitle": "No files"})) is None

    def test_plan_is_capped_keeping_required_files(self):
        config = make_config()
        config.generation.max_plan_files = 4
        generator = make_generator(ScriptedUpstream(), config)[0]
        files = [{"path": f"/components/C{i}.js", "description": f"Component {i}"} for i in range(10)]
        plan = generator.parse_plan(json.dumps({"files": files}))
        assert plan.paths == ["/App.js", "/index.css", "/components/C0.js", "/components/C1.js"]


class TestPlaceholderCode:

    def test_javascript_placeholder_is_importable(self):
        code = placeholder_code("/components/todo-list.js", "timeout")
        assert code.startswith(f"// {PLACEHOLDER_MARKER}: /components/todo-list.js")
        assert "export default function TodoList()" in code

    def test_stylesheet_placeholder(self):
        code = placeholder_code("/index.css", "busy")
        assert code.startswith("/*") and code.rstrip().endswith("*/")

    def test_json_placeholder_is_valid_json(self):
        assert PLACEHOLDER_MARKER in json.loads(placeholder_code("/package.json", "busy"))["error"]


class TestRun:
    """Whole pipeline passes against a scripted upstream."""

    @pytest.mark.asyncio
    async def test_todo_app(self):
        generator, handler = make_generator(ScriptedUpstream(plan=TODO_PLAN))
        events = []

        artifact = await generator.run(todo_request(), events.append)

        assert list(artifact.files) == TODO_PATHS
        assert artifact.placeholder_paths == []
        assert artifact.project_title == "Todo App"
        assert "<div>/components/TodoItem.js</div>" in artifact.files["/components/TodoItem.js"].code

        assert phases(events) == [Phase.PLANNING, Phase.PLANNED] + [Phase.GENERATING] * 4 + [Phase.DONE]
        planned = events[1]
        assert [entry.path for entry in planned.plan] == TODO_PATHS
        generating = [e for e in events if isinstance(e, PhaseEvent) and e.phase is Phase.GENERATING]
        assert [(e.current_file, e.progress, e.total) for e in generating] == [
            (path, index, 4) for index, path in enumerate(TODO_PATHS, 1)
        ]
        assert len(handler.calls) == 5
        assert not any(call["stream"] for call in handler.calls)

    @pytest.mark.asyncio
    async def test_failing_file_becomes_placeholder(self):
        generator, _ = make_generator(ScriptedUpstream(plan=TODO_PLAN, failing_files={"/components/TodoList.js"}))
        events = []

        artifact = await generator.run(todo_request(), events.append)

        assert list(artifact.files) == TODO_PATHS
        assert artifact.placeholder_paths == ["/components/TodoList.js"]
        placeholder = artifact.files["/components/TodoList.js"]
        assert PLACEHOLDER_MARKER in placeholder.code
        assert "upstream exploded" not in placeholder.code
        assert phases(events)[-1] is Phase.DONE
        assert "1 placeholder" in events[-1].status

    @pytest.mark.asyncio
    async def test_default_plan_after_failed_planning(self):
        generator, handler = make_generator(ScriptedUpstream(plan_text="I'm sorry, I can't plan that."))

        artifact = await generator.run(todo_request(), [].append)

        planner_calls = [c for c in handler.calls if "project planner" in c["messages"][0]["content"]]
        assert len(planner_calls) == 3
        assert list(artifact.files) == ["/App.js", "/index.css"]

    @pytest.mark.asyncio
    async def test_legacy_path_when_every_file_fails(self):
        legacy = json.dumps({
            "projectTitle": "Legacy Todo",
            "explanation": "Single pass",
            "files": {
                "/App.js": {"code": "export default function App() { return <h1>Todo</h1>; }"},
                "src/index.css": {"code": "@tailwind base;"},
            },
        })
        generator, handler = make_generator(
            ScriptedUpstream(plan=TODO_PLAN, fail_all_files=True, legacy_texts=[legacy])
        )
        events = []

        artifact = await generator.run(todo_request(), events.append)

        assert artifact.project_title == "Legacy Todo"
        assert set(artifact.files) == {"/App.js", "/index.css"}
        assert Phase.FALLBACK in phases(events)
        assert phases(events)[-1] is Phase.DONE
        assert "".join(e.text for e in events if isinstance(e, ChunkEvent)) == legacy
        assert handler.calls[-1]["stream"]

    @pytest.mark.asyncio
    async def test_legacy_chunks_can_be_suppressed(self):
        legacy = json.dumps({"files": {"/App.js": {"code": "export default () => null;"}}})
        generator, _ = make_generator(ScriptedUpstream(plan=TODO_PLAN, fail_all_files=True, legacy_texts=[legacy]))
        events = []

        await generator.run(todo_request(), events.append, forward_chunks=False)

        assert not any(isinstance(e, ChunkEvent) for e in events)

    @pytest.mark.asyncio
    async def test_malformed_legacy_response(self):
        generator, _ = make_generator(
            ScriptedUpstream(plan=TODO_PLAN, fail_all_files=True, legacy_texts=["Sorry, no JSON today."])
        )
        events = []

        with pytest.raises(GenerationError) as exc_info:
            await generator.run(todo_request(), events.append)

        assert exc_info.value.message == ErrorCategory.MALFORMED.message
        assert phases(events)[-1] is Phase.FAILED

    @pytest.mark.asyncio
    async def test_missing_credentials_propagate(self):
        generator, handler = make_generator(ScriptedUpstream(plan=TODO_PLAN), make_config(keys=()))
        events = []

        with pytest.raises(ConfigurationError):
            await generator.run(todo_request(), events.append)

        assert handler.calls == []
        assert Phase.FALLBACK not in phases(events)


class TestPromptAssembly:

    def test_plan_prompt_carries_options_and_existing_files(self):
        generator = make_generator(ScriptedUpstream())[0]
        request = GenerationRequest.create(
            [{"role": "user", "content": "add a login page"}],
            existing_file_paths=["/App.js", "/components/Navbar.js"],
            options=GenerationOptions(include_supabase=True, deploy_to_vercel=True),
        )

        system = generator.plan_messages(request)[0]["content"]

        assert "/lib/supabaseClient.js" in system
        assert "/vercel.json" in system
        assert "EXISTING FILES (update these, don't recreate): /App.js, /components/Navbar.js" in system

    def test_file_prompt_names_the_file_and_its_siblings(self):
        generator = make_generator(ScriptedUpstream())[0]
        plan = generator.parse_plan(json.dumps(TODO_PLAN))
        entry = plan.entries[2]

        system, user = generator.file_messages(todo_request(), entry, plan)

        assert "GENERATE FILE: /components/TodoList.js\n" in user["content"]
        assert "Build a todo app" in user["content"]
        assert "/components/TodoList.js" not in system["content"]
        assert "/components/TodoItem.js" in system["content"]

    def test_legacy_prompt_ends_with_reminder(self):
        generator = make_generator(ScriptedUpstream())[0]
        messages = generator.legacy_messages(todo_request())
        assert messages[0]["content"].endswith(prompts.LEGACY_REMINDER)
        assert messages[1] == {"role": "user", "content": "Build a todo app"}
