"""
Phased Generation Orchestrator

Turns a conversation into a ProjectArtifact in two small steps instead of one
huge completion:

    planning  -> one non-streaming call on the fast roster returns a file plan
    generating -> one non-streaming call per planned file on the code roster

Files are generated strictly one at a time. A file that exhausts its retries
becomes a placeholder so the output always has one entry per planned path.
Only when the phased path yields nothing usable does the orchestrator fall
back to the legacy single-pass request, which streams a whole project as one
JSON document.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.config import Config
from ..core.errors import (
    APIError,
    ConfigurationError,
    ErrorCategory,
    GenerationError,
    NoFilesProducedError,
    sanitize_error,
)
from ..core.models import (
    DEFAULT_PROJECT_TITLE,
    FilePlanEntry,
    GeneratedFile,
    GenerationRequest,
    ProjectArtifact,
    normalize_path,
)
from ..utils.llm_parsing import OutputRecoveryParser, clean_code_response, parse_project_artifact
from . import prompts
from .events import ChunkEvent, Phase, PhaseEvent, StreamEvent
from .fallback import FallbackOrchestrator

logger = logging.getLogger(__name__)

Emit = Callable[[StreamEvent], Any]

PLACEHOLDER_MARKER = "GENERATION FAILED"


@dataclass
class FilePlan:
    """Output of the planning phase"""
    entries: List[FilePlanEntry] = field(default_factory=list)
    project_title: str = DEFAULT_PROJECT_TITLE
    explanation: str = ""
    is_default: bool = False

    @property
    def paths(self) -> List[str]:
        return [entry.path for entry in self.entries]


def _component_name(path: str) -> str:
    stem = PurePosixPath(path).stem or "Placeholder"
    name = ''.join(part[:1].upper() + part[1:] for part in stem.replace('-', '_').split('_') if part)
    if not name or not name[0].isalpha():
        name = "Placeholder" + name
    return name


def placeholder_code(path: str, reason: str) -> str:
    """Source for a file whose generation failed, commented in the file's own syntax"""
    suffix = PurePosixPath(path).suffix.lower()
    lines = [
        f"{PLACEHOLDER_MARKER}: {path}",
        f"Reason: {reason}",
        "Ask FreeForge to regenerate this file.",
    ]

    if suffix in ('.js', '.jsx', '.ts', '.tsx', '.mjs'):
        header = '\n'.join(f"// {line}" for line in lines)
        return f"{header}\nexport default function {_component_name(path)}() {{\n  return null;\n}}\n"
    if suffix in ('.css', '.scss'):
        return "/*\n" + '\n'.join(f" * {line}" for line in lines) + "\n */\n"
    if suffix in ('.html', '.svg', '.xml', '.md'):
        return "<!--\n" + '\n'.join(lines) + "\n-->\n"
    if suffix == '.json':
        return json.dumps({"error": f"{PLACEHOLDER_MARKER}: {reason}"}, indent=2) + "\n"
    return '\n'.join(f"# {line}" for line in lines) + "\n"


class PhasedGenerator:
    """Plan-then-generate pipeline over the Fallback Orchestrator"""

    def __init__(self, orchestrator: FallbackOrchestrator, config: Config,
                 parser: Optional[OutputRecoveryParser] = None):
        self.orchestrator = orchestrator
        self.settings = config.generation
        self.fast_models = list(config.api.fast_models)
        self.code_models = list(config.api.code_models)
        self.parser = parser or OutputRecoveryParser()

    # --- Planning ------------------------------------------------------------

    def default_plan(self) -> FilePlan:
        return FilePlan(
            entries=[
                FilePlanEntry(self.settings.entry_file, "Main application component with the complete UI"),
                FilePlanEntry(self.settings.stylesheet_file, "Global styles with Tailwind directives"),
            ],
            is_default=True,
        )

    def plan_messages(self, request: GenerationRequest) -> List[Dict[str, str]]:
        system = (
            prompts.FILE_PLAN_PROMPT
            + prompts.options_note(request.options)
            + prompts.existing_files_note(request.existing_file_paths)
        )
        return [{"role": "system", "content": system}] + request.api_messages()

    def parse_plan(self, raw: str) -> Optional[FilePlan]:
        """Validate a planning response; None when it holds no usable entries"""
        value = self.parser.recover(raw)
        title, explanation = DEFAULT_PROJECT_TITLE, ""

        if isinstance(value, dict):
            title = str(value.get('projectTitle') or DEFAULT_PROJECT_TITLE)
            explanation = str(value.get('explanation') or "")
            items: Any = value.get('files')
        else:
            items = value

        if isinstance(items, dict):
            items = [
                {'path': path, 'description': desc.get('description') if isinstance(desc, dict) else desc}
                for path, desc in items.items()
            ]
        if not isinstance(items, list):
            return None

        entries: List[FilePlanEntry] = []
        seen = set()
        for item in items:
            if not isinstance(item, dict):
                continue
            path, description = item.get('path'), item.get('description')
            if not isinstance(path, str) or not path.strip():
                continue
            if not isinstance(description, str) or not description.strip():
                continue
            path = normalize_path(path)
            if path in seen:
                continue
            seen.add(path)
            entries.append(FilePlanEntry(path, description.strip()))

        if not entries:
            return None
        return FilePlan(entries=self._enforce_invariants(entries), project_title=title, explanation=explanation)

    def _enforce_invariants(self, entries: List[FilePlanEntry]) -> List[FilePlanEntry]:
        """Force the entry file and stylesheet into the plan and cap its size"""
        entry_file, stylesheet = self.settings.entry_file, self.settings.stylesheet_file
        paths = [e.path for e in entries]
        if entry_file not in paths:
            logger.info(f"➕ Plan is missing {entry_file}, adding it")
            entries.insert(0, FilePlanEntry(entry_file, "Main application component that renders the app"))
        if stylesheet not in paths:
            logger.info(f"➕ Plan is missing {stylesheet}, adding it")
            entries.insert(1, FilePlanEntry(stylesheet, "Global styles with Tailwind directives"))

        limit = self.settings.max_plan_files
        if len(entries) > limit:
            logger.warning(f"✂️ Plan has {len(entries)} files, keeping {limit}")
            required = {entry_file, stylesheet}
            budget = limit - len(required)
            kept = []
            for entry in entries:
                if entry.path in required:
                    kept.append(entry)
                elif budget > 0:
                    kept.append(entry)
                    budget -= 1
            entries = kept
        return entries

    async def plan_files(self, request: GenerationRequest) -> FilePlan:
        """Ask for a file plan; falls back to the built-in default instead of failing"""
        messages = self.plan_messages(request)
        attempts = self.settings.plan_max_retries

        for attempt in range(1, attempts + 1):
            try:
                raw = await self.orchestrator.complete(
                    messages, self.fast_models,
                    max_tokens=self.settings.plan_max_tokens,
                    temperature=self.settings.plan_temperature,
                    timeout=self.settings.plan_timeout,
                )
                plan = self.parse_plan(raw)
                if plan is not None:
                    logger.info(f"📋 Plan ready: {len(plan.entries)} file(s) for '{plan.project_title}'")
                    return plan
                logger.warning(f"⚠️ Plan attempt {attempt}/{attempts} returned no valid entries")
            except ConfigurationError:
                raise
            except (APIError, GenerationError) as e:
                logger.warning(f"⚠️ Plan attempt {attempt}/{attempts} failed: {e}")

            if attempt < attempts:
                await asyncio.sleep(self.settings.plan_retry_delay)

        logger.warning("📋 Planning failed, using the default plan")
        return self.default_plan()

    # --- Per-file generation ---------------------------------------------------

    def file_messages(self, request: GenerationRequest, entry: FilePlanEntry,
                      plan: FilePlan) -> List[Dict[str, str]]:
        others = [path for path in plan.paths if path != entry.path]
        return [
            {"role": "system", "content": prompts.SINGLE_FILE_PROMPT + prompts.other_files_note(others)},
            {"role": "user", "content": prompts.single_file_request(request.user_request, entry.path, entry.description)},
        ]

    def placeholder(self, entry: FilePlanEntry, error: Union[str, BaseException, None]) -> GeneratedFile:
        reason = sanitize_error(error)
        logger.warning(f"🚧 Placeholder for {entry.path}: {error}")
        return GeneratedFile(entry.path, placeholder_code(entry.path, reason), placeholder=True, error=reason)

    async def generate_file(self, request: GenerationRequest, entry: FilePlanEntry,
                            plan: FilePlan) -> GeneratedFile:
        """Generate one file with bounded retries; returns a placeholder when they run out"""
        messages = self.file_messages(request, entry, plan)
        attempts = self.settings.file_max_retries
        last_error: Union[str, BaseException, None] = None

        for attempt in range(attempts):
            try:
                raw = await self.orchestrator.complete(
                    messages, self.code_models,
                    max_tokens=self.settings.file_max_tokens,
                    temperature=self.settings.file_temperature,
                    timeout=self.settings.file_timeout,
                )
                code = clean_code_response(raw)
                if len(code) > self.settings.min_file_length:
                    logger.info(f"📄 {entry.path}: {len(code)} chars")
                    return GeneratedFile(entry.path, code)
                last_error = f"Response too short for {entry.path} ({len(code)} chars)"
                logger.warning(f"⚠️ {last_error}")
            except ConfigurationError:
                raise
            except (APIError, GenerationError) as e:
                last_error = e
                logger.warning(f"⚠️ {entry.path} attempt {attempt + 1}/{attempts} failed: {e}")

            if attempt < attempts - 1:
                await asyncio.sleep(self.settings.file_retry_base_delay * (2 ** attempt))

        return self.placeholder(entry, last_error)

    async def generate_files(self, request: GenerationRequest, plan: FilePlan,
                             emit: Emit) -> Dict[str, GeneratedFile]:
        """Generate every planned file in order, one at a time"""
        files: Dict[str, GeneratedFile] = {}
        total = len(plan.entries)

        for index, entry in enumerate(plan.entries, 1):
            emit(PhaseEvent(Phase.GENERATING, f"Generating {entry.path} ({index}/{total})",
                            current_file=entry.path, progress=index, total=total))
            files[entry.path] = await self.generate_file(request, entry, plan)
            if index < total:
                await asyncio.sleep(self.settings.file_delay)
        return files

    # --- Legacy single-pass path -----------------------------------------------

    def legacy_messages(self, request: GenerationRequest) -> List[Dict[str, str]]:
        system = (
            prompts.CODE_GEN_PROMPT
            + prompts.options_note(request.options)
            + prompts.existing_files_note(request.existing_file_paths, label="CURRENT FILES")
            + "\n\n" + prompts.LEGACY_REMINDER
        )
        return [{"role": "system", "content": system}] + request.api_messages()

    async def generate_legacy(self, request: GenerationRequest,
                              on_chunk: Optional[Callable[[str], Any]] = None) -> ProjectArtifact:
        """Stream a whole project as one document and recover it"""
        stream = await self.orchestrator.stream(
            self.legacy_messages(request), self.code_models,
            max_tokens=self.settings.legacy_max_tokens,
        )
        parts: List[str] = []
        try:
            async for delta in stream:
                parts.append(delta)
                if on_chunk is not None:
                    on_chunk(delta)
        finally:
            await stream.aclose()

        text = "".join(parts)
        parsed = parse_project_artifact(text, self.parser)
        if parsed is None:
            raise GenerationError(ErrorCategory.MALFORMED.message,
                                  raw_detail=f"Failed to parse AI response as valid code JSON ({len(text)} chars)")

        artifact = ProjectArtifact.from_dict(parsed)
        if not artifact.files:
            raise NoFilesProducedError(ErrorCategory.NO_FILES.message,
                                       raw_detail="Legacy response contained an empty file map")
        logger.info(f"📦 Legacy path produced {len(artifact.files)} file(s)")
        return artifact

    # --- Whole run -------------------------------------------------------------

    async def run(self, request: GenerationRequest, emit: Emit, forward_chunks: bool = True) -> ProjectArtifact:
        """Run one pipeline pass, emitting phase events; raises when no files can be produced"""
        emit(PhaseEvent(Phase.PLANNING, "Planning project structure..."))
        try:
            plan = await self.plan_files(request)
            total = len(plan.entries)
            emit(PhaseEvent(Phase.PLANNED, f"Planned {total} file(s)", total=total, plan=plan.entries))

            files = await self.generate_files(request, plan, emit)
            if any(not f.placeholder for f in files.values()):
                artifact = ProjectArtifact(plan.project_title, plan.explanation, files)
                failed = len(artifact.placeholder_paths)
                status = f"Generated {total - failed}/{total} file(s)"
                if failed:
                    status += f", {failed} placeholder(s)"
                emit(PhaseEvent(Phase.DONE, status, progress=total, total=total))
                return artifact
            logger.warning(f"⚠️ All {total} planned file(s) failed, entering the legacy path")
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Phased generation failed ({type(e).__name__}: {e}), entering the legacy path")

        emit(PhaseEvent(Phase.FALLBACK, "Retrying with single-pass generation..."))
        try:
            artifact = await self.generate_legacy(
                request, on_chunk=(lambda text: emit(ChunkEvent(text))) if forward_chunks else None
            )
        except Exception as e:
            emit(PhaseEvent(Phase.FAILED, sanitize_error(e)))
            raise
        emit(PhaseEvent(Phase.DONE, f"Generated {len(artifact.files)} file(s)",
                        progress=len(artifact.files), total=len(artifact.files)))
        return artifact
