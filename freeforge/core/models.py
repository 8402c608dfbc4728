"""
Data model for FreeForge generation runs
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional


DEFAULT_PROJECT_TITLE = "Generated Project"


@dataclass(frozen=True)
class ChatMessage:
    """One transcript turn"""
    role: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChatMessage':
        return cls(role=str(data.get('role') or 'user'), content=str(data.get('content') or ''))

    def to_api(self) -> Dict[str, str]:
        """Upstream wire form; the UI labels model turns 'ai'"""
        role = "assistant" if self.role == "ai" else self.role
        return {"role": role, "content": self.content}


@dataclass(frozen=True)
class GenerationOptions:
    """Boolean build options supplied by the caller"""
    include_supabase: bool = False
    deploy_to_vercel: bool = False


@dataclass(frozen=True)
class GenerationRequest:
    """Immutable input of one pipeline run"""
    transcript: tuple
    existing_file_paths: FrozenSet[str] = frozenset()
    options: GenerationOptions = GenerationOptions()

    @classmethod
    def create(cls, transcript: Iterable[Any], existing_file_paths: Iterable[str] = (),
               options: Optional[GenerationOptions] = None) -> 'GenerationRequest':
        messages = tuple(m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m) for m in transcript)
        return cls(
            transcript=messages,
            existing_file_paths=frozenset(str(p) for p in existing_file_paths),
            options=options or GenerationOptions(),
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'GenerationRequest':
        """Build a request from the HTTP body: {messages, currentFilePaths, includeSupabase, deployToVercel}"""
        messages = payload.get('messages')
        paths = payload.get('currentFilePaths')
        return cls.create(
            transcript=[m for m in messages if isinstance(m, dict)] if isinstance(messages, list) else [],
            existing_file_paths=[p for p in paths if isinstance(p, str)] if isinstance(paths, list) else [],
            options=GenerationOptions(
                include_supabase=bool(payload.get('includeSupabase')),
                deploy_to_vercel=bool(payload.get('deployToVercel')),
            ),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            'messages': [{'role': m.role, 'content': m.content} for m in self.transcript],
            'currentFilePaths': sorted(self.existing_file_paths),
            'includeSupabase': self.options.include_supabase,
            'deployToVercel': self.options.deploy_to_vercel,
        }

    def api_messages(self) -> List[Dict[str, str]]:
        return [m.to_api() for m in self.transcript]

    @property
    def user_request(self) -> str:
        """The latest user turn, which is what the per-file prompts build against"""
        for message in reversed(self.transcript):
            if message.role == "user" and message.content.strip():
                return message.content
        return ""


@dataclass(frozen=True)
class FilePlanEntry:
    """One file the planning phase decided to generate"""
    path: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {'path': self.path, 'description': self.description}


@dataclass
class GeneratedFile:
    """Generated source for one plan entry"""
    path: str
    code: str
    placeholder: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code}


@dataclass
class ProjectArtifact:
    """The sole externally meaningful output of one pipeline run"""
    project_title: str
    explanation: str
    files: Dict[str, GeneratedFile] = field(default_factory=dict)

    @property
    def placeholder_paths(self) -> List[str]:
        return [path for path, f in self.files.items() if f.placeholder]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'projectTitle': self.project_title,
            'explanation': self.explanation,
            'files': {path: f.to_dict() for path, f in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProjectArtifact':
        """Accept a parsed artifact document, normalizing paths and file values"""
        files = normalize_file_map(data.get('files') or {})
        return cls(
            project_title=str(data.get('projectTitle') or DEFAULT_PROJECT_TITLE),
            explanation=str(data.get('explanation') or ''),
            files={path: GeneratedFile(path=path, code=code) for path, code in files.items()},
        )


def normalize_path(path: str) -> str:
    """Absolute path with a leading '/', forward slashes and no src/ root prefix"""
    cleaned = str(path).strip().strip('"\'').replace('\\', '/')
    while cleaned.startswith('./'):
        cleaned = cleaned[2:]
    cleaned = '/' + cleaned.lstrip('/')
    if cleaned.startswith('/src/'):
        cleaned = cleaned[len('/src'):]
    while '//' in cleaned:
        cleaned = cleaned.replace('//', '/')
    return cleaned


def normalize_file_map(files: Dict[str, Any]) -> Dict[str, str]:
    """Turn a loosely shaped file map into {path: code}.

    Bare string values are taken as code; objects without a ``code`` key are
    kept as pretty-printed JSON rather than dropped.
    """
    normalized: Dict[str, str] = {}
    if not isinstance(files, dict):
        return normalized
    for path, content in files.items():
        if isinstance(content, str):
            code = content
        elif isinstance(content, dict):
            if isinstance(content.get('code'), str):
                code = content['code']
            else:
                code = json.dumps(content, indent=2)
        else:
            continue
        normalized[normalize_path(path)] = code
    return normalized
