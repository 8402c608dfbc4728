"""
Event Stream Protocol

Typed StreamEvents, their ``data: <json>\\n\\n`` wire framing, and the
cancellable single-producer/single-consumer channel that carries them from a
pipeline run to its caller, interleaved with keepalive pings.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import sanitize_error
from ..core.models import FilePlanEntry, ProjectArtifact

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Pipeline phases reported to the caller"""
    PLANNING = "planning"
    PLANNED = "planned"
    GENERATING = "generating"
    FALLBACK = "fallback"
    DONE = "done"
    FAILED = "failed"


class StreamEvent:
    """Base of the event union"""
    terminal = False

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class PingEvent(StreamEvent):
    def to_dict(self) -> Dict[str, Any]:
        return {'ping': True}


@dataclass
class PhaseEvent(StreamEvent):
    phase: Phase
    status: str
    current_file: Optional[str] = None
    progress: Optional[int] = None
    total: Optional[int] = None
    plan: Optional[List[FilePlanEntry]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'phase': self.phase.value, 'status': self.status}
        if self.current_file is not None:
            data['currentFile'] = self.current_file
        if self.progress is not None:
            data['progress'] = self.progress
        if self.total is not None:
            data['total'] = self.total
        if self.plan is not None:
            data['plan'] = [entry.to_dict() for entry in self.plan]
        return data


@dataclass
class ChunkEvent(StreamEvent):
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {'chunk': self.text}


@dataclass
class FinalEvent(StreamEvent):
    artifact: ProjectArtifact
    terminal = True

    def to_dict(self) -> Dict[str, Any]:
        return {'final': self.artifact.to_dict(), 'done': True}


@dataclass
class ResultEvent(StreamEvent):
    """Terminal text result of the chat and enhance streams"""
    text: str
    key: str = 'result'
    terminal = True

    def to_dict(self) -> Dict[str, Any]:
        return {self.key: self.text, 'done': True}


@dataclass
class ErrorEvent(StreamEvent):
    message: str
    raw_detail: Optional[str] = None
    terminal = True

    @classmethod
    def from_exception(cls, error: BaseException) -> 'ErrorEvent':
        raw = getattr(error, 'raw_detail', None) or str(error)
        return cls(message=sanitize_error(error), raw_detail=raw)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'error': self.message}
        if self.raw_detail:
            data['rawError'] = self.raw_detail
        data['done'] = True
        return data


def encode_sse(event: StreamEvent) -> bytes:
    """Frame one event as a server-sent-events data line"""
    return f"data: {json.dumps(event.to_dict())}\n\n".encode('utf-8')


def decode_event(data: Dict[str, Any]) -> StreamEvent:
    """Rebuild a typed event from its wire dict; raises ValueError on unknown shapes"""
    if not isinstance(data, dict):
        raise ValueError(f"Stream event must be an object, got {type(data).__name__}")
    if data.get('ping'):
        return PingEvent()
    if 'error' in data:
        return ErrorEvent(message=str(data['error']), raw_detail=data.get('rawError'))
    if 'final' in data:
        return FinalEvent(ProjectArtifact.from_dict(data['final'] or {}))
    if 'chunk' in data:
        return ChunkEvent(str(data['chunk']))
    if 'phase' in data:
        plan = data.get('plan')
        return PhaseEvent(
            phase=Phase(data['phase']),
            status=str(data.get('status', '')),
            current_file=data.get('currentFile'),
            progress=data.get('progress'),
            total=data.get('total'),
            plan=[FilePlanEntry(e['path'], e.get('description', '')) for e in plan] if isinstance(plan, list) else None,
        )
    for key in ('result', 'enhancedPrompt'):
        if key in data:
            return ResultEvent(str(data[key]), key=key)
    raise ValueError(f"Unknown stream event keys: {sorted(data)}")


Emit = Callable[[StreamEvent], bool]
Producer = Callable[[Emit], Awaitable[None]]


class EventChannel:
    """Ordered in-process channel; a terminal event closes it and later sends are no-ops"""

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: StreamEvent) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(event)
        if event.terminal:
            self.close()
        return True

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            self._queue.put_nowait(self._CLOSED)
            raise StopAsyncIteration
        return item


class EventStream:
    """Cancellable stream of events fed by one producer coroutine and a ping ticker.

    Both tasks start on first iteration. The ticker is cancelled as soon as
    the producer finishes, and ``aclose`` cancels both so any in-flight
    upstream request is aborted.
    """

    def __init__(self, producer: Producer, ping_interval: float = 15.0):
        self._producer = producer
        self._ping_interval = ping_interval
        self._channel = EventChannel()
        self._producer_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None

    def _start(self):
        if self._producer_task is not None:
            return
        self._producer_task = asyncio.ensure_future(self._run_producer())
        self._ping_task = asyncio.ensure_future(self._ping_loop())

    async def _run_producer(self):
        try:
            await self._producer(self._channel.send)
        except Exception as e:
            logger.exception(f"💥 Event producer crashed: {e}")
            self._channel.send(ErrorEvent.from_exception(e))
        finally:
            if self._ping_task is not None:
                self._ping_task.cancel()
            self._channel.close()

    async def _ping_loop(self):
        while not self._channel.closed:
            await asyncio.sleep(self._ping_interval)
            self._channel.send(PingEvent())

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        self._start()
        return await self._channel.__anext__()

    async def aclose(self):
        """Stop emission and cancel the producer and ticker"""
        self._channel.close()
        tasks = [t for t in (self._producer_task, self._ping_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def collect(self) -> List[StreamEvent]:
        """Drain every event until the stream ends"""
        return [event async for event in self]
