"""
Generation service

Server-side entry points. ``open_stream`` wraps whole pipeline runs in a
bounded retry loop and exposes them as an EventStream; raw token chunks are
forwarded on the first attempt only. The chat and enhance operations share the
same Fallback Orchestrator and health state.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from ..core.config import Config
from ..core.errors import APIError, ConfigurationError, GenerationError, GenerationFailedError
from ..core.health import HealthTracker
from ..core.models import ChatMessage, GenerationRequest, ProjectArtifact
from ..utils.llm_parsing import strip_reasoning
from . import prompts
from .events import ChunkEvent, Emit, ErrorEvent, EventStream, FinalEvent, ResultEvent, StreamEvent
from .fallback import FallbackOrchestrator
from .phased_generator import PhasedGenerator
from .transport import CompletionTransport

logger = logging.getLogger(__name__)


class GenerationService:
    """Owns the transport, health tracker, orchestrator and pipeline for one process"""

    def __init__(self, config: Config, orchestrator: Optional[FallbackOrchestrator] = None,
                 generator: Optional[PhasedGenerator] = None):
        self.config = config
        self.orchestrator = orchestrator or FallbackOrchestrator.from_config(config)
        self.generator = generator or PhasedGenerator(self.orchestrator, config)

    @classmethod
    def from_config(cls, config: Config, transport: Optional[CompletionTransport] = None,
                    health: Optional[HealthTracker] = None) -> 'GenerationService':
        orchestrator = FallbackOrchestrator.from_config(config, transport=transport, health=health)
        return cls(config, orchestrator=orchestrator)

    @property
    def health(self) -> HealthTracker:
        return self.orchestrator.health

    async def aclose(self):
        await self.orchestrator.transport.aclose()

    # --- Project generation ----------------------------------------------------

    def open_stream(self, request: GenerationRequest) -> EventStream:
        """Event stream for one generation request"""
        return EventStream(lambda emit: self._run_pipeline(request, emit), self.config.stream.ping_interval)

    async def _run_pipeline(self, request: GenerationRequest, emit: Emit):
        attempts = self.config.stream.max_pipeline_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(attempts):
            first_attempt = attempt == 0
            if not first_attempt:
                await asyncio.sleep(self.config.stream.pipeline_retry_delay)
                logger.info(f"🔁 Pipeline attempt {attempt + 1}/{attempts}")

            try:
                artifact = await self.generator.run(request, emit, forward_chunks=first_attempt)
            except ConfigurationError as e:
                logger.error(f"❌ Generation cannot run: {e}")
                last_error = e
                break
            except Exception as e:
                logger.warning(f"⚠️ Pipeline attempt {attempt + 1}/{attempts} failed: {type(e).__name__}: {e}")
                last_error = e
                continue

            logger.info(f"✅ Generated '{artifact.project_title}' with {len(artifact.files)} file(s)")
            emit(FinalEvent(artifact))
            return

        logger.error(f"❌ All {attempts} pipeline attempt(s) failed: {last_error}")
        emit(ErrorEvent.from_exception(last_error))

    async def generate(self, request: GenerationRequest,
                       on_event: Optional[Callable[[StreamEvent], None]] = None) -> ProjectArtifact:
        """Run the pipeline in-process and return the artifact"""
        async with self.open_stream(request) as stream:
            async for event in stream:
                if on_event is not None:
                    on_event(event)
                if isinstance(event, FinalEvent):
                    return event.artifact
                if isinstance(event, ErrorEvent):
                    raise GenerationFailedError(event.message, raw_detail=event.raw_detail, attempts=1)
        raise GenerationFailedError("Stream ended without a result")

    # --- Chat and prompt enhancement ---------------------------------------------

    def chat_messages(self, transcript: Iterable) -> List[dict]:
        turns = [m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m) for m in transcript]
        return [{"role": "system", "content": prompts.CHAT_PROMPT}] + [m.to_api() for m in turns]

    def chat_stream(self, transcript: Iterable) -> EventStream:
        """Stream a short natural-language acknowledgement of the conversation"""
        messages = self.chat_messages(transcript)

        async def produce(emit: Emit):
            parts: List[str] = []
            try:
                stream = await self.orchestrator.stream(messages, self.config.api.fast_models)
                try:
                    async for delta in stream:
                        parts.append(delta)
                        emit(ChunkEvent(delta))
                finally:
                    await stream.aclose()
            except (APIError, GenerationError) as e:
                logger.warning(f"⚠️ Chat stream failed: {e}")
                emit(ErrorEvent.from_exception(e))
                return
            emit(ResultEvent("".join(parts)))

        return EventStream(produce, self.config.stream.ping_interval)

    def enhance_messages(self, prompt: str) -> List[dict]:
        return [
            {"role": "system", "content": prompts.ENHANCE_SYSTEM_PROMPT},
            {"role": "user", "content": f"{prompts.ENHANCE_PROMPT_RULES}\n\nOriginal prompt: {prompt}"},
        ]

    async def enhance_prompt(self, prompt: str) -> str:
        """Expand a short idea into a product description"""
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("Invalid prompt provided")
        raw = await self.orchestrator.complete(self.enhance_messages(prompt), self.config.api.fast_models)
        enhanced = strip_reasoning(raw).strip()
        if not enhanced:
            raise GenerationError("No response from AI")
        return enhanced

    def enhance_stream(self, prompt: str) -> EventStream:
        async def produce(emit: Emit):
            try:
                enhanced = await self.enhance_prompt(prompt)
            except (APIError, GenerationError) as e:
                logger.warning(f"⚠️ Prompt enhancement failed: {e}")
                emit(ErrorEvent.from_exception(e))
                return
            emit(ChunkEvent(enhanced))
            emit(ResultEvent(enhanced, key='enhancedPrompt'))

        return EventStream(produce, self.config.stream.ping_interval)
