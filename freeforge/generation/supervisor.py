"""
Client Retry Supervisor

Caller-side wrapper around one whole generation request. Each attempt posts
the request to the generation endpoint and reads the event stream until a
terminal event; retryable outcomes are re-issued after progressive backoff.
Every read is raced against an inactivity window, and the whole call against
an absolute wall-clock ceiling.
"""

import asyncio
import json
import logging
from typing import Callable, List, Optional, Sequence

import aiohttp

from ..core.config import Config
from ..core.errors import ErrorCategory, GenerationError, GenerationFailedError, sanitize_error
from ..core.models import GenerationRequest, ProjectArtifact
from .events import ErrorEvent, FinalEvent, StreamEvent, decode_event

logger = logging.getLogger(__name__)

RETRYABLE_CATEGORIES = frozenset({ErrorCategory.TIMEOUT, ErrorCategory.NO_FILES, ErrorCategory.UPSTREAM})


class RetryableOutcome(GenerationError):
    """An attempt failed in a way worth re-issuing"""


class RetrySupervisor:
    """Bounded end-to-end retries for generation requests"""

    def __init__(self, endpoint: str, max_retries: int = 3, backoff_delays: Sequence[float] = (2.0, 5.0, 10.0),
                 inactivity_timeout: float = 90.0, total_timeout: float = 300.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.endpoint = endpoint
        self.max_retries = max_retries
        self.backoff_delays: List[float] = list(backoff_delays) or [0.0]
        self.inactivity_timeout = inactivity_timeout
        self.total_timeout = total_timeout
        self._session = session
        self.attempts = 0

    @classmethod
    def from_config(cls, config: Config, endpoint: Optional[str] = None,
                    session: Optional[aiohttp.ClientSession] = None) -> 'RetrySupervisor':
        return cls(
            endpoint=endpoint or config.client.endpoint,
            max_retries=config.client.max_retries,
            backoff_delays=config.client.backoff_delays,
            inactivity_timeout=config.client.inactivity_timeout,
            total_timeout=config.client.total_timeout,
            session=session,
        )

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)"""
        return self.backoff_delays[min(retry - 1, len(self.backoff_delays) - 1)]

    async def generate(self, request: GenerationRequest,
                       on_event: Optional[Callable[[StreamEvent], None]] = None) -> ProjectArtifact:
        """Return the artifact, or raise GenerationFailedError once retries or time run out"""
        self.attempts = 0
        try:
            return await asyncio.wait_for(self._generate(request, on_event), self.total_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"⏰ Generation request exceeded {self.total_timeout:.0f}s")
            raise GenerationFailedError(
                ErrorCategory.TIMEOUT.message,
                raw_detail=f"Request exceeded the {self.total_timeout:.0f}s ceiling",
                attempts=self.attempts,
            ) from e

    async def _generate(self, request: GenerationRequest, on_event) -> ProjectArtifact:
        if self._session is not None:
            return await self._retry_loop(self._session, request, on_event)
        async with aiohttp.ClientSession() as session:
            return await self._retry_loop(session, request, on_event)

    async def _retry_loop(self, session: aiohttp.ClientSession, request: GenerationRequest,
                          on_event) -> ProjectArtifact:
        total_attempts = self.max_retries + 1
        last_error: Optional[RetryableOutcome] = None

        for attempt in range(total_attempts):
            if attempt:
                delay = self.backoff_delay(attempt)
                logger.info(f"⏳ Retrying generation in {delay:.1f}s (attempt {attempt + 1}/{total_attempts})")
                await asyncio.sleep(delay)
            self.attempts = attempt + 1
            try:
                return await self._attempt(session, request, on_event)
            except RetryableOutcome as e:
                last_error = e
                logger.warning(f"⚠️ Attempt {attempt + 1}/{total_attempts} failed: {e.raw_detail}")

        raise GenerationFailedError(last_error.message, raw_detail=last_error.raw_detail, attempts=self.attempts)

    async def _read(self, response: aiohttp.ClientResponse) -> bytes:
        try:
            return await asyncio.wait_for(response.content.readany(), self.inactivity_timeout)
        except asyncio.TimeoutError as e:
            raise RetryableOutcome(
                ErrorCategory.TIMEOUT.message,
                raw_detail=f"No data received for {self.inactivity_timeout:.0f}s",
            ) from e

    def _terminal(self, message: str, raw_detail: Optional[str]) -> GenerationFailedError:
        logger.error(f"❌ Generation failed: {raw_detail or message}")
        return GenerationFailedError(message, raw_detail=raw_detail, attempts=self.attempts)

    async def _attempt(self, session: aiohttp.ClientSession, request: GenerationRequest,
                       on_event) -> ProjectArtifact:
        try:
            async with session.post(self.endpoint, json=request.to_payload(),
                                    headers={"Accept": "text/event-stream"}) as response:
                if response.status >= 400:
                    body = (await response.text())[:300]
                    raw = f"HTTP {response.status}: {body}"
                    if response.status >= 500:
                        raise RetryableOutcome(ErrorCategory.UPSTREAM.message, raw_detail=raw)
                    raise self._terminal(self._error_message(body, raw), raw)

                buffer = b""
                while True:
                    chunk = await self._read(response)
                    if not chunk:
                        break
                    buffer += chunk
                    while b"\n" in buffer:
                        line, buffer = buffer.split(b"\n", 1)
                        event = self._parse_line(line)
                        if event is None:
                            continue
                        if on_event is not None:
                            on_event(event)
                        if isinstance(event, FinalEvent):
                            return event.artifact
                        if isinstance(event, ErrorEvent):
                            if ErrorCategory.from_message(event.message) in RETRYABLE_CATEGORIES:
                                raise RetryableOutcome(event.message, raw_detail=event.raw_detail)
                            raise self._terminal(event.message, event.raw_detail)
        except aiohttp.ClientError as e:
            raise RetryableOutcome(ErrorCategory.NETWORK.message, raw_detail=f"{type(e).__name__}: {e}") from e

        raise RetryableOutcome(ErrorCategory.NETWORK.message, raw_detail="Stream ended without a result")

    @staticmethod
    def _parse_line(line: bytes) -> Optional[StreamEvent]:
        text = line.decode("utf-8", errors="replace").strip()
        if not text.startswith("data:"):
            return None
        try:
            return decode_event(json.loads(text[len("data:"):].strip()))
        except (ValueError, KeyError, TypeError):
            logger.debug(f"Skipping unreadable event line ({len(text)} chars)")
            return None

    @staticmethod
    def _error_message(body: str, raw: str) -> str:
        """Safe message for a 4xx reply, which carries {error} JSON"""
        try:
            data = json.loads(body)
        except ValueError:
            return sanitize_error(raw)
        if isinstance(data, dict) and isinstance(data.get("error"), str):
            return sanitize_error(data["error"])
        return sanitize_error(raw)
