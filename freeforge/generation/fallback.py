"""
Fallback Orchestrator

Orders (credential, model) combos by current health, tries them strictly one
after another through the Completion Transport and reports every outcome to
the HealthTracker. The first success wins.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from ..core.config import Config
from ..core.errors import (
    APIError,
    ConfigurationError,
    EmptyCompletionError,
    ErrorCategory,
    FallbackExhaustedError,
)
from ..core.health import HealthTracker
from .transport import CompletionTransport

logger = logging.getLogger(__name__)


RATE_LIMIT_STATUSES = (429, 402)
RATE_LIMIT_KEYWORDS = (
    "rate limit", "rate-limit", "too many requests", "credits", "quota",
    "billing", "payment required", "insufficient",
)
# Rate-limit wording scoped to one model or provider says nothing about the key
MODEL_SPECIFIC_HINTS = ("model", "provider", "upstream")


@dataclass(frozen=True)
class Combo:
    """One (credential, model) pairing considered for a single attempt"""
    credential_index: int
    model: str

    @property
    def label(self) -> str:
        return f"Key#{self.credential_index + 1} → {self.model}"


def is_rate_limit_error(status: Optional[int], body: Optional[str]) -> bool:
    """True when a failure should count against the credential rather than the model"""
    if status in RATE_LIMIT_STATUSES:
        return True
    text = (body or "").lower()
    if not any(keyword in text for keyword in RATE_LIMIT_KEYWORDS):
        return False
    return not any(hint in text for hint in MODEL_SPECIFIC_HINTS)


def is_credential_failure(error: BaseException) -> bool:
    if isinstance(error, APIError):
        return is_rate_limit_error(error.status, error.body)
    return False


class DeltaStream:
    """Stream handed back by a successful streaming attempt.

    The first delta was already read to prove the combo works; it is replayed
    before the rest of the upstream iterator. ``aclose`` aborts the in-flight
    request.
    """

    def __init__(self, first: str, rest: AsyncIterator[str], combo: Combo):
        self.combo = combo
        self._first: Optional[str] = first
        self._rest = rest
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self._first is not None:
            first, self._first = self._first, None
            return first
        try:
            return await self._rest.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

    async def aclose(self):
        self._closed = True
        await self._rest.aclose()

    async def collect(self) -> str:
        """Drain the stream into one string"""
        parts: List[str] = []
        async for delta in self:
            parts.append(delta)
        return "".join(parts)


class FallbackOrchestrator:
    """Sequential health-aware fallback across the credential pool and a model roster"""

    def __init__(self, transport: CompletionTransport, health: HealthTracker,
                 api_keys: List[str], attempt_delay: float = 0.3):
        self.transport = transport
        self.health = health
        self.api_keys = list(api_keys)
        self.attempt_delay = attempt_delay

    @classmethod
    def from_config(cls, config: Config, transport: Optional[CompletionTransport] = None,
                    health: Optional[HealthTracker] = None) -> 'FallbackOrchestrator':
        return cls(
            transport=transport or CompletionTransport(config),
            health=health or HealthTracker.from_config(config),
            api_keys=config.api.api_keys,
            attempt_delay=config.fallback.attempt_delay,
        )

    def build_combos(self, models: List[str]) -> List[Combo]:
        """Healthy models × usable credentials in roster order, else the full cross-product"""
        if not self.api_keys:
            raise ConfigurationError("No API keys configured")
        if not models:
            raise ConfigurationError("No models configured")

        usable = self.health.usable_credentials()
        if not usable:
            reinstated = self.health.next_usable_credential()
            usable = [reinstated] if reinstated is not None else []

        combos = [
            Combo(index, model)
            for model in models if self.health.model_healthy(model)
            for index in usable
        ]
        if not combos:
            logger.warning(f"⚠️ No healthy combos among {len(models)} model(s), trying the full roster")
            combos = [Combo(index, model) for model in models for index in range(len(self.api_keys))]
        return combos

    def _record_success(self, combo: Combo):
        self.health.record_success(combo.credential_index)
        self.health.record_model_success(combo.model)

    def _record_failure(self, combo: Combo, error: BaseException):
        self.health.record_model_failure(combo.model)
        if is_credential_failure(error):
            self.health.record_failure(combo.credential_index)

    def _exhausted(self, combos: List[Combo], last_error: Optional[BaseException]) -> FallbackExhaustedError:
        if last_error is not None and is_credential_failure(last_error):
            logger.error(f"❌ All {len(combos)} combo(s) rate limited")
            return FallbackExhaustedError(ErrorCategory.BUSY.message, last_error=last_error, rate_limited=True)
        logger.error(f"❌ All {len(combos)} combo(s) failed: {last_error}")
        return FallbackExhaustedError(str(last_error) if last_error else "All models failed", last_error=last_error)

    async def complete(self, messages: List[Dict[str, str]], models: List[str], *,
                       max_tokens: Optional[int] = None, temperature: Optional[float] = None,
                       timeout: Optional[float] = None) -> str:
        """Non-streaming attempt across combos; returns the first non-empty completion"""
        combos = self.build_combos(models)
        last_error: Optional[BaseException] = None

        for position, combo in enumerate(combos):
            logger.info(f"🔄 Try: {combo.label}")
            try:
                content = await self.transport.complete(
                    self.api_keys[combo.credential_index], combo.model, messages,
                    max_tokens=max_tokens, temperature=temperature, timeout=timeout,
                )
                logger.info(f"✓ {combo.label} ({len(content)} chars)")
                self._record_success(combo)
                return content
            except APIError as e:
                logger.warning(f"✗ {combo.label}: {e.message[:100]}")
                last_error = e
                self._record_failure(combo, e)
            if position < len(combos) - 1:
                await asyncio.sleep(self.attempt_delay)

        raise self._exhausted(combos, last_error)

    async def stream(self, messages: List[Dict[str, str]], models: List[str], *,
                     max_tokens: Optional[int] = None,
                     temperature: Optional[float] = None) -> DeltaStream:
        """Streaming attempt across combos.

        A combo counts as successful once its first delta arrives; failures
        after that point belong to the caller, which retries the whole
        pipeline instead.
        """
        combos = self.build_combos(models)
        last_error: Optional[BaseException] = None

        for position, combo in enumerate(combos):
            logger.info(f"🔄 Try (stream): {combo.label}")
            deltas = self.transport.stream(
                self.api_keys[combo.credential_index], combo.model, messages,
                max_tokens=max_tokens, temperature=temperature,
            )
            try:
                first = await deltas.__anext__()
            except StopAsyncIteration:
                last_error = EmptyCompletionError(self.transport.provider, f"Empty stream from {combo.model}")
                logger.warning(f"✗ {combo.label}: Empty stream")
                self._record_failure(combo, last_error)
            except APIError as e:
                logger.warning(f"✗ {combo.label}: {e.message[:100]}")
                last_error = e
                self._record_failure(combo, e)
            else:
                logger.info(f"✓ {combo.label} (streaming)")
                self._record_success(combo)
                return DeltaStream(first, deltas, combo)
            await deltas.aclose()
            if position < len(combos) - 1:
                await asyncio.sleep(self.attempt_delay)

        raise self._exhausted(combos, last_error)
