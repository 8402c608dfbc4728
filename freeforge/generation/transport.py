"""
Completion Transport

Issues streaming and non-streaming chat-completion requests against an
OpenAI-compatible endpoint. Every network wait is raced against a timer:
non-streaming calls get one absolute ceiling, streaming calls get an absolute
per-attempt ceiling plus a shorter first-byte ceiling that only applies until
the first line arrives.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..core.config import Config
from ..core.errors import (
    APIError,
    CompletionTimeoutError,
    EmptyCompletionError,
    UpstreamConnectionError,
    UpstreamHTTPError,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def extract_delta(payload: Dict[str, Any]) -> str:
    """Text delta of one streamed event, or '' when the event carries none"""
    choices = payload.get('choices') or []
    if not choices or not isinstance(choices[0], dict):
        return ''
    delta = choices[0].get('delta') or {}
    content = delta.get('content') if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ''


def extract_message(payload: Dict[str, Any]) -> str:
    """Completion text of a non-streaming response"""
    choices = payload.get('choices') or []
    if not choices or not isinstance(choices[0], dict):
        return ''
    message = choices[0].get('message') or {}
    content = message.get('content') if isinstance(message, dict) else None
    return content if isinstance(content, str) else ''


class CompletionTransport:
    """One outbound HTTP request per attempt, with layered timeouts"""

    provider = "OpenRouter"

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None):
        self.base_url = config.api.base_url
        self.site_url = config.api.site_url
        self.site_name = config.api.site_name
        self.disable_proxy = config.api.disable_proxy
        self.request_timeout = config.transport.request_timeout
        self.stream_timeout = config.transport.stream_timeout
        self.first_chunk_timeout = config.transport.first_chunk_timeout
        self.connect_timeout = config.transport.connect_timeout
        self.error_body_limit = config.transport.error_body_limit
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                trust_env=not self.disable_proxy,
                timeout=httpx.Timeout(None, connect=self.connect_timeout),
            )
            if self.disable_proxy:
                logger.info("🚫 Proxy usage disabled for the completion client")
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.site_url,
            "X-Title": self.site_name,
        }

    @staticmethod
    def _body(model: str, messages: List[Dict[str, str]], max_tokens: Optional[int],
              temperature: Optional[float], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": model, "messages": messages}
        if max_tokens:
            body["max_tokens"] = max_tokens
        if temperature is not None:
            body["temperature"] = temperature
        if stream:
            body["stream"] = True
        return body

    def _http_error(self, response: httpx.Response) -> UpstreamHTTPError:
        return UpstreamHTTPError(self.provider, response.status_code, response.text[:self.error_body_limit])

    # --- Non-streaming -----------------------------------------------------

    async def complete(self, api_key: str, model: str, messages: List[Dict[str, str]], *,
                       max_tokens: Optional[int] = None, temperature: Optional[float] = None,
                       timeout: Optional[float] = None) -> str:
        """Return the full completion text"""
        timeout = timeout or self.request_timeout
        try:
            return await asyncio.wait_for(
                self._complete(api_key, model, messages, max_tokens, temperature), timeout
            )
        except asyncio.TimeoutError as e:
            raise CompletionTimeoutError(self.provider, f"Timeout after {timeout:.0f}s waiting for {model}") from e

    async def _complete(self, api_key, model, messages, max_tokens, temperature) -> str:
        client = self._get_client()
        try:
            response = await client.post(
                self.base_url,
                headers=self._headers(api_key),
                json=self._body(model, messages, max_tokens, temperature, stream=False),
            )
        except httpx.TimeoutException as e:
            raise CompletionTimeoutError(self.provider, f"Connection timeout for {model}: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamConnectionError(self.provider, f"Connection error for {model}: {e}", original_error=e) from e

        if not response.is_success:
            raise self._http_error(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(self.provider, "INVALID_RESPONSE", f"Malformed JSON body from {model}", original_error=e) from e

        content = extract_message(payload) if isinstance(payload, dict) else ''
        if not content.strip():
            raise EmptyCompletionError(self.provider, f"Empty response from {model}")
        return content

    # --- Streaming -----------------------------------------------------------

    async def stream(self, api_key: str, model: str, messages: List[Dict[str, str]], *,
                     max_tokens: Optional[int] = None,
                     temperature: Optional[float] = None) -> AsyncIterator[str]:
        """Yield text deltas as they arrive; raises before the first yield on HTTP errors"""
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.stream_timeout
        first_byte_deadline = started + self.first_chunk_timeout
        received_any = False

        async def race(awaitable):
            limit = deadline if received_any else min(deadline, first_byte_deadline)
            remaining = limit - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                return await asyncio.wait_for(awaitable, remaining)
            except asyncio.TimeoutError as e:
                if asyncio.iscoroutine(awaitable):
                    awaitable.close()
                if received_any or limit == deadline:
                    message = f"Stream timeout after {self.stream_timeout:.0f}s for {model}"
                else:
                    message = f"No data within {self.first_chunk_timeout:.0f}s from {model}"
                raise CompletionTimeoutError(self.provider, message) from e

        client = self._get_client()
        request = client.build_request(
            "POST",
            self.base_url,
            headers=self._headers(api_key),
            json=self._body(model, messages, max_tokens, temperature, stream=True),
        )

        response: Optional[httpx.Response] = None
        try:
            try:
                response = await race(client.send(request, stream=True))
            except httpx.TimeoutException as e:
                raise CompletionTimeoutError(self.provider, f"Connection timeout for {model}: {e}") from e

            if not response.is_success:
                await race(response.aread())
                raise self._http_error(response)

            lines = response.aiter_lines().__aiter__()
            yielded = 0
            while True:
                try:
                    line = await race(lines.__anext__())
                except StopAsyncIteration:
                    break
                received_any = True

                line = line.strip()
                if not line or line.startswith(':') or not line.startswith('data:'):
                    continue
                data = line[len('data:'):].strip()
                if data == DONE_SENTINEL:
                    break
                try:
                    payload = json.loads(data)
                except ValueError:
                    logger.debug(f"Skipping unparseable stream event from {model}")
                    continue
                if not isinstance(payload, dict):
                    continue
                if payload.get('error'):
                    error = payload['error']
                    detail = str(error.get('message', '')) if isinstance(error, dict) else str(error)
                    code = error.get('code') if isinstance(error, dict) else None
                    raise APIError(self.provider, "STREAM_ERROR", f"Stream error from {model}: {detail}",
                                   status=code if isinstance(code, int) else None,
                                   body=detail[:self.error_body_limit])

                delta = extract_delta(payload)
                if delta:
                    yielded += 1
                    yield delta

            if yielded == 0:
                raise EmptyCompletionError(self.provider, f"Empty stream from {model}")

        except httpx.TimeoutException as e:
            raise CompletionTimeoutError(self.provider, f"Read timeout for {model}: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamConnectionError(self.provider, f"Stream dropped for {model}: {e}", original_error=e) from e
        finally:
            if response is not None:
                await response.aclose()
