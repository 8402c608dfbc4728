"""
HTTP surface for FreeForge

Exposes the generation, chat and enhance event streams as
``text/event-stream`` responses framed ``data: <json>\\n\\n``, plus a health
snapshot. A client that disconnects mid-stream cancels the run behind it.
"""

import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from .core.config import Config
from .core.models import GenerationRequest
from .generation.events import EventStream, encode_sse
from .generation.service import GenerationService

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", GenerationService)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=json.dumps({"error": message}), content_type="application/json")


async def _read_payload(request: web.Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as e:
        raise _bad_request("Request body must be valid JSON") from e
    if not isinstance(payload, dict):
        raise _bad_request("Request body must be a JSON object")
    return payload


async def stream_events(request: web.Request, stream: EventStream) -> web.StreamResponse:
    """Write every event of ``stream`` to the client, cancelling it if the client goes away"""
    response = web.StreamResponse(status=200, headers=SSE_HEADERS)
    await response.prepare(request)
    try:
        async for event in stream:
            await response.write(encode_sse(event))
    except ConnectionResetError:
        logger.info(f"🔌 Client disconnected from {request.path}, cancelling")
        return response
    finally:
        await stream.aclose()
    await response.write_eof()
    return response


async def handle_generate(request: web.Request) -> web.StreamResponse:
    payload = await _read_payload(request)
    if not isinstance(payload.get("messages"), list) or not payload["messages"]:
        raise _bad_request("messages must be a non-empty list")
    generation_request = GenerationRequest.from_payload(payload)
    logger.info(f"📨 Generation request: {len(generation_request.transcript)} message(s), "
                f"{len(generation_request.existing_file_paths)} existing file(s)")
    service = request.app[SERVICE_KEY]
    return await stream_events(request, service.open_stream(generation_request))


async def handle_chat(request: web.Request) -> web.StreamResponse:
    payload = await _read_payload(request)
    transcript = payload.get("messages", payload.get("prompt"))
    if not isinstance(transcript, list) or not transcript:
        raise _bad_request("messages must be a non-empty list")
    service = request.app[SERVICE_KEY]
    return await stream_events(request, service.chat_stream([m for m in transcript if isinstance(m, dict)]))


async def handle_enhance(request: web.Request) -> web.StreamResponse:
    payload = await _read_payload(request)
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise _bad_request("Invalid prompt provided")
    service = request.app[SERVICE_KEY]
    return await stream_events(request, service.enhance_stream(prompt))


async def handle_health(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    snapshot = service.health.snapshot()
    usable = sum(1 for c in snapshot["credentials"] if c["usable"])
    status = "ok" if usable else ("degraded" if snapshot["credentials"] else "unconfigured")
    return web.json_response({"status": status, **snapshot})


async def _close_service(app: web.Application):
    await app[SERVICE_KEY].aclose()


def create_app(service: GenerationService) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service
    app.router.add_post("/api/gen-ai-code", handle_generate)
    app.router.add_post("/api/ai-chat", handle_chat)
    app.router.add_post("/api/enhance-prompt", handle_enhance)
    app.router.add_get("/api/health", handle_health)
    app.on_cleanup.append(_close_service)
    return app


def run_server(config: Config, service: Optional[GenerationService] = None):
    """Serve until interrupted"""
    service = service or GenerationService.from_config(config)
    logger.info(f"🚀 Serving on http://{config.server.host}:{config.server.port}")
    web.run_app(create_app(service), host=config.server.host, port=config.server.port, print=None)
