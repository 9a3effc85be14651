"""Chat route: dispatch a conversation and stream the reply as SSE."""

import json
import logging
from contextlib import aclosing
from dataclasses import asdict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from .models import ChatRequest, GenerationRequest
from .provider_router import as_stream_events

router = APIRouter(tags=["chat"])
logger = logging.getLogger(__name__)


def _get_provider_router():
    from .main import get_provider_router
    return get_provider_router()


def _event_data(event) -> str:
    return json.dumps({k: v for k, v in asdict(event).items() if k != "kind"})


@router.post("/v1/chat")
async def chat(body: ChatRequest, request: Request):
    """Stream `delta` events, then one `done` or `error` event.

    Routing errors (unknown provider, missing model file, missing credential
    on the fallback provider) are returned as JSON before the stream opens.
    """
    provider_router = _get_provider_router()
    generation = GenerationRequest(messages=tuple(body.messages), options=body.options)
    deltas = provider_router.dispatch(body.provider, body.model, generation.messages, generation.options)
    label = f"{body.provider}/{body.model}"

    if not body.stream:
        parts = []
        async for event in as_stream_events(deltas, label):
            if event.kind == "delta":
                parts.append(event.text)
            elif event.kind == "error":
                return JSONResponse(status_code=502, content={"error": event.reason})
        return {"provider": body.provider, "model": body.model, "content": "".join(parts)}

    async def event_generator():
        async with aclosing(as_stream_events(deltas, label)) as events:
            async for event in events:
                if await request.is_disconnected():
                    logger.info("Client disconnected from %s stream", label)
                    break
                yield {"event": event.kind, "data": _event_data(event)}

    return EventSourceResponse(event_generator())


@router.get("/v1/chat/providers")
async def list_providers():
    """Provider ids the gateway can dispatch to, with routing roles."""
    provider_router = _get_provider_router()
    return {
        "providers": provider_router.provider_ids(),
        "local": provider_router.local_provider,
        "fallback": provider_router.fallback_provider,
        "transcription": provider_router.transcription_provider,
    }
