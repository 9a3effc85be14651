"""Normalize upstream SSE byte streams into plain text deltas."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
RECORD_SEPARATOR = "\n\n"


def _first_choice(payload: Any) -> dict | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def chat_delta_content(payload: Any) -> str | None:
    choice = _first_choice(payload)
    delta = choice.get("delta") if choice else None
    return delta.get("content") if isinstance(delta, dict) else None


def chat_message_content(payload: Any) -> str | None:
    choice = _first_choice(payload)
    message = choice.get("message") if choice else None
    return message.get("content") if isinstance(message, dict) else None


def completion_text(payload: Any) -> str | None:
    choice = _first_choice(payload)
    return choice.get("text") if choice else None


def gemini_candidate_text(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    return "".join(texts) or None


# Tried in order; the first non-empty string wins.
EXTRACTORS: tuple[Callable[[Any], str | None], ...] = (
    chat_delta_content,
    chat_message_content,
    completion_text,
    gemini_candidate_text,
)


def extract_text(payload: Any) -> str | None:
    for extractor in EXTRACTORS:
        value = extractor(payload)
        if isinstance(value, str) and value:
            return value
    return None


def extract_transcription_text(body: str) -> str:
    """Return transcript text from a JSON ``{"text": ...}`` body or a plain-text body."""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip()
    if isinstance(payload, dict) and isinstance(payload.get("text"), str):
        return payload["text"]
    return body.strip()


def iter_data_payloads(record: str) -> list[str]:
    """Return the trimmed payloads of a record's ``data:`` lines."""
    payloads = []
    for line in record.split("\n"):
        line = line.strip()
        if line.startswith("data:"):
            payloads.append(line[len("data:"):].strip())
    return payloads


async def normalize(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield text deltas from an SSE byte stream until ``[DONE]`` or EOF."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buf = ""
    async for chunk in chunks:
        # Normalized on the whole buffer so a CRLF split across chunks still folds.
        buf = (buf + decoder.decode(chunk)).replace("\r\n", "\n")
        while RECORD_SEPARATOR in buf:
            record, buf = buf.split(RECORD_SEPARATOR, 1)
            for text in _record_texts(record):
                if text is None:
                    return
                yield text

    buf += decoder.decode(b"", final=True)
    if buf.strip():
        for text in _record_texts(buf):
            if text is None:
                return
            yield text


def _record_texts(record: str) -> list[str | None]:
    """Texts for one record; a trailing None marks the terminator."""
    out: list[str | None] = []
    for payload in iter_data_payloads(record):
        if payload == DONE_SENTINEL:
            out.append(None)
            break
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE payload: %.120s", payload)
            continue
        text = extract_text(parsed)
        if text:
            out.append(text)
    return out
