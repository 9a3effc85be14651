"""Provider-specific request shapes and the fallback model mapping."""

from __future__ import annotations

import logging
from typing import Any

from .models import ChatMessage, GenerationOptions

logger = logging.getLogger(__name__)

TRANSCRIPTION_MARKER = "whisper"
DEFAULT_FALLBACK_MODEL = "openai/gpt-4o"

# (original provider, model-name substring, fallback model id); first match wins,
# so more specific substrings come first.
FALLBACK_MODEL_RULES: list[tuple[str, str, str]] = [
    ("groq", "llama-3.3-70b", "meta-llama/llama-3.1-405b-instruct"),
    ("groq", "llama-3.1-8b", "meta-llama/llama-3.1-405b-instruct"),
    ("groq", "openai/gpt-oss", "openai/gpt-4o"),
    ("groq", "groq/compound", "anthropic/claude-3.5-sonnet"),
    ("openai", "gpt-5-mini", "openai/gpt-5-mini"),
    ("openai", "gpt-5", "openai/gpt-5"),
    ("openai", "gpt-4.1", "openai/gpt-4.1"),
    ("openai", "gpt-4o-mini", "openai/gpt-4o-mini"),
    ("openai", "gpt-4o", "openai/gpt-4o"),
    ("openai", "gpt-4-turbo", "openai/gpt-4-turbo"),
    ("openai", "gpt-3.5-turbo", "openai/gpt-3.5-turbo"),
    ("gemini", "gemini-2.5-pro", "google/gemini-2.5-pro"),
    ("gemini", "gemini-2.5-flash", "google/gemini-2.5-flash"),
    ("gemini", "gemini-1.5-pro", "openai/gpt-4o"),
    ("gemini", "flash", "openai/gpt-4o-mini"),
]

# Defaults applied when a request leaves an option unset.
LOCAL_DEFAULTS = {"temperature": 0.7, "top_p": 0.9, "max_tokens": 512, "repetition_penalty": 1.1}
REMOTE_DEFAULTS = {"temperature": 0.8, "top_p": 0.7, "max_tokens": 1024}


def is_transcription_model(model_id: str) -> bool:
    return TRANSCRIPTION_MARKER in model_id.lower()


def map_model_to_fallback(model_id: str, original_provider: str) -> str:
    """Map a model id to its closest equivalent on the fallback provider."""
    for provider, pattern, target in FALLBACK_MODEL_RULES:
        if provider == original_provider and pattern in model_id:
            return target
    logger.info("No fallback mapping for %s/%s, using %s", original_provider, model_id, DEFAULT_FALLBACK_MODEL)
    return DEFAULT_FALLBACK_MODEL


def _option(options: GenerationOptions, name: str, defaults: dict[str, Any]) -> Any:
    value = getattr(options, name)
    return defaults[name] if value is None else value


def _plain_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in messages]


def build_llama_body(model: str, messages: list[ChatMessage], options: GenerationOptions) -> dict:
    return {
        "model": model,
        "messages": _plain_messages(messages),
        "stream": True,
        "temperature": _option(options, "temperature", LOCAL_DEFAULTS),
        "top_p": _option(options, "top_p", LOCAL_DEFAULTS),
        "max_tokens": _option(options, "max_tokens", LOCAL_DEFAULTS),
        "repeat_penalty": _option(options, "repetition_penalty", LOCAL_DEFAULTS),
    }


def build_openai_body(model: str, messages: list[ChatMessage], options: GenerationOptions) -> dict:
    return {
        "model": model,
        "messages": _plain_messages(messages),
        "temperature": _option(options, "temperature", REMOTE_DEFAULTS),
        "top_p": _option(options, "top_p", REMOTE_DEFAULTS),
        "max_tokens": _option(options, "max_tokens", REMOTE_DEFAULTS),
        "stream": True,
    }


def build_gemini_body(model: str, messages: list[ChatMessage], options: GenerationOptions) -> dict:
    system_text = "\n\n".join(m.content for m in messages if m.role == "system")
    body: dict[str, Any] = {
        "contents": [
            {"role": "user" if m.role == "user" else "model", "parts": [{"text": m.content}]}
            for m in messages
            if m.role != "system"
        ],
        "generationConfig": {
            "temperature": _option(options, "temperature", REMOTE_DEFAULTS),
            "topP": _option(options, "top_p", REMOTE_DEFAULTS),
            "maxOutputTokens": _option(options, "max_tokens", REMOTE_DEFAULTS),
        },
    }
    if system_text:
        body["systemInstruction"] = {"parts": [{"text": system_text}]}
    return body


BODY_BUILDERS = {
    "llama": build_llama_body,
    "openai": build_openai_body,
    "gemini": build_gemini_body,
}


def build_headers(entry: dict, api_key: str, *, app_url: str, app_title: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        if entry.get("dialect") == "gemini":
            headers["x-goog-api-key"] = api_key
        else:
            headers["Authorization"] = f"Bearer {api_key}"
    if entry.get("attribution_headers"):
        headers["HTTP-Referer"] = app_url
        headers["X-Title"] = app_title
    return headers


def chat_url(entry: dict, model: str, base_url: str | None = None) -> str:
    base = (base_url or entry.get("url") or "").rstrip("/")
    return f"{base}{entry['chat_path'].format(model=model)}"
