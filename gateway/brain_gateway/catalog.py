"""Read-only model catalogs: static provider lists, Hugging Face search, local files, Ollama."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

import httpx

from .backend_client import BackendClient
from .models import HuggingFaceModel, LocalModelFile, OllamaModel, ProviderModel
from .supervisor import MODEL_EXTENSIONS

logger = logging.getLogger(__name__)

HF_API_URL = "https://huggingface.co/api/models"
MODEL_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)([bkmgt])", re.IGNORECASE)


def _entry(provider: str, model_id: str, name: str, context: int, price_in: float, price_out: float, caps: list[str]) -> ProviderModel:
    return ProviderModel(
        id=model_id,
        name=name,
        provider=provider,
        context_length=context,
        pricing={"input": price_in, "output": price_out},
        capabilities=caps,
    )


# Curated static catalogs; prices are USD per million tokens.
PROVIDER_CATALOGS: dict[str, list[ProviderModel]] = {
    "openai": [
        _entry("openai", "gpt-5", "GPT-5", 131072, 1.25, 10.00, ["text", "vision", "reasoning"]),
        _entry("openai", "gpt-5-mini", "GPT-5 Mini", 131072, 0.25, 2.00, ["text", "vision", "reasoning"]),
        _entry("openai", "gpt-5-nano", "GPT-5 Nano", 131072, 0.05, 0.40, ["text", "vision"]),
        _entry("openai", "gpt-5-pro", "GPT-5 Pro", 131072, 15.00, 120.00, ["text", "vision", "reasoning", "coding"]),
        _entry("openai", "gpt-4.1", "GPT-4.1", 131072, 3.00, 12.00, ["text", "vision"]),
        _entry("openai", "gpt-4.1-mini", "GPT-4.1 Mini", 131072, 0.80, 3.20, ["text", "vision"]),
        _entry("openai", "gpt-4.1-nano", "GPT-4.1 Nano", 131072, 0.20, 0.80, ["text", "vision"]),
        _entry("openai", "o4-mini", "O4 Mini", 131072, 4.00, 16.00, ["text", "reasoning"]),
        _entry("openai", "gpt-4o", "GPT-4o", 128000, 2.50, 10.00, ["text", "vision"]),
        _entry("openai", "gpt-4o-mini", "GPT-4o Mini", 128000, 0.15, 0.60, ["text", "vision"]),
    ],
    "gemini": [
        _entry("gemini", "gemini-2.5-pro", "Gemini 2.5 Pro", 2097152, 0.0, 0.0, ["text", "vision", "multimodal", "reasoning", "coding"]),
        _entry("gemini", "gemini-2.5-flash", "Gemini 2.5 Flash", 1048576, 0.0, 0.0, ["text", "vision", "multimodal"]),
        _entry("gemini", "gemini-2.5-flash-lite", "Gemini 2.5 Flash-Lite", 1048576, 0.0, 0.0, ["text", "vision", "multimodal"]),
        _entry("gemini", "gemini-2.0-flash", "Gemini 2.0 Flash", 1048576, 0.075, 0.30, ["text", "vision", "multimodal"]),
        _entry("gemini", "gemini-2.0-flash-lite", "Gemini 2.0 Flash-Lite", 1048576, 0.0, 0.0, ["text", "vision", "multimodal"]),
    ],
    "groq": [
        _entry("groq", "llama-3.1-8b-instant", "Llama 3.1 8B Instant", 131072, 0.05, 0.08, ["text"]),
        _entry("groq", "llama-3.3-70b-versatile", "Llama 3.3 70B Versatile", 131072, 0.59, 0.79, ["text"]),
        _entry("groq", "meta-llama/llama-guard-4-12b", "Llama Guard 4 12B", 131072, 0.0, 0.0, ["text", "safety"]),
        _entry("groq", "openai/gpt-oss-120b", "GPT-OSS 120B", 131072, 0.59, 0.99, ["text", "reasoning"]),
        _entry("groq", "openai/gpt-oss-20b", "GPT-OSS 20B", 131072, 0.0, 0.0, ["text"]),
        _entry("groq", "whisper-large-v3", "Whisper Large V3", 0, 0.0, 0.0, ["transcription"]),
        _entry("groq", "whisper-large-v3-turbo", "Whisper Large V3 Turbo", 0, 0.0, 0.0, ["transcription"]),
        _entry("groq", "groq/compound", "Groq Compound", 131072, 0.0, 0.0, ["text", "web-search", "code-execution", "reasoning"]),
        _entry("groq", "groq/compound-mini", "Groq Compound Mini", 131072, 0.0, 0.0, ["text", "web-search", "code-execution"]),
        _entry("groq", "meta-llama/llama-4-maverick-17b-128e-instruct", "Llama 4 Maverick 17B", 131072, 0.0, 0.0, ["text"]),
        _entry("groq", "meta-llama/llama-4-scout-17b-16e-instruct", "Llama 4 Scout 17B", 131072, 0.0, 0.0, ["text"]),
        _entry("groq", "qwen/qwen3-32b", "Qwen3 32B", 131072, 0.0, 0.0, ["text"]),
    ],
    "openrouter": [
        _entry("openrouter", "openai/gpt-5", "GPT-5 (OpenRouter)", 131072, 1.25, 10.00, ["text", "vision", "reasoning"]),
        _entry("openrouter", "openai/gpt-5-mini", "GPT-5 Mini (OpenRouter)", 131072, 0.25, 2.00, ["text", "vision", "reasoning"]),
        _entry("openrouter", "openai/gpt-4.1", "GPT-4.1 (OpenRouter)", 131072, 3.00, 12.00, ["text", "vision"]),
        _entry("openrouter", "openai/gpt-4o", "GPT-4o (OpenRouter)", 128000, 2.50, 10.00, ["text", "vision"]),
        _entry("openrouter", "openai/gpt-4o-mini", "GPT-4o Mini (OpenRouter)", 128000, 0.15, 0.60, ["text", "vision"]),
        _entry("openrouter", "anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", 200000, 3.00, 15.00, ["text", "vision"]),
        _entry("openrouter", "meta-llama/llama-3.3-70b-instruct", "Llama 3.3 70B Instruct", 131072, 0.59, 0.79, ["text"]),
        _entry("openrouter", "meta-llama/llama-3.1-405b-instruct", "Llama 3.1 405B Instruct", 131072, 2.00, 2.00, ["text"]),
        _entry("openrouter", "google/gemini-2.5-pro", "Gemini 2.5 Pro", 2097152, 0.0, 0.0, ["text", "vision", "multimodal"]),
        _entry("openrouter", "google/gemini-2.5-flash", "Gemini 2.5 Flash", 1048576, 0.0, 0.0, ["text", "vision", "multimodal"]),
    ],
}


def provider_models(provider: str) -> list[ProviderModel]:
    return list(PROVIDER_CATALOGS.get(provider, []))


def format_size(num_bytes: int | None) -> str:
    if not num_bytes or num_bytes <= 0:
        return "Unknown"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    idx = 0
    while size >= 1024 and idx < len(units) - 1:
        size /= 1024
        idx += 1
    return f"{size:.1f} {units[idx]}"


def extract_model_size(model_id: str) -> str:
    """Parameter count hint from a repo id, e.g. 'TinyLlama-1.1B' -> '1.1B'."""
    match = MODEL_SIZE_RE.search(model_id)
    if not match:
        return "Unknown"
    return f"{match.group(1)}{match.group(2).upper()}"


def detect_format(tags: list[str], siblings: list[dict] | None = None) -> str:
    lowered = [t.lower() for t in tags]
    has_gguf_file = any(
        isinstance(s, dict) and str(s.get("rfilename", "")).lower().endswith(".gguf")
        for s in siblings or []
    )
    if has_gguf_file or any("gguf" in t for t in lowered):
        return "GGUF"
    if any("h2o" in t for t in lowered):
        return "H2O-Danube"
    if any("safetensors" in t for t in lowered):
        return "SafeTensors"
    return "Unknown"


async def search_huggingface(http: BackendClient, query: str = "gguf", limit: int = 50) -> list[HuggingFaceModel]:
    """Search the Hugging Face model registry, most downloaded first."""
    resp = await http.request(
        "huggingface",
        "GET",
        HF_API_URL,
        params={"search": query, "limit": limit, "sort": "downloads", "direction": -1},
        timeout_type="catalog",
    )
    if resp.status_code != 200:
        logger.warning("Hugging Face search failed with status %d", resp.status_code)
        return []
    rows = resp.json()
    if not isinstance(rows, list):
        return []

    models = []
    for row in rows:
        if not isinstance(row, dict) or not isinstance(row.get("id"), str):
            continue
        model_id = row["id"]
        author, _, short_name = model_id.partition("/")
        tags = row.get("tags") or []
        models.append(
            HuggingFaceModel(
                id=model_id,
                name=short_name or model_id,
                author=row.get("author") or author or "unknown",
                size=extract_model_size(model_id),
                format=detect_format(tags, row.get("siblings")),
                downloads=row.get("downloads") or 0,
                likes=row.get("likes") or 0,
                tags=tags,
            )
        )
    return models


def scan_local_models(models_dir: str | Path) -> list[LocalModelFile]:
    """List model files in the local models directory."""
    base = Path(models_dir)
    if not base.is_dir():
        return []
    models = []
    for path in sorted(base.iterdir()):
        if not path.is_file() or path.suffix.lower() not in MODEL_EXTENSIONS:
            continue
        stat = path.stat()
        models.append(
            LocalModelFile(
                name=path.stem,
                filename=path.name,
                size=format_size(stat.st_size),
                format="GGUF" if path.suffix.lower() == ".gguf" else "GGML",
                downloaded_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                path=str(path),
            )
        )
    return models


async def list_ollama_models(http: BackendClient, host: str, tags_path: str = "/api/tags") -> list[OllamaModel]:
    resp = await http.request("ollama", "GET", f"{host.rstrip('/')}{tags_path}", timeout_type="catalog")
    if resp.status_code != 200:
        logger.warning("Ollama model list failed with status %d", resp.status_code)
        return []
    models = []
    for row in resp.json().get("models", []):
        if not isinstance(row, dict) or not row.get("name"):
            continue
        models.append(
            OllamaModel(
                name=row["name"],
                size=format_size(row.get("size")),
                downloaded_at=row.get("modified_at") or datetime.now(timezone.utc).isoformat(),
            )
        )
    return models


async def ollama_is_running(http: BackendClient, host: str, tags_path: str = "/api/tags") -> bool:
    try:
        resp = await http.request(
            "ollama", "GET", f"{host.rstrip('/')}{tags_path}", timeout_type="health", max_retries=1
        )
    except httpx.HTTPError:
        return False
    return resp.status_code == 200
