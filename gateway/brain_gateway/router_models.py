"""Model catalog routes: provider lists, Hugging Face search, local files, Ollama."""

import logging

from fastapi import APIRouter, HTTPException

from . import catalog
from .backend_client import client
from .config import settings

router = APIRouter(tags=["models"])
logger = logging.getLogger(__name__)

CATALOG_TYPES = {"provider", "huggingface", "local-files", "local", "status"}


def _get_config():
    from .main import get_providers_config
    return get_providers_config()


def _ollama_entry() -> dict:
    entry = _get_config().get("providers", {}).get("ollama")
    if not entry:
        raise HTTPException(status_code=404, detail="Ollama provider is not configured")
    return entry


@router.get("/models")
async def list_models(
    type: str,
    query: str = "gguf",
    provider: str | None = None,
    limit: int = 50,
):
    """Dispatch a catalog lookup by `type`."""
    if type not in CATALOG_TYPES:
        raise HTTPException(status_code=400, detail="Invalid type parameter")

    if type == "provider":
        if not provider:
            raise HTTPException(status_code=400, detail="Provider parameter is required")
        return catalog.provider_models(provider)

    if type == "huggingface":
        return await catalog.search_huggingface(client, query=query, limit=max(1, min(limit, 100)))

    if type == "local-files":
        return catalog.scan_local_models(settings.models_dir)

    entry = _ollama_entry()
    if type == "status":
        return {"isRunning": await catalog.ollama_is_running(client, entry["url"], entry.get("tags_path", "/api/tags"))}
    return await catalog.list_ollama_models(client, entry["url"], entry.get("tags_path", "/api/tags"))


@router.get("/models/{model_name}/exists")
async def local_model_exists(model_name: str):
    """Whether a .gguf/.bin file for the model is present in the models directory."""
    from .main import get_provider_router
    return {"model": model_name, "exists": get_provider_router().model_exists(model_name)}
