"""Second Brain inference gateway: one streaming chat interface over local and remote models."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .backend_client import client
from .config import load_providers_config, settings
from .errors import GatewayError
from .ports import PortAllocator
from .provider_router import ProviderRouter
from .supervisor import LlamaServerLauncher, ProcessSupervisor

logger = logging.getLogger(__name__)

# Shared state populated at startup
_providers_config: dict = {}
_supervisor: ProcessSupervisor | None = None
_provider_router: ProviderRouter | None = None


def get_providers_config() -> dict:
    return _providers_config


def get_supervisor() -> ProcessSupervisor:
    if _supervisor is None:
        raise RuntimeError("Process supervisor is not initialized")
    return _supervisor


def get_provider_router() -> ProviderRouter:
    if _provider_router is None:
        raise RuntimeError("Provider router is not initialized")
    return _provider_router


def build_supervisor(config: dict) -> ProcessSupervisor:
    """Wire the local backend from settings; fails hard without a server binary."""
    launcher = LlamaServerLauncher(
        settings.server_bin,
        ctx=settings.ctx,
        ngl=settings.ngl,
        threads=settings.threads,
    )
    local_entry = config.get("providers", {}).get(config.get("local_provider", "local"), {})
    return ProcessSupervisor(
        models_dir=settings.models_dir,
        host=settings.host,
        base_port=settings.base_port,
        launcher=launcher,
        ports=PortAllocator(settings.host, search_limit=settings.port_search_limit),
        health_probe=client.is_healthy,
        health_path=local_entry.get("health_path", "/health"),
        health_timeout=settings.health_timeout_seconds,
        poll_interval=settings.health_poll_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, init httpx pool, init supervisor and router."""
    global _providers_config, _supervisor, _provider_router

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _providers_config = load_providers_config()
    logger.info(
        "Loaded %d providers from %s",
        len(_providers_config.get("providers", {})),
        settings.providers_config_path,
    )

    _supervisor = build_supervisor(_providers_config)
    await client.start()
    _provider_router = ProviderRouter(_providers_config, client, _supervisor)
    logger.info("Inference gateway started (models dir %s)", settings.models_dir)

    yield

    await _supervisor.shutdown()
    _supervisor = None
    _provider_router = None
    await client.stop()
    logger.info("Inference gateway stopped")


app = FastAPI(title="Second Brain Inference Gateway", version="1.0.0", lifespan=lifespan)


# --- Error handling ---


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.label, "detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, httpx.ConnectError):
        return JSONResponse(status_code=503, content={"error": "Backend unavailable", "detail": str(exc)})
    if isinstance(exc, (httpx.ReadTimeout, httpx.WriteTimeout)):
        return JSONResponse(status_code=504, content={"error": "Backend timeout", "detail": str(exc)})
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --- Health endpoint ---


@app.get("/health")
async def health():
    """Gateway liveness plus the local model servers currently running."""
    supervisor = get_supervisor()
    servers = {}
    for name, handle in supervisor.handles().items():
        servers[name] = {
            "state": supervisor.state(name).value,
            "endpoint": handle.endpoint,
            "pid": getattr(handle.process, "pid", None),
            "started_at": handle.started_at,
        }
    return {"status": "healthy", "local_servers": servers}


# --- Mount routers ---

from .router_chat import router as chat_router  # noqa: E402
from .router_models import router as models_router  # noqa: E402

app.include_router(chat_router)
app.include_router(models_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.gateway_host, port=settings.gateway_port)
