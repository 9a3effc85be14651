"""Local llama-server process supervision.

One ``ProcessSupervisor`` owns the registry of running model servers. Each
model name moves through ``ModelState``; ``ensure`` is the only way in and
``shutdown`` the only way to tear everything down.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import (
    ConfigurationError,
    HealthCheckTimeout,
    ModelNotFound,
    ProcessExitedDuringStartup,
    ServerStartError,
)
from .models import ModelRef, ServerHandle
from .ports import PortAllocator

logger = logging.getLogger(__name__)
child_logger = logging.getLogger(f"{__name__}.llama")

MODEL_EXTENSIONS = (".gguf", ".bin")
TERMINATE_GRACE_SECONDS = 5.0


class ModelState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    HEALTHY = "healthy"
    EXITED = "exited"


def resolve_model_path(models_dir: str | Path, model: str) -> Path | None:
    """Return the model artifact for a name, preferring .gguf over .bin."""
    base = Path(models_dir)
    for ext in MODEL_EXTENSIONS:
        candidate = base / f"{model}{ext}"
        if candidate.is_file():
            return candidate
    return None


def model_exists(models_dir: str | Path, model: str) -> bool:
    return resolve_model_path(models_dir, model) is not None


class LlamaServerLauncher:
    """Spawns llama-server with fixed arguments taken from settings."""

    def __init__(self, binary: str, *, ctx: int, ngl: int, threads: int):
        binary = (binary or "").strip().strip('"')
        if not binary:
            raise ConfigurationError("LLM_SERVER_BIN not set; cannot start local models")
        self._binary = binary
        self._ctx = ctx
        self._ngl = ngl
        self._threads = threads

    def build_args(self, model_path: str, host: str, port: int) -> list[str]:
        return [
            "-m", model_path,
            "-c", str(self._ctx),
            "-ngl", str(self._ngl),
            "-t", str(self._threads),
            "--host", host,
            "--port", str(port),
        ]

    async def launch(self, model_ref: ModelRef, host: str, port: int) -> asyncio.subprocess.Process:
        args = self.build_args(model_ref.path, host, port)
        logger.info("Spawning llama-server for '%s' on %s:%d", model_ref.name, host, port)
        return await asyncio.create_subprocess_exec(
            self._binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )


class ProcessSupervisor:
    """Registry of running local model servers keyed by model name."""

    def __init__(
        self,
        *,
        models_dir: str | Path,
        host: str,
        base_port: int,
        launcher: Any,
        ports: PortAllocator,
        health_probe: Callable[[str], Awaitable[bool]],
        health_path: str = "/health",
        health_timeout: float = 60.0,
        poll_interval: float = 0.5,
        provider: str = "local",
    ):
        self._models_dir = Path(models_dir)
        self._host = host
        self._base_port = base_port
        self._launcher = launcher
        self._ports = ports
        self._health_probe = health_probe
        self._health_path = health_path
        self._health_timeout = health_timeout
        self._poll_interval = poll_interval
        self._provider = provider

        self._lock = asyncio.Lock()
        self._registry: dict[str, ServerHandle] = {}
        self._starting: dict[str, asyncio.Task] = {}
        self._states: dict[str, ModelState] = {}
        # Spawned but never healthy; still terminated on shutdown.
        self._orphans: list[ServerHandle] = []
        self._tasks: set[asyncio.Task] = set()

    def state(self, model: str) -> ModelState:
        return self._states.get(model, ModelState.ABSENT)

    def handles(self) -> dict[str, ServerHandle]:
        return dict(self._registry)

    def model_exists(self, model: str) -> bool:
        return model_exists(self._models_dir, model)

    def resolve(self, model: str) -> ModelRef:
        path = resolve_model_path(self._models_dir, model)
        if path is None:
            raise ModelNotFound(model, str(self._models_dir))
        return ModelRef(name=model, provider=self._provider, path=str(path))

    async def ensure(self, model: str) -> str:
        """Return the endpoint of a healthy server for model, starting one if needed."""
        handle = self._registry.get(model)
        if handle is not None and handle.process.returncode is None:
            return handle.endpoint

        async with self._lock:
            handle = self._registry.get(model)
            if handle is not None and handle.process.returncode is None:
                return handle.endpoint
            task = self._starting.get(model)
            if task is None:
                task = asyncio.create_task(self._start(model), name=f"start-{model}")
                task.add_done_callback(_consume_exception)
                self._starting[model] = task
                self._states[model] = ModelState.STARTING

        # A caller giving up must not cancel the start other callers wait on.
        handle = await asyncio.shield(task)
        return handle.endpoint

    async def _start(self, model: str) -> ServerHandle:
        try:
            handle = await self._spawn_and_wait(model)
        except BaseException:
            async with self._lock:
                self._starting.pop(model, None)
                if self._states.get(model) == ModelState.STARTING:
                    self._states[model] = ModelState.ABSENT
            raise

        async with self._lock:
            self._starting.pop(model, None)
            # The child can die between its last health probe and this point.
            exited = handle.process.returncode is not None
            if exited:
                self._states[model] = ModelState.EXITED
            else:
                self._registry[model] = handle
                self._states[model] = ModelState.HEALTHY
        if exited:
            raise ProcessExitedDuringStartup(model, handle.process.returncode)
        logger.info("llama-server for '%s' healthy at %s", model, handle.endpoint)
        return handle

    async def _spawn_and_wait(self, model: str) -> ServerHandle:
        model_ref = self.resolve(model)
        port = await self._ports.allocate(self._base_port + len(self._registry))
        try:
            process = await self._launcher.launch(model_ref, self._host, port)
        except OSError as e:
            self._ports.release(port)
            raise ServerStartError(f"Failed to launch llama-server for '{model}': {e}") from e
        except BaseException:
            self._ports.release(port)
            raise

        handle = ServerHandle(model_ref=model_ref, host=self._host, port=port, process=process)
        self._watch(handle)
        try:
            await self._wait_healthy(handle)
        except HealthCheckTimeout:
            logger.warning(
                "llama-server for '%s' (pid %s) left running after health timeout",
                model, getattr(process, "pid", "?"),
            )
            self._orphans.append(handle)
            raise
        except (asyncio.CancelledError, Exception):
            await _terminate(handle)
            raise
        return handle

    async def _wait_healthy(self, handle: ServerHandle) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._health_timeout
        url = f"{handle.endpoint}{self._health_path}"
        while loop.time() < deadline:
            if handle.process.returncode is not None:
                raise ProcessExitedDuringStartup(handle.model_ref.name, handle.process.returncode)
            if await self._health_probe(url):
                return
            await asyncio.sleep(self._poll_interval)
        raise HealthCheckTimeout(handle.model_ref.name, handle.endpoint, self._health_timeout)

    def _watch(self, handle: ServerHandle) -> None:
        name = handle.model_ref.name
        process = handle.process
        if getattr(process, "stdout", None) is not None:
            self._spawn_task(_drain(process.stdout, f"[llama {name}]"))
        if getattr(process, "stderr", None) is not None:
            self._spawn_task(_drain(process.stderr, f"[llama {name} ERR]"))
        self._spawn_task(self._on_exit(handle))

    def _spawn_task(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_exit(self, handle: ServerHandle) -> None:
        returncode = await handle.process.wait()
        name = handle.model_ref.name
        async with self._lock:
            if self._registry.get(name) is handle:
                del self._registry[name]
                self._states[name] = ModelState.EXITED
            if handle in self._orphans:
                self._orphans.remove(handle)
            self._ports.release(handle.port)
        logger.info("llama-server for '%s' exited with code %s", name, returncode)

    async def shutdown(self) -> None:
        """Terminate every process this supervisor spawned."""
        async with self._lock:
            starting = list(self._starting.values())
            handles = list(self._registry.values()) + list(self._orphans)
            self._registry.clear()
            self._orphans.clear()

        for task in starting:
            task.cancel()
        if starting:
            await asyncio.gather(*starting, return_exceptions=True)

        await asyncio.gather(*(_terminate(h) for h in handles))
        for task in list(self._tasks):
            task.cancel()
        logger.info("Supervisor stopped %d model server(s)", len(handles))


async def _drain(stream: asyncio.StreamReader, tag: str) -> None:
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            child_logger.info("%s %s", tag, line)


async def _terminate(handle: ServerHandle) -> None:
    process = handle.process
    if process.returncode is not None:
        return
    try:
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("llama-server for '%s' ignored terminate, killing", handle.model_ref.name)
            process.kill()
    except Exception as e:
        logger.warning("Failed to stop llama-server for '%s': %s", handle.model_ref.name, e)


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters re-raise the start error; this keeps an unawaited failure quiet.
    if not task.cancelled():
        task.exception()
