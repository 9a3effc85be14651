"""
Shared fixtures for gateway tests.

Real subprocesses and sockets are replaced with fakes (see fakes.py) so the
supervisor's state machine can be driven deterministically.
"""
import pytest

from brain_gateway.config import DEFAULT_PROVIDERS_CONFIG, load_providers_config
from brain_gateway.ports import PortAllocator
from brain_gateway.supervisor import ProcessSupervisor
from fakes import FakeLauncher, always_healthy

PROVIDER_KEY_VARS = ("OPENAI_API_KEY", "GEMINI_API_KEY", "GROQ_API_KEY", "OPENROUTER_API_KEY")


def _always_free(host, port):
    return True


@pytest.fixture
def models_dir(tmp_path):
    directory = tmp_path / "models"
    directory.mkdir()
    (directory / "tinyllama.gguf").write_bytes(b"GGUF")
    (directory / "phi-2.gguf").write_bytes(b"GGUF")
    (directory / "legacy.bin").write_bytes(b"GGML")
    return directory


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def port_allocator():
    return PortAllocator("127.0.0.1", search_limit=50, probe=_always_free)


@pytest.fixture
def make_supervisor(models_dir, launcher, port_allocator):
    def _make(health_probe=always_healthy, health_timeout=1.0, poll_interval=0.01, launcher_override=None):
        return ProcessSupervisor(
            models_dir=models_dir,
            host="127.0.0.1",
            base_port=8080,
            launcher=launcher_override or launcher,
            ports=port_allocator,
            health_probe=health_probe,
            health_timeout=health_timeout,
            poll_interval=poll_interval,
        )
    return _make


@pytest.fixture
def providers_config():
    return load_providers_config(str(DEFAULT_PROVIDERS_CONFIG))


@pytest.fixture
def no_provider_keys(monkeypatch):
    for var in PROVIDER_KEY_VARS:
        monkeypatch.delenv(var, raising=False)
