"""
Route-level tests for the gateway app.

The lifespan is not run; module-level state in ``brain_gateway.main`` is
replaced per test so no llama-server binary or network is needed.
"""
import pytest
from fastapi.testclient import TestClient

from brain_gateway import main
from brain_gateway.backend_client import BackendClient
from brain_gateway.config import settings
from brain_gateway.errors import ConfigurationError, UpstreamHTTPError
from brain_gateway.provider_router import ProviderRouter

CHAT_BODY = {
    "provider": "ollama",
    "model": "llama3",
    "messages": [{"role": "user", "content": "Hi"}],
    "stream": False,
}


class StubRouter(ProviderRouter):
    """Real resolution, canned output."""

    def __init__(self, config, texts=("Hello", " world"), fail_with=None, supervisor=None):
        super().__init__(config, BackendClient(), supervisor)
        self.texts = texts
        self.fail_with = fail_with
        self.calls = []

    def dispatch(self, provider_id, model_id, messages, options=None):
        self.resolve(provider_id, model_id)
        self.calls.append((provider_id, model_id, list(messages), options))
        return self._canned()

    async def _canned(self):
        for text in self.texts:
            yield text
        if self.fail_with is not None:
            raise self.fail_with


@pytest.fixture
def client(monkeypatch, providers_config):
    monkeypatch.setattr(main, "_providers_config", providers_config)
    return TestClient(main.app)


def _install(monkeypatch, router):
    monkeypatch.setattr(main, "_provider_router", router)
    return router


class TestChat:
    def test_non_streaming_reply(self, client, monkeypatch, providers_config, no_provider_keys):
        router = _install(monkeypatch, StubRouter(providers_config))
        resp = client.post("/v1/chat", json=CHAT_BODY)
        assert resp.status_code == 200
        assert resp.json() == {"provider": "ollama", "model": "llama3", "content": "Hello world"}
        provider_id, model_id, messages, _ = router.calls[0]
        assert (provider_id, model_id) == ("ollama", "llama3")
        assert messages[0].content == "Hi"

    def test_options_reach_dispatch(self, client, monkeypatch, providers_config):
        router = _install(monkeypatch, StubRouter(providers_config))
        body = dict(CHAT_BODY, options={"temperature": 0, "max_tokens": 32})
        assert client.post("/v1/chat", json=body).status_code == 200
        options = router.calls[0][3]
        assert options.temperature == 0
        assert options.max_tokens == 32

    def test_upstream_failure_mid_stream(self, client, monkeypatch, providers_config):
        failure = UpstreamHTTPError("ollama", 500, "boom")
        _install(monkeypatch, StubRouter(providers_config, texts=("partial",), fail_with=failure))
        resp = client.post("/v1/chat", json=CHAT_BODY)
        assert resp.status_code == 502
        assert resp.json() == {"error": "Upstream error"}

    def test_unknown_provider(self, client, monkeypatch, providers_config):
        _install(monkeypatch, StubRouter(providers_config))
        resp = client.post("/v1/chat", json=dict(CHAT_BODY, provider="anthropic"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Unknown provider"

    def test_missing_credential_on_fallback(self, client, monkeypatch, providers_config, no_provider_keys):
        _install(monkeypatch, StubRouter(providers_config))
        resp = client.post("/v1/chat", json=dict(CHAT_BODY, provider="openai", model="gpt-4o"))
        assert resp.status_code == 401
        assert "openrouter" in resp.json()["detail"]

    def test_invalid_options_rejected(self, client, monkeypatch, providers_config):
        _install(monkeypatch, StubRouter(providers_config))
        resp = client.post("/v1/chat", json=dict(CHAT_BODY, options={"temperature": 5}))
        assert resp.status_code == 422

    def test_list_providers(self, client, monkeypatch, providers_config):
        _install(monkeypatch, StubRouter(providers_config))
        data = client.get("/v1/chat/providers").json()
        assert data["fallback"] == "openrouter"
        assert data["local"] == "local"
        assert "gemini" in data["providers"]


class TestModels:
    def test_provider_catalog(self, client):
        resp = client.get("/models", params={"type": "provider", "provider": "openrouter"})
        assert resp.status_code == 200
        ids = [m["id"] for m in resp.json()]
        assert "anthropic/claude-3.5-sonnet" in ids

    def test_provider_catalog_requires_provider(self, client):
        assert client.get("/models", params={"type": "provider"}).status_code == 400

    def test_invalid_type(self, client):
        assert client.get("/models", params={"type": "bogus"}).status_code == 400

    def test_local_files(self, client, monkeypatch, models_dir):
        monkeypatch.setattr(settings, "models_dir", str(models_dir))
        names = [m["name"] for m in client.get("/models", params={"type": "local-files"}).json()]
        assert names == ["legacy", "phi-2", "tinyllama"]

    def test_model_exists(self, client, monkeypatch, providers_config, make_supervisor):
        _install(monkeypatch, StubRouter(providers_config, supervisor=make_supervisor()))
        assert client.get("/models/tinyllama/exists").json() == {"model": "tinyllama", "exists": True}
        assert client.get("/models/nope/exists").json() == {"model": "nope", "exists": False}


class TestHealth:
    def test_no_servers_running(self, client, monkeypatch, make_supervisor):
        monkeypatch.setattr(main, "_supervisor", make_supervisor())
        assert client.get("/health").json() == {"status": "healthy", "local_servers": {}}


class TestWiring:
    def test_supervisor_requires_server_binary(self, monkeypatch, providers_config):
        monkeypatch.setattr(settings, "server_bin", "")
        with pytest.raises(ConfigurationError):
            main.build_supervisor(providers_config)

    def test_supervisor_uses_configured_health_path(self, monkeypatch, providers_config):
        monkeypatch.setattr(settings, "server_bin", "/opt/llama-server")
        supervisor = main.build_supervisor(providers_config)
        assert supervisor._health_path == "/health"
