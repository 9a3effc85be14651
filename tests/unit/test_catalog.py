"""
Unit tests for model catalog adapters.
"""
import httpx
import pytest

from brain_gateway.backend_client import BackendClient
from brain_gateway.catalog import (
    HF_API_URL,
    detect_format,
    extract_model_size,
    format_size,
    list_ollama_models,
    ollama_is_running,
    provider_models,
    scan_local_models,
    search_huggingface,
)


async def _client(handler):
    http = BackendClient(transport=httpx.MockTransport(handler))
    await http.start()
    return http


class TestHelpers:
    def test_provider_models(self):
        ids = [m.id for m in provider_models("groq")]
        assert "llama-3.3-70b-versatile" in ids
        assert "whisper-large-v3" in ids
        assert provider_models("nope") == []

    def test_provider_models_returns_copy(self):
        provider_models("openai").clear()
        assert provider_models("openai")

    @pytest.mark.parametrize(
        "num_bytes,expected",
        [
            (None, "Unknown"),
            (0, "Unknown"),
            (-5, "Unknown"),
            (512, "512.0 B"),
            (2048, "2.0 KB"),
            (int(1.5 * 1024 ** 3), "1.5 GB"),
        ],
    )
    def test_format_size(self, num_bytes, expected):
        assert format_size(num_bytes) == expected

    @pytest.mark.parametrize(
        "model_id,expected",
        [
            ("TinyLlama/TinyLlama-1.1B-Chat-v1.0", "1.1B"),
            ("TheBloke/Llama-2-7B-Chat-GGUF", "7B"),
            ("some/model-350m", "350M"),
            ("org/no-size-here", "Unknown"),
        ],
    )
    def test_extract_model_size(self, model_id, expected):
        assert extract_model_size(model_id) == expected

    def test_detect_format(self):
        assert detect_format(["gguf", "llama"]) == "GGUF"
        assert detect_format([], [{"rfilename": "model.Q4_K_M.gguf"}]) == "GGUF"
        assert detect_format(["h2o-danube"]) == "H2O-Danube"
        assert detect_format(["safetensors"]) == "SafeTensors"
        assert detect_format(["pytorch"]) == "Unknown"


class TestLocalScan:
    def test_lists_model_files(self, models_dir):
        (models_dir / "notes.txt").write_text("ignore me")
        models = scan_local_models(models_dir)
        assert [m.filename for m in models] == ["legacy.bin", "phi-2.gguf", "tinyllama.gguf"]
        by_name = {m.name: m for m in models}
        assert by_name["legacy"].format == "GGML"
        assert by_name["tinyllama"].format == "GGUF"
        assert by_name["tinyllama"].size == "4.0 B"
        assert by_name["tinyllama"].backend == "local"

    def test_missing_directory(self, tmp_path):
        assert scan_local_models(tmp_path / "absent") == []


class TestHuggingFace:
    @pytest.mark.asyncio
    async def test_search(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[
                {
                    "id": "TheBloke/Llama-2-7B-Chat-GGUF",
                    "downloads": 1200,
                    "likes": 40,
                    "tags": ["gguf", "llama"],
                },
                {"id": "bert-base-uncased", "tags": ["safetensors"]},
                {"no_id": True},
            ])

        http = await _client(handler)
        models = await search_huggingface(http, query="llama", limit=10)

        assert str(seen[0].url).startswith(HF_API_URL)
        assert seen[0].url.params["search"] == "llama"
        assert seen[0].url.params["limit"] == "10"
        assert [m.id for m in models] == ["TheBloke/Llama-2-7B-Chat-GGUF", "bert-base-uncased"]
        first, second = models
        assert (first.author, first.name, first.size, first.format) == ("TheBloke", "Llama-2-7B-Chat-GGUF", "7B", "GGUF")
        assert first.downloads == 1200
        assert second.name == "bert-base-uncased"
        assert second.format == "SafeTensors"
        await http.stop()

    @pytest.mark.asyncio
    async def test_search_failure_is_empty(self):
        http = await _client(lambda request: httpx.Response(500, text="down"))
        assert await search_huggingface(http) == []
        await http.stop()


class TestOllama:
    @pytest.mark.asyncio
    async def test_list_models(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [
                {"name": "llama3:8b", "size": 4 * 1024 ** 3, "modified_at": "2024-05-01T10:00:00Z"},
                {"size": 10},
            ]})

        http = await _client(handler)
        models = await list_ollama_models(http, "http://localhost:11434/")
        assert len(models) == 1
        assert models[0].name == "llama3:8b"
        assert models[0].size == "4.0 GB"
        assert models[0].backend == "ollama"
        await http.stop()

    @pytest.mark.asyncio
    async def test_is_running(self):
        http = await _client(lambda request: httpx.Response(200, json={"models": []}))
        assert await ollama_is_running(http, "http://localhost:11434") is True
        await http.stop()

    @pytest.mark.asyncio
    async def test_not_running_when_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        http = await _client(handler)
        assert await ollama_is_running(http, "http://localhost:11434") is False
        await http.stop()
