from pathlib import Path

import yaml
from pydantic_settings import BaseSettings

DEFAULT_PROVIDERS_CONFIG = Path(__file__).with_name("providers.yaml")


class Settings(BaseSettings):
    server_bin: str = ""
    host: str = "127.0.0.1"
    base_port: int = 8080
    threads: int = 8
    ngl: int = 35
    ctx: int = 4096
    models_dir: str = "models"
    health_timeout_seconds: float = 60.0
    health_poll_interval_seconds: float = 0.5
    port_search_limit: int = 1000
    providers_config_path: str = str(DEFAULT_PROVIDERS_CONFIG)
    log_level: str = "INFO"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 3001

    model_config = {"env_prefix": "LLM_"}


class ProviderSettings(BaseSettings):
    """Per-provider API keys, re-read from the environment on every request."""

    openai_api_key: str = ""
    gemini_api_key: str = ""
    groq_api_key: str = ""
    openrouter_api_key: str = ""
    app_url: str = "http://localhost:3000"
    app_title: str = "LoRA The Second Brain"


settings = Settings()


def load_providers_config(path: str | None = None) -> dict:
    """Load the provider registry from YAML config."""
    config_path = Path(path or settings.providers_config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Provider config not found: {config_path}")
    with open(config_path) as f:
        return yaml.safe_load(f)


def get_provider_entry(config: dict, name: str) -> dict:
    """Get the registry entry for a named provider."""
    provider = config.get("providers", {}).get(name)
    if not provider:
        raise KeyError(f"Provider not found in config: {name}")
    return provider


def get_credential(provider_entry: dict) -> str:
    """Return the configured API key for a provider entry, or '' when unset."""
    field_name = provider_entry.get("credential")
    if not field_name:
        return ""
    value = getattr(ProviderSettings(), field_name, "")
    return value.strip() if isinstance(value, str) else ""
