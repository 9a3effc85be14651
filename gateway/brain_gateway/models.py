from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# --- Model references ---


@dataclass(frozen=True)
class ModelRef:
    """A model name bound to either a local artifact or a remote model id."""

    name: str
    provider: str
    path: str | None = None
    remote_id: str | None = None

    def __post_init__(self) -> None:
        if (self.path is None) == (self.remote_id is None):
            raise ValueError("ModelRef must have exactly one of path or remote_id")

    @property
    def is_local(self) -> bool:
        return self.path is not None


@dataclass
class ServerHandle:
    model_ref: ModelRef
    host: str
    port: int
    process: Any
    started_at: float = field(default_factory=time.time)

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"


# --- Chat request models ---


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str = Field(..., min_length=1)
    content: str


class TranscriptionInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    audio_base64: str = Field(..., min_length=1)
    file_name: str = "audio.wav"
    mime_type: str = "audio/wav"
    language: str | None = None
    response_format: str | None = None


class GenerationOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, gt=0)
    repetition_penalty: float | None = Field(default=None, gt=0.0)
    transcription: TranscriptionInput | None = None


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatMessage, ...]
    options: GenerationOptions = GenerationOptions()


class ChatRequest(BaseModel):
    """Body of POST /v1/chat."""

    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    messages: list[ChatMessage] = Field(default_factory=list)
    options: GenerationOptions = GenerationOptions()
    stream: bool = True


# --- Stream events ---


@dataclass(frozen=True)
class Delta:
    text: str
    kind: Literal["delta"] = "delta"


@dataclass(frozen=True)
class Done:
    kind: Literal["done"] = "done"


@dataclass(frozen=True)
class Error:
    reason: str
    kind: Literal["error"] = "error"


StreamEvent = Union[Delta, Done, Error]


# --- Catalog models ---


class ProviderModel(BaseModel):
    id: str
    name: str
    provider: str
    context_length: int | None = None
    pricing: dict[str, float] | None = None
    capabilities: list[str] = Field(default_factory=list)


class HuggingFaceModel(BaseModel):
    id: str
    name: str
    author: str
    size: str
    format: str
    downloads: int = 0
    likes: int = 0
    tags: list[str] = Field(default_factory=list)


class LocalModelFile(BaseModel):
    name: str
    filename: str
    size: str
    format: str
    downloaded_at: str
    path: str
    backend: str = "local"


class OllamaModel(BaseModel):
    name: str
    size: str
    format: str = "GGUF"
    downloaded_at: str
    backend: str = "ollama"
