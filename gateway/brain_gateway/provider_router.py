"""Provider dispatch: one chat request in, one stream of text deltas out."""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from dataclasses import dataclass

import httpx

from .backend_client import BackendClient
from .config import ProviderSettings, get_credential
from .errors import (
    GatewayError,
    InvalidRequest,
    MissingCredential,
    UnknownProvider,
    UnsupportedProviderForModel,
    UpstreamHTTPError,
)
from .models import (
    ChatMessage,
    Delta,
    Done,
    Error,
    GenerationOptions,
    ModelRef,
    StreamEvent,
)
from .providers import (
    BODY_BUILDERS,
    build_headers,
    chat_url,
    is_transcription_model,
    map_model_to_fallback,
)
from .sse import extract_transcription_text, normalize
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchTarget:
    ref: ModelRef
    entry: dict
    api_key: str = ""
    requested_provider: str | None = None


class ProviderRouter:
    """Routes chat requests to the local supervisor or a remote provider.

    Target resolution (provider lookup, transcription rules, credential
    fallback) happens when ``dispatch`` is called, so those errors surface
    before any network I/O. Streaming starts when the result is iterated.
    """

    def __init__(
        self,
        config: dict,
        http: BackendClient,
        supervisor: ProcessSupervisor | None = None,
    ):
        self._config = config
        self._http = http
        self._supervisor = supervisor
        self.local_provider = config.get("local_provider", "local")
        self.fallback_provider = config.get("fallback_provider", "openrouter")
        self.transcription_provider = config.get("transcription_provider", "groq")

    def provider_ids(self) -> list[str]:
        return list(self._config.get("providers", {}))

    def model_exists(self, model: str) -> bool:
        """Whether a local model artifact exists for this name."""
        return self._supervisor is not None and self._supervisor.model_exists(model)

    def _entry(self, provider_id: str) -> dict:
        entry = self._config.get("providers", {}).get(provider_id)
        if not entry:
            raise UnknownProvider(provider_id)
        return entry

    def resolve(self, provider_id: str, model_id: str) -> DispatchTarget:
        """Pick the backend that will serve (provider_id, model_id)."""
        entry = self._entry(provider_id)

        if provider_id == self.local_provider:
            if self._supervisor is None:
                raise UnknownProvider(provider_id)
            return DispatchTarget(ref=self._supervisor.resolve(model_id), entry=entry)

        ref = ModelRef(name=model_id, provider=provider_id, remote_id=model_id)
        if not entry.get("credential"):
            return DispatchTarget(ref=ref, entry=entry)

        api_key = get_credential(entry)
        if api_key:
            return DispatchTarget(ref=ref, entry=entry, api_key=api_key)

        # One hop only: the fallback provider never remaps again.
        if provider_id == self.fallback_provider or is_transcription_model(model_id):
            raise MissingCredential(provider_id)

        mapped = map_model_to_fallback(model_id, provider_id)
        logger.info(
            "API key not configured for %s, falling back to %s (%s -> %s)",
            provider_id, self.fallback_provider, model_id, mapped,
        )
        target = self.resolve(self.fallback_provider, mapped)
        return DispatchTarget(
            ref=target.ref,
            entry=target.entry,
            api_key=target.api_key,
            requested_provider=provider_id,
        )

    def dispatch(
        self,
        provider_id: str,
        model_id: str,
        messages: Iterable[ChatMessage | dict],
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[str]:
        """Return the lazy text stream for a chat request."""
        options = options or GenerationOptions()
        chat = [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages]

        if is_transcription_model(model_id):
            if provider_id != self.transcription_provider:
                raise UnsupportedProviderForModel(provider_id, model_id, self.transcription_provider)
            target = self.resolve(provider_id, model_id)
            return self._transcribe(target, options)

        target = self.resolve(provider_id, model_id)
        logger.info(
            "Chat dispatch -> provider=%s model=%s%s",
            target.ref.provider,
            target.ref.remote_id or target.ref.name,
            f" (fallback from {target.requested_provider})" if target.requested_provider else "",
        )
        if target.ref.is_local:
            return self._stream_local(target, chat, options)
        return self._stream_remote(target, chat, options)

    async def _stream_local(
        self, target: DispatchTarget, messages: list[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]:
        endpoint = await self._supervisor.ensure(target.ref.name)
        body = BODY_BUILDERS["llama"](target.ref.name, messages, options)
        url = chat_url(target.entry, target.ref.name, base_url=endpoint)
        async for text in self._stream(f"llama:{target.ref.name}", url, body, {"Content-Type": "application/json"}):
            yield text

    async def _stream_remote(
        self, target: DispatchTarget, messages: list[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]:
        dialect = target.entry.get("dialect", "openai")
        model = target.ref.remote_id
        body = BODY_BUILDERS[dialect](model, messages, options)
        provider_settings = ProviderSettings()
        headers = build_headers(
            target.entry,
            target.api_key,
            app_url=provider_settings.app_url,
            app_title=provider_settings.app_title,
        )
        url = chat_url(target.entry, model)
        async for text in self._stream(target.ref.provider, url, body, headers):
            yield text

    async def _stream(self, backend: str, url: str, body: dict, headers: dict) -> AsyncIterator[str]:
        chunks = self._http.stream_bytes(backend, "POST", url, json=body, headers=headers)
        async with aclosing(chunks):
            async for text in normalize(chunks):
                yield text

    async def _transcribe(self, target: DispatchTarget, options: GenerationOptions) -> AsyncIterator[str]:
        request = options.transcription
        if request is None:
            raise InvalidRequest("Audio data is required for transcription")
        try:
            audio = base64.b64decode(request.audio_base64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidRequest("Audio data is not valid base64") from e

        data = {"model": target.ref.remote_id}
        if request.language:
            data["language"] = request.language
        if request.response_format:
            data["response_format"] = request.response_format

        base = target.entry["url"].rstrip("/")
        resp = await self._http.request(
            target.ref.provider,
            "POST",
            f"{base}{target.entry['transcription_path']}",
            files={"file": (request.file_name, audio, request.mime_type)},
            data=data,
            headers={"Authorization": f"Bearer {target.api_key}"},
            timeout_type="transcription",
            max_retries=1,
        )
        if not resp.is_success:
            raise UpstreamHTTPError(target.ref.provider, resp.status_code, resp.text)
        text = extract_transcription_text(resp.text)
        if text:
            yield text

    async def stream_events(
        self,
        provider_id: str,
        model_id: str,
        messages: Iterable[ChatMessage | dict],
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Deltas followed by exactly one terminal Done or Error event."""
        label = f"{provider_id}/{model_id}"
        try:
            deltas = self.dispatch(provider_id, model_id, messages, options)
        except GatewayError as e:
            logger.warning("Chat %s failed: %s: %s", label, type(e).__name__, e)
            yield Error(e.label)
            return
        async for event in as_stream_events(deltas, label):
            yield event


async def as_stream_events(deltas: AsyncIterator[str], label: str) -> AsyncIterator[StreamEvent]:
    """Wrap a delta stream so it always ends in Done or Error, never silently."""
    try:
        async with aclosing(deltas):
            async for text in deltas:
                yield Delta(text)
    except GatewayError as e:
        logger.warning("Chat %s failed: %s: %s", label, type(e).__name__, e)
        yield Error(e.label)
        return
    except httpx.HTTPError as e:
        logger.warning("Chat %s backend failure: %s", label, e)
        yield Error("Backend unavailable")
        return
    except Exception:
        logger.exception("Chat %s failed unexpectedly", label)
        yield Error("Internal error")
        return
    yield Done()
