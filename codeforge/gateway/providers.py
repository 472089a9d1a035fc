"""Provider Adapters, protocol-level handling for each generation backend.

Each adapter translates a prompt into the backend's HTTP protocol over
httpx. Two entry points:
  - generate(): non-streaming, returns a ProviderResponse with a status
    (never raises for HTTP-level failures)
  - stream(): async iterator of raw model text deltas, raises
    ProviderAdapterError subclasses

Backend-specific behaviors:
  - Ollama: local runner, keyless, auto-pulls a missing model on 404
  - Groq: OpenAI-compatible, JSON mode on the non-streaming path
  - HuggingFace: text-generation inference API, 503 while the model loads
  - OpenAI / DeepSeek: OpenAI-compatible SSE streaming
  - Anthropic: messages API, `content_block_delta` SSE events
  - Gemini: `streamGenerateContent?alt=sse`
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import replace
from datetime import datetime, timezone

import httpx

from codeforge.core.config import settings
from codeforge.gateway.normalizer import compact_prompt
from codeforge.gateway.prompts import FILES_OBJECT_PROMPT, build_inference_prompt, build_local_prompt
from codeforge.gateway.types import (
    DEFAULT_PROVIDER_CONFIGS,
    Credential,
    ProviderConfig,
    ProviderId,
    ProviderResponse,
    ProviderStatus,
)

logger = logging.getLogger(__name__)

STREAM_MAX_TOKENS = 16000
HEALTH_TIMEOUT = 5.0


class ProviderAdapterError(Exception):
    """Raised when a provider call fails while streaming."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ProviderRateLimitError(ProviderAdapterError):
    """HTTP 429 from the provider."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429, error_code="429")
        self.retry_after = retry_after


class ProviderUnavailableError(ProviderAdapterError):
    """Provider unreachable or not configured."""


def parse_retry_after(resp: httpx.Response) -> float | None:
    """Seconds from a numeric retry-after header, or None."""
    value = resp.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _stream_timeout(read: float) -> httpx.Timeout:
    return httpx.Timeout(connect=10.0, read=read, write=10.0, pool=10.0)


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider: ProviderId
    default_model: str = ""
    api_url: str = ""
    requires_key: bool = True
    wraps_raw_code: bool = False  # Non-streaming output may be bare code
    supports_generate: bool = False
    supports_stream: bool = False

    def __init__(
        self,
        model: str = "",
        config: ProviderConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ):
        self.model = model or self.default_model
        self.config = replace(config or DEFAULT_PROVIDER_CONFIGS[self.provider])
        self._transport = transport

    def _client(self, timeout: float | httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _base_response(self) -> ProviderResponse:
        return ProviderResponse(provider=self.provider, model=self.model)

    def resolve_model(self, model_hint: str = "") -> str:
        """Backend model name for a user-facing model hint."""
        if not model_hint or model_hint == self.provider.value:
            return self.model
        return model_hint

    async def generate(
        self,
        prompt: str,
        credential: Credential | None = None,
        timeout: float | None = None,
    ) -> ProviderResponse:
        """Single non-streaming call returning the raw model text."""
        response = self._base_response()
        response.status = ProviderStatus.UNAVAILABLE
        response.error_message = f"{self.provider.value} does not support non-streaming generation"
        return response

    def stream(
        self,
        system: str,
        user: str,
        credential: Credential | None = None,
        model: str = "",
        timeout: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield raw model text deltas as they arrive."""
        raise ProviderUnavailableError(f"{self.provider.value} does not support streaming")

    @abstractmethod
    async def health_check(self, credential: Credential | None = None) -> bool:
        """Cheap reachability probe."""
        ...

    # -----------------------------------------------------------------------
    # Shared HTTP plumbing
    # -----------------------------------------------------------------------

    async def _post_for_text(
        self,
        url: str,
        payload: dict,
        headers: dict[str, str],
        timeout: float,
        extract_text: Callable[[object], str],
    ) -> ProviderResponse:
        """POST and normalize the outcome into a ProviderResponse."""
        response = self._base_response()
        start = time.monotonic()

        try:
            async with self._client(timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)

            response.latency_ms = int((time.monotonic() - start) * 1000)

            if resp.status_code == 429:
                response.status = ProviderStatus.RATE_LIMITED
                response.error_code = "429"
                response.retry_after = parse_retry_after(resp)
                response.error_message = f"Rate limited by {self.provider.value}"
                return response

            resp.raise_for_status()
            text = extract_text(resp.json())
            if not text:
                response.status = ProviderStatus.VENDOR_ERROR
                response.error_code = "EMPTY"
                response.error_message = f"Empty response from {self.provider.value}"
                return response

            response.text = text
            response.status = ProviderStatus.SUCCESS
            response.completed_at = datetime.now(timezone.utc)

        except httpx.TimeoutException:
            response.status = ProviderStatus.TIMEOUT
            response.error_message = f"{self.provider.value} timeout after {timeout}s"
            response.latency_ms = int((time.monotonic() - start) * 1000)
        except httpx.TransportError as e:
            response.status = ProviderStatus.UNAVAILABLE
            response.error_message = f"{self.provider.value} unreachable: {e}"
        except httpx.HTTPStatusError as e:
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_code = str(e.response.status_code)
            response.error_message = str(e)
            response.latency_ms = int((time.monotonic() - start) * 1000)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            response.status = ProviderStatus.VENDOR_ERROR
            response.error_code = "BAD_BODY"
            response.error_message = f"Unexpected response format from {self.provider.value}: {e}"

        return response

    async def _stream_sse(
        self,
        url: str,
        payload: dict,
        headers: dict[str, str],
        timeout: float,
        extract_delta: Callable[[dict], str],
    ) -> AsyncIterator[str]:
        """POST with streaming and yield text deltas from `data:` lines."""
        try:
            async with self._client(_stream_timeout(timeout)) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code == 429:
                        raise ProviderRateLimitError(
                            f"Rate limited by {self.provider.value}",
                            retry_after=parse_retry_after(resp),
                        )
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ProviderAdapterError(
                            f"{self.provider.value} error {resp.status_code}: {body[:200]}",
                            status_code=resp.status_code,
                            error_code=str(resp.status_code),
                        )

                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except ValueError:
                            logger.warning("Malformed SSE chunk from %s: %.120s", self.provider.value, data)
                            continue
                        delta = extract_delta(chunk)
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            raise ProviderAdapterError(f"{self.provider.value} stream timeout after {timeout}s", error_code="timeout") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"{self.provider.value} unreachable: {e}") from e


# ---------------------------------------------------------------------------
# OpenAI-compatible family (OpenAI, Groq, DeepSeek)
# ---------------------------------------------------------------------------


def _openai_delta(chunk: dict) -> str:
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


def _openai_message(data: object) -> str:
    return data["choices"][0]["message"]["content"] or ""


class OpenAICompatibleAdapter(BaseProviderAdapter):
    """Chat Completions protocol shared by several providers."""

    supports_stream = True

    def _headers(self, credential: Credential | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.secret}"
        return headers

    def stream(
        self,
        system: str,
        user: str,
        credential: Credential | None = None,
        model: str = "",
        timeout: float | None = None,
    ) -> AsyncIterator[str]:
        payload = {
            "model": self.resolve_model(model),
            "max_tokens": STREAM_MAX_TOKENS,
            "temperature": self.config.temperature,
            "stream": True,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        return self._stream_sse(
            self.api_url,
            payload,
            self._headers(credential),
            timeout or self.config.timeout_seconds,
            _openai_delta,
        )

    async def health_check(self, credential: Credential | None = None) -> bool:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": "ping"}],
            "max_tokens": 10,
        }
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.post(self.api_url, json=payload, headers=self._headers(credential))
            return resp.status_code == 200
        except httpx.HTTPError:
            return False


class OpenAIAdapter(OpenAICompatibleAdapter):
    """OpenAI Chat Completions (paid, routed by model hint)."""

    provider = ProviderId.OPENAI
    default_model = settings.openai_model
    api_url = "https://api.openai.com/v1/chat/completions"

    def resolve_model(self, model_hint: str = "") -> str:
        # Unknown hints land here as the catch-all route
        if model_hint.startswith("gpt-"):
            return model_hint
        return self.model


class GroqAdapter(OpenAICompatibleAdapter):
    """Groq free tier, first cloud fallback with credential rotation."""

    provider = ProviderId.GROQ
    default_model = settings.groq_model
    api_url = "https://api.groq.com/openai/v1/chat/completions"
    supports_generate = True

    async def generate(
        self,
        prompt: str,
        credential: Credential | None = None,
        timeout: float | None = None,
    ) -> ProviderResponse:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": FILES_OBJECT_PROMPT},
                {"role": "user", "content": compact_prompt(prompt, self.config.prompt_char_limit)},
            ],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "response_format": {"type": "json_object"},
        }
        return await self._post_for_text(
            self.api_url,
            payload,
            self._headers(credential),
            timeout or self.config.timeout_seconds,
            _openai_message,
        )


class DeepSeekAdapter(OpenAICompatibleAdapter):
    """DeepSeek, OpenAI-compatible endpoint."""

    provider = ProviderId.DEEPSEEK
    default_model = settings.deepseek_model
    api_url = f"{settings.deepseek_base_url.rstrip('/')}/chat/completions"


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

ANTHROPIC_VERSION = "2023-06-01"


def _anthropic_delta(chunk: dict) -> str:
    if chunk.get("type") != "content_block_delta":
        return ""
    delta = chunk.get("delta") or {}
    if delta.get("type") != "text_delta":
        return ""
    return delta.get("text") or ""


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API with SSE streaming."""

    provider = ProviderId.ANTHROPIC
    default_model = settings.anthropic_model
    api_url = "https://api.anthropic.com/v1/messages"
    supports_stream = True

    def _headers(self, credential: Credential | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if credential is not None:
            headers["x-api-key"] = credential.secret
        return headers

    def resolve_model(self, model_hint: str = "") -> str:
        # The hint only selects the family; the deployed model comes from config
        return self.model

    def stream(
        self,
        system: str,
        user: str,
        credential: Credential | None = None,
        model: str = "",
        timeout: float | None = None,
    ) -> AsyncIterator[str]:
        payload = {
            "model": self.resolve_model(model),
            "max_tokens": STREAM_MAX_TOKENS,
            "temperature": self.config.temperature,
            "system": system,
            "stream": True,
            "messages": [{"role": "user", "content": user}],
        }
        return self._stream_sse(
            self.api_url,
            payload,
            self._headers(credential),
            timeout or self.config.timeout_seconds,
            _anthropic_delta,
        )

    async def health_check(self, credential: Credential | None = None) -> bool:
        payload = {
            "model": self.model,
            "max_tokens": 10,
            "messages": [{"role": "user", "content": "ping"}],
        }
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.post(self.api_url, json=payload, headers=self._headers(credential))
            return resp.status_code == 200
        except httpx.HTTPError:
            return False


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


def _gemini_delta(chunk: dict) -> str:
    candidates = chunk.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts)


class GeminiAdapter(BaseProviderAdapter):
    """Google AI streamGenerateContent with SSE."""

    provider = ProviderId.GEMINI
    default_model = settings.gemini_model
    api_url = "https://generativelanguage.googleapis.com/v1beta/models"
    supports_stream = True

    def _headers(self, credential: Credential | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential is not None:
            headers["x-goog-api-key"] = credential.secret
        return headers

    def stream(
        self,
        system: str,
        user: str,
        credential: Credential | None = None,
        model: str = "",
        timeout: float | None = None,
    ) -> AsyncIterator[str]:
        url = f"{self.api_url}/{self.resolve_model(model)}:streamGenerateContent?alt=sse"
        payload = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
        }
        return self._stream_sse(
            url,
            payload,
            self._headers(credential),
            timeout or self.config.timeout_seconds,
            _gemini_delta,
        )

    async def health_check(self, credential: Credential | None = None) -> bool:
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.get(f"{self.api_url}/{self.model}", headers=self._headers(credential))
            return resp.status_code == 200
        except httpx.HTTPError:
            return False


# ---------------------------------------------------------------------------
# HuggingFace inference
# ---------------------------------------------------------------------------


def _hf_generated_text(data: object) -> str:
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0].get("generated_text") or ""
    if isinstance(data, dict) and "generated_text" in data:
        return data["generated_text"] or ""
    raise ValueError("no generated_text in response")


class HuggingFaceAdapter(BaseProviderAdapter):
    """HuggingFace text-generation inference API (second free fallback)."""

    provider = ProviderId.HUGGINGFACE
    default_model = settings.huggingface_model
    api_url = "https://api-inference.huggingface.co/models/"
    wraps_raw_code = True
    supports_generate = True

    def _headers(self, credential: Credential | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.secret}"
        return headers

    async def generate(
        self,
        prompt: str,
        credential: Credential | None = None,
        timeout: float | None = None,
    ) -> ProviderResponse:
        payload = {
            "inputs": build_inference_prompt(compact_prompt(prompt, self.config.prompt_char_limit)),
            "parameters": {
                "max_new_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "return_full_text": False,
                "do_sample": False,
            },
            "options": {"wait_for_model": True, "use_cache": True},
        }
        return await self._post_for_text(
            f"{self.api_url}{self.model}",
            payload,
            self._headers(credential),
            timeout or self.config.timeout_seconds,
            _hf_generated_text,
        )

    async def health_check(self, credential: Credential | None = None) -> bool:
        payload = {"inputs": "test", "parameters": {"max_new_tokens": 10}}
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.post(f"{self.api_url}{self.model}", json=payload, headers=self._headers(credential))
            # 503 = model is loading, the endpoint itself is up
            return resp.status_code in (200, 503)
        except httpx.HTTPError:
            return False


# ---------------------------------------------------------------------------
# Ollama (local runner)
# ---------------------------------------------------------------------------


class OllamaAdapter(BaseProviderAdapter):
    """Local Ollama runner. Keyless, slow, first in the fallback chain."""

    provider = ProviderId.OLLAMA
    default_model = settings.ollama_model
    requires_key = False
    wraps_raw_code = True
    supports_generate = True
    pull_timeout = 900.0  # First-time model download

    def __init__(self, model: str = "", base_url: str = "", timeout_seconds: float | None = None, **kwargs):
        super().__init__(model=model, **kwargs)
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.config.timeout_seconds = timeout_seconds or settings.ollama_timeout_seconds

    def set_model(self, model: str) -> None:
        logger.info("Ollama: switching model from %s to %s", self.model, model)
        self.model = model

    def get_model(self) -> str:
        return self.model

    async def generate(
        self,
        prompt: str,
        credential: Credential | None = None,
        timeout: float | None = None,
    ) -> ProviderResponse:
        timeout = timeout or self.config.timeout_seconds
        response = await self._post_for_text(
            f"{self.base_url}/api/generate",
            self._generate_payload(prompt),
            {"Content-Type": "application/json"},
            timeout,
            lambda data: data.get("response") or "",
        )

        if response.status == ProviderStatus.VENDOR_ERROR and response.error_code == "404":
            logger.info("Ollama: model '%s' not found, pulling it", self.model)
            try:
                await self.pull_model(self.model)
            except ProviderAdapterError as e:
                response.error_message = str(e)
                return response
            return await self._post_for_text(
                f"{self.base_url}/api/generate",
                self._generate_payload(prompt),
                {"Content-Type": "application/json"},
                timeout,
                lambda data: data.get("response") or "",
            )

        if response.status == ProviderStatus.UNAVAILABLE:
            response.error_message = "Ollama not running. Start it with: ollama serve"
        return response

    def _generate_payload(self, prompt: str) -> dict:
        return {
            "model": self.model,
            "prompt": build_local_prompt(prompt),
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "top_p": 0.9,
                "top_k": 40,
                "num_predict": self.config.max_tokens,
            },
        }

    async def pull_model(self, model: str) -> None:
        """Download a model into the local runner. Blocks until done."""
        logger.info("Ollama: pulling model %s (may take several minutes)", model)
        try:
            async with self._client(self.pull_timeout) as client:
                resp = await client.post(f"{self.base_url}/api/pull", json={"name": model, "stream": False})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderAdapterError(
                f"Could not install model '{model}'. Run manually: ollama pull {model}",
                error_code="PULL_FAILED",
            ) from e
        logger.info("Ollama: model %s installed", model)

    async def list_models(self) -> list[str]:
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
            if resp.status_code != 200:
                return []
            return [m["name"] for m in resp.json().get("models", []) if "name" in m]
        except (httpx.HTTPError, ValueError):
            return []

    async def health_check(self, credential: Credential | None = None) -> bool:
        """True when the runner is up and the configured model is installed."""
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
            if resp.status_code != 200:
                return False
            models = resp.json().get("models")
        except (httpx.HTTPError, ValueError):
            return False

        if not isinstance(models, list):
            return True
        family = self.model.split(":")[0]
        names = [m.get("name", "") for m in models]
        found = any(n == self.model or n.startswith(family) for n in names)
        if not found:
            logger.warning("Ollama: model '%s' not installed. Available: %s", self.model, ", ".join(names))
        return found


# ---------------------------------------------------------------------------
# Model routing
# ---------------------------------------------------------------------------

# Model hint prefix -> provider. First match wins; anything else goes to OpenAI.
MODEL_ROUTES: tuple[tuple[str, ProviderId], ...] = (
    ("claude", ProviderId.ANTHROPIC),
    ("llama", ProviderId.GROQ),
    ("mixtral", ProviderId.GROQ),
    ("gemma", ProviderId.GROQ),
    ("groq", ProviderId.GROQ),
    ("gemini", ProviderId.GEMINI),
    ("deepseek", ProviderId.DEEPSEEK),
)
DEFAULT_ROUTE = ProviderId.OPENAI


def resolve_provider(model: str) -> ProviderId:
    """Provider that serves a streaming model hint."""
    hint = (model or "").strip().lower()
    for prefix, provider in MODEL_ROUTES:
        if hint.startswith(prefix):
            return provider
    return DEFAULT_ROUTE


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderId, type[BaseProviderAdapter]] = {
    ProviderId.OLLAMA: OllamaAdapter,
    ProviderId.GROQ: GroqAdapter,
    ProviderId.HUGGINGFACE: HuggingFaceAdapter,
    ProviderId.OPENAI: OpenAIAdapter,
    ProviderId.ANTHROPIC: AnthropicAdapter,
    ProviderId.GEMINI: GeminiAdapter,
    ProviderId.DEEPSEEK: DeepSeekAdapter,
}


def get_adapter(provider: ProviderId, **kwargs) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider}")
    return cls(**kwargs)
