"""Core types and DTOs for the code generation gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderId(str, Enum):
    """Supported generation backends."""

    OLLAMA = "ollama"
    GROQ = "groq"
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"


class CredentialHealth(str, Enum):
    """Health of a single credential inside its pool."""

    HEALTHY = "healthy"
    RATE_LIMITED = "rate_limited"
    DISABLED = "disabled"  # Terminal for the life of the process


class ProviderStatus(str, Enum):
    """Outcome of a single non-streaming provider call."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"  # Connection refused / no credentials
    VENDOR_ERROR = "vendor_error"
    TIMEOUT = "timeout"


class EventType(str, Enum):
    """Wire tags of stream events."""

    FILE = "file"
    STATUS = "status"
    ERROR = "error"
    COMPLETE = "complete"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass
class Credential:
    """One API key and its rotation state. Mutated only by its pool."""

    secret: str
    index: int = 0  # 1-based position in the pool, used in logs instead of the secret
    health: CredentialHealth = CredentialHealth.HEALTHY
    rate_limited_until: float = 0.0
    request_count: int = 0
    consecutive_errors: int = 0
    last_used_at: float = 0.0

    @property
    def label(self) -> str:
        return f"Key #{self.index}"

    def __repr__(self) -> str:
        return f"Credential({self.label}, {self.health.value})"


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """Immutable input to the orchestrator."""

    prompt: str
    model_hint: str = ""


@dataclass(frozen=True)
class GeneratedFile:
    """A single file produced by a provider."""

    path: str
    content: str
    language: str = ""

    def to_dict(self) -> dict:
        data = {"path": self.path, "content": self.content}
        if self.language:
            data["language"] = self.language
        return data


@dataclass
class ProviderResponse:
    """Normalized result of a non-streaming provider call."""

    provider: ProviderId
    status: ProviderStatus = ProviderStatus.SUCCESS
    text: str = ""
    model: str = ""
    latency_ms: int = 0
    retry_after: float | None = None  # Seconds, from the retry-after header on 429
    error_code: str = ""
    error_message: str = ""
    completed_at: datetime | None = None


@dataclass
class GenerationResult:
    """Non-streaming response returned by the orchestrator. Never raised."""

    success: bool
    files: list[GeneratedFile] = field(default_factory=list)
    provider: str = ""
    cached: bool = False
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_refreshing: bool = False
    message: str = ""
    retry_after: float | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize to the JSON wire shape (camelCase keys)."""
        data: dict[str, Any] = {
            "success": self.success,
            "files": [{"path": f.path, "content": f.content} for f in self.files],
            "provider": self.provider,
            "cached": self.cached,
            "generatedAt": self.generated_at.isoformat(),
            "stats": self.stats,
        }
        if self.is_refreshing:
            data["isRefreshing"] = True
        if self.message:
            data["message"] = self.message
        if self.retry_after is not None:
            data["retryAfter"] = round(self.retry_after, 1)
        return data


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


def clean_text(value: object) -> str:
    """String form of a decoded JSON value, with lone surrogates replaced by U+FFFD."""
    text = str(value)
    return text.encode("utf-8", "surrogatepass").decode("utf-8", "replace")


@dataclass(frozen=True)
class StreamEvent:
    """Tagged stream event: File, Status, Error or Complete."""

    type: EventType
    path: str = ""
    content: str = ""
    language: str = ""
    message: str = ""

    @classmethod
    def file(cls, path: str, content: str, language: str = "") -> StreamEvent:
        return cls(type=EventType.FILE, path=path, content=content, language=language)

    @classmethod
    def status(cls, message: str) -> StreamEvent:
        return cls(type=EventType.STATUS, message=message)

    @classmethod
    def error(cls, message: str) -> StreamEvent:
        return cls(type=EventType.ERROR, message=message)

    @classmethod
    def complete(cls) -> StreamEvent:
        return cls(type=EventType.COMPLETE)

    @classmethod
    def from_record(cls, record: dict) -> StreamEvent | None:
        """Build an event from a decoded wire record, or None if the tag is unknown."""
        kind = record.get("type")
        if kind == EventType.FILE.value:
            return cls.file(
                path=clean_text(record.get("path", "")),
                content=clean_text(record.get("content", "")),
                language=clean_text(record.get("language") or ""),
            )
        if kind == EventType.STATUS.value:
            return cls.status(clean_text(record.get("message", "")))
        if kind == EventType.ERROR.value:
            return cls.error(clean_text(record.get("message", "")))
        if kind == EventType.COMPLETE.value:
            return cls.complete()
        return None

    def to_dict(self) -> dict:
        if self.type == EventType.FILE:
            data = {"type": self.type.value, "path": self.path, "content": self.content}
            if self.language:
                data["language"] = self.language
            return data
        if self.type in (EventType.STATUS, EventType.ERROR):
            return {"type": self.type.value, "message": self.message}
        return {"type": self.type.value}


@dataclass
class AuditOutcome:
    """Result of the silent audit pass."""

    files_after: list[GeneratedFile]
    fixed: bool = False
    diagnostics: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Connection configuration for a provider."""

    provider: ProviderId
    timeout_seconds: float = 60.0
    max_tokens: int = 8000
    temperature: float = 0.1
    prompt_char_limit: int = 0  # 0 = no compaction


# Providers of the non-streaming fallback chain, in strict priority order
FALLBACK_CHAIN: tuple[ProviderId, ...] = (
    ProviderId.OLLAMA,
    ProviderId.GROQ,
    ProviderId.HUGGINGFACE,
)

# Providers that run without credentials
KEYLESS_PROVIDERS: frozenset[ProviderId] = frozenset({ProviderId.OLLAMA})

DEFAULT_PROVIDER_CONFIGS: dict[ProviderId, ProviderConfig] = {
    ProviderId.OLLAMA: ProviderConfig(
        provider=ProviderId.OLLAMA,
        timeout_seconds=180,  # Local models are slow on CPU
        max_tokens=4096,
    ),
    ProviderId.GROQ: ProviderConfig(
        provider=ProviderId.GROQ,
        max_tokens=8000,
        prompt_char_limit=2000,
    ),
    ProviderId.HUGGINGFACE: ProviderConfig(
        provider=ProviderId.HUGGINGFACE,
        max_tokens=4096,
        prompt_char_limit=1500,
    ),
    ProviderId.OPENAI: ProviderConfig(provider=ProviderId.OPENAI, max_tokens=16000),
    ProviderId.ANTHROPIC: ProviderConfig(provider=ProviderId.ANTHROPIC, max_tokens=16000),
    ProviderId.GEMINI: ProviderConfig(provider=ProviderId.GEMINI, max_tokens=16000),
    ProviderId.DEEPSEEK: ProviderConfig(provider=ProviderId.DEEPSEEK, max_tokens=8000, timeout_seconds=120),
}


@dataclass
class ProviderProfile:
    """A provider with its place in the fallback order and its credential pool."""

    id: ProviderId
    priority: int
    credential_pool: Any = None  # CredentialPool; Any to avoid an import cycle

    @property
    def requires_credentials(self) -> bool:
        return self.id not in KEYLESS_PROVIDERS
