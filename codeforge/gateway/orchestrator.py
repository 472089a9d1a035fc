"""Generation Orchestrator, entry point for every code generation request.

Non-streaming path (generate_code):
  1. Response cache lookup under a provider-agnostic scope
  2. Fallback chain in strict priority order: Ollama (local, keyless),
     Groq (credential rotation), HuggingFace (credential rotation)
  3. First valid file set is cached and returned
  4. Total exhaustion returns a soft-failure result, never an exception

Streaming path (generate_files / edit_files):
  1. Model hint routed to a provider through MODEL_ROUTES
  2. Provider text deltas fed into a StreamReconstructor
  3. File events forwarded as soon as each record completes
  4. Exactly one Complete closes every stream

Usage:
    orchestrator = build_orchestrator(load_credential_config())

    result = await orchestrator.generate_code("Create a debounce hook")

    async for event in orchestrator.generate_files(prompt, model="gpt-4o"):
        ...
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from codeforge.core.config import settings
from codeforge.core.credentials import CREDENTIAL_PREFIXES, CredentialConfig
from codeforge.core.metrics import GENERATION_OUTCOMES
from codeforge.gateway.audit import SilentAuditor, wants_audit
from codeforge.gateway.cache import ResponseCache
from codeforge.gateway.credential_pool import CredentialPool, PoolExhaustedError
from codeforge.gateway.normalizer import (
    MalformedPayloadError,
    guess_language,
    parse_files,
    serialize_files,
    validate_payload,
)
from codeforge.gateway.prompts import STREAM_EDIT_PROMPT, STREAM_GENERATION_PROMPT, build_edit_message
from codeforge.gateway.providers import (
    BaseProviderAdapter,
    ProviderAdapterError,
    ProviderRateLimitError,
    ProviderUnavailableError,
    get_adapter,
    resolve_provider,
)
from codeforge.gateway.sandbox import OpenCodeSandbox, Sandbox
from codeforge.gateway.stream import StreamReconstructor
from codeforge.gateway.types import (
    DEFAULT_PROVIDER_CONFIGS,
    FALLBACK_CHAIN,
    Credential,
    EventType,
    GeneratedFile,
    GenerationRequest,
    GenerationResult,
    OverallHealth,
    ProviderId,
    ProviderProfile,
    ProviderResponse,
    ProviderStatus,
    StreamEvent,
)

logger = logging.getLogger(__name__)

CACHE_SCOPE = "codegen"
REFRESHING_MESSAGE = "Please wait... refreshing API keys and retrying"
PROCESSING_MESSAGE = "Please wait... processing your request"


@dataclass
class OrchestratorStats:
    """Process-lifetime counters. Reset only on restart."""

    total_requests: int = 0
    stream_requests: int = 0
    cache_hits: int = 0
    errors: int = 0
    provider_calls: dict[str, int] = field(default_factory=dict)

    def count_call(self, provider: ProviderId) -> None:
        self.provider_calls[provider.value] = self.provider_calls.get(provider.value, 0) + 1


class CodeGenerationOrchestrator:
    """Fallback chain, streaming router and their shared state.

    Integrates:
      - CredentialPool: one per keyed provider, shared by both paths
      - ResponseCache: non-streaming results only
      - Provider adapters: created lazily through get_adapter()
      - SilentAuditor: optional repair pass over generated files
    """

    def __init__(
        self,
        credentials: CredentialConfig | None = None,
        cache: ResponseCache | None = None,
        adapters: dict[ProviderId, BaseProviderAdapter] | None = None,
        pools: dict[ProviderId, CredentialPool] | None = None,
        auditor: SilentAuditor | None = None,
        fallback_chain: tuple[ProviderId, ...] = FALLBACK_CHAIN,
        adapter_kwargs: dict[ProviderId, dict] | None = None,
        audit_streams: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            credentials: Secrets per provider; ignored for providers in `pools`
            adapters: Pre-built adapters (tests inject fakes here)
            pools: Pre-built credential pools
            adapter_kwargs: Extra kwargs per provider for get_adapter()
            audit_streams: Default for the audit flag of the streaming path
        """
        credentials = credentials or CredentialConfig()
        self.cache = cache or ResponseCache(clock=clock)
        self.auditor = auditor or SilentAuditor()
        self.audit_streams = audit_streams
        self.stats = OrchestratorStats()

        self.pools: dict[ProviderId, CredentialPool] = dict(pools or {})
        for provider in CREDENTIAL_PREFIXES:
            if provider not in self.pools:
                self.pools[provider] = CredentialPool(provider, credentials.for_provider(provider), clock=clock)

        self.profiles = [
            ProviderProfile(id=provider, priority=i, credential_pool=self.pools.get(provider))
            for i, provider in enumerate(fallback_chain)
        ]

        self._adapters: dict[ProviderId, BaseProviderAdapter] = dict(adapters or {})
        self._adapter_kwargs = adapter_kwargs or {}

    def _get_adapter(self, provider: ProviderId) -> BaseProviderAdapter:
        """Get or create adapter for a provider."""
        if provider not in self._adapters:
            self._adapters[provider] = get_adapter(provider, **self._adapter_kwargs.get(provider, {}))
        return self._adapters[provider]

    # -----------------------------------------------------------------------
    # Non-streaming fallback chain
    # -----------------------------------------------------------------------

    async def generate_code(self, prompt: str | GenerationRequest) -> GenerationResult:
        """Generate files for a prompt. Always returns a result, never raises."""
        request = prompt if isinstance(prompt, GenerationRequest) else GenerationRequest(prompt=prompt)
        self.stats.total_requests += 1
        try:
            return await self._generate_code(request.prompt)
        except Exception as e:
            self.stats.errors += 1
            logger.exception("Unexpected generation failure: %s", e)
            return self._soft_failure(PROCESSING_MESSAGE)

    async def _generate_code(self, prompt: str) -> GenerationResult:
        entry = self.cache.lookup(prompt, CACHE_SCOPE)
        if entry is not None:
            self.stats.cache_hits += 1
            logger.info("Cache hit for prompt (provider=%s)", entry.provider_used)
            return GenerationResult(
                success=True,
                files=validate_payload(json.loads(entry.payload)),
                provider=entry.provider_used,
                cached=True,
                generated_at=datetime.fromtimestamp(entry.created_at, tz=timezone.utc),
                stats=self.get_stats(),
            )

        for profile in sorted(self.profiles, key=lambda p: p.priority):
            files = await self._try_provider(profile, prompt)
            if files is None:
                continue

            self.cache.set(prompt, CACHE_SCOPE, serialize_files(files), provider_used=profile.id.value)
            logger.info("Generated %d file(s) via %s", len(files), profile.id.value, extra={"provider": profile.id.value})
            return GenerationResult(
                success=True,
                files=files,
                provider=profile.id.value,
                cached=False,
                stats=self.get_stats(),
            )

        logger.warning("All providers exhausted, returning soft failure")
        return self._soft_failure(REFRESHING_MESSAGE, retry_after=self._soonest_recovery())

    async def _try_provider(self, profile: ProviderProfile, prompt: str) -> list[GeneratedFile] | None:
        """Run one provider of the chain. Returns files on success, None to fall through."""
        adapter = self._get_adapter(profile.id)
        if not adapter.supports_generate:
            return None

        if not profile.requires_credentials:
            response = await adapter.generate(prompt)
            self.stats.count_call(profile.id)
            return self._accept(adapter, response, prompt)

        pool: CredentialPool | None = profile.credential_pool
        if pool is None or pool.size == 0:
            logger.debug("Skipping %s: no credentials configured", profile.id.value)
            return None

        # Each credential gets at most one attempt per request
        for _ in range(pool.size):
            try:
                cred = pool.next()
            except PoolExhaustedError as e:
                logger.info("%s", e, extra={"provider": profile.id.value})
                return None

            response = await adapter.generate(prompt, cred)
            self.stats.count_call(profile.id)

            if response.status == ProviderStatus.SUCCESS:
                pool.mark_success(cred)
                return self._accept(adapter, response, prompt)

            if response.status == ProviderStatus.RATE_LIMITED:
                pool.mark_rate_limited(cred, response.retry_after)
                logger.info("%s %s rate limited, rotating", profile.id.value, cred.label)
                continue

            GENERATION_OUTCOMES.labels(provider=profile.id.value, outcome=response.status.value).inc()
            if response.status == ProviderStatus.UNAVAILABLE:
                # Endpoint down; another key will not help
                logger.warning("%s unavailable: %s", profile.id.value, response.error_message)
                return None

            pool.mark_error(cred)
            logger.warning("%s %s failed: %s", profile.id.value, cred.label, response.error_message)

        return None

    def _accept(
        self,
        adapter: BaseProviderAdapter,
        response: ProviderResponse,
        prompt: str,
    ) -> list[GeneratedFile] | None:
        provider = adapter.provider.value
        if response.status != ProviderStatus.SUCCESS:
            GENERATION_OUTCOMES.labels(provider=provider, outcome=response.status.value).inc()
            logger.warning("%s failed: %s", provider, response.error_message)
            return None

        try:
            files = parse_files(response.text, prompt, allow_wrap=adapter.wraps_raw_code)
        except MalformedPayloadError as e:
            GENERATION_OUTCOMES.labels(provider=provider, outcome="malformed").inc()
            logger.warning("%s returned a malformed payload: %s", provider, e)
            return None

        GENERATION_OUTCOMES.labels(provider=provider, outcome="success").inc()
        return files

    def _soft_failure(self, message: str, retry_after: float | None = None) -> GenerationResult:
        return GenerationResult(
            success=True,
            files=[],
            provider="",
            cached=False,
            is_refreshing=True,
            message=message,
            retry_after=retry_after,
            stats=self.get_stats(),
        )

    def _soonest_recovery(self) -> float | None:
        waits = [
            wait
            for profile in self.profiles
            if profile.credential_pool is not None
            and (wait := profile.credential_pool.soonest_recovery()) is not None
        ]
        return min(waits) if waits else None

    # -----------------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------------

    def generate_files(self, prompt: str, model: str, audit: bool | None = None) -> AsyncIterator[StreamEvent]:
        """Stream File events for a new project, routed by model hint."""
        return self._stream_events(
            resolve_provider(model),
            STREAM_GENERATION_PROMPT,
            prompt,
            model,
            self.audit_streams if audit is None else audit,
            context=prompt,
        )

    def edit_files(
        self,
        instruction: str,
        current_content: str,
        file_path: str,
        model: str,
        all_files: dict[str, str] | None = None,
        audit: bool | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream File events for an edit of an existing project.

        With `audit=None` the audit pass also runs when the instruction reports
        a build or runtime failure or asks for a fix.
        """
        if audit is None:
            audit = self.audit_streams or wants_audit(instruction)
        return self._stream_events(
            resolve_provider(model),
            STREAM_EDIT_PROMPT,
            build_edit_message(instruction, current_content, file_path, all_files),
            model,
            audit,
            context=instruction,
        )

    async def _stream_events(
        self,
        provider: ProviderId,
        system: str,
        user: str,
        model: str,
        audit: bool,
        context: str,
    ) -> AsyncIterator[StreamEvent]:
        self.stats.stream_requests += 1
        buffered: list[GeneratedFile] = []

        try:
            async for event in self._stream_attempts(provider, system, user, model):
                if event.type == EventType.COMPLETE:
                    continue
                if event.type == EventType.FILE:
                    language = event.language or guess_language(event.path)
                    if audit:
                        buffered.append(GeneratedFile(path=event.path, content=event.content, language=language))
                        continue
                    event = StreamEvent.file(event.path, event.content, language)
                yield event
        except Exception as e:
            self.stats.errors += 1
            logger.exception("Stream from %s failed: %s", provider.value, e)
            yield StreamEvent.error("Generation failed, please retry")

        if buffered:
            for f in await self.auditor.silent_audit(buffered, context):
                yield StreamEvent.file(f.path, f.content, f.language)

        yield StreamEvent.complete()

    async def _stream_attempts(
        self,
        provider: ProviderId,
        system: str,
        user: str,
        model: str,
    ) -> AsyncIterator[StreamEvent]:
        """Reconstructed events from the routed provider, rotating keys on early 429s."""
        adapter = self._get_adapter(provider)
        pool = self.pools.get(provider)
        attempts = max(pool.size, 1) if adapter.requires_key and pool is not None else 1

        for attempt in range(attempts):
            cred: Credential | None = None
            if adapter.requires_key:
                if pool is None or pool.size == 0:
                    yield StreamEvent.error(f"No API key configured for {provider.value}")
                    return
                try:
                    cred = pool.next()
                except PoolExhaustedError as e:
                    yield StreamEvent.error(str(e))
                    return

            reconstructor = StreamReconstructor()
            forwarded = 0
            self.stats.count_call(provider)
            logger.info("Streaming from %s (model=%s, %s)", provider.value, model, cred.label if cred else "keyless")

            try:
                async for delta in adapter.stream(system, user, cred, model=model):
                    for event in reconstructor.feed(delta):
                        forwarded += 1
                        yield event
                for event in reconstructor.flush():
                    forwarded += 1
                    yield event
            except ProviderRateLimitError as e:
                if cred is not None and pool is not None:
                    pool.mark_rate_limited(cred, e.retry_after)
                GENERATION_OUTCOMES.labels(provider=provider.value, outcome="rate_limited").inc()
                if forwarded == 0 and attempt < attempts - 1:
                    logger.info("%s rate limited before first event, rotating key", provider.value)
                    continue
                yield StreamEvent.error(str(e))
                return
            except ProviderAdapterError as e:
                if cred is not None and pool is not None and not isinstance(e, ProviderUnavailableError):
                    pool.mark_error(cred)
                GENERATION_OUTCOMES.labels(provider=provider.value, outcome="stream_error").inc()
                logger.warning("Stream from %s failed: %s", provider.value, e)
                yield StreamEvent.error(str(e))
                return

            if cred is not None and pool is not None:
                pool.mark_success(cred)
            GENERATION_OUTCOMES.labels(provider=provider.value, outcome="success").inc()
            if reconstructor.emitted == 0:
                logger.warning("Stream from %s produced no events (%d lines ignored)", provider.value, reconstructor.dropped_lines)
            return

    # -----------------------------------------------------------------------
    # Stats, health and models
    # -----------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Counters, cache and credential snapshots. Secrets are never included."""
        stats = self.stats
        hit_rate = (stats.cache_hits / stats.total_requests * 100) if stats.total_requests else 0.0
        cache_stats = self.cache.stats()
        return {
            "totalRequests": stats.total_requests,
            "streamRequests": stats.stream_requests,
            "cacheHits": stats.cache_hits,
            "perProviderCalls": dict(stats.provider_calls),
            "keyRotations": sum(pool.rotations for pool in self.pools.values()),
            "errors": stats.errors,
            "cacheSize": cache_stats["size"],
            "cacheHitRate": f"{hit_rate:.1f}%",
            "totalApiCalls": sum(stats.provider_calls.values()),
            "credentials": {
                provider.value: pool.get_status() for provider, pool in self.pools.items() if pool.size
            },
        }

    def clear_cache(self) -> int:
        return self.cache.clear()

    async def _probe(self, provider: ProviderId) -> bool:
        adapter = self._get_adapter(provider)
        if not adapter.requires_key:
            return await adapter.health_check()
        pool = self.pools.get(provider)
        cred = pool.peek() if pool is not None else None
        if cred is None:
            return False
        return await adapter.health_check(cred)

    async def health_check(self) -> dict:
        """Probe every fallback provider concurrently and derive overall health."""
        chain = [profile.id for profile in self.profiles]
        results = await asyncio.gather(*(self._probe(p) for p in chain), return_exceptions=True)

        available: dict[ProviderId, bool] = {}
        for provider, result in zip(chain, results):
            if isinstance(result, BaseException):
                logger.warning("Health probe for %s raised: %s", provider.value, result)
                result = False
            available[provider] = bool(result)

        report: dict = {}
        for provider in chain:
            entry: dict = {"available": available[provider]}
            pool = self.pools.get(provider)
            if pool is not None:
                entry["credentialCount"] = pool.size
            if provider == ProviderId.OLLAMA:
                adapter = self._get_adapter(provider)
                entry["model"] = adapter.model
                entry["url"] = getattr(adapter, "base_url", "")
            report[provider.value] = entry

        report["streaming"] = {
            provider.value: {"available": pool.available_count() > 0, "credentialCount": pool.size}
            for provider, pool in self.pools.items()
            if provider not in available
        }
        report["status"] = overall_health(available).value
        return report

    async def list_models(self) -> list[str]:
        adapter = self._get_adapter(ProviderId.OLLAMA)
        return await adapter.list_models()

    def set_model(self, model: str) -> None:
        self._get_adapter(ProviderId.OLLAMA).set_model(model)

    def get_current_model(self) -> str:
        return self._get_adapter(ProviderId.OLLAMA).get_model()


def overall_health(available: dict[ProviderId, bool]) -> OverallHealth:
    """Local runner up, or every cloud provider up, is healthy; some up is degraded."""
    cloud = [up for provider, up in available.items() if provider != ProviderId.OLLAMA]
    if available.get(ProviderId.OLLAMA) or (cloud and all(cloud)):
        return OverallHealth.HEALTHY
    if any(available.values()):
        return OverallHealth.DEGRADED
    return OverallHealth.DOWN


def build_orchestrator(
    credentials: CredentialConfig,
    sandbox: Sandbox | None = None,
    clock: Callable[[], float] = time.time,
) -> CodeGenerationOrchestrator:
    """Wire an orchestrator from settings. Called once at application startup."""
    adapter_kwargs: dict[ProviderId, dict] = {
        ProviderId.OLLAMA: {
            "model": settings.ollama_model,
            "base_url": settings.ollama_base_url,
            "timeout_seconds": settings.ollama_timeout_seconds,
        },
    }
    for provider, config in DEFAULT_PROVIDER_CONFIGS.items():
        if provider == ProviderId.OLLAMA:
            continue
        timeout = max(config.timeout_seconds, settings.cloud_timeout_seconds)
        adapter_kwargs[provider] = {"config": replace(config, timeout_seconds=timeout)}

    pools = {
        provider: CredentialPool(
            provider,
            credentials.for_provider(provider),
            clock=clock,
            max_errors=settings.credential_max_errors,
            default_retry_after=settings.credential_default_retry_after,
        )
        for provider in CREDENTIAL_PREFIXES
    }

    if sandbox is None and settings.audit_enabled:
        sandbox = OpenCodeSandbox(binary=settings.opencode_binary, model=settings.opencode_model)

    return CodeGenerationOrchestrator(
        cache=ResponseCache(
            capacity=settings.cache_capacity,
            ttl_seconds=settings.cache_ttl_seconds,
            fuzzy_threshold=settings.cache_fuzzy_threshold,
            fuzzy_window=settings.cache_fuzzy_window,
            clock=clock,
        ),
        pools=pools,
        auditor=SilentAuditor(sandbox=sandbox, timeout=settings.audit_timeout_seconds),
        adapter_kwargs=adapter_kwargs,
        audit_streams=settings.audit_enabled,
        clock=clock,
    )
