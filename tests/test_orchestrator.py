"""Tests for the generation orchestrator: fallback chain, rotation, streaming."""

from __future__ import annotations

import json

import pytest

from codeforge.gateway.audit import SilentAuditor
from codeforge.gateway.orchestrator import PROCESSING_MESSAGE, REFRESHING_MESSAGE, overall_health
from codeforge.gateway.providers import ProviderAdapterError, ProviderRateLimitError
from codeforge.gateway.sandbox import Sandbox, SandboxResult
from codeforge.gateway.types import EventType, GenerationRequest, OverallHealth, ProviderId, ProviderStatus, StreamEvent
from fakes import (
    DEBOUNCE_PROMPT,
    RATE_LIMITED,
    SUCCESS,
    UNAVAILABLE,
    FakeAdapter,
    labels,
    make_orchestrator,
)


async def _events(stream) -> list[StreamEvent]:
    return [e async for e in stream]


# ==========================================================================
# Test: Non-streaming fallback chain
# ==========================================================================


class TestGenerateCode:
    @pytest.mark.asyncio
    async def test_debounce_prompt_end_to_end(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[SUCCESS])
        orch = make_orchestrator(clock, groq=groq)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert result.success is True
        assert result.cached is False
        assert result.provider == "groq"
        assert [f.path for f in result.files] == ["hooks/useDebounce.ts", "components/SearchInput.tsx"]

        data = result.to_dict()
        assert set(data) >= {"success", "files", "provider", "cached", "generatedAt", "stats"}
        assert "isRefreshing" not in data
        assert data["files"][0] == {
            "path": "hooks/useDebounce.ts",
            "content": "export function useDebounce<T>(value: T, delay = 300): T { return value }",
        }

    @pytest.mark.asyncio
    async def test_repeat_prompt_is_served_from_cache(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[SUCCESS])
        orch = make_orchestrator(clock, groq=groq)

        first = await orch.generate_code(DEBOUNCE_PROMPT)
        second = await orch.generate_code("  create a react HOOK for debouncing a search input ")

        assert second.cached is True
        assert second.provider == "groq"
        assert second.files == first.files
        assert len(groq.calls) == 1
        assert orch.get_stats()["cacheHits"] == 1
        assert orch.get_stats()["cacheHitRate"] == "50.0%"

    @pytest.mark.asyncio
    async def test_accepts_generation_request(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[SUCCESS])
        orch = make_orchestrator(clock, groq=groq)

        result = await orch.generate_code(GenerationRequest(prompt=DEBOUNCE_PROMPT, model_hint="groq"))

        assert result.provider == "groq"
        assert len(groq.calls) == 1
        assert result.files[0].path == "hooks/useDebounce.ts"

    @pytest.mark.asyncio
    async def test_local_runner_first(self, clock):
        ollama = FakeAdapter(
            ProviderId.OLLAMA,
            responses=[(ProviderStatus.SUCCESS, "export default function Page() {}", None)],
            requires_key=False,
            wraps_raw_code=True,
        )
        groq = FakeAdapter(ProviderId.GROQ, responses=[SUCCESS])
        orch = make_orchestrator(clock, ollama=ollama, groq=groq)

        result = await orch.generate_code("A react landing page")

        assert result.provider == "ollama"
        assert result.files[0].path == "app/page.tsx"
        assert groq.calls == []

    @pytest.mark.asyncio
    async def test_rotation_skips_rate_limited_keys(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[RATE_LIMITED, RATE_LIMITED, SUCCESS])
        orch = make_orchestrator(clock, groq=groq)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert result.provider == "groq"
        assert labels(groq.calls) == ["Key #1", "Key #2", "Key #3"]
        assert orch.get_stats()["keyRotations"] == 2

        # Rate limits expire; the next request starts after the key that succeeded
        clock.advance(61)
        groq.responses = [SUCCESS]
        await orch.generate_code("Build a todo list")
        assert labels(groq.calls)[-1] == "Key #1"

    @pytest.mark.asyncio
    async def test_each_key_tried_at_most_once(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[RATE_LIMITED] * 10)
        hf = FakeAdapter(ProviderId.HUGGINGFACE, responses=[SUCCESS], wraps_raw_code=True)
        orch = make_orchestrator(clock, groq=groq, huggingface=hf)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert len(groq.calls) == 3
        assert result.provider == "huggingface"

    @pytest.mark.asyncio
    async def test_total_exhaustion_is_a_soft_failure(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[(ProviderStatus.RATE_LIMITED, "", 30.0)] * 3)
        hf = FakeAdapter(ProviderId.HUGGINGFACE, responses=[RATE_LIMITED])
        orch = make_orchestrator(clock, groq=groq, huggingface=hf)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert result.files == []
        assert result.is_refreshing is True
        assert result.message == REFRESHING_MESSAGE
        assert result.retry_after == pytest.approx(30.0)
        data = result.to_dict()
        assert data["isRefreshing"] is True
        assert data["retryAfter"] == 30.0

    @pytest.mark.asyncio
    async def test_disabled_keys_exhaust_without_further_calls(self, clock):
        vendor_error = (ProviderStatus.VENDOR_ERROR, "", None)
        groq = FakeAdapter(ProviderId.GROQ, responses=[vendor_error] * 15)
        hf = FakeAdapter(ProviderId.HUGGINGFACE, responses=[vendor_error] * 5, wraps_raw_code=True)
        orch = make_orchestrator(clock, groq=groq, huggingface=hf)

        for _ in range(5):
            await orch.generate_code(DEBOUNCE_PROMPT)
        statuses = [c["status"] for p in orch.get_stats()["credentials"].values() for c in p]
        assert statuses == ["disabled"] * 4

        groq.responses = [SUCCESS]
        hf.responses = [SUCCESS]
        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert result.files == []
        assert result.is_refreshing is True
        assert result.retry_after is None
        assert len(groq.calls) == 15
        assert len(hf.calls) == 5

        # Disabled keys stay disabled even after any rate-limit window
        clock.advance(3600)
        await orch.generate_code(DEBOUNCE_PROMPT)
        assert len(groq.calls) == 15

    @pytest.mark.asyncio
    async def test_empty_file_content_falls_through(self, clock):
        empty = json.dumps({"files": [{"path": "a.ts", "content": ""}]})
        groq = FakeAdapter(ProviderId.GROQ, responses=[(ProviderStatus.SUCCESS, empty, None)])
        hf = FakeAdapter(ProviderId.HUGGINGFACE, responses=[SUCCESS], wraps_raw_code=True)
        orch = make_orchestrator(clock, groq=groq, huggingface=hf, groq_keys=("gsk_1",))

        result = await orch.generate_code(DEBOUNCE_PROMPT)
        assert result.provider == "huggingface"

        again = await orch.generate_code(DEBOUNCE_PROMPT)
        assert again.cached is True
        assert again.provider == "huggingface"

    @pytest.mark.asyncio
    async def test_exhausted_pool_skipped_without_calls(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[RATE_LIMITED] * 3)
        orch = make_orchestrator(clock, groq=groq, hf_keys=())

        await orch.generate_code("first prompt here")
        await orch.generate_code("second prompt there")

        assert len(groq.calls) == 3

    @pytest.mark.asyncio
    async def test_malformed_output_falls_through(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[(ProviderStatus.SUCCESS, "I cannot do that", None)])
        hf = FakeAdapter(
            ProviderId.HUGGINGFACE,
            responses=[(ProviderStatus.SUCCESS, "```python\nprint('ok')\n```", None)],
            wraps_raw_code=True,
        )
        orch = make_orchestrator(clock, groq=groq, huggingface=hf)

        result = await orch.generate_code("a python script")

        assert result.provider == "huggingface"
        assert result.files[0].path == "app/main.py"
        # The key itself worked, so its streak is not charged
        assert orch.pools[ProviderId.GROQ].credentials[0].consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_vendor_error_rotates_and_charges_key(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[(ProviderStatus.VENDOR_ERROR, "", None), SUCCESS])
        orch = make_orchestrator(clock, groq=groq)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert result.provider == "groq"
        assert labels(groq.calls) == ["Key #1", "Key #2"]
        assert orch.pools[ProviderId.GROQ].credentials[0].consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_unreachable_provider_is_skipped(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[UNAVAILABLE])
        hf = FakeAdapter(ProviderId.HUGGINGFACE, responses=[SUCCESS], wraps_raw_code=True)
        orch = make_orchestrator(clock, groq=groq, huggingface=hf)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert len(groq.calls) == 1
        assert result.provider == "huggingface"
        assert orch.get_stats()["perProviderCalls"] == {"ollama": 1, "groq": 1, "huggingface": 1}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_a_soft_failure(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[RuntimeError("boom")])
        orch = make_orchestrator(clock, groq=groq)

        result = await orch.generate_code(DEBOUNCE_PROMPT)

        assert result.is_refreshing is True
        assert result.message == PROCESSING_MESSAGE
        assert orch.get_stats()["errors"] == 1


# ==========================================================================
# Test: Streaming
# ==========================================================================


class TestStreaming:
    @pytest.mark.asyncio
    async def test_generate_files_reconstructs_split_records(self, clock):
        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[['data: {"type":"file","pat', 'h":"a.ts","content":"x"}\n\n', 'data: {"type":"complete"}\n']],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
        )

        events = await _events(orch.generate_files("a counter", model="gpt-4o"))

        assert events == [StreamEvent.file("a.ts", "x", "typescript"), StreamEvent.complete()]

    @pytest.mark.asyncio
    async def test_stream_always_ends_with_one_complete(self, clock):
        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[['data: {"type":"complete"}\ndata: {"type":"complete"}\n']],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
        )

        events = await _events(orch.generate_files("x", model="gpt-4o"))

        assert events == [StreamEvent.complete()]

    @pytest.mark.asyncio
    async def test_routes_by_model_prefix(self, clock):
        anthropic = FakeAdapter(ProviderId.ANTHROPIC, streams=[['{"type":"file","path":"b.css","content":"y"}\n']])
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.ANTHROPIC: anthropic},
            extra_pools={ProviderId.ANTHROPIC: ["sk-ant"]},
        )

        events = await _events(orch.generate_files("styles", model="claude-3-5-sonnet"))

        assert events[0] == StreamEvent.file("b.css", "y", "css")
        assert len(anthropic.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_before_first_event_rotates_key(self, clock):
        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[
                [ProviderRateLimitError("Rate limited by openai", retry_after=20)],
                ['data: {"type":"file","path":"a.ts","content":"x"}\n'],
            ],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1", "sk_2"]},
        )

        events = await _events(orch.generate_files("x", model="gpt-4o"))

        assert [e.type for e in events] == [EventType.FILE, EventType.COMPLETE]
        assert labels([c for _, _, c in openai.stream_calls]) == ["Key #1", "Key #2"]

    @pytest.mark.asyncio
    async def test_rate_limit_after_events_becomes_error(self, clock):
        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[
                [
                    'data: {"type":"file","path":"a.ts","content":"x"}\n',
                    ProviderRateLimitError("Rate limited by openai"),
                ],
            ],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1", "sk_2"]},
        )

        events = await _events(orch.generate_files("x", model="gpt-4o"))

        assert [e.type for e in events] == [EventType.FILE, EventType.ERROR, EventType.COMPLETE]
        assert len(openai.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_provider_error_becomes_error_event(self, clock):
        openai = FakeAdapter(ProviderId.OPENAI, streams=[[ProviderAdapterError("openai error 401", status_code=401)]])
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
        )

        events = await _events(orch.generate_files("x", model="gpt-4o"))

        assert events == [StreamEvent.error("openai error 401"), StreamEvent.complete()]

    @pytest.mark.asyncio
    async def test_missing_credentials(self, clock):
        orch = make_orchestrator(clock, extra_adapters={ProviderId.GEMINI: FakeAdapter(ProviderId.GEMINI)})

        events = await _events(orch.generate_files("x", model="gemini-1.5-pro"))

        assert events[0].type == EventType.ERROR
        assert "gemini" in events[0].message
        assert events[-1] == StreamEvent.complete()

    @pytest.mark.asyncio
    async def test_edit_sends_instruction_and_project_files(self, clock):
        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[['data: {"type":"file","path":"app/page.tsx","content":"fixed"}\n']],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
        )

        events = await _events(
            orch.edit_files(
                "Fix the import",
                "broken",
                "app/page.tsx",
                model="gpt-4o",
                all_files={"app/page.tsx": "broken", "lib/a.ts": "export const a = 1"},
            )
        )

        assert events[0] == StreamEvent.file("app/page.tsx", "fixed", "typescript")
        _, user, _ = openai.stream_calls[0]
        assert user.startswith("EDIT INSTRUCTION:\nFix the import")
        assert "=== lib/a.ts ===\nexport const a = 1" in user

    @pytest.mark.asyncio
    async def test_audit_rewrites_buffered_files(self, clock):
        class FixingSandbox(Sandbox):
            name = "fixing"

            @property
            def available(self) -> bool:
                return True

            async def run(self, workspace, instruction, timeout) -> SandboxResult:
                (workspace / "app/page.tsx").write_text("fixed", encoding="utf-8")
                return SandboxResult(returncode=0)

        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[
                [
                    'data: {"type":"file","path":"app/page.tsx","content":"broken"}\n',
                    'data: {"type":"file","path":"app/globals.css","content":"body {}"}\n',
                ]
            ],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
            auditor=SilentAuditor(sandbox=FixingSandbox(), timeout=5),
        )

        events = await _events(orch.generate_files("x", model="gpt-4o", audit=True))

        assert events == [
            StreamEvent.file("app/page.tsx", "fixed", "typescript"),
            StreamEvent.file("app/globals.css", "body {}", "css"),
            StreamEvent.complete(),
        ]

    @pytest.mark.asyncio
    async def test_audit_crash_keeps_files_and_completes(self, clock):
        class CrashingSandbox(Sandbox):
            name = "crashing"

            @property
            def available(self) -> bool:
                return True

            async def run(self, workspace, instruction, timeout) -> SandboxResult:
                raise RuntimeError("tool crashed")

        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[['data: {"type":"file","path":"app/page.tsx","content":"bad \\ud800"}\n']],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
            auditor=SilentAuditor(sandbox=CrashingSandbox(), timeout=5),
        )

        events = await _events(orch.generate_files("x", model="gpt-4o", audit=True))

        assert [e.type for e in events] == [EventType.FILE, EventType.COMPLETE]
        assert events[0].path == "app/page.tsx"
        assert events[0].content.startswith("bad \ufffd")
        events[0].content.encode("utf-8")

    @pytest.mark.asyncio
    async def test_edit_reporting_a_failure_is_audited(self, clock):
        class FixingSandbox(Sandbox):
            name = "fixing"

            @property
            def available(self) -> bool:
                return True

            async def run(self, workspace, instruction, timeout) -> SandboxResult:
                (workspace / "app/page.tsx").write_text("import { Button } from './button'", encoding="utf-8")
                return SandboxResult(returncode=0)

        openai = FakeAdapter(
            ProviderId.OPENAI,
            streams=[
                ['data: {"type":"file","path":"app/page.tsx","content":"<Button />"}\n'],
                ['data: {"type":"file","path":"app/page.tsx","content":"<h1>Hi</h1>"}\n'],
            ],
        )
        orch = make_orchestrator(
            clock,
            extra_adapters={ProviderId.OPENAI: openai},
            extra_pools={ProviderId.OPENAI: ["sk_1"]},
            auditor=SilentAuditor(sandbox=FixingSandbox(), timeout=5),
        )

        fixed = await _events(
            orch.edit_files("Fix this: Button is not defined", "<Button />", "app/page.tsx", model="gpt-4o")
        )
        plain = await _events(orch.edit_files("Rename the heading", "<h1>Hello</h1>", "app/page.tsx", model="gpt-4o"))

        assert fixed[0].content == "import { Button } from './button'"
        assert plain[0].content == "<h1>Hi</h1>"


# ==========================================================================
# Test: Stats, health and models
# ==========================================================================


class TestOperations:
    def test_overall_health(self):
        o, g, h = ProviderId.OLLAMA, ProviderId.GROQ, ProviderId.HUGGINGFACE
        assert overall_health({o: True, g: False, h: False}) == OverallHealth.HEALTHY
        assert overall_health({o: False, g: True, h: True}) == OverallHealth.HEALTHY
        assert overall_health({o: False, g: True, h: False}) == OverallHealth.DEGRADED
        assert overall_health({o: False, g: False, h: False}) == OverallHealth.DOWN

    @pytest.mark.asyncio
    async def test_health_check_report(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, healthy=True)
        hf = FakeAdapter(ProviderId.HUGGINGFACE, healthy=True)
        orch = make_orchestrator(clock, groq=groq, huggingface=hf, hf_keys=())

        report = await orch.health_check()

        assert report["status"] == "degraded"
        assert report["ollama"]["available"] is False
        assert report["ollama"]["model"] == "ollama-model"
        assert report["groq"] == {"available": True, "credentialCount": 3}
        # No credentials means unavailable without a network probe
        assert report["huggingface"] == {"available": False, "credentialCount": 0}
        assert report["streaming"]["openai"] == {"available": False, "credentialCount": 0}

    @pytest.mark.asyncio
    async def test_stats_never_expose_secrets(self, clock):
        groq = FakeAdapter(ProviderId.GROQ, responses=[RATE_LIMITED, SUCCESS])
        orch = make_orchestrator(clock, groq=groq)
        await orch.generate_code(DEBOUNCE_PROMPT)

        stats = orch.get_stats()

        assert stats["totalRequests"] == 1
        assert stats["totalApiCalls"] == 3
        assert stats["cacheSize"] == 1
        assert [c["key"] for c in stats["credentials"]["groq"]] == ["Key #1", "Key #2", "Key #3"]
        assert "gsk_" not in json.dumps(stats)

    @pytest.mark.asyncio
    async def test_clear_cache(self, clock):
        orch = make_orchestrator(clock, groq=FakeAdapter(ProviderId.GROQ, responses=[SUCCESS]))
        await orch.generate_code(DEBOUNCE_PROMPT)
        assert orch.clear_cache() == 1
        assert orch.get_stats()["cacheSize"] == 0

    @pytest.mark.asyncio
    async def test_models(self, clock):
        orch = make_orchestrator(clock)
        orch.set_model("qwen2.5-coder:7b")
        assert orch.get_current_model() == "qwen2.5-coder:7b"
        assert await orch.list_models() == ["qwen2.5-coder:7b"]
