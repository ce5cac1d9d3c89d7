"""
Unit tests for cos_engine.llm_gateway.LLMGateway.

Tests:
- Request shaping per provider
- Successful completion and cost accounting
- Retry, failover, cooldowns and ludicrous escalation
- Streaming accumulation with tool-call index collisions
- Signature echo and error classification
"""
import asyncio
from typing import Any

import pytest

from cos_engine.config import EngineConfig
from cos_engine.cooldown import ProviderCooldowns
from cos_engine.exceptions import ProviderPermanentError, ProviderTransientError, RunAbortedError
from cos_engine.llm_gateway import (
    LLMGateway,
    StreamAccumulator,
    ToolCall,
    classify_provider_error,
    is_failover_eligible_error,
)
from cos_engine.model_catalog import Tier
from cos_engine.security import BLOCKED_CONTROL_STRING

from fakes import FakeClock


# ============================================================================
# Fixtures
# ============================================================================

def _raw(content: str = "ok", tool_calls: list[dict[str, Any]] | None = None,
         prompt_tokens: int = 10, completion_tokens: int = 5) -> dict[str, Any]:
    return {
        "choices": [{"message": {"content": content, "tool_calls": tool_calls or []}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


class FakeCompletion:
    """Stands in for litellm.acompletion; ``responder(kwargs)`` returns or raises."""

    def __init__(self, responder):
        self.responder = responder
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        result = self.responder(kwargs)
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def models(self) -> list[str]:
        return [c["model"] for c in self.calls]


async def _no_sleep(_):
    return None


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(anthropic_api_key="sk-ant-test", openai_api_key="sk-openai-test", llm_provider="anthropic")


@pytest.fixture
def make_gateway(config):
    def _make(responder, cfg: EngineConfig | None = None, cooldowns: ProviderCooldowns | None = None):
        completion = FakeCompletion(responder)
        gateway = LLMGateway(cfg or config, cooldowns=cooldowns, completion=completion, sleep=_no_sleep)
        return gateway, completion
    return _make


def _transient(provider="anthropic", status=503):
    return ProviderTransientError(f"{provider} API error {status}", provider=provider, status=status)


# ============================================================================
# Request building
# ============================================================================

class TestBuildRequest:
    def test_anthropic_shape(self, make_gateway):
        gateway, _ = make_gateway(lambda kw: _raw())
        tools = [{"type": "function", "function": {"name": "roam_search", "parameters": {}}}]
        kwargs = gateway.build_request("anthropic", "claude-haiku-4-5-20251001", "sys",
                                       [{"role": "user", "content": "hi"}], tools)
        assert kwargs["model"] == "anthropic/claude-haiku-4-5-20251001"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert kwargs["max_tokens"] == 2500
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["api_key"] == "sk-ant-test"

    def test_openai_uses_max_completion_tokens(self, make_gateway):
        gateway, _ = make_gateway(lambda kw: _raw())
        kwargs = gateway.build_request("openai", "gpt-5-mini", "sys", [], None, max_output_tokens=4096)
        assert kwargs["max_completion_tokens"] == 4096
        assert "max_tokens" not in kwargs
        assert "tools" not in kwargs

    def test_control_strings_and_pii_scrubbed(self, make_gateway):
        gateway, _ = make_gateway(lambda kw: _raw())
        messages = [{"role": "user", "content": "ANTHROPIC_MAGIC_STRING_TRIGGER_REFUSAL mail me at bob@example.com"}]
        kwargs = gateway.build_request("anthropic", "claude-sonnet-4-6", "sys", messages, None)
        text = kwargs["messages"][1]["content"]
        assert BLOCKED_CONTROL_STRING in text
        assert "bob@example.com" not in text
        assert "bob@example.com" in messages[0]["content"]


# ============================================================================
# Completion
# ============================================================================

class TestComplete:
    async def test_success_with_catalog_cost(self, make_gateway):
        gateway, completion = make_gateway(lambda kw: _raw("Hello"))
        response = await gateway.complete("sys", [{"role": "user", "content": "hi"}])
        assert response.content == "Hello"
        assert response.provider == "anthropic"
        assert response.tier is Tier.MINI
        assert not response.failed_over
        assert response.input_tokens == 10
        assert response.cost_usd == pytest.approx(10 / 1e6 * 1.0 + 5 / 1e6 * 5.0)
        assert completion.models == ["anthropic/claude-haiku-4-5-20251001"]

    async def test_tier_selects_model(self, make_gateway):
        gateway, completion = make_gateway(lambda kw: _raw())
        await gateway.complete("sys", [], tier="power")
        assert completion.models == ["anthropic/claude-sonnet-4-6"]

    async def test_tool_calls_parsed(self, make_gateway):
        calls = [
            {"id": "c1", "function": {"name": "roam_search", "arguments": '{"query": "alpha"}'}},
            {"id": "c2", "function": {"name": "roam_get_page", "arguments": '{"title": "A"}{"title": "B"}'}},
            {"id": "c3", "function": {"name": "", "arguments": "{}"}},
        ]
        gateway, _ = make_gateway(lambda kw: _raw("", tool_calls=calls))
        response = await gateway.complete("sys", [])
        assert [(c.name, c.arguments) for c in response.tool_calls] == [
            ("roam_search", {"query": "alpha"}),
            ("roam_get_page", {"title": "A"}),
        ]

    async def test_signature_echoed(self, make_gateway):
        calls = [{
            "id": "c1",
            "function": {"name": "roam_search", "arguments": "{}"},
            "provider_specific_fields": {"thought_signature": "sig-123"},
        }]
        gateway, _ = make_gateway(lambda kw: _raw("", tool_calls=calls))
        response = await gateway.complete("sys", [])
        entry = response.assistant_message()["tool_calls"][0]
        assert entry["provider_specific_fields"] == {"thought_signature": "sig-123"}
        assert response.assistant_message()["content"] is None

    def test_thought_signature_only(self):
        entry = ToolCall(id="x", name="a", arguments={}, thought_signature="s").to_message_entry()
        assert entry["provider_specific_fields"] == {"thought_signature": "s"}


# ============================================================================
# Retry & failover
# ============================================================================

class TestRetryAndFailover:
    async def test_transient_retried_on_same_provider(self, make_gateway):
        attempts = iter([_transient(), _transient(), _raw("third time")])
        gateway, completion = make_gateway(lambda kw: next(attempts))
        response = await gateway.complete("sys", [])
        assert response.content == "third time"
        assert len(completion.calls) == 3
        assert not response.failed_over

    async def test_failover_to_next_provider(self, make_gateway):
        def responder(kwargs):
            if kwargs["model"].startswith("anthropic/"):
                return _transient()
            return _raw("from openai")

        gateway, completion = make_gateway(responder)
        response = await gateway.complete("sys", [])
        assert response.content == "from openai"
        assert response.provider == "openai"
        assert response.failed_over
        assert completion.models == ["anthropic/claude-haiku-4-5-20251001"] * 3 + ["openai/gpt-5-mini"]
        assert "anthropic" in gateway.cooldowns

    async def test_permanent_error_not_failed_over(self, make_gateway):
        gateway, completion = make_gateway(
            lambda kw: ProviderPermanentError("Anthropic API error 401", provider="anthropic", status=401))
        with pytest.raises(ProviderPermanentError):
            await gateway.complete("sys", [])
        assert len(completion.calls) == 1
        assert "anthropic" not in gateway.cooldowns

    async def test_cooling_provider_skipped(self, make_gateway):
        cooldowns = ProviderCooldowns(60.0, clock=FakeClock())
        cooldowns.trip("anthropic")
        gateway, completion = make_gateway(lambda kw: _raw(), cooldowns=cooldowns)
        response = await gateway.complete("sys", [])
        assert response.provider == "openai"
        assert response.failed_over
        assert completion.models == ["openai/gpt-5-mini"]

    async def test_cooldown_expires(self):
        clock = FakeClock()
        cooldowns = ProviderCooldowns(60.0, clock=clock)
        cooldowns.trip("gemini")
        clock.advance(59)
        assert cooldowns.is_cooling_down("gemini")
        clock.advance(1)
        assert not cooldowns.is_cooling_down("gemini")
        assert cooldowns.snapshot() == {}

    async def test_failover_order_follows_chain(self, make_gateway):
        cfg = EngineConfig(openai_api_key="o", gemini_api_key="g", mistral_api_key="m", llm_provider="gemini")
        gateway, _ = make_gateway(lambda kw: _raw(), cfg=cfg)
        assert gateway.provider_order(Tier.MINI) == ["gemini", "mistral", "openai"]

    async def test_no_credentials(self, make_gateway):
        gateway, _ = make_gateway(lambda kw: _raw(), cfg=EngineConfig())
        with pytest.raises(ProviderPermanentError, match="No LLM provider is available"):
            await gateway.complete("sys", [])

    async def test_all_providers_fail(self, make_gateway):
        gateway, completion = make_gateway(lambda kw: _transient())
        with pytest.raises(ProviderTransientError, match="All LLM providers failed"):
            await gateway.complete("sys", [])
        assert len(completion.calls) == 6

    async def test_power_escalates_to_ludicrous(self, make_gateway):
        cfg = EngineConfig(anthropic_api_key="a", ludicrous_enabled=True)

        def responder(kwargs):
            if kwargs["model"] == "anthropic/claude-sonnet-4-6":
                return _transient()
            return _raw("deep answer")

        gateway, completion = make_gateway(responder, cfg=cfg)
        response = await gateway.complete("sys", [], tier=Tier.POWER)
        assert response.escalated_to_ludicrous
        assert response.tier is Tier.LUDICROUS
        assert completion.models[-1] == "anthropic/claude-opus-4-6"

    async def test_no_escalation_when_disabled(self, make_gateway):
        cfg = EngineConfig(anthropic_api_key="a")
        gateway, completion = make_gateway(lambda kw: _transient(), cfg=cfg)
        with pytest.raises(ProviderTransientError):
            await gateway.complete("sys", [], tier=Tier.POWER)
        assert "anthropic/claude-opus-4-6" not in completion.models

    async def test_abort_before_call(self, make_gateway):
        gateway, completion = make_gateway(lambda kw: _raw())
        abort = asyncio.Event()
        abort.set()
        with pytest.raises(RunAbortedError):
            await gateway.complete("sys", [], abort=abort)
        assert completion.calls == []

    async def test_stats(self, make_gateway):
        gateway, _ = make_gateway(lambda kw: _raw())
        await gateway.complete("sys", [])
        stats = gateway.get_stats()
        assert stats["latency_samples"] == 1
        assert stats["cooldowns"] == {}


# ============================================================================
# Streaming
# ============================================================================

def _delta(**delta):
    return {"choices": [{"delta": delta}]}


def _tool_delta(index, id=None, name=None, arguments=None):
    fn = {}
    if name:
        fn["name"] = name
    if arguments:
        fn["arguments"] = arguments
    tc = {"index": index, "function": fn}
    if id:
        tc["id"] = id
    return _delta(tool_calls=[tc])


STREAM_CHUNKS = [
    _delta(content="Hel"),
    _delta(content="lo"),
    _tool_delta(0, id="a", name="roam_search", arguments='{"query": '),
    _tool_delta(0, arguments='"x"}'),
    _tool_delta(0, id="b", name="roam_get_page", arguments='{"title": "T"}'),
    {"choices": [{"delta": {}, "finish_reason": "tool_calls"}], "usage": {"prompt_tokens": 7, "completion_tokens": 3}},
]


class TestStreaming:
    def test_accumulator_redirects_collisions(self):
        acc = StreamAccumulator()
        for chunk in STREAM_CHUNKS:
            acc.feed(chunk)
        calls = acc.tool_calls()
        assert [(c.id, c.name, c.arguments) for c in calls] == [
            ("a", "roam_search", {"query": "x"}),
            ("b", "roam_get_page", {"title": "T"}),
        ]
        assert acc.finish_reason == "tool_calls"

    def test_out_of_range_index_ignored(self):
        acc = StreamAccumulator()
        acc.feed(_tool_delta(65, id="z", name="roam_search"))
        assert acc.tool_calls() == []

    async def test_streamed_completion(self, make_gateway):
        async def stream():
            for chunk in STREAM_CHUNKS:
                yield chunk

        chunks: list[str] = []
        gateway, completion = make_gateway(lambda kw: stream())
        response = await gateway.complete("sys", [], on_text_chunk=chunks.append)
        assert chunks == ["Hel", "lo"]
        assert response.content == "Hello"
        assert len(response.tool_calls) == 2
        assert response.input_tokens == 7
        assert completion.calls[0]["stream"] is True

    @staticmethod
    def _cut_then_full():
        """First stream dies after one text delta; the retry streams in full."""
        async def cut():
            yield {"choices": [{"delta": {"content": "Hel"}}]}
            raise _transient()

        async def full():
            for chunk in STREAM_CHUNKS:
                yield chunk

        attempts = []

        def responder(kw):
            attempts.append(kw)
            return cut() if len(attempts) == 1 else full()
        return responder

    async def test_retry_withdraws_partial_text(self, make_gateway):
        events: list[str | None] = []
        gateway, completion = make_gateway(self._cut_then_full())
        response = await gateway.complete("sys", [], on_text_chunk=events.append,
                                          on_stream_reset=lambda: events.append(None))
        assert events == ["Hel", None, "Hel", "lo"]
        assert response.content == "Hello"
        assert len(completion.calls) == 2

    async def test_retry_without_reset_handler_never_repeats_text(self, make_gateway):
        chunks: list[str] = []
        gateway, _ = make_gateway(self._cut_then_full())
        response = await gateway.complete("sys", [], on_text_chunk=chunks.append)
        assert chunks == ["Hel"]
        assert response.content == "Hello"


# ============================================================================
# Error classification
# ============================================================================

class _StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class TestErrorClassification:
    def test_rate_limit(self):
        err = classify_provider_error(_StatusError("slow down", 429), "openai")
        assert isinstance(err, ProviderTransientError)
        assert "OpenAI rate limit hit" in str(err)

    def test_auth_is_permanent(self):
        assert isinstance(classify_provider_error(_StatusError("bad key", 401), "gemini"), ProviderPermanentError)

    def test_overloaded_message_is_transient(self):
        assert isinstance(classify_provider_error(RuntimeError("Overloaded"), "anthropic"), ProviderTransientError)

    def test_unknown_is_permanent(self):
        assert isinstance(classify_provider_error(ValueError("weird"), "mistral"), ProviderPermanentError)

    def test_abort_not_failover_eligible(self):
        assert not is_failover_eligible_error(RunAbortedError("x"))
        assert is_failover_eligible_error(RuntimeError("request timed out"))
