"""
LLM Gateway — provider calls through litellm with retry, failover and streaming.

Features:
- (provider, tier) → model resolution from models.yaml
- PII scrub and control-string sanitisation of every outbound payload
- Bounded retry with jittered exponential backoff (429/5xx/timeout only)
- Provider failover along the tier's chain, skipping providers without
  credentials or on cooldown; power → ludicrous escalation when enabled
- Streaming accumulator with index-collision handling and argument caps
- Opaque per-call signatures captured and echoed back on the next turn
- Streamed text from a failed attempt withdrawn before the retry streams
- Token and cost capture (litellm response_cost, catalog fallback)
"""
import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import litellm
from litellm import acompletion

from cos_engine.config import (
    STREAM_MAX_TOOL_INDEX,
    STREAM_TEXT_SOFT_CAP,
    STREAM_TOOL_ARGS_CAP,
    STREAM_TOTAL_TIMEOUT_SECONDS,
    EngineConfig,
)
from cos_engine.cooldown import ProviderCooldowns
from cos_engine.exceptions import LLMError, ProviderPermanentError, ProviderTransientError, RunAbortedError
from cos_engine.metrics import METRICS
from cos_engine.model_catalog import ModelCatalog, Tier
from cos_engine.parse_utils import safe_json_parse, try_recover_json_args
from cos_engine.pii import scrub_pii_from_messages, scrub_pii_from_text
from cos_engine.security import redact_for_log, sanitise_llm_messages, sanitise_llm_payload_text
from cos_engine.tracing import get_tracer

logger = logging.getLogger("cos.engine.llm")
tracer = get_tracer("cos.engine.llm")

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
PERMANENT_STATUSES = frozenset({400, 401, 403, 404, 422})
FAILOVER_MESSAGE_MARKERS = (
    "rate limit",
    "429",
    "error 500",
    "error 502",
    "error 503",
    "error 504",
    "timeout",
    "timed out",
    "service_tier_capacity_exceeded",
    "overloaded",
)
PROVIDER_LABELS = {"anthropic": "Anthropic", "openai": "OpenAI", "gemini": "Gemini", "mistral": "Mistral"}


def should_retry_status(status: int | None) -> bool:
    return status in RETRYABLE_STATUSES


def is_failover_eligible_error(error: BaseException) -> bool:
    if isinstance(error, (RunAbortedError, asyncio.CancelledError)):
        return False
    if isinstance(error, ProviderPermanentError):
        return False
    if isinstance(error, ProviderTransientError):
        return True
    msg = str(error).lower()
    return any(marker in msg for marker in FAILOVER_MESSAGE_MARKERS)


def classify_provider_error(error: BaseException, provider: str) -> LLMError:
    """Map a litellm / transport exception onto the transient/permanent split."""
    label = PROVIDER_LABELS.get(provider, provider)
    if isinstance(error, LLMError):
        return error
    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        status = None
    if isinstance(error, (asyncio.TimeoutError, litellm.Timeout)):
        return ProviderTransientError(f"{label} API request timed out", provider=provider, status=status)
    if status == 429:
        return ProviderTransientError(
            f"{label} rate limit hit (input tokens/min). Try again in ~60s or shorten the request.",
            provider=provider, status=status,
        )
    detail = str(redact_for_log(str(error)))[:500]
    if status in RETRYABLE_STATUSES:
        return ProviderTransientError(f"{label} API error {status}: {detail}", provider=provider, status=status)
    if status in PERMANENT_STATUSES:
        return ProviderPermanentError(f"{label} API error {status}: {detail}", provider=provider, status=status)
    if isinstance(error, litellm.APIConnectionError) or is_failover_eligible_error(error):
        return ProviderTransientError(f"{label} API error: {detail}", provider=provider, status=status)
    return ProviderPermanentError(f"{label} API error: {detail}", provider=provider, status=status)


# ── Result types ─────────────────────────────────────────────────────────────

@dataclass
class ToolCall:
    """One tool call requested by the model."""
    id: str
    name: str
    arguments: dict[str, Any]
    thought_signature: str | None = None
    extra_content: dict[str, Any] | None = None
    provider_specific_fields: dict[str, Any] | None = None

    def to_message_entry(self) -> dict[str, Any]:
        """OpenAI-format tool_call entry, echoing any opaque signature back."""
        entry: dict[str, Any] = {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }
        if self.extra_content:
            entry["extra_content"] = self.extra_content
        if self.provider_specific_fields:
            entry["provider_specific_fields"] = self.provider_specific_fields
        elif self.thought_signature:
            entry["provider_specific_fields"] = {"thought_signature": self.thought_signature}
        return entry


@dataclass
class LLMResponse:
    """Response from LLM gateway."""
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    tier: Tier = Tier.MINI
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0
    finish_reason: str = ""
    failed_over: bool = False
    escalated_to_ludicrous: bool = False

    def assistant_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_message_entry() for tc in self.tool_calls]
        return message


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _signature_of(tc: Any) -> str | None:
    extra = _get(tc, "extra_content")
    sig = _get(_get(extra, "google"), "thought_signature")
    if sig:
        return sig
    sig = _get(tc, "thought_signature")
    if sig:
        return sig
    return _get(_get(tc, "provider_specific_fields"), "thought_signature")


def _parse_arguments(raw: Any, name: str, tools: list[dict[str, Any]] | None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    parsed = safe_json_parse(raw)
    if isinstance(parsed, dict):
        return parsed
    logger.debug("Tool argument JSON parse failed for %s", name)
    schema = None
    for tool in tools or []:
        fn = tool.get("function") or {}
        if fn.get("name") == name:
            schema = fn.get("parameters")
            break
    return try_recover_json_args(raw, name, schema)


# ── Streaming accumulator ────────────────────────────────────────────────────

class StreamAccumulator:
    """
    Collects streamed deltas into text, tool calls and usage.

    Tool-call deltas are keyed by index.  When a delta carries a different
    name or id than the call already at its index, it is redirected to a
    fresh slot so arguments of parallel calls are never concatenated.
    """

    def __init__(self, on_text_chunk: Callable[[str], Any] | None = None):
        self.text = ""
        self.slots: dict[int, dict[str, Any]] = {}
        self.usage: Any = None
        self.finish_reason = ""
        self._on_text_chunk = on_text_chunk
        # Providers repeat the original index on every continuation delta;
        # remember where a collided index was redirected.
        self._redirects: dict[int, int] = {}

    def feed(self, chunk: Any) -> None:
        usage = _get(chunk, "usage")
        if usage:
            self.usage = usage
        choices = _get(chunk, "choices") or []
        if not choices:
            return
        choice = choices[0]
        if _get(choice, "finish_reason"):
            self.finish_reason = _get(choice, "finish_reason")
        delta = _get(choice, "delta")
        if not delta:
            return
        content = _get(delta, "content")
        if content:
            if len(self.text) < STREAM_TEXT_SOFT_CAP:
                self.text += content
            if self._on_text_chunk is not None:
                self._on_text_chunk(content)
        for tc in _get(delta, "tool_calls") or []:
            self._feed_tool_call(tc)

    def _feed_tool_call(self, tc: Any) -> None:
        raw_idx = _get(tc, "index", 0) or 0
        if raw_idx < 0 or raw_idx > STREAM_MAX_TOOL_INDEX:
            return
        fn = _get(tc, "function")
        name = _get(fn, "name") or ""
        call_id = _get(tc, "id") or ""
        idx = self._redirects.get(raw_idx, raw_idx)

        existing = self.slots.get(idx)
        if existing is not None:
            new_name = bool(name and existing["name"] and name != existing["name"])
            new_id = bool(call_id and existing["id"] and call_id != existing["id"])
            if new_name or new_id:
                idx = max(self.slots) + 1
                self._redirects[raw_idx] = idx
                logger.debug(
                    "Parallel tool-call collision at index %d, redirecting %s to slot %d (existing: %s)",
                    raw_idx, name or call_id, idx, existing["name"],
                )

        slot = self.slots.setdefault(idx, {"id": "", "name": "", "arguments": ""})
        if call_id:
            slot["id"] = call_id
        if name:
            slot["name"] = name
        args = _get(fn, "arguments")
        if args and len(slot["arguments"]) < STREAM_TOOL_ARGS_CAP:
            slot["arguments"] += args
        sig = _signature_of(tc)
        if sig:
            slot["thought_signature"] = sig
            if _get(tc, "extra_content"):
                slot["extra_content"] = _get(tc, "extra_content")
        psf = _get(tc, "provider_specific_fields")
        if psf:
            slot["provider_specific_fields"] = dict(psf) if isinstance(psf, dict) else psf

    def tool_calls(self, tools: list[dict[str, Any]] | None = None) -> list[ToolCall]:
        calls = []
        for idx in sorted(self.slots):
            slot = self.slots[idx]
            if not slot["name"]:
                continue
            calls.append(ToolCall(
                id=slot["id"] or f"call_{idx}",
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"], slot["name"], tools),
                thought_signature=slot.get("thought_signature"),
                extra_content=slot.get("extra_content"),
                provider_specific_fields=slot.get("provider_specific_fields"),
            ))
        return calls


class StreamRelay:
    """
    Forwards streamed text to the caller across retries and failover.

    Text shown by an attempt that later fails is withdrawn with ``on_reset``
    before the next attempt streams. Without a reset handler the relay goes
    quiet after the first withdrawn attempt and the caller gets the full
    text from the final response instead.
    """

    def __init__(self, on_text_chunk: Callable[[str], Any], on_reset: Callable[[], Any] | None = None):
        self._on_text_chunk = on_text_chunk
        self._on_reset = on_reset
        self.shown = 0
        self.muted = False

    def __call__(self, text: str) -> None:
        if self.muted:
            return
        self.shown += len(text)
        self._on_text_chunk(text)

    def discard(self) -> None:
        """Drop whatever the failed attempt already streamed."""
        if not self.shown:
            return
        logger.debug("Withdrawing %d streamed chars from a failed attempt", self.shown)
        self.shown = 0
        if self._on_reset is not None:
            self._on_reset()
        else:
            self.muted = True

    def commit(self) -> None:
        self.shown = 0


# ── Gateway ──────────────────────────────────────────────────────────────────

CompletionFn = Callable[..., Awaitable[Any]]


class LLMGateway:
    """
    Provider router over litellm.

    Usage:
        gateway = LLMGateway(config)
        response = await gateway.complete(system, messages, tools, tier=Tier.MINI)

        # Streaming text deltas:
        response = await gateway.complete(system, messages, tools, on_text_chunk=print)
    """

    def __init__(
        self,
        config: EngineConfig,
        catalog: ModelCatalog | None = None,
        cooldowns: ProviderCooldowns | None = None,
        completion: CompletionFn | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.config = config
        self.catalog = catalog or ModelCatalog(config.models_yaml_path)
        self.cooldowns = cooldowns or ProviderCooldowns(config.provider_cooldown_seconds)
        self._completion = completion or acompletion
        self._sleep = sleep or asyncio.sleep
        self._latency_samples: list[int] = []
        litellm.drop_params = True

    # ── Provider selection ───────────────────────────────────────

    def has_credentials(self, provider: str) -> bool:
        return bool(self.config.api_key_for(provider))

    def failover_providers(self, primary: str, tier: Tier | str = Tier.MINI, respect_cooldowns: bool = True) -> list[str]:
        """Chain rotated to start after ``primary``; only providers with a key and no cooldown."""
        chain = self.catalog.failover_chain(tier)
        if primary in chain:
            idx = chain.index(primary)
            rotated = chain[idx + 1:] + chain[:idx]
        else:
            rotated = [p for p in chain if p != primary]
        return [p for p in rotated if self.has_credentials(p) and not (respect_cooldowns and p in self.cooldowns)]

    def provider_order(self, tier: Tier | str, primary: str | None = None, respect_cooldowns: bool = True) -> list[str]:
        primary = primary or self.config.llm_provider
        order = []
        if self.has_credentials(primary) and not (respect_cooldowns and primary in self.cooldowns):
            order.append(primary)
        order.extend(self.failover_providers(primary, tier, respect_cooldowns))
        return order

    # ── Request building ─────────────────────────────────────────

    def build_request(
        self,
        provider: str,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        max_output_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Scrub, sanitise and shape one provider request."""
        if self.config.pii_scrub_enabled:
            system = scrub_pii_from_text(system)
            messages = scrub_pii_from_messages(messages)
        system = sanitise_llm_payload_text(system)
        messages = sanitise_llm_messages(messages)

        max_tokens = max_output_tokens or self.config.max_output_tokens
        kwargs: dict[str, Any] = {
            "model": self.catalog.litellm_model(model),
            "messages": [{"role": "system", "content": system}, *messages],
            "api_key": self.config.api_key_for(provider),
            "drop_params": True,
        }
        # Newer OpenAI models reject max_tokens
        if provider == "openai":
            kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["max_tokens"] = max_tokens
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    # ── Single provider with retry ───────────────────────────────

    async def _backoff(self, attempt: int, abort: asyncio.Event | None) -> None:
        delay = self.config.llm_retry_base_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.25)
        if abort is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        if abort.is_set():
            raise RunAbortedError("Run aborted during retry backoff")

    async def call_provider(
        self,
        provider: str,
        tier: Tier,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        on_text_chunk: Callable[[str], Any] | None = None,
        abort: asyncio.Event | None = None,
        max_output_tokens: int | None = None,
    ) -> LLMResponse:
        """Call one provider, retrying transient failures up to ``llm_max_retries`` attempts."""
        model = self.catalog.model_for(provider, tier)
        if not model:
            raise ProviderPermanentError(f"No {tier.value} model configured for {provider}", provider=provider)
        if on_text_chunk is not None and not isinstance(on_text_chunk, StreamRelay):
            on_text_chunk = StreamRelay(on_text_chunk)

        last_error: LLMError | None = None
        for attempt in range(1, self.config.llm_max_retries + 1):
            if abort is not None and abort.is_set():
                raise RunAbortedError("Run aborted")
            start = time.monotonic()
            try:
                with tracer.start_as_current_span("llm.call") as span:
                    span.set_attribute("llm.provider", provider)
                    span.set_attribute("llm.model", model)
                    span.set_attribute("llm.attempt", attempt)
                    if on_text_chunk is not None:
                        response = await self._stream_once(
                            provider, model, system, messages, tools, on_text_chunk, max_output_tokens
                        )
                    else:
                        response = await self._complete_once(provider, model, system, messages, tools, max_output_tokens)
            except (RunAbortedError, asyncio.CancelledError):
                raise
            except Exception as e:
                err = classify_provider_error(e, provider)
                METRICS.llm_request_total.labels(provider=provider, model=model, status="error").inc()
                if on_text_chunk is not None:
                    on_text_chunk.discard()
                last_error = err
                retryable = isinstance(err, ProviderTransientError) and (
                    err.status is None or should_retry_status(err.status)
                )
                if not retryable:
                    logger.warning("%s failed without retry: %s", provider, err)
                    raise err
                if attempt >= self.config.llm_max_retries:
                    break
                logger.info("%s attempt %d/%d failed (%s), backing off", provider, attempt,
                            self.config.llm_max_retries, err)
                await self._backoff(attempt, abort)
                continue

            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._latency_samples.append(elapsed_ms)
            self._latency_samples = self._latency_samples[-100:]
            response.latency_ms = elapsed_ms
            response.tier = tier
            if on_text_chunk is not None:
                on_text_chunk.commit()
            METRICS.llm_request_total.labels(provider=provider, model=model, status="ok").inc()
            METRICS.llm_request_duration.labels(provider=provider).observe(elapsed_ms / 1000)
            return response

        raise last_error or ProviderTransientError(f"{provider} API request failed", provider=provider)

    async def _complete_once(
        self,
        provider: str,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        max_output_tokens: int | None,
    ) -> LLMResponse:
        kwargs = self.build_request(provider, model, system, messages, tools, max_output_tokens)
        raw = await asyncio.wait_for(self._completion(**kwargs), timeout=self.config.llm_response_timeout)

        choice = (_get(raw, "choices") or [None])[0]
        message = _get(choice, "message")
        calls = []
        for idx, tc in enumerate(_get(message, "tool_calls") or []):
            fn = _get(tc, "function")
            name = _get(fn, "name") or ""
            if not name:
                continue
            psf = _get(tc, "provider_specific_fields")
            calls.append(ToolCall(
                id=_get(tc, "id") or f"call_{idx}",
                name=name,
                arguments=_parse_arguments(_get(fn, "arguments"), name, tools),
                thought_signature=_signature_of(tc),
                extra_content=_get(tc, "extra_content"),
                provider_specific_fields=dict(psf) if isinstance(psf, dict) else None,
            ))
        usage = _get(raw, "usage")
        input_tokens = int(_get(usage, "prompt_tokens", 0) or 0)
        output_tokens = int(_get(usage, "completion_tokens", 0) or 0)
        hidden = getattr(raw, "_hidden_params", None) or {}
        cost = hidden.get("response_cost") if isinstance(hidden, dict) else None
        if not cost:
            cost = self.catalog.estimate_cost(model, input_tokens, output_tokens)
        return LLMResponse(
            content=_get(message, "content") or "",
            tool_calls=calls,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=float(cost),
            finish_reason=_get(choice, "finish_reason") or "",
        )

    async def _stream_once(
        self,
        provider: str,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        on_text_chunk: Callable[[str], Any],
        max_output_tokens: int | None,
    ) -> LLMResponse:
        kwargs = self.build_request(provider, model, system, messages, tools, max_output_tokens, stream=True)
        # Connect timeout only covers the wait for the stream to open
        stream = await asyncio.wait_for(self._completion(**kwargs), timeout=self.config.llm_response_timeout)

        acc = StreamAccumulator(on_text_chunk)
        started = time.monotonic()
        iterator = stream.__aiter__()
        try:
            while True:
                if time.monotonic() - started > STREAM_TOTAL_TIMEOUT_SECONDS:
                    raise ProviderTransientError(
                        f"{PROVIDER_LABELS.get(provider, provider)} streaming total timeout (5 min)", provider=provider
                    )
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.config.llm_stream_chunk_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise ProviderTransientError(
                        f"{PROVIDER_LABELS.get(provider, provider)} streaming chunk timeout", provider=provider
                    )
                acc.feed(chunk)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Stream close failed: %s", e)

        input_tokens = int(_get(acc.usage, "prompt_tokens", 0) or 0)
        output_tokens = int(_get(acc.usage, "completion_tokens", 0) or 0)
        return LLMResponse(
            content=acc.text,
            tool_calls=acc.tool_calls(tools),
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.catalog.estimate_cost(model, input_tokens, output_tokens),
            finish_reason=acc.finish_reason,
        )

    # ── Failover ─────────────────────────────────────────────────

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tier: Tier | str = Tier.MINI,
        primary: str | None = None,
        on_text_chunk: Callable[[str], Any] | None = None,
        abort: asyncio.Event | None = None,
        max_output_tokens: int | None = None,
        allow_ludicrous_escalation: bool = True,
        on_stream_reset: Callable[[], Any] | None = None,
    ) -> LLMResponse:
        """
        Call the tier's model, failing over between providers.

        Streamed text from an attempt that fails is withdrawn through
        ``on_stream_reset`` before the retry or the next provider streams.

        Raises:
            ProviderPermanentError: 400/401/403 and friends; never failed over.
            ProviderTransientError: every eligible provider failed.
            RunAbortedError: the abort event fired.
        """
        tier = Tier.parse(tier)
        primary = primary or self.config.llm_provider
        if on_text_chunk is not None and not isinstance(on_text_chunk, StreamRelay):
            on_text_chunk = StreamRelay(on_text_chunk, on_stream_reset)
        # Cooldowns are per provider, not per model; the escalation pass retries the
        # same providers with their ludicrous models.
        order = self.provider_order(tier, primary, respect_cooldowns=allow_ludicrous_escalation)
        if not order:
            raise ProviderPermanentError(
                "No LLM provider is available. Add an API key in settings or wait for provider cooldowns to clear."
            )

        last_error: LLMError | None = None
        for i, provider in enumerate(order):
            try:
                response = await self.call_provider(
                    provider, tier, system, messages, tools, on_text_chunk, abort, max_output_tokens
                )
                response.failed_over = i > 0 or provider != primary
                return response
            except ProviderPermanentError:
                raise
            except ProviderTransientError as e:
                last_error = e
                self.cooldowns.trip(provider)
                logger.warning("Failing over from %s (%s)", provider, e)

        if tier is Tier.POWER and self.config.ludicrous_enabled and allow_ludicrous_escalation:
            logger.warning("All power providers failed, escalating to ludicrous")
            response = await self.complete(
                system, messages, tools, Tier.LUDICROUS, primary, on_text_chunk, abort, max_output_tokens,
                allow_ludicrous_escalation=False,
            )
            response.escalated_to_ludicrous = True
            return response

        raise ProviderTransientError(
            f"All LLM providers failed. Last error: {last_error}" if last_error else "All LLM providers failed.",
            provider=getattr(last_error, "provider", ""),
            status=getattr(last_error, "status", None),
        )

    def get_stats(self) -> dict[str, Any]:
        """Return gateway statistics."""
        samples = self._latency_samples
        return {
            "cooldowns": self.cooldowns.snapshot(),
            "latency_samples": len(samples),
            "avg_latency_ms": int(sum(samples) / len(samples)) if samples else 0,
        }
