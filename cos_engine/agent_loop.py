"""
Agent loop — one bounded, approval-gated, tool-using run per request.

Features:
- Single-flight per runtime: foreground sends abort any active run and wait
  up to 2s for the lock; background callers (inbox, cron) fail fast
- ``/clear`` resets conversation; ``/power`` and ``/ludicrous`` suffixes force
  the tier, otherwise the routing score picks it
- Iteration loop (cap 10): LLM → sanitise → fingerprint exfil guard →
  dispatch tool calls through the approval gate → append results → repeat
- Claimed-action, fabrication and gathering-completeness guards with
  nudge-and-retry; hallucinated turns are replaced with a ``[retried]`` stub
- One-time tier escalation per run (repeated tool failure, or a second
  hallucination on mini)
- Daily cap checked pre-flight and at each iteration boundary
- Message budget enforcement, cost accounting, audit log, usage stats and
  conversation persistence after the run

Terminal states: finish, abort, cap_exceeded, fatal_error.
"""
import asyncio
import json
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from cos_engine.approval import ApprovalGate, RunApprovals, simulated_result
from cos_engine.composio import extract_session_id, with_composio_session_args
from cos_engine.config import (
    FOREGROUND_LOCK_WAIT_SECONDS,
    LUDICROUS_MAX_OUTPUT_TOKENS,
    MAX_AGENT_MESSAGES_CHAR_BUDGET,
    SKILL_MAX_OUTPUT_TOKENS,
    EngineConfig,
)
from cos_engine.conversation import (
    OVER_BUDGET_MESSAGE,
    ConversationStore,
    enforce_message_budget_in_place,
    is_over_budget,
)
from cos_engine.exceptions import AgentBusyError, CapExceededError, IterationCapError, RunAbortedError
from cos_engine.guards import FABRICATION_CAVEAT, RunGuards
from cos_engine.llm_gateway import LLMGateway, LLMResponse, ToolCall
from cos_engine.logging_config import new_run_id, run_id_var
from cos_engine.memory import parse_skill_sources
from cos_engine.metrics import METRICS
from cos_engine.model_catalog import Tier
from cos_engine.parse_utils import (
    extract_mcp_key_reference,
    extract_workflow_suggestion_index,
    safe_json_stringify,
)
from cos_engine.prompts import PromptBuilder
from cos_engine.routing import RoutingDecision, SessionTrajectory, compute_routing_score
from cos_engine.security import guard_fingerprint_leakage, redact_for_log, sanitise_llm_response_text
from cos_engine.tool_registry import LOCAL_MCP_EXECUTE, ToolOrigin, ToolRegistry, ToolResult
from cos_engine.tracing import get_tracer
from cos_engine.usage import UsageTracker

logger = logging.getLogger("cos.engine.agent")
tracer = get_tracer("cos.engine.agent")

RETRIED_STUB = "[retried]"
BUSY_MESSAGE = "Chief of Staff is still finishing the previous request. Please try again in a moment."
CLEARED_MESSAGE = "Conversation context cleared."
TOOL_FAILURE_ESCALATION_THRESHOLD = 2
HALLUCINATION_ESCALATION_THRESHOLD = 2
PROMPT_PREVIEW_CHARS = 120
RESULT_PREVIEW_CHARS = 400
ARGS_PREVIEW_CHARS = 350

TIER_SUFFIX_RE = re.compile(r"\s*/(power|ludicrous)\s*$", re.IGNORECASE)
CLEAR_COMMAND_RE = re.compile(r"^\s*/clear\s*$", re.IGNORECASE)
COMPOSIO_VALIDATION_RE = re.compile(r"validation|invalid", re.IGNORECASE)

PAGE_CHANGE_NOTICE = (
    "[Note: The user has navigated to a different page since the last message. "
    "\"This page\" now refers to the page in the current context, not the one discussed earlier.]"
)
OFFER_DAILY_PAGE_SUFFIX = (
    "When your answer is a substantial summary or plan, offer to write it to today's daily page. "
    "Do not write it without asking."
)
READ_ONLY_SUFFIX = (
    "This request runs in read-only mode. You cannot create, update, move or delete anything. "
    "Gather what you need with read tools and summarise findings and suggested actions for the user."
)


# ── Run types ────────────────────────────────────────────────────────────────

@dataclass
class RunOptions:
    """Options for one agent run."""
    suppress_toasts: bool = False
    read_only_tools: bool = False
    offer_write_to_daily_page: bool = True
    on_text_chunk: Callable[[str], Any] | None = None
    on_stream_reset: Callable[[], Any] | None = None
    tier_override: Tier | None = None
    source: str = "chat"
    page_context: dict[str, Any] | None = None


@dataclass
class ToolCallRecord:
    name: str
    args_preview: str
    started_at: float
    duration_ms: int = 0
    success: bool = True
    error: str = ""
    approval: str = ""
    simulated: bool = False
    mutating: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "args": self.args_preview,
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "approval": self.approval,
            "simulated": self.simulated,
            "mutating": self.mutating,
        }


@dataclass
class RunTrace:
    """Everything "Show Last Run Trace" displays about one run."""
    started_at: float
    run_id: str = ""
    source: str = "chat"
    finished_at: float | None = None
    provider: str = ""
    model: str = ""
    tier: str = Tier.MINI.value
    iterations: int = 0
    llm_calls: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    cost: float = 0.0
    error: str = ""
    cap_exceeded: bool = False
    escalated: bool = False
    failed_over: bool = False
    claimed_action_fires: int = 0
    guard_fires: dict[str, int] = field(default_factory=dict)
    prompt_preview: str = ""
    result_preview: str = ""
    routing: dict[str, Any] | None = None
    approvals: list[Any] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at or time.time()) - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source": self.source,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "provider": self.provider,
            "model": self.model,
            "tier": self.tier,
            "iterations": self.iterations,
            "llm_calls": self.llm_calls,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "cost": round(self.cost, 6),
            "error": self.error,
            "cap_exceeded": self.cap_exceeded,
            "escalated": self.escalated,
            "failed_over": self.failed_over,
            "claimed_action_fires": self.claimed_action_fires,
            "guard_fires": dict(self.guard_fires),
            "prompt_preview": self.prompt_preview,
            "result_preview": self.result_preview,
            "routing": self.routing,
            "approvals": [a.to_dict() for a in self.approvals],
        }


@dataclass
class AgentResult:
    text: str
    trace: RunTrace

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "trace": self.trace.to_dict()}


@dataclass
class _RunState:
    """Mutable bookkeeping for one run, owned by ``AgentLoop._iterate``."""
    tier: Tier
    approvals: RunApprovals
    guards: RunGuards
    tool_failures: Counter = field(default_factory=Counter)
    hallucinations: int = 0
    calls_issued: int = 0
    composio_session_id: str = ""
    local_mcp_texts: list[str] = field(default_factory=list)


def split_tier_suffix(prompt: str) -> tuple[str, Tier | None]:
    """``"plan my week /power"`` → ``("plan my week", Tier.POWER)``."""
    match = TIER_SUFFIX_RE.search(prompt or "")
    if not match:
        return prompt, None
    return prompt[:match.start()].rstrip(), Tier.parse(match.group(1))


class AgentLoop:
    """
    Drives agent runs for one runtime.

    Usage:
        loop = AgentLoop(config, gateway, registry, gate, prompts, conversation, usage, memory=memory)

        # Chat send (aborts any active run first):
        result = await loop.ask_foreground("what's on my calendar today?")

        # Inbox / cron (fails fast with AgentBusyError when busy):
        result = await loop.run(prompt, RunOptions(read_only_tools=True), background=True)

        print(loop.last_trace.to_dict())
    """

    def __init__(
        self,
        config: EngineConfig,
        gateway: LLMGateway,
        registry: ToolRegistry,
        gate: ApprovalGate,
        prompts: PromptBuilder,
        conversation: ConversationStore,
        usage: UsageTracker,
        memory: Any = None,
        trajectory: SessionTrajectory | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.gateway = gateway
        self.registry = registry
        self.gate = gate
        self.prompts = prompts
        self.conversation = conversation
        self.usage = usage
        self.memory = memory
        self.trajectory = trajectory or SessionTrajectory()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._abort = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.foreground_active = False
        self.last_trace: RunTrace | None = None
        self.last_routing: RoutingDecision | None = None

    # ── Single flight ────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> bool:
        """Abort the active run, if any. Returns True when a run was signalled."""
        if not self._lock.locked():
            return False
        self._abort.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("Abort requested for active run")
        return True

    async def ask_foreground(self, prompt: str, options: RunOptions | None = None) -> AgentResult:
        """Foreground send: abort any active run, wait up to 2s for the lock."""
        if self._lock.locked():
            self.abort()
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=FOREGROUND_LOCK_WAIT_SECONDS)
            except asyncio.TimeoutError:
                raise AgentBusyError(BUSY_MESSAGE) from None
        else:
            await self._lock.acquire()
        self.foreground_active = True
        try:
            return await self._run_locked(prompt, options or RunOptions())
        finally:
            self.foreground_active = False
            self._lock.release()

    async def run(self, prompt: str, options: RunOptions | None = None, background: bool = False) -> AgentResult:
        if not background:
            return await self.ask_foreground(prompt, options)
        if self._lock.locked():
            raise AgentBusyError(BUSY_MESSAGE)
        await self._lock.acquire()
        try:
            return await self._run_locked(prompt, options or RunOptions(source="background"))
        finally:
            self._lock.release()

    async def _run_locked(self, prompt: str, options: RunOptions) -> AgentResult:
        self._abort.clear()
        run_id = new_run_id()
        token = run_id_var.set(run_id)
        structlog.contextvars.bind_contextvars(run_id=run_id)
        self._task = asyncio.create_task(self._execute(prompt, options, run_id))
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._abort.is_set():
                raise RunAbortedError("Run aborted by user") from None
            raise
        finally:
            self._task = None
            structlog.contextvars.unbind_contextvars("run_id")
            run_id_var.reset(token)

    def clear_context(self) -> None:
        self.conversation.clear(persist=True)
        self.trajectory.reset()
        self.prompts.reset()
        logger.info("Conversation context cleared")

    # ── Run ──────────────────────────────────────────────────────

    async def _execute(self, prompt: str, options: RunOptions, run_id: str) -> AgentResult:
        text = str(prompt or "").strip()
        if CLEAR_COMMAND_RE.match(text):
            self.clear_context()
            now = self._clock()
            return AgentResult(CLEARED_MESSAGE, RunTrace(started_at=now, finished_at=now, run_id=run_id))

        trace = RunTrace(
            started_at=self._clock(),
            run_id=run_id,
            source=options.source,
            prompt_preview=text[:PROMPT_PREVIEW_CHARS],
        )
        self.last_trace = trace
        outcome = "fatal_error"
        with tracer.start_as_current_span("agent.run") as span:
            span.set_attribute("agent.source", options.source)
            span.set_attribute("agent.read_only", options.read_only_tools)
            try:
                self.usage.check_daily_cap(self.config.daily_spending_cap)
                result_text = await self._iterate(text, options, trace)
                trace.result_preview = result_text[:RESULT_PREVIEW_CHARS]
                outcome = "finish"
                return AgentResult(result_text, trace)
            except CapExceededError as e:
                trace.cap_exceeded = True
                trace.error = str(e)
                outcome = "cap_exceeded"
                raise
            except (RunAbortedError, asyncio.CancelledError):
                trace.error = "aborted"
                outcome = "abort"
                raise
            except Exception as e:
                trace.error = str(e) or type(e).__name__
                logger.error("Agent run failed: %s", trace.error)
                METRICS.errors_total.labels(error_type=type(e).__name__, component="agent").inc()
                raise
            finally:
                trace.finished_at = self._clock()
                span.set_attribute("agent.outcome", outcome)
                span.set_attribute("agent.iterations", trace.iterations)
                span.set_attribute("agent.tier", trace.tier)
                METRICS.agent_runs_total.labels(outcome=outcome).inc()
                METRICS.agent_run_duration.observe(max(0.0, trace.finished_at - trace.started_at))
                METRICS.agent_iterations.observe(trace.iterations)
                await self._post_run(trace, text, outcome)

    def _local_mcp_mentions(self, prompt: str) -> tuple[bool, bool]:
        lower = prompt.lower()
        direct = routed = False
        for tool in self.registry.local_mcp_tools():
            server = (tool.server_name or "").lower()
            if not server or server not in lower:
                continue
            if tool.is_direct:
                direct = True
            else:
                routed = True
        return direct, routed

    async def _route(self, prompt: str) -> RoutingDecision:
        entries = await self.memory.skill_entries() if self.memory is not None else []
        direct, routed = self._local_mcp_mentions(prompt)
        return compute_routing_score(
            prompt,
            self.trajectory,
            skill_entries=entries,
            known_tool_names=set(self.registry.names()),
            parse_sources=parse_skill_sources,
            ludicrous_enabled=self.config.ludicrous_enabled,
            mentions_direct_mcp_server=direct,
            session_used_local_mcp=self.conversation.session_used_local_mcp,
            uses_routed_mcp_server=routed,
        )

    def _build_user_message(self, prompt: str, options: RunOptions) -> str:
        previous = self.conversation.last_page_context
        current = options.page_context
        self.conversation.last_page_context = current or previous
        if previous and current and previous.get("uid") != current.get("uid") and self.conversation.turns:
            return f"{PAGE_CHANGE_NOTICE}\n\n{prompt}"
        return prompt

    def _max_output_tokens(self, tier: Tier, decision: RoutingDecision | None) -> int:
        if tier is Tier.LUDICROUS:
            return LUDICROUS_MAX_OUTPUT_TOKENS
        if decision is not None and decision.tool_count.matched_skill:
            return SKILL_MAX_OUTPUT_TOKENS
        return self.config.max_output_tokens

    def _escalate(self, state: _RunState, trace: RunTrace, reason: str) -> None:
        if trace.escalated or state.tier is Tier.LUDICROUS:
            return
        previous = state.tier
        state.tier = previous.escalated()
        trace.escalated = True
        trace.tier = state.tier.value
        self.usage.record_stat("tierEscalations")
        METRICS.tier_escalations_total.labels(from_tier=previous.value, to_tier=state.tier.value).inc()
        logger.info("Escalating %s → %s (%s)", previous.value, state.tier.value, reason)

    async def _iterate(self, prompt: str, options: RunOptions, trace: RunTrace) -> str:
        stripped, suffix_tier = split_tier_suffix(prompt)
        decision: RoutingDecision | None = None
        if suffix_tier is not None:
            tier = suffix_tier
        elif options.tier_override is not None:
            tier = Tier.parse(options.tier_override)
        else:
            decision = await self._route(stripped)
            tier = decision.tier
            trace.routing = decision.to_dict()
        self.last_routing = decision
        trace.tier = tier.value

        suffix_parts = []
        if options.read_only_tools:
            suffix_parts.append(READ_ONLY_SUFFIX)
        elif options.offer_write_to_daily_page:
            suffix_parts.append(OFFER_DAILY_PAGE_SUFFIX)
        system = await self.prompts.build(stripped, page_context=options.page_context, suffix="\n".join(suffix_parts))
        visible = self.registry.tools_for_llm(stripped, read_only=options.read_only_tools)
        tool_defs = [t.to_llm() for t in visible]
        overhead = len(system) + len(json.dumps(tool_defs))

        messages: list[dict[str, Any]] = self.conversation.get_messages()
        prunable = len(messages)
        messages.append({"role": "user", "content": self._build_user_message(stripped, options)})

        state = _RunState(
            tier=tier,
            approvals=RunApprovals(run_id=trace.run_id, read_only=options.read_only_tools),
            guards=RunGuards(prompt=stripped, registered_tools=visible, record_stat=self.usage.record_stat),
        )
        trace.approvals = state.approvals.records
        if decision is not None and decision.tool_count.matched_skill and self.memory is not None:
            entry = await self.memory.find_skill(decision.tool_count.matched_skill)
            if entry is not None:
                state.guards.activate_skill(entry.title, [s.tool for s in entry.sources])
        max_tokens = self._max_output_tokens(tier, decision)
        logger.info("Run start: tier=%s tools=%d source=%s%s", tier.value, len(visible), options.source,
                    f" ({decision.reason})" if decision else "")

        for index in range(self.config.max_iterations):
            if self._abort.is_set():
                raise RunAbortedError("Run aborted by user")
            if index > 0 and self.usage.is_daily_cap_exceeded(self.config.daily_spending_cap):
                trace.cap_exceeded = True
                raise CapExceededError(cap=float(self.config.daily_spending_cap), spent=self.usage.today_cost())

            prunable = enforce_message_budget_in_place(
                messages, MAX_AGENT_MESSAGES_CHAR_BUDGET, prunable, system_overhead_chars=overhead
            )
            if is_over_budget(messages, MAX_AGENT_MESSAGES_CHAR_BUDGET, overhead):
                logger.warning("Run exit: message budget exceeded after trimming")
                return OVER_BUDGET_MESSAGE

            response = await self.gateway.complete(
                system,
                messages,
                tool_defs or None,
                tier=state.tier,
                on_text_chunk=options.on_text_chunk,
                abort=self._abort,
                max_output_tokens=max_tokens,
                on_stream_reset=options.on_stream_reset,
            )
            self._account(response, trace)
            text, leaked = guard_fingerprint_leakage(
                sanitise_llm_response_text(response.content or ""), record_stat=self.usage.record_stat
            )
            if leaked:
                trace.iterations += 1
                return text

            if response.tool_calls:
                trace.iterations += 1
                messages.append(response.assistant_message())
                state.approvals.begin_response()
                for call in response.tool_calls:
                    if self._abort.is_set():
                        raise RunAbortedError("Run aborted by user")
                    result = await self._dispatch(call, state, trace)
                    messages.append(result.to_message())
                    if not result.success and result.result is not None:
                        state.tool_failures[result.name] += 1
                        if state.tool_failures[result.name] >= TOOL_FAILURE_ESCALATION_THRESHOLD:
                            self._escalate(state, trace, f"{result.name} failed {state.tool_failures[result.name]}x")
                continue

            verdict = state.guards.check_text(text, tool_calls_in_run=state.calls_issued)
            if verdict is not None and not verdict.exhausted:
                trace.guard_fires[verdict.kind] = trace.guard_fires.get(verdict.kind, 0) + 1
                if verdict.kind == "claimed_action":
                    trace.claimed_action_fires += 1
                    self.conversation.session_claimed_action_count += 1
                state.hallucinations += 1
                if state.hallucinations >= HALLUCINATION_ESCALATION_THRESHOLD and state.tier is Tier.MINI:
                    self._escalate(state, trace, "repeated hallucination on mini")
                messages.append({"role": "assistant", "content": RETRIED_STUB})
                messages.append({"role": "user", "content": verdict.nudge})
                continue
            if verdict is not None and verdict.kind == "fabrication":
                text = FABRICATION_CAVEAT

            trace.iterations += 1
            stored = self._stored_assistant_text(text, state)
            self.conversation.append_turn(stripped, stored)
            return text

        raise IterationCapError("Agent loop exceeded maximum iterations")

    # ── Tool dispatch ────────────────────────────────────────────

    async def _dispatch(self, call: ToolCall, state: _RunState, trace: RunTrace) -> ToolResult:
        """Gate then execute one tool call; every outcome becomes a tool-result turn."""
        state.calls_issued += 1
        name, args = self.registry.resolve_call(call.name, call.arguments)
        args = with_composio_session_args(name, args, state.composio_session_id)
        started = self._clock()
        mutating = self.registry.is_potentially_mutating(name, args)

        with tracer.start_as_current_span("tool.dispatch") as span:
            span.set_attribute("tool.name", name)
            gathering = state.guards.check_tool_call(name)
            if gathering is not None and not gathering.exhausted:
                trace.guard_fires["gathering"] = trace.guard_fires.get("gathering", 0) + 1
                return self._blocked_result(call.id, name, {"error": gathering.nudge, "reason": "gathering-incomplete"})

            decision = await self.gate.approve(name, args, state.approvals)
            span.set_attribute("tool.approval", decision.reason.value)
            if not decision.allowed:
                logger.info("Tool %s blocked: %s", name, decision.reason.value)
                return self._blocked_result(call.id, name, decision.denial_result())

            record = ToolCallRecord(
                name=name,
                args_preview=safe_json_stringify(redact_for_log(args), ARGS_PREVIEW_CHARS),
                started_at=started,
                approval=decision.reason.value,
                mutating=mutating,
            )
            if decision.simulated:
                simulated = simulated_result(name, args)
                result = ToolResult(call.id, name, safe_json_stringify(simulated), simulated, True)
                record.simulated = True
            else:
                result = await self.registry.execute(call.id, name, args)
                result = await self._retry_composio_validation(call.id, name, args, result, state)
            span.set_attribute("tool.success", result.success)

        record.duration_ms = int((self._clock() - started) * 1000)
        record.success = result.success
        if not result.success:
            error = result.result.get("error") if isinstance(result.result, dict) else None
            record.error = str(error or "tool failed")[:200]
        trace.tool_calls.append(record)
        self.usage.record_stat("toolCall", name)

        session_id = extract_session_id(result.result)
        if session_id:
            state.composio_session_id = session_id
        tool = self.registry.get(name)
        if name == LOCAL_MCP_EXECUTE or (tool is not None and tool.origin is ToolOrigin.LOCAL_MCP):
            state.local_mcp_texts.append(result.content)
        state.guards.record_tool_result(
            name, result.success, external=self.registry.is_external_data_tool_call(name), result=result.result
        )
        return result

    async def _retry_composio_validation(self, call_id: str, name: str, args: dict[str, Any], result: ToolResult,
                                         state: _RunState) -> ToolResult:
        """One retry for a COMPOSIO_* validation error once a session id is known."""
        if result.success or not name.upper().startswith("COMPOSIO_"):
            return result
        error = result.result.get("error") if isinstance(result.result, dict) else ""
        discovered = extract_session_id(result.result) or state.composio_session_id
        if not discovered or not COMPOSIO_VALIDATION_RE.search(str(error or "")):
            return result
        retry_args = with_composio_session_args(name, {k: v for k, v in args.items() if k not in ("session_id", "session")},
                                                discovered)
        logger.debug("Retrying %s with Composio session %s", name, discovered)
        return await self.registry.execute(call_id, name, retry_args)

    @staticmethod
    def _blocked_result(call_id: str, name: str, payload: dict[str, Any]) -> ToolResult:
        return ToolResult(call_id, name, safe_json_stringify(payload), None, success=False)

    # ── Accounting ───────────────────────────────────────────────

    def _account(self, response: LLMResponse, trace: RunTrace) -> None:
        trace.llm_calls += 1
        trace.total_input_tokens += response.input_tokens
        trace.total_output_tokens += response.output_tokens
        trace.cost += response.cost_usd
        trace.provider = response.provider
        trace.model = response.model
        if response.failed_over:
            trace.failed_over = True
        if response.escalated_to_ludicrous:
            trace.tier = Tier.LUDICROUS.value
        self.usage.record_cost(response.model, response.input_tokens, response.output_tokens, response.cost_usd)

    def _stored_assistant_text(self, text: str, state: _RunState) -> str:
        """Assistant turn as retained in context: workflow index and key references first."""
        parts = [
            extract_workflow_suggestion_index(text),
            extract_mcp_key_reference(state.local_mcp_texts),
            text,
        ]
        return "\n".join(p for p in parts if p)

    async def _post_run(self, trace: RunTrace, prompt: str, outcome: str) -> None:
        self.usage.record_stat("agentRuns")
        if outcome in ("finish", "cap_exceeded") or trace.llm_calls:
            self.trajectory.record(
                tool_count=len(trace.tool_calls),
                unique_tool_count=len({tc.name for tc in trace.tool_calls}),
                successful_unique_tool_count=len({tc.name for tc in trace.tool_calls if tc.success}),
                iterations=trace.iterations,
                tier=trace.tier,
                escalated=trace.escalated,
                failed_over=trace.failed_over,
                word_count=len(prompt.split()),
            )
        logger.info(
            "Run %s: %s tier=%s iter=%d tools=%d in=%d out=%d cost=%.6f",
            outcome, trace.model or "-", trace.tier, trace.iterations, len(trace.tool_calls),
            trace.total_input_tokens, trace.total_output_tokens, trace.cost,
        )
        await self.usage.write_audit_entry(trace, prompt, self.config.audit_log_retention_days)
        await self.usage.write_usage_stats_page()
