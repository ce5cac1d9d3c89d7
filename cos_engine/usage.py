"""
Usage tracking — session tokens, cost history, daily cap, audit log and usage stats.

Features:
- Running token/cost totals for this runtime
- Per-day cost history with per-model breakdown, persisted (3s debounce),
  pruned to 90 days
- Daily spending cap check used by the agent loop pre-flight and mid-run
- One audit-log block per run on ``Chief of Staff/Audit Log`` (newest first)
  with a retention trim of date-linked blocks
- Per-day usage-stat counters and one idempotent summary block per day on
  ``Chief of Staff/Usage Stats``

Fire-and-forget: graph writes for the audit log and stats page are logged on
failure but never break the agent flow.
"""
import asyncio
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Callable

from cos_engine.config import COST_HISTORY_MAX_DAYS, USAGE_PERSIST_DEBOUNCE_SECONDS, USAGE_STATS_MAX_DAYS
from cos_engine.exceptions import CapExceededError
from cos_engine.host import GraphHost, create_block, ensure_page_uid, get_page_tree, with_write_retry
from cos_engine.logging_config import get_event_logger
from cos_engine.metrics import METRICS
from cos_engine.store import Debouncer, KeyValueStore, SettingsKeys

logger = logging.getLogger("cos.engine.usage")
events = get_event_logger("cos.engine.usage")

AUDIT_LOG_PAGE_TITLE = "Chief of Staff/Audit Log"
USAGE_STATS_PAGE_TITLE = "Chief of Staff/Usage Stats"
AUDIT_PROMPT_PREVIEW_CHARS = 120

USAGE_STAT_COUNTERS = (
    "agentRuns",
    "approvalsGranted",
    "approvalsDenied",
    "injectionWarnings",
    "claimedActionFires",
    "tierEscalations",
    "memoryWriteBlocks",
)

_MONTH_INDEX = {
    name: i + 1 for i, name in enumerate((
        "january", "february", "march", "april", "may", "june",
        "july", "august", "september", "october", "november", "december",
    ))
}
_DATE_REF_RE = re.compile(r"^\[\[(\w+)\s+(\d+)\w{0,2},\s*(\d{4})\]\]")


def date_key(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def parse_leading_date_ref(text: str) -> date | None:
    """``[[March 1st, 2026]] …`` → ``date(2026, 3, 1)``; None when the block has no leading date link."""
    m = _DATE_REF_RE.match(str(text or ""))
    if not m:
        return None
    month = _MONTH_INDEX.get(m.group(1).lower())
    if month is None:
        return None
    try:
        return date(int(m.group(3)), month, int(m.group(2)))
    except ValueError:
        return None


def _empty_cost_day() -> dict[str, Any]:
    return {"cost": 0.0, "input": 0, "output": 0, "requests": 0, "models": {}}


def _empty_stats_day() -> dict[str, Any]:
    day: dict[str, Any] = {name: 0 for name in USAGE_STAT_COUNTERS}
    day["toolCalls"] = {}
    return day


class UsageTracker:
    """
    Cost and usage accounting for one runtime.

    Usage:
        usage = UsageTracker(store, host)
        usage.load()
        usage.record_cost("claude-haiku-4-5", 1200, 300, 0.0021)
        usage.check_daily_cap(5.0)          # raises CapExceededError
        await usage.write_audit_entry(trace, prompt)
        usage.flush()                       # on teardown
    """

    def __init__(
        self,
        store: KeyValueStore,
        host: GraphHost | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._store = store
        self._host = host
        self._today = today
        self.session_tokens = {"input": 0, "output": 0, "requests": 0, "cost": 0.0}
        self.cost_history: dict[str, Any] = {"days": {}}
        self.usage_stats: dict[str, Any] = {"days": {}}
        self._persist_costs = Debouncer(USAGE_PERSIST_DEBOUNCE_SECONDS, self._write_cost_history)
        self._persist_stats = Debouncer(USAGE_PERSIST_DEBOUNCE_SECONDS, self._write_usage_stats)
        self._trim_task: asyncio.Task | None = None

    def load(self) -> None:
        raw = self._store.get(SettingsKeys.COST_HISTORY)
        self.cost_history = raw if isinstance(raw, dict) and isinstance(raw.get("days"), dict) else {"days": {}}
        raw = self._store.get(SettingsKeys.USAGE_STATS)
        self.usage_stats = raw if isinstance(raw, dict) and isinstance(raw.get("days"), dict) else {"days": {}}

    # ── Persistence ──────────────────────────────────────────────

    def _cutoff_key(self, max_days: int) -> str:
        return date_key(self._today() - timedelta(days=max_days))

    def _prune(self, history: dict[str, Any], max_days: int) -> None:
        cutoff = self._cutoff_key(max_days)
        for key in [k for k in history["days"] if k < cutoff]:
            del history["days"][key]

    def _write_cost_history(self) -> None:
        self._prune(self.cost_history, COST_HISTORY_MAX_DAYS)
        self._store.set(SettingsKeys.COST_HISTORY, self.cost_history)

    def _write_usage_stats(self) -> None:
        self._prune(self.usage_stats, USAGE_STATS_MAX_DAYS)
        self._store.set(SettingsKeys.USAGE_STATS, self.usage_stats)

    def flush(self) -> None:
        """Write pending cost history and usage stats now (teardown)."""
        self._persist_costs.flush()
        self._persist_stats.flush()

    # ── Tokens & cost ────────────────────────────────────────────

    def record_cost(self, model: str, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.session_tokens["input"] += input_tokens
        self.session_tokens["output"] += output_tokens
        self.session_tokens["requests"] += 1
        self.session_tokens["cost"] += cost

        day = self.cost_history["days"].setdefault(date_key(self._today()), _empty_cost_day())
        day["cost"] += cost
        day["input"] += input_tokens
        day["output"] += output_tokens
        day["requests"] += 1
        per_model = day["models"].setdefault(model or "unknown", {"cost": 0.0, "input": 0, "output": 0, "requests": 0})
        per_model["cost"] += cost
        per_model["input"] += input_tokens
        per_model["output"] += output_tokens
        per_model["requests"] += 1

        METRICS.llm_tokens_input.labels(model=model or "unknown").inc(input_tokens)
        METRICS.llm_tokens_output.labels(model=model or "unknown").inc(output_tokens)
        METRICS.llm_cost_usd.labels(model=model or "unknown").inc(cost)
        self._persist_costs.schedule()

    def reset_session(self) -> None:
        self.session_tokens = {"input": 0, "output": 0, "requests": 0, "cost": 0.0}

    def today_cost(self) -> float:
        return float(self.cost_history["days"].get(date_key(self._today()), {}).get("cost", 0.0))

    def is_daily_cap_exceeded(self, cap: float | None) -> bool:
        if cap is None or cap <= 0:
            return False
        return self.today_cost() >= cap

    def check_daily_cap(self, cap: float | None) -> None:
        if self.is_daily_cap_exceeded(cap):
            raise CapExceededError(cap=float(cap), spent=self.today_cost())

    def cost_summary(self) -> dict[str, Any]:
        """Today (with model breakdown), last 7 days and last 30 days."""
        today = self._today()
        days = self.cost_history["days"]

        def _window(n: int) -> dict[str, Any]:
            total = {"cost": 0.0, "input": 0, "output": 0, "requests": 0}
            for i in range(n):
                entry = days.get(date_key(today - timedelta(days=i)))
                if entry:
                    for field in total:
                        total[field] += entry.get(field, 0)
            return total

        return {
            "today": days.get(date_key(today), _empty_cost_day()),
            "week": _window(7),
            "month": _window(30),
            "session": dict(self.session_tokens),
        }

    # ── Usage stats ──────────────────────────────────────────────

    def _stats_today(self) -> dict[str, Any]:
        day = self.usage_stats["days"].setdefault(date_key(self._today()), _empty_stats_day())
        for name in USAGE_STAT_COUNTERS:
            day.setdefault(name, 0)
        day.setdefault("toolCalls", {})
        return day

    def record_stat(self, stat: str, detail: str = "") -> None:
        day = self._stats_today()
        if stat == "toolCall":
            if detail:
                day["toolCalls"][detail] = day["toolCalls"].get(detail, 0) + 1
        elif isinstance(day.get(stat), int):
            day[stat] += 1
        else:
            logger.debug("Ignoring unknown usage stat %r", stat)
            return
        self._persist_stats.schedule()

    def stats_for_today(self) -> dict[str, Any]:
        return self._stats_today()

    def reset_stats(self) -> None:
        self.usage_stats = {"days": {}}
        self.cost_history = {"days": {}}
        self.reset_session()
        self._persist_costs.cancel()
        self._persist_stats.cancel()
        self._write_cost_history()
        self._write_usage_stats()

    # ── Graph pages ──────────────────────────────────────────────

    def format_audit_entry(self, trace: Any, prompt: str = "") -> str:
        started = datetime.fromtimestamp(trace.started_at)
        duration = f"{trace.finished_at - trace.started_at:.1f}" if trace.finished_at else "?"
        tools = ", ".join(
            f"{tc.name}" + (f" ({tc.duration_ms / 1000:.1f}s)" if tc.duration_ms else "") + (" ❌" if tc.error else "")
            for tc in trace.tool_calls
        ) or "none"
        tokens = (trace.total_input_tokens or 0) + (trace.total_output_tokens or 0)
        if trace.cap_exceeded:
            outcome = "cap-exceeded"
        elif trace.error:
            outcome = f"error: {str(trace.error)[:80]}"
        else:
            outcome = "success"
        preview = str(prompt or trace.prompt_preview or "")[:AUDIT_PROMPT_PREVIEW_CHARS]
        date_ref = self._host.date_to_page_title(started) if self._host is not None else date_key(started)
        return (
            f"[[{date_ref}]] **{trace.model or 'unknown'}** "
            f"({trace.iterations} iter, {duration}s, {tokens} tok, ${trace.cost:.4f}) — {outcome}"
            f"\nPrompt: {preview}"
            f"\nTools: {tools}"
        )

    async def write_audit_entry(self, trace: Any, prompt: str = "", retention_days: int | None = None) -> str | None:
        """Prepend one audit block for ``trace``; returns its uid."""
        if self._host is None or not getattr(trace, "started_at", None):
            return None
        try:
            page_uid = await ensure_page_uid(self._host, AUDIT_LOG_PAGE_TITLE)
            uid = await create_block(self._host, page_uid, self.format_audit_entry(trace, prompt), "first")
        except Exception as e:
            logger.warning("Audit log write failed (non-fatal): %s", e)
            return None
        events.info("audit_entry", model=trace.model, iterations=trace.iterations, cost=round(trace.cost, 6))
        if retention_days and (self._trim_task is None or self._trim_task.done()):
            self._trim_task = asyncio.create_task(self.trim_audit_log(retention_days))
        return uid

    async def trim_audit_log(self, retention_days: int | None) -> int:
        """Delete audit blocks whose leading date link is older than ``retention_days``."""
        if self._host is None or not retention_days or retention_days <= 0:
            return 0
        cutoff = self._today() - timedelta(days=retention_days)
        deleted = 0
        try:
            tree = await get_page_tree(self._host, AUDIT_LOG_PAGE_TITLE)
            for child in tree["children"]:
                when = parse_leading_date_ref(child["text"])
                if when is not None and when < cutoff:
                    await with_write_retry(lambda uid=child["uid"]: self._host.delete_block(uid))
                    deleted += 1
        except Exception as e:
            logger.warning("Audit log trim failed (non-fatal): %s", e)
        if deleted:
            logger.info("Trimmed %d audit entries older than %d days", deleted, retention_days)
        return deleted

    def format_usage_stats(self, day: dict[str, Any], date_ref: str) -> str:
        tool_calls = day.get("toolCalls") or {}
        total_tools = sum(tool_calls.values())
        top = ", ".join(
            f"{name} ({count})" for name, count in sorted(tool_calls.items(), key=lambda kv: -kv[1])[:10]
        )
        approvals = day["approvalsGranted"] + day["approvalsDenied"]
        approval_str = f"{day['approvalsGranted']}/{approvals}" if approvals else "0"
        return (
            f"[[{date_ref}]] — {day['agentRuns']} runs | {total_tools} tool calls"
            f" | approvals {approval_str}"
            f" | {day['injectionWarnings']} injection warn"
            f" | {day['claimedActionFires']} claimed-action"
            f" | {day['tierEscalations']} escalations"
            f" | {day['memoryWriteBlocks']} mem blocks"
            + (f" | Top: {top}" if top else "")
        )

    async def write_usage_stats_page(self) -> str | None:
        """Find-then-update-or-create today's summary block."""
        if self._host is None:
            return None
        day = self.usage_stats["days"].get(date_key(self._today()))
        if not day or not day.get("agentRuns"):
            return None
        try:
            date_ref = self._host.date_to_page_title(self._today())
            text = self.format_usage_stats(self._stats_today(), date_ref)
            page_uid = await ensure_page_uid(self._host, USAGE_STATS_PAGE_TITLE)
            tree = await get_page_tree(self._host, uid=page_uid)
            existing = next((c["uid"] for c in tree["children"] if f"[[{date_ref}]]" in c["text"]), None)
            if existing:
                await with_write_retry(lambda: self._host.update_block(existing, string=text))
                return existing
            return await create_block(self._host, page_uid, text, "first")
        except Exception as e:
            logger.warning("Usage stats page write failed (non-fatal): %s", e)
            return None

    async def close(self) -> None:
        if self._trim_task is not None and not self._trim_task.done():
            self._trim_task.cancel()
            try:
                await self._trim_task
            except asyncio.CancelledError:
                pass
        self.flush()
