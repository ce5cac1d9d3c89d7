"""
Response guards — hallucinated actions, fabricated live data, incomplete skill gathering.

Handles:
- Claimed-action guard: text says something was done but no tool ran
- Fabrication guard: a long answer about live external data with zero
  successful external tool calls in the run
- Gathering-completeness guard: a terminal write before every source the
  active skill declares has succeeded

Each guard fires at most ``MAX_FIRES_PER_GUARD`` times per run; after that the
loop lets the text through (fabrication gets a caveat instead).
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from cos_engine.metrics import METRICS
from cos_engine.security import StatRecorder, detect_claimed_action_without_tool_call

logger = logging.getLogger("cos.engine.guards")

MAX_FIRES_PER_GUARD = 2
FABRICATION_MIN_CHARS = 400
DEFAULT_CLAIM_TOOL_HINT = "cos_update_memory"

TERMINAL_WRITE_TOOLS = frozenset({
    "roam_create_block",
    "roam_create_blocks",
    "roam_update_block",
    "cos_update_memory",
})

CLAIMED_ACTION_NUDGE = (
    "You claimed to perform an action but did not make any tool call. That response was not shown "
    "to the user. Please actually call the appropriate tool to complete the request."
)
FABRICATION_NUDGE = (
    "You answered a question about live external data (email, calendar, messages, connections) "
    "without calling any tool in this request. That response was not shown to the user. Call the "
    "relevant tool first and answer only from its results."
)
FABRICATION_CAVEAT = (
    "I can't answer that reliably without checking live tools first. Please retry, and I'll fetch "
    "the real data before responding."
)

_SKILL_EDIT_RE = re.compile(r"\b(skill|skills page)\b.*\b(edit|update|change|rewrite|improve|fix)\b|"
                            r"\b(edit|update|change|rewrite|improve|fix)\b.*\bskill\b", re.IGNORECASE)
_LIVE_DATA_PHRASES = (
    "most recent emails",
    "latest emails",
    "recent emails",
    "my inbox",
    "unread emails",
    "what's on my calendar",
    "whats on my calendar",
    "calendar today",
    "calendar tomorrow",
    "upcoming events",
    "my schedule",
    "connected tools",
    "connection status",
    "connected accounts",
)
_LIVE_DATA_NOUN_RE = re.compile(
    r"\b(emails?|inbox|calendar|events?|schedule|messages?|connections?|accounts?|slack|gmail|jira|github)\b",
    re.IGNORECASE,
)
_READ_VERB_RE = re.compile(r"\b(what|show|list|summar\w*|find|fetch|get|check)\b", re.IGNORECASE)
_ACTION_VERB_RE = re.compile(
    r"\b(delete|remove|archive|trash|reply|send|compose|draft|mark|move|update|edit|cancel|reschedule|"
    r"connect|disconnect)\b",
    re.IGNORECASE,
)


def is_likely_live_data_read_intent(prompt: Any) -> bool:
    """True when the prompt asks about email, calendar or connection state that only a tool can know."""
    text = str(prompt or "").strip()
    if not text:
        return False
    if _SKILL_EDIT_RE.search(text):
        return False
    lower = text.lower()
    if any(phrase in lower for phrase in _LIVE_DATA_PHRASES):
        return True
    if not _LIVE_DATA_NOUN_RE.search(text):
        return False
    return bool(_READ_VERB_RE.search(text) or _ACTION_VERB_RE.search(text))


@dataclass
class GuardVerdict:
    kind: str
    nudge: str
    tool_hint: str = ""
    exhausted: bool = False


@dataclass
class RunGuards:
    """
    Per-run guard state.

    Usage:
        guards = RunGuards(prompt="what's in my inbox?", registered_tools=tools, record_stat=usage.record_stat)
        guards.record_tool_result("COMPOSIO_MULTI_EXECUTE_TOOL", success=True, external=True)
        verdict = guards.check_text(text, tool_calls_in_run=0)
        if verdict and not verdict.exhausted:
            messages.append({"role": "user", "content": verdict.nudge})
    """
    prompt: str = ""
    registered_tools: list[Any] = field(default_factory=list)
    fires: dict[str, int] = field(default_factory=dict)
    successful_tools: set[str] = field(default_factory=set)
    successful_external_calls: int = 0
    skill_name: str = ""
    skill_sources: list[str] = field(default_factory=list)
    record_stat: StatRecorder | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.live_data_intent = is_likely_live_data_read_intent(self.prompt)

    # ── Bookkeeping ──────────────────────────────────────────────

    def record_tool_result(self, name: str, success: bool, external: bool = False, result: Any = None) -> None:
        if not success:
            return
        self.successful_tools.add(name)
        if external:
            self.successful_external_calls += 1
        if name == "cos_get_skill" and isinstance(result, dict) and result.get("skill"):
            self.activate_skill(str(result["skill"]), result.get("sources") or [])

    def activate_skill(self, name: str, sources: Iterable[Any]) -> None:
        self.skill_name = name
        self.skill_sources = [str(s) for s in sources if s]
        if self.skill_sources:
            logger.debug("Skill %r declares sources: %s", name, ", ".join(self.skill_sources))

    def claimed_action_fires(self) -> int:
        return self.fires.get("claimed_action", 0)

    def _fire(self, kind: str, nudge: str, tool_hint: str = "") -> GuardVerdict:
        count = self.fires.get(kind, 0)
        if count >= MAX_FIRES_PER_GUARD:
            logger.info("Guard %s exhausted (%d fires); letting response through", kind, count)
            return GuardVerdict(kind, nudge, tool_hint, exhausted=True)
        self.fires[kind] = count + 1
        METRICS.guard_fires_total.labels(guard=kind).inc()
        logger.warning("Guard %s fired (%d/%d)%s", kind, count + 1, MAX_FIRES_PER_GUARD,
                       f" expecting {tool_hint}" if tool_hint else "")
        return GuardVerdict(kind, nudge, tool_hint)

    # ── Checks ───────────────────────────────────────────────────

    def missing_sources(self) -> list[str]:
        return [s for s in self.skill_sources if s not in self.successful_tools]

    def check_tool_call(self, name: str) -> GuardVerdict | None:
        """Gathering guard: run before dispatching a terminal write."""
        if name not in TERMINAL_WRITE_TOOLS or not self.skill_sources:
            return None
        missing = self.missing_sources()
        if not missing:
            return None
        nudge = (
            f'The "{self.skill_name}" skill requires gathering from every listed source before writing. '
            f"Not yet called successfully: {', '.join(missing)}. Call them first, then write the result."
        )
        return self._fire("gathering", nudge, missing[0])

    def check_text(self, text: str, tool_calls_in_run: int = 0) -> GuardVerdict | None:
        """Claimed-action then fabrication checks for a text-only response."""
        scan = None
        if tool_calls_in_run == 0:
            scan = detect_claimed_action_without_tool_call(text, self.registered_tools)
        if scan is not None and scan.detected:
            hint = scan.matched_tool_hint or DEFAULT_CLAIM_TOOL_HINT
            verdict = self._fire("claimed_action", f"{CLAIMED_ACTION_NUDGE} Expected tool: {hint}.", hint)
            if not verdict.exhausted and self.record_stat is not None:
                self.record_stat("claimedActionFires")
            return verdict
        if (
            self.live_data_intent
            and len(text or "") >= FABRICATION_MIN_CHARS
            and self.successful_external_calls == 0
        ):
            return self._fire("fabrication", FABRICATION_NUDGE)
        return None
