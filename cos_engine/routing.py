"""
Tier Routing — complexity-based model tier selection.

Scores an incoming prompt 0-1 and maps the score to mini / power / ludicrous.
Features:
- Tool-count estimate: matched skill's Sources list, else keyword triggers
- Prompt-complexity signals: length, entities, temporal, comparison, chains
- Session trajectory over the last 8 turns (successful unique tools only)
- Skill boost, direct-MCP mention boost, local-MCP session boost
- complex_followup override and skill ceiling (never above power)
- Routed local MCP servers promote to at least power
"""
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from cos_engine.model_catalog import Tier

logger = logging.getLogger("cos.engine.routing")

# A score strictly above the threshold selects the tier; a score exactly at
# the threshold stays on the lower tier.
TIER_THRESHOLDS = {
    Tier.POWER: 0.45,
    Tier.LUDICROUS: 0.90,
}

# Strategy weights (sum to 1.0)
WEIGHTS = {
    "tool_count": 0.40,
    "prompt_complexity": 0.35,
    "trajectory": 0.25,
}

TRAJECTORY_WINDOW = 8
DIRECT_MCP_MENTION_BOOST = 0.08
LOCAL_MCP_SESSION_BOOST = 0.15

TOOL_SIGNALS: tuple[tuple[re.Pattern, int], ...] = tuple(
    (re.compile(p, re.IGNORECASE), n)
    for p, n in (
        (r"\b(calendar|schedule|meeting|events?)\b", 1),
        (r"\b(email|gmail|inbox|messages?)\b", 1),
        (r"\b(tasks?|todos?|overdue|due\s+(?:today|this\s+week))\b", 1),
        (r"\b(projects?|project\s+status)\b", 2),
        (r"\b(search|find|look\s*up)\b", 1),
        (r"\b(create|add|make|write|save)\b", 1),
        (r"\b(update|modify|change|edit)\b", 1),
        (r"\b(delete|remove|cancel)\b", 1),
        (r"\b(memory|remember|recall)\b", 1),
        (r"\b(weather|forecast)\b", 1),
        (r"\b(and\s+then|after\s+that|also|plus)\b", 1),
        (r"\b(compare|versus|vs\.?|trade-?offs?)\b", 1),
    )
)

TEMPORAL_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(this\s+week|next\s+week|last\s+week|past\s+\d+\s+days?)\b",
        r"\b(since|until|between|from\s+\w+\s+to)\b",
        r"\b(yesterday|tomorrow|today|tonight|this\s+morning)\b",
        r"\b(overdue|upcoming|deadline|due\s+(date|by|before))\b",
        r"\b(january|february|march|april|may|june|july|august|september|october|november|december)\b",
    )
)


def _ci(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


DELIBERATION_RE = _ci(r"\b(should\s+i|would\s+it\s+be|is\s+it\s+worth|pros?\s+and\s+cons?|trade-?offs?)\b")
COMPARISON_RE = _ci(r"\b(compare|versus|vs\.?|better|worse|alternatively)\b")
CONDITIONAL_RE = _ci(r"\b(if|unless|assuming|depending\s+on|in\s+case)\b")
CHAIN_RE = _ci(r"\b(and\s+then|after\s+that|once\s+(?:that'?s?|you'?ve?)|then\s+also|next|finally|first|second|third)\b")
AMBIGUITY_RE = _ci(r"\b(not\s+sure|maybe|i\s+think|probably|might|could\s+be|vague|unclear)\b")
SYNTHESIS_RE = _ci(r"\b(summarise|summarize|synthesise|synthesize|analyse|analyze|review|reflect|retrospective|retro)\b")
PLANNING_RE = _ci(r"\b(plan|strategy|prioriti[sz]e|roadmap|architect)\b")
COMPOSITION_RE = _ci(r"\b(draft|compose|write|author)\b")
DEPTH_RE = _ci(r"\b(don'?t\s+just|not\s+just|more\s+than\s+just|actually|thoroughly|comprehensive|in[- ]depth)\b")
WRITE_INTENT_RE = _ci(r"\b(apply|do|create|make|fix|update|write|save|implement|build|set\s*up|draft)\b")


@dataclass
class StrategyScore:
    score: float
    signals: list[str] = field(default_factory=list)
    estimated_tools: int = 0
    matched_skill: str | None = None


@dataclass
class RoutingDecision:
    score: float
    tier: Tier
    tool_count: StrategyScore
    prompt_complexity: StrategyScore
    trajectory: StrategyScore
    signals: list[str]
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": round(self.score, 3),
            "tier": self.tier.value,
            "breakdown": {
                "tool_count": {
                    "score": round(self.tool_count.score, 3),
                    "estimated": self.tool_count.estimated_tools,
                    "matched_skill": self.tool_count.matched_skill,
                },
                "prompt_complexity": {"score": round(self.prompt_complexity.score, 3), "signals": self.prompt_complexity.signals},
                "trajectory": {"score": round(self.trajectory.score, 3), "signals": self.trajectory.signals},
            },
            "signals": self.signals,
            "reason": self.reason,
        }


# ── Session trajectory ───────────────────────────────────────────────────────

@dataclass
class TurnOutcome:
    tool_count: int = 0
    unique_tool_count: int = 0
    successful_unique_tool_count: int = 0
    iterations: int = 0
    tier: Tier = Tier.MINI
    escalated: bool = False
    failed_over: bool = False
    complex: bool = False
    word_count: int = 0
    timestamp: float = field(default_factory=time.time)


class SessionTrajectory:
    """
    Sliding window of the last 8 completed runs.

    Usage:
        trajectory = SessionTrajectory()
        trajectory.record(tool_count=4, unique_tool_count=3, successful_unique_tool_count=3,
                          iterations=3, tier=Tier.POWER)
    """

    def __init__(self, window: int = TRAJECTORY_WINDOW):
        self.window = window
        self.turns: list[TurnOutcome] = []

    def record(
        self,
        tool_count: int = 0,
        unique_tool_count: int | None = None,
        successful_unique_tool_count: int | None = None,
        iterations: int = 0,
        tier: Tier | str = Tier.MINI,
        escalated: bool = False,
        failed_over: bool = False,
        word_count: int = 0,
    ) -> TurnOutcome:
        unique = tool_count if unique_tool_count is None else unique_tool_count
        successful = unique if successful_unique_tool_count is None else successful_unique_tool_count
        tier = Tier.parse(tier)
        outcome = TurnOutcome(
            tool_count=tool_count,
            unique_tool_count=unique,
            successful_unique_tool_count=successful,
            iterations=iterations,
            tier=tier,
            escalated=bool(escalated),
            failed_over=bool(failed_over),
            complex=_turn_was_complex(tool_count, successful, iterations, tier),
            word_count=word_count,
        )
        self.turns.append(outcome)
        if len(self.turns) > self.window:
            self.turns = self.turns[-self.window:]
        return outcome

    def reset(self) -> None:
        self.turns = []

    @property
    def last(self) -> TurnOutcome | None:
        return self.turns[-1] if self.turns else None


def _turn_was_complex(tool_count: int, successful_unique: int, iterations: int, tier: Tier) -> bool:
    return (
        (tool_count >= 4 and successful_unique >= 2)
        or (iterations >= 3 and tool_count >= 2 and successful_unique >= 2)
        or tier is not Tier.MINI
    )


# ── Strategies ───────────────────────────────────────────────────────────────

def _tool_count_to_score(estimated: int) -> float:
    if estimated == 0:
        return 0.0
    if estimated <= 2:
        return 0.1 + (estimated / 2) * 0.2
    if estimated <= 5:
        return 0.3 + ((estimated - 2) / 3) * 0.3
    return min(1.0, 0.6 + ((estimated - 5) / 5) * 0.4)


def score_tool_count(
    prompt: str,
    skill_entries: Iterable[Any] = (),
    known_tool_names: set[str] | None = None,
    parse_sources: Callable[[str, set[str]], list[Any]] | None = None,
) -> StrategyScore:
    """
    Estimate how many distinct tool calls ``prompt`` needs.

    Args:
        prompt: Raw user message.
        skill_entries: Objects with ``title`` and ``content`` attributes.
        known_tool_names: Registered tool names (passed through to ``parse_sources``).
        parse_sources: Extracts a skill's Sources list from its content.

    Returns:
        StrategyScore with ``estimated_tools`` and ``matched_skill``.
    """
    lower = prompt.lower()
    estimated = 0
    matched: str | None = None

    if parse_sources is not None:
        best = None
        best_score = 0.0
        for entry in skill_entries:
            title_words = [w for w in (getattr(entry, "title", "") or "").lower().split() if len(w) > 2]
            if not title_words:
                continue
            overlap = sum(1 for w in title_words if w in lower)
            match_score = overlap / len(title_words)
            if match_score > best_score and match_score >= 0.5:
                best_score = match_score
                best = entry
        if best is not None:
            matched = best.title
            estimated = len(parse_sources(best.content, known_tool_names or set()))

    if estimated == 0:
        estimated = sum(n for pattern, n in TOOL_SIGNALS if pattern.search(prompt))

    return StrategyScore(_tool_count_to_score(estimated), estimated_tools=estimated, matched_skill=matched)


def score_prompt_complexity(prompt: str) -> StrategyScore:
    """Cheap text signals for reasoning difficulty; raw score ceiling 10."""
    signals: list[str] = []
    raw = 0.0
    words = len(prompt.split())

    if words > 100:
        raw += 2.0
        signals.append("long_prompt")
    elif words > 50:
        raw += 1.0
        signals.append("medium_prompt")
    elif words > 25:
        raw += 0.5

    page_refs = len(re.findall(r"\[\[[^\]]+\]\]", prompt))
    at_mentions = len(re.findall(r"@\w+", prompt))
    proper_nouns = len(re.findall(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*", prompt))
    entity_count = page_refs + at_mentions + proper_nouns // 2
    if entity_count >= 4:
        raw += 2.0
        signals.append("many_entities")
    elif entity_count >= 2:
        raw += 1.0
        signals.append("multiple_entities")

    temporal_hits = sum(1 for p in TEMPORAL_PATTERNS if p.search(prompt))
    if temporal_hits >= 2:
        raw += 1.5
        signals.append("temporal_reasoning")
    elif temporal_hits == 1:
        raw += 0.5

    if DELIBERATION_RE.search(prompt):
        raw += 1.5
        signals.append("deliberation")
    if COMPARISON_RE.search(prompt):
        raw += 1.5
        signals.append("comparison")
    if entity_count >= 2 and "comparison" in signals:
        raw += 1.5
        signals.append("multi_entity_comparison")
    if CONDITIONAL_RE.search(prompt):
        raw += 0.5
        signals.append("conditional")

    chain_markers = len(CHAIN_RE.findall(prompt.lower()))
    if chain_markers >= 3:
        raw += 2.0
        signals.append("multi_step_chain")
    elif chain_markers >= 1:
        raw += 0.75
        signals.append("sequenced")

    if AMBIGUITY_RE.search(prompt):
        raw += 1.0
        signals.append("ambiguous")
    if SYNTHESIS_RE.search(prompt):
        raw += 1.5
        signals.append("synthesis")
    if PLANNING_RE.search(prompt):
        raw += 1.0
        signals.append("planning")
    if COMPOSITION_RE.search(prompt) and words > 15:
        raw += 0.75
        signals.append("composition")
    if DEPTH_RE.search(prompt):
        raw += 1.0
        signals.append("explicit_depth")

    return StrategyScore(min(1.0, raw / 10), signals)


def score_trajectory(prompt: str, trajectory: SessionTrajectory) -> StrategyScore:
    """Score the next turn from recent run outcomes; raw score ceiling 8."""
    turns = trajectory.turns
    if not turns:
        return StrategyScore(0.0)
    signals: list[str] = []

    weighted = 0.0
    weight_sum = 0.0
    for i, turn in enumerate(turns):
        w = (i + 1) / len(turns)
        weighted += turn.tool_count * w
        weight_sum += w
    avg_tools = weighted / weight_sum if weight_sum else 0.0
    if avg_tools >= 5:
        signals.append("high_tool_trajectory")
    elif avg_tools >= 3:
        signals.append("moderate_tool_trajectory")

    recent = turns[-3:]
    avg_iterations = sum(t.iterations for t in recent) / len(recent)
    if avg_iterations >= 4:
        signals.append("high_iteration_trajectory")

    recent_escalations = sum(1 for t in recent if t.escalated or t.tier is not Tier.MINI)
    if recent_escalations >= 2:
        signals.append("repeated_escalation")

    last = turns[-1]
    # Guard retries inflate iterations without real complexity; only
    # successful unique tools count toward "complex".
    if len(prompt.split()) <= 12 and last.complex:
        signals.append("complex_followup")
    if WRITE_INTENT_RE.search(prompt) and last.tool_count >= 3:
        signals.append("write_after_gather")

    raw = min(3.0, avg_tools * 0.5) + min(2.0, avg_iterations * 0.4) + recent_escalations * 0.8
    if "complex_followup" in signals:
        raw += 2.0
    if "write_after_gather" in signals:
        raw += 1.5
    return StrategyScore(min(1.0, raw / 8), signals)


def tier_for_score(score: float, ludicrous_enabled: bool = False) -> Tier:
    if ludicrous_enabled and score > TIER_THRESHOLDS[Tier.LUDICROUS]:
        return Tier.LUDICROUS
    if score > TIER_THRESHOLDS[Tier.POWER]:
        return Tier.POWER
    return Tier.MINI


def compute_routing_score(
    prompt: str,
    trajectory: SessionTrajectory | None = None,
    skill_entries: Iterable[Any] = (),
    known_tool_names: set[str] | None = None,
    parse_sources: Callable[[str, set[str]], list[Any]] | None = None,
    ludicrous_enabled: bool = False,
    mentions_direct_mcp_server: bool = False,
    session_used_local_mcp: bool = False,
    uses_routed_mcp_server: bool = False,
) -> RoutingDecision:
    """
    Combine the three strategies into one tier decision.

    Returns:
        RoutingDecision with the composite score, tier, per-strategy breakdown
        and a human-readable reason.
    """
    trajectory = trajectory or SessionTrajectory()
    tc = score_tool_count(prompt, skill_entries, known_tool_names, parse_sources)
    pc = score_prompt_complexity(prompt)
    tr = score_trajectory(prompt, trajectory)

    composite = (
        tc.score * WEIGHTS["tool_count"]
        + pc.score * WEIGHTS["prompt_complexity"]
        + tr.score * WEIGHTS["trajectory"]
    )
    if tc.matched_skill and tc.estimated_tools >= 3:
        composite = min(1.0, composite + (0.25 if tc.estimated_tools >= 4 else 0.20))
    if mentions_direct_mcp_server:
        composite = min(1.0, composite + DIRECT_MCP_MENTION_BOOST)
    if session_used_local_mcp:
        composite = min(1.0, composite + LOCAL_MCP_SESSION_BOOST)

    signals = ([f"skill:{tc.matched_skill}"] if tc.matched_skill else []) + pc.signals + tr.signals
    if session_used_local_mcp:
        signals.append("mcp_session_followup")

    tier = tier_for_score(composite, ludicrous_enabled)
    reason = f"score {composite:.2f} -> {tier.value}"

    if tier is Tier.MINI and "complex_followup" in tr.signals and tr.score >= 0.4:
        tier = Tier.POWER
        reason = f"complex follow-up (trajectory {tr.score:.2f}), promoted to power"
    if tier is Tier.MINI and uses_routed_mcp_server:
        tier = Tier.POWER
        signals.append("routed_mcp")
        reason = "routed local MCP server, promoted to power"
    if tier is Tier.LUDICROUS and tc.matched_skill:
        tier = Tier.POWER
        reason = f'skill-matched "{tc.matched_skill}", capped at power (score was {composite:.2f})'

    logger.debug("Routing: %s (signals=%s)", reason, ",".join(signals) or "-")
    return RoutingDecision(composite, tier, tc, pc, tr, signals, reason)
