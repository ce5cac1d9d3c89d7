"""
Unit tests for cos_engine.routing — complexity-based tier selection.
"""
from dataclasses import dataclass

import pytest

from cos_engine.model_catalog import Tier
from cos_engine.routing import (
    SessionTrajectory,
    compute_routing_score,
    score_prompt_complexity,
    score_tool_count,
    tier_for_score,
)


@dataclass
class _Skill:
    title: str
    content: str


def _six_sources(content, known):
    return ["a", "b", "c", "d", "e", "f"]


# ============================================================================
# Thresholds
# ============================================================================

class TestTierForScore:
    @pytest.mark.parametrize("score,ludicrous,expected", [
        (0.0, False, Tier.MINI),
        (0.45, False, Tier.MINI),
        (0.4501, False, Tier.POWER),
        (0.95, False, Tier.POWER),
        (0.90, True, Tier.POWER),
        (0.9001, True, Tier.LUDICROUS),
    ])
    def test_strict_thresholds(self, score, ludicrous, expected):
        assert tier_for_score(score, ludicrous) is expected

    @pytest.mark.parametrize("boost,ludicrous,expected", [
        (0.45, False, Tier.MINI),
        (0.90, True, Tier.POWER),
    ])
    def test_composite_on_threshold_picks_lower_tier(self, monkeypatch, boost, ludicrous, expected):
        monkeypatch.setattr("cos_engine.routing.LOCAL_MCP_SESSION_BOOST", boost)
        decision = compute_routing_score("what time is it?", ludicrous_enabled=ludicrous,
                                         session_used_local_mcp=True)
        assert decision.score == boost
        assert decision.tier is expected


# ============================================================================
# Monotonicity
# ============================================================================

_TIER_RANK = {Tier.MINI: 0, Tier.POWER: 1, Tier.LUDICROUS: 2}


class TestMonotonicity:
    @pytest.mark.parametrize("prompt,extra", [
        ("what time is it?", " and check my calendar and email"),
        ("check my calendar", " plus search my tasks and update the project status"),
        ("summarize my week", " and then compare the roadmap options, should I delay the launch?"),
        ("draft a note to Sam", " after that save it to memory and remove the old one"),
    ])
    @pytest.mark.parametrize("ludicrous", [False, True])
    def test_more_keywords_never_lower_tier(self, prompt, extra, ludicrous):
        base = compute_routing_score(prompt, ludicrous_enabled=ludicrous)
        more = compute_routing_score(prompt + extra, ludicrous_enabled=ludicrous)
        assert more.score >= base.score
        assert _TIER_RANK[more.tier] >= _TIER_RANK[base.tier]

    @pytest.mark.parametrize("flag", [
        "mentions_direct_mcp_server",
        "session_used_local_mcp",
        "uses_routed_mcp_server",
    ])
    @pytest.mark.parametrize("prompt", [
        "what time is it?",
        "Should I compare the roadmap options for Acme and Globex this week and next week, "
        "then summarize the trade-offs and plan the rollout thoroughly?",
    ])
    def test_tool_signals_never_lower_tier(self, flag, prompt):
        base = compute_routing_score(prompt, ludicrous_enabled=True)
        more = compute_routing_score(prompt, ludicrous_enabled=True, **{flag: True})
        assert more.score >= base.score
        assert _TIER_RANK[more.tier] >= _TIER_RANK[base.tier]

    def test_keyword_estimate_grows_with_signals(self):
        assert score_tool_count("check my calendar").estimated_tools == 1
        assert score_tool_count("check my calendar and email").estimated_tools == 2
        assert score_tool_count("check my calendar and email, then update the project status").estimated_tools == 5


# ============================================================================
# Strategies
# ============================================================================

class TestStrategies:
    def test_trivial_prompt_is_mini(self):
        decision = compute_routing_score("what time is it?")
        assert decision.tier is Tier.MINI
        assert decision.score == 0.0

    def test_keyword_tool_estimate(self):
        score = score_tool_count("check my calendar and email")
        assert score.estimated_tools == 2
        assert score.matched_skill is None

    def test_skill_sources_drive_estimate(self):
        skills = [_Skill("Weekly Review", "Sources: ...")]
        score = score_tool_count("run my weekly review", skills, set(), _six_sources)
        assert score.matched_skill == "Weekly Review"
        assert score.estimated_tools == 6

    def test_complexity_signals(self):
        score = score_prompt_complexity("Should I compare the roadmap options, and summarize the trade-offs?")
        assert {"deliberation", "comparison", "synthesis", "planning"} <= set(score.signals)
        assert 0 < score.score <= 1.0


# ============================================================================
# Overrides
# ============================================================================

class TestOverrides:
    def test_complex_followup_promotes(self):
        trajectory = SessionTrajectory()
        for _ in range(3):
            trajectory.record(tool_count=5, successful_unique_tool_count=3, iterations=4, tier=Tier.POWER)
        decision = compute_routing_score("do the same for the others", trajectory)
        assert "complex_followup" in decision.signals
        assert decision.tier is Tier.POWER

    def test_failed_tools_do_not_make_turn_complex(self):
        trajectory = SessionTrajectory()
        outcome = trajectory.record(tool_count=4, successful_unique_tool_count=0, iterations=5)
        assert not outcome.complex

    def test_routed_mcp_promotes(self):
        decision = compute_routing_score("hi", uses_routed_mcp_server=True)
        assert decision.tier is Tier.POWER
        assert "routed_mcp" in decision.signals

    def test_skill_caps_at_power(self):
        prompt = ("run my weekly review: compare projects versus last week, should i reprioritize? "
                  "summarize and plan the roadmap thoroughly")
        decision = compute_routing_score(
            prompt,
            skill_entries=[_Skill("Weekly Review", "")],
            parse_sources=_six_sources,
            ludicrous_enabled=True,
            session_used_local_mcp=True,
        )
        assert decision.score > 0.9
        assert decision.tier is Tier.POWER
        assert "capped at power" in decision.reason

    def test_window_bounded(self):
        trajectory = SessionTrajectory()
        for i in range(10):
            trajectory.record(tool_count=i)
        assert len(trajectory.turns) == 8
        assert trajectory.last.tool_count == 9

    def test_to_dict(self):
        data = compute_routing_score("hello").to_dict()
        assert data["tier"] == "mini"
        assert set(data["breakdown"]) == {"tool_count", "prompt_complexity", "trajectory"}
