"""
Tests for the model catalog (models.yaml).
"""
import pytest

from cos_engine.model_catalog import (
    DEFAULT_COST_RATES,
    PROVIDERS,
    ModelCatalog,
    Tier,
    reload_catalog,
    validate_catalog,
)


@pytest.fixture
def catalog():
    reload_catalog()
    return ModelCatalog()


class TestTier:
    def test_escalation_steps(self):
        assert Tier.MINI.escalated() is Tier.POWER
        assert Tier.POWER.escalated() is Tier.LUDICROUS
        assert Tier.LUDICROUS.escalated() is Tier.LUDICROUS

    def test_parse(self):
        assert Tier.parse(" Power ") is Tier.POWER
        assert Tier.parse("turbo") is Tier.MINI
        assert Tier.parse(None, default=Tier.POWER) is Tier.POWER


class TestShippedCatalog:
    def test_validates(self):
        assert validate_catalog() == []

    def test_every_tier_covers_every_provider(self, catalog):
        for tier in Tier:
            for provider in PROVIDERS:
                assert catalog.model_for(provider, tier), (tier, provider)

    def test_failover_order(self, catalog):
        assert catalog.failover_chain(Tier.MINI) == ["anthropic", "openai", "gemini", "mistral"]

    def test_litellm_model(self, catalog):
        assert catalog.litellm_model("claude-sonnet-4-6") == "anthropic/claude-sonnet-4-6"
        assert catalog.litellm_model("gemini/gemini-2.5-flash") == "gemini/gemini-2.5-flash"


class TestInlineCatalog:
    DATA = {
        "tiers": {"mini": {"openai": "tiny"}},
        "failover_chains": {"mini": ["openai", "mistral"]},
        "models": {"tiny": {"provider": "openai", "cost": {"input": 1.0, "output": 4.0}}},
    }

    def test_cost_estimate(self):
        catalog = ModelCatalog(data=self.DATA)
        assert catalog.estimate_cost("tiny", 1_000_000, 500_000) == pytest.approx(3.0)

    def test_unknown_model_uses_default_rates(self):
        assert ModelCatalog(data=self.DATA).cost_rates("mystery") == DEFAULT_COST_RATES

    def test_missing_chain_falls_back_to_mini(self):
        assert ModelCatalog(data=self.DATA).failover_chain(Tier.POWER) == ["openai", "mistral"]

    def test_litellm_name_from_provider(self):
        assert ModelCatalog(data=self.DATA).litellm_model("tiny") == "openai/tiny"


def test_validate_reports_problems(tmp_path):
    path = tmp_path / "models.yaml"
    path.write_text("schema_version: 2\ntiers: {}\nfailover_chains: {}\nmodels: {}\n", encoding="utf-8")
    errors = validate_catalog(path)
    assert "Tier 'mini' missing provider mapping" in errors


def test_validate_missing_file(tmp_path):
    assert validate_catalog(tmp_path / "nope.yaml")[0].startswith("models.yaml not found")
