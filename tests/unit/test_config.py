"""
Unit tests for cos_engine.config and cos_engine.exceptions.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from cos_engine.config import EngineConfig
from cos_engine.exceptions import (
    CapExceededError,
    ProviderTransientError,
    RunAbortedError,
    ValidationError,
    user_facing_error_message,
)
from cos_engine.store import MemoryStore, SettingsKeys


class TestEngineConfig:
    """Tests for EngineConfig validation and store overlay."""

    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.llm_provider == "anthropic"
        assert cfg.max_iterations == 10
        assert cfg.local_mcp_ports == []
        assert cfg.daily_spending_cap is None

    def test_provider_normalised(self):
        assert EngineConfig(llm_provider=" OpenAI ").llm_provider == "openai"

    def test_unknown_provider_rejected(self):
        with pytest.raises(PydanticValidationError):
            EngineConfig(llm_provider="cohere")

    def test_negative_cap_rejected(self):
        with pytest.raises(PydanticValidationError):
            EngineConfig(daily_spending_cap=-1)

    def test_bad_port_rejected(self):
        with pytest.raises(PydanticValidationError):
            EngineConfig(local_mcp_ports=[70000])

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("COS_ASSISTANT_NAME", "Jeeves")
        assert EngineConfig().assistant_name == "Jeeves"

    def test_api_key_strips_non_printable(self):
        cfg = EngineConfig(openai_api_key="sk-abc\n\u200b123 ")
        assert cfg.api_key_for("openai") == "sk-abc123 "

    def test_from_store_overlays_settings(self):
        store = MemoryStore({
            SettingsKeys.LLM_PROVIDER: "gemini",
            SettingsKeys.GEMINI_API_KEY: "g-key",
            SettingsKeys.LOCAL_MCP_PORTS: [8001, 8002],
            SettingsKeys.DAILY_SPENDING_CAP: 2.5,
            SettingsKeys.USER_NAME: "",
        })
        cfg = EngineConfig.from_store(store, timezone="Europe/Paris")
        assert cfg.llm_provider == "gemini"
        assert cfg.api_key_for("gemini") == "g-key"
        assert cfg.local_mcp_ports == [8001, 8002]
        assert cfg.daily_spending_cap == 2.5
        assert cfg.user_name == ""
        assert cfg.timezone == "Europe/Paris"


class TestUserFacingErrorMessage:
    def test_aborted(self):
        assert user_facing_error_message(RunAbortedError("x"), "Chat") == "Chat was cancelled."

    def test_rate_limit(self):
        err = ProviderTransientError("too many", provider="openai", status=429)
        assert "hit provider rate limits" in user_facing_error_message(err)

    def test_long_message_clipped(self):
        out = user_facing_error_message(ValidationError("x" * 300))
        assert out.startswith("Request failed: ")
        assert out.endswith("…")
        assert len(out) == len("Request failed: ") + 181

    def test_plain_message(self):
        assert user_facing_error_message(ValidationError("bad uid")) == "bad uid"

    def test_empty_message(self):
        assert user_facing_error_message(ValidationError("")) == "Request failed due to an unknown error."

    def test_cap_message(self):
        err = CapExceededError(cap=1.0, spent=1.25)
        assert "$1.25 of $1.00" in str(err)
