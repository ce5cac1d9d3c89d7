"""
Chief of Staff Test Suite — Shared Fixtures

Everything runs in-process against fakes: an in-memory graph host, a
settings store, a scripted approval UI and a scripted LLM gateway.
No network, no provider keys.
"""
import os
from dataclasses import dataclass

# Use litellm's bundled model cost map instead of fetching it over the network
# at import time (the fetch-failure warning deadlocks litellm's import under pytest).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest

from cos_engine.agent_loop import AgentLoop
from cos_engine.approval import ApprovalGate
from cos_engine.config import EngineConfig
from cos_engine.conversation import ConversationStore
from cos_engine.memory import MemoryManager
from cos_engine.native_tools import NativeTools
from cos_engine.prompts import PromptBuilder
from cos_engine.schema_pin import SchemaPinStore
from cos_engine.store import MemoryStore
from cos_engine.tool_registry import ToolRegistry
from cos_engine.usage import UsageTracker

from fakes import FakeClock, FakeGateway, FakeGraphHost, ScriptedApprovalUI


# ── Pytest Configuration ──────────────────────────────────────────────────────

def pytest_configure(config):
    config.addinivalue_line("markers", "scenario: end-to-end behaviour scenarios")


@pytest.fixture(autouse=True)
def _no_provider_env(monkeypatch):
    """Provider keys in the developer's shell must not leak into EngineConfig()."""
    for name in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "MISTRAL_API_KEY"):
        monkeypatch.delenv(name, raising=False)


# ── Ports ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def host() -> FakeGraphHost:
    return FakeGraphHost()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ui() -> ScriptedApprovalUI:
    return ScriptedApprovalUI()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(anthropic_api_key="sk-ant-test", llm_provider="anthropic")


# ── Agent stack ───────────────────────────────────────────────────────────────

@dataclass
class Stack:
    host: FakeGraphHost
    store: MemoryStore
    config: EngineConfig
    ui: ScriptedApprovalUI
    gateway: FakeGateway
    registry: ToolRegistry
    pins: SchemaPinStore
    usage: UsageTracker
    conversation: ConversationStore
    memory: MemoryManager
    gate: ApprovalGate
    prompts: PromptBuilder
    agent: AgentLoop


@pytest.fixture
def make_stack(host, store, config, ui):
    """Factory for a wired agent loop over fakes: ``make_stack([responses...])``."""

    def _make(script=None, with_natives: bool = True, **config_overrides) -> Stack:
        cfg = config.model_copy(update=config_overrides) if config_overrides else config
        gateway = FakeGateway(script)
        usage = UsageTracker(store, host)
        registry = ToolRegistry(record_stat=usage.record_stat)
        pins = SchemaPinStore(store)
        conversation = ConversationStore(store)
        memory = MemoryManager(host, record_stat=usage.record_stat)
        if with_natives:
            registry.register_many(NativeTools(host, protected_pages=memory.system_page_titles).tools())
        registry.register_many(memory.tools())
        gate = ApprovalGate(registry, pins, ui, store, record_stat=usage.record_stat)
        prompts = PromptBuilder(cfg, memory=memory, record_stat=usage.record_stat)
        agent = AgentLoop(cfg, gateway, registry, gate, prompts, conversation, usage, memory=memory,
                          clock=FakeClock())
        return Stack(host, store, cfg, ui, gateway, registry, pins, usage, conversation, memory, gate,
                     prompts, agent)

    return _make
