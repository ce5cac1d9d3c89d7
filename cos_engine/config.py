"""Engine configuration — environment, settings store and fixed limits."""

from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cos_engine.store import KeyValueStore, SettingsKeys

VALID_LLM_PROVIDERS = ("anthropic", "openai", "gemini", "mistral")

# ── Agent loop limits ────────────────────────────────────────────────────────
MAX_AGENT_ITERATIONS = 10
MAX_TOOL_RESULT_CHARS = 12000
MAX_AGENT_MESSAGES_CHAR_BUDGET = 50000
MIN_AGENT_MESSAGES_TO_KEEP = 6
FOREGROUND_LOCK_WAIT_SECONDS = 2.0

# ── Conversation ─────────────────────────────────────────────────────────────
MAX_CONVERSATION_TURNS = 12
MAX_CONTEXT_USER_CHARS = 500
MAX_CONTEXT_ASSISTANT_CHARS = 2000
CONVERSATION_PERSIST_DEBOUNCE_SECONDS = 3.0

# ── Gate ─────────────────────────────────────────────────────────────────────
MAX_TOOL_CALLS_PER_RESPONSE = 4
MAX_CALLS_PER_TOOL_PER_RUN = 5

# ── Streaming ────────────────────────────────────────────────────────────────
STREAM_TEXT_SOFT_CAP = 120_000
STREAM_TOOL_ARGS_CAP = 32_768
STREAM_MAX_TOOL_INDEX = 64
STREAM_TOTAL_TIMEOUT_SECONDS = 300.0

# ── Output tokens ────────────────────────────────────────────────────────────
STANDARD_MAX_OUTPUT_TOKENS = 2500
SKILL_MAX_OUTPUT_TOKENS = 4096
LUDICROUS_MAX_OUTPUT_TOKENS = 8192

# ── Memory / skills ──────────────────────────────────────────────────────────
MEMORY_MAX_CHARS_PER_PAGE = 3000
MEMORY_TOTAL_MAX_CHARS = 8000
MEMORY_CACHE_TTL_SECONDS = 300.0
SKILLS_MAX_CHARS = 5000
SKILLS_INDEX_MAX_CHARS = 1400
CACHE_INVALIDATE_DEBOUNCE_SECONDS = 0.5

# ── Inbox ────────────────────────────────────────────────────────────────────
INBOX_EVENT_DEBOUNCE_SECONDS = 5.0
INBOX_MAX_ITEMS_PER_SCAN = 8
INBOX_MAX_PENDING_ITEMS = 40
INBOX_FULL_SCAN_COOLDOWN_SECONDS = 60.0
INBOX_CATCHUP_DELAY_SECONDS = 0.25

# ── Scheduler ────────────────────────────────────────────────────────────────
CRON_TICK_INTERVAL_SECONDS = 60.0
CRON_INITIAL_TICK_DELAY_SECONDS = 5.0
CRON_INITIAL_TICK_JITTER_SECONDS = 5.0
CRON_HEARTBEAT_INTERVAL_SECONDS = 30.0
CRON_LEADER_STALE_SECONDS = 90.0
CRON_MAX_JOBS = 20
CRON_MIN_INTERVAL_MINUTES = 5

# ── Usage ────────────────────────────────────────────────────────────────────
COST_HISTORY_MAX_DAYS = 90
USAGE_STATS_MAX_DAYS = 90
USAGE_PERSIST_DEBOUNCE_SECONDS = 3.0

# ── Composio / local MCP ─────────────────────────────────────────────────────
TOOLKIT_SCHEMA_REGISTRY_TTL_SECONDS = 7 * 24 * 3600
TOOLKIT_SCHEMA_MAX_TOOLKITS = 30
TOOLKIT_SCHEMA_MAX_PROMPT_CHARS = 8000
COMPOSIO_TOOLKIT_CATALOG_CACHE_TTL_SECONDS = 24 * 3600
COMPOSIO_TOOLKIT_CATALOG_MAX_SLUGS = 1000
COMPOSIO_TOOLKIT_SEARCH_BFS_MAX_NODES = 300
COMPOSIO_INSTALLED_TOOLS_BFS_MAX_NODES = 400
COMPOSIO_SAFE_SLUG_MAX = 200
LOCAL_MCP_DIRECT_TOOL_THRESHOLD = 15
LOCAL_MCP_CONNECT_TIMEOUT_SECONDS = 10.0
LOCAL_MCP_LIST_TOOLS_TIMEOUT_SECONDS = 5.0
LOCAL_MCP_INITIAL_BACKOFF_SECONDS = 2.0
LOCAL_MCP_MAX_BACKOFF_SECONDS = 60.0
LOCAL_MCP_AUTO_CONNECT_RETRIES = 5


class EngineConfig(BaseSettings):
    """Runtime configuration for the Chief of Staff engine (validated via Pydantic)."""

    model_config = SettingsConfigDict(env_prefix="COS_", extra="ignore", populate_by_name=True)

    # Identity
    assistant_name: str = "Chief of Staff"
    user_name: str = ""

    # LLM
    llm_provider: str = "anthropic"
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    mistral_api_key: str = Field(default="", alias="MISTRAL_API_KEY")
    max_output_tokens: int = STANDARD_MAX_OUTPUT_TOKENS
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 0.7
    llm_response_timeout: float = 90.0
    llm_stream_chunk_timeout: float = 60.0
    provider_cooldown_seconds: float = 60.0
    ludicrous_enabled: bool = False
    pii_scrub_enabled: bool = True

    # Agent
    max_iterations: int = MAX_AGENT_ITERATIONS
    max_tool_calls_per_response: int = MAX_TOOL_CALLS_PER_RESPONSE
    max_calls_per_tool: int = MAX_CALLS_PER_TOOL_PER_RUN
    dry_run: bool = False

    # Spending / audit
    daily_spending_cap: float | None = None
    audit_log_retention_days: int | None = None

    # Integrations
    composio_mcp_url: str = ""
    composio_api_key: str = ""
    local_mcp_ports: list[int] = Field(default_factory=list)

    # Paths
    models_yaml_path: str = str(Path(__file__).parent / "models.yaml")

    timezone: str = "UTC"
    debug: bool = False

    @field_validator("llm_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"llm_provider must be one of {VALID_LLM_PROVIDERS}, got {v!r}")
        return v

    @field_validator("daily_spending_cap")
    @classmethod
    def validate_cap(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError(f"daily_spending_cap must be >= 0, got {v}")
        return v

    @field_validator("audit_log_retention_days")
    @classmethod
    def validate_retention(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError(f"audit_log_retention_days must be >= 0, got {v}")
        return v

    @field_validator("max_iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        if v < 1 or v > 50:
            raise ValueError(f"max_iterations must be 1-50, got {v}")
        return v

    @field_validator("local_mcp_ports")
    @classmethod
    def validate_ports(cls, v: list[int]) -> list[int]:
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid local MCP port: {port}")
        return v

    def api_key_for(self, provider: str) -> str:
        """Return the API key for ``provider`` with non-printable characters stripped."""
        raw = getattr(self, f"{provider}_api_key", "") or ""
        return "".join(ch for ch in raw if 0x20 <= ord(ch) <= 0x7E)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables."""
        return cls()

    @classmethod
    def from_store(cls, store: KeyValueStore, **overrides: Any) -> "EngineConfig":
        """Overlay user settings persisted in ``store`` on top of the environment."""
        mapping = {
            SettingsKeys.LLM_PROVIDER: "llm_provider",
            SettingsKeys.ASSISTANT_NAME: "assistant_name",
            SettingsKeys.USER_NAME: "user_name",
            SettingsKeys.ANTHROPIC_API_KEY: "anthropic_api_key",
            SettingsKeys.OPENAI_API_KEY: "openai_api_key",
            SettingsKeys.GEMINI_API_KEY: "gemini_api_key",
            SettingsKeys.MISTRAL_API_KEY: "mistral_api_key",
            SettingsKeys.COMPOSIO_MCP_URL: "composio_mcp_url",
            SettingsKeys.COMPOSIO_API_KEY: "composio_api_key",
            SettingsKeys.LOCAL_MCP_PORTS: "local_mcp_ports",
            SettingsKeys.DEBUG_LOGGING: "debug",
            SettingsKeys.DRY_RUN_MODE: "dry_run",
            SettingsKeys.PII_SCRUB_ENABLED: "pii_scrub_enabled",
            SettingsKeys.LUDICROUS_ENABLED: "ludicrous_enabled",
            SettingsKeys.DAILY_SPENDING_CAP: "daily_spending_cap",
            SettingsKeys.AUDIT_LOG_RETENTION_DAYS: "audit_log_retention_days",
            SettingsKeys.TIMEZONE: "timezone",
        }
        values: dict[str, Any] = {}
        for key, field_name in mapping.items():
            stored = store.get(key)
            if stored is None or stored == "":
                continue
            values[field_name] = stored
        values.update(overrides)
        return cls(**values)
