"""Engine-specific exceptions."""


class EngineError(Exception):
    """Base exception for cos_engine."""
    pass


class LLMError(EngineError):
    """LLM gateway errors (provider unavailable, timeout, etc.)."""

    def __init__(self, message: str, provider: str = "", status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class ProviderTransientError(LLMError):
    """Rate limit, 5xx, timeout or overload. Eligible for retry and failover."""
    pass


class ProviderPermanentError(LLMError):
    """Bad request, auth failure or other non-retryable provider error."""
    pass


class AgentError(EngineError):
    """Agent loop errors."""
    pass


class AgentBusyError(AgentError):
    """Another agent run holds the single-flight lock."""
    pass


class RunAbortedError(AgentError):
    """The user aborted the active run."""
    pass


class IterationCapError(AgentError):
    """The run hit the iteration cap without producing a final answer."""
    pass


class CapExceededError(EngineError):
    """Daily spending cap reached."""

    def __init__(self, cap: float, spent: float):
        super().__init__(
            f"Daily spending cap reached (${spent:.2f} of ${cap:.2f}). "
            "Raise the cap in settings or try again tomorrow."
        )
        self.cap = cap
        self.spent = spent


class SchedulerError(EngineError):
    """Scheduler errors (job validation, leader election)."""
    pass


class ToolError(EngineError):
    """Tool calling errors."""
    pass


class ApprovalDeniedError(ToolError):
    """The user (or a gate rule) refused a tool call."""

    def __init__(self, tool_name: str, reason: str = "user-denied"):
        super().__init__(f"{tool_name}: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class SupplyChainSuspendedError(ToolError):
    """The tool's MCP server changed its schema and awaits review."""

    def __init__(self, server_key: str, summary: str = ""):
        super().__init__(f"MCP server {server_key} is suspended pending schema review ({summary})")
        self.server_key = server_key
        self.summary = summary


class McpError(EngineError):
    """MCP transport and session errors."""
    pass


class ValidationError(EngineError):
    """Invalid tool arguments. The message is returned to the model verbatim."""
    pass


def user_facing_error_message(error: BaseException, context: str = "Request") -> str:
    """Short message for the user; full detail stays in the run trace."""
    if isinstance(error, RunAbortedError):
        return f"{context} was cancelled."
    raw = str(error or "").strip()
    if isinstance(error, ProviderTransientError) and (error.status == 429 or "rate limit" in raw.lower()):
        return f"{context} hit provider rate limits. Wait ~60s, or switch LLM provider in settings and retry."
    if len(raw) > 200:
        return f"{context} failed: {raw[:180]}…"
    if raw:
        return raw
    return f"{context} failed due to an unknown error."
