"""
Chief of Staff Engine — agent runtime core for an in-graph assistant.

Provides:
- Agent loop (tool iteration, guards, escalation, abort)
- Provider/tier router (litellm, failover, cooldowns)
- Approval and rate-limit gate
- Tool registry (native graph tools, Composio, local MCP with schema pinning)
- Scheduler (cron/interval/once with cross-tab leader election)
- Inbox watcher, memory and skill caches, usage tracking and audit log
"""

__version__ = "2.0.0"

from cos_engine.config import EngineConfig
from cos_engine.exceptions import (
    AgentBusyError,
    CapExceededError,
    EngineError,
    LLMError,
    RunAbortedError,
    SchedulerError,
)

__all__ = ["EngineConfig", "EngineError", "LLMError", "AgentBusyError", "RunAbortedError",
           "CapExceededError", "SchedulerError", "get_runtime", "set_runtime"]

# Global runtime instance (set by Runtime.start())
_runtime_instance = None


def get_runtime():
    """Get the active Runtime instance."""
    return _runtime_instance


def set_runtime(runtime):
    """Set the active Runtime instance."""
    global _runtime_instance
    _runtime_instance = runtime
