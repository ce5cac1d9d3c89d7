"""
Prometheus metrics for the Chief of Staff engine.

All counters, histograms, and gauges follow Prometheus naming conventions.
The host decides whether to expose them; ``start_metrics_server`` is a
convenience for standalone runs.

Usage:
    from cos_engine.metrics import METRICS

    METRICS.tool_calls_total.labels(tool="roam_search", outcome="ok").inc()
"""
import os
import sys

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
)


# ---------------------------------------------------------------------------
# Custom registry (allows testing without global state pollution)
# ---------------------------------------------------------------------------

registry = REGISTRY


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

class CosMetrics:
    """All engine metrics in one place."""

    def __init__(self, reg: CollectorRegistry = registry):
        # -- System info --
        self.build_info = Info(
            "cos_build",
            "Chief of Staff engine build information",
            registry=reg,
        )

        # -- Agent runs --
        self.agent_runs_total = Counter(
            "cos_agent_runs_total",
            "Agent runs by terminal outcome",
            ["outcome"],
            registry=reg,
        )

        self.agent_run_duration = Histogram(
            "cos_agent_run_duration_seconds",
            "Wall-clock duration of an agent run",
            buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
            registry=reg,
        )

        self.agent_iterations = Histogram(
            "cos_agent_iterations",
            "LLM iterations per agent run",
            buckets=[1, 2, 3, 4, 5, 6, 8, 10],
            registry=reg,
        )

        self.tier_escalations_total = Counter(
            "cos_tier_escalations_total",
            "Mid-run tier escalations",
            ["from_tier", "to_tier"],
            registry=reg,
        )

        # -- LLM metrics --
        self.llm_request_total = Counter(
            "cos_llm_requests_total",
            "Total LLM API calls",
            ["provider", "model", "status"],
            registry=reg,
        )

        self.llm_request_duration = Histogram(
            "cos_llm_request_duration_seconds",
            "LLM request duration",
            ["provider"],
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            registry=reg,
        )

        self.llm_tokens_input = Counter(
            "cos_llm_tokens_input_total",
            "Total input tokens sent to LLM",
            ["model"],
            registry=reg,
        )

        self.llm_tokens_output = Counter(
            "cos_llm_tokens_output_total",
            "Total output tokens received from LLM",
            ["model"],
            registry=reg,
        )

        self.llm_cost_usd = Counter(
            "cos_llm_cost_usd_total",
            "Estimated LLM spend in USD",
            ["model"],
            registry=reg,
        )

        self.provider_cooldowns_total = Counter(
            "cos_provider_cooldowns_total",
            "Providers placed on failover cooldown",
            ["provider"],
            registry=reg,
        )

        # -- Tools / gate --
        self.tool_calls_total = Counter(
            "cos_tool_calls_total",
            "Tool dispatches by outcome",
            ["tool", "outcome"],
            registry=reg,
        )

        self.approvals_total = Counter(
            "cos_approvals_total",
            "Approval gate decisions",
            ["decision", "reason"],
            registry=reg,
        )

        self.guard_fires_total = Counter(
            "cos_guard_fires_total",
            "Hallucination, exfiltration and injection guard fires",
            ["guard"],
            registry=reg,
        )

        self.suspended_mcp_servers = Gauge(
            "cos_suspended_mcp_servers",
            "MCP servers awaiting schema review",
            registry=reg,
        )

        # -- Scheduler / inbox --
        self.scheduler_fires_total = Counter(
            "cos_scheduler_fires_total",
            "Scheduled job fires",
            ["job_type", "status"],
            registry=reg,
        )

        self.scheduler_is_leader = Gauge(
            "cos_scheduler_is_leader",
            "1 when this runtime holds the scheduler lease",
            registry=reg,
        )

        self.inbox_queue_depth = Gauge(
            "cos_inbox_queue_depth",
            "Inbox items pending or in flight",
            registry=reg,
        )

        self.inbox_processed_total = Counter(
            "cos_inbox_processed_total",
            "Inbox items processed",
            ["status"],
            registry=reg,
        )

        # -- Error metrics --
        self.errors_total = Counter(
            "cos_errors_total",
            "Total errors by type",
            ["error_type", "component"],
            registry=reg,
        )


# Singleton
METRICS = CosMetrics()


# ---------------------------------------------------------------------------
# Metrics server
# ---------------------------------------------------------------------------

async def start_metrics_server(port: int = 8081) -> None:
    """Start the Prometheus metrics HTTP server on a dedicated port."""
    start_http_server(port, registry=registry)

    METRICS.build_info.info({
        "version": os.getenv("COS_VERSION", "2.0.0"),
        "python": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "engine": "cos_engine",
    })
