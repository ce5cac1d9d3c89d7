"""
Command surface — the named commands a host exposes in its command palette.

Each command is an async handler ``(runtime, arg) -> str``; the returned text is
what the host shows the user.  Engine errors are turned into short messages
here; full detail stays in the last run trace and the logs.

Usage:
    commands = CommandRegistry(runtime)
    print(commands.names())
    text = await commands.run("Show Cost Summary")
    text = await commands.run("Install Composio Tool", "gmail")
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from cos_engine.approval import ApprovalRequest
from cos_engine.exceptions import EngineError, ValidationError, user_facing_error_message
from cos_engine.security import redact_for_log

logger = logging.getLogger("cos.engine.commands")

CommandHandler = Callable[[Any, str], Awaitable[str]]

SNAPSHOT_MAX_CHARS = 4000


@dataclass
class Command:
    name: str
    description: str
    handler: CommandHandler
    needs_arg: bool = False


_COMMANDS: dict[str, Command] = {}


def command(name: str, description: str, needs_arg: bool = False):
    """Register a module-level command handler."""
    def decorator(fn: CommandHandler) -> CommandHandler:
        _COMMANDS[name] = Command(name=name, description=description, handler=fn, needs_arg=needs_arg)
        return fn
    return decorator


def _json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _clip(text: str, limit: int = SNAPSHOT_MAX_CHARS) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + f"\n… ({len(text) - limit} more chars)"


class CommandRegistry:
    """Binds the registered commands to one runtime."""

    def __init__(self, runtime: Any):
        self.runtime = runtime
        self._commands = dict(_COMMANDS)

    def names(self) -> list[str]:
        return list(self._commands)

    def get(self, name: str) -> Command | None:
        return self._commands.get(name)

    async def run(self, name: str, arg: str = "") -> str:
        cmd = self._commands.get(name)
        if cmd is None:
            return f"Unknown command: {name}"
        if cmd.needs_arg and not str(arg or "").strip():
            return f"{name} needs an argument."
        logger.info("Command: %s", name)
        try:
            return await cmd.handler(self.runtime, str(arg or "").strip())
        except EngineError as e:
            logger.warning("Command %s failed: %s", name, e)
            return user_facing_error_message(e, name)


# ── Chat ─────────────────────────────────────────────────────────


@command("Ask Chief of Staff", "Send a prompt to the assistant", needs_arg=True)
async def ask(runtime, arg: str) -> str:
    result = await runtime.ask(arg)
    return result.text


@command("Toggle Chat Panel", "Show or hide the chat panel")
async def toggle_panel(runtime, arg: str) -> str:
    runtime.panel_open = not runtime.panel_open
    return "Chat panel opened." if runtime.panel_open else "Chat panel closed."


@command("Clear Conversation Context", "Forget the rolling conversation")
async def clear_context(runtime, arg: str) -> str:
    runtime.agent.clear_context()
    return "Conversation context cleared."


@command("Show Last Run Trace", "Details of the most recent agent run")
async def show_last_trace(runtime, arg: str) -> str:
    trace = runtime.agent.last_trace
    if trace is None:
        return "No agent run yet."
    return _json(trace.to_dict())


@command("Debug Runtime Stats", "Gateway, registry, scheduler and inbox state")
async def debug_stats(runtime, arg: str) -> str:
    inbox = runtime.inbox
    return _json({
        "llm": runtime.gateway.get_stats(),
        "tools": len(runtime.registry.names()),
        "composio_connected": runtime.composio.connected,
        "local_mcp": runtime.local_mcp.stats(),
        "suspended_servers": runtime.pins.suspended_keys(),
        "scheduler_leader": runtime.scheduler.is_leader,
        "inbox": {
            "pending": inbox.pending_count,
            "queued": len(inbox.queued),
            "processing": len(inbox.processing),
        },
        "agent_running": runtime.agent.is_running,
        "dry_run": runtime.gate.dry_run_armed,
        "usage_today": runtime.usage.stats_for_today(),
    })


@command("Show Scheduled Jobs", "List scheduled jobs")
async def show_jobs(runtime, arg: str) -> str:
    listing = runtime.scheduler.list_jobs({})
    if not listing.get("jobs"):
        return "No scheduled jobs."
    return _json(listing)


# ── Composio ─────────────────────────────────────────────────────


@command("Connect Composio", "Open the Composio MCP session")
async def connect_composio(runtime, arg: str) -> str:
    if not runtime.composio.configured:
        return "Composio MCP URL is not configured."
    ok = await runtime.composio.connect()
    return "Composio connected." if ok else "Composio connection failed. See logs for details."


@command("Disconnect Composio", "Close the Composio MCP session")
async def disconnect_composio(runtime, arg: str) -> str:
    await runtime.composio.disconnect()
    return "Composio disconnected."


@command("Reconnect Composio", "Reopen the Composio MCP session")
async def reconnect_composio(runtime, arg: str) -> str:
    ok = await runtime.composio.reconnect()
    return "Composio reconnected." if ok else "Composio reconnect failed. See logs for details."


@command("Install Composio Tool", "Install a toolkit by slug", needs_arg=True)
async def install_tool(runtime, arg: str) -> str:
    outcome = await runtime.composio.install_tool(arg)
    lines = [f"{outcome.get('slug') or arg}: {outcome.get('state')}"]
    if outcome.get("message"):
        lines.append(outcome["message"])
    lines.extend(f"Authorise: {url}" for url in outcome.get("auth_urls") or [])
    return "\n".join(lines)


@command("Deregister Composio Tool", "Remove an installed toolkit", needs_arg=True)
async def deregister_tool(runtime, arg: str) -> str:
    removed = await runtime.composio.deregister_tool(arg)
    return f"Deregistered {arg}." if removed else f"Could not deregister {arg}."


@command("Test Composio Tool", "Check a toolkit's connection", needs_arg=True)
async def test_tool(runtime, arg: str) -> str:
    status = await runtime.composio.test_tool(arg)
    return f"{arg}: {status}"


@command("Refresh Tool Auth Status", "Promote toolkits whose auth completed")
async def refresh_auth(runtime, arg: str) -> str:
    activated = await runtime.composio.refresh_auth_status()
    return f"{activated} tool(s) now connected."


@command("Show Stored Tool Config", "Installed tools and integration settings (secrets redacted)")
async def show_tool_config(runtime, arg: str) -> str:
    config = runtime.config
    return _json(redact_for_log({
        "composio_mcp_url": config.composio_mcp_url,
        "composio_api_key": "set" if config.composio_api_key else "",
        "local_mcp_ports": config.local_mcp_ports,
        "installed_tools": runtime.composio.installed_tools(),
    }))


@command("Discover Toolkit Schemas", "Refresh cached schemas for connected toolkits")
async def discover_schemas(runtime, arg: str) -> str:
    if arg:
        entry = await runtime.composio.discover_toolkit(arg, force=True)
        return f"Discovered {arg}." if entry else f"No schemas found for {arg}."
    count = await runtime.composio.discover_all_connected(force=True)
    return f"Discovered schemas for {count} toolkit(s)."


@command("Show Schema Registry", "Cached toolkit schemas")
async def show_schema_registry(runtime, arg: str) -> str:
    toolkits = runtime.composio.schemas.toolkits()
    if not toolkits:
        return "Schema registry is empty."
    summary = {
        name: {"tools": sorted((entry.get("tools") or {}).keys()), "discovered_at": entry.get("discovered_at")}
        for name, entry in toolkits.items()
    }
    return _clip(_json(summary))


# ── Local MCP ────────────────────────────────────────────────────


@command("Connect Local MCP Servers", "Connect every configured local MCP port")
async def connect_local_mcp(runtime, arg: str) -> str:
    if not runtime.local_mcp.ports:
        return "No local MCP ports configured."
    count = await runtime.local_mcp.connect_all()
    return f"Connected {count} of {len(runtime.local_mcp.ports)} local MCP server(s)."


@command("Review Suspended MCP Servers", "Accept or reject changed server schemas")
async def review_suspended(runtime, arg: str) -> str:
    suspended = runtime.pins.suspended_servers()
    if not suspended:
        return "No suspended MCP servers."
    if runtime.ui is None:
        return "\n".join(f"{s.server_key}: {s.summary}" for s in suspended)
    lines = []
    for suspension in suspended:
        label = suspension.server_name or suspension.server_key
        decision = await runtime.ui.request_approval(ApprovalRequest(
            tool_name=f"Accept schema change for {label}",
            args_preview=suspension.summary,
            target=suspension.server_key,
        ))
        kind, _, ident = suspension.server_key.partition(":")
        if kind == "composio":
            if decision.approved:
                await runtime.composio.accept_suspended(ident)
            else:
                runtime.composio.reject_suspended(ident)
        elif kind == "local" and ident.isdigit():
            if decision.approved:
                await runtime.local_mcp.accept_suspended(int(ident))
            else:
                runtime.local_mcp.reject_suspended(int(ident))
        else:
            runtime.pins.unsuspend(suspension.server_key, accept=decision.approved)
        lines.append(f"{label}: {'accepted' if decision.approved else 'rejected'}")
    return "\n".join(lines)


# ── Memory & skills ──────────────────────────────────────────────


@command("Bootstrap Memory Pages", "Create the memory pages")
async def bootstrap_memory(runtime, arg: str) -> str:
    created = await runtime.memory.bootstrap_memory_pages()
    return f"Created {created} memory page(s)." if created else "Memory pages already exist."


@command("Bootstrap Skills Page", "Create the skills page with starter skills")
async def bootstrap_skills(runtime, arg: str) -> str:
    created = await runtime.memory.bootstrap_skills_page()
    return "Skills page created." if created else "Skills page already exists."


@command("Show Memory Snapshot", "Memory as the assistant sees it")
async def show_memory(runtime, arg: str) -> str:
    content = await runtime.memory.memory_content(force=True)
    return _clip(content) or "Memory is empty."


@command("Show Skills Snapshot", "Skills index as the assistant sees it")
async def show_skills(runtime, arg: str) -> str:
    index = await runtime.memory.skills_index(force=True)
    return _clip(index) or "No skills found."


@command("Refresh Skills Cache", "Re-read the skills page")
async def refresh_skills(runtime, arg: str) -> str:
    runtime.memory.invalidate_skills()
    entries = await runtime.memory.skill_entries(force=True)
    return f"Loaded {len(entries)} skill(s)."


# ── Usage & safety ───────────────────────────────────────────────


@command("Show Cost Summary", "Spend today, this week and this month")
async def show_cost(runtime, arg: str) -> str:
    summary = runtime.usage.cost_summary()
    cap = runtime.config.daily_spending_cap
    lines = [
        f"Today: ${summary['today'].get('cost', 0.0):.4f}" + (f" of ${cap:.2f} cap" if cap is not None else ""),
        f"Last 7 days: ${summary['week']['cost']:.4f}",
        f"Last 30 days: ${summary['month']['cost']:.4f}",
        f"Session: {summary['session']['requests']} request(s), ${summary['session']['cost']:.4f}",
    ]
    models = summary["today"].get("models") or {}
    for model, entry in sorted(models.items()):
        lines.append(f"  {model}: ${entry.get('cost', 0.0):.4f}")
    return "\n".join(lines)


@command("Reset Token Usage Stats", "Clear cost history and usage counters")
async def reset_usage(runtime, arg: str) -> str:
    runtime.usage.reset_stats()
    return "Token usage stats reset."


@command("Toggle Dry Run", "Simulate the next mutating tool call")
async def toggle_dry_run(runtime, arg: str) -> str:
    armed = not runtime.gate.dry_run_armed
    runtime.gate.arm_dry_run(armed)
    return "Dry run armed: the next mutating call will be simulated." if armed else "Dry run disarmed."


@command("Run Onboarding", "Create pages and connect configured integrations")
async def run_onboarding(runtime, arg: str) -> str:
    steps = []
    provider = runtime.config.llm_provider
    if not runtime.config.api_key_for(provider):
        raise ValidationError(f"No API key set for {provider}. Add one in settings, then run onboarding again.")
    steps.append(f"LLM provider: {provider}")
    steps.append(await bootstrap_memory(runtime, ""))
    steps.append(await bootstrap_skills(runtime, ""))
    if runtime.composio.configured:
        steps.append(await connect_composio(runtime, ""))
    if runtime.local_mcp.ports:
        steps.append(await connect_local_mcp(runtime, ""))
    return "\n".join(steps)
