"""
Chief of Staff Runtime — one assistant instance ("tab").

Collects every piece of per-tab state into one object and owns the
start/teardown order.

Boot sequence:
  Phase 1: Settings and persisted state (config, usage, conversation)
  Phase 2: Tool surface (native, memory, scheduler tools)
  Phase 3: Integrations (Composio, local MCP servers)
  Phase 4: Watches (memory/skills pages, inbox)
  Phase 5: Scheduler (leader election, cron tick)

Several runtimes may share one store through ``SharedStorage`` views; only the
leader tab fires scheduled jobs.

Usage:
  runtime = Runtime(host, store, ui=approval_ui, notify=toast)
  await runtime.start()
  result = await runtime.ask("what's on my calendar today?")
  await runtime.teardown()
"""
import asyncio
import logging
from typing import Any, Callable

from cos_engine.agent_loop import AgentLoop, AgentResult, RunOptions
from cos_engine.approval import ApprovalGate, ApprovalUI
from cos_engine.composio import ComposioClient
from cos_engine.config import EngineConfig
from cos_engine.conversation import ConversationStore
from cos_engine.host import GraphHost, page_uid_for_block
from cos_engine.inbox import InboxWatcher
from cos_engine.llm_gateway import LLMGateway
from cos_engine.logging_config import configure_logging
from cos_engine.mcp_client import LocalMcpManager, SessionOpener
from cos_engine.memory import MemoryManager
from cos_engine.native_tools import NativeTools
from cos_engine.prompts import PromptBuilder
from cos_engine.routing import SessionTrajectory
from cos_engine.scheduler import CronScheduler, ScheduledJob, format_job_response
from cos_engine.schema_pin import SchemaPinStore, SuspendedServer
from cos_engine.store import KeyValueStore
from cos_engine.tool_registry import ToolRegistry
from cos_engine.tracing import configure_tracing
from cos_engine.usage import UsageTracker

logger = logging.getLogger("cos.engine.runtime")

Notifier = Callable[[str, str], None]


class Runtime:
    """Wires the engine components for one tab and manages their lifetime."""

    def __init__(
        self,
        host: GraphHost,
        store: KeyValueStore,
        config: EngineConfig | None = None,
        ui: ApprovalUI | None = None,
        notify: Notifier | None = None,
        gateway: LLMGateway | None = None,
        composio_opener: SessionOpener | None = None,
        mcp_opener: SessionOpener | None = None,
    ):
        self.host = host
        self.store = store
        self.config = config or EngineConfig.from_store(store)
        self.ui = ui
        self._notify = notify
        self._shutdown_event = asyncio.Event()
        self._background: set[asyncio.Task] = set()
        self.started = False
        self.panel_open = False

        # Guard and injection stats land on this runtime's tracker only.
        self.usage = UsageTracker(store, host)
        record_stat = self.usage.record_stat
        self.registry = ToolRegistry(record_stat=record_stat)
        self.pins = SchemaPinStore(store, on_change=self._on_suspension_change)
        self.conversation = ConversationStore(store)
        self.memory = MemoryManager(host, record_stat=record_stat)
        self.natives = NativeTools(host, protected_pages=self.memory.system_page_titles,
                                   timezone=self.config.timezone)
        self.composio = ComposioClient(self.config, store, self.registry, self.pins, opener=composio_opener,
                                      record_stat=record_stat)
        self.local_mcp = LocalMcpManager(self.registry, self.pins, ports=self.config.local_mcp_ports,
                                         opener=mcp_opener)
        self.scheduler = CronScheduler(
            store,
            run_job=self._run_scheduled_job,
            is_busy=self._agent_busy,
            default_timezone=self.config.timezone,
            record_stat=record_stat,
        )
        self.prompts = PromptBuilder(
            self.config,
            memory=self.memory,
            toolkit_section=self.composio.build_prompt_section,
            known_toolkits=self.composio.installed_toolkits,
            local_mcp_servers=lambda: self.local_mcp.connected_servers,
            cron_section=self.scheduler.build_cron_jobs_prompt_section,
            record_stat=record_stat,
        )
        self.gateway = gateway or LLMGateway(self.config)
        self.gate = ApprovalGate(
            self.registry,
            self.pins,
            ui,
            store,
            unknown_composio_slugs=self.composio.schemas.unknown_slugs,
            page_uid_for=lambda uid: page_uid_for_block(host, uid),
            record_stat=record_stat,
            max_calls_per_response=self.config.max_tool_calls_per_response,
            max_calls_per_tool=self.config.max_calls_per_tool,
        )
        self.agent = AgentLoop(
            self.config,
            self.gateway,
            self.registry,
            self.gate,
            self.prompts,
            self.conversation,
            self.usage,
            memory=self.memory,
            trajectory=SessionTrajectory(),
        )
        self.inbox = InboxWatcher(
            host,
            ask=lambda prompt, options: self.agent.run(prompt, options, background=True),
            make_options=lambda: RunOptions(
                read_only_tools=True,
                offer_write_to_daily_page=False,
                suppress_toasts=True,
                source="inbox",
            ),
            clear_context=self.agent.clear_context,
            on_enqueue=self.memory.invalidate_memory,
            notify=self.notify,
        )
        self.registry.on_local_mcp_used = self._mark_local_mcp_used

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Boot sequence. Integration failures are logged, never fatal."""
        if self.started:
            return
        logger.info("🚀 %s runtime starting...", self.config.assistant_name)

        # Phase 1: Settings and persisted state
        self.usage.load()
        self.conversation.load()
        sanitised = self.conversation.sanitise_poisoned_turns()
        if self.config.dry_run and not self.gate.dry_run_armed:
            self.gate.arm_dry_run(True)
        logger.info("✅ Phase 1: State loaded (%d turns, %d sanitised)", len(self.conversation.turns), sanitised)

        # Phase 2: Tool surface
        count = self.register_builtin_tools()
        logger.info("✅ Phase 2: %d built-in tools registered", count)

        # Phase 3: Integrations (background; the first run does not wait on them)
        if self.composio.configured:
            self._spawn(self._connect_composio())
        if self.local_mcp.ports:
            self._spawn(self.local_mcp.auto_connect())
        logger.info("✅ Phase 3: Integrations connecting")

        # Phase 4: Watches
        await self.inbox.prime_static_uids()
        self.memory.watch()
        self.inbox.watch()
        logger.info("✅ Phase 4: Page watches registered")

        # Phase 5: Scheduler
        self.scheduler.start()
        logger.info("✅ Phase 5: Scheduler started (leader=%s)", self.scheduler.is_leader)

        from cos_engine import set_runtime
        set_runtime(self)
        self.started = True
        logger.info("🟢 Runtime ready — %d tools", len(self.registry.names()))

    async def serve(self) -> None:
        """Start, then block until ``request_shutdown()``."""
        configure_logging(logging.DEBUG if self.config.debug else logging.INFO)
        configure_tracing()
        await self.start()
        await self._shutdown_event.wait()
        await self.teardown()

    def request_shutdown(self) -> None:
        """Signal ``serve()`` to tear down."""
        self._shutdown_event.set()

    async def teardown(self) -> None:
        """Graceful shutdown: stop triggers, abort the active run, flush state."""
        logger.info("Runtime teardown...")
        self.scheduler.stop()
        await self.inbox.cleanup_inbox()
        self.memory.unwatch()
        self.agent.abort()

        tasks = [t for t in self._background if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

        try:
            await self.composio.disconnect()
        except Exception as e:
            logger.warning("Composio disconnect failed: %s", e)
        try:
            await self.local_mcp.disconnect_all()
        except Exception as e:
            logger.warning("Local MCP disconnect failed: %s", e)

        self.conversation.flush()
        self.usage.flush()
        await self.usage.close()

        from cos_engine import get_runtime, set_runtime
        if get_runtime() is self:
            set_runtime(None)
        self.started = False
        logger.info("🔴 Runtime stopped")

    # ── Entry points ─────────────────────────────────────────────

    async def ask(self, prompt: str, options: RunOptions | None = None) -> AgentResult:
        """Chat send: aborts any active run first."""
        return await self.agent.ask_foreground(prompt, options)

    def register_builtin_tools(self) -> int:
        count = self.registry.register_many(self.natives.tools())
        count += self.registry.register_many(self.memory.tools())
        count += self.registry.register_many(self.scheduler.tools())
        return count

    # ── Callbacks ────────────────────────────────────────────────

    def notify(self, title: str, message: str) -> None:
        if self._notify is None:
            logger.debug("Toast suppressed (no notifier): %s — %s", title, message)
            return
        try:
            self._notify(title, message)
        except Exception as e:
            logger.debug("Notifier failed: %s", e)

    def _agent_busy(self) -> bool:
        return self.agent.foreground_active or self.agent.is_running

    async def _run_scheduled_job(self, job: ScheduledJob) -> AgentResult:
        result = await self.agent.run(
            job.prompt,
            RunOptions(suppress_toasts=True, source="cron"),
            background=True,
        )
        self.notify(f"Scheduled: {job.name}", format_job_response(job, result.text)[:300])
        return result

    def _mark_local_mcp_used(self) -> None:
        self.conversation.session_used_local_mcp = True

    def _on_suspension_change(self, suspension: SuspendedServer) -> None:
        label = suspension.server_name or suspension.server_key
        self.notify("MCP server suspended", f"{label}: {suspension.summary or 'tool schema changed'}. "
                                            "Review it with 'Review Suspended MCP Servers'.")

    async def _connect_composio(self) -> None:
        if await self.composio.connect():
            await self.composio.discover_all_connected()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Background startup task failed: %s", error)
