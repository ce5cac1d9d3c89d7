"""
Approval & rate-limit gate.

Every tool dispatch goes through ``ApprovalGate.approve``.  Rules, in order:

1. Suspended MCP server             → deny ``supply-chain-suspended``
2. Dry run armed (mutating call)    → simulate once, then disarm
3. Read-only run and mutating call  → deny ``readonly-mode``
4. >4 calls in one LLM response, or >5 calls to one tool in a run → deny ``rate-limit``
5. Unknown Composio slugs           → one approval per slug set per run
6. Non-mutating                     → allow
7. Target already approved this run → auto-approve
8. Otherwise                        → ask the ApprovalUI and remember the grant for this run

Approvals live on the ``RunApprovals`` object and die with the run.
"""
import inspect
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from cos_engine.config import MAX_CALLS_PER_TOOL_PER_RUN, MAX_TOOL_CALLS_PER_RESPONSE
from cos_engine.metrics import METRICS
from cos_engine.parse_utils import safe_json_stringify
from cos_engine.schema_pin import SchemaPinStore
from cos_engine.security import redact_for_log
from cos_engine.store import KeyValueStore, SettingsKeys
from cos_engine.tool_registry import COMPOSIO_MULTI_EXECUTE, LOCAL_MCP_EXECUTE, READ_ONLY_TOOL_ALLOWLIST, ToolRegistry

logger = logging.getLogger("cos.engine.approval")

# Block-creation tools approve once per destination page.
SCOPED_PAGE_APPROVAL_TOOLS = frozenset({"roam_create_block", "roam_create_blocks", "roam_batch_write"})
UNKNOWN_SLUGS_APPROVAL_NAME = f"{COMPOSIO_MULTI_EXECUTE} (unknown slugs)"
ARGS_PREVIEW_CHARS = 600


class GateReason(str, Enum):
    SUSPENDED = "supply-chain-suspended"
    DRY_RUN = "dry-run"
    READONLY = "readonly-mode"
    RATE_LIMIT = "rate-limit"
    NOT_MUTATING = "not-mutating"
    AUTO_APPROVED = "same-target"
    USER_APPROVED = "user-approved"
    USER_DENIED = "user-denied"


@dataclass
class GateDecision:
    allowed: bool
    reason: GateReason
    simulated: bool = False
    message: str = ""
    server_key: str | None = None

    def denial_result(self) -> dict[str, Any]:
        """Tool-result payload returned to the model when a call is blocked."""
        return {"error": self.message or f"Blocked: {self.reason.value}", "reason": self.reason.value}


@dataclass
class ApprovalRequest:
    tool_name: str
    args_preview: str
    target: str = ""
    unknown_slugs: list[str] = field(default_factory=list)
    run_id: str = ""


@dataclass
class ApprovalDecision:
    approved: bool
    note: str = ""


class ApprovalUI(Protocol):
    """The boundary that shows the approval modal and reports the user's answer."""

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision: ...


@dataclass
class ApprovalRecord:
    tool_name: str
    approval_key: str
    target: str
    decision: str  # "granted" | "auto" | "simulated" | "denied" | "not-required" | "blocked"
    reason: str
    at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool_name,
            "key": self.approval_key,
            "target": self.target,
            "decision": self.decision,
            "reason": self.reason,
            "at": self.at,
        }


@dataclass
class RunApprovals:
    """Per-run gate state.  Never persisted."""
    run_id: str = ""
    read_only: bool = False
    approved_targets: set[str] = field(default_factory=set)
    approved_unknown_slug_sets: set[str] = field(default_factory=set)
    calls_per_tool: Counter = field(default_factory=Counter)
    calls_this_response: int = 0
    records: list[ApprovalRecord] = field(default_factory=list)

    def begin_response(self) -> None:
        self.calls_this_response = 0

    def record(self, tool_name: str, key: str, target: str, decision: str, reason: GateReason) -> None:
        self.records.append(ApprovalRecord(tool_name, key, target, decision, reason.value))


class ApprovalGate:
    """
    Gate in front of tool execution.

    Usage:
        gate = ApprovalGate(registry, pins, ui, store)
        run = RunApprovals(run_id="abc123", read_only=False)
        run.begin_response()
        decision = await gate.approve("roam_delete_block", {"uid": "x"}, run)
        if decision.allowed and not decision.simulated:
            ...
    """

    def __init__(
        self,
        registry: ToolRegistry,
        pins: SchemaPinStore,
        ui: ApprovalUI | None,
        store: KeyValueStore,
        unknown_composio_slugs: Callable[[dict[str, Any]], list[str]] | None = None,
        page_uid_for: Callable[[str], Any] | None = None,
        record_stat: Callable[[str], None] | None = None,
        max_calls_per_response: int = MAX_TOOL_CALLS_PER_RESPONSE,
        max_calls_per_tool: int = MAX_CALLS_PER_TOOL_PER_RUN,
    ):
        self._registry = registry
        self._pins = pins
        self._ui = ui
        self._store = store
        self._unknown_composio_slugs = unknown_composio_slugs
        self._page_uid_for = page_uid_for
        self._record_stat = record_stat
        self.max_calls_per_response = max_calls_per_response
        self.max_calls_per_tool = max_calls_per_tool

    # ── Dry run ──────────────────────────────────────────────────

    @property
    def dry_run_armed(self) -> bool:
        return self._store.get(SettingsKeys.DRY_RUN_MODE, False) is True

    def arm_dry_run(self, armed: bool = True) -> None:
        self._store.set(SettingsKeys.DRY_RUN_MODE, bool(armed))

    # ── Gate ─────────────────────────────────────────────────────

    async def approve(self, name: str, args: dict[str, Any] | None, run: RunApprovals) -> GateDecision:
        args = args or {}
        tool = self._registry.get(name)
        mutating = self._registry.is_potentially_mutating(name, args, tool)
        key = self._registry.approval_key(name, args)

        server_key = self._registry.server_key_for_tool(name, args, self._pins.suspended_keys())
        if server_key is None and (tool is None or name == LOCAL_MCP_EXECUTE):
            # Suspended servers have no registered tools; match on the names they advertised.
            inner = args.get("tool_name") if name == LOCAL_MCP_EXECUTE else name
            server_key = self._pins.suspended_key_for_tool(str(inner or ""))
        if self._pins.is_suspended(server_key):
            suspension = self._pins.get(server_key)
            summary = suspension.summary if suspension else ""
            run.record(name, key, server_key or "", "blocked", GateReason.SUSPENDED)
            return self._decide(False, GateReason.SUSPENDED, server_key=server_key, message=(
                f"Blocked: MCP server {suspension.server_name if suspension and suspension.server_name else server_key} "
                f"changed its tool definitions ({summary}) and is suspended until the user reviews the change "
                "(Review Suspended MCP Servers). Do not retry this tool."
            ))

        if mutating and not run.read_only and self.dry_run_armed:
            self.arm_dry_run(False)
            logger.info("Dry run: simulated mutating call %s", name)
            run.record(name, key, "", "simulated", GateReason.DRY_RUN)
            return self._decide(True, GateReason.DRY_RUN, simulated=True)

        if run.read_only and name not in READ_ONLY_TOOL_ALLOWLIST and not (tool is not None and tool.is_mutating is False):
            run.record(name, key, "", "blocked", GateReason.READONLY)
            return self._decide(False, GateReason.READONLY, message=(
                "Read-only mode: this tool is blocked for inbox-triggered requests. "
                "Summarise your findings for the human to act on."
            ))

        run.calls_this_response += 1
        run.calls_per_tool[name] += 1
        if run.calls_this_response > self.max_calls_per_response:
            run.record(name, key, "", "blocked", GateReason.RATE_LIMIT)
            return self._decide(False, GateReason.RATE_LIMIT, message=(
                f"Rate limit: at most {self.max_calls_per_response} tool calls per response. "
                "Issue the remaining calls in your next turn."
            ))
        if run.calls_per_tool[name] > self.max_calls_per_tool:
            run.record(name, key, "", "blocked", GateReason.RATE_LIMIT)
            return self._decide(False, GateReason.RATE_LIMIT, message=(
                f"Rate limit: {name} was already called {self.max_calls_per_tool} times in this request. "
                "Work with the results you have."
            ))

        if name == COMPOSIO_MULTI_EXECUTE and self._unknown_composio_slugs is not None:
            unknown = sorted(set(self._unknown_composio_slugs(args)))
            slug_key = ",".join(unknown)
            if unknown and slug_key not in run.approved_unknown_slug_sets:
                decision = await self._ask(UNKNOWN_SLUGS_APPROVAL_NAME, {"unknown_tool_slugs": unknown}, run,
                                           target=slug_key, unknown_slugs=unknown)
                if not decision.approved:
                    run.record(name, key, slug_key, "denied", GateReason.USER_DENIED)
                    return self._decide(False, GateReason.USER_DENIED,
                                        message=f"User denied unknown tool slugs in {COMPOSIO_MULTI_EXECUTE}")
                run.approved_unknown_slug_sets.add(slug_key)
                run.record(name, key, slug_key, "granted", GateReason.USER_APPROVED)

        if not mutating:
            run.record(name, key, "", "not-required", GateReason.NOT_MUTATING)
            return self._decide(True, GateReason.NOT_MUTATING)

        targets = await self.targets_for(name, args, key)
        if targets and all(t in run.approved_targets for t in targets):
            logger.debug("Auto-approved %s (targets already approved this run: %s)", name, ", ".join(targets))
            run.record(name, key, ",".join(targets), "auto", GateReason.AUTO_APPROVED)
            return self._decide(True, GateReason.AUTO_APPROVED)

        decision = await self._ask(name, args, run, target=",".join(targets))
        if not decision.approved:
            run.record(name, key, ",".join(targets), "denied", GateReason.USER_DENIED)
            return self._decide(False, GateReason.USER_DENIED, message=(
                f"User denied execution for {name}."
                + (f" Note from user: {decision.note}" if decision.note else "")
                + " Do not retry the same call; ask the user how they would like to proceed."
            ))
        run.approved_targets.update(targets)
        run.record(name, key, ",".join(targets), "granted", GateReason.USER_APPROVED)
        return self._decide(True, GateReason.USER_APPROVED)

    async def targets_for(self, name: str, args: dict[str, Any], approval_key: str) -> list[str]:
        """Pages for block-creation tools; the approval key for everything else."""
        if name not in SCOPED_PAGE_APPROVAL_TOOLS:
            return [approval_key]
        parents = []
        if isinstance(args.get("batches"), list):
            parents += [str((b or {}).get("parent_uid") or "").strip() for b in args["batches"] if isinstance(b, dict)]
        if isinstance(args.get("actions"), list):
            parents += [str((a or {}).get("parent_uid") or (a or {}).get("uid") or "").strip()
                        for a in args["actions"] if isinstance(a, dict)]
        parents.append(str(args.get("parent_uid") or "").strip())
        pages: list[str] = []
        for parent in (p for p in parents if p):
            page = parent
            if self._page_uid_for is not None:
                resolved = self._page_uid_for(parent)
                if inspect.isawaitable(resolved):
                    resolved = await resolved
                page = resolved or parent
            if f"page:{page}" not in pages:
                pages.append(f"page:{page}")
        return pages or [approval_key]

    async def _ask(self, name: str, args: dict[str, Any], run: RunApprovals, target: str = "",
                   unknown_slugs: list[str] | None = None) -> ApprovalDecision:
        if self._ui is None:
            logger.warning("No approval UI attached; denying %s", name)
            return ApprovalDecision(approved=False, note="no approval UI available")
        request = ApprovalRequest(
            tool_name=name,
            args_preview=safe_json_stringify(redact_for_log(args), ARGS_PREVIEW_CHARS),
            target=target,
            unknown_slugs=list(unknown_slugs or []),
            run_id=run.run_id,
        )
        decision = await self._ui.request_approval(request)
        self._count(decision.approved)
        logger.info("Approval %s for %s", "granted" if decision.approved else "denied", name)
        return decision

    def _count(self, granted: bool) -> None:
        if self._record_stat is not None:
            self._record_stat("approvalsGranted" if granted else "approvalsDenied")

    @staticmethod
    def _decide(allowed: bool, reason: GateReason, simulated: bool = False, message: str = "",
                server_key: str | None = None) -> GateDecision:
        METRICS.approvals_total.labels(decision="allow" if allowed else "deny", reason=reason.value).inc()
        return GateDecision(allowed=allowed, reason=reason, simulated=simulated, message=message, server_key=server_key)


def simulated_result(name: str, args: dict[str, Any]) -> dict[str, Any]:
    """What the model sees for a dry-run call."""
    return {"dry_run": True, "simulated": True, "tool_name": name, "arguments": args}
