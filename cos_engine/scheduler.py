"""
Scheduler — recurring prompts with cross-tab leader election.

Features:
- Three job types: cron (5-field expression + IANA timezone), interval
  (every N minutes, minimum 5), once (absolute time, disables after firing)
- Jobs persisted in the shared settings store (``cron-jobs``), normalised on load
- Leader election over ``chief-of-staff-cron-leader`` so only one runtime
  sharing the store fires jobs: 30s heartbeat, 90s staleness,
  write-then-reread claim, immediate demotion on a foreign storage write
- APScheduler 3.x ``AsyncIOScheduler`` drives the tick (60s), the heartbeat
  (30s) and a jittered initial tick; cron expressions are evaluated with
  ``CronTrigger``
- Ticks never overlap a foreground agent run; due jobs fire sequentially
  with a fresh read-modify-write of the job list after each fire
- ``cos_cron_*`` tools for the model, validation errors returned as results
"""
import logging
import random
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cos_engine.config import (
    CRON_HEARTBEAT_INTERVAL_SECONDS,
    CRON_INITIAL_TICK_DELAY_SECONDS,
    CRON_INITIAL_TICK_JITTER_SECONDS,
    CRON_LEADER_STALE_SECONDS,
    CRON_MAX_JOBS,
    CRON_MIN_INTERVAL_MINUTES,
    CRON_TICK_INTERVAL_SECONDS,
)
from cos_engine.exceptions import AgentBusyError, SchedulerError
from cos_engine.metrics import METRICS
from cos_engine.parse_utils import strip_key_reference_prefix
from cos_engine.security import StatRecorder, wrap_untrusted_with_injection_scan
from cos_engine.store import KeyValueStore, SettingsKeys
from cos_engine.tool_registry import Tool, ToolOrigin

logger = logging.getLogger("cos.engine.scheduler")

JOB_TYPES = ("cron", "interval", "once")
MAX_JOB_NAME_CHARS = 100
MAX_JOB_PROMPT_CHARS = 2000
MAX_JOB_ERROR_CHARS = 200
MAX_JOB_ID_BASE_CHARS = 40
DEFAULT_INTERVAL_MINUTES = 60

RunJobFn = Callable[["ScheduledJob"], Awaitable[Any]]


# ── Jobs ─────────────────────────────────────────────────────────────────────

@dataclass
class ScheduledJob:
    """A persisted scheduled prompt.  Timestamps are epoch seconds; 0 means unset."""
    id: str
    name: str
    type: str = "cron"
    expression: str = ""
    interval_minutes: int = 0
    run_at: float = 0.0
    timezone: str = "UTC"
    prompt: str = ""
    enabled: bool = True
    created_at: float = 0.0
    last_run: float = 0.0
    run_count: int = 0
    last_run_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def normalise_job(raw: Any, default_timezone: str = "UTC", now: float | None = None) -> ScheduledJob | None:
    """Coerce a stored record into a ``ScheduledJob``; records without an id are dropped."""
    if not isinstance(raw, dict):
        return None
    job_id = str(raw.get("id") or "").strip()
    if not job_id:
        return None
    job_type = raw.get("type") if raw.get("type") in JOB_TYPES else "cron"
    interval = 0
    if job_type == "interval":
        interval = max(CRON_MIN_INTERVAL_MINUTES, round(_number(raw.get("interval_minutes"), DEFAULT_INTERVAL_MINUTES)
                                                        or DEFAULT_INTERVAL_MINUTES))
    error = raw.get("last_run_error")
    return ScheduledJob(
        id=job_id,
        name=str(raw.get("name") or job_id).strip()[:MAX_JOB_NAME_CHARS],
        type=job_type,
        expression=str(raw.get("expression") or "").strip() if job_type == "cron" else "",
        interval_minutes=interval,
        run_at=_number(raw.get("run_at")) if job_type == "once" else 0.0,
        timezone=str(raw.get("timezone") or default_timezone).strip(),
        prompt=str(raw.get("prompt") or "").strip()[:MAX_JOB_PROMPT_CHARS],
        enabled=raw.get("enabled") is not False,
        created_at=_number(raw.get("created_at"), now if now is not None else time.time()),
        last_run=_number(raw.get("last_run")),
        run_count=int(_number(raw.get("run_count"))),
        last_run_error=str(error)[:MAX_JOB_ERROR_CHARS] if error else None,
    )


def generate_job_id(name: str, now: float | None = None) -> str:
    """Slug of the job name: ``"Daily Brief!"`` → ``"daily-brief"``."""
    base = re.sub(r"[^a-z0-9]+", "-", str(name or "").lower()).strip("-")[:MAX_JOB_ID_BASE_CHARS]
    return base or f"job-{int((now if now is not None else time.time()) * 1000)}"


def ensure_unique_job_id(job_id: str, existing: list[ScheduledJob], now: float | None = None) -> str:
    ids = {j.id for j in existing}
    if job_id not in ids:
        return job_id
    for suffix in range(2, 100):
        candidate = f"{job_id}-{suffix}"
        if candidate not in ids:
            return candidate
    return f"{job_id}-{int((now if now is not None else time.time()) * 1000)}"


# ── Schedule evaluation ──────────────────────────────────────────────────────

def parse_cron_expression(expression: str, tz: str = "UTC") -> CronTrigger:
    """
    Parse a standard 5-field cron expression into an APScheduler trigger.

    Args:
        expression: ``"min hour dom month dow"``, e.g. ``"0 8 * * 1-5"``.
        tz: IANA timezone the expression is evaluated in.

    Raises:
        SchedulerError: If the expression or timezone cannot be parsed.
    """
    expr = str(expression or "").strip()
    if len(expr.split()) != 5:
        raise SchedulerError(f"Cannot parse cron expression: {expr!r} (expected 5 fields)")
    try:
        return CronTrigger.from_crontab(expr, timezone=tz or "UTC")
    except Exception as e:
        raise SchedulerError(f"Cannot parse cron expression: {expr!r}: {e}") from e


def next_cron_fire(trigger: CronTrigger, after: float) -> float | None:
    """First firing strictly after ``after`` (epoch seconds)."""
    start = datetime.fromtimestamp(after, tz=timezone.utc) + timedelta(microseconds=1)
    fire = trigger.get_next_fire_time(None, start)
    return fire.timestamp() if fire else None


def validate_cron_cadence(expression: str, tz: str = "UTC", now: float | None = None) -> None:
    """Reject expressions whose next two firings are less than the minimum interval apart."""
    trigger = parse_cron_expression(expression, tz)
    first = next_cron_fire(trigger, now if now is not None else time.time())
    second = next_cron_fire(trigger, first) if first else None
    if first and second and second - first < CRON_MIN_INTERVAL_MINUTES * 60:
        raise SchedulerError(
            f"Cron expression fires too frequently (every {round((second - first) / 60)}m). "
            f"Minimum interval is {CRON_MIN_INTERVAL_MINUTES} minutes."
        )


_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "off"})


def parse_enabled_flag(value: Any) -> bool | None:
    """Strict boolean for a tool argument; None when it is neither true nor false."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    return None


def validate_timezone(tz: str) -> str:
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulerError(f"Unknown timezone: {tz!r}. Use an IANA name such as Europe/London.") from e
    return tz


def next_run_time(job: ScheduledJob, now: float) -> float | None:
    """When ``job`` is next due, or None when it never will be."""
    if not job.enabled:
        return None
    if job.type == "once":
        return job.run_at if job.run_at and not job.last_run else None
    if job.type == "interval":
        if job.interval_minutes < 1:
            return None
        return (job.last_run or job.created_at) + job.interval_minutes * 60
    if not job.expression:
        return None
    try:
        trigger = parse_cron_expression(job.expression, job.timezone)
    except SchedulerError as e:
        logger.debug("Invalid cron expression for job %s: %s", job.id, e)
        return None
    return next_cron_fire(trigger, job.last_run or job.created_at)


def is_job_due(job: ScheduledJob, now: float) -> bool:
    due = next_run_time(job, now)
    return due is not None and due <= now


def _iso(ts: float | None) -> str | None:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _parse_run_at(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value or "").strip()
    if not text:
        raise SchedulerError("run_at (ISO 8601 datetime) is required for type 'once'.")
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise SchedulerError(f"Invalid run_at datetime: {text!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# ── Scheduler ────────────────────────────────────────────────────────────────

class CronScheduler:
    """
    Fires scheduled prompts through the agent loop from exactly one runtime.

    Usage:
        scheduler = CronScheduler(store, run_job=fire, is_busy=lambda: loop.is_running)
        scheduler.start()          # needs a running event loop
        ...
        await scheduler.tick()     # what the 60s interval job calls
        scheduler.stop()           # releases leadership
    """

    def __init__(
        self,
        store: KeyValueStore,
        run_job: RunJobFn | None = None,
        is_busy: Callable[[], bool] | None = None,
        default_timezone: str = "UTC",
        clock: Callable[[], float] = time.time,
        jitter: Callable[[], float] | None = None,
        record_stat: StatRecorder | None = None,
    ):
        self._store = store
        self._record_stat = record_stat
        self._run_job = run_job
        self._is_busy = is_busy or (lambda: False)
        self.default_timezone = default_timezone or "UTC"
        self._clock = clock
        self._jitter = jitter or (lambda: random.uniform(0, CRON_INITIAL_TICK_JITTER_SECONDS))
        self.tab_id: str | None = None
        self.running = False
        self._running_jobs: set[str] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self._aps: AsyncIOScheduler | None = None

    # ── Persistence ──────────────────────────────────────────────

    def load_jobs(self) -> list[ScheduledJob]:
        raw = self._store.get(SettingsKeys.CRON_JOBS, [])
        if not isinstance(raw, list):
            return []
        jobs = (normalise_job(r, self.default_timezone, self._clock()) for r in raw)
        return [j for j in jobs if j is not None]

    def save_jobs(self, jobs: list[ScheduledJob]) -> None:
        self._store.set(SettingsKeys.CRON_JOBS, [j.to_dict() for j in jobs])

    # ── Leader election ──────────────────────────────────────────

    @property
    def is_leader(self) -> bool:
        return self.tab_id is not None

    def _set_leader(self, tab_id: str | None) -> None:
        self.tab_id = tab_id
        METRICS.scheduler_is_leader.set(1 if tab_id else 0)

    def _read_lease(self) -> dict[str, Any] | None:
        lease = self._store.get(SettingsKeys.CRON_LEADER)
        return lease if isinstance(lease, dict) else None

    def try_claim_leadership(self) -> bool:
        now_ms = self._clock() * 1000
        lease = self._read_lease()
        if lease and lease.get("heartbeat") and now_ms - lease["heartbeat"] < CRON_LEADER_STALE_SECONDS * 1000:
            if lease.get("tabId") != self.tab_id:
                return False
            return True
        candidate = uuid4().hex[:8]
        self._store.set(SettingsKeys.CRON_LEADER, {"tabId": candidate, "heartbeat": now_ms})
        check = self._read_lease() or {}
        if check.get("tabId") == candidate:
            self._set_leader(candidate)
            logger.info("Scheduler leadership claimed: %s", candidate)
            return True
        self._set_leader(None)
        return False

    def heartbeat(self) -> None:
        if not self.is_leader:
            self.try_claim_leadership()
            return
        lease = self._read_lease()
        if not lease or lease.get("tabId") != self.tab_id:
            logger.info("Scheduler leadership lost to %s", (lease or {}).get("tabId"))
            self._set_leader(None)
            return
        self._store.set(SettingsKeys.CRON_LEADER, {"tabId": self.tab_id, "heartbeat": self._clock() * 1000})
        check = self._read_lease() or {}
        if check.get("tabId") != self.tab_id:
            self._set_leader(None)

    def release_leadership(self) -> None:
        lease = self._read_lease()
        if lease and self.tab_id and lease.get("tabId") == self.tab_id:
            self._store.delete(SettingsKeys.CRON_LEADER)
            logger.info("Scheduler leadership released: %s", self.tab_id)
        self._set_leader(None)

    def _on_storage_event(self, key: str, old: Any, new: Any) -> None:
        if key != SettingsKeys.CRON_LEADER or not self.tab_id:
            return
        if not isinstance(new, dict) or new.get("tabId") != self.tab_id:
            logger.info("Scheduler leadership lost (storage event from another runtime)")
            self._set_leader(None)

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.try_claim_leadership()
        self._unsubscribe = self._store.subscribe(self._on_storage_event)

        self._aps = AsyncIOScheduler(timezone="UTC")
        self._aps.add_job(self.heartbeat, IntervalTrigger(seconds=CRON_HEARTBEAT_INTERVAL_SECONDS),
                          id="cron-heartbeat", max_instances=1, coalesce=True)
        self._aps.add_job(self.tick, IntervalTrigger(seconds=CRON_TICK_INTERVAL_SECONDS),
                          id="cron-tick", max_instances=1, coalesce=True)
        initial = datetime.now(timezone.utc) + timedelta(seconds=CRON_INITIAL_TICK_DELAY_SECONDS + self._jitter())
        self._aps.add_job(self.tick, DateTrigger(run_date=initial), id="cron-initial-tick")
        self._aps.start()
        logger.info("Scheduler started (leader=%s)", self.is_leader)

    def stop(self) -> None:
        self.running = False
        if self._aps is not None:
            self._aps.shutdown(wait=False)
            self._aps = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.release_leadership()
        self._running_jobs.clear()
        logger.info("Scheduler stopped")

    # ── Tick ─────────────────────────────────────────────────────

    async def tick(self) -> list[str]:
        """Fire every due job once; returns the ids fired."""
        if not self.is_leader:
            self.try_claim_leadership()
            if not self.is_leader:
                return []
        if self._is_busy():
            logger.debug("Skipping tick: agent run in progress")
            return []

        now = self._clock()
        due = [j for j in self.load_jobs() if is_job_due(j, now) and j.id not in self._running_jobs]
        if not due:
            return []

        lease = self._read_lease()
        if lease and lease.get("tabId") != self.tab_id:
            self._set_leader(None)
            return []
        self.heartbeat()
        if not self.is_leader:
            return []

        logger.info("Due jobs: %s", ", ".join(j.id for j in due))
        fired = []
        for job in due:
            if self._is_busy():
                logger.info("Deferring remaining due jobs: agent run started")
                break
            self._running_jobs.add(job.id)
            try:
                error = await self._fire(job)
            except AgentBusyError:
                logger.info("Deferring job %s: agent busy", job.id)
                break
            finally:
                self._running_jobs.discard(job.id)
            self._record_fire(job, error)
            fired.append(job.id)
        return fired

    async def _fire(self, job: ScheduledJob) -> str | None:
        logger.info("Firing job %s (%s)", job.id, job.name)
        if self._run_job is None:
            return "no agent runner configured"
        try:
            await self._run_job(job)
        except AgentBusyError:
            raise
        except Exception as e:
            METRICS.scheduler_fires_total.labels(job_type=job.type, status="error").inc()
            logger.error("Scheduled job %s failed: %s", job.id, e)
            return str(e) or type(e).__name__
        METRICS.scheduler_fires_total.labels(job_type=job.type, status="ok").inc()
        return None

    def _record_fire(self, job: ScheduledJob, error: str | None) -> None:
        fresh = self.load_jobs()
        for stored in fresh:
            if stored.id != job.id:
                continue
            stored.last_run = self._clock()
            stored.run_count += 1
            stored.last_run_error = error[:MAX_JOB_ERROR_CHARS] if error else None
            if job.type == "once":
                stored.enabled = False
            self.save_jobs(fresh)
            return

    # ── Tools ────────────────────────────────────────────────────

    def list_jobs(self, args: dict[str, Any] | None = None) -> dict[str, Any]:
        args = args or {}
        now = self._clock()
        jobs = self.load_jobs()
        if args.get("enabled_only"):
            jobs = [j for j in jobs if j.enabled]
        rows = []
        for job in jobs:
            rows.append({
                "id": job.id,
                "name": job.name,
                "type": job.type,
                "expression": job.expression or None,
                "interval_minutes": job.interval_minutes or None,
                "run_at": _iso(job.run_at),
                "timezone": job.timezone,
                "prompt": job.prompt,
                "enabled": job.enabled,
                "last_run": _iso(job.last_run),
                "last_run_error": job.last_run_error,
                "next_run": _iso(next_run_time(job, now)),
                "run_count": job.run_count,
            })
        return {"jobs": rows, "total": len(rows)}

    def create_job(self, args: dict[str, Any] | None = None) -> dict[str, Any]:
        args = args or {}
        name = str(args.get("name") or "").strip()
        job_type = str(args.get("type") or "").strip()
        prompt = str(args.get("prompt") or "").strip()
        if not name or not job_type or not prompt:
            return {"error": "name, type, and prompt are required."}
        if job_type not in JOB_TYPES:
            return {"error": f"type must be one of: {', '.join(JOB_TYPES)}."}

        now = self._clock()
        jobs = self.load_jobs()
        if len(jobs) >= CRON_MAX_JOBS:
            return {"error": f"Maximum {CRON_MAX_JOBS} scheduled jobs reached. Delete unused jobs first."}

        tz = str(args.get("timezone") or self.default_timezone).strip()
        expression = str(args.get("cron") or args.get("expression") or "").strip()
        interval = args.get("interval_minutes")
        run_at = 0.0
        try:
            validate_timezone(tz)
            if job_type == "cron":
                if not expression:
                    return {"error": "cron expression is required for type 'cron'."}
                validate_cron_cadence(expression, tz, now)
            elif job_type == "interval":
                if not isinstance(interval, (int, float)) or interval < CRON_MIN_INTERVAL_MINUTES:
                    return {"error": f"interval_minutes must be at least {CRON_MIN_INTERVAL_MINUTES}."}
            else:
                run_at = _parse_run_at(args.get("run_at"))
        except SchedulerError as e:
            return {"error": str(e)}

        job = normalise_job({
            "id": ensure_unique_job_id(generate_job_id(name, now), jobs, now),
            "name": name,
            "type": job_type,
            "expression": expression,
            "interval_minutes": interval or 0,
            "run_at": run_at,
            "timezone": tz,
            "prompt": prompt,
            "enabled": True,
            "created_at": now,
        }, self.default_timezone, now)
        jobs.append(job)
        self.save_jobs(jobs)
        logger.info("Scheduled job created: %s (%s)", job.id, job.type)
        return {
            "created": True,
            "id": job.id,
            "name": job.name,
            "type": job.type,
            "next_run": _iso(next_run_time(job, now)),
            "timezone": job.timezone,
        }

    def update_job(self, args: dict[str, Any] | None = None) -> dict[str, Any]:
        args = args or {}
        job_id = str(args.get("id") or "").strip()
        if not job_id:
            return {"error": "id is required."}
        jobs = self.load_jobs()
        job = next((j for j in jobs if j.id == job_id), None)
        if job is None:
            return {"error": f"Job not found: {job_id}"}

        # Validate before touching the job so a rejected update changes nothing.
        enabled = None
        if args.get("enabled") is not None:
            enabled = parse_enabled_flag(args["enabled"])
            if enabled is None:
                return {"error": "enabled must be true or false."}
        if args.get("timezone") is not None:
            try:
                validate_timezone(str(args["timezone"]).strip())
            except SchedulerError as e:
                return {"error": str(e)}

        if args.get("name") is not None:
            job.name = str(args["name"]).strip()[:MAX_JOB_NAME_CHARS]
        if args.get("timezone") is not None:
            job.timezone = str(args["timezone"]).strip()
        expression = args.get("cron", args.get("expression"))
        if expression is not None:
            try:
                validate_cron_cadence(str(expression), job.timezone, self._clock())
            except SchedulerError as e:
                return {"error": str(e)}
            job.expression = str(expression).strip()
        if args.get("interval_minutes") is not None:
            try:
                minutes = round(float(args["interval_minutes"]))
            except (TypeError, ValueError):
                return {"error": "interval_minutes must be a number."}
            job.interval_minutes = max(CRON_MIN_INTERVAL_MINUTES, minutes)
        if args.get("prompt") is not None:
            job.prompt = str(args["prompt"]).strip()[:MAX_JOB_PROMPT_CHARS]
        if enabled is not None:
            job.enabled = enabled
        self.save_jobs(jobs)
        return {"updated": True, "id": job.id, "name": job.name, "enabled": job.enabled}

    def delete_job(self, args: dict[str, Any] | None = None) -> dict[str, Any]:
        job_id = str((args or {}).get("id") or "").strip()
        if not job_id:
            return {"error": "id is required."}
        jobs = self.load_jobs()
        job = next((j for j in jobs if j.id == job_id), None)
        if job is None:
            return {"error": f"Job not found: {job_id}"}
        self.save_jobs([j for j in jobs if j.id != job_id])
        logger.info("Scheduled job deleted: %s", job_id)
        return {"deleted": True, "id": job.id, "name": job.name}

    def tools(self) -> list[Tool]:
        return [
            Tool(
                name="cos_cron_list",
                description="List all scheduled jobs with their status, schedule, and next run time.",
                input_schema={
                    "type": "object",
                    "properties": {"enabled_only": {"type": "boolean", "description": "Only return enabled jobs."}},
                },
                handler=self.list_jobs,
                is_mutating=False,
                origin=ToolOrigin.NATIVE,
            ),
            Tool(
                name="cos_cron_create",
                description=(
                    "Create a scheduled job. Types: 'cron' (5-field expression with timezone), 'interval' "
                    "(every N minutes), 'once' (one-shot at a specific time). The job prompt is sent to "
                    "Chief of Staff as if the user typed it."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "Human-readable job name."},
                        "type": {"type": "string", "enum": list(JOB_TYPES)},
                        "cron": {"type": "string", "description": "5-field cron expression, e.g. '0 8 * * 1-5'."},
                        "interval_minutes": {"type": "number", "description": "Interval in minutes (min 5)."},
                        "run_at": {"type": "string", "description": "ISO 8601 datetime for type 'once'."},
                        "timezone": {"type": "string", "description": "IANA timezone."},
                        "prompt": {"type": "string", "description": "Instruction sent when the job fires."},
                    },
                    "required": ["name", "type", "prompt"],
                },
                handler=self.create_job,
                is_mutating=True,
                origin=ToolOrigin.NATIVE,
            ),
            Tool(
                name="cos_cron_update",
                description="Update a scheduled job by id (name, cron, interval_minutes, timezone, prompt, enabled).",
                input_schema={
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "name": {"type": "string"},
                        "cron": {"type": "string"},
                        "interval_minutes": {"type": "number"},
                        "timezone": {"type": "string"},
                        "prompt": {"type": "string"},
                        "enabled": {"type": "boolean"},
                    },
                    "required": ["id"],
                },
                handler=self.update_job,
                is_mutating=True,
                origin=ToolOrigin.NATIVE,
            ),
            Tool(
                name="cos_cron_delete",
                description="Delete a scheduled job by id.",
                input_schema={
                    "type": "object",
                    "properties": {"id": {"type": "string"}},
                    "required": ["id"],
                },
                handler=self.delete_job,
                is_mutating=True,
                origin=ToolOrigin.NATIVE,
            ),
        ]

    # ── Prompt section ───────────────────────────────────────────

    def build_cron_jobs_prompt_section(self) -> str:
        jobs = self.load_jobs()
        if not jobs:
            return ""
        enabled = [j for j in jobs if j.enabled]
        if not enabled:
            return (
                f"## Scheduled Jobs\n\nAll {len(jobs)} scheduled job(s) are currently disabled. "
                "Use cos_cron_update to re-enable or cos_cron_delete to remove them."
            )
        now = self._clock()
        lines = []
        for job in enabled:
            if job.type == "cron":
                schedule = f"cron: {job.expression} ({job.timezone})"
            elif job.type == "interval":
                schedule = f"every {job.interval_minutes} min"
            else:
                schedule = f"once at {_iso(job.run_at) or 'TBD'}"
            nxt = next_run_time(job, now)
            next_text = f" | next: {_iso(nxt)}" if nxt else ""
            last_text = f" | last: {_iso(job.last_run)}" if job.last_run else ""
            lines.append(f'- **{job.name}** ({job.id}) — {schedule}{next_text}{last_text} — "{job.prompt[:80]}"')
        return (
            "## Scheduled Jobs\n\n"
            "You have access to cron job tools (cos_cron_list, cos_cron_create, cos_cron_update, cos_cron_delete).\n"
            f"The user currently has {len(enabled)} active scheduled job(s):\n"
            + wrap_untrusted_with_injection_scan("cron_jobs", "\n".join(lines), self._record_stat)
        )


def format_job_response(job: ScheduledJob, text: str) -> str:
    """Chat-history rendering of a fired job's answer."""
    body = strip_key_reference_prefix(str(text or "").strip()).strip() or "No response generated."
    return f"[Scheduled: {job.name}]\n{body}"
