"""
Unit tests for cos_engine.scheduler — job model, cron tools and leader election.

Tests:
- Job normalisation, ids and next-run evaluation
- cos_cron_* tool handlers and validation errors
- Tick behaviour (busy deferral, errors, one-shot jobs)
- Cross-runtime leader election over shared storage
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from cos_engine.exceptions import AgentBusyError, SchedulerError
from cos_engine.scheduler import (
    CronScheduler,
    ScheduledJob,
    ensure_unique_job_id,
    format_job_response,
    generate_job_id,
    is_job_due,
    next_run_time,
    normalise_job,
    parse_cron_expression,
    parse_enabled_flag,
    validate_cron_cadence,
)
from cos_engine.store import SettingsKeys, SharedStorage

from fakes import FakeClock

T0 = 1_767_657_600.0  # 2026-01-06 00:00:00 UTC


def _job(**overrides) -> dict:
    record = {"id": "brief", "name": "Brief", "type": "cron", "expression": "*/5 * * * *",
              "timezone": "UTC", "prompt": "Give me a briefing", "created_at": T0}
    record.update(overrides)
    return record


@pytest.fixture
def scheduler(store, clock):
    return CronScheduler(store, run_job=AsyncMock(), clock=clock)


# ============================================================================
# Job model
# ============================================================================

class TestJobModel:
    def test_normalise_defaults(self):
        job = normalise_job({"id": "x", "type": "weird", "prompt": " hi "}, now=T0)
        assert job.type == "cron"
        assert job.prompt == "hi"
        assert job.enabled
        assert job.created_at == T0

    def test_interval_minimum(self):
        job = normalise_job({"id": "x", "type": "interval", "interval_minutes": 2})
        assert job.interval_minutes == 5

    def test_records_without_id_dropped(self):
        assert normalise_job({"name": "no id"}) is None
        assert normalise_job("nope") is None

    def test_job_ids(self):
        assert generate_job_id("Daily Brief!") == "daily-brief"
        assert generate_job_id("!!!", now=T0) == f"job-{int(T0 * 1000)}"
        existing = [ScheduledJob(id="daily-brief", name="a"), ScheduledJob(id="daily-brief-2", name="b")]
        assert ensure_unique_job_id("daily-brief", existing) == "daily-brief-3"


class TestSchedule:
    def test_bad_expression(self):
        with pytest.raises(SchedulerError, match="expected 5 fields"):
            parse_cron_expression("0 8 * *")
        with pytest.raises(SchedulerError):
            parse_cron_expression("99 8 * * *")

    def test_cadence_minimum(self):
        with pytest.raises(SchedulerError, match="every 1m"):
            validate_cron_cadence("* * * * *", now=T0)
        validate_cron_cadence("*/5 * * * *", now=T0)

    def test_cron_next_run_respects_timezone(self):
        job = normalise_job(_job(expression="0 8 * * *", timezone="America/New_York"))
        due = datetime.fromtimestamp(next_run_time(job, T0), tz=timezone.utc)
        assert (due.hour, due.minute) == (13, 0)

    def test_interval_next_run(self):
        job = normalise_job(_job(type="interval", interval_minutes=30, last_run=T0 + 60))
        assert next_run_time(job, T0) == T0 + 60 + 1800

    def test_once_disabled_after_run(self):
        job = normalise_job(_job(type="once", run_at=T0 + 60))
        assert is_job_due(job, T0 + 60)
        job.last_run = T0 + 61
        assert next_run_time(job, T0 + 120) is None

    def test_disabled_never_due(self):
        assert not is_job_due(normalise_job(_job(enabled=False)), T0 + 3600)


# ============================================================================
# Tools
# ============================================================================

class TestCronTools:
    def test_create_cron(self, scheduler, store):
        result = scheduler.create_job({"name": "Morning Brief", "type": "cron", "cron": "0 8 * * *",
                                       "prompt": "Brief me"})
        assert result["created"]
        assert result["id"] == "morning-brief"
        assert result["next_run"] == "2026-01-06T08:00:00+00:00"
        assert store.get(SettingsKeys.CRON_JOBS)[0]["expression"] == "0 8 * * *"

    def test_create_duplicate_name_gets_suffix(self, scheduler):
        args = {"name": "Sweep", "type": "interval", "interval_minutes": 30, "prompt": "Sweep inbox"}
        scheduler.create_job(args)
        assert scheduler.create_job(args)["id"] == "sweep-2"

    @pytest.mark.parametrize("args,message", [
        ({"name": "x", "type": "cron"}, "required"),
        ({"name": "x", "type": "hourly", "prompt": "p"}, "type must be one of"),
        ({"name": "x", "type": "cron", "prompt": "p"}, "cron expression is required"),
        ({"name": "x", "type": "cron", "cron": "* * * * *", "prompt": "p"}, "too frequently"),
        ({"name": "x", "type": "interval", "interval_minutes": 2, "prompt": "p"}, "at least 5"),
        ({"name": "x", "type": "once", "run_at": "tomorrow", "prompt": "p"}, "Invalid run_at"),
    ])
    def test_create_validation(self, scheduler, args, message):
        assert message in scheduler.create_job(args)["error"]

    def test_create_once(self, scheduler):
        result = scheduler.create_job({"name": "Ping", "type": "once", "run_at": "2026-01-06T09:30:00Z",
                                       "prompt": "ping"})
        assert result["next_run"] == "2026-01-06T09:30:00+00:00"

    def test_max_jobs(self, scheduler, store):
        store.set(SettingsKeys.CRON_JOBS, [_job(id=f"j{i}") for i in range(20)])
        assert "Maximum 20" in scheduler.create_job({"name": "x", "type": "interval", "interval_minutes": 10,
                                                      "prompt": "p"})["error"]

    def test_update_and_delete(self, scheduler, store):
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        assert scheduler.update_job({"id": "brief", "enabled": False, "prompt": "new"})["updated"]
        [row] = scheduler.list_jobs()["jobs"]
        assert (row["enabled"], row["prompt"], row["next_run"]) == (False, "new", None)
        assert "too frequently" in scheduler.update_job({"id": "brief", "cron": "* * * * *"})["error"]
        assert scheduler.delete_job({"id": "brief"})["deleted"]
        assert scheduler.delete_job({"id": "brief"})["error"] == "Job not found: brief"

    @pytest.mark.parametrize("value,expected", [
        ("false", False), ("0", False), ("no", False), ("Off", False), (0, False), (False, False),
        ("true", True), ("1", True), (" YES ", True), (1, True), (True, True),
    ])
    def test_enabled_coerced_strictly(self, scheduler, store, value, expected):
        store.set(SettingsKeys.CRON_JOBS, [_job(enabled=not expected)])
        assert scheduler.update_job({"id": "brief", "enabled": value})["enabled"] is expected
        assert store.get(SettingsKeys.CRON_JOBS)[0]["enabled"] is expected

    def test_enabled_garbage_rejected(self, scheduler, store):
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        result = scheduler.update_job({"id": "brief", "enabled": "sometimes", "prompt": "new"})
        assert result == {"error": "enabled must be true or false."}
        assert store.get(SettingsKeys.CRON_JOBS)[0]["prompt"] == "Give me a briefing"

    def test_update_timezone_validated(self, scheduler, store):
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        assert "Unknown timezone" in scheduler.update_job({"id": "brief", "timezone": "Mars/Olympus"})["error"]
        assert store.get(SettingsKeys.CRON_JOBS)[0]["timezone"] == "UTC"
        assert scheduler.update_job({"id": "brief", "timezone": "Europe/London"})["updated"]
        assert store.get(SettingsKeys.CRON_JOBS)[0]["timezone"] == "Europe/London"

    def test_create_timezone_validated(self, scheduler):
        result = scheduler.create_job({"name": "x", "type": "interval", "interval_minutes": 10,
                                       "timezone": "Nowhere/Special", "prompt": "p"})
        assert "Unknown timezone" in result["error"]

    def test_parse_enabled_flag_unknown(self):
        assert parse_enabled_flag("maybe") is None

    def test_list_enabled_only(self, scheduler, store):
        store.set(SettingsKeys.CRON_JOBS, [_job(), _job(id="off", enabled=False)])
        assert scheduler.list_jobs({"enabled_only": True})["total"] == 1

    def test_tool_flags(self, scheduler):
        flags = {t.name: t.is_mutating for t in scheduler.tools()}
        assert flags == {"cos_cron_list": False, "cos_cron_create": True,
                         "cos_cron_update": True, "cos_cron_delete": True}

    def test_prompt_section(self, scheduler, store):
        assert scheduler.build_cron_jobs_prompt_section() == ""
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        section = scheduler.build_cron_jobs_prompt_section()
        assert "1 active scheduled job(s)" in section
        assert "- **Brief** (brief) — cron: */5 * * * * (UTC)" in section
        store.set(SettingsKeys.CRON_JOBS, [_job(enabled=False)])
        assert "currently disabled" in scheduler.build_cron_jobs_prompt_section()


def test_format_job_response():
    job = ScheduledJob(id="brief", name="Brief")
    assert format_job_response(job, "[Key reference: a → B] All clear") == "[Scheduled: Brief]\nAll clear"
    assert format_job_response(job, "") == "[Scheduled: Brief]\nNo response generated."


# ============================================================================
# Tick
# ============================================================================

class TestTick:
    async def test_fires_due_job_and_records(self, scheduler, store, clock):
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        clock.advance(300)
        assert await scheduler.tick() == ["brief"]
        scheduler._run_job.assert_awaited_once()
        stored = store.get(SettingsKeys.CRON_JOBS)[0]
        assert (stored["run_count"], stored["last_run"]) == (1, T0 + 300)
        assert await scheduler.tick() == []

    async def test_not_due(self, scheduler, store, clock):
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        clock.advance(299)
        assert await scheduler.tick() == []

    async def test_skips_while_busy(self, store, clock):
        run_job = AsyncMock()
        scheduler = CronScheduler(store, run_job=run_job, is_busy=lambda: True, clock=clock)
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        clock.advance(300)
        assert await scheduler.tick() == []
        run_job.assert_not_awaited()

    async def test_agent_busy_defers_remaining(self, store, clock):
        run_job = AsyncMock(side_effect=AgentBusyError("busy"))
        scheduler = CronScheduler(store, run_job=run_job, clock=clock)
        store.set(SettingsKeys.CRON_JOBS, [_job(), _job(id="second")])
        clock.advance(300)
        assert await scheduler.tick() == []
        assert run_job.await_count == 1
        assert all(j["run_count"] == 0 for j in store.get(SettingsKeys.CRON_JOBS))

    async def test_failure_recorded(self, store, clock):
        scheduler = CronScheduler(store, run_job=AsyncMock(side_effect=RuntimeError("boom")), clock=clock)
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        clock.advance(300)
        assert await scheduler.tick() == ["brief"]
        stored = store.get(SettingsKeys.CRON_JOBS)[0]
        assert stored["last_run_error"] == "boom"
        assert stored["run_count"] == 1

    async def test_once_job_disables(self, scheduler, store, clock):
        store.set(SettingsKeys.CRON_JOBS, [_job(type="once", run_at=T0 + 60)])
        clock.advance(120)
        assert await scheduler.tick() == ["brief"]
        assert store.get(SettingsKeys.CRON_JOBS)[0]["enabled"] is False
        clock.advance(600)
        assert await scheduler.tick() == []

    async def test_job_edits_during_fire_are_kept(self, store, clock):
        async def run_job(job):
            store.set(SettingsKeys.CRON_JOBS, [*store.get(SettingsKeys.CRON_JOBS), _job(id="added")])

        scheduler = CronScheduler(store, run_job=run_job, clock=clock)
        store.set(SettingsKeys.CRON_JOBS, [_job()])
        clock.advance(300)
        await scheduler.tick()
        assert [j["id"] for j in store.get(SettingsKeys.CRON_JOBS)] == ["brief", "added"]


# ============================================================================
# Leader election
# ============================================================================

class TestLeaderElection:
    @pytest.fixture
    def shared(self):
        return SharedStorage()

    def test_single_leader(self, shared, clock):
        a = CronScheduler(shared.view("a"), clock=clock)
        b = CronScheduler(shared.view("b"), clock=clock)
        assert a.try_claim_leadership()
        assert not b.try_claim_leadership()
        assert shared.snapshot()[SettingsKeys.CRON_LEADER] == {"tabId": a.tab_id, "heartbeat": T0 * 1000}

    def test_stale_lease_taken_over(self, shared, clock):
        a = CronScheduler(shared.view("a"), clock=clock)
        b = CronScheduler(shared.view("b"), clock=clock)
        a.try_claim_leadership()
        clock.advance(89)
        assert not b.try_claim_leadership()
        clock.advance(2)
        assert b.try_claim_leadership()

    def test_release_lets_other_claim(self, shared, clock):
        a = CronScheduler(shared.view("a"), clock=clock)
        b = CronScheduler(shared.view("b"), clock=clock)
        a.try_claim_leadership()
        a.release_leadership()
        assert SettingsKeys.CRON_LEADER not in shared.snapshot()
        assert b.try_claim_leadership()

    async def test_foreign_write_demotes(self, shared, clock):
        a = CronScheduler(shared.view("a"), clock=clock)
        a.start()
        try:
            assert a.is_leader
            shared.view("intruder").set(SettingsKeys.CRON_LEADER, {"tabId": "other", "heartbeat": T0 * 1000})
            assert not a.is_leader
        finally:
            a.stop()

    def test_heartbeat_notices_lost_lease(self, shared, clock):
        a = CronScheduler(shared.view("a"), clock=clock)
        a.try_claim_leadership()
        shared.view("x").set(SettingsKeys.CRON_LEADER, {"tabId": "other", "heartbeat": T0 * 1000})
        a.heartbeat()
        assert not a.is_leader

    @pytest.mark.scenario
    async def test_two_runtimes_fire_each_slot_once(self, shared):
        """Two runtimes share storage; */5 over 15 minutes fires exactly three times."""
        clock = FakeClock(T0)
        fires = []

        async def record(job):
            fires.append(clock())

        a = CronScheduler(shared.view("a"), run_job=record, clock=clock)
        b = CronScheduler(shared.view("b"), run_job=record, clock=clock)
        a.save_jobs([normalise_job(_job())])
        a.start()
        b.start()
        try:
            assert a.is_leader and not b.is_leader
            for _ in range(15):
                clock.advance(60)
                a.heartbeat()
                b.heartbeat()
                await a.tick()
                await b.tick()
        finally:
            a.stop()
            b.stop()
        assert fires == [T0 + 300, T0 + 600, T0 + 900]
        assert shared.snapshot()[SettingsKeys.CRON_JOBS][0]["run_count"] == 3
