"""
Tests for the Reminder Scheduler
================================

Run with: pytest tests/test_reminder_scheduler.py -v

Tests cover:
1. Job registration (sweep, escalation, cleanup)
2. Scheduler lifecycle
3. On-demand sweeps and job error handling
4. Module-level singleton
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import tickler.engine.scheduler as scheduler_module
from tickler.engine.escalation import EscalationResult
from tickler.engine.scheduler import (
    CLEANUP_JOB_ID,
    ESCALATION_JOB_ID,
    SWEEP_JOB_ID,
    ReminderScheduler,
    get_reminder_scheduler,
    initialize_reminder_scheduler,
)
from tickler.engine.sweep import SweepResult
from tickler.services.exceptions import ConfigurationError


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_scheduler():
    """Create a mock APScheduler."""
    scheduler = MagicMock()
    scheduler.running = True
    scheduler.get_jobs.return_value = []
    return scheduler


@pytest.fixture
def mock_sweep():
    sweep = MagicMock()
    sweep.run_sweep = AsyncMock(return_value=SweepResult(processed_count=2, sent_count=2))
    return sweep


@pytest.fixture
def mock_escalation():
    escalation = MagicMock()
    escalation.run_escalations = AsyncMock(return_value=EscalationResult(checked=1))
    return escalation


def added_jobs(mock_scheduler):
    return {c.kwargs["id"]: c for c in mock_scheduler.add_job.call_args_list}


# =============================================================================
# Unit Tests: Job registration
# =============================================================================

class TestJobRegistration:

    @pytest.mark.asyncio
    async def test_sweep_job_only(self, mock_sweep, mock_scheduler):
        await ReminderScheduler(mock_sweep, scheduler=mock_scheduler).start()

        jobs = added_jobs(mock_scheduler)
        assert set(jobs) == {SWEEP_JOB_ID}
        sweep_job = jobs[SWEEP_JOB_ID]
        assert isinstance(sweep_job.args[1], IntervalTrigger)
        assert sweep_job.kwargs["max_instances"] == 1
        assert sweep_job.kwargs["coalesce"] is True

    @pytest.mark.asyncio
    async def test_all_jobs(self, mock_sweep, mock_escalation, store, mock_scheduler):
        await ReminderScheduler(
            mock_sweep, escalation=mock_escalation, store=store, scheduler=mock_scheduler
        ).start()

        jobs = added_jobs(mock_scheduler)
        assert set(jobs) == {SWEEP_JOB_ID, ESCALATION_JOB_ID, CLEANUP_JOB_ID}
        assert isinstance(jobs[CLEANUP_JOB_ID].args[1], CronTrigger)

    @pytest.mark.asyncio
    async def test_get_jobs_lists_engine_jobs_only(self, mock_sweep, mock_scheduler):
        sweep_job = MagicMock(id=SWEEP_JOB_ID, next_run_time=None, trigger="interval[0:00:30]")
        sweep_job.name = "Sweep Due Reminders"
        other = MagicMock(id="someone_elses_job")
        mock_scheduler.get_jobs.return_value = [sweep_job, other]

        jobs = ReminderScheduler(mock_sweep, scheduler=mock_scheduler).get_jobs()

        assert jobs == [{
            "job_id": SWEEP_JOB_ID,
            "name": "Sweep Due Reminders",
            "next_run": None,
            "trigger": "interval[0:00:30]",
        }]


# =============================================================================
# Unit Tests: Lifecycle
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_shared_scheduler_is_not_started_or_stopped(self, mock_sweep, mock_scheduler):
        scheduler = ReminderScheduler(mock_sweep, scheduler=mock_scheduler)

        await scheduler.start()
        assert scheduler.is_running()
        await scheduler.shutdown()

        mock_scheduler.start.assert_not_called()
        mock_scheduler.shutdown.assert_not_called()
        assert not scheduler.is_running()

    @pytest.mark.asyncio
    async def test_double_start_registers_once(self, mock_sweep, mock_scheduler):
        scheduler = ReminderScheduler(mock_sweep, scheduler=mock_scheduler)

        await scheduler.start()
        await scheduler.start()

        assert mock_scheduler.add_job.call_count == 1

    @pytest.mark.asyncio
    async def test_owned_scheduler_starts_and_stops(self, mock_sweep):
        scheduler = ReminderScheduler(mock_sweep)

        await scheduler.start()
        assert scheduler.is_running()
        assert {job["job_id"] for job in scheduler.get_jobs()} == {SWEEP_JOB_ID}

        await scheduler.shutdown()
        assert not scheduler.is_running()


# =============================================================================
# Unit Tests: Jobs
# =============================================================================

class TestJobs:

    @pytest.mark.asyncio
    async def test_trigger_sweep_now(self, mock_sweep, mock_scheduler, now):
        result = await ReminderScheduler(mock_sweep, scheduler=mock_scheduler).trigger_sweep_now(now)

        assert result.sent_count == 2
        mock_sweep.run_sweep.assert_awaited_once_with(now)

    @pytest.mark.asyncio
    async def test_sweeps_never_overlap(self, mock_scheduler):
        running = {"current": 0, "max": 0}

        async def slow_sweep(now=None):
            running["current"] += 1
            running["max"] = max(running["max"], running["current"])
            await asyncio.sleep(0.01)
            running["current"] -= 1
            return SweepResult()

        sweep = MagicMock()
        sweep.run_sweep = slow_sweep
        scheduler = ReminderScheduler(sweep, scheduler=mock_scheduler)

        await asyncio.gather(scheduler.trigger_sweep_now(), scheduler._sweep_job())

        assert running["max"] == 1

    @pytest.mark.asyncio
    async def test_sweep_job_swallows_errors(self, mock_sweep, mock_scheduler):
        mock_sweep.run_sweep.side_effect = RuntimeError("store unreachable")
        await ReminderScheduler(mock_sweep, scheduler=mock_scheduler)._sweep_job()

    @pytest.mark.asyncio
    async def test_escalation_without_handler(self, mock_sweep, mock_scheduler):
        with pytest.raises(ConfigurationError):
            await ReminderScheduler(mock_sweep, scheduler=mock_scheduler).run_escalations_now()

    @pytest.mark.asyncio
    async def test_escalation_job(self, mock_sweep, mock_escalation, mock_scheduler):
        await ReminderScheduler(
            mock_sweep, escalation=mock_escalation, scheduler=mock_scheduler
        )._escalation_job()
        mock_escalation.run_escalations.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_job(self, mock_sweep, mock_scheduler):
        store = MagicMock()
        store.cleanup_expired = AsyncMock(return_value=3)

        await ReminderScheduler(mock_sweep, store=store, scheduler=mock_scheduler)._cleanup_job()

        store.cleanup_expired.assert_awaited_once()


# =============================================================================
# Unit Tests: Singleton
# =============================================================================

class TestSingleton:

    @pytest.mark.asyncio
    async def test_get_before_initialize(self, monkeypatch):
        monkeypatch.setattr(scheduler_module, "_reminder_scheduler", None)
        with pytest.raises(ConfigurationError):
            get_reminder_scheduler()

    @pytest.mark.asyncio
    async def test_initialize_registers_singleton(self, monkeypatch, mock_sweep):
        monkeypatch.setattr(scheduler_module, "_reminder_scheduler", None)

        scheduler = await initialize_reminder_scheduler(mock_sweep)
        try:
            assert get_reminder_scheduler() is scheduler
            assert scheduler.is_running()
        finally:
            await scheduler.shutdown()
