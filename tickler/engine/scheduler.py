"""
Reminder Scheduler
==================

Runs the engine's periodic jobs on APScheduler:

- reminder_sweep       : every SWEEP_INTERVAL_SECONDS, processes due reminders
- reminder_escalation  : every ESCALATION_INTERVAL_SECONDS, escalates
                         unresolved deliveries
- reminder_cleanup     : daily at CLEANUP_CRON_HOUR, expires old reminders

`trigger_sweep_now()` runs the same sweep on demand. Timer and on-demand
runs share a lock, so two sweeps never overlap inside one process (the
store claim covers separate processes).
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tickler.db.models.reminder import utcnow
from tickler.engine.escalation import EscalationHandler, EscalationResult
from tickler.engine.sweep import ReminderSweep, SweepResult
from tickler.services.exceptions import ConfigurationError
from tickler.services.reminder_store import ReminderStore

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "UTC")
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))
ESCALATION_INTERVAL_SECONDS = int(os.getenv("ESCALATION_INTERVAL_SECONDS", "60"))
CLEANUP_CRON_HOUR = int(os.getenv("CLEANUP_CRON_HOUR", "3"))

SWEEP_JOB_ID = "reminder_sweep"
ESCALATION_JOB_ID = "reminder_escalation"
CLEANUP_JOB_ID = "reminder_cleanup"


class ReminderScheduler:
    """
    Owns the periodic jobs of the reminder engine.

    Usage:
        scheduler = ReminderScheduler(sweep, escalation=handler, store=store)
        await scheduler.start()

        # Administrative / manual run
        result = await scheduler.trigger_sweep_now()
    """

    def __init__(
        self,
        sweep: ReminderSweep,
        escalation: Optional[EscalationHandler] = None,
        store: Optional[ReminderStore] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        """
        Initialize the reminder scheduler.

        Args:
            sweep: Due-reminder sweep to run
            escalation: Escalation handler; no escalation job without one
            store: Store to expire reminders in; no cleanup job without one
            scheduler: Optional existing scheduler to use.
                       If None, creates a new one.
        """
        self.sweep = sweep
        self.escalation = escalation
        self.store = store

        if scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
            self._owns_scheduler = True
        else:
            self.scheduler = scheduler
            self._owns_scheduler = False

        self._sweep_lock = asyncio.Lock()
        self._started = False
        logger.info(f"ReminderScheduler initialized (timezone: {SCHEDULER_TIMEZONE})")

    async def start(self):
        """Register the periodic jobs and start the scheduler."""
        if self._started:
            logger.warning("ReminderScheduler already started")
            return

        self.scheduler.add_job(
            self._sweep_job,
            IntervalTrigger(seconds=SWEEP_INTERVAL_SECONDS, timezone=SCHEDULER_TIMEZONE),
            id=SWEEP_JOB_ID,
            name="Sweep Due Reminders",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        if self.escalation is not None:
            self.scheduler.add_job(
                self._escalation_job,
                IntervalTrigger(seconds=ESCALATION_INTERVAL_SECONDS, timezone=SCHEDULER_TIMEZONE),
                id=ESCALATION_JOB_ID,
                name="Escalate Unresolved Reminders",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        if self.store is not None:
            self.scheduler.add_job(
                self._cleanup_job,
                CronTrigger(hour=CLEANUP_CRON_HOUR, minute=0, timezone=SCHEDULER_TIMEZONE),
                id=CLEANUP_JOB_ID,
                name="Expire Old Reminders",
                replace_existing=True,
            )

        if self._owns_scheduler:
            self.scheduler.start()

        self._started = True
        logger.info(f"ReminderScheduler started (sweep every {SWEEP_INTERVAL_SECONDS}s)")

    async def shutdown(self):
        """Stop the scheduler."""
        if not self._started:
            return

        if self._owns_scheduler:
            self.scheduler.shutdown(wait=True)

        self._started = False
        logger.info("ReminderScheduler stopped")

    # =========================================================================
    # Jobs
    # =========================================================================

    async def trigger_sweep_now(self, now: Optional[datetime] = None) -> SweepResult:
        """Run a sweep immediately; waits for an in-flight sweep to finish first."""
        async with self._sweep_lock:
            return await self.sweep.run_sweep(now)

    async def _sweep_job(self):
        try:
            await self.trigger_sweep_now()
        except Exception as e:
            logger.error(f"Error sweeping due reminders: {e}", exc_info=True)

    async def run_escalations_now(self, now: Optional[datetime] = None) -> EscalationResult:
        if self.escalation is None:
            raise ConfigurationError("No escalation handler configured")
        return await self.escalation.run_escalations(now)

    async def _escalation_job(self):
        try:
            await self.run_escalations_now()
        except Exception as e:
            logger.error(f"Error running escalations: {e}", exc_info=True)

    async def _cleanup_job(self):
        try:
            count = await self.store.cleanup_expired(utcnow())
            logger.info(f"Expiry cleanup deactivated {count} reminders")
        except Exception as e:
            logger.error(f"Error cleaning up expired reminders: {e}", exc_info=True)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_jobs(self) -> List[Dict[str, Any]]:
        """
        Get list of the engine's scheduled jobs.

        Returns:
            List of job info dictionaries
        """
        own = {SWEEP_JOB_ID, ESCALATION_JOB_ID, CLEANUP_JOB_ID}
        jobs = []
        for job in self.scheduler.get_jobs():
            if job.id in own:
                jobs.append({
                    "job_id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                    "trigger": str(job.trigger),
                })
        return jobs

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.scheduler.running


# =============================================================================
# Module-level singleton
# =============================================================================

_reminder_scheduler: Optional[ReminderScheduler] = None


def get_reminder_scheduler() -> ReminderScheduler:
    """Get the process-wide reminder scheduler set up by initialize_reminder_scheduler."""
    if _reminder_scheduler is None:
        raise ConfigurationError("Reminder scheduler has not been initialized")
    return _reminder_scheduler


async def initialize_reminder_scheduler(
    sweep: ReminderSweep,
    escalation: Optional[EscalationHandler] = None,
    store: Optional[ReminderStore] = None,
) -> ReminderScheduler:
    """Create, register and start the reminder scheduler."""
    global _reminder_scheduler
    if _reminder_scheduler is None:
        _reminder_scheduler = ReminderScheduler(sweep, escalation=escalation, store=store)
    await _reminder_scheduler.start()
    return _reminder_scheduler
