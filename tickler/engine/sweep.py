"""
Due-Reminder Sweep
==================

Periodic batch that finds due reminders and takes each one through a trigger
cycle:

    claim -> conditions -> dispatch -> trigger bookkeeping
          -> successor (recurring) -> save

Guarantees:
- Selection order is priority desc, then scheduled_at asc. Completion order
  under concurrency is not guaranteed.
- A reminder is only processed by the worker that won its claim; a lost
  claim is a no-op.
- One reminder's failure never aborts the batch; the sweep always returns a
  summary.
- A failed save is retried once; after that the claim is dropped and the
  stored reminder keeps its original scheduled_at and status, so the next
  sweep picks it up again.
- Condition suppression defers the reminder with exponential backoff
  (deferred_until) instead of re-evaluating it on every sweep.
- The final write only lands while the row is still leased, not cancelled
  and not rescheduled. If a cancel or snooze got there first, this cycle's
  deliveries are folded into the stored reminder, the user's change is kept
  and any successor spawned for it is removed.
"""

import asyncio
import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar
from uuid import NAMESPACE_URL, uuid4, uuid5

from pydantic import BaseModel, Field

from tickler.db.models.reminder import (
    Delivery,
    DeliveryStatus,
    Reminder,
    ReminderStatus,
    SnoozeInfo,
    ensure_utc,
    utcnow,
)
from tickler.engine.conditions import ConditionEvaluator
from tickler.engine.dispatcher import DeliveryDispatcher
from tickler.engine.recurrence import CustomEvaluator, next_occurrence
from tickler.services.exceptions import ConcurrencyError, StoreError
from tickler.services.reminder_store import ReminderStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Configuration
# =============================================================================

SWEEP_BATCH_SIZE: int = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
SWEEP_CONCURRENCY: int = int(os.getenv("SWEEP_CONCURRENCY", "8"))
SWEEP_CLAIM_LEASE_SECONDS: int = int(os.getenv("SWEEP_CLAIM_LEASE_SECONDS", "300"))
CONDITION_RECHECK_BASE_SECONDS: int = int(os.getenv("CONDITION_RECHECK_BASE_SECONDS", "60"))
CONDITION_RECHECK_MAX_SECONDS: int = int(os.getenv("CONDITION_RECHECK_MAX_SECONDS", "3600"))


# Per-reminder outcomes
SENT = "sent"
FAILED = "failed"
DEFERRED = "deferred"
SKIPPED = "skipped"
CANCELLED = "cancelled"
RESCHEDULED = "rescheduled"


class SweepFailure(BaseModel):
    reminder_id: str
    error: str
    error_type: str


class SweepResult(BaseModel):
    """Aggregate summary of one sweep run."""
    processed_count: int = Field(default=0, description="Reminders taken through a cycle")
    sent_count: int = 0
    failed_count: int = Field(default=0, description="Cycles in which every channel failed")
    deferred_count: int = 0
    skipped_count: int = Field(default=0, description="Claims lost to another worker")
    spawned_count: int = Field(default=0, description="Recurring successors created")
    selected_ids: List[str] = Field(default_factory=list, description="In selection order")
    failures: List[SweepFailure] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def successor_id(predecessor_id: str, scheduled_at: datetime) -> str:
    """Stable id for a series successor, so a retried cycle cannot duplicate it."""
    return str(uuid5(NAMESPACE_URL, f"tickler:{predecessor_id}:{scheduled_at.isoformat()}"))


def recheck_delay(checks: int, base: int, cap: int) -> timedelta:
    """Backoff before re-evaluating suppressed conditions: base * 2^(checks-1), capped."""
    exponent = max(checks - 1, 0)
    return timedelta(seconds=min(base * (2 ** min(exponent, 32)), cap))


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class ReminderSweep:
    """
    Orchestrates one sweep over the store.

    Usage:
        sweep = ReminderSweep(store, dispatcher, evaluator)
        result = await sweep.run_sweep()
    """

    def __init__(
        self,
        store: ReminderStore,
        dispatcher: DeliveryDispatcher,
        evaluator: Optional[ConditionEvaluator] = None,
        custom_evaluator: Optional[CustomEvaluator] = None,
        worker_id: Optional[str] = None,
        batch_size: int = SWEEP_BATCH_SIZE,
        concurrency: int = SWEEP_CONCURRENCY,
        lease_seconds: int = SWEEP_CLAIM_LEASE_SECONDS,
        recheck_base_seconds: int = CONDITION_RECHECK_BASE_SECONDS,
        recheck_max_seconds: int = CONDITION_RECHECK_MAX_SECONDS,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.evaluator = evaluator or ConditionEvaluator()
        self.custom_evaluator = custom_evaluator
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = batch_size
        self.concurrency = max(concurrency, 1)
        self.lease_seconds = lease_seconds
        self.recheck_base_seconds = recheck_base_seconds
        self.recheck_max_seconds = recheck_max_seconds

    # =========================================================================
    # Store helpers
    # =========================================================================

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        try:
            return await operation()
        except StoreError as e:
            logger.warning(f"{description} failed, retrying once: {e}")
            return await operation()

    async def _release_quietly(self, reminder_id: str) -> None:
        try:
            await self.store.release(reminder_id, self.worker_id)
        except Exception as e:
            logger.warning(f"Could not release claim on reminder {reminder_id}: {e}")

    async def _changed_since_claim(
        self,
        reminder_id: str,
        scheduled_at: datetime,
    ) -> Optional[Reminder]:
        """The stored reminder if it was cancelled or rescheduled under our lease."""
        try:
            current = await self.store.find_by_id(reminder_id)
        except StoreError as e:
            logger.warning(f"Could not re-read reminder {reminder_id} before saving: {e}")
            return None
        if current is None:
            return None
        if current.status == ReminderStatus.CANCELLED or current.scheduled_at != scheduled_at:
            return current
        return None

    async def _commit(self, reminder: Reminder, scheduled_at: datetime) -> bool:
        """Write the sweep's copy back. False when the row changed under the lease."""
        try:
            await self._with_retry(
                lambda: self.store.save_claimed(reminder, self.worker_id, scheduled_at),
                f"Saving {reminder.id}",
            )
        except ConcurrencyError as e:
            logger.info(f"Not saving reminder {reminder.id}: {e.message}")
            return False
        return True

    @staticmethod
    def _clear_claim(reminder: Reminder) -> None:
        reminder.claimed_by = None
        reminder.claimed_until = None

    # =========================================================================
    # Cycle steps
    # =========================================================================

    def _defer(self, reminder: Reminder, now: datetime) -> None:
        reminder.condition_checks += 1
        reminder.deferred_until = now + recheck_delay(
            reminder.condition_checks, self.recheck_base_seconds, self.recheck_max_seconds
        )
        reminder.updated_at = now
        self._clear_claim(reminder)

    def build_successor(self, reminder: Reminder, scheduled_at: datetime, now: datetime) -> Reminder:
        """Clone the recurring parts of `reminder` into a fresh scheduled occurrence."""
        successor = Reminder(
            id=successor_id(reminder.id, scheduled_at),
            owner_user_id=reminder.owner_user_id,
            subject=reminder.subject.model_copy(deep=True),
            title=reminder.title,
            message=reminder.message,
            channels=list(reminder.channels),
            scheduled_at=scheduled_at,
            timezone=reminder.timezone,
            repeat_rule=reminder.repeat_rule.model_copy(deep=True),
            priority=reminder.priority,
            snooze_info=SnoozeInfo(max_snoozes=reminder.snooze_info.max_snoozes),
            settings=reminder.settings.model_copy(deep=True),
            trigger_count=reminder.trigger_count,
            expires_at=reminder.expires_at,
            series_id=reminder.series_id or reminder.id,
            previous_id=reminder.id,
            metadata=reminder.metadata.model_copy(deep=True),
            created_at=now,
            updated_at=now,
        )
        successor.next_occurrence = next_occurrence(successor, self.custom_evaluator)
        return successor

    async def _advance_series(
        self,
        reminder: Reminder,
        now: datetime,
    ) -> Tuple[Optional[Reminder], bool]:
        """
        Spawn the next occurrence and retire `reminder`. Returns the successor
        (None at the end of the series) and whether this call created it.
        """
        upcoming = next_occurrence(reminder, self.custom_evaluator)
        reminder.next_occurrence = upcoming
        reminder.is_active = False

        if upcoming is None:
            logger.info(f"Recurring reminder {reminder.id} reached the end of its series")
            return None, False

        successor = self.build_successor(reminder, upcoming, now)

        async def create_once() -> bool:
            if await self.store.find_by_id(successor.id) is not None:
                return False
            await self.store.create(successor)
            return True

        created = await self._with_retry(create_once, f"Creating successor of {reminder.id}")
        if created:
            logger.info(
                f"Spawned successor {successor.id} of reminder {reminder.id} "
                f"at {upcoming.isoformat()}"
            )
        return successor, created

    async def _keep_concurrent_change(
        self,
        current: Reminder,
        deliveries: List[Delivery],
        now: datetime,
    ) -> str:
        """
        Fold this cycle's deliveries into a reminder that was cancelled or
        snoozed while the sweep held it. The user's change is kept.
        """
        current.deliveries.extend(deliveries)
        current.trigger_count += 1
        current.last_triggered_at = now
        current.updated_at = now
        self._clear_claim(current)

        if current.status == ReminderStatus.CANCELLED:
            current.is_active = False
            outcome = CANCELLED
            logger.info(f"Reminder {current.id} was cancelled mid-cycle; no successor spawned")
        else:
            if current.is_recurring:
                current.next_occurrence = next_occurrence(current, self.custom_evaluator)
            outcome = RESCHEDULED
            logger.info(
                f"Reminder {current.id} was snoozed mid-cycle; keeping its new time "
                f"{current.scheduled_at.isoformat()}"
            )

        await self._with_retry(lambda: self.store.save(current), f"Saving {current.id}")
        return outcome

    async def _process_claimed(self, reminder: Reminder, now: datetime, result: SweepResult) -> str:
        claimed_at = reminder.scheduled_at

        if not await self.evaluator.should_deliver(reminder, now):
            self._defer(reminder, now)
            if not await self._commit(reminder, claimed_at):
                await self._release_quietly(reminder.id)
                return SKIPPED
            logger.info(
                f"Reminder {reminder.id} deferred until {reminder.deferred_until.isoformat()} "
                f"(conditions not met, check {reminder.condition_checks})"
            )
            return DEFERRED

        known = len(reminder.deliveries)
        outcome = await self.dispatcher.dispatch(reminder, now)
        if outcome.suppressed:
            self._defer(reminder, now)
            if not await self._commit(reminder, claimed_at):
                await self._release_quietly(reminder.id)
                return SKIPPED
            return DEFERRED

        reminder.trigger_count += 1
        reminder.last_triggered_at = now
        reminder.deferred_until = None
        reminder.condition_checks = 0
        reminder.updated_at = now
        self._clear_claim(reminder)
        new_deliveries = reminder.deliveries[known:]

        current = await self._changed_since_claim(reminder.id, claimed_at)
        if current is not None:
            return await self._keep_concurrent_change(current, new_deliveries, now)

        successor, created = None, False
        if reminder.is_recurring:
            successor, created = await self._advance_series(reminder, now)

        if not await self._commit(reminder, claimed_at):
            current = await self._changed_since_claim(reminder.id, claimed_at)
            if current is None:
                logger.warning(
                    f"Lost the lease on reminder {reminder.id} before saving; "
                    f"leaving it to its current holder"
                )
                return SKIPPED
            if successor is not None:
                await self._with_retry(
                    lambda: self.store.delete(successor.id),
                    f"Removing successor {successor.id}",
                )
                logger.info(f"Removed successor {successor.id} of reminder {reminder.id}")
            return await self._keep_concurrent_change(current, new_deliveries, now)

        if created:
            result.spawned_count += 1

        if reminder.status == ReminderStatus.FAILED:
            errors = "; ".join(
                f"{d.channel.value}: {d.error}"
                for d in outcome.deliveries
                if d.status in (DeliveryStatus.FAILED, DeliveryStatus.BOUNCED)
            )
            result.failures.append(
                SweepFailure(reminder_id=reminder.id, error=errors, error_type="TransportError")
            )
            return FAILED
        return SENT

    async def process_reminder(self, reminder: Reminder, now: datetime, result: SweepResult) -> str:
        """Run one reminder through a cycle. Raises on unrecoverable errors."""
        try:
            claimed = await self.store.claim(reminder.id, self.worker_id, now, self.lease_seconds)
        except ConcurrencyError as e:
            logger.info(f"Skipping reminder {reminder.id}: {e.message}")
            return SKIPPED

        try:
            return await self._process_claimed(claimed, now, result)
        except Exception:
            await self._release_quietly(claimed.id)
            raise

    # =========================================================================
    # Sweep
    # =========================================================================

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Process every due reminder once.

        Args:
            now: Sweep time (default: real clock)

        Returns:
            SweepResult with per-outcome counts and per-reminder failures
        """
        now = ensure_utc(now) or utcnow()
        result = SweepResult(started_at=now)

        due = await self.store.find_due(now, limit=self.batch_size)
        result.selected_ids = [r.id for r in due]

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(reminder: Reminder) -> None:
            async with semaphore:
                try:
                    outcome = await self.process_reminder(reminder, now, result)
                except Exception as e:
                    logger.error(f"Error processing reminder {reminder.id}: {e}")
                    result.failures.append(
                        SweepFailure(
                            reminder_id=reminder.id,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    )
                    return

            if outcome == SKIPPED:
                result.skipped_count += 1
                return
            result.processed_count += 1
            if outcome == SENT:
                result.sent_count += 1
            elif outcome == FAILED:
                result.failed_count += 1
            elif outcome == DEFERRED:
                result.deferred_count += 1

        await asyncio.gather(*[run_one(reminder) for reminder in due])

        result.finished_at = utcnow()
        logger.info(
            f"Sweep complete: selected={len(due)} processed={result.processed_count} "
            f"sent={result.sent_count} failed={result.failed_count} "
            f"deferred={result.deferred_count} skipped={result.skipped_count} "
            f"spawned={result.spawned_count} errors={len(result.failures) - result.failed_count}"
        )
        return result
