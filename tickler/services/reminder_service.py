"""
Reminder Service
================

Application-facing operations on reminders: creation with validation,
snooze, cancel/dismiss, acknowledgement, out-of-band delivery confirmations,
queries and statistics.

Key Features:
1. Input validation before anything touches the store
2. State machine guards (snooze limit, cancellable states)
3. Forward-only delivery status updates from provider callbacks
4. Structured error handling with OperationResult

The clock is injectable on every time-sensitive method (`now=`) so callers
and tests control "now" explicitly.
"""

import logging
import os
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

import pytz
from pydantic import ValidationError as PydanticValidationError

from tickler.db.models.reminder import (
    DEFAULT_RETENTION,
    Channel,
    DeliveryStatus,
    EntityType,
    Priority,
    Reminder,
    ReminderCreate,
    ReminderMetadata,
    ReminderSource,
    ReminderStatus,
    SnoozeInfo,
    Subject,
    ensure_utc,
    utcnow,
)
from tickler.engine.dispatcher import derive_status
from tickler.engine.recurrence import CustomEvaluator, next_occurrence
from tickler.services.exceptions import (
    DeliveryNotFoundError,
    InvalidTransitionError,
    OperationResult,
    ReminderNotFoundError,
    ReminderValidationError,
    SnoozeLimitError,
    TicklerError,
    ValidationError,
)
from tickler.services.reminder_store import CANCELLABLE_STATUSES, ReminderStore

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_SNOOZE_MINUTES: int = int(os.getenv("DEFAULT_SNOOZE_MINUTES", "15"))

DELIVERY_EVENTS = {"delivered", "failed", "bounced", "read", "clicked"}


def _validation_failure(e: PydanticValidationError) -> ReminderValidationError:
    first = e.errors()[0] if e.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return ReminderValidationError(
        message=f"Invalid reminder data: {first.get('msg', str(e))}",
        field=field,
        original_error=e,
    )


class ReminderService:
    """
    Service for managing reminders.

    Provides methods for:
    - Creating reminders (single, bulk, from task due dates and milestones)
    - Snoozing, cancelling, dismissing and acknowledging reminders
    - Recording provider delivery confirmations
    - Listing reminders by user, entity, series and upcoming window
    - Expiry cleanup and statistics

    All methods return OperationResult for structured error handling.
    """

    def __init__(
        self,
        store: ReminderStore,
        custom_evaluator: Optional[CustomEvaluator] = None,
    ):
        """
        Initialize the ReminderService.

        Args:
            store: Reminder persistence
            custom_evaluator: Expansion for `custom` recurrence rules
        """
        self.store = store
        self.custom_evaluator = custom_evaluator

    async def _load(self, reminder_id: str) -> Reminder:
        reminder = await self.store.find_by_id(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id=reminder_id)
        return reminder

    # =========================================================================
    # Create Operations
    # =========================================================================

    def _validate_create(self, data: ReminderCreate, now: datetime) -> None:
        if data.scheduled_at.tzinfo is None:
            raise ReminderValidationError(
                message="scheduled_at must be timezone-aware",
                field="scheduled_at",
            )
        if data.scheduled_at <= now:
            raise ReminderValidationError(
                message=(
                    f"scheduled_at must be in the future. "
                    f"Got {data.scheduled_at}, current time is {now}"
                ),
                field="scheduled_at",
            )
        if data.timezone not in pytz.all_timezones_set:
            raise ReminderValidationError(
                message=f"Unknown timezone: {data.timezone}",
                field="timezone",
            )
        if data.expires_at is not None and ensure_utc(data.expires_at) <= data.scheduled_at:
            raise ReminderValidationError(
                message="expires_at must be after scheduled_at",
                field="expires_at",
            )

    def build_reminder(self, data: ReminderCreate, now: datetime) -> Reminder:
        """Materialize a validated creation request into a Reminder."""
        reminder_id = str(uuid4())
        reminder = Reminder(
            id=reminder_id,
            owner_user_id=data.owner_user_id,
            subject=data.subject,
            title=data.title,
            message=data.message,
            channels=data.channels,
            scheduled_at=data.scheduled_at,
            timezone=data.timezone,
            repeat_rule=data.repeat_rule,
            priority=data.priority,
            snooze_info=SnoozeInfo(max_snoozes=data.max_snoozes),
            settings=data.settings,
            expires_at=data.expires_at,
            series_id=reminder_id,
            metadata=data.metadata,
            created_at=now,
            updated_at=now,
        )

        if reminder.is_recurring:
            reminder.next_occurrence = next_occurrence(reminder, self.custom_evaluator)
        elif reminder.expires_at is None:
            reminder.expires_at = now + DEFAULT_RETENTION

        return reminder

    async def create_reminder(
        self,
        data: Union[ReminderCreate, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Create a new reminder.

        Args:
            data: ReminderCreate or a dict with the same fields
            now: Current time (default: real clock)

        Returns:
            OperationResult with {"reminder_id", "reminder"} on success
        """
        now = ensure_utc(now) or utcnow()

        # Validate inputs BEFORE touching the store
        try:
            if not isinstance(data, ReminderCreate):
                data = ReminderCreate.model_validate(data)
            self._validate_create(data, now)
        except PydanticValidationError as e:
            return OperationResult.fail(_validation_failure(e))
        except ValidationError as e:
            return OperationResult.fail(e)

        reminder = self.build_reminder(data, now)

        try:
            await self.store.create(reminder)
        except TicklerError as e:
            logger.error(f"Failed to create reminder: {e}")
            return OperationResult.fail(e)

        logger.info(
            f"Created reminder {reminder.id} for user {reminder.owner_user_id} "
            f"at {reminder.scheduled_at.isoformat()}"
        )
        return OperationResult.ok({"reminder_id": reminder.id, "reminder": reminder})

    async def create_bulk_reminders(
        self,
        data: Union[ReminderCreate, Dict[str, Any]],
        user_ids: List[str],
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Create the same reminder for several users.

        One user's failure does not stop the others; failures are returned
        alongside the created reminders.
        """
        base = data.model_dump() if isinstance(data, ReminderCreate) else dict(data)

        created: List[Reminder] = []
        failed: List[Dict[str, Any]] = []
        for user_id in user_ids:
            result = await self.create_reminder({**base, "owner_user_id": user_id}, now=now)
            if result.success:
                created.append(result.data["reminder"])
            else:
                failed.append({"user_id": user_id, "error": result.error.message})

        logger.info(f"Bulk created {len(created)} reminders ({len(failed)} failed)")
        return OperationResult.ok({"reminders": created, "failed": failed})

    async def create_task_due_date_reminder(
        self,
        task_id: str,
        task_title: str,
        due_date: datetime,
        user_id: str,
        offset_hours: int = 24,
        channels: Optional[List[Channel]] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Remind `user_id` about a task `offset_hours` before it is due.

        Returns ok with reminder=None when that time has already passed.
        """
        now = ensure_utc(now) or utcnow()
        due_date = ensure_utc(due_date)
        remind_at = due_date - timedelta(hours=offset_hours)

        if remind_at <= now:
            logger.info(f"Skipping due date reminder for task {task_id}: {remind_at} is in the past")
            return OperationResult.ok({"reminder": None, "reason": "reminder time already passed"})

        return await self.create_reminder(
            ReminderCreate(
                owner_user_id=user_id,
                subject=Subject(entity_type=EntityType.TASK, entity_id=task_id),
                title=f"Task due: {task_title}",
                message=f'Task "{task_title}" is due on {due_date.strftime("%a %b %d %Y")}',
                channels=channels or [Channel.PUSH, Channel.EMAIL],
                scheduled_at=remind_at,
                priority=Priority.HIGH,
                metadata=ReminderMetadata(source=ReminderSource.AUTOMATIC),
            ),
            now=now,
        )

    async def create_milestone_reminder(
        self,
        project_id: str,
        project_name: str,
        milestone_title: str,
        due_date: datetime,
        user_id: str,
        offset_days: int = 3,
        channels: Optional[List[Channel]] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Remind `user_id` about a project milestone `offset_days` before it is due.
        Projects are spaces, so the reminder is attached to the space.

        Returns ok with reminder=None when that time has already passed.
        """
        now = ensure_utc(now) or utcnow()
        due_date = ensure_utc(due_date)
        remind_at = due_date - timedelta(days=offset_days)

        if remind_at <= now:
            logger.info(
                f"Skipping milestone reminder for project {project_id}: {remind_at} is in the past"
            )
            return OperationResult.ok({"reminder": None, "reason": "reminder time already passed"})

        return await self.create_reminder(
            ReminderCreate(
                owner_user_id=user_id,
                subject=Subject(entity_type=EntityType.SPACE, entity_id=project_id),
                title=f"Milestone due: {milestone_title}",
                message=(
                    f'Project "{project_name}" milestone "{milestone_title}" '
                    f'is due on {due_date.strftime("%a %b %d %Y")}'
                ),
                channels=channels or [Channel.PUSH, Channel.EMAIL],
                scheduled_at=remind_at,
                metadata=ReminderMetadata(source=ReminderSource.AUTOMATIC),
            ),
            now=now,
        )

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def get_reminder(self, reminder_id: str) -> OperationResult:
        try:
            return OperationResult.ok({"reminder": await self._load(reminder_id)})
        except TicklerError as e:
            return OperationResult.fail(e)

    async def list_user_reminders(
        self,
        user_id: str,
        status: Optional[ReminderStatus] = None,
        limit: int = 50,
    ) -> OperationResult:
        try:
            reminders = await self.store.find_by_user(user_id, status=status, limit=limit)
        except TicklerError as e:
            logger.error(f"Error listing reminders for user {user_id}: {e}")
            return OperationResult.fail(e)
        return OperationResult.ok({"reminders": reminders, "count": len(reminders)})

    async def list_entity_reminders(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: Optional[ReminderStatus] = None,
    ) -> OperationResult:
        try:
            reminders = await self.store.find_by_entity(entity_type, entity_id, status=status)
        except TicklerError as e:
            return OperationResult.fail(e)
        return OperationResult.ok({"reminders": reminders, "count": len(reminders)})

    async def list_recurring_reminders(self, active_only: bool = True) -> OperationResult:
        try:
            reminders = await self.store.find_recurring(active_only=active_only)
        except TicklerError as e:
            return OperationResult.fail(e)
        return OperationResult.ok({"reminders": reminders, "count": len(reminders)})

    async def list_upcoming_reminders(
        self,
        user_id: str,
        hours: int = 24,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Active scheduled reminders firing within the next `hours`."""
        now = ensure_utc(now) or utcnow()
        until = now + timedelta(hours=hours)
        try:
            reminders = await self.store.find_by_user(
                user_id, status=ReminderStatus.SCHEDULED, limit=1000
            )
        except TicklerError as e:
            return OperationResult.fail(e)

        upcoming = [r for r in reminders if r.is_active and now <= r.scheduled_at <= until]
        return OperationResult.ok({"reminders": upcoming, "count": len(upcoming)})

    # =========================================================================
    # State Operations
    # =========================================================================

    async def snooze_reminder(
        self,
        reminder_id: str,
        minutes: int = DEFAULT_SNOOZE_MINUTES,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Push a pending reminder `minutes` into the future.

        The reminder passes through `snoozed` and re-enters `scheduled` with
        scheduled_at = now + minutes. At the snooze limit it is left
        untouched and a SnoozeLimitError is returned.
        """
        if minutes <= 0:
            return OperationResult.fail(
                ReminderValidationError(message="Snooze minutes must be positive", field="minutes")
            )

        now = ensure_utc(now) or utcnow()
        try:
            reminder = await self._load(reminder_id)

            if reminder.status not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(
                    reminder_id, reminder.status.value, ReminderStatus.SNOOZED.value
                )
            if not reminder.can_snooze:
                raise SnoozeLimitError(
                    reminder_id,
                    reminder.snooze_info.snooze_count,
                    reminder.snooze_info.max_snoozes,
                )

            until = now + timedelta(minutes=minutes)
            reminder.status = ReminderStatus.SNOOZED
            reminder.snooze_info.snoozed_at = now
            reminder.snooze_info.snoozed_until = until
            reminder.snooze_info.snooze_count += 1

            # snoozed always re-enters scheduled with the new time
            reminder.scheduled_at = until
            if reminder.is_recurring:
                reminder.next_occurrence = next_occurrence(reminder, self.custom_evaluator)
            reminder.status = ReminderStatus.SCHEDULED
            reminder.deferred_until = None
            reminder.condition_checks = 0
            reminder.updated_at = now

            await self.store.save(reminder)
        except TicklerError as e:
            logger.warning(f"Snooze of reminder {reminder_id} rejected: {e}")
            return OperationResult.fail(e)

        logger.info(
            f"Snoozed reminder {reminder_id} until {until.isoformat()} "
            f"({reminder.snooze_info.snooze_count}/{reminder.snooze_info.max_snoozes})"
        )
        return OperationResult.ok({"reminder": reminder, "snoozed_until": until})

    async def cancel_reminder(self, reminder_id: str, now: Optional[datetime] = None) -> OperationResult:
        """
        Cancel a pending reminder. Sets is_active = False so the sweep never
        picks it up again.
        """
        now = ensure_utc(now) or utcnow()
        try:
            reminder = await self._load(reminder_id)
            if reminder.status not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(
                    reminder_id, reminder.status.value, ReminderStatus.CANCELLED.value
                )
            reminder.status = ReminderStatus.CANCELLED
            reminder.is_active = False
            reminder.updated_at = now
            await self.store.save(reminder)
        except TicklerError as e:
            logger.error(f"Error cancelling reminder {reminder_id}: {e}")
            return OperationResult.fail(e)

        logger.info(f"Cancelled reminder {reminder_id}")
        return OperationResult.ok({"reminder_id": reminder_id, "status": "cancelled"})

    async def dismiss_reminder(self, reminder_id: str, now: Optional[datetime] = None) -> OperationResult:
        """User-facing alias of cancel."""
        return await self.cancel_reminder(reminder_id, now=now)

    async def cancel_recurring_series(
        self,
        reminder_id: str,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Cancel every still-pending member of the reminder's series."""
        now = ensure_utc(now) or utcnow()
        try:
            reminder = await self._load(reminder_id)
            members = await self.store.find_by_series(reminder.series_id or reminder.id)

            cancelled = 0
            for member in members:
                if member.is_active and member.status in CANCELLABLE_STATUSES:
                    member.status = ReminderStatus.CANCELLED
                    member.is_active = False
                    member.updated_at = now
                    await self.store.save(member)
                    cancelled += 1
        except TicklerError as e:
            logger.error(f"Error cancelling series of reminder {reminder_id}: {e}")
            return OperationResult.fail(e)

        logger.info(f"Cancelled {cancelled} reminders in series {reminder.series_id}")
        return OperationResult.ok({"series_id": reminder.series_id, "cancelled_count": cancelled})

    async def acknowledge_reminder(
        self,
        reminder_id: str,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Record that the user saw the reminder; stops further escalation."""
        now = ensure_utc(now) or utcnow()
        try:
            reminder = await self._load(reminder_id)
            if reminder.acknowledged_at is None:
                reminder.acknowledged_at = now
                reminder.updated_at = now
                await self.store.save(reminder)
        except TicklerError as e:
            return OperationResult.fail(e)

        return OperationResult.ok({"reminder": reminder, "acknowledged_at": reminder.acknowledged_at})

    async def record_delivery_event(
        self,
        message_id: str,
        event: str,
        at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> OperationResult:
        """
        Apply a provider callback to the delivery carrying `message_id`.

        Events: delivered, failed, bounced, read, clicked. Delivery status
        only moves forward; read/clicked on a sent delivery also mark it
        delivered. The reminder status is then recomputed from the cycle the
        delivery belongs to.
        """
        if event not in DELIVERY_EVENTS:
            return OperationResult.fail(
                ValidationError(
                    message=f"Unknown delivery event: {event}. Must be one of {sorted(DELIVERY_EVENTS)}",
                    field="event",
                )
            )

        at = ensure_utc(at) or utcnow()
        try:
            reminder = await self.store.find_by_message_id(message_id)
            delivery = reminder.find_delivery(message_id) if reminder else None
            if delivery is None:
                raise DeliveryNotFoundError(message_id)

            changed = False
            if event == "delivered":
                changed = delivery.advance(DeliveryStatus.DELIVERED)
                if changed:
                    delivery.delivered_at = at
            elif event in ("failed", "bounced"):
                target = DeliveryStatus.FAILED if event == "failed" else DeliveryStatus.BOUNCED
                changed = delivery.advance(target)
                if changed:
                    delivery.error = error or event
            else:
                if event == "read" and delivery.read_at is None:
                    delivery.read_at = at
                    changed = True
                if event == "clicked" and delivery.clicked_at is None:
                    delivery.clicked_at = at
                    changed = True
                if delivery.advance(DeliveryStatus.DELIVERED):
                    delivery.delivered_at = delivery.delivered_at or at
                    changed = True

            if changed:
                if reminder.status in (
                    ReminderStatus.SENT,
                    ReminderStatus.FAILED,
                    ReminderStatus.DELIVERED,
                ):
                    reminder.status = derive_status(
                        reminder.status, reminder.cycle_deliveries(delivery.cycle)
                    )
                reminder.updated_at = at
                await self.store.save(reminder)
        except TicklerError as e:
            logger.warning(f"Delivery event {event} for message {message_id} not applied: {e}")
            return OperationResult.fail(e)

        if changed:
            logger.info(
                f"Delivery {delivery.id} of reminder {reminder.id} -> {delivery.status.value} "
                f"({event}); reminder is {reminder.status.value}"
            )
        return OperationResult.ok({"reminder": reminder, "delivery": delivery, "changed": changed})

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def cleanup_expired(self, now: Optional[datetime] = None) -> OperationResult:
        now = ensure_utc(now) or utcnow()
        try:
            count = await self.store.cleanup_expired(now)
        except TicklerError as e:
            logger.error(f"Expiry cleanup failed: {e}")
            return OperationResult.fail(e)
        return OperationResult.ok({"expired_count": count})

    async def get_stats(
        self,
        user_id: Optional[str] = None,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Reminder counts per status over the last `days`, plus the average
        delay between scheduled_at and the actual trigger.
        """
        now = ensure_utc(now) or utcnow()
        try:
            reminders = await self.store.list_since(now - timedelta(days=days), user_id=user_id)
        except TicklerError as e:
            return OperationResult.fail(e)

        by_status = Counter(r.status.value for r in reminders)
        latencies = [
            (r.last_triggered_at - r.scheduled_at).total_seconds()
            for r in reminders
            if r.last_triggered_at is not None
        ]

        return OperationResult.ok({
            "total": len(reminders),
            "by_status": dict(by_status),
            "triggered": len(latencies),
            "avg_trigger_latency_seconds": (
                sum(latencies) / len(latencies) if latencies else None
            ),
        })
