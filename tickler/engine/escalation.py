"""
Escalation Handler
==================

Notifies secondary recipients when a reminder's latest delivery cycle stays
unresolved for too long.

A cycle is resolved once any of its deliveries is confirmed delivered, read
or clicked, or once the owner acknowledges the reminder. Until then every
escalation step whose delay has elapsed since the latest attempt fires once
for that cycle, in ascending delay order.

Escalation never changes the reminder's status.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from tickler.db.models.reminder import (
    EscalationRecord,
    EscalationStep,
    Reminder,
    utcnow,
)
from tickler.engine.dispatcher import DeliveryDispatcher
from tickler.services.reminder_store import ReminderStore

logger = logging.getLogger(__name__)


class EscalationResult(BaseModel):
    checked: int = 0
    fired: int = 0
    failures: List[dict] = Field(default_factory=list)


def due_steps(reminder: Reminder, now: datetime) -> List[Tuple[int, EscalationStep]]:
    """
    Steps that should fire now for the reminder's latest cycle, as
    (step_index, step) pairs in ascending delay order.
    """
    escalation = reminder.settings.escalation
    if not escalation.enabled or reminder.acknowledged_at is not None:
        return []

    cycle = reminder.current_cycle
    deliveries = reminder.cycle_deliveries(cycle)
    if not deliveries or any(d.is_resolved for d in deliveries):
        return []

    attempts = [d.attempted_at for d in deliveries if d.attempted_at is not None]
    if not attempts:
        return []
    latest_attempt = max(attempts)

    fired = {(r.cycle, r.step_index) for r in reminder.escalations}
    ordered = sorted(enumerate(escalation.steps), key=lambda pair: pair[1].delay_minutes)

    return [
        (index, step)
        for index, step in ordered
        if (cycle, index) not in fired
        and now - latest_attempt >= timedelta(minutes=step.delay_minutes)
    ]


class EscalationHandler:
    """Runs escalation steps for unresolved reminders."""

    def __init__(self, store: ReminderStore, dispatcher: DeliveryDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def fire_step(
        self,
        reminder: Reminder,
        step_index: int,
        step: EscalationStep,
        now: datetime,
    ) -> EscalationRecord:
        """Send one step to every recipient over every step channel."""
        message = step.message or f"Escalation: {reminder.title}"
        context = {
            "reminder_id": reminder.id,
            "subject": reminder.subject.model_dump(mode="json"),
            "escalation_step": step_index,
            "owner_user_id": reminder.owner_user_id,
        }

        pairs = [(recipient, channel) for recipient in step.recipients for channel in step.channels]
        results = await asyncio.gather(
            *[
                self.dispatcher.send(channel, recipient, reminder.title, message, context)
                for recipient, channel in pairs
            ]
        )

        record = EscalationRecord(
            cycle=reminder.current_cycle,
            step_index=step_index,
            fired_at=now,
            channels=step.channels,
            recipients=step.recipients,
        )
        for (recipient, channel), result in zip(pairs, results):
            target = record.accepted if result.accepted else record.failed
            target.append(f"{recipient}:{channel.value}")

        logger.info(
            f"Escalated reminder {reminder.id} step {step_index}: "
            f"{len(record.accepted)} sent, {len(record.failed)} failed"
        )
        return record

    async def escalate(self, reminder: Reminder, now: datetime) -> int:
        """Fire every due step for one reminder. Returns how many fired."""
        steps = due_steps(reminder, now)
        if not steps:
            return 0

        for step_index, step in steps:
            reminder.escalations.append(await self.fire_step(reminder, step_index, step, now))

        reminder.updated_at = now
        await self.store.save(reminder)
        return len(steps)

    async def run_escalations(self, now: Optional[datetime] = None) -> EscalationResult:
        now = now or utcnow()
        result = EscalationResult()

        candidates = await self.store.find_escalation_candidates()
        for reminder in candidates:
            result.checked += 1
            try:
                result.fired += await self.escalate(reminder, now)
            except Exception as e:
                logger.error(f"Escalation failed for reminder {reminder.id}: {e}")
                result.failures.append({"reminder_id": reminder.id, "error": str(e)})

        if result.fired or result.failures:
            logger.info(
                f"Escalation run: checked={result.checked} fired={result.fired} "
                f"failures={len(result.failures)}"
            )
        return result
