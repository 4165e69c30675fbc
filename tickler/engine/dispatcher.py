"""
Delivery Dispatcher
===================

Sends one trigger cycle of a reminder over its channels and records one
Delivery per attempted channel.

Flow per dispatch:
1. Ask the preference lookup about every requested channel; opted-out
   channels are skipped without a delivery record
2. Append a pending Delivery per remaining channel
3. Send on all of them concurrently, each bounded by a timeout
4. Derive the reminder status from the results

A failing channel never blocks the others.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from tickler.db.models.reminder import (
    Channel,
    Delivery,
    DeliveryStatus,
    Reminder,
    ReminderStatus,
    utcnow,
)
from tickler.engine.channels import ChannelTransport, TransportResult
from tickler.engine.preferences import (
    REMINDER_CATEGORY,
    AllowAllPreferences,
    PreferenceLookup,
)
from tickler.services.exceptions import ChannelTimeoutError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

CHANNEL_SEND_TIMEOUT_SECONDS: float = float(os.getenv("CHANNEL_SEND_TIMEOUT_SECONDS", "10"))


class DeliveryOutcome(BaseModel):
    """What a single dispatch did to a reminder."""
    status: Optional[ReminderStatus] = Field(
        default=None,
        description="Status derived from this cycle; None when nothing was attempted",
    )
    cycle: int
    deliveries: List[Delivery] = Field(default_factory=list)
    suppressed_channels: List[Channel] = Field(default_factory=list)

    @property
    def suppressed(self) -> bool:
        """True when preferences removed every channel."""
        return not self.deliveries and bool(self.suppressed_channels)

    @property
    def accepted_count(self) -> int:
        return sum(1 for d in self.deliveries if d.status == DeliveryStatus.SENT)


def derive_status(current: ReminderStatus, deliveries: List[Delivery]) -> ReminderStatus:
    """
    Reminder status after a set of delivery attempts.

    delivered is never regressed; any accepted channel means sent; only a
    cycle in which every channel failed is failed.
    """
    if current == ReminderStatus.DELIVERED:
        return current
    if any(d.status == DeliveryStatus.DELIVERED for d in deliveries):
        return ReminderStatus.DELIVERED
    if any(d.status == DeliveryStatus.SENT for d in deliveries):
        return ReminderStatus.SENT
    if deliveries and all(
        d.status in (DeliveryStatus.FAILED, DeliveryStatus.BOUNCED) for d in deliveries
    ):
        return ReminderStatus.FAILED
    return current


class DeliveryDispatcher:
    """
    Fans a reminder out to its channel transports.

    Channels without a registered transport fail with a "no transport"
    error instead of raising.
    """

    def __init__(
        self,
        transports: Dict[Channel, ChannelTransport],
        preferences: Optional[PreferenceLookup] = None,
        timeout: float = CHANNEL_SEND_TIMEOUT_SECONDS,
    ):
        self.transports = dict(transports)
        self.preferences = preferences or AllowAllPreferences()
        self.timeout = timeout

    async def send(
        self,
        channel: Channel,
        recipient_ref: str,
        title: str,
        message: str,
        context: Dict,
    ) -> TransportResult:
        """
        Send one message on one channel. Never raises: timeouts and transport
        exceptions come back as rejected results.
        """
        transport = self.transports.get(channel)
        if transport is None:
            return TransportResult.rejected(f"No transport configured for {channel.value}")

        try:
            return await asyncio.wait_for(
                transport.send(channel.value, recipient_ref, title, message, context),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            error = ChannelTimeoutError(channel.value, self.timeout, original_error=e)
            logger.warning(f"{error.message} (recipient {recipient_ref})")
            return TransportResult.rejected(error.message)
        except Exception as e:
            logger.error(f"Transport {channel.value} raised for recipient {recipient_ref}: {e}")
            return TransportResult.rejected(str(e) or type(e).__name__)

    async def dispatch(self, reminder: Reminder, now: Optional[datetime] = None) -> DeliveryOutcome:
        """
        Deliver one trigger cycle of `reminder`.

        Mutates the reminder: appends deliveries and updates its status. The
        caller persists it.
        """
        now = now or utcnow()
        cycle = reminder.trigger_count + 1

        allowed: List[Channel] = []
        suppressed: List[Channel] = []
        for channel in reminder.channels:
            if await self.preferences.should_receive(
                reminder.owner_user_id, REMINDER_CATEGORY, channel.value
            ):
                allowed.append(channel)
            else:
                suppressed.append(channel)

        if suppressed:
            logger.info(
                f"Reminder {reminder.id}: channels suppressed by preferences: "
                f"{[c.value for c in suppressed]}"
            )

        if not allowed:
            return DeliveryOutcome(cycle=cycle, suppressed_channels=suppressed)

        deliveries = [
            Delivery(cycle=cycle, channel=channel, scheduled_at=now) for channel in allowed
        ]
        reminder.deliveries.extend(deliveries)

        context = {
            "reminder_id": reminder.id,
            "subject": reminder.subject.model_dump(mode="json"),
            "priority": reminder.priority.value,
            "cycle": cycle,
        }

        results = await asyncio.gather(
            *[
                self.send(
                    delivery.channel,
                    reminder.owner_user_id,
                    reminder.title,
                    reminder.message,
                    {**context, "delivery_id": delivery.id},
                )
                for delivery in deliveries
            ]
        )

        for delivery, result in zip(deliveries, results):
            self._apply_result(delivery, result, now)

        reminder.status = derive_status(reminder.status, deliveries)
        reminder.updated_at = now

        sent = sum(1 for d in deliveries if d.status == DeliveryStatus.SENT)
        logger.info(
            f"Dispatched reminder {reminder.id} cycle {cycle}: "
            f"{sent}/{len(deliveries)} channels accepted -> {reminder.status.value}"
        )

        return DeliveryOutcome(
            status=reminder.status,
            cycle=cycle,
            deliveries=deliveries,
            suppressed_channels=suppressed,
        )

    @staticmethod
    def _apply_result(delivery: Delivery, result: TransportResult, now: datetime) -> None:
        if result.accepted:
            delivery.advance(DeliveryStatus.SENT)
            delivery.sent_at = now
            delivery.message_id = result.message_id
            return

        delivery.advance(DeliveryStatus.BOUNCED if result.bounced else DeliveryStatus.FAILED)
        delivery.error = result.error or "Rejected by transport"
