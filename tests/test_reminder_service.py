"""
Tests for ReminderService
=========================

Run with: pytest tests/test_reminder_service.py -v

Tests cover:
1. Creation and input validation (including task and milestone helpers)
2. Snooze limits and cancel transitions
3. Series cancellation
4. Provider delivery events
5. Queries, expiry cleanup and statistics
"""

import os
import sys
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tickler.db.models.reminder import (
    Channel,
    Delivery,
    DeliveryStatus,
    EntityType,
    Priority,
    ReminderCreate,
    ReminderSource,
    ReminderStatus,
    RepeatRule,
    SnoozeInfo,
)
from tickler.services.exceptions import (
    DeliveryNotFoundError,
    InvalidTransitionError,
    ReminderNotFoundError,
    ReminderValidationError,
    SnoozeLimitError,
    StoreError,
    ValidationError,
)
from tickler.services.reminder_service import ReminderService

TEST_USER_ID = "00000000-0000-4000-8000-000000000001"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def service(store):
    return ReminderService(store)


@pytest.fixture
def create_data(now):
    def _data(**overrides):
        data = {
            "owner_user_id": TEST_USER_ID,
            "subject": {"entity_type": "task", "entity_id": "task-123"},
            "title": "Submit expense report",
            "channels": ["push", "email"],
            "scheduled_at": now + timedelta(hours=1),
        }
        data.update(overrides)
        return data
    return _data


# =============================================================================
# Create
# =============================================================================

class TestCreateReminder:

    @pytest.mark.asyncio
    async def test_create_persists_scheduled_reminder(self, service, store, create_data, now):
        result = await service.create_reminder(create_data(), now=now)

        assert result.success
        stored = await store.find_by_id(result.data["reminder_id"])
        assert stored.status == ReminderStatus.SCHEDULED
        assert stored.is_active is True
        assert stored.series_id == stored.id
        assert stored.expires_at == now + timedelta(days=365)

    @pytest.mark.asyncio
    async def test_recurring_reminder_gets_next_occurrence(self, service, create_data, now):
        result = await service.create_reminder(
            create_data(repeat_rule={"enabled": True, "frequency": "daily"}), now=now
        )

        reminder = result.data["reminder"]
        assert reminder.next_occurrence == reminder.scheduled_at + timedelta(days=1)
        assert reminder.expires_at is None

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, service, store, create_data, now):
        result = await service.create_reminder(
            create_data(scheduled_at=now - timedelta(minutes=1)), now=now
        )

        assert not result.success
        assert isinstance(result.error, ReminderValidationError)
        assert result.error.context["field"] == "scheduled_at"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_naive_time_rejected(self, service, create_data, now):
        result = await service.create_reminder(
            create_data(scheduled_at=datetime(2030, 1, 1, 9)), now=now
        )
        assert not result.success
        assert "timezone-aware" in result.error.message

    @pytest.mark.asyncio
    async def test_empty_channels_rejected(self, service, create_data, now):
        result = await service.create_reminder(create_data(channels=[]), now=now)

        assert not result.success
        assert result.error.context["field"] == "channels"

    @pytest.mark.asyncio
    async def test_blank_title_rejected(self, service, create_data, now):
        result = await service.create_reminder(create_data(title="   "), now=now)
        assert not result.success
        assert isinstance(result.error, ReminderValidationError)

    @pytest.mark.asyncio
    async def test_unknown_timezone_rejected(self, service, create_data, now):
        result = await service.create_reminder(create_data(timezone="Mars/Base"), now=now)
        assert not result.success
        assert result.error.context["field"] == "timezone"

    @pytest.mark.asyncio
    async def test_expiry_before_schedule_rejected(self, service, create_data, now):
        result = await service.create_reminder(create_data(expires_at=now), now=now)
        assert not result.success
        assert result.error.context["field"] == "expires_at"

    @pytest.mark.asyncio
    async def test_store_failure_is_returned(self, store, create_data, now):
        store.create = AsyncMock(side_effect=StoreError("insert failed"))
        result = await ReminderService(store).create_reminder(create_data(), now=now)

        assert not result.success
        assert isinstance(result.error, StoreError)

    @pytest.mark.asyncio
    async def test_accepts_create_model(self, service, create_data, now):
        result = await service.create_reminder(ReminderCreate(**create_data(max_snoozes=1)), now=now)
        assert result.data["reminder"].snooze_info.max_snoozes == 1


class TestBulkAndTaskReminders:

    @pytest.mark.asyncio
    async def test_bulk_create_per_user(self, service, create_data, now):
        result = await service.create_bulk_reminders(
            create_data(), ["user-a", "user-b", ""], now=now
        )

        assert result.success
        assert [r.owner_user_id for r in result.data["reminders"]] == ["user-a", "user-b"]
        assert len(result.data["failed"]) == 1
        assert result.data["failed"][0]["user_id"] == ""

    @pytest.mark.asyncio
    async def test_task_due_date_reminder(self, service, now):
        due = now + timedelta(days=3)
        result = await service.create_task_due_date_reminder(
            "task-9", "Quarterly report", due, TEST_USER_ID, now=now
        )

        reminder = result.data["reminder"]
        assert reminder.title == "Task due: Quarterly report"
        assert reminder.scheduled_at == due - timedelta(hours=24)
        assert reminder.priority == Priority.HIGH
        assert reminder.channels == [Channel.PUSH, Channel.EMAIL]
        assert reminder.metadata.source == ReminderSource.AUTOMATIC

    @pytest.mark.asyncio
    async def test_task_due_date_in_the_past_is_skipped(self, service, store, now):
        result = await service.create_task_due_date_reminder(
            "task-9", "Quarterly report", now + timedelta(hours=2), TEST_USER_ID, now=now
        )

        assert result.success
        assert result.data["reminder"] is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_milestone_reminder(self, service, now):
        due = now + timedelta(days=10)
        result = await service.create_milestone_reminder(
            "space-4", "Website relaunch", "Beta launch", due, TEST_USER_ID, now=now
        )

        reminder = result.data["reminder"]
        assert reminder.title == "Milestone due: Beta launch"
        assert reminder.message.startswith('Project "Website relaunch" milestone "Beta launch"')
        assert reminder.scheduled_at == due - timedelta(days=3)
        assert reminder.subject.entity_type == EntityType.SPACE
        assert reminder.subject.entity_id == "space-4"
        assert reminder.channels == [Channel.PUSH, Channel.EMAIL]
        assert reminder.metadata.source == ReminderSource.AUTOMATIC

    @pytest.mark.asyncio
    async def test_milestone_in_the_past_is_skipped(self, service, store, now):
        result = await service.create_milestone_reminder(
            "space-4", "Website relaunch", "Beta launch", now + timedelta(days=2), TEST_USER_ID, now=now
        )

        assert result.success
        assert result.data["reminder"] is None
        assert len(store) == 0


# =============================================================================
# Snooze / Cancel
# =============================================================================

class TestSnooze:

    @pytest.mark.asyncio
    async def test_snooze_moves_schedule(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder())

        result = await service.snooze_reminder(reminder.id, minutes=10, now=now)

        assert result.success
        stored = await store.find_by_id(reminder.id)
        assert stored.status == ReminderStatus.SCHEDULED
        assert stored.scheduled_at == now + timedelta(minutes=10)
        assert stored.snooze_info.snooze_count == 1
        assert stored.snooze_info.snoozed_until == now + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_snooze_keeps_next_occurrence_in_step(self, service, store, make_reminder, now):
        scheduled_at = now + timedelta(hours=1)
        reminder = await store.create(make_reminder(
            scheduled_at=scheduled_at,
            repeat_rule=RepeatRule(enabled=True, frequency="daily", interval=1),
            next_occurrence=scheduled_at + timedelta(days=1),
        ))

        result = await service.snooze_reminder(reminder.id, minutes=30, now=now)

        assert result.success
        stored = await store.find_by_id(reminder.id)
        assert stored.scheduled_at == now + timedelta(minutes=30)
        assert stored.next_occurrence == now + timedelta(minutes=30, days=1)

    @pytest.mark.asyncio
    async def test_snooze_limit(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder(snooze_info=SnoozeInfo(max_snoozes=3)))

        for i in range(3):
            result = await service.snooze_reminder(
                reminder.id, minutes=10, now=now + timedelta(minutes=i)
            )
            assert result.success

        fourth = await service.snooze_reminder(
            reminder.id, minutes=10, now=now + timedelta(minutes=30)
        )

        assert not fourth.success
        assert isinstance(fourth.error, SnoozeLimitError)
        stored = await store.find_by_id(reminder.id)
        assert stored.snooze_info.snooze_count == 3
        assert stored.scheduled_at == now + timedelta(minutes=12)

    @pytest.mark.asyncio
    async def test_snooze_clears_condition_backoff(self, service, store, make_reminder, now):
        reminder = await store.create(
            make_reminder(deferred_until=now + timedelta(minutes=5), condition_checks=2)
        )

        await service.snooze_reminder(reminder.id, minutes=10, now=now)

        stored = await store.find_by_id(reminder.id)
        assert stored.deferred_until is None
        assert stored.condition_checks == 0

    @pytest.mark.asyncio
    async def test_non_positive_minutes_rejected(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder())
        result = await service.snooze_reminder(reminder.id, minutes=0, now=now)
        assert isinstance(result.error, ReminderValidationError)

    @pytest.mark.asyncio
    async def test_sent_reminder_cannot_be_snoozed(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder(status=ReminderStatus.SENT))
        result = await service.snooze_reminder(reminder.id, now=now)
        assert isinstance(result.error, InvalidTransitionError)

    @pytest.mark.asyncio
    async def test_unknown_reminder(self, service, now):
        result = await service.snooze_reminder("missing", now=now)
        assert isinstance(result.error, ReminderNotFoundError)
        assert result.error.status_code == 404


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_deactivates(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder())

        result = await service.cancel_reminder(reminder.id, now=now)

        assert result.data == {"reminder_id": reminder.id, "status": "cancelled"}
        stored = await store.find_by_id(reminder.id)
        assert stored.status == ReminderStatus.CANCELLED
        assert stored.is_active is False
        assert await store.find_due(now) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        ReminderStatus.SENT,
        ReminderStatus.DELIVERED,
        ReminderStatus.FAILED,
        ReminderStatus.CANCELLED,
    ])
    async def test_cannot_cancel_finished_reminder(self, service, store, make_reminder, now, status):
        reminder = await store.create(make_reminder(status=status))

        result = await service.cancel_reminder(reminder.id, now=now)

        assert isinstance(result.error, InvalidTransitionError)
        assert (await store.find_by_id(reminder.id)).status == status

    @pytest.mark.asyncio
    async def test_dismiss_is_cancel(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder())
        result = await service.dismiss_reminder(reminder.id, now=now)
        assert result.data["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_series(self, service, store, make_reminder, now):
        rule = RepeatRule(enabled=True)
        first = make_reminder(
            repeat_rule=rule, status=ReminderStatus.SENT, is_active=False, trigger_count=1
        )
        second = make_reminder(
            repeat_rule=rule, series_id=first.series_id, previous_id=first.id,
            scheduled_at=now + timedelta(days=1),
        )
        other = make_reminder(repeat_rule=rule)
        for reminder in (first, second, other):
            await store.create(reminder)

        result = await service.cancel_recurring_series(second.id, now=now)

        assert result.data == {"series_id": first.series_id, "cancelled_count": 1}
        assert (await store.find_by_id(first.id)).status == ReminderStatus.SENT
        assert (await store.find_by_id(second.id)).status == ReminderStatus.CANCELLED
        assert (await store.find_by_id(other.id)).status == ReminderStatus.SCHEDULED


class TestAcknowledge:

    @pytest.mark.asyncio
    async def test_acknowledge_is_idempotent(self, service, store, make_reminder, now):
        reminder = await store.create(make_reminder(status=ReminderStatus.SENT))

        await service.acknowledge_reminder(reminder.id, now=now)
        result = await service.acknowledge_reminder(reminder.id, now=now + timedelta(hours=1))

        assert result.data["acknowledged_at"] == now


# =============================================================================
# Delivery events
# =============================================================================

class TestDeliveryEvents:

    @pytest.fixture
    async def sent_reminder(self, store, make_reminder, now):
        return await store.create(make_reminder(
            status=ReminderStatus.SENT,
            trigger_count=1,
            deliveries=[
                Delivery(channel=Channel.PUSH, status=DeliveryStatus.SENT,
                         sent_at=now, message_id="push-1"),
                Delivery(channel=Channel.EMAIL, status=DeliveryStatus.SENT,
                         sent_at=now, message_id="email-1"),
            ],
        ))

    @pytest.mark.asyncio
    async def test_delivered_updates_reminder(self, service, store, sent_reminder, now):
        result = await service.record_delivery_event("push-1", "delivered", at=now)

        assert result.data["changed"] is True
        stored = await store.find_by_id(sent_reminder.id)
        assert stored.find_delivery("push-1").status == DeliveryStatus.DELIVERED
        assert stored.find_delivery("push-1").delivered_at == now
        assert stored.status == ReminderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_delivered_is_never_regressed(self, service, store, sent_reminder, now):
        await service.record_delivery_event("push-1", "delivered", at=now)
        result = await service.record_delivery_event("push-1", "failed", at=now)

        assert result.data["changed"] is False
        stored = await store.find_by_id(sent_reminder.id)
        assert stored.find_delivery("push-1").status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_all_channels_failing_fails_reminder(self, service, store, sent_reminder, now):
        await service.record_delivery_event("push-1", "bounced", at=now)
        await service.record_delivery_event("email-1", "failed", at=now, error="mailbox full")

        stored = await store.find_by_id(sent_reminder.id)
        assert stored.status == ReminderStatus.FAILED
        assert stored.find_delivery("email-1").error == "mailbox full"

    @pytest.mark.asyncio
    async def test_read_implies_delivered(self, service, store, sent_reminder, now):
        await service.record_delivery_event("email-1", "read", at=now)

        delivery = (await store.find_by_id(sent_reminder.id)).find_delivery("email-1")
        assert delivery.read_at == now
        assert delivery.status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_message(self, service, sent_reminder):
        result = await service.record_delivery_event("nope", "delivered")
        assert isinstance(result.error, DeliveryNotFoundError)

    @pytest.mark.asyncio
    async def test_unknown_event(self, service, sent_reminder):
        result = await service.record_delivery_event("push-1", "opened")
        assert isinstance(result.error, ValidationError)


# =============================================================================
# Queries / maintenance
# =============================================================================

class TestQueries:

    @pytest.mark.asyncio
    async def test_list_upcoming(self, service, store, make_reminder, now):
        soon = await store.create(make_reminder(scheduled_at=now + timedelta(hours=2)))
        await store.create(make_reminder(scheduled_at=now + timedelta(days=3)))
        await store.create(make_reminder(scheduled_at=now + timedelta(hours=1), is_active=False))

        result = await service.list_upcoming_reminders(TEST_USER_ID, hours=24, now=now)

        assert [r.id for r in result.data["reminders"]] == [soon.id]

    @pytest.mark.asyncio
    async def test_get_reminder_not_found(self, service):
        result = await service.get_reminder("missing")
        assert isinstance(result.error, ReminderNotFoundError)

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, service, store, make_reminder, now):
        await store.create(make_reminder(expires_at=now - timedelta(minutes=1)))
        result = await service.cleanup_expired(now=now)
        assert result.data == {"expired_count": 1}

    @pytest.mark.asyncio
    async def test_stats(self, service, store, make_reminder, now):
        triggered = make_reminder(
            status=ReminderStatus.SENT,
            scheduled_at=now - timedelta(minutes=10),
            last_triggered_at=now - timedelta(minutes=9),
        )
        await store.create(triggered)
        await store.create(make_reminder())
        await store.create(make_reminder(created_at=now - timedelta(days=60)))

        result = await service.get_stats(TEST_USER_ID, days=30, now=now)

        assert result.data["total"] == 2
        assert result.data["by_status"] == {"sent": 1, "scheduled": 1}
        assert result.data["triggered"] == 1
        assert result.data["avg_trigger_latency_seconds"] == 60
