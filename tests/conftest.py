"""
Shared fixtures for the Tickler test suite.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tickler.db.models.reminder import (
    Channel,
    EntityType,
    Reminder,
    Subject,
)
from tickler.engine.channels import ChannelTransport, TransportResult
from tickler.services.reminder_store import InMemoryReminderStore


# =============================================================================
# Test Configuration
# =============================================================================

# Monday 2026-03-02 09:00 UTC
FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

TEST_USER_ID = "00000000-0000-4000-8000-000000000001"


class StubTransport(ChannelTransport):
    """
    Scriptable transport: accepts by default, or returns `result`, raises
    `error`, or sleeps `delay` seconds before answering.
    """

    def __init__(
        self,
        result: Optional[TransportResult] = None,
        error: Optional[Exception] = None,
        delay: float = 0,
        fail_for: Optional[List[str]] = None,
    ):
        self.result = result
        self.error = error
        self.delay = delay
        self.fail_for = set(fail_for or [])
        self.calls: List[Dict[str, Any]] = []

    async def send(self, channel, recipient_ref, title, message, context):
        self.calls.append({
            "channel": channel,
            "recipient": recipient_ref,
            "title": title,
            "message": message,
            "context": context,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if context.get("reminder_id") in self.fail_for:
            raise RuntimeError("provider exploded")
        if self.result is not None:
            return self.result
        return TransportResult.ok(f"msg-{len(self.calls)}")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def make_reminder():
    """Factory for due, scheduled reminders owned by TEST_USER_ID."""

    def _make(**overrides) -> Reminder:
        data = {
            "owner_user_id": TEST_USER_ID,
            "subject": Subject(entity_type=EntityType.TASK, entity_id="task-123"),
            "title": "Submit expense report",
            "message": "Due by end of day",
            "channels": [Channel.PUSH],
            "scheduled_at": FIXED_NOW - timedelta(minutes=1),
            "created_at": FIXED_NOW - timedelta(days=1),
        }
        data.update(overrides)
        reminder = Reminder(**data)
        if reminder.series_id is None:
            reminder.series_id = reminder.id
        return reminder

    return _make


@pytest.fixture
def store():
    return InMemoryReminderStore()


@pytest.fixture
def stub_transport():
    return StubTransport()


@pytest.fixture
def stub_transport_cls():
    return StubTransport
