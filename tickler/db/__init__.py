"""
Database Package for Tickler
============================

This package provides the reminder data models.
"""

from tickler.db.models import (
    Channel,
    Delivery,
    DeliveryStatus,
    Priority,
    Reminder,
    ReminderCreate,
    ReminderStatus,
    RepeatFrequency,
    RepeatRule,
)

__all__ = [
    # Enums
    "Channel",
    "DeliveryStatus",
    "Priority",
    "ReminderStatus",
    "RepeatFrequency",
    # Models
    "Delivery",
    "Reminder",
    "ReminderCreate",
    "RepeatRule",
]
