from tickler.db.models.reminder import (
    Channel,
    Condition,
    CustomCondition,
    Delivery,
    DeliveryStatus,
    DueDateApproachingCondition,
    EntityType,
    EscalationRecord,
    EscalationSettings,
    EscalationStep,
    LocationCondition,
    Priority,
    Reminder,
    ReminderCreate,
    ReminderMetadata,
    ReminderSettings,
    ReminderSource,
    ReminderStatus,
    RepeatFrequency,
    RepeatRule,
    SnoozeInfo,
    Subject,
    TaskStatusCondition,
    UserOnlineCondition,
)

__all__ = [
    "Channel",
    "Condition",
    "CustomCondition",
    "Delivery",
    "DeliveryStatus",
    "DueDateApproachingCondition",
    "EntityType",
    "EscalationRecord",
    "EscalationSettings",
    "EscalationStep",
    "LocationCondition",
    "Priority",
    "Reminder",
    "ReminderCreate",
    "ReminderMetadata",
    "ReminderSettings",
    "ReminderSource",
    "ReminderStatus",
    "RepeatFrequency",
    "RepeatRule",
    "SnoozeInfo",
    "Subject",
    "TaskStatusCondition",
    "UserOnlineCondition",
]
