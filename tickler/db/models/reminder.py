"""
Reminder Database Models
========================

Pydantic V2 models for the Reminder engine supporting multi-channel delivery
(push, email, SMS, in-app, webhook) with one-time and recurring patterns,
snooze bookkeeping, typed delivery conditions and escalation steps.

A Reminder is a single occurrence. Recurring reminders spawn a successor
record for every occurrence and the predecessor is deactivated, so every
record keeps its own delivery history.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Channel(str, Enum):
    """Delivery channels a reminder can be sent over."""
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class EntityType(str, Enum):
    """Kinds of entities a reminder can be about."""
    TASK = "task"
    SPACE = "space"
    COMMENT = "comment"
    CHECKLIST = "checklist"
    BOARD = "board"
    USER = "user"


class ReminderStatus(str, Enum):
    """Reminder lifecycle states."""
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SNOOZED = "snoozed"


class DeliveryStatus(str, Enum):
    """Per-channel delivery attempt states."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


class Priority(str, Enum):
    """Sweep processing priority."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RepeatFrequency(str, Enum):
    """Recurrence frequencies."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class ConditionOperator(str, Enum):
    """Comparison operators available to delivery conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class ReminderSource(str, Enum):
    """Where a reminder came from."""
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    AI = "ai"
    INTEGRATION = "integration"
    TEMPLATE = "template"


PRIORITY_RANK: Dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}

# delivered / failed / bounced are all terminal for a single attempt
DELIVERY_STATUS_RANK: Dict[DeliveryStatus, int] = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.FAILED: 2,
    DeliveryStatus.BOUNCED: 2,
}

OVERDUE_GRACE = timedelta(minutes=5)
DEFAULT_RETENTION = timedelta(days=365)


# =============================================================================
# Delivery Conditions (closed tagged union)
# =============================================================================

class _ConditionBase(BaseModel):
    operator: ConditionOperator = Field(
        default=ConditionOperator.EQUALS,
        description="How the observed value is compared with `value`",
    )
    active: bool = Field(
        default=True,
        description="Inactive conditions are skipped during evaluation",
    )


class TaskStatusCondition(_ConditionBase):
    """Gate on the status of the subject task."""
    type: Literal["task_status"] = "task_status"
    value: str = Field(..., min_length=1)


class DueDateApproachingCondition(_ConditionBase):
    """Gate on the number of hours left until the subject's due date."""
    type: Literal["due_date_approaching"] = "due_date_approaching"
    value: float = Field(..., gt=0, description="Hours before the due date")


class UserOnlineCondition(_ConditionBase):
    """Gate on the owner's presence."""
    type: Literal["user_online"] = "user_online"
    value: bool = True


class LocationCondition(_ConditionBase):
    """Gate on the owner's reported location."""
    type: Literal["location"] = "location"
    value: str = Field(..., min_length=1)


class CustomCondition(_ConditionBase):
    """Gate resolved by an application-registered predicate."""
    type: Literal["custom"] = "custom"
    name: str = Field(..., min_length=1, description="Registered predicate name")
    value: Optional[str] = None


Condition = Annotated[
    Union[
        TaskStatusCondition,
        DueDateApproachingCondition,
        UserOnlineCondition,
        LocationCondition,
        CustomCondition,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# Nested Models
# =============================================================================

class Subject(BaseModel):
    """The entity a reminder is about."""
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)


class RepeatRule(BaseModel):
    """Recurrence configuration."""
    enabled: bool = False
    frequency: RepeatFrequency = RepeatFrequency.DAILY
    interval: int = Field(default=1, ge=1, description="Every N units of frequency")
    days_of_week: List[int] = Field(
        default_factory=list,
        description="Weekly only: 0 = Sunday .. 6 = Saturday",
    )
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(default=None, ge=1)

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, v: List[int]) -> List[int]:
        for day in v:
            if day < 0 or day > 6:
                raise ValueError("days_of_week entries must be between 0 and 6")
        return sorted(set(v))

    @field_validator("end_date")
    @classmethod
    def normalize_end_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Delivery(BaseModel):
    """One attempt to send a reminder over one channel."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    cycle: int = Field(default=1, ge=1, description="Trigger cycle that produced it")
    channel: Channel
    status: DeliveryStatus = DeliveryStatus.PENDING
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error: Optional[str] = None
    message_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_at", "sent_at", "delivered_at", "read_at", "clicked_at")
    @classmethod
    def normalize_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def advance(self, status: DeliveryStatus) -> bool:
        """Move forward to `status`. Returns False when that would regress."""
        if DELIVERY_STATUS_RANK[status] <= DELIVERY_STATUS_RANK[self.status]:
            return False
        self.status = status
        return True

    @property
    def is_resolved(self) -> bool:
        return (
            self.status == DeliveryStatus.DELIVERED
            or self.read_at is not None
            or self.clicked_at is not None
        )

    @property
    def attempted_at(self) -> Optional[datetime]:
        return self.sent_at or self.scheduled_at


class SnoozeInfo(BaseModel):
    snoozed_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    snooze_count: int = Field(default=0, ge=0)
    max_snoozes: int = Field(default=3, ge=0)


class EscalationStep(BaseModel):
    """Secondary fan-out fired when a delivery stays unresolved."""
    delay_minutes: int = Field(..., ge=0, description="Minutes after the latest attempt")
    channels: List[Channel] = Field(..., min_length=1)
    recipients: List[str] = Field(..., min_length=1, description="User ids to notify")
    message: Optional[str] = Field(default=None, max_length=1000)


class EscalationSettings(BaseModel):
    enabled: bool = False
    steps: List[EscalationStep] = Field(default_factory=list)


class ReminderSettings(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    escalation: EscalationSettings = Field(default_factory=EscalationSettings)


class EscalationRecord(BaseModel):
    """Audit entry for one fired escalation step."""
    cycle: int
    step_index: int
    fired_at: datetime
    channels: List[Channel]
    recipients: List[str]
    accepted: List[str] = Field(default_factory=list, description="recipient:channel pairs")
    failed: List[str] = Field(default_factory=list, description="recipient:channel pairs")


class ReminderMetadata(BaseModel):
    source: ReminderSource = ReminderSource.MANUAL
    tags: List[str] = Field(default_factory=list)
    custom: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Core Model
# =============================================================================

class Reminder(BaseModel):
    """
    Reminder: one scheduled notification intent for one owner.

    Instances are mutated only through the service (snooze, cancel,
    acknowledge, delivery confirmations) and the sweep (dispatch results,
    trigger bookkeeping, successor spawning).
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_user_id: str = Field(..., min_length=1, description="User to notify")
    subject: Subject

    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(default="", max_length=1000)

    channels: List[Channel] = Field(
        default_factory=lambda: [Channel.PUSH],
        min_length=1,
        description="Requested delivery channels (never empty)",
    )
    scheduled_at: datetime = Field(..., description="When the reminder fires (UTC)")
    timezone: str = Field(default="UTC", description="IANA zone for wall-clock recurrence")
    repeat_rule: Optional[RepeatRule] = None

    status: ReminderStatus = ReminderStatus.SCHEDULED
    priority: Priority = Priority.NORMAL

    deliveries: List[Delivery] = Field(default_factory=list)
    snooze_info: SnoozeInfo = Field(default_factory=SnoozeInfo)
    settings: ReminderSettings = Field(default_factory=ReminderSettings)

    is_active: bool = True
    next_occurrence: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None
    trigger_count: int = Field(default=0, ge=0)
    expires_at: Optional[datetime] = None

    # Series bookkeeping
    series_id: Optional[str] = None
    previous_id: Optional[str] = None

    # Condition suppression backoff
    deferred_until: Optional[datetime] = None
    condition_checks: int = Field(default=0, ge=0)

    # Sweep lease
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None

    acknowledged_at: Optional[datetime] = None
    escalations: List[EscalationRecord] = Field(default_factory=list)
    metadata: ReminderMetadata = Field(default_factory=ReminderMetadata)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("channels")
    @classmethod
    def dedupe_channels(cls, v: List[Channel]) -> List[Channel]:
        return list(dict.fromkeys(v))

    @field_validator(
        "scheduled_at",
        "next_occurrence",
        "last_triggered_at",
        "expires_at",
        "deferred_until",
        "claimed_until",
        "acknowledged_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def normalize_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    # -------------------------------------------------------------------------
    # Derived properties
    # -------------------------------------------------------------------------

    @property
    def is_recurring(self) -> bool:
        return bool(self.repeat_rule and self.repeat_rule.enabled)

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK[self.priority]

    @property
    def can_snooze(self) -> bool:
        return self.snooze_info.snooze_count < self.snooze_info.max_snoozes

    @property
    def delivery_status(self) -> str:
        if not self.deliveries:
            return "not_sent"
        return self.deliveries[-1].status.value

    @property
    def success_rate(self) -> int:
        """Percentage of delivery attempts that were confirmed delivered."""
        if not self.deliveries:
            return 0
        delivered = sum(1 for d in self.deliveries if d.status == DeliveryStatus.DELIVERED)
        return round(delivered / len(self.deliveries) * 100)

    @property
    def current_cycle(self) -> int:
        return max((d.cycle for d in self.deliveries), default=0)

    def cycle_deliveries(self, cycle: Optional[int] = None) -> List[Delivery]:
        target = self.current_cycle if cycle is None else cycle
        return [d for d in self.deliveries if d.cycle == target]

    def find_delivery(self, message_id: str) -> Optional[Delivery]:
        for delivery in self.deliveries:
            if delivery.message_id == message_id:
                return delivery
        return None

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) or utcnow()
        return self.status == ReminderStatus.SCHEDULED and self.scheduled_at <= now

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) or utcnow()
        return (
            self.status == ReminderStatus.SCHEDULED
            and self.scheduled_at < now - OVERDUE_GRACE
        )

    def is_claimable(self, now: datetime) -> bool:
        return self.claimed_until is None or self.claimed_until <= now

    def time_until(self, now: Optional[datetime] = None) -> str:
        """Human readable time left before the reminder fires."""
        now = ensure_utc(now) or utcnow()
        diff = self.scheduled_at - now
        if diff <= timedelta(0):
            return "Past due"

        days = diff.days
        hours = diff.seconds // 3600
        minutes = (diff.seconds % 3600) // 60

        if days > 0:
            return f"{days} day{'s' if days > 1 else ''}"
        if hours > 0:
            return f"{hours} hour{'s' if hours > 1 else ''}"
        if minutes > 0:
            return f"{minutes} minute{'s' if minutes > 1 else ''}"
        return "Less than 1 minute"


class ReminderCreate(BaseModel):
    """Schema for creating a new Reminder."""
    owner_user_id: str = Field(..., min_length=1)
    subject: Subject
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(default="", max_length=1000)
    channels: List[Channel] = Field(default_factory=lambda: [Channel.PUSH], min_length=1)
    scheduled_at: datetime
    timezone: str = "UTC"
    repeat_rule: Optional[RepeatRule] = None
    priority: Priority = Priority.NORMAL
    max_snoozes: int = Field(default=3, ge=0)
    settings: ReminderSettings = Field(default_factory=ReminderSettings)
    expires_at: Optional[datetime] = None
    metadata: ReminderMetadata = Field(default_factory=ReminderMetadata)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Title is required and cannot be empty")
        return stripped

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "owner_user_id": "00000000-0000-4000-8000-000000000001",
                "subject": {"entity_type": "task", "entity_id": "task-123"},
                "title": "Submit expense report",
                "message": "Due by end of day",
                "channels": ["push", "email"],
                "scheduled_at": "2026-02-03T08:00:00Z",
                "repeat_rule": {"enabled": True, "frequency": "weekly", "interval": 1},
                "priority": "high",
            }
        }
    )
