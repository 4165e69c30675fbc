"""
Reminder Store
==============

Persistence boundary for reminders. The engine only talks to the
ReminderStore interface; two implementations ship:

- InMemoryReminderStore : asyncio.Lock + deep copies; tests and
                          credential-less runs
- SupabaseReminderStore : reminders table through the Supabase client

Store methods raise TicklerError subclasses (StoreError, ReminderClaimError,
DuplicateReminderError). The service layer turns them into OperationResult.

Claiming
--------
`claim()` is the concurrency guard of the sweep. It takes a time-limited
lease on a reminder only if it is still active, still scheduled and not
leased by anyone else. Two sweep workers can never both claim the same
reminder. A crashed worker's lease simply runs out.

The sweep writes its result back with `save_claimed()`, which refuses to
overwrite a row that was cancelled or rescheduled while it was leased.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tickler.db.models.reminder import (
    EntityType,
    Reminder,
    ReminderStatus,
)
from tickler.services.exceptions import (
    DuplicateReminderError,
    MissingCredentialsError,
    ReminderClaimError,
    ReminderNotFoundError,
    StoreError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

REMINDERS_TABLE = os.getenv("REMINDERS_TABLE", "reminders")

CANCELLABLE_STATUSES = (ReminderStatus.SCHEDULED, ReminderStatus.SNOOZED)


def sort_for_sweep(reminders: List[Reminder]) -> List[Reminder]:
    """Highest priority first, then earliest scheduled_at."""
    return sorted(reminders, key=lambda r: (-r.priority_rank, r.scheduled_at))


def is_selectable(reminder: Reminder, now: datetime) -> bool:
    """True when the sweep should pick this reminder up at `now`."""
    return (
        reminder.is_active
        and reminder.status == ReminderStatus.SCHEDULED
        and reminder.scheduled_at <= now
        and (reminder.deferred_until is None or reminder.deferred_until <= now)
        and reminder.is_claimable(now)
    )


def is_escalation_candidate(reminder: Reminder) -> bool:
    return (
        reminder.settings.escalation.enabled
        and bool(reminder.settings.escalation.steps)
        and bool(reminder.deliveries)
        and reminder.status in (ReminderStatus.SENT, ReminderStatus.FAILED)
        and reminder.acknowledged_at is None
    )


def claim_conflict(stored: Reminder, worker_id: str, scheduled_at: datetime) -> Optional[str]:
    """Why a claimed write by `worker_id` must not land on `stored`, or None."""
    if stored.status == ReminderStatus.CANCELLED:
        return "Reminder was cancelled"
    if stored.scheduled_at != scheduled_at:
        return "Reminder was rescheduled"
    if stored.claimed_by != worker_id:
        return f"Reminder is claimed by {stored.claimed_by}"
    return None


def expire(reminder: Reminder, now: datetime) -> None:
    """Deactivate an expired reminder; pending ones are cancelled too."""
    if reminder.status in CANCELLABLE_STATUSES:
        reminder.status = ReminderStatus.CANCELLED
    reminder.is_active = False
    reminder.updated_at = now


class ReminderStore(ABC):
    """Interface to reminder persistence."""

    # -------------------------------------------------------------------------
    # Core operations used by the sweep
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_due(self, now: datetime, limit: Optional[int] = None) -> List[Reminder]:
        """Active, scheduled, due, not deferred and not leased; sweep order."""

    @abstractmethod
    async def save(self, reminder: Reminder) -> Reminder:
        """Persist an existing reminder. Raises ReminderNotFoundError."""

    @abstractmethod
    async def save_claimed(
        self,
        reminder: Reminder,
        worker_id: str,
        scheduled_at: datetime,
    ) -> Reminder:
        """
        Persist a reminder the sweep is processing. Only lands while the
        stored row is still leased by `worker_id`, not cancelled and still
        scheduled at `scheduled_at`; raises ReminderClaimError otherwise.
        """

    @abstractmethod
    async def create(self, reminder: Reminder) -> Reminder:
        """Persist a new reminder. Raises DuplicateReminderError."""

    @abstractmethod
    async def delete(self, reminder_id: str) -> None:
        ...

    @abstractmethod
    async def find_by_id(self, reminder_id: str) -> Optional[Reminder]:
        ...

    @abstractmethod
    async def cleanup_expired(self, now: datetime) -> int:
        """Deactivate expired reminders; returns how many changed."""

    @abstractmethod
    async def claim(
        self,
        reminder_id: str,
        worker_id: str,
        now: datetime,
        lease_seconds: int,
    ) -> Reminder:
        """Lease a reminder for processing. Raises ReminderClaimError."""

    @abstractmethod
    async def release(self, reminder_id: str, worker_id: str) -> None:
        """Drop a lease held by `worker_id`; no-op otherwise."""

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def find_by_user(
        self,
        user_id: str,
        status: Optional[ReminderStatus] = None,
        limit: int = 50,
    ) -> List[Reminder]:
        ...

    @abstractmethod
    async def find_by_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: Optional[ReminderStatus] = None,
    ) -> List[Reminder]:
        ...

    @abstractmethod
    async def find_recurring(self, active_only: bool = True) -> List[Reminder]:
        ...

    @abstractmethod
    async def find_by_series(self, series_id: str) -> List[Reminder]:
        ...

    @abstractmethod
    async def find_by_message_id(self, message_id: str) -> Optional[Reminder]:
        ...

    @abstractmethod
    async def find_escalation_candidates(self) -> List[Reminder]:
        ...

    @abstractmethod
    async def list_since(self, since: datetime, user_id: Optional[str] = None) -> List[Reminder]:
        """Reminders created at or after `since`."""


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemoryReminderStore(ReminderStore):
    """
    Dict-backed store. Every read and write copies the model so callers never
    share state with the store, which mirrors a real database round trip.
    """

    def __init__(self, reminders: Optional[List[Reminder]] = None):
        self._reminders: Dict[str, Reminder] = {}
        self._lock = asyncio.Lock()
        for reminder in reminders or []:
            self._reminders[reminder.id] = reminder.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._reminders)

    @staticmethod
    def _copy(reminder: Reminder) -> Reminder:
        return reminder.model_copy(deep=True)

    def _select(self, predicate) -> List[Reminder]:
        return [self._copy(r) for r in self._reminders.values() if predicate(r)]

    async def find_due(self, now: datetime, limit: Optional[int] = None) -> List[Reminder]:
        async with self._lock:
            due = sort_for_sweep(self._select(lambda r: is_selectable(r, now)))
        return due[:limit] if limit else due

    async def save(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            if reminder.id not in self._reminders:
                raise ReminderNotFoundError(reminder_id=reminder.id)
            self._reminders[reminder.id] = self._copy(reminder)
        return reminder

    async def save_claimed(
        self,
        reminder: Reminder,
        worker_id: str,
        scheduled_at: datetime,
    ) -> Reminder:
        async with self._lock:
            stored = self._reminders.get(reminder.id)
            if stored is None:
                raise ReminderNotFoundError(reminder_id=reminder.id)
            reason = claim_conflict(stored, worker_id, scheduled_at)
            if reason:
                raise ReminderClaimError(reminder.id, reason=reason)
            self._reminders[reminder.id] = self._copy(reminder)
        return reminder

    async def create(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            if reminder.id in self._reminders:
                raise DuplicateReminderError(reminder.id)
            self._reminders[reminder.id] = self._copy(reminder)
        return reminder

    async def delete(self, reminder_id: str) -> None:
        async with self._lock:
            self._reminders.pop(reminder_id, None)

    async def find_by_id(self, reminder_id: str) -> Optional[Reminder]:
        async with self._lock:
            stored = self._reminders.get(reminder_id)
            return self._copy(stored) if stored else None

    async def cleanup_expired(self, now: datetime) -> int:
        count = 0
        async with self._lock:
            for reminder in self._reminders.values():
                if reminder.is_active and reminder.expires_at and reminder.expires_at <= now:
                    expire(reminder, now)
                    count += 1
        if count:
            logger.info(f"Expired {count} reminders")
        return count

    async def claim(
        self,
        reminder_id: str,
        worker_id: str,
        now: datetime,
        lease_seconds: int,
    ) -> Reminder:
        async with self._lock:
            stored = self._reminders.get(reminder_id)
            if stored is None:
                raise ReminderClaimError(reminder_id, reason="Reminder not found")
            if not stored.is_active or stored.status != ReminderStatus.SCHEDULED:
                raise ReminderClaimError(reminder_id, reason=f"Reminder is {stored.status.value}")
            if not stored.is_claimable(now):
                raise ReminderClaimError(
                    reminder_id, reason=f"Reminder is claimed by {stored.claimed_by}"
                )
            stored.claimed_by = worker_id
            stored.claimed_until = now + timedelta(seconds=lease_seconds)
            return self._copy(stored)

    async def release(self, reminder_id: str, worker_id: str) -> None:
        async with self._lock:
            stored = self._reminders.get(reminder_id)
            if stored is not None and stored.claimed_by == worker_id:
                stored.claimed_by = None
                stored.claimed_until = None

    async def find_by_user(
        self,
        user_id: str,
        status: Optional[ReminderStatus] = None,
        limit: int = 50,
    ) -> List[Reminder]:
        async with self._lock:
            found = self._select(
                lambda r: r.owner_user_id == user_id and (status is None or r.status == status)
            )
        found.sort(key=lambda r: r.scheduled_at)
        return found[:limit]

    async def find_by_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: Optional[ReminderStatus] = None,
    ) -> List[Reminder]:
        async with self._lock:
            found = self._select(
                lambda r: r.subject.entity_type == entity_type
                and r.subject.entity_id == entity_id
                and (status is None or r.status == status)
            )
        found.sort(key=lambda r: r.scheduled_at)
        return found

    async def find_recurring(self, active_only: bool = True) -> List[Reminder]:
        async with self._lock:
            return self._select(lambda r: r.is_recurring and (r.is_active or not active_only))

    async def find_by_series(self, series_id: str) -> List[Reminder]:
        async with self._lock:
            found = self._select(lambda r: r.series_id == series_id)
        found.sort(key=lambda r: r.scheduled_at)
        return found

    async def find_by_message_id(self, message_id: str) -> Optional[Reminder]:
        async with self._lock:
            for reminder in self._reminders.values():
                if reminder.find_delivery(message_id) is not None:
                    return self._copy(reminder)
        return None

    async def find_escalation_candidates(self) -> List[Reminder]:
        async with self._lock:
            return self._select(is_escalation_candidate)

    async def list_since(self, since: datetime, user_id: Optional[str] = None) -> List[Reminder]:
        async with self._lock:
            return self._select(
                lambda r: r.created_at >= since and (user_id is None or r.owner_user_id == user_id)
            )


# =============================================================================
# Supabase implementation
# =============================================================================

class SupabaseReminderStore(ReminderStore):
    """
    Reminders table accessed through the Supabase (PostgREST) client.

    Nested structures (subject, repeat_rule, deliveries, settings, ...) are
    stored as JSONB columns named after the model fields.
    """

    def __init__(self, supabase_client: Optional[Any] = None, table: str = REMINDERS_TABLE):
        """
        Args:
            supabase_client: Optional Supabase client. If not provided,
                           creates one from environment variables.
            table: Reminders table name
        """
        if supabase_client:
            self.client = supabase_client
        elif SUPABASE_URL and SUPABASE_SERVICE_KEY:
            from supabase import create_client

            self.client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
        else:
            raise MissingCredentialsError(
                service="Supabase",
                required_keys=["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"],
            )
        self.table = table

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _query(self):
        return self.client.table(self.table)

    @staticmethod
    def _to_row(reminder: Reminder) -> Dict[str, Any]:
        return reminder.model_dump(mode="json")

    @staticmethod
    def _from_rows(rows: Optional[List[Dict[str, Any]]]) -> List[Reminder]:
        return [Reminder.model_validate(row) for row in rows or []]

    def _execute(self, query, operation: str, context: Optional[Dict[str, Any]] = None):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Reminder store {operation} failed: {e}")
            raise StoreError(
                message=f"Failed to {operation} reminders: {str(e)}",
                operation=operation,
                table=self.table,
                context=context,
                original_error=e,
            ) from e

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    async def find_due(self, now: datetime, limit: Optional[int] = None) -> List[Reminder]:
        iso_now = now.isoformat()
        query = (
            self._query()
            .select("*")
            .eq("is_active", True)
            .eq("status", ReminderStatus.SCHEDULED.value)
            .lte("scheduled_at", iso_now)
            .or_(f"deferred_until.is.null,deferred_until.lte.{iso_now}")
            .order("scheduled_at")
        )
        response = self._execute(query, "select")

        # Priority is an enum column; rank ordering and the lease check happen here
        due = sort_for_sweep(
            [r for r in self._from_rows(response.data) if r.is_claimable(now)]
        )
        return due[:limit] if limit else due

    async def save(self, reminder: Reminder) -> Reminder:
        query = self._query().update(self._to_row(reminder)).eq("id", reminder.id)
        response = self._execute(query, "update", {"reminder_id": reminder.id})
        if not response.data:
            raise ReminderNotFoundError(reminder_id=reminder.id)
        return reminder

    async def save_claimed(
        self,
        reminder: Reminder,
        worker_id: str,
        scheduled_at: datetime,
    ) -> Reminder:
        # Conditional UPDATE: zero rows back means the row changed under the lease
        query = (
            self._query()
            .update(self._to_row(reminder))
            .eq("id", reminder.id)
            .eq("claimed_by", worker_id)
            .neq("status", ReminderStatus.CANCELLED.value)
            .eq("scheduled_at", scheduled_at.isoformat())
        )
        response = self._execute(query, "update", {"reminder_id": reminder.id})
        if not response.data:
            raise ReminderClaimError(
                reminder.id, reason="Reminder changed while it was being processed"
            )
        return reminder

    async def create(self, reminder: Reminder) -> Reminder:
        if await self.find_by_id(reminder.id) is not None:
            raise DuplicateReminderError(reminder.id)

        response = self._execute(
            self._query().insert(self._to_row(reminder)),
            "insert",
            {"reminder_id": reminder.id},
        )
        if not response.data:
            raise StoreError(
                message="No data returned from insert",
                operation="insert",
                table=self.table,
            )
        logger.info(f"Created reminder {reminder.id} for user {reminder.owner_user_id}")
        return reminder

    async def delete(self, reminder_id: str) -> None:
        self._execute(
            self._query().delete().eq("id", reminder_id),
            "delete",
            {"reminder_id": reminder_id},
        )

    async def find_by_id(self, reminder_id: str) -> Optional[Reminder]:
        response = self._execute(
            self._query().select("*").eq("id", reminder_id),
            "select",
            {"reminder_id": reminder_id},
        )
        found = self._from_rows(response.data)
        return found[0] if found else None

    async def cleanup_expired(self, now: datetime) -> int:
        iso_now = now.isoformat()
        count = 0

        # Pending reminders are cancelled; anything else is only deactivated
        cancelled = self._execute(
            self._query()
            .update({
                "status": ReminderStatus.CANCELLED.value,
                "is_active": False,
                "updated_at": iso_now,
            })
            .eq("is_active", True)
            .in_("status", [s.value for s in CANCELLABLE_STATUSES])
            .lte("expires_at", iso_now),
            "update",
        )
        count += len(cancelled.data or [])

        deactivated = self._execute(
            self._query()
            .update({"is_active": False, "updated_at": iso_now})
            .eq("is_active", True)
            .lte("expires_at", iso_now),
            "update",
        )
        count += len(deactivated.data or [])

        if count:
            logger.info(f"Expired {count} reminders")
        return count

    async def claim(
        self,
        reminder_id: str,
        worker_id: str,
        now: datetime,
        lease_seconds: int,
    ) -> Reminder:
        iso_now = now.isoformat()
        claimed_until = (now + timedelta(seconds=lease_seconds)).isoformat()

        # Single conditional UPDATE: zero rows back means someone else won
        query = (
            self._query()
            .update({"claimed_by": worker_id, "claimed_until": claimed_until})
            .eq("id", reminder_id)
            .eq("is_active", True)
            .eq("status", ReminderStatus.SCHEDULED.value)
            .or_(f"claimed_until.is.null,claimed_until.lte.{iso_now}")
        )
        response = self._execute(query, "claim", {"reminder_id": reminder_id})
        if not response.data:
            raise ReminderClaimError(reminder_id)
        return self._from_rows(response.data)[0]

    async def release(self, reminder_id: str, worker_id: str) -> None:
        self._execute(
            self._query()
            .update({"claimed_by": None, "claimed_until": None})
            .eq("id", reminder_id)
            .eq("claimed_by", worker_id),
            "release",
            {"reminder_id": reminder_id},
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def find_by_user(
        self,
        user_id: str,
        status: Optional[ReminderStatus] = None,
        limit: int = 50,
    ) -> List[Reminder]:
        query = self._query().select("*").eq("owner_user_id", user_id)
        if status is not None:
            query = query.eq("status", status.value)
        response = self._execute(query.order("scheduled_at").limit(limit), "select")
        return self._from_rows(response.data)

    async def find_by_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: Optional[ReminderStatus] = None,
    ) -> List[Reminder]:
        query = (
            self._query()
            .select("*")
            .eq("subject->>entity_type", entity_type.value)
            .eq("subject->>entity_id", entity_id)
        )
        if status is not None:
            query = query.eq("status", status.value)
        response = self._execute(query.order("scheduled_at"), "select")
        return self._from_rows(response.data)

    async def find_recurring(self, active_only: bool = True) -> List[Reminder]:
        query = self._query().select("*").eq("repeat_rule->>enabled", "true")
        if active_only:
            query = query.eq("is_active", True)
        response = self._execute(query, "select")
        return self._from_rows(response.data)

    async def find_by_series(self, series_id: str) -> List[Reminder]:
        response = self._execute(
            self._query().select("*").eq("series_id", series_id).order("scheduled_at"),
            "select",
        )
        return self._from_rows(response.data)

    async def find_by_message_id(self, message_id: str) -> Optional[Reminder]:
        response = self._execute(
            self._query().select("*").contains("deliveries", [{"message_id": message_id}]),
            "select",
        )
        found = self._from_rows(response.data)
        return found[0] if found else None

    async def find_escalation_candidates(self) -> List[Reminder]:
        response = self._execute(
            self._query()
            .select("*")
            .in_("status", [ReminderStatus.SENT.value, ReminderStatus.FAILED.value])
            .is_("acknowledged_at", "null")
            .eq("settings->escalation->>enabled", "true"),
            "select",
        )
        return [r for r in self._from_rows(response.data) if is_escalation_candidate(r)]

    async def list_since(self, since: datetime, user_id: Optional[str] = None) -> List[Reminder]:
        query = self._query().select("*").gte("created_at", since.isoformat())
        if user_id is not None:
            query = query.eq("owner_user_id", user_id)
        response = self._execute(query, "select")
        return self._from_rows(response.data)
