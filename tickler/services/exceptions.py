"""
Custom Exception Classes for Tickler
====================================

This module provides a hierarchy of custom exceptions that preserve context
through the error chain. All exceptions support:

1. Error chaining with `raise ... from e`
2. HTTP-style status codes for the owning application's API layer
3. Error classification for monitoring/alerting
4. Original context preservation

The engine raises these; the service layer wraps them in OperationResult and
the sweep isolates them per reminder.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories for error classification and monitoring."""
    VALIDATION = "validation"
    STATE = "state"
    STORE = "store"
    CONCURRENCY = "concurrency"
    TRANSPORT = "transport"
    CONDITION = "condition"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


# =============================================================================
# Base Exception
# =============================================================================

class TicklerError(Exception):
    """
    Base exception class for all Tickler errors.

    Provides:
    - Status code for API responses
    - Error category for monitoring
    - Context dictionary for debugging
    - Proper error chaining support

    Usage:
        try:
            # some operation
        except SomeError as e:
            raise TicklerError(
                message="Failed to process",
                status_code=500,
                category=ErrorCategory.INTERNAL,
                context={"operation": "process"},
            ) from e
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.category = category
        self.context = context or {}
        self.original_error = original_error

        # Build full message with context
        full_message = message
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            full_message = f"{message} [{context_str}]"

        super().__init__(full_message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error": self.message,
            "category": self.category.value,
            "status_code": self.status_code,
        }
        if self.context:
            result["context"] = self.context
        if self.original_error:
            result["original_error"] = str(self.original_error)
        return result


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(TicklerError):
    """Raised when input validation fails (400)."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field

        super().__init__(
            message=message,
            status_code=400,
            category=ErrorCategory.VALIDATION,
            context=ctx,
            original_error=original_error,
        )


class ReminderValidationError(ValidationError):
    """Raised when reminder input is malformed."""


class SnoozeLimitError(ValidationError):
    """Raised when a reminder has used up all of its snoozes."""

    def __init__(
        self,
        reminder_id: str,
        snooze_count: int,
        max_snoozes: int,
    ):
        super().__init__(
            message="Maximum snoozes reached",
            field="snooze_info",
            context={
                "reminder_id": reminder_id,
                "snooze_count": snooze_count,
                "max_snoozes": max_snoozes,
            },
        )
        self.status_code = 429  # Too Many Requests


# =============================================================================
# State Machine Errors
# =============================================================================

class InvalidTransitionError(TicklerError):
    """Raised when a reminder cannot move from its current status."""

    def __init__(
        self,
        reminder_id: str,
        current_status: str,
        target_status: str,
    ):
        super().__init__(
            message=f"Cannot move reminder from '{current_status}' to '{target_status}'",
            status_code=409,
            category=ErrorCategory.STATE,
            context={
                "reminder_id": reminder_id,
                "current_status": current_status,
                "target_status": target_status,
            },
        )


# =============================================================================
# Store Errors
# =============================================================================

class StoreError(TicklerError):
    """Raised when a persistence operation fails."""

    def __init__(
        self,
        message: str = "Store operation failed",
        operation: Optional[str] = None,
        table: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if operation:
            ctx["operation"] = operation
        if table:
            ctx["table"] = table

        super().__init__(
            message=message,
            status_code=500,
            category=ErrorCategory.STORE,
            context=ctx,
            original_error=original_error,
        )


class ReminderNotFoundError(StoreError):
    """Raised when a reminder is not found."""

    def __init__(
        self,
        reminder_id: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Reminder not found: {reminder_id}",
            operation="select",
            context={"reminder_id": reminder_id},
            original_error=original_error,
        )
        self.status_code = 404  # Not Found


class DeliveryNotFoundError(StoreError):
    """Raised when no delivery carries a provider message id."""

    def __init__(self, message_id: str):
        super().__init__(
            message=f"No delivery found for message id: {message_id}",
            operation="select",
            context={"message_id": message_id},
        )
        self.status_code = 404  # Not Found


class DuplicateReminderError(StoreError):
    """Raised when creating a reminder whose id already exists."""

    def __init__(self, reminder_id: str):
        super().__init__(
            message=f"Reminder already exists: {reminder_id}",
            operation="insert",
            context={"reminder_id": reminder_id},
        )
        self.status_code = 409  # Conflict


class ConcurrencyError(TicklerError):
    """Raised when two workers race for the same reminder."""

    def __init__(
        self,
        message: str = "Concurrent modification detected",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            status_code=409,
            category=ErrorCategory.CONCURRENCY,
            context=context,
            original_error=original_error,
        )


class ReminderClaimError(ConcurrencyError):
    """Raised when a reminder cannot be claimed by a sweep worker."""

    def __init__(
        self,
        reminder_id: str,
        reason: str = "Reminder may already be claimed or no longer scheduled",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Cannot claim reminder {reminder_id}: {reason}",
            context={"reminder_id": reminder_id, "reason": reason},
            original_error=original_error,
        )


# =============================================================================
# Transport Errors
# =============================================================================

class TransportError(TicklerError):
    """Raised when a delivery channel fails to accept a message."""

    def __init__(
        self,
        channel: str,
        message: str = "Channel transport failed",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        ctx["channel"] = channel

        super().__init__(
            message=f"{channel}: {message}",
            status_code=502,  # Bad Gateway
            category=ErrorCategory.TRANSPORT,
            context=ctx,
            original_error=original_error,
        )


class ChannelTimeoutError(TransportError):
    """Raised when a channel transport call exceeds its timeout."""

    def __init__(
        self,
        channel: str,
        timeout_seconds: float,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            channel=channel,
            message=f"Send timed out after {timeout_seconds}s",
            context={"timeout_seconds": timeout_seconds},
            original_error=original_error,
        )
        self.status_code = 504  # Gateway Timeout


# =============================================================================
# Condition Errors
# =============================================================================

class ConditionEvaluationError(TicklerError):
    """Raised when a delivery condition cannot be evaluated."""

    def __init__(
        self,
        condition_type: str,
        message: str = "Condition evaluation failed",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        ctx["condition_type"] = condition_type

        super().__init__(
            message=message,
            status_code=500,
            category=ErrorCategory.CONDITION,
            context=ctx,
            original_error=original_error,
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(TicklerError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if config_key:
            ctx["config_key"] = config_key

        super().__init__(
            message=message,
            status_code=500,
            category=ErrorCategory.CONFIGURATION,
            context=ctx,
            original_error=original_error,
        )


class MissingCredentialsError(ConfigurationError):
    """Raised when required credentials are missing."""

    def __init__(
        self,
        service: str,
        required_keys: Optional[list] = None,
        original_error: Optional[Exception] = None,
    ):
        context = {"service": service}
        if required_keys:
            context["required_keys"] = required_keys

        super().__init__(
            message=f"Missing credentials for {service}",
            context=context,
            original_error=original_error,
        )


# =============================================================================
# Result Classes for Operations
# =============================================================================

class OperationResult:
    """
    Structured result for operations that can fail.

    Use this instead of returning None/False when an operation fails,
    to preserve error context.

    Usage:
        result = await service.snooze_reminder(reminder_id, minutes=10)
        if result.success:
            print(f"Snoozed until: {result.data['reminder'].scheduled_at}")
        else:
            print(f"Failed: {result.error.message}")
    """

    def __init__(
        self,
        success: bool,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[TicklerError] = None,
    ):
        self.success = success
        self.data = data or {}
        self.error = error

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "OperationResult":
        """Create a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: TicklerError) -> "OperationResult":
        """Create a failed result."""
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for API responses."""
        if self.success:
            return {"success": True, "data": self.data}
        else:
            return {
                "success": False,
                "error": self.error.to_dict() if self.error else {"error": "Unknown error"},
            }
