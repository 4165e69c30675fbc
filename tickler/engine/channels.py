"""
Channel Transports
==================

One transport per delivery channel. A transport accepts or rejects a single
message and reports the provider message id when it has one:

    send(channel, recipient_ref, title, message, context) -> TransportResult

Transports shipped here:
- WebhookTransport    : JSON POST via httpx
- TwilioSmsTransport  : Twilio REST API
- InAppTransport      : host notification record + real-time event
- LoggingTransport    : logs what would be sent; never accepts

Rendering stays minimal (title + message); richer content belongs to the
host application.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from tickler.engine.events import EventPublisher, NullEventPublisher

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

REMINDER_WEBHOOK_URL: str = os.getenv("REMINDER_WEBHOOK_URL", "")
WEBHOOK_TIMEOUT_SECONDS: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")

NOTIFICATIONS_TABLE = os.getenv("NOTIFICATIONS_TABLE", "notifications")

SMS_PREVIEW_LENGTH = 80

# Webhook endpoints answering with these codes are gone for good
BOUNCE_STATUS_CODES = {404, 410}


# =============================================================================
# Result Model
# =============================================================================

class TransportResult(BaseModel):
    """Outcome of one transport call."""
    accepted: bool = Field(..., description="True if the provider took the message")
    message_id: Optional[str] = Field(default=None, description="Provider message id")
    error: Optional[str] = None
    bounced: bool = Field(default=False, description="Permanent recipient rejection")

    @classmethod
    def ok(cls, message_id: Optional[str] = None) -> "TransportResult":
        return cls(accepted=True, message_id=message_id)

    @classmethod
    def rejected(cls, error: str, bounced: bool = False) -> "TransportResult":
        return cls(accepted=False, error=error, bounced=bounced)


class ChannelTransport(ABC):
    """Interface every channel gateway implements."""

    @abstractmethod
    async def send(
        self,
        channel: str,
        recipient_ref: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> TransportResult:
        ...


def format_sms_body(title: str, message: str) -> str:
    """Concise SMS text: title plus a truncated message preview."""
    body = f"⏰ Reminder: {title}"
    if message:
        preview = message[:SMS_PREVIEW_LENGTH] + "..." if len(message) > SMS_PREVIEW_LENGTH else message
        body += f"\n{preview}"
    return body


# =============================================================================
# Logging Transport
# =============================================================================

class LoggingTransport(ChannelTransport):
    """Stand-in for channels without a configured gateway."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self,
        channel: str,
        recipient_ref: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> TransportResult:
        logger.info(f"Would send {channel} to {recipient_ref}: {title}")
        self.sent.append({"channel": channel, "recipient": recipient_ref, "title": title})
        return TransportResult.rejected(f"{channel} gateway not configured")


# =============================================================================
# Webhook Transport
# =============================================================================

class WebhookTransport(ChannelTransport):
    """
    POSTs the reminder as JSON to a webhook endpoint.

    Accepted on any 2xx. The provider message id is read from the
    X-Message-Id header, else from an "id" field in the JSON response.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[Any] = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ):
        self.url = url or REMINDER_WEBHOOK_URL
        self._client = client
        self.timeout = timeout

    async def _post(self, payload: Dict[str, Any]) -> Any:
        if self._client is not None:
            return await self._client.post(self.url, json=payload)

        import httpx

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def send(
        self,
        channel: str,
        recipient_ref: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> TransportResult:
        if not self.url:
            logger.warning("Webhook URL not configured - webhook not sent")
            return TransportResult.rejected("Webhook URL not configured")

        payload = {
            "channel": channel,
            "recipient": recipient_ref,
            "title": title,
            "message": message,
            "context": context,
        }

        import httpx

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery to {self.url} failed: {e}")
            return TransportResult.rejected(str(e))

        if response.status_code in BOUNCE_STATUS_CODES:
            return TransportResult.rejected(
                f"Webhook endpoint returned {response.status_code}", bounced=True
            )
        if not 200 <= response.status_code < 300:
            return TransportResult.rejected(f"Webhook endpoint returned {response.status_code}")

        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("id"):
                    message_id = str(body["id"])
            except ValueError:
                pass

        logger.info(f"Webhook reminder sent to {self.url} (message_id={message_id})")
        return TransportResult.ok(message_id)


# =============================================================================
# SMS Transport (Twilio)
# =============================================================================

PhoneLookup = Callable[[str], Awaitable[Optional[str]]]


class TwilioSmsTransport(ChannelTransport):
    """
    Sends SMS through Twilio.

    The recipient's phone number comes from `phone_lookup(user_id)`, falling
    back to `context["phone"]`.
    """

    def __init__(
        self,
        phone_lookup: Optional[PhoneLookup] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.phone_lookup = phone_lookup
        self.account_sid = account_sid or TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or TWILIO_AUTH_TOKEN
        self.from_number = from_number or TWILIO_FROM_NUMBER
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or all(
            [self.account_sid, self.auth_token, self.from_number]
        )

    def _get_client(self) -> Any:
        if self._client is None:
            from twilio.rest import Client as TwilioClient

            self._client = TwilioClient(self.account_sid, self.auth_token)
        return self._client

    async def _resolve_phone(self, recipient_ref: str, context: Dict[str, Any]) -> Optional[str]:
        if self.phone_lookup is not None:
            phone = await self.phone_lookup(recipient_ref)
            if phone:
                return phone
        return context.get("phone")

    async def send(
        self,
        channel: str,
        recipient_ref: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> TransportResult:
        if not self.configured:
            logger.warning("Twilio credentials not configured - SMS not sent")
            return TransportResult.rejected("Twilio credentials not configured")

        phone = await self._resolve_phone(recipient_ref, context)
        if not phone:
            logger.warning(f"No phone number for user {recipient_ref}")
            return TransportResult.rejected("No phone number configured", bounced=True)

        body = format_sms_body(title, message)
        client = self._get_client()

        # The Twilio client is synchronous
        sms = await asyncio.to_thread(
            client.messages.create,
            body=body,
            from_=self.from_number,
            to=phone,
        )
        logger.info(f"SMS reminder sent: {sms.sid}")
        return TransportResult.ok(sms.sid)


# =============================================================================
# In-App Transport
# =============================================================================

class NotificationSink(ABC):
    """Creates first-class notification records in the host application."""

    @abstractmethod
    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> str:
        ...


class InMemoryNotificationSink(NotificationSink):
    def __init__(self):
        self.notifications: List[Dict[str, Any]] = []

    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> str:
        notification_id = str(uuid4())
        self.notifications.append({
            "id": notification_id,
            "user_id": user_id,
            "title": title,
            "message": message,
            "context": context,
        })
        return notification_id


class SupabaseNotificationSink(NotificationSink):
    """Inserts notification rows into the host's notifications table."""

    def __init__(self, client: Any, table: str = NOTIFICATIONS_TABLE):
        self.client = client
        self.table = table

    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> str:
        row = {
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": "reminder",
            "related_entity": context.get("subject"),
            "metadata": context,
        }
        response = self.client.table(self.table).insert(row).execute()
        if not response.data:
            raise RuntimeError("No data returned from notification insert")
        return str(response.data[0]["id"])


class InAppTransport(ChannelTransport):
    """
    Records an in-app notification and broadcasts it to the user's clients.

    A failed broadcast does not undo the notification record; clients pick
    it up on their next fetch.
    """

    def __init__(
        self,
        sink: NotificationSink,
        publisher: Optional[EventPublisher] = None,
    ):
        self.sink = sink
        self.publisher = publisher or NullEventPublisher()

    async def send(
        self,
        channel: str,
        recipient_ref: str,
        title: str,
        message: str,
        context: Dict[str, Any],
    ) -> TransportResult:
        notification_id = await self.sink.create_notification(
            recipient_ref, title, message, context
        )

        try:
            await self.publisher.publish(
                recipient_ref,
                "reminder.notification",
                {
                    "notification_id": notification_id,
                    "title": title,
                    "message": message,
                    "reminder_id": context.get("reminder_id"),
                },
            )
        except Exception as e:
            logger.warning(f"Real-time broadcast for notification {notification_id} failed: {e}")

        return TransportResult.ok(notification_id)
