"""
Tickler Worker Entry Point
==========================

Wires the reminder engine from the environment and runs its periodic jobs
(sweep, escalation, expiry cleanup) until SIGTERM / SIGINT.

Usage::

    python -m tickler.worker            # run the scheduler
    python -m tickler.worker --once     # run a single sweep and exit

Environment variables:
    SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY -- reminder store (in-memory without them)
    REDIS_URL                 -- real-time events for in-app notifications
    REMINDER_WEBHOOK_URL      -- webhook channel endpoint
    TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_FROM_NUMBER -- SMS channel
    SWEEP_INTERVAL_SECONDS    -- sweep period (default: 30)
    LOG_LEVEL                 -- Logging verbosity (default: INFO)

Push and email have no bundled gateway. Unless the host supplies transports
for them, they are wired to LoggingTransport, which rejects every send, so a
reminder on those channels alone ends its cycle as failed. A warning is
logged at startup for each such channel.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Module-level configuration elsewhere reads os.environ at import time
load_dotenv()

# ---------------------------------------------------------------------------
# Logging setup (before any other imports that might log)
# ---------------------------------------------------------------------------

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("tickler.worker")

from tickler.db.models.reminder import Channel  # noqa: E402
from tickler.engine.channels import (  # noqa: E402
    ChannelTransport,
    InAppTransport,
    InMemoryNotificationSink,
    LoggingTransport,
    NotificationSink,
    SupabaseNotificationSink,
    TwilioSmsTransport,
    WebhookTransport,
)
from tickler.engine.conditions import ConditionEvaluator, ConditionRegistry  # noqa: E402
from tickler.engine.dispatcher import DeliveryDispatcher  # noqa: E402
from tickler.engine.escalation import EscalationHandler  # noqa: E402
from tickler.engine.events import (  # noqa: E402
    EventPublisher,
    NullEventPublisher,
    RedisEventPublisher,
)
from tickler.engine.scheduler import ReminderScheduler  # noqa: E402
from tickler.engine.sweep import ReminderSweep  # noqa: E402
from tickler.services.exceptions import MissingCredentialsError  # noqa: E402
from tickler.services.reminder_store import (  # noqa: E402
    InMemoryReminderStore,
    ReminderStore,
    SupabaseReminderStore,
)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_store() -> ReminderStore:
    """Supabase store when credentials are present, in-memory otherwise."""
    try:
        return SupabaseReminderStore()
    except MissingCredentialsError:
        logger.warning(
            "Supabase credentials not configured - using in-memory reminder store "
            "(reminders are lost on restart)"
        )
        return InMemoryReminderStore()


def build_publisher() -> EventPublisher:
    if os.getenv("REDIS_URL"):
        return RedisEventPublisher()
    logger.info("REDIS_URL not set - in-app notifications are not broadcast")
    return NullEventPublisher()


def build_transports(
    store: ReminderStore,
    publisher: EventPublisher,
) -> Dict[Channel, ChannelTransport]:
    """One transport per channel; channels without a gateway get LoggingTransport."""
    fallback = LoggingTransport()

    sink: NotificationSink
    if isinstance(store, SupabaseReminderStore):
        sink = SupabaseNotificationSink(store.client)
    else:
        sink = InMemoryNotificationSink()

    webhook = WebhookTransport()
    sms = TwilioSmsTransport()

    transports: Dict[Channel, ChannelTransport] = {
        Channel.PUSH: fallback,
        Channel.EMAIL: fallback,
        Channel.SMS: sms if sms.configured else fallback,
        Channel.WEBHOOK: webhook if webhook.url else fallback,
        Channel.IN_APP: InAppTransport(sink, publisher),
    }

    for channel, transport in transports.items():
        if transport is fallback:
            logger.warning(
                f"No gateway configured for channel '{channel.value}' - "
                f"deliveries on it are logged and recorded as failed"
            )
    return transports


def build_engine(
    store: Optional[ReminderStore] = None,
    registry: Optional[ConditionRegistry] = None,
) -> Dict[str, Any]:
    """
    Assemble store, dispatcher, sweep, escalation handler and scheduler.

    Host applications register their condition predicates on `registry`
    before the first sweep.
    """
    if store is None:
        store = build_store()
    publisher = build_publisher()
    dispatcher = DeliveryDispatcher(build_transports(store, publisher))
    if registry is None:
        registry = ConditionRegistry()
    sweep = ReminderSweep(store, dispatcher, ConditionEvaluator(registry))
    escalation = EscalationHandler(store, dispatcher)
    scheduler = ReminderScheduler(sweep, escalation=escalation, store=store)

    return {
        "store": store,
        "dispatcher": dispatcher,
        "sweep": sweep,
        "escalation": escalation,
        "scheduler": scheduler,
    }


# ---------------------------------------------------------------------------
# Run modes
# ---------------------------------------------------------------------------

async def run_once() -> Dict[str, Any]:
    engine = build_engine()
    result = await engine["scheduler"].trigger_sweep_now()
    return result.model_dump(mode="json")


async def run_forever() -> None:
    engine = build_engine()
    scheduler: ReminderScheduler = engine["scheduler"]

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _shutdown_handler(sig: signal.Signals) -> None:
        logger.info("Received %s -- requesting graceful shutdown", sig.name)
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown_handler, sig)

    await scheduler.start()
    logger.info("Tickler worker started -- sweeping due reminders")

    await stop.wait()
    await scheduler.shutdown()
    logger.info("Worker shut down cleanly")


def run_worker(argv: Optional[list] = None) -> None:
    """
    Parse arguments and start the worker.
    """
    parser = argparse.ArgumentParser(prog="tickler.worker", description="Tickler reminder worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep, print its summary as JSON and exit",
    )
    args = parser.parse_args(argv)

    logger.info("=" * 60)
    logger.info("Tickler worker starting")
    logger.info("  Log level : %s", LOG_LEVEL)
    logger.info("  Mode      : %s", "single sweep" if args.once else "scheduler")
    logger.info("=" * 60)

    if args.once:
        summary = asyncio.run(run_once())
        print(json.dumps(summary, indent=2))
        return

    try:
        asyncio.run(run_forever())
    except Exception as exc:
        logger.error("Worker exited with error: %s", exc, exc_info=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    run_worker()
