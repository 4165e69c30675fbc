"""
User Preference lookup used by the dispatcher before each channel send.

A channel the user opted out of is skipped silently: no delivery record is
written and it does not count as a failure.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Set, Tuple

logger = logging.getLogger(__name__)

REMINDER_CATEGORY = "reminder"


class PreferenceLookup(ABC):
    """Interface to the host application's notification preferences."""

    @abstractmethod
    async def should_receive(self, user_id: str, category: str, channel: str) -> bool:
        ...


class AllowAllPreferences(PreferenceLookup):
    """Every user receives every channel."""

    async def should_receive(self, user_id: str, category: str, channel: str) -> bool:
        return True


class StaticPreferences(PreferenceLookup):
    """
    Opt-outs held in memory, keyed by (user_id, category).

    Usage:
        prefs = StaticPreferences({("user-1", "reminder"): {"sms"}})
    """

    def __init__(self, opt_outs: Dict[Tuple[str, str], Iterable[str]] = None):
        self._opt_outs: Dict[Tuple[str, str], Set[str]] = {
            key: set(channels) for key, channels in (opt_outs or {}).items()
        }

    def opt_out(self, user_id: str, channel: str, category: str = REMINDER_CATEGORY) -> None:
        self._opt_outs.setdefault((user_id, category), set()).add(channel)

    def opt_in(self, user_id: str, channel: str, category: str = REMINDER_CATEGORY) -> None:
        self._opt_outs.get((user_id, category), set()).discard(channel)

    async def should_receive(self, user_id: str, category: str, channel: str) -> bool:
        return channel not in self._opt_outs.get((user_id, category), set())
