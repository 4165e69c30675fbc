"""
Tickler
=======

Scheduled reminder and multi-channel delivery engine.

Subpackages:
- ``db.models``  -- pydantic models for reminders, deliveries and rules
- ``services``   -- exceptions, reminder store and application service
- ``engine``     -- recurrence, conditions, dispatch, escalation, sweep, scheduler
- ``worker``     -- process entry point
"""

__version__ = "0.1.0"
