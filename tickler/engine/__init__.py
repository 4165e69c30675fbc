"""
Reminder Engine
===============

- ``recurrence``  -- next occurrence of a recurring reminder
- ``conditions``  -- delivery condition evaluation through a predicate registry
- ``preferences`` -- user channel opt-outs
- ``events``      -- real-time event publishing capability
- ``channels``    -- channel transports (webhook, SMS, in-app, logging)
- ``dispatcher``  -- multi-channel delivery of one trigger cycle
- ``escalation``  -- secondary fan-out for unresolved deliveries
- ``sweep``       -- due-reminder batch processing
- ``scheduler``   -- APScheduler jobs and on-demand sweep trigger
"""
