"""
Allow ``python -m tickler.worker`` to start the reminder worker.

This thin wrapper delegates to ``tickler.worker.main.run_worker()``.
"""

from tickler.worker.main import run_worker

run_worker()
