"""
Tickler Background Worker Package
=================================

- ``main.py`` -- Worker entry point (wires the engine and runs the scheduler)
"""
