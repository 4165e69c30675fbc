"""
Service layer: error hierarchy, reminder persistence and the application-facing
ReminderService.
"""
