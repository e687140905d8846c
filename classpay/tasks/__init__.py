# tasks/__init__.py
from classpay.tasks.scheduler import ExpirySweep, ReminderSweep, Scheduler

__all__ = [
    "ExpirySweep",
    "ReminderSweep",
    "Scheduler",
]
