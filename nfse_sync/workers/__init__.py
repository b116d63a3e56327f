"""Background workers: job processor, scheduler and their wiring."""

from .processor import JobProcessor
from .runtime import Runtime, build_runtime
from .scheduler import PeriodicTask, Scheduler

__all__ = [
    "JobProcessor",
    "PeriodicTask",
    "Runtime",
    "Scheduler",
    "build_runtime",
]
