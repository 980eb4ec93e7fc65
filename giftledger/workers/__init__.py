"""Background workers for periodic delivery drains and sweeps."""
from .scheduler import Scheduler, start_scheduler

__all__ = ["Scheduler", "start_scheduler"]
