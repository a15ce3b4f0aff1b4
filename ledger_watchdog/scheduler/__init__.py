"""
Scheduler: periodic ingestion cycles with a stop event and per-cycle timeout.
"""

from ledger_watchdog.scheduler.engine import IngestionScheduler, SchedulerState

__all__ = ["IngestionScheduler", "SchedulerState"]
