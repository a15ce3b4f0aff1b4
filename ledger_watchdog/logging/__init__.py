"""
Structured logging for Ledger Watchdog.

JSON logs with timestamp, event_type, and slot/signature context.
Use get_logger() in all modules for aggregation-friendly output.
"""

from ledger_watchdog.logging.logger import bind_source, get_logger

__all__ = ["bind_source", "get_logger"]
