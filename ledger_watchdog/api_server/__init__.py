"""
HTTP surface for Ledger Watchdog (FastAPI).
"""

from ledger_watchdog.api_server.server import create_app

__all__ = ["create_app"]
