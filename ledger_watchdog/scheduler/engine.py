"""
Ingestion scheduler: runs IngestionEngine.run_cycle on a fixed interval.

- One cycle at a time (IDLE -> SCANNING -> IDLE); the first cycle starts immediately.
- The interval is pacing, not a deadline: the next cycle starts at
  cycle_start + interval, or right away when a cycle overran.
- Every cycle runs under a timeout; errors and timeouts are logged and the
  scheduler goes back to IDLE. The process never crashes on a bad cycle.
- stop() sets the stop event and cancels the in-flight cycle.
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from enum import Enum
from typing import Any, Callable

from ledger_watchdog.config import Settings, get_settings
from ledger_watchdog.ingestion.engine import CycleResult, IngestionEngine, build_engine
from ledger_watchdog.logging import get_logger

logger = get_logger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"


class IngestionScheduler:
    """Periodic driver for one IngestionEngine."""

    def __init__(
        self,
        engine: IngestionEngine,
        *,
        interval_sec: float,
        cycle_timeout_sec: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        if cycle_timeout_sec <= 0:
            raise ValueError("cycle_timeout_sec must be positive")
        self.engine = engine
        self.interval_sec = interval_sec
        self.cycle_timeout_sec = cycle_timeout_sec
        self._clock = clock
        self.state = SchedulerState.IDLE
        self.cycles = 0
        self.failures = 0
        self.last_result: CycleResult | None = None
        self.last_error: str | None = None
        self.last_cycle_at: float | None = None
        self._stop_event = asyncio.Event()
        self._cycle_task: asyncio.Future[CycleResult] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, engine: IngestionEngine | None = None) -> "IngestionScheduler":
        return cls(
            engine or build_engine(settings),
            interval_sec=settings.interval_sec,
            cycle_timeout_sec=settings.cycle_timeout_sec,
        )

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "cycles": self.cycles,
            "failures": self.failures,
            "last_cycle_at": self.last_cycle_at,
            "last_error": self.last_error,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    async def run_once(self) -> CycleResult | None:
        """Run one cycle under the cycle timeout. Returns None on error, timeout, or cancel-by-stop."""
        if self.state is SchedulerState.SCANNING:
            logger.warning("scheduler_cycle_already_running")
            return None
        self.state = SchedulerState.SCANNING
        self.last_cycle_at = time.time()
        self.cycles += 1
        self._cycle_task = asyncio.ensure_future(self.engine.run_cycle())
        try:
            result = await asyncio.wait_for(self._cycle_task, timeout=self.cycle_timeout_sec)
        except asyncio.TimeoutError:
            self.failures += 1
            self.last_error = f"cycle timed out after {self.cycle_timeout_sec}s"
            logger.error("scheduler_cycle_timeout", timeout_sec=self.cycle_timeout_sec)
            return None
        except asyncio.CancelledError:
            if not self._stop_event.is_set():
                raise
            logger.info("scheduler_cycle_cancelled")
            return None
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.exception("scheduler_cycle_error", error=str(e))
            return None
        finally:
            self.state = SchedulerState.IDLE
            self._cycle_task = None
        self.last_result = result
        self.last_error = None
        return result

    async def run(self) -> None:
        """Loop until stop(): first cycle now, then one per interval."""
        logger.info(
            "scheduler_started",
            interval_sec=self.interval_sec,
            cycle_timeout_sec=self.cycle_timeout_sec,
            source=self.engine.source,
        )
        while not self._stop_event.is_set():
            cycle_start = self._clock()
            await self.run_once()
            if self._stop_event.is_set():
                break
            delay = max(0.0, cycle_start + self.interval_sec - self._clock())
            if delay == 0.0:
                logger.warning("scheduler_cycle_overran", interval_sec=self.interval_sec)
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler_stopped", cycles=self.cycles, failures=self.failures)

    def stop(self) -> None:
        """Request shutdown; cancels the in-flight cycle (its cursor is not advanced)."""
        self._stop_event.set()
        if self._cycle_task is not None and not self._cycle_task.done():
            self._cycle_task.cancel()

    async def _serve(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform / not the main thread
                pass
        try:
            await self.run()
        finally:
            await self.engine.aclose()

    def _on_signal(self, signum: int) -> None:
        logger.info("scheduler_shutdown_signal", signal=signal.Signals(signum).name)
        self.stop()

    def start(self) -> None:
        """Blocking runner until SIGINT/SIGTERM."""
        try:
            asyncio.run(self._serve())
        except KeyboardInterrupt:
            logger.info("scheduler_keyboard_interrupt")


def main() -> int:
    """CLI entrypoint (ledger-watchdog-poll): build from env and run the scheduler."""
    try:
        settings = get_settings()
        if not settings.ingestion_enabled:
            logger.info("ingestion_disabled")
            return 0
        IngestionScheduler.from_settings(settings).start()
        return 0
    except Exception as e:
        logger.exception("scheduler_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
