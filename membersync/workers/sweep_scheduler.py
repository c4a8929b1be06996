"""
Sweep scheduler worker.

Runs the daily reconciliation sweep on a fixed cadence. The clock and sleep
are injected so tests can drive cycles with a fixed `now` instead of waiting
for real time.

Run as: python -m membersync.workers.sweep_scheduler

Configuration:
- SWEEP_INTERVAL_SECONDS: Seconds between sweeps (default: 86400)
"""

import logging
import signal
import time
from datetime import datetime
from typing import Callable, Optional

from membersync.errors import InvariantViolation
from membersync.jobs.daily_sweep import DailySweep, SweepSummary
from membersync.models.base import utcnow

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Drives DailySweep.run_sweep once per interval until shut down."""

    def __init__(
        self,
        sweep: DailySweep,
        interval_seconds: int,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._sleep = sleep
        self._shutdown = False
        self.cycles = 0

    def request_shutdown(self, signum: Optional[int] = None, frame=None) -> None:
        logger.info("Shutdown signal received", extra={"signal": signum})
        self._shutdown = True

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self.request_shutdown)
        signal.signal(signal.SIGINT, self.request_shutdown)

    def run_once(self) -> Optional[SweepSummary]:
        """Run one sweep with `now` read once. Returns None if it failed."""
        now = self.clock()
        self.cycles += 1
        try:
            return self.sweep.run_sweep(now)
        except InvariantViolation:
            logger.critical("INVARIANT_VIOLATION: stopping sweep scheduler", exc_info=True)
            raise
        except Exception:
            logger.error(
                "Sweep cycle failed",
                extra={"cycle": self.cycles, "now": now.isoformat()},
                exc_info=True,
            )
            return None

    def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Loop until a shutdown signal (or max_cycles, for tests)."""
        logger.info(
            "Sweep scheduler started",
            extra={"interval_seconds": self.interval_seconds},
        )

        while not self._shutdown:
            self.run_once()
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            for _ in range(self.interval_seconds):
                if self._shutdown:
                    break
                self._sleep(1)

        logger.info("Sweep scheduler stopped", extra={"cycles": self.cycles})


def main():
    from membersync.app_state import build_components
    from membersync.config.settings import load_config

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config()
    components = build_components(config)
    scheduler = SweepScheduler(components.sweep, config.sweep_interval_seconds)
    scheduler.install_signal_handlers()
    try:
        scheduler.run_forever()
    finally:
        components.close()


if __name__ == "__main__":
    main()
