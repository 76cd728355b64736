# aaaa_filter/console.py
# Version: 1.0.0
# Signal driven operator console

"""
Operator Console

The proxy has no management API. Operators talk to it with signals:

    SIGUSR1          one-line status (uptime and total queries)
    SIGUSR2          ranked report of the busiest root domains
    SIGINT/SIGTERM   status plus report, then stop only if the signal is
                     repeated within the confirmation window

Signal handlers never touch state directly; they hand the work to the
reactor thread with callFromThread.
"""

import datetime
import enum
import logging
import signal
import sys
import time
from typing import Callable, Optional

from aaaa_filter.constants import SHUTDOWN_CONFIRM_WINDOW, STATS_REPORT_SIZE
from aaaa_filter.stats import StatsCollector, StatsSnapshot

logger = logging.getLogger(__name__)

UNKNOWN_ROOT_LABEL = "<single-label>"


class ConsoleState(enum.Enum):
    RUNNING = "running"
    CONFIRM_PENDING = "confirm-pending"


class ShutdownGuard:
    """Two-step confirmation for termination requests"""

    def __init__(self, confirm_window: float = SHUTDOWN_CONFIRM_WINDOW, clock=time.monotonic):
        self.confirm_window = confirm_window
        self.clock = clock
        self.last_request_at: Optional[float] = None

    @property
    def state(self) -> ConsoleState:
        if self.last_request_at is None:
            return ConsoleState.RUNNING
        return ConsoleState.CONFIRM_PENDING

    def request(self) -> bool:
        """
        Register a termination request

        Returns:
            True if this request confirms one made within the window, in
            which case the caller should stop. Otherwise the request is
            recorded as the start of a new confirmation window.
        """
        now = self.clock()
        if self.last_request_at is not None and now - self.last_request_at < self.confirm_window:
            return True
        self.last_request_at = now
        return False


def format_uptime(seconds: float) -> str:
    return str(datetime.timedelta(seconds=int(seconds)))


def format_status(snapshot: StatsSnapshot) -> str:
    return f"Uptime {format_uptime(snapshot.uptime)}, {snapshot.total_queries} queries performed"


def format_report(snapshot: StatsSnapshot) -> str:
    lines = [
        format_status(snapshot),
        f"Query Statistics ({snapshot.domain_count} root domains):",
    ]
    for stat in snapshot.top_domains:
        line = f"{stat.root_domain or UNKNOWN_ROOT_LABEL:>25}: {stat.frequency:3d} queries"
        if stat.filtered_count > 0:
            line += f", {stat.filtered_count:3d} filtered"
        lines.append(line)
    return "\n".join(lines)


class OperatorConsole:
    """Turns operator signals into reports and a confirmed shutdown"""

    def __init__(
        self,
        stats: StatsCollector,
        shutdown: Callable[[], None],
        confirm_window: float = SHUTDOWN_CONFIRM_WINDOW,
        report_size: int = STATS_REPORT_SIZE,
        clock=time.monotonic,
        output=None,
    ):
        self.stats = stats
        self.shutdown = shutdown
        self.report_size = report_size
        self.guard = ShutdownGuard(confirm_window, clock)
        self.output = output or sys.stdout
        self.stopping = False

    @property
    def state(self) -> ConsoleState:
        return self.guard.state

    def _print(self, text: str):
        print(text, file=self.output, flush=True)

    def handle_status(self):
        """Print a one-line status"""
        status = format_status(self.stats.snapshot(0))
        self._print(status)
        logger.info(status)

    def handle_report(self):
        """Print the ranked report"""
        report = format_report(self.stats.snapshot(self.report_size))
        self._print(report)
        logger.info(report)

    def handle_termination(self, signum: int = signal.SIGTERM):
        """Stop on a confirmed request, otherwise report and keep serving"""
        if self.stopping:
            return

        snapshot = self.stats.snapshot(self.report_size)
        if self.guard.request():
            self.stopping = True
            self._print(f"{format_status(snapshot)}\nSignal ({signum}) received, stopping")
            logger.info(f"Shutdown confirmed by signal {signum}")
            self.shutdown()
            return

        self._print(
            f"{format_status(snapshot)}, send the signal again within "
            f"{self.guard.confirm_window:g}s to quit"
        )
        self._print(format_report(snapshot))
        logger.info(f"Signal {signum} received, waiting for confirmation")

    def install_signal_handlers(self, reactor):
        """Route operator signals to the reactor thread"""

        def on_terminate(signum, frame):
            reactor.callFromThread(self.handle_termination, signum)

        def on_status(signum, frame):
            reactor.callFromThread(self.handle_status)

        def on_report(signum, frame):
            reactor.callFromThread(self.handle_report)

        signal.signal(signal.SIGINT, on_terminate)
        signal.signal(signal.SIGTERM, on_terminate)
        signal.signal(signal.SIGUSR1, on_status)
        signal.signal(signal.SIGUSR2, on_report)
        logger.info(
            "Signal handlers installed (SIGUSR1 status, SIGUSR2 report, "
            "SIGINT/SIGTERM twice to stop)"
        )
