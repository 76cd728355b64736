#!/usr/bin/env python3
"""Unit tests for the operator console and shutdown confirmation"""

import io
import signal
from unittest.mock import Mock, patch

import pytest

from aaaa_filter.console import (
    ConsoleState,
    OperatorConsole,
    ShutdownGuard,
    format_report,
    format_uptime,
)
from aaaa_filter.stats import QueryEvent, StatsCollector


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def collector(fake_clock):
    collector = StatsCollector(clock=fake_clock)
    for name, qtype, filtered in [
        ("youtube.com.", "AAAA", True),
        ("www.youtube.com.", "A", False),
        ("r1.googlevideo.com.", "AAAA", True),
        ("example.org.", "A", False),
        ("www.youtube.com.", "AAAA", False),
    ]:
        collector.process_event(QueryEvent(name, qtype, filtered))
    return collector


@pytest.fixture
def console(collector, fake_clock):
    return OperatorConsole(
        collector, Mock(name="shutdown"), confirm_window=30, clock=fake_clock, output=io.StringIO()
    )


class TestShutdownGuard:
    """Test the confirmation state machine"""

    def test_first_request_only_arms(self, fake_clock):
        guard = ShutdownGuard(30, fake_clock)
        assert guard.state is ConsoleState.RUNNING

        assert guard.request() is False
        assert guard.state is ConsoleState.CONFIRM_PENDING
        assert guard.last_request_at == fake_clock.now

    def test_second_request_within_window_confirms(self, fake_clock):
        guard = ShutdownGuard(30, fake_clock)
        guard.request()
        fake_clock.advance(29.9)

        assert guard.request() is True

    def test_request_after_window_restarts(self, fake_clock):
        guard = ShutdownGuard(30, fake_clock)
        guard.request()
        fake_clock.advance(31)

        assert guard.request() is False
        assert guard.last_request_at == fake_clock.now

        fake_clock.advance(5)
        assert guard.request() is True


class TestOperatorConsole:
    """Test signal handling on the console"""

    def test_single_termination_keeps_running(self, console):
        console.handle_termination(signal.SIGINT)

        console.shutdown.assert_not_called()
        assert console.state is ConsoleState.CONFIRM_PENDING
        output = console.output.getvalue()
        assert "5 queries performed" in output
        assert "again within 30s" in output
        assert "youtube.com:   3 queries,   1 filtered" in output

    def test_double_termination_stops(self, console, fake_clock):
        console.handle_termination(signal.SIGINT)
        fake_clock.advance(2)
        console.handle_termination(signal.SIGTERM)

        console.shutdown.assert_called_once_with()
        assert console.stopping
        assert f"Signal ({signal.SIGTERM}) received, stopping" in console.output.getvalue()

    def test_late_second_signal_restarts_confirmation(self, console, fake_clock):
        console.handle_termination(signal.SIGINT)
        fake_clock.advance(45)
        console.handle_termination(signal.SIGINT)

        console.shutdown.assert_not_called()
        assert console.guard.last_request_at == fake_clock.now

    def test_signals_after_shutdown_are_ignored(self, console, fake_clock):
        console.handle_termination()
        console.handle_termination()
        console.handle_termination()

        console.shutdown.assert_called_once_with()

    def test_report_does_not_change_state(self, console):
        console.handle_report()

        assert console.state is ConsoleState.RUNNING
        output = console.output.getvalue()
        assert "Query Statistics (3 root domains):" in output
        assert "googlevideo.com:   1 queries,   1 filtered" in output
        assert "example.org:   1 queries\n" in output + "\n"

    def test_status_line(self, console, fake_clock):
        fake_clock.advance(3725)
        console.handle_status()

        assert console.output.getvalue() == "Uptime 1:02:05, 5 queries performed\n"

    def test_install_signal_handlers(self, console):
        reactor = Mock()
        with patch("aaaa_filter.console.signal.signal") as mock_signal:
            console.install_signal_handlers(reactor)

        handlers = {call[0][0]: call[0][1] for call in mock_signal.call_args_list}
        assert set(handlers) == {signal.SIGINT, signal.SIGTERM, signal.SIGUSR1, signal.SIGUSR2}

        handlers[signal.SIGTERM](signal.SIGTERM, None)
        reactor.callFromThread.assert_called_with(console.handle_termination, signal.SIGTERM)

        handlers[signal.SIGUSR1](signal.SIGUSR1, None)
        reactor.callFromThread.assert_called_with(console.handle_status)

        handlers[signal.SIGUSR2](signal.SIGUSR2, None)
        reactor.callFromThread.assert_called_with(console.handle_report)


def test_format_report_limits_rows(fake_clock):
    collector = StatsCollector(clock=fake_clock)
    for i in range(12):
        collector.process_event(QueryEvent(f"www.site{i}.com.", "A"))

    report = format_report(collector.snapshot(10))

    assert len(report.splitlines()) == 12
    assert "<single-label>" not in report


def test_format_report_names_single_label_bucket(fake_clock):
    collector = StatsCollector(clock=fake_clock)
    collector.process_event(QueryEvent("localhost.", "A"))

    assert "<single-label>:   1 queries" in format_report(collector.snapshot())


def test_format_uptime():
    assert format_uptime(59.9) == "0:00:59"
    assert format_uptime(90061) == "1 day, 1:01:01"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
