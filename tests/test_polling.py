import threading
import time

from canopen_pp.polling import poll_until, settle


def test_returns_first_value():
    answers = iter([None, None, "ready"])
    outcome = poll_until(lambda remaining: next(answers), timeout=1.0)
    assert outcome.done
    assert outcome.value == "ready"
    assert outcome.attempts == 3
    assert not outcome.timed_out and not outcome.cancelled


def test_probe_receives_remaining_time():
    seen = []

    def probe(remaining):
        seen.append(remaining)
        return True

    poll_until(probe, timeout=0.5)
    assert 0 < seen[0] <= 0.5


def test_timeout_without_value():
    started = time.monotonic()
    outcome = poll_until(lambda remaining: None, timeout=0.05, interval=0.01)
    elapsed = time.monotonic() - started
    assert outcome.timed_out
    assert not outcome.done
    assert outcome.attempts >= 2
    assert elapsed < 0.05 + 0.1


def test_backoff_reduces_attempts():
    flat = poll_until(lambda remaining: None, timeout=0.1, interval=0.005)
    grown = poll_until(lambda remaining: None, timeout=0.1, interval=0.005, backoff=2.0, max_interval=0.04)
    assert grown.attempts < flat.attempts


def test_stop_flag_before_first_attempt():
    stop = threading.Event()
    stop.set()
    calls = []
    outcome = poll_until(lambda remaining: calls.append(1), timeout=1.0, stop_event=stop)
    assert outcome.cancelled
    assert calls == []


def test_stop_flag_interrupts_pause():
    stop = threading.Event()
    timer = threading.Timer(0.02, stop.set)
    timer.start()
    started = time.monotonic()
    try:
        outcome = poll_until(lambda remaining: None, timeout=2.0, interval=0.5, stop_event=stop)
    finally:
        timer.cancel()
    assert outcome.cancelled
    assert time.monotonic() - started < 1.0


def test_settle():
    assert settle(0.0)
    assert settle(0.01, threading.Event())
    stop = threading.Event()
    stop.set()
    assert not settle(1.0, stop)
