"""Tests for bounded remote calls."""

import threading
import time

from pylshal import ipc
from pylshal.ipc import CallStatus, TransportError, abandoned_calls, timeout_ipc


def test_returns_value():
    ret = timeout_ipc(lambda a, b: a + b, 2, 3)

    assert ret.is_ok
    assert ret.status is CallStatus.OK
    assert ret.value == 5


def test_transport_error():
    def dead():
        raise TransportError("DEAD_OBJECT")

    ret = timeout_ipc(dead)

    assert not ret.is_ok
    assert ret.status is CallStatus.TRANSPORT_ERROR
    assert ret.description == "DEAD_OBJECT"
    assert ret.value is None


def test_other_exception_is_a_transport_error():
    def broken():
        raise RuntimeError

    ret = timeout_ipc(broken)

    assert ret.status is CallStatus.TRANSPORT_ERROR
    assert ret.description == "RuntimeError"


def test_timeout():
    release = threading.Event()
    try:
        start = time.monotonic()
        ret = timeout_ipc(release.wait, timeout=0.1)
        elapsed = time.monotonic() - start
    finally:
        release.set()

    assert ret.timed_out
    assert not ret.is_ok
    assert elapsed < 2.0


def test_deadlines_are_independent():
    """A timed-out call does not affect the next one."""
    release = threading.Event()
    try:
        first = timeout_ipc(release.wait, timeout=0.1)
        second = timeout_ipc(lambda: "ok", timeout=1.0)
    finally:
        release.set()

    assert first.timed_out
    assert second.value == "ok"


def test_call_runs_on_daemon_thread():
    seen = {}

    def record():
        seen["daemon"] = threading.current_thread().daemon

    timeout_ipc(record)

    assert seen["daemon"] is True


def wait_for_abandoned_calls(limit: float = 2.0) -> None:
    deadline = time.monotonic() + limit
    while abandoned_calls() and time.monotonic() < deadline:
        time.sleep(0.01)


def test_abandoned_call_is_not_repeated():
    release = threading.Event()
    threads_before = threading.active_count()
    try:
        first = timeout_ipc(release.wait, timeout=0.05)
        start = time.monotonic()
        second = timeout_ipc(release.wait, timeout=1.0)
        elapsed = time.monotonic() - start

        assert first.timed_out
        assert second.timed_out
        assert second.description == "previous call still outstanding"
        assert elapsed < 0.5
        assert abandoned_calls() == 1
        assert threading.active_count() == threads_before + 1
    finally:
        release.set()
        wait_for_abandoned_calls()

    assert abandoned_calls() == 0
    assert timeout_ipc(release.wait, timeout=1.0).is_ok


def test_same_function_with_other_arguments_still_runs():
    release = threading.Event()
    try:
        hung = timeout_ipc(release.wait, timeout=0.05)
        other = timeout_ipc(release.wait, 0.01, timeout=1.0)
    finally:
        release.set()
        wait_for_abandoned_calls()

    assert hung.timed_out
    assert other.status is CallStatus.OK
    assert other.value is False


def test_outstanding_calls_are_capped(monkeypatch):
    monkeypatch.setattr(ipc, "MAX_ABANDONED_CALLS", 2)
    release = threading.Event()
    threads_before = threading.active_count()
    try:
        results = [
            timeout_ipc(lambda event=release: event.wait(), timeout=0.05)
            for _ in range(5)
        ]
        threads_after = threading.active_count()
    finally:
        release.set()
        wait_for_abandoned_calls()

    assert all(r.timed_out for r in results)
    assert [r.description for r in results[2:]] == ["2 calls still outstanding"] * 3
    assert threads_after - threads_before == 2
    assert abandoned_calls() == 0
