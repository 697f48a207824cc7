# =============================================================================
# Tests for signal_guard.fanout
# =============================================================================

from __future__ import annotations

import time

from signal_guard.fanout import settle_all
from signal_guard.models import ErrorCategory
from signal_guard.sources import SourceError


def _slow(value, seconds):
    def call():
        time.sleep(seconds)
        return value
    return call


def _boom():
    raise RuntimeError("boom")


class TestSettleAll:
    def test_empty(self):
        assert settle_all({}, deadline=1) == []

    def test_results_keep_input_order(self):
        settled = settle_all({"a": _slow(1, 0.1), "b": _slow(2, 0.0), "c": _slow(3, 0.05)}, deadline=2)
        assert [s.key for s in settled] == ["a", "b", "c"]
        assert [s.value for s in settled] == [1, 2, 3]
        assert all(s.ok for s in settled)

    def test_exception_is_captured(self):
        settled = settle_all({"ok": _slow("fine", 0), "bad": _boom}, deadline=2)
        bad = settled[1]
        assert not bad.ok
        assert isinstance(bad.error, RuntimeError)

    def test_deadline_turns_into_timeout(self):
        started = time.monotonic()
        settled = settle_all({"fast": _slow(1, 0), "hung": _slow(2, 2.0)}, deadline=0.2)
        assert time.monotonic() - started < 1.5
        hung = settled[1]
        assert isinstance(hung.error, SourceError)
        assert hung.error.category is ErrorCategory.TIMEOUT
        assert settled[0].value == 1
