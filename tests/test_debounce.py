from __future__ import annotations

from PySide6.QtTest import QTest

from crmforms.core.debounce import DebounceScheduler


class TestTrailingEmission:
    """Only the last value scheduled inside the quiet window is emitted."""

    def test_burst_emits_last_value_once(self, loop):
        emitted = []
        scheduler = loop.scheduler(300, on_emit=emitted.append)

        for text in ("a", "ac", "acm", "acme"):
            scheduler.schedule(text)
            loop.advance(100)

        assert emitted == []
        loop.advance(300)
        assert emitted == ["acme"]

    def test_each_schedule_restarts_the_window(self, loop):
        emitted = []
        scheduler = loop.scheduler(300, on_emit=emitted.append)

        scheduler.schedule("a")
        loop.advance(299)
        scheduler.schedule("ab")
        loop.advance(299)
        assert emitted == []
        loop.advance(1)
        assert emitted == ["ab"]

    def test_zero_delay_still_coalesces_same_tick(self, loop):
        emitted = []
        scheduler = loop.scheduler(0, on_emit=emitted.append)

        scheduler.schedule("x")
        scheduler.schedule("y")
        assert emitted == []
        loop.advance(0)
        assert emitted == ["y"]

    def test_signal_is_emitted(self, loop):
        received = []
        scheduler = loop.scheduler(50)
        scheduler.emitted.connect(received.append)

        scheduler.schedule({"term": "co"})
        loop.advance(50)

        assert received == [{"term": "co"}]

    def test_per_call_delay_override(self, loop):
        emitted = []
        scheduler = loop.scheduler(300, on_emit=emitted.append)

        scheduler.schedule("now", delay_ms=10)
        loop.advance(10)

        assert emitted == ["now"]


class TestCancelAndFlush:
    def test_cancel_drops_pending_value(self, loop):
        emitted = []
        scheduler = loop.scheduler(300, on_emit=emitted.append)

        scheduler.schedule("acme")
        scheduler.cancel()
        loop.advance(1000)

        assert emitted == []
        assert not scheduler.pending
        assert scheduler.pending_value is None

    def test_flush_emits_immediately(self, loop):
        emitted = []
        scheduler = loop.scheduler(300, on_emit=emitted.append)

        scheduler.schedule("acme")
        assert scheduler.pending_value == "acme"
        assert scheduler.flush() is True
        assert emitted == ["acme"]

        loop.advance(1000)
        assert emitted == ["acme"]

    def test_flush_without_pending_is_noop(self, loop):
        scheduler = loop.scheduler(300)
        assert scheduler.flush() is False

    def test_negative_delay_is_clamped(self, loop):
        assert loop.scheduler(-5).delay_ms == 0


class TestQtTimer:
    """The default timer is a real single-shot QTimer."""

    def test_real_timer_fires_once(self, qt_app):
        emitted = []
        scheduler = DebounceScheduler(20, on_emit=emitted.append)

        scheduler.schedule("a")
        scheduler.schedule("ab")
        QTest.qWait(120)

        assert emitted == ["ab"]
