"""Tests for FlushThrottle."""

import math

from conftest import FakeClock
from parley.session.throttle import FlushThrottle


class TestFlushThrottle:
    def test_due_after_interval(self, fake_clock: FakeClock) -> None:
        throttle = FlushThrottle(0.1, fake_clock)
        throttle.start()

        assert not throttle.due()
        fake_clock.advance(0.1)
        assert throttle.due()

        throttle.mark("abc")
        assert not throttle.due()
        assert throttle.last_text == "abc"

    def test_first_flush_waits_a_full_interval(self, fake_clock: FakeClock) -> None:
        throttle = FlushThrottle(0.1, fake_clock)
        throttle.start()

        fake_clock.advance(0.05)
        assert not throttle.due()
        assert throttle.flush_count == 0
        fake_clock.advance(0.05)
        assert throttle.due()

    def test_needs_final_only_when_changed(self, fake_clock: FakeClock) -> None:
        throttle = FlushThrottle(0.1, fake_clock)

        assert not throttle.needs_final("")
        throttle.mark("abc")
        assert not throttle.needs_final("abc")
        assert throttle.needs_final("abcd")

    def test_flush_count_bounded_by_duration(self, fake_clock: FakeClock) -> None:
        """A chunk every 10ms for 1s yields at most ceil(T/F) + 1 writes."""
        interval, duration = 0.1, 1.0
        throttle = FlushThrottle(interval, fake_clock)
        throttle.start()
        text = ""

        for i in range(100):
            fake_clock.advance(duration / 100)
            text += str(i % 10)
            if throttle.due():
                throttle.mark(text)
        if throttle.needs_final(text):
            throttle.mark(text)

        assert throttle.flush_count <= math.ceil(duration / interval) + 1
        assert throttle.last_text == text
